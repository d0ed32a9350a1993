"""Pytest plugin entry point."""

import json
import uuid
import pytest
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Tuple
from loguru import logger
from _pytest.runner import runtestprotocol
from pytest_verdict.config import Settings, get_settings
from pytest_verdict.domains.reliability.models import (
    Outcome,
    PipelineVerdict,
    ResultRecord,
    ResultStatus,
    utcnow,
)
from pytest_verdict.domains.reliability.services import ResultIngestor, VerdictEngine
from pytest_verdict.domains.reliability.skip_rules import SkipRuleMatcher
from pytest_verdict.infrastructure.arbitration.client import ArbitrationClient
from pytest_verdict.infrastructure.ci import detect_ci_context
from pytest_verdict.infrastructure.storage.memory import InMemoryResultStore


class VerdictSession:
    """Per-session plugin state."""

    def __init__(self, config: pytest.Config, settings: Settings):
        self.settings = settings
        self.run_id = str(uuid.uuid4())

        retry = config.getoption("verdict_retry")
        self.retry_count = int(retry) if retry is not None else settings.retry_count
        self.store_path: Optional[str] = config.getoption("verdict_store")
        self.report_path: Optional[str] = config.getoption("verdict_report")
        self.auto_pass: bool = bool(config.getoption("verdict_auto_pass")) or settings.auto_pass

        self.repository = (
            config.getoption("verdict_repository") or settings.repository or config.rootpath.name
        )
        self.project_name = config.getoption("verdict_project") or settings.project_name
        self.branch = config.getoption("verdict_branch") or settings.branch or detect_ci_context().branch
        self.base_url = config.getoption("verdict_base_url") or settings.base_url

        self.store = InMemoryResultStore.load(self.store_path) if self.store_path else InMemoryResultStore()
        self.ingestor = ResultIngestor(self.store, settings)
        self.records: List[ResultRecord] = []
        self.flaky_tests: List[str] = []
        self.verdict: Optional[PipelineVerdict] = None
        self.auto_passed = False

    @property
    def active(self) -> bool:
        """Whether results are recorded. Without it, tests run through the default protocol."""
        return bool(self.store_path or self.report_path or self.auto_pass or self.retry_count)

    def identity(self, item: pytest.Item) -> Tuple[str, str]:
        file_path, _, title = item.nodeid.partition("::")
        return file_path, title or item.name

    def record(self, item: pytest.Item, attempts: List[Tuple[datetime, list]]) -> None:
        file_path, title = self.identity(item)
        test = self.store.register_test(
            self.repository,
            file_path,
            title,
            self.project_name,
            tags=[m.name for m in item.iter_markers()],
        )
        outcome = _final_outcome(attempts)

        for index, (started_at, reports) in enumerate(attempts):
            message, stack = _extract_error(reports)
            record = ResultRecord(
                test_id=test.id,
                run_id=self.run_id,
                status=_attempt_status(reports),
                outcome=outcome,
                duration_ms=int(sum(r.duration for r in reports) * 1000),
                retry=index,
                is_final_attempt=index == len(attempts) - 1,
                error_message=message,
                error_stack=stack,
                started_at=started_at,
            )
            self.records.append(record)
            self.ingestor.ingest(record)


def _attempt_status(reports: list) -> ResultStatus:
    if any(r.failed for r in reports):
        return ResultStatus.FAILED
    if any(r.skipped for r in reports):
        return ResultStatus.SKIPPED
    return ResultStatus.PASSED


def _final_outcome(attempts: List[Tuple[datetime, list]]) -> Outcome:
    status = _attempt_status(attempts[-1][1])
    if status == ResultStatus.FAILED:
        return Outcome.UNEXPECTED
    if status == ResultStatus.SKIPPED:
        return Outcome.SKIPPED
    return Outcome.FLAKY if len(attempts) > 1 else Outcome.EXPECTED


def _extract_error(reports: list) -> Tuple[Optional[str], Optional[str]]:
    for r in reports:
        if not r.failed:
            continue
        stack = r.longreprtext or None
        crash = getattr(r.longrepr, "reprcrash", None)
        message = crash.message if crash is not None else None
        if not message and stack:
            message = stack.strip().splitlines()[-1]
        return message, stack
    return None, None


session_key = pytest.StashKey[VerdictSession]()


def _get_session(config: pytest.Config) -> Optional[VerdictSession]:
    return config.stash.get(session_key, None)


def pytest_addoption(parser):
    """Register command line options."""
    group = parser.getgroup("verdict")
    group.addoption(
        "--verdict-retry",
        action="store",
        dest="verdict_retry",
        help="Number of retries for failed tests"
    )
    group.addoption(
        "--verdict-store",
        action="store",
        dest="verdict_store",
        help="Path of the JSON result store (history, health, signatures, skip rules)"
    )
    group.addoption(
        "--verdict-report",
        action="store",
        dest="verdict_report",
        help="Path to generate JSON report"
    )
    group.addoption(
        "--verdict-branch",
        action="store",
        dest="verdict_branch",
        help="Branch used to evaluate skip rules (default: detected from CI)"
    )
    group.addoption(
        "--verdict-base-url",
        action="store",
        dest="verdict_base_url",
        help="Base URL of the environment under test, used to evaluate skip rules"
    )
    group.addoption(
        "--verdict-repository",
        action="store",
        dest="verdict_repository",
        help="Repository name used for test identity (default: rootdir name)"
    )
    group.addoption(
        "--verdict-project",
        action="store",
        dest="verdict_project",
        help="Project/variant name used for test identity"
    )
    group.addoption(
        "--verdict-auto-pass",
        action="store_true",
        default=False,
        dest="verdict_auto_pass",
        help="Exit with success when all failures are confidently flaky"
    )


def pytest_configure(config):
    """Configure the plugin."""
    config.addinivalue_line("markers", "verdict(retry=N): Retry policy of a test for flakiness detection")


def pytest_sessionstart(session):
    """Initialize session state."""
    session.config.stash[session_key] = VerdictSession(session.config, get_settings())


def pytest_collection_modifyitems(session, config, items):
    """Skip tests disabled by a matching skip rule."""
    state = _get_session(config)
    if state is None:
        return

    matcher = SkipRuleMatcher()
    for item in items:
        file_path, title = state.identity(item)
        test = state.store.find_test(state.repository, file_path, title, state.project_name)
        if test is None:
            continue
        decision = matcher.first_matching_rule(
            state.store.skip_rules(test.id), state.branch, state.base_url
        )
        if decision is not None:
            logger.info(f"Skipping {item.nodeid}: {decision.reason}")
            item.add_marker(pytest.mark.skip(reason=f"[verdict] {decision.reason}"))


@pytest.hookimpl(tryfirst=True)
def pytest_runtest_protocol(item, nextitem):
    """
    Wrap the test execution to retry failures and record every attempt.
    Replaces standard runtestprotocol to enable per-attempt recording.
    """
    state = _get_session(item.config)
    if state is None:
        return None

    retry_count = state.retry_count
    marker = item.get_closest_marker("verdict")
    if marker and "retry" in marker.kwargs:
        retry_count = int(marker.kwargs["retry"])

    # If nothing to record or retry, delegate to default runner
    if not state.active and retry_count == 0:
        return None

    attempts = []
    for attempt in range(retry_count + 1):
        item.ihook.pytest_runtest_logstart(nodeid=item.nodeid, location=item.location)
        started_at = utcnow()
        reports = runtestprotocol(item, nextitem=nextitem, log=False)
        attempts.append((started_at, reports))

        failed = any(r.failed for r in reports)

        # Report only if passed or if it's the final attempt
        if not failed or attempt == retry_count:
            for r in reports:
                item.ihook.pytest_runtest_logreport(report=r)

        if not failed:
            if attempt > 0:
                state.flaky_tests.append(item.nodeid)
            item.ihook.pytest_runtest_logfinish(nodeid=item.nodeid, location=item.location)
            break

        if attempt < retry_count:
            logger.warning(f"Test {item.nodeid} failed attempt {attempt+1}/{retry_count+1}. Retrying...")
        else:
            item.ihook.pytest_runtest_logfinish(nodeid=item.nodeid, location=item.location)

    state.record(item, attempts)
    return True


def pytest_sessionfinish(session, exitstatus):
    """Compute the pipeline verdict and persist the store."""
    state = _get_session(session.config)
    if state is None or not state.records:
        return

    with ArbitrationClient(state.settings) as arbitrator:
        engine = VerdictEngine(state.store, arbitrator=arbitrator, settings=state.settings)
        state.verdict = engine.analyze_pipeline(state.run_id)

    if state.store_path:
        state.store.save(state.store_path)

    verdict = state.verdict
    if (
        state.auto_pass
        and exitstatus == pytest.ExitCode.TESTS_FAILED
        and verdict.failed_tests
        and verdict.can_auto_pass
    ):
        logger.info(f"Auto-passing run {state.run_id}: {verdict.summary}")
        state.auto_passed = True
        session.exitstatus = pytest.ExitCode.OK


def pytest_terminal_summary(terminalreporter, exitstatus, config):
    """Report flaky tests and the pipeline verdict."""
    state = _get_session(config)
    if state is None or not (state.active or state.records):
        return

    terminalreporter.section("Verdict Reliability Report")

    if state.flaky_tests:
        terminalreporter.write_line("Detected Flaky Tests (Passed on Retry):", yellow=True)
        for nodeid in state.flaky_tests:
            terminalreporter.write_line(f"  - {nodeid}")
        terminalreporter.write_line("")

    verdict = state.verdict
    if verdict is None:
        terminalreporter.write_line("No results recorded.")
    else:
        _write_verdict(terminalreporter, verdict, state.auto_passed)

    # JSON Report
    if state.report_path:
        data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "run_id": state.run_id,
            "flaky_tests": state.flaky_tests,
            "results": [r.model_dump(mode="json") for r in state.records],
            "verdict": verdict.model_dump(mode="json") if verdict is not None else None,
        }
        report_path = Path(state.report_path)
        report_path.parent.mkdir(parents=True, exist_ok=True)
        with open(report_path, "w") as f:
            json.dump(data, f, indent=2)
        terminalreporter.write_line(f"\nSaved Verdict report to {report_path}")


def _write_verdict(terminalreporter, verdict: PipelineVerdict, auto_passed: bool) -> None:
    terminalreporter.write_line(
        f"Pipeline verdict: {verdict.verdict.value} "
        f"(confidence {verdict.confidence}%, auto-pass: {'yes' if verdict.can_auto_pass else 'no'})"
    )
    terminalreporter.write_line(verdict.summary)

    if verdict.failed_tests:
        max_len = max((len(v.test_title) for v in verdict.failed_tests), default=20)
        max_len = max(max_len, 20)
        fmt = f"{{:<{max_len}}} {{:>20}} {{:>10}}"

        terminalreporter.write_line("")
        terminalreporter.write_line(fmt.format("Test", "Verdict", "Confidence"))
        terminalreporter.write_line("-" * (max_len + 32))
        for v in verdict.failed_tests:
            terminalreporter.write_line(fmt.format(v.test_title, v.verdict.value, f"{v.confidence}%"))
            if v.reasoning:
                terminalreporter.write_line(f"    {v.reasoning}")

    if auto_passed:
        terminalreporter.write_line("")
        terminalreporter.write_line("Failures are known flaky: session result changed to passed.", green=True)
