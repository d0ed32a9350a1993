"""
Tests for per-test verdicts and pipeline aggregation.

Covers:
- Heuristic-only verdicts built from ingested history
- Arbitration adjustments, caps and failure neutrality
- Pipeline aggregation and summaries
- Parallel analysis
"""

import httpx
import pytest

from pytest_verdict.config import Settings
from pytest_verdict.domains.reliability.models import (
    ArbitrationResult,
    ArbitrationVerdict,
    Classification,
    FlakinessSignals,
    Outcome,
    ResultStatus,
    TestVerdict,
)
from pytest_verdict.domains.reliability.services import VerdictEngine, format_recent_history, summarize
from pytest_verdict.infrastructure.arbitration.client import ArbitrationClient

TIMEOUT_ERROR = "Timeout 5000ms exceeded waiting for locator at page.ts:12:5"
ASSERT_ERROR = "AssertionError: expected 200 got 500"
CURRENT_RUN = "run-current"


class FakeArbitrator:
    def __init__(self, result=None, error=None, configured=True):
        self.result = result
        self.error = error
        self.configured = configured
        self.calls = []

    @property
    def is_configured(self):
        return self.configured

    def analyze(self, variables):
        self.calls.append(variables)
        if self.error is not None:
            raise self.error
        return self.result


def arbitration(verdict, adjustment, reasoning="Model says so."):
    return ArbitrationResult(verdict=ArbitrationVerdict(verdict), adjustment=adjustment, reasoning=reasoning)


@pytest.fixture
def flaky_test(store, ingestor, make_result):
    """A test that passed on retry three times and now fails with the same error."""
    test = store.register_test("org/repo", "tests/test_page.py", "test_page_loads")
    # Oldest first
    outcomes = [Outcome.EXPECTED] * 3 + [
        Outcome.FLAKY, Outcome.EXPECTED, Outcome.FLAKY, Outcome.EXPECTED, Outcome.FLAKY, Outcome.EXPECTED,
    ]
    for index, outcome in enumerate(outcomes):
        run_id = f"run-{index}"
        if outcome == Outcome.FLAKY:
            ingestor.ingest(make_result(
                test.id, outcome, minutes=10 * index, run_id=run_id,
                status=ResultStatus.FAILED, is_final_attempt=False, error_message=TIMEOUT_ERROR,
            ))
            ingestor.ingest(make_result(test.id, outcome, minutes=10 * index + 1, run_id=run_id, retry=1))
        else:
            ingestor.ingest(make_result(test.id, outcome, minutes=10 * index + 1, run_id=run_id))

    ingestor.ingest(make_result(
        test.id, Outcome.UNEXPECTED, minutes=1000, run_id=CURRENT_RUN,
        error_message="Timeout 5000ms exceeded waiting for locator at page.ts:40:2",
    ))
    return test


@pytest.fixture
def broken_test(store, ingestor, make_result):
    """A test that passed ten times and then failed four times with the same assertion."""
    test = store.register_test("org/repo", "tests/test_api.py", "test_status_code")
    for index in range(10):
        ingestor.ingest(make_result(test.id, Outcome.EXPECTED, minutes=index, run_id=f"run-{index}"))
    for index in range(10, 14):
        run_id = CURRENT_RUN if index == 13 else f"run-{index}"
        ingestor.ingest(make_result(test.id, Outcome.UNEXPECTED, minutes=index, run_id=run_id, error_message=ASSERT_ERROR))
    return test


@pytest.fixture
def moderate_test(store, make_result, make_health):
    """Factory for a failing test whose health row is set directly."""
    def _make(title="test_moderate", **health):
        test = store.register_test("org/repo", "tests/test_mod.py", title)
        store.add_result(make_result(
            test.id, Outcome.UNEXPECTED, minutes=100, run_id=CURRENT_RUN, error_message=f"{title} failed"
        ))
        store.save_health(make_health(test.id, **health))
        return test
    return _make


# =============================================================================
# 1. HEURISTIC VERDICTS
# =============================================================================

class TestHeuristicVerdicts:
    """Verdicts without arbitration."""

    def test_known_flaky_failure(self, store, settings, flaky_test):
        verdict = VerdictEngine(store, settings=settings).analyze_test_failure(
            flaky_test.id, "Timeout 5000ms exceeded waiting for locator at page.ts:40:2"
        )

        assert verdict.verdict == Classification.FLAKY
        assert verdict.confidence == 90
        assert verdict.signals.error_seen_before
        assert verdict.signals.error_passed_after_count == 3
        assert verdict.signals.recent_flakiness_rate == 30.0
        assert not verdict.arbitration_used
        assert verdict.reasoning.startswith("High flakiness rate (30.0%); Passed 6 of last 10 runs")

    def test_real_failure(self, store, settings, broken_test):
        verdict = VerdictEngine(store, settings=settings).analyze_test_failure(broken_test.id, ASSERT_ERROR)

        assert verdict.verdict == Classification.LIKELY_REAL_FAILURE
        assert verdict.confidence == 25
        assert verdict.signals.consecutive_failures == 4
        assert verdict.signals.error_passed_after_count == 0

    def test_unknown_test(self, store, settings):
        verdict = VerdictEngine(store, settings=settings).analyze_test_failure("missing", "boom")

        assert verdict.test_title == "Unknown test"
        assert verdict.file_path == "unknown"
        assert verdict.confidence == 0
        assert verdict.verdict == Classification.LIKELY_REAL_FAILURE
        assert verdict.signals.health_score == 0

    def test_no_health_row(self, store, settings):
        """A registered test without history uses neutral signals."""
        test = store.register_test("org/repo", "tests/test_new.py", "test_new")
        verdict = VerdictEngine(store, settings=settings).analyze_test_failure(test.id, "boom")

        assert verdict.confidence == 0
        assert verdict.signals.health_score == 50
        assert verdict.reasoning == ""

    def test_deterministic(self, store, settings, flaky_test):
        engine = VerdictEngine(store, settings=settings)
        first = engine.analyze_test_failure(flaky_test.id, TIMEOUT_ERROR)
        second = engine.analyze_test_failure(flaky_test.id, TIMEOUT_ERROR)

        assert first == second


# =============================================================================
# 2. ARBITRATION
# =============================================================================

class TestArbitration:
    """Arbitration adjusts mid-range heuristic scores."""

    def test_not_called_for_high_confidence(self, store, settings, flaky_test):
        arbitrator = FakeArbitrator(arbitration("real_bug", -20))
        verdict = VerdictEngine(store, arbitrator, settings).analyze_test_failure(flaky_test.id, TIMEOUT_ERROR)

        assert arbitrator.calls == []
        assert verdict.confidence == 90

    def test_not_called_when_not_configured(self, store, settings, moderate_test):
        test = moderate_test(recent_flakiness_rate=25.0)
        arbitrator = FakeArbitrator(arbitration("flaky", 20), configured=False)
        verdict = VerdictEngine(store, arbitrator, settings).analyze_test_failure(test.id, "x")

        assert arbitrator.calls == []
        assert not verdict.arbitration_used

    def test_adjustment_makes_flaky(self, store, settings, moderate_test):
        """45 + 20 crosses the flaky threshold."""
        test = moderate_test(recent_flakiness_rate=25.0, consecutive_passes=4, health_score=70)
        arbitrator = FakeArbitrator(arbitration("flaky", 20, "Timing issue."))
        verdict = VerdictEngine(store, arbitrator, settings).analyze_test_failure(test.id, "x")

        assert verdict.confidence == 65
        assert verdict.verdict == Classification.FLAKY
        assert verdict.arbitration_used
        assert verdict.reasoning == "Timing issue."

    def test_prompt_variables(self, store, settings, moderate_test):
        test = moderate_test(recent_flakiness_rate=25.0, consecutive_passes=4, health_score=70)
        arbitrator = FakeArbitrator(arbitration("flaky", 0))
        VerdictEngine(store, arbitrator, settings).analyze_test_failure(test.id, "test_moderate failed", "Traceback")

        variables = arbitrator.calls[0]
        assert variables.test_title == "test_moderate"
        assert variables.file_path == "tests/test_mod.py"
        assert variables.heuristic_score == 45
        assert variables.stack_trace == "Traceback"
        assert variables.recent_history == "- 2024-01-01: FAIL"
        assert variables.heuristic_reasoning.startswith("High flakiness rate")

    @pytest.mark.parametrize("verdict, adjustment, expected_confidence, expected_verdict", [
        # 70 - 11 = 59, capped at 50
        ("real_bug", -11, 50, Classification.LIKELY_REAL_FAILURE),
        # -10 is not a strong disagreement
        ("real_bug", -10, 60, Classification.FLAKY),
        # The cap only applies to real_bug answers
        ("flaky", -15, 55, Classification.LIKELY_REAL_FAILURE),
    ])
    def test_strong_disagreement_cap(
        self, store, settings, moderate_test, make_result,
        verdict, adjustment, expected_confidence, expected_verdict,
    ):
        # 30 (flakiness) + 25 (two earlier passes) + 15 (short streak)
        test = moderate_test(recent_flakiness_rate=25.0, consecutive_passes=4, health_score=70)
        store.add_result(make_result(test.id, Outcome.EXPECTED, minutes=1, run_id="run-1"))
        store.add_result(make_result(test.id, Outcome.EXPECTED, minutes=2, run_id="run-2"))
        arbitrator = FakeArbitrator(arbitration(verdict, adjustment))
        result = VerdictEngine(store, arbitrator, settings).analyze_test_failure(test.id, "x")

        assert result.confidence == expected_confidence
        assert result.verdict == expected_verdict

    def test_clamped_at_zero(self, store, settings, moderate_test):
        test = moderate_test(health_score=40)
        arbitrator = FakeArbitrator(arbitration("real_bug", -20))
        verdict = VerdictEngine(store, arbitrator, settings).analyze_test_failure(test.id, "x")

        assert verdict.confidence == 0

    @pytest.mark.parametrize("arbitrator", [
        FakeArbitrator(error=RuntimeError("endpoint exploded")),
        FakeArbitrator(result=None),
    ])
    def test_failure_is_neutral(self, store, settings, moderate_test, arbitrator):
        """A failing or empty arbitration leaves the heuristic verdict unchanged."""
        test = moderate_test(recent_flakiness_rate=25.0, consecutive_passes=4, health_score=70)
        baseline = VerdictEngine(store, settings=settings).analyze_test_failure(test.id, "x")
        verdict = VerdictEngine(store, arbitrator, settings).analyze_test_failure(test.id, "x")

        assert verdict == baseline
        assert not verdict.arbitration_used

    def test_unreachable_endpoint_is_neutral(self, store, settings, moderate_test):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        test = moderate_test(recent_flakiness_rate=25.0, consecutive_passes=4, health_score=70)
        client = ArbitrationClient(
            Settings(_env_file=None, arbitration_api_key="sk-test"),
            client=httpx.Client(transport=httpx.MockTransport(handler)),
        )
        baseline = VerdictEngine(store, settings=settings).analyze_pipeline(CURRENT_RUN)
        with client:
            verdict = VerdictEngine(store, client, settings).analyze_pipeline(CURRENT_RUN)

        assert verdict == baseline
        assert verdict.failed_tests[0].test_id == test.id

    def test_similar_errors_across_tests(self, store, ingestor, settings, make_result):
        first = store.register_test("org/repo", "tests/test_a.py", "test_a")
        second = store.register_test("org/repo", "tests/test_b.py", "test_b")
        ingestor.ingest(make_result(first.id, Outcome.UNEXPECTED, minutes=1, error_message="DB down at db.py:10"))
        ingestor.ingest(make_result(first.id, Outcome.EXPECTED, minutes=2))
        ingestor.ingest(make_result(
            second.id, Outcome.UNEXPECTED, minutes=3, run_id=CURRENT_RUN, error_message="DB down at db.py:99"
        ))

        arbitrator = FakeArbitrator(arbitration("flaky", 0))
        VerdictEngine(store, arbitrator, settings).analyze_test_failure(second.id, "DB down at db.py:99")

        similar = arbitrator.calls[0].similar_errors
        assert '- "test_a": seen 1x, passed after 1x' in similar
        assert '- "test_b": seen 1x, passed after 0x' in similar


# =============================================================================
# 3. PIPELINE VERDICTS
# =============================================================================

def verdict_of(confidence, verdict=Classification.FLAKY, title="t"):
    return TestVerdict(
        test_id=title,
        test_title=title,
        file_path="tests/test_x.py",
        verdict=verdict,
        confidence=confidence,
        reasoning="",
        signals=FlakinessSignals(),
    )


class TestPipeline:
    """Aggregation of the unexpected final failures of a run."""

    def test_no_failures(self, store, settings):
        verdict = VerdictEngine(store, settings=settings).analyze_pipeline("run-empty")

        assert verdict.verdict == Classification.FLAKY
        assert verdict.confidence == 100
        assert verdict.can_auto_pass
        assert verdict.failed_tests == []
        assert verdict.summary == "No failures to analyze"

    def test_all_flaky_auto_passes(self, store, settings, flaky_test):
        verdict = VerdictEngine(store, settings=settings).analyze_pipeline(CURRENT_RUN)

        assert verdict.run_id == CURRENT_RUN
        assert verdict.verdict == Classification.FLAKY
        assert verdict.confidence == 90
        assert verdict.can_auto_pass
        assert verdict.summary == "All 1 failure is known flaky (90% avg confidence)"

    def test_one_real_failure_blocks(self, store, settings, flaky_test, broken_test):
        verdict = VerdictEngine(store, settings=settings).analyze_pipeline(CURRENT_RUN)

        assert verdict.verdict == Classification.LIKELY_REAL_FAILURE
        assert verdict.confidence == 58
        assert not verdict.can_auto_pass
        assert [v.test_title for v in verdict.failed_tests] == ["test_page_loads", "test_status_code"]
        assert verdict.summary == "1 of 2 failures are flaky. 1 needs investigation."

    def test_flaky_and_passing_attempts_are_ignored(self, store, settings, make_result):
        """Only unexpected final attempts are analyzed."""
        test = store.register_test("org/repo", "tests/test_x.py", "test_x")
        store.add_result(make_result(
            test.id, Outcome.FLAKY, run_id=CURRENT_RUN, status=ResultStatus.FAILED, is_final_attempt=False
        ))
        store.add_result(make_result(test.id, Outcome.FLAKY, minutes=1, run_id=CURRENT_RUN))

        assert VerdictEngine(store, settings=settings).analyze_pipeline(CURRENT_RUN).summary == "No failures to analyze"

    def test_unknown_test_in_run(self, store, settings, make_result):
        store.add_result(make_result("ghost", Outcome.UNEXPECTED, run_id=CURRENT_RUN))
        verdict = VerdictEngine(store, settings=settings).analyze_pipeline(CURRENT_RUN)

        assert verdict.verdict == Classification.LIKELY_REAL_FAILURE
        assert verdict.confidence == 0
        assert verdict.summary == "1 failure needs investigation"

    def test_aggregate_rounds_mean(self, store, settings):
        """95 and 20 average to 57.5, reported as 58."""
        verdicts = [verdict_of(95), verdict_of(20, Classification.LIKELY_REAL_FAILURE)]
        pipeline = VerdictEngine(store, settings=settings).aggregate(verdicts)

        assert pipeline.verdict == Classification.LIKELY_REAL_FAILURE
        assert pipeline.confidence == 58
        assert not pipeline.can_auto_pass

    @pytest.mark.parametrize("confidences, can_auto_pass", [([90, 90], True), ([95, 84], False), ([100], True)])
    def test_auto_pass_threshold(self, store, settings, confidences, can_auto_pass):
        pipeline = VerdictEngine(store, settings=settings).aggregate([verdict_of(c) for c in confidences])

        assert pipeline.verdict == Classification.FLAKY
        assert pipeline.can_auto_pass is can_auto_pass

    def test_parallel_matches_sequential(self, store, settings, flaky_test, broken_test, moderate_test):
        moderate_test(recent_flakiness_rate=25.0, consecutive_passes=4, health_score=70)
        sequential = VerdictEngine(store, settings=settings).analyze_pipeline(CURRENT_RUN)
        parallel = VerdictEngine(
            store, settings=Settings(_env_file=None, max_workers=4)
        ).analyze_pipeline(CURRENT_RUN)

        assert len(parallel.failed_tests) == 3
        assert parallel == sequential


class TestSummaries:
    """Human-readable pipeline summaries."""

    @pytest.mark.parametrize("flaky, real, avg, expected", [
        (3, 0, 92.4, "All 3 failures are known flaky (92% avg confidence)"),
        (1, 0, 90, "All 1 failure is known flaky (90% avg confidence)"),
        (0, 2, 10, "2 failures need investigation"),
        (0, 1, 10, "1 failure needs investigation"),
        (2, 3, 50, "2 of 5 failures are flaky. 3 need investigation."),
    ])
    def test_summarize(self, flaky, real, avg, expected):
        assert summarize(flaky, real, avg) == expected

    def test_recent_history(self, make_result):
        results = [
            make_result("t1", Outcome.UNEXPECTED, minutes=3),
            make_result("t1", Outcome.FLAKY, minutes=2),
            make_result("t1", Outcome.EXPECTED, minutes=1),
        ]
        assert format_recent_history(results) == "- 2024-01-01: FAIL\n- 2024-01-01: FLAKY\n- 2024-01-01: PASS"
        assert format_recent_history([]) == "No history"


# =============================================================================
# 4. INGESTION
# =============================================================================

class TestResultIngestor:
    """Health and signatures follow ingested results."""

    def test_non_final_attempt_does_not_update_health(self, store, ingestor, make_result):
        record = make_result("t1", Outcome.FLAKY, status=ResultStatus.FAILED, is_final_attempt=False, error_message="x")

        assert ingestor.ingest(record) is None
        assert store.get_health("t1") is None
        assert len(store.signatures_for_test("t1")) == 1

    def test_final_attempt_updates_health(self, store, ingestor, make_result):
        ingestor.ingest(make_result("t1", Outcome.EXPECTED, minutes=1))
        snapshot = ingestor.ingest(make_result("t1", Outcome.UNEXPECTED, minutes=2, error_message="x"))

        assert store.get_health("t1") == snapshot
        assert snapshot.total_runs == 2
        assert snapshot.consecutive_failures == 1
