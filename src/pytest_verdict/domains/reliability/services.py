"""Domain services for verdict logic."""

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Protocol

from loguru import logger

from pytest_verdict.config.settings import Settings, get_settings
from pytest_verdict.domains.reliability.fingerprint import ErrorFingerprinter, SignatureTracker
from pytest_verdict.domains.reliability.health import HealthTracker, round_half_up
from pytest_verdict.domains.reliability.heuristics import HeuristicScorer
from pytest_verdict.domains.reliability.models import (
    ArbitrationResult,
    ArbitrationVerdict,
    Classification,
    FlakinessSignals,
    HealthSnapshot,
    PipelineVerdict,
    RecentOutcome,
    ResultRecord,
    TestVerdict,
)
from pytest_verdict.domains.reliability.repositories import ResultStore
from pytest_verdict.infrastructure.arbitration.prompt import PromptVariables


class Arbitrator(Protocol):
    @property
    def is_configured(self) -> bool:
        ...

    def analyze(self, variables: PromptVariables) -> Optional[ArbitrationResult]:
        ...


class ResultIngestor:
    """Writes results and keeps health rows and error signatures current."""

    def __init__(self, store: ResultStore, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.store = store
        self.health_tracker = HealthTracker(window=settings.health_window, recent_window=settings.recent_window)
        self.signatures = SignatureTracker(store)
        self.health_window = settings.health_window
        self._lock = threading.Lock()

    def ingest(self, record: ResultRecord) -> Optional[HealthSnapshot]:
        """Stores the record and returns the test's new health snapshot, if recomputed."""
        with self._lock:
            self.store.add_result(record)
            self.signatures.observe(record)
            if not record.is_final_attempt:
                return None
            return self.update_health(record.test_id)

    def update_health(self, test_id: str) -> Optional[HealthSnapshot]:
        history = self.store.recent_final_results(test_id, self.health_window)
        snapshot = self.health_tracker.recompute(test_id, history)
        if snapshot is not None:
            self.store.save_health(snapshot)
        return snapshot


def format_recent_history(results: List[ResultRecord]) -> str:
    if not results:
        return "No history"

    lines = []
    for r in results:
        outcome = RecentOutcome.from_outcome(r.outcome)
        if outcome == RecentOutcome.PASS:
            status = "PASS"
        elif outcome == RecentOutcome.FAIL:
            status = "FAIL"
        else:
            status = r.outcome.value.upper()
        lines.append(f"- {r.started_at.date().isoformat()}: {status}")
    return "\n".join(lines)


class VerdictEngine:
    """Builds per-test verdicts and aggregates them into a pipeline verdict."""

    def __init__(
        self,
        store: ResultStore,
        arbitrator: Optional[Arbitrator] = None,
        settings: Optional[Settings] = None,
        fingerprinter: Optional[ErrorFingerprinter] = None,
    ):
        self.settings = settings or get_settings()
        self.policy = self.settings.policy
        self.store = store
        self.arbitrator = arbitrator
        self.scorer = HeuristicScorer(self.policy)
        self.fingerprinter = fingerprinter or ErrorFingerprinter()

    # -------------------------------------------------------------------------
    # Per-test verdict
    # -------------------------------------------------------------------------

    def analyze_test_failure(
        self,
        test_id: str,
        error_message: Optional[str] = None,
        error_stack: Optional[str] = None,
    ) -> TestVerdict:
        test = self.store.get_test(test_id)
        if test is None:
            return self._unknown_verdict(test_id)

        recent = self.store.recent_final_results(test_id, self.settings.history_limit)
        signals = self._build_signals(test_id, error_message, recent)
        heuristic = self.scorer.score(signals)

        final_score = heuristic.score
        reasoning = "; ".join(heuristic.reasoning)
        arbitration_used = False

        if not self.scorer.is_high_confidence(heuristic.score) and self._arbitration_available():
            result = self._arbitrate(PromptVariables(
                test_title=test.title,
                file_path=test.file_path,
                error_message=error_message or "",
                stack_trace=error_stack or "",
                recent_history=format_recent_history(recent),
                similar_errors=self._similar_errors(error_message),
                heuristic_score=heuristic.score,
                heuristic_reasoning=reasoning,
            ))
            if result is not None:
                arbitration_used = True
                final_score = max(0, min(100, heuristic.score + result.adjustment))
                reasoning = result.reasoning
                # Strong disagreement caps the score below the flaky threshold
                if (
                    result.verdict == ArbitrationVerdict.REAL_BUG
                    and result.adjustment < self.policy.strong_disagreement_adjustment
                ):
                    final_score = min(final_score, self.policy.real_bug_score_cap)

        verdict = (
            Classification.FLAKY if final_score >= self.policy.flaky_threshold
            else Classification.LIKELY_REAL_FAILURE
        )
        return TestVerdict(
            test_id=test_id,
            test_title=test.title,
            file_path=test.file_path,
            verdict=verdict,
            confidence=final_score,
            reasoning=reasoning,
            signals=signals,
            arbitration_used=arbitration_used,
            error_message=error_message or None,
            error_stack=error_stack or None,
        )

    def _build_signals(
        self, test_id: str, error_message: Optional[str], recent: List[ResultRecord]
    ) -> FlakinessSignals:
        health = self.store.get_health(test_id)

        error_seen_before = False
        error_passed_after_count = 0
        if self.fingerprinter.has_signature(error_message):
            signature = self.store.get_signature(test_id, self.fingerprinter.fingerprint(error_message))
            if signature is not None:
                error_seen_before = True
                error_passed_after_count = signature.passed_after_count

        recent_outcomes = [RecentOutcome.from_outcome(r.outcome) for r in recent]
        if health is None:
            return FlakinessSignals(
                recent_outcomes=recent_outcomes,
                error_seen_before=error_seen_before,
                error_passed_after_count=error_passed_after_count,
            )

        return FlakinessSignals(
            flakiness_rate=health.flakiness_rate,
            recent_flakiness_rate=health.recent_flakiness_rate,
            recent_outcomes=recent_outcomes,
            error_seen_before=error_seen_before,
            error_passed_after_count=error_passed_after_count,
            consecutive_failures=health.consecutive_failures,
            consecutive_passes=health.consecutive_passes,
            health_score=health.health_score,
            health_divergence=health.health_divergence,
        )

    def _similar_errors(self, error_message: Optional[str]) -> str:
        if not self.fingerprinter.has_signature(error_message):
            return "No error to compare"

        signature_hash = self.fingerprinter.fingerprint(error_message)
        signatures = self.store.signatures_by_hash(signature_hash, self.settings.similar_errors_limit)
        if not signatures:
            return "No similar errors found on other tests"

        lines = []
        for s in signatures:
            test = self.store.get_test(s.test_id)
            title = test.title if test is not None else s.test_id
            lines.append(f'- "{title}": seen {s.occurrence_count}x, passed after {s.passed_after_count}x')
        return "\n".join(lines)

    def _arbitration_available(self) -> bool:
        return self.arbitrator is not None and self.arbitrator.is_configured

    def _arbitrate(self, variables: PromptVariables) -> Optional[ArbitrationResult]:
        try:
            return self.arbitrator.analyze(variables)
        except Exception as e:
            logger.error(f"Arbitration failed for {variables.test_title}, using heuristic score: {e}")
            return None

    def _unknown_verdict(self, test_id: str) -> TestVerdict:
        logger.warning(f"Test {test_id} not found in store")
        return TestVerdict(
            test_id=test_id,
            test_title="Unknown test",
            file_path="unknown",
            verdict=Classification.LIKELY_REAL_FAILURE,
            confidence=0,
            reasoning="Test not found in store",
            signals=FlakinessSignals(health_score=0),
        )

    # -------------------------------------------------------------------------
    # Pipeline verdict
    # -------------------------------------------------------------------------

    def analyze_pipeline(self, run_id: str) -> PipelineVerdict:
        failures = self.store.failed_final_results(run_id)
        if not failures:
            return PipelineVerdict(
                run_id=run_id,
                verdict=Classification.FLAKY,
                confidence=100,
                can_auto_pass=True,
                summary="No failures to analyze",
            )

        verdicts = self._analyze_failures(failures)
        pipeline = self.aggregate(verdicts, run_id)
        logger.info(f"Run {run_id}: {pipeline.summary} (auto-pass: {pipeline.can_auto_pass})")
        return pipeline

    def _analyze_failures(self, failures: List[ResultRecord]) -> List[TestVerdict]:
        def analyze(record: ResultRecord) -> TestVerdict:
            return self.analyze_test_failure(record.test_id, record.error_message, record.error_stack)

        if self.settings.max_workers <= 1 or len(failures) == 1:
            return [analyze(r) for r in failures]

        with ThreadPoolExecutor(max_workers=self.settings.max_workers, thread_name_prefix="verdict") as pool:
            return list(pool.map(analyze, failures))

    def aggregate(self, verdicts: List[TestVerdict], run_id: Optional[str] = None) -> PipelineVerdict:
        """Combines per-test verdicts. Any likely real failure makes the pipeline non-flaky."""
        if not verdicts:
            return PipelineVerdict(
                run_id=run_id,
                verdict=Classification.FLAKY,
                confidence=100,
                can_auto_pass=True,
                summary="No failures to analyze",
            )

        flaky_count = sum(1 for v in verdicts if v.verdict == Classification.FLAKY)
        real_count = len(verdicts) - flaky_count
        avg_confidence = sum(v.confidence for v in verdicts) / len(verdicts)

        overall = Classification.FLAKY if real_count == 0 else Classification.LIKELY_REAL_FAILURE
        can_auto_pass = overall == Classification.FLAKY and avg_confidence >= self.policy.auto_pass_threshold

        return PipelineVerdict(
            run_id=run_id,
            verdict=overall,
            confidence=round_half_up(avg_confidence),
            can_auto_pass=can_auto_pass,
            failed_tests=verdicts,
            summary=summarize(flaky_count, real_count, avg_confidence),
        )


def summarize(flaky_count: int, real_count: int, avg_confidence: float) -> str:
    total = flaky_count + real_count
    if real_count == 0:
        noun = "failures are" if flaky_count > 1 else "failure is"
        return f"All {flaky_count} {noun} known flaky ({round_half_up(avg_confidence)}% avg confidence)"
    if flaky_count == 0:
        noun = "failures need" if real_count > 1 else "failure needs"
        return f"{real_count} {noun} investigation"
    need = "need" if real_count > 1 else "needs"
    return f"{flaky_count} of {total} failures are flaky. {real_count} {need} investigation."
