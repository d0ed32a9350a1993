"""Rolling health statistics per test."""

import math
from typing import Iterable, List, Optional, Tuple

from pydantic import BaseModel

from pytest_verdict.domains.reliability.models import HealthSnapshot, Outcome, ResultRecord, Trend


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class OutcomeTally(BaseModel):
    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    flaky: int = 0
    total_duration_ms: int = 0

    @classmethod
    def of(cls, results: Iterable[ResultRecord]) -> "OutcomeTally":
        tally = cls()
        for r in results:
            tally.total += 1
            tally.total_duration_ms += r.duration_ms
            if r.outcome == Outcome.EXPECTED:
                tally.passed += 1
            elif r.outcome == Outcome.UNEXPECTED:
                tally.failed += 1
            elif r.outcome == Outcome.FLAKY:
                tally.flaky += 1
            elif r.outcome == Outcome.SKIPPED:
                tally.skipped += 1
        return tally

    @property
    def executed(self) -> int:
        # Skipped runs are excluded from the rate denominators
        return self.passed + self.failed + self.flaky

    @property
    def pass_rate(self) -> float:
        return self.passed / self.executed * 100 if self.executed else 0.0

    @property
    def flakiness_rate(self) -> float:
        return self.flaky / self.executed * 100 if self.executed else 0.0


def count_streaks(results: List[ResultRecord]) -> Tuple[int, int]:
    """Returns (consecutive_passes, consecutive_failures) from the newest result backwards.

    Only expected/unexpected outcomes take part; the scan stops at the first
    outcome of the opposite kind.
    """
    passes = 0
    failures = 0
    for r in results:
        if r.outcome == Outcome.EXPECTED:
            if failures:
                break
            passes += 1
        elif r.outcome == Outcome.UNEXPECTED:
            if passes:
                break
            failures += 1
    return passes, failures


def classify_trend(health_score: int, consecutive_passes: int, consecutive_failures: int) -> Trend:
    if health_score < 50:
        return Trend.CRITICAL
    if consecutive_failures >= 3:
        return Trend.DEGRADING
    if consecutive_passes >= 5 and health_score > 80:
        return Trend.IMPROVING
    return Trend.STABLE


class HealthTracker:
    """Computes a HealthSnapshot from the most recent final attempts of a test."""

    def __init__(self, window: int = 50, recent_window: int = 10):
        self.window = window
        self.recent_window = recent_window

    def recompute(self, test_id: str, recent_final_results: Iterable[ResultRecord]) -> Optional[HealthSnapshot]:
        """
        Returns the new snapshot, or None when there is no history.

        Non-final attempts are ignored. Results are ordered newest first before
        the window is applied.
        """
        results = [r for r in recent_final_results if r.is_final_attempt]
        if not results:
            return None

        results.sort(key=lambda r: r.started_at, reverse=True)
        results = results[:self.window]

        overall = OutcomeTally.of(results)
        recent = OutcomeTally.of(results[:self.recent_window])

        pass_rate = overall.pass_rate
        flakiness_rate = overall.flakiness_rate
        health_score = round_half_up(max(0.0, pass_rate - 2 * flakiness_rate))
        passes, failures = count_streaks(results)

        return HealthSnapshot(
            test_id=test_id,
            total_runs=overall.total,
            passed_count=overall.passed,
            failed_count=overall.failed,
            skipped_count=overall.skipped,
            flaky_count=overall.flaky,
            pass_rate=round(pass_rate, 2),
            flakiness_rate=round(flakiness_rate, 2),
            recent_pass_rate=round(recent.pass_rate, 2),
            recent_flakiness_rate=round(recent.flakiness_rate, 2),
            health_divergence=round(recent.pass_rate - pass_rate, 2),
            avg_duration_ms=round_half_up(overall.total_duration_ms / overall.total),
            health_score=health_score,
            trend=classify_trend(health_score, passes, failures),
            consecutive_passes=passes,
            consecutive_failures=failures,
            last_status=results[0].status,
            last_run_at=results[0].started_at,
            last_passed_at=next((r.started_at for r in results if r.outcome == Outcome.EXPECTED), None),
            last_failed_at=next((r.started_at for r in results if r.outcome == Outcome.UNEXPECTED), None),
        )


def compute_health(test_id: str, recent_final_results: Iterable[ResultRecord], window: int = 50) -> Optional[HealthSnapshot]:
    return HealthTracker(window=window).recompute(test_id, recent_final_results)
