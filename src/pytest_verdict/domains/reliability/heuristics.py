"""Deterministic confidence-of-flakiness scoring."""

from typing import List, Optional

from pytest_verdict.config.settings import ScoringPolicy
from pytest_verdict.domains.reliability.models import FlakinessSignals, HeuristicResult, RecentOutcome


class HeuristicScorer:
    """Adds up weighted signals into a 0-100 score with one reason per signal.

    Pure: the same signals always give the same score and reasons, in the
    same order.
    """

    def __init__(self, policy: Optional[ScoringPolicy] = None):
        self.policy = policy or ScoringPolicy()

    def score(self, signals: FlakinessSignals) -> HeuristicResult:
        p = self.policy
        score = 0
        reasoning: List[str] = []

        if signals.recent_flakiness_rate > p.high_flakiness_rate:
            score += p.high_flakiness_weight
            reasoning.append(f"High flakiness rate ({signals.recent_flakiness_rate:.1f}%)")

        recent_passes = sum(1 for o in signals.recent_outcomes if o == RecentOutcome.PASS)
        recent_total = sum(1 for o in signals.recent_outcomes if o != RecentOutcome.SKIP)
        if recent_passes >= p.min_passes_for_history and recent_total > 0:
            pass_ratio = recent_passes / recent_total
            if pass_ratio >= p.min_pass_ratio:
                score += p.pattern_match_weight
                reasoning.append(
                    f"Passed {recent_passes} of last {recent_total} runs ({pass_ratio * 100:.0f}%)"
                )

        if signals.error_seen_before and signals.error_passed_after_count > 0:
            score += p.error_seen_before_weight
            reasoning.append(
                f"Same error seen {signals.error_passed_after_count}x before, test later passed"
            )

        if signals.consecutive_failures < p.consecutive_failures_low and signals.consecutive_passes > 0:
            score += p.low_consecutive_failures_weight
            reasoning.append(
                f"Only {signals.consecutive_failures} consecutive failures, "
                f"had {signals.consecutive_passes} consecutive passes before"
            )

        if signals.health_score < p.health_score_low:
            score += p.low_health_score_weight
            reasoning.append(f"Low health score ({signals.health_score}/100)")

        return HeuristicResult(score=max(0, min(100, score)), reasoning=reasoning, signals=signals)

    def is_high_confidence(self, score: int) -> bool:
        """High-confidence scores skip arbitration."""
        return score >= self.policy.high_confidence_score


def score_heuristic(signals: FlakinessSignals, policy: Optional[ScoringPolicy] = None) -> HeuristicResult:
    return HeuristicScorer(policy).score(signals)


def is_high_confidence(score: int, policy: Optional[ScoringPolicy] = None) -> bool:
    return HeuristicScorer(policy).is_high_confidence(score)
