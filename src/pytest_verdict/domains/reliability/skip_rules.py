"""Pre-execution skip rule matching."""

from fnmatch import fnmatchcase
from typing import Iterable, List, Optional
from urllib.parse import urlsplit

from loguru import logger

from pytest_verdict.domains.reliability.models import MatchResult, SkipDecision, SkipRule


def _match_segments(parts: List[str], pattern_parts: List[str]) -> bool:
    if not pattern_parts:
        return not parts

    head, rest = pattern_parts[0], pattern_parts[1:]
    if head == "**":
        while rest and rest[0] == "**":
            rest = rest[1:]
        return any(_match_segments(parts[i:], rest) for i in range(len(parts) + 1))

    return bool(parts) and fnmatchcase(parts[0], head) and _match_segments(parts[1:], rest)


def _glob_match(value: str, pattern: str) -> bool:
    # Per path segment: "*" stops at "/", "**" spans any number of segments.
    # fnmatch has no brace expansion or extglob.
    return _match_segments(value.lower().split("/"), pattern.lower().split("/"))


def _hostname(base_url: str) -> Optional[str]:
    try:
        return urlsplit(base_url).hostname
    except ValueError:
        return None


class SkipRuleMatcher:
    """Decides whether a skip rule applies to a branch and base URL."""

    def matches(self, rule: SkipRule, branch: Optional[str] = None, base_url: Optional[str] = None) -> MatchResult:
        has_branch_pattern = bool(rule.branch_pattern)
        has_env_pattern = bool(rule.env_pattern)

        # Global rule
        if not has_branch_pattern and not has_env_pattern:
            return MatchResult(matches=True)

        branch_matches = True
        env_matches = True

        if has_branch_pattern:
            branch_matches = bool(branch) and _glob_match(branch, rule.branch_pattern)

        if has_env_pattern:
            hostname = _hostname(base_url) if base_url else None
            env_matches = bool(hostname) and _glob_match(hostname, rule.env_pattern)

        return MatchResult(
            matches=branch_matches and env_matches,
            matched_branch=branch_matches if has_branch_pattern else None,
            matched_env=env_matches if has_env_pattern else None,
        )

    def first_matching_rule(
        self,
        rules: Iterable[SkipRule],
        branch: Optional[str] = None,
        base_url: Optional[str] = None,
    ) -> Optional[SkipDecision]:
        """
        Returns the decision of the newest active rule that matches, if any.

        Rules are evaluated by creation time, newest first, with the rule id as
        tie-breaker so the order does not depend on how the store returned them.
        """
        active = [r for r in rules if r.is_active]
        active.sort(key=lambda r: r.id)
        active.sort(key=lambda r: r.created_at, reverse=True)

        for rule in active:
            result = self.matches(rule, branch, base_url)
            if result.matches:
                logger.debug(f"Skip rule {rule.id} matches test {rule.test_id}")
                return SkipDecision(
                    test_id=rule.test_id,
                    rule_id=rule.id,
                    reason=rule.reason,
                    matched_branch=result.matched_branch,
                    matched_env=result.matched_env,
                )
        return None


def match_skip_rule(rule: SkipRule, branch: Optional[str] = None, base_url: Optional[str] = None) -> MatchResult:
    return SkipRuleMatcher().matches(rule, branch, base_url)
