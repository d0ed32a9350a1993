"""Flaky-test verdicts for CI pipelines."""

from pytest_verdict.domains.reliability.fingerprint import (
    ErrorFingerprinter,
    SignatureTracker,
    fingerprint_error,
    normalize_error_message,
)
from pytest_verdict.domains.reliability.health import HealthTracker, compute_health
from pytest_verdict.domains.reliability.heuristics import HeuristicScorer, score_heuristic
from pytest_verdict.domains.reliability.services import ResultIngestor, VerdictEngine
from pytest_verdict.domains.reliability.skip_rules import SkipRuleMatcher, match_skip_rule
from pytest_verdict.infrastructure.arbitration.client import ArbitrationClient
from pytest_verdict.infrastructure.storage.cache import CachedPipelineAnalyzer, TTLVerdictCache
from pytest_verdict.infrastructure.storage.memory import InMemoryResultStore

__version__ = "0.1.0"

__all__ = [
    "ArbitrationClient",
    "CachedPipelineAnalyzer",
    "ErrorFingerprinter",
    "HealthTracker",
    "HeuristicScorer",
    "InMemoryResultStore",
    "ResultIngestor",
    "SignatureTracker",
    "SkipRuleMatcher",
    "TTLVerdictCache",
    "VerdictEngine",
    "compute_health",
    "fingerprint_error",
    "match_skip_rule",
    "normalize_error_message",
    "score_heuristic",
]
