"""Caller-side memoization of pipeline verdicts."""

import threading
import time
from typing import Callable, Dict, Optional, Tuple

from loguru import logger

from pytest_verdict.domains.reliability.models import PipelineVerdict
from pytest_verdict.domains.reliability.repositories import VerdictCache
from pytest_verdict.domains.reliability.services import VerdictEngine


class TTLVerdictCache:
    """VerdictCache whose entries expire after `ttl` seconds."""

    def __init__(self, ttl: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, Tuple[float, PipelineVerdict]] = {}
        self._lock = threading.Lock()

    def get(self, run_id: str) -> Optional[PipelineVerdict]:
        with self._lock:
            entry = self._entries.get(run_id)
            if entry is None:
                return None
            stored_at, verdict = entry
            if self._clock() - stored_at > self.ttl:
                del self._entries[run_id]
                return None
            return verdict

    def set(self, run_id: str, verdict: PipelineVerdict) -> None:
        with self._lock:
            self._entries[run_id] = (self._clock(), verdict)

    def invalidate(self, run_id: str) -> None:
        with self._lock:
            self._entries.pop(run_id, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class CachedPipelineAnalyzer:
    """Serves pipeline verdicts from a cache, computing them on a miss.

    Callers must call `results_recorded` when new results arrive for a run.
    """

    def __init__(self, engine: VerdictEngine, cache: VerdictCache):
        self.engine = engine
        self.cache = cache

    def analyze_pipeline(self, run_id: str) -> PipelineVerdict:
        cached = self.cache.get(run_id)
        if cached is not None:
            logger.debug(f"Verdict cache hit for run {run_id}")
            return cached

        verdict = self.engine.analyze_pipeline(run_id)
        self.cache.set(run_id, verdict)
        return verdict

    def results_recorded(self, run_id: str) -> None:
        self.cache.invalidate(run_id)
