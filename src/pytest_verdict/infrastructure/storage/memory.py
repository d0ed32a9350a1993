"""In-memory result store with optional JSON file persistence."""

import json
import threading
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from pytest_verdict.domains.reliability.models import (
    ErrorSignature,
    HealthSnapshot,
    Outcome,
    ResultRecord,
    SkipRule,
    TrackedTest,
    utcnow,
)
from pytest_verdict.errors import StoreError


class StoreSnapshot(BaseModel):
    """Serialized form of a store."""
    version: int = 1
    tests: List[TrackedTest] = Field(default_factory=list)
    results: List[ResultRecord] = Field(default_factory=list)
    health: List[HealthSnapshot] = Field(default_factory=list)
    signatures: List[ErrorSignature] = Field(default_factory=list)
    skip_rules: List[SkipRule] = Field(default_factory=list)


class InMemoryResultStore:
    """Thread-safe implementation of the ResultStore protocol.

    Every write replaces a whole row under a lock, so concurrent updates of
    the same row resolve as last write wins.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._tests: Dict[str, TrackedTest] = {}
        self._results: List[ResultRecord] = []
        self._health: Dict[str, HealthSnapshot] = {}
        self._signatures: Dict[Tuple[str, str], ErrorSignature] = {}
        self._rules: Dict[str, SkipRule] = {}

    # -------------------------------------------------------------------------
    # Tests
    # -------------------------------------------------------------------------

    def get_test(self, test_id: str) -> Optional[TrackedTest]:
        return self._tests.get(test_id)

    def find_test(self, repository: str, file_path: str, title: str, project_name: str) -> Optional[TrackedTest]:
        identity = (repository, file_path, title, project_name)
        with self._lock:
            return next((t for t in self._tests.values() if t.identity == identity), None)

    def register_test(
        self,
        repository: str,
        file_path: str,
        title: str,
        project_name: str = "default",
        tags: Optional[List[str]] = None,
    ) -> TrackedTest:
        """Returns the test with this identity, creating or restoring it as needed."""
        with self._lock:
            existing = self.find_test(repository, file_path, title, project_name)
            if existing is None:
                test = TrackedTest(
                    repository=repository,
                    file_path=file_path,
                    title=title,
                    project_name=project_name,
                    tags=list(tags or []),
                )
            else:
                update = {"last_seen_at": utcnow()}
                if tags is not None:
                    update["tags"] = list(tags)
                if existing.is_deleted:
                    logger.info(f"Restoring deleted test {existing.id} ({title})")
                    update.update({"is_deleted": False, "deleted_at": None, "deleted_reason": None})
                test = existing.model_copy(update=update)
            self._tests[test.id] = test
            return test

    def soft_delete_test(self, test_id: str, reason: Optional[str] = None) -> Optional[TrackedTest]:
        """Hides a test. Its history is kept."""
        with self._lock:
            test = self._tests.get(test_id)
            if test is None:
                return None
            test = test.model_copy(update={"is_deleted": True, "deleted_at": utcnow(), "deleted_reason": reason})
            self._tests[test_id] = test
            return test

    # -------------------------------------------------------------------------
    # Results
    # -------------------------------------------------------------------------

    def add_result(self, record: ResultRecord) -> None:
        with self._lock:
            self._results.append(record)

    def results_for_run(self, run_id: str) -> List[ResultRecord]:
        with self._lock:
            return [r for r in self._results if r.run_id == run_id]

    def recent_final_results(self, test_id: str, limit: int) -> List[ResultRecord]:
        with self._lock:
            finals = [r for r in self._results if r.test_id == test_id and r.is_final_attempt]
        # Stable sort keeps insertion order for equal timestamps, newest insert first
        finals.reverse()
        finals.sort(key=lambda r: r.started_at, reverse=True)
        return finals[:limit]

    def failed_final_results(self, run_id: str) -> List[ResultRecord]:
        with self._lock:
            return [
                r for r in self._results
                if r.run_id == run_id and r.is_final_attempt and r.outcome == Outcome.UNEXPECTED
            ]

    # -------------------------------------------------------------------------
    # Health and signatures
    # -------------------------------------------------------------------------

    def get_health(self, test_id: str) -> Optional[HealthSnapshot]:
        return self._health.get(test_id)

    def save_health(self, snapshot: HealthSnapshot) -> None:
        with self._lock:
            self._health[snapshot.test_id] = snapshot

    def get_signature(self, test_id: str, signature_hash: str) -> Optional[ErrorSignature]:
        return self._signatures.get((test_id, signature_hash))

    def signatures_for_test(self, test_id: str) -> List[ErrorSignature]:
        with self._lock:
            return [s for s in self._signatures.values() if s.test_id == test_id]

    def signatures_by_hash(self, signature_hash: str, limit: int) -> List[ErrorSignature]:
        with self._lock:
            matches = [s for s in self._signatures.values() if s.signature_hash == signature_hash]
        return matches[:limit]

    def save_signature(self, signature: ErrorSignature) -> None:
        with self._lock:
            self._signatures[(signature.test_id, signature.signature_hash)] = signature

    # -------------------------------------------------------------------------
    # Skip rules
    # -------------------------------------------------------------------------

    def skip_rules(self, test_id: str) -> List[SkipRule]:
        with self._lock:
            return [r for r in self._rules.values() if r.test_id == test_id]

    def add_skip_rule(
        self,
        test_id: str,
        reason: str,
        branch_pattern: Optional[str] = None,
        env_pattern: Optional[str] = None,
    ) -> SkipRule:
        rule = SkipRule(test_id=test_id, reason=reason, branch_pattern=branch_pattern, env_pattern=env_pattern)
        with self._lock:
            self._rules[rule.id] = rule
        return rule

    def save_skip_rule(self, rule: SkipRule) -> None:
        with self._lock:
            self._rules[rule.id] = rule

    def delete_skip_rule(self, rule_id: str) -> Optional[SkipRule]:
        """Tombstones a rule, re-enabling the test."""
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None or not rule.is_active:
                return rule
            rule = rule.model_copy(update={"deleted_at": utcnow()})
            self._rules[rule_id] = rule
            return rule

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def snapshot(self) -> StoreSnapshot:
        with self._lock:
            return StoreSnapshot(
                tests=list(self._tests.values()),
                results=list(self._results),
                health=list(self._health.values()),
                signatures=list(self._signatures.values()),
                skip_rules=list(self._rules.values()),
            )

    def restore(self, snapshot: StoreSnapshot) -> None:
        with self._lock:
            self._tests = {t.id: t for t in snapshot.tests}
            self._results = list(snapshot.results)
            self._health = {h.test_id: h for h in snapshot.health}
            self._signatures = {(s.test_id, s.signature_hash): s for s in snapshot.signatures}
            self._rules = {r.id: r for r in snapshot.skip_rules}

    def save(self, path: Union[str, Path]) -> None:
        path = Path(path)
        data = self.snapshot().model_dump(mode="json")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w") as f:
                json.dump(data, f, indent=2)
        except OSError as e:
            raise StoreError(f"Cannot write store file {path}: {e}") from e
        logger.debug(f"Saved result store to {path}")

    @classmethod
    def load(cls, path: Union[str, Path]) -> "InMemoryResultStore":
        """Loads a store file. A missing file gives an empty store."""
        path = Path(path)
        store = cls()
        if not path.exists():
            return store
        try:
            with open(path) as f:
                data = json.load(f)
            store.restore(StoreSnapshot.model_validate(data))
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            raise StoreError(f"Cannot read store file {path}: {e}") from e
        logger.debug(f"Loaded result store from {path}")
        return store
