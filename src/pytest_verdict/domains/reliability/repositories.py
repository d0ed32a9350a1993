"""Storage interfaces consumed by the reliability services."""

from typing import List, Optional, Protocol

from pytest_verdict.domains.reliability.models import (
    ErrorSignature,
    HealthSnapshot,
    PipelineVerdict,
    ResultRecord,
    SkipRule,
    TrackedTest,
)


class ResultStore(Protocol):
    """Persistent store of tests, results, health rows, signatures and skip rules."""

    def get_test(self, test_id: str) -> Optional[TrackedTest]:
        ...

    def find_test(
        self, repository: str, file_path: str, title: str, project_name: str
    ) -> Optional[TrackedTest]:
        ...

    def add_result(self, record: ResultRecord) -> None:
        ...

    def recent_final_results(self, test_id: str, limit: int) -> List[ResultRecord]:
        """Final attempts of a test, newest first, at most `limit`."""
        ...

    def failed_final_results(self, run_id: str) -> List[ResultRecord]:
        """Unexpected final attempts of a run, in insertion order."""
        ...

    def get_health(self, test_id: str) -> Optional[HealthSnapshot]:
        ...

    def save_health(self, snapshot: HealthSnapshot) -> None:
        ...

    def get_signature(self, test_id: str, signature_hash: str) -> Optional[ErrorSignature]:
        ...

    def signatures_for_test(self, test_id: str) -> List[ErrorSignature]:
        ...

    def signatures_by_hash(self, signature_hash: str, limit: int) -> List[ErrorSignature]:
        ...

    def save_signature(self, signature: ErrorSignature) -> None:
        ...

    def skip_rules(self, test_id: str) -> List[SkipRule]:
        """All rules of a test, including tombstoned ones."""
        ...


class VerdictCache(Protocol):
    """Caller-owned memo of pipeline verdicts keyed by run id."""

    def get(self, run_id: str) -> Optional[PipelineVerdict]:
        ...

    def set(self, run_id: str, verdict: PipelineVerdict) -> None:
        ...

    def invalidate(self, run_id: str) -> None:
        ...
