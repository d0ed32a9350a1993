"""Domain models for test reliability verdicts."""

import uuid
from typing import List, Optional
from datetime import datetime, timezone
from enum import Enum
from pydantic import BaseModel, Field, ConfigDict, field_validator

from pytest_verdict.domains.reliability.patterns import validate_glob_pattern


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class ResultStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    TIMED_OUT = "timedOut"
    SKIPPED = "skipped"
    INTERRUPTED = "interrupted"

    @property
    def is_failure(self) -> bool:
        return self in (ResultStatus.FAILED, ResultStatus.TIMED_OUT, ResultStatus.INTERRUPTED)


class Outcome(str, Enum):
    """Test-level classification of a run. FLAKY means it passed after retries."""
    EXPECTED = "expected"
    UNEXPECTED = "unexpected"
    FLAKY = "flaky"
    SKIPPED = "skipped"


class RecentOutcome(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    FLAKY = "flaky"
    SKIP = "skip"

    @classmethod
    def from_outcome(cls, outcome: Outcome) -> "RecentOutcome":
        if outcome == Outcome.EXPECTED:
            return cls.PASS
        if outcome == Outcome.UNEXPECTED:
            return cls.FAIL
        if outcome == Outcome.FLAKY:
            return cls.FLAKY
        return cls.SKIP


class Trend(str, Enum):
    CRITICAL = "critical"
    DEGRADING = "degrading"
    IMPROVING = "improving"
    STABLE = "stable"


class Classification(str, Enum):
    FLAKY = "flaky"
    LIKELY_REAL_FAILURE = "likely_real_failure"


class ArbitrationVerdict(str, Enum):
    FLAKY = "flaky"
    REAL_BUG = "real_bug"


class TrackedTest(BaseModel):
    """A test identified by repository, file, title and project."""
    id: str = Field(default_factory=new_id)
    repository: str
    file_path: str
    title: str
    project_name: str = "default"
    tags: List[str] = Field(default_factory=list)
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    deleted_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    last_seen_at: datetime = Field(default_factory=utcnow)

    @property
    def identity(self) -> tuple:
        return (self.repository, self.file_path, self.title, self.project_name)


class ResultRecord(BaseModel):
    """One execution attempt of a test within a run. Immutable once written."""
    id: str = Field(default_factory=new_id)
    test_id: str
    run_id: str
    status: ResultStatus
    outcome: Outcome
    duration_ms: int = 0
    retry: int = 0
    is_final_attempt: bool = True
    error_message: Optional[str] = None
    error_stack: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(frozen=True)


class HealthSnapshot(BaseModel):
    """Rolling health statistics of one test. Overwritten on every recompute."""
    test_id: str
    total_runs: int
    passed_count: int
    failed_count: int
    skipped_count: int
    flaky_count: int
    pass_rate: float
    flakiness_rate: float
    recent_pass_rate: float
    recent_flakiness_rate: float
    health_divergence: float
    avg_duration_ms: int
    health_score: int
    trend: Trend
    consecutive_passes: int
    consecutive_failures: int
    last_status: Optional[ResultStatus] = None
    last_run_at: Optional[datetime] = None
    last_passed_at: Optional[datetime] = None
    last_failed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)


class ErrorSignature(BaseModel):
    """Recurrence record of one normalized error for one test."""
    test_id: str
    signature_hash: str
    normalized_message: str = ""
    occurrence_count: int = 1
    passed_after_count: int = 0
    awaiting_pass: bool = True
    first_seen_at: datetime = Field(default_factory=utcnow)
    last_seen_at: datetime = Field(default_factory=utcnow)


class SkipRule(BaseModel):
    """Instruction to skip a test, optionally scoped by branch and environment."""
    id: str = Field(default_factory=new_id)
    test_id: str
    branch_pattern: Optional[str] = None
    env_pattern: Optional[str] = None
    reason: str = Field(min_length=1)
    created_at: datetime = Field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @field_validator("branch_pattern", "env_pattern")
    @classmethod
    def _check_pattern(cls, value: Optional[str]) -> Optional[str]:
        return validate_glob_pattern(value)

    @property
    def is_active(self) -> bool:
        return self.deleted_at is None


class MatchResult(BaseModel):
    matches: bool
    matched_branch: Optional[bool] = None
    matched_env: Optional[bool] = None


class SkipDecision(BaseModel):
    """The rule that disables a test in the current context."""
    test_id: str
    rule_id: str
    reason: str
    matched_branch: Optional[bool] = None
    matched_env: Optional[bool] = None


class FlakinessSignals(BaseModel):
    """Historical inputs of the heuristic scorer."""
    flakiness_rate: float = 0.0
    recent_flakiness_rate: float = 0.0
    recent_outcomes: List[RecentOutcome] = Field(default_factory=list)
    error_seen_before: bool = False
    error_passed_after_count: int = 0
    consecutive_failures: int = 0
    consecutive_passes: int = 0
    health_score: int = 50
    health_divergence: float = 0.0

    model_config = ConfigDict(frozen=True)


class HeuristicResult(BaseModel):
    score: int = Field(ge=0, le=100)
    reasoning: List[str] = Field(default_factory=list)
    signals: FlakinessSignals


class ArbitrationResult(BaseModel):
    verdict: ArbitrationVerdict
    adjustment: int = Field(ge=-100, le=100)
    reasoning: str


class TestVerdict(BaseModel):
    """Verdict for one failing test."""
    __test__ = False

    test_id: str
    test_title: str
    file_path: str
    verdict: Classification
    confidence: int = Field(ge=0, le=100)
    reasoning: str
    signals: FlakinessSignals
    arbitration_used: bool = False
    error_message: Optional[str] = None
    error_stack: Optional[str] = None


class PipelineVerdict(BaseModel):
    """Aggregated verdict over the unexpected final failures of one run."""
    run_id: Optional[str] = None
    verdict: Classification
    confidence: int = Field(ge=0, le=100)
    can_auto_pass: bool
    failed_tests: List[TestVerdict] = Field(default_factory=list)
    summary: str
