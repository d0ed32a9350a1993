from datetime import datetime, timedelta, timezone

import pytest

from pytest_verdict.config import Settings
from pytest_verdict.domains.reliability.models import (
    HealthSnapshot,
    Outcome,
    ResultRecord,
    ResultStatus,
    Trend,
)
from pytest_verdict.domains.reliability.services import ResultIngestor
from pytest_verdict.infrastructure.storage.memory import InMemoryResultStore

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)

_STATUS_BY_OUTCOME = {
    Outcome.EXPECTED: ResultStatus.PASSED,
    Outcome.FLAKY: ResultStatus.PASSED,
    Outcome.UNEXPECTED: ResultStatus.FAILED,
    Outcome.SKIPPED: ResultStatus.SKIPPED,
}


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def store():
    return InMemoryResultStore()


@pytest.fixture
def ingestor(store, settings):
    return ResultIngestor(store, settings)


@pytest.fixture
def make_result():
    """Factory for ResultRecord with a status derived from the outcome."""
    def _make(test_id, outcome, minutes=0, run_id="run-0", status=None, **kwargs):
        return ResultRecord(
            test_id=test_id,
            run_id=run_id,
            status=status or _STATUS_BY_OUTCOME[outcome],
            outcome=outcome,
            started_at=BASE_TIME + timedelta(minutes=minutes),
            **kwargs,
        )
    return _make


@pytest.fixture
def make_health():
    """Factory for HealthSnapshot with neutral defaults."""
    def _make(test_id, **overrides):
        values = dict(
            test_id=test_id,
            total_runs=10,
            passed_count=10,
            failed_count=0,
            skipped_count=0,
            flaky_count=0,
            pass_rate=100.0,
            flakiness_rate=0.0,
            recent_pass_rate=100.0,
            recent_flakiness_rate=0.0,
            health_divergence=0.0,
            avg_duration_ms=100,
            health_score=100,
            trend=Trend.STABLE,
            consecutive_passes=0,
            consecutive_failures=0,
        )
        values.update(overrides)
        return HealthSnapshot(**values)
    return _make
