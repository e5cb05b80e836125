"""
Tests for the error summary, pattern grouping and urgency scoring.
"""

from datetime import UTC, datetime

import pytest

from app.features.sync.domain import ErrorCategory, JobKind, JobStatus, SyncStatus
from app.features.sync.domain.exceptions import ReauthorizationRequiredError
from app.features.sync.services.error_classifier import classify
from app.features.sync.services.error_summary import (
    ErrorSummaryService,
    FailureRecord,
    calculate_urgency,
    summarize,
)
from tests.conftest import FakeClock, FakeJobRepository, FakeSessionRepository, make_session

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


def _records(*errors, **classify_kwargs):
    return [
        FailureRecord(
            classification=classify(error, **classify_kwargs),
            occurred_at=NOW,
            source="job",
            reference_id=f"job-{i}",
        )
        for i, error in enumerate(errors)
    ]


def test_no_errors_reports_healthy():
    summary = summarize([], 24)

    assert summary["total_errors"] == 0
    assert summary["urgency"] == {"score": 0, "level": "low", "factors": []}
    assert summary["recommendations"] == ["No recent errors - system is healthy"]


def test_patterns_sorted_by_frequency_then_severity():
    records = _records(
        ConnectionError("connection refused"),
        ConnectionError("connection reset"),
        ConnectionError("timed out"),
        ReauthorizationRequiredError("invalid_grant"),
        Exception("Unauthorized"),
    )

    patterns = summarize(records, 24)["patterns"]

    assert [(p["category"], p["severity"], p["frequency"]) for p in patterns] == [
        ("network", "medium", 3),
        ("auth", "critical", 1),
        ("auth", "high", 1),
    ]
    assert patterns[0]["suggested_action"] == "Check network connectivity and retry logic"


def test_one_critical_auth_error_is_medium_urgency():
    records = _records(ReauthorizationRequiredError("refresh token revoked"))

    urgency = calculate_urgency(records, 24)

    assert urgency.score == 45
    assert urgency.level == "medium"
    assert "1 critical error(s)" in urgency.factors
    assert "Authentication errors detected" in urgency.factors


def test_three_critical_errors_reach_critical_level():
    records = _records(*(ReauthorizationRequiredError("revoked") for _ in range(3)))

    summary = summarize(records, 24)

    assert summary["urgency"]["score"] == 85
    assert summary["urgency"]["level"] == "critical"
    assert summary["recommendations"][0] == "Review and resolve critical errors immediately"
    assert len(summary["critical_errors"]) == 3
    assert summary["recovery_strategies"][0]["action"] == "reauthenticate"


def test_high_rate_of_rate_limits():
    records = _records(*(Exception("quota") for _ in range(12)), status_code=429)

    summary = summarize(records, 2)

    assert summary["by_category"] == {"rate_limit": 12}
    assert summary["urgency"]["score"] == 45
    assert "High failure rate: 6.0 errors/hour" in summary["urgency"]["factors"]
    assert "Address recurring rate_limit errors (medium severity) (12 occurrences)" in summary[
        "recommendations"
    ]
    assert "Implement exponential backoff for API calls" in summary["recommendations"]


@pytest.mark.asyncio
async def test_service_collects_failed_jobs_and_sessions():
    clock = FakeClock(datetime.now(UTC))
    jobs = FakeJobRepository(clock)
    sessions = FakeSessionRepository(clock)

    job = await jobs.insert_job("user-123", JobKind.NORMALIZE, {"raw_event_id": "r1"})
    await jobs.claim_queued_jobs("user-123", 1)
    await jobs.finish_job(
        job.id, JobStatus.ERROR, 3, {"error": classify(Exception("invalid input format")).to_error_details()}
    )
    sessions.add(
        make_session(
            status=SyncStatus.FAILED,
            started_at=clock(),
            completed_at=clock(),
            error_details=classify(ReauthorizationRequiredError("revoked")).to_error_details(),
        )
    )
    # another user's failure stays out of the summary
    sessions.add(
        make_session(
            user_id="someone-else",
            status=SyncStatus.FAILED,
            started_at=clock(),
            completed_at=clock(),
            error_details=classify(Exception("Unauthorized")).to_error_details(),
        )
    )

    summary = await ErrorSummaryService(jobs, sessions).get_summary("user-123", hours=500)

    assert summary["window_hours"] == 168
    assert summary["total_errors"] == 2
    assert summary["by_category"] == {
        ErrorCategory.VALIDATION.value: 1,
        ErrorCategory.AUTH.value: 1,
    }
    assert summary["by_severity"]["critical"] == 1
    assert summary["critical_errors"][0]["source"] == "session"
