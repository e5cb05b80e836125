"""
Sync API request/response models.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from app.features.sync.domain import (
    BlockingSyncResult,
    Job,
    JobRunResult,
    SyncServiceName,
    SyncSession,
    SyncStatus,
)


class SyncRunRequest(BaseModel):
    """Optional overrides merged over the last stored preferences."""

    preferences: dict[str, Any] = Field(default_factory=dict, description="Provider sync options")


class SyncStats(BaseModel):
    synced_items: int
    processed_jobs: int
    failed_jobs: int
    queued_jobs: int = 0
    batch_id: str | None = None


class SyncRunResponse(BaseModel):
    session_id: str
    message: str
    stats: SyncStats
    partial_failure: bool = False
    cancelled: bool = False

    @classmethod
    def from_result(cls, result: BlockingSyncResult) -> "SyncRunResponse":
        return cls(
            session_id=result.session_id,
            message=result.message,
            stats=SyncStats(
                synced_items=result.synced_items,
                processed_jobs=result.processed_jobs,
                failed_jobs=result.failed_jobs,
                queued_jobs=result.queued_jobs,
                batch_id=result.batch_id,
            ),
            partial_failure=result.partial_failure,
            cancelled=result.cancelled,
        )


class SyncSessionResponse(BaseModel):
    session_id: str
    service: SyncServiceName
    status: SyncStatus
    progress_percentage: int
    current_step: str | None = None
    total_items: int | None = None
    imported_items: int
    processed_items: int
    failed_items: int
    error_details: dict[str, Any] | None = None
    started_at: datetime
    completed_at: datetime | None = None

    @classmethod
    def from_session(cls, session: SyncSession) -> "SyncSessionResponse":
        return cls(
            session_id=session.id,
            service=session.service,
            status=session.status,
            progress_percentage=session.progress_percentage,
            current_step=session.current_step,
            total_items=session.total_items,
            imported_items=session.imported_items,
            processed_items=session.processed_items,
            failed_items=session.failed_items,
            error_details=session.error_details,
            started_at=session.started_at,
            completed_at=session.completed_at,
        )


class SyncSessionsListResponse(BaseModel):
    sessions: list[SyncSessionResponse]
    total_count: int


class CancelSessionResponse(BaseModel):
    session_id: str
    status: SyncStatus
    message: str = "Sync cancelled"


class ProcessJobsRequest(BaseModel):
    max_jobs: int = Field(default=25, ge=1, le=500, description="Maximum jobs to claim (1-500)")
    batch_id: str | None = Field(default=None, description="Only process jobs from this batch")


class ProcessJobsResponse(BaseModel):
    processed: int
    succeeded: int
    failed: int
    retried: int = 0
    errors: list[str] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: JobRunResult) -> "ProcessJobsResponse":
        return cls(
            processed=result.processed,
            succeeded=result.succeeded,
            failed=result.failed,
            retried=result.retried,
            errors=result.errors,
        )


class JobResponse(BaseModel):
    id: str
    kind: str
    status: str
    attempts: int
    batch_id: str | None = None
    created_at: datetime
    updated_at: datetime
    result: dict[str, Any] | None = None

    @classmethod
    def from_job(cls, job: Job) -> "JobResponse":
        return cls(
            id=job.id,
            kind=job.kind.value,
            status=job.status.value,
            attempts=job.attempts,
            batch_id=job.batch_id,
            created_at=job.created_at,
            updated_at=job.updated_at,
            result=job.result,
        )


class BatchStatusResponse(BaseModel):
    batch_id: str
    total: int
    counts: dict[str, int]
    complete: bool
    jobs: list[JobResponse] = Field(default_factory=list)


class ErrorSummaryResponse(BaseModel):
    window_hours: int
    total_errors: int
    by_category: dict[str, int]
    by_severity: dict[str, int]
    critical_errors: list[dict[str, Any]]
    patterns: list[dict[str, Any]]
    recovery_strategies: list[dict[str, Any]]
    urgency: dict[str, Any]
    recommendations: list[str]
