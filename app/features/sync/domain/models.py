"""
Domain models for the sync and job-processing feature.

Plain dataclasses mirroring the ``jobs``, ``sync_sessions`` and
``integrations`` rows plus the value objects passed between the runner,
the session tracker and the sync orchestration.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any


class JobKind(StrEnum):
    NORMALIZE = "normalize"
    EMBED = "embed"
    GMAIL_SYNC = "gmail_sync"
    CALENDAR_SYNC = "calendar_sync"
    DRIVE_SYNC = "drive_sync"


class JobStatus(StrEnum):
    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


class SyncServiceName(StrEnum):
    GMAIL = "gmail"
    CALENDAR = "calendar"
    DRIVE = "drive"

    @property
    def sync_job_kind(self) -> JobKind:
        return JobKind(f"{self.value}_sync")


class SyncStatus(StrEnum):
    STARTED = "started"
    IMPORTING = "importing"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_SYNC_STATUSES


ACTIVE_SYNC_STATUSES = frozenset(
    {SyncStatus.STARTED, SyncStatus.IMPORTING, SyncStatus.PROCESSING}
)
TERMINAL_SYNC_STATUSES = frozenset(
    {SyncStatus.COMPLETED, SyncStatus.FAILED, SyncStatus.CANCELLED}
)


@dataclass(slots=True)
class Job:
    """Represents a jobs row."""

    id: str
    user_id: str
    kind: JobKind
    payload: dict[str, Any]
    status: JobStatus
    attempts: int
    batch_id: str | None
    created_at: datetime
    updated_at: datetime
    result: dict[str, Any] | None = None


@dataclass(slots=True)
class JobRunResult:
    """Aggregate outcome of one ``process_user_jobs`` call."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    released: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "retried": self.retried,
            "released": self.released,
            "errors": list(self.errors),
        }


@dataclass(slots=True)
class SyncSession:
    """Represents a sync_sessions row."""

    id: str
    user_id: str
    service: SyncServiceName
    status: SyncStatus
    progress_percentage: int
    current_step: str | None
    total_items: int | None
    imported_items: int
    processed_items: int
    failed_items: int
    error_details: dict[str, Any] | None
    preferences: dict[str, Any]
    started_at: datetime
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass(slots=True)
class Integration:
    """
    A stored OAuth credential pair. Token fields hold ciphertext only.
    """

    user_id: str
    provider: str
    service: str
    access_token: bytes | None
    refresh_token: bytes | None
    expiry_date: datetime | None
    updated_at: datetime | None = None

    def __repr__(self) -> str:
        return (
            f"Integration(user_id={self.user_id!r}, provider={self.provider!r}, "
            f"service={self.service!r}, expiry_date={self.expiry_date!r})"
        )


@dataclass(slots=True)
class RefreshedTokens:
    """Plaintext result of a provider token refresh; never persisted as-is."""

    access_token: str
    expiry_date: datetime
    refresh_token: str | None = None

    def __repr__(self) -> str:
        return f"RefreshedTokens(expiry_date={self.expiry_date!r}, rotated={self.refresh_token is not None})"


@dataclass(slots=True)
class ProviderSyncResult:
    """What a provider sync client reports back after an import."""

    success: bool
    items_synced: int = 0
    raw_event_ids: list[str] = field(default_factory=list)
    error: Exception | None = None


@dataclass(slots=True)
class BlockingSyncResult:
    session_id: str
    message: str
    synced_items: int
    processed_jobs: int
    failed_jobs: int
    batch_id: str | None
    queued_jobs: int = 0
    partial_failure: bool = False
    cancelled: bool = False
