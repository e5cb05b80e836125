"""
Domain subpackage for the sync feature.
"""

from .classification import ErrorCategory, ErrorClassification, ErrorSeverity, RecoveryStrategy
from .models import (
    ACTIVE_SYNC_STATUSES,
    TERMINAL_SYNC_STATUSES,
    BlockingSyncResult,
    Integration,
    Job,
    JobKind,
    JobRunResult,
    JobStatus,
    ProviderSyncResult,
    RefreshedTokens,
    SyncServiceName,
    SyncSession,
    SyncStatus,
)
from .progress import ProgressUpdate, ProgressView

__all__ = [
    "ACTIVE_SYNC_STATUSES",
    "TERMINAL_SYNC_STATUSES",
    "BlockingSyncResult",
    "ErrorCategory",
    "ErrorClassification",
    "ErrorSeverity",
    "Integration",
    "Job",
    "JobKind",
    "JobRunResult",
    "JobStatus",
    "ProgressUpdate",
    "ProgressView",
    "ProviderSyncResult",
    "RecoveryStrategy",
    "RefreshedTokens",
    "SyncServiceName",
    "SyncSession",
    "SyncStatus",
]
