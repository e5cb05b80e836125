"""
Persistence layer for the sync feature.
"""

from .integration_repository import IntegrationRepository
from .job_repository import JobRepository, JobRepositoryError
from .sync_session_repository import SyncSessionRepository, SyncSessionRepositoryError

__all__ = [
    "IntegrationRepository",
    "JobRepository",
    "JobRepositoryError",
    "SyncSessionRepository",
    "SyncSessionRepositoryError",
]
