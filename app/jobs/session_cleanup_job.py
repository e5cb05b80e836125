"""
Sync session retention job.

Deletes sync sessions started more than ``SYNC_SESSION_RETENTION_DAYS`` ago.
Active sessions that old are deleted too; nothing legitimately runs for days.

Usage:
    python -m app.jobs.worker session_cleanup
"""

from datetime import UTC, datetime

from app.config import settings
from app.features.sync.services.session_tracker import SyncSessionTracker
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class SessionCleanupJob:
    def __init__(self, tracker: SyncSessionTracker, retention_days: int | None = None):
        self.tracker = tracker
        self.retention_days = (
            settings.SYNC_SESSION_RETENTION_DAYS if retention_days is None else retention_days
        )
        self.is_running = False

    async def run_once(self) -> dict:
        if self.is_running:
            logger.warning("Session cleanup already running, skipping")
            return {"skipped": True, "reason": "already_running"}

        self.is_running = True
        start_time = datetime.now(UTC)
        logger.info("Starting sync session cleanup", retention_days=self.retention_days)

        try:
            deleted = await self.tracker.cleanup_old_sessions(self.retention_days)
        finally:
            self.is_running = False

        result = {
            "job_run": "session_cleanup",
            "retention_days": self.retention_days,
            "deleted_sessions": deleted,
            "duration_seconds": round((datetime.now(UTC) - start_time).total_seconds(), 2),
        }
        logger.info("Sync session cleanup completed", **result)
        return result
