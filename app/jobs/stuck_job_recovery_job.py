"""
Recovery for jobs stranded in ``processing``.

A request that dies mid-run leaves its claimed jobs in ``processing``
forever. This job requeues those older than the threshold, or fails them
when the lost run used their last attempt.
"""

from app.config import settings
from app.features.sync.services.job_queue import JobQueue
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class StuckJobRecoveryJob:
    def __init__(self, queue: JobQueue, threshold_minutes: int | None = None):
        self.queue = queue
        self.threshold_minutes = threshold_minutes or settings.JOB_STUCK_THRESHOLD_MINUTES

    async def run_once(self) -> dict:
        logger.info("Recovering stuck jobs", threshold_minutes=self.threshold_minutes)
        counts = await self.queue.recover_stuck_jobs(self.threshold_minutes)

        result = {"job_run": "stuck_job_recovery", "threshold_minutes": self.threshold_minutes, **counts}
        if counts["requeued"] or counts["failed"]:
            logger.warning("Stuck jobs recovered", **result)
        else:
            logger.info("No stuck jobs found", **result)
        return result
