"""
Job queue: persisted units of work for the runner.

Enqueue performs no payload deduplication; enqueuing the same logical item
twice creates two independent jobs.
"""

import uuid
from typing import Any

from app.config import settings
from app.features.sync.domain import Job, JobKind, JobStatus
from app.infrastructure.cache import keys as cache_keys
from app.infrastructure.cache import QueryCache
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

JOB_COUNTS_TTL_SECONDS = 30


def new_batch_id() -> str:
    return str(uuid.uuid4())


class JobQueue:
    def __init__(self, repository, cache: QueryCache | None = None):
        self.repository = repository
        self.cache = cache

    async def enqueue(
        self,
        kind: JobKind | str,
        payload: dict[str, Any],
        user_id: str,
        batch_id: str | None = None,
    ) -> str:
        kind = JobKind(kind)
        if not isinstance(payload, dict):
            raise ValueError("Job payload must be a mapping")

        job = await self.repository.insert_job(user_id, kind, payload, batch_id)
        await self._invalidate(user_id)
        logger.info("Job enqueued", job_id=job.id, user_id=user_id, kind=kind.value, batch_id=batch_id)
        return job.id

    async def enqueue_batch(
        self,
        user_id: str,
        kind: JobKind | str,
        items: list[dict[str, Any]],
        batch_id: str | None = None,
    ) -> list[str]:
        """Insert one job per item under a shared batch id, atomically."""
        kind = JobKind(kind)
        if not items:
            return []
        if any(not isinstance(item, dict) for item in items):
            raise ValueError("Job payloads must be mappings")

        batch_id = batch_id or new_batch_id()
        jobs = await self.repository.insert_jobs(user_id, kind, items, batch_id)
        await self._invalidate(user_id)
        logger.info(
            "Job batch enqueued",
            user_id=user_id,
            kind=kind.value,
            batch_id=batch_id,
            job_count=len(jobs),
        )
        return [job.id for job in jobs]

    async def get_batch_status(self, user_id: str, batch_id: str) -> dict[str, Any]:
        counts = await self.repository.count_by_status(user_id, batch_id)
        total = sum(counts.values())
        finished = counts[JobStatus.DONE.value] + counts[JobStatus.ERROR.value]
        return {
            "batch_id": batch_id,
            "total": total,
            "counts": counts,
            "complete": total > 0 and finished == total,
        }

    async def get_job_counts(self, user_id: str) -> dict[str, int]:
        if self.cache is None:
            return await self.repository.count_by_status(user_id)
        return await self.cache.get(
            cache_keys.job_counts(user_id),
            lambda: self.repository.count_by_status(user_id),
            ttl_seconds=JOB_COUNTS_TTL_SECONDS,
        )

    async def list_jobs(
        self,
        user_id: str,
        status: JobStatus | None = None,
        batch_id: str | None = None,
        limit: int = 100,
    ) -> list[Job]:
        return await self.repository.list_jobs(user_id, status, batch_id, min(limit, 500))

    async def recover_stuck_jobs(self, threshold_minutes: int | None = None) -> dict[str, int]:
        return await self.repository.recover_stuck_jobs(
            threshold_minutes or settings.JOB_STUCK_THRESHOLD_MINUTES,
            settings.JOB_MAX_ATTEMPTS,
        )

    async def _invalidate(self, user_id: str) -> None:
        if self.cache is not None:
            await cache_keys.invalidate_jobs(self.cache, user_id)
