"""
Job runner: claims a user's queued jobs and executes them inline.

Retry rule: each finished execution spends one attempt. A failure that
classifies as retryable goes back to ``queued`` while attempts remain;
anything else lands in ``error`` with the classification stored in the
job's ``result``. Success stores the handler output.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping
from datetime import UTC, datetime
from typing import Any

from app.config import settings
from app.features.sync.domain import ErrorClassification, Job, JobKind, JobRunResult, JobStatus
from app.features.sync.domain.exceptions import UnknownJobKindError
from app.features.sync.services.error_classifier import classify
from app.features.sync.services.progress import NullProgressReporter, ProgressReporter
from app.infrastructure.cache import QueryCache
from app.infrastructure.cache import keys as cache_keys
from app.infrastructure.observability.logging import get_logger, log_job_outcome

logger = get_logger(__name__)

JobHandler = Callable[[Job], Awaitable[dict[str, Any] | None]]


class JobRunner:
    def __init__(
        self,
        repository,
        handlers: Mapping[JobKind, JobHandler],
        max_attempts: int | None = None,
        job_timeout_seconds: float | None = None,
        cache: QueryCache | None = None,
    ):
        self.repository = repository
        self.handlers = dict(handlers)
        self.max_attempts = max_attempts or settings.JOB_MAX_ATTEMPTS
        self.job_timeout_seconds = job_timeout_seconds or settings.JOB_TIMEOUT_SECONDS
        self.cache = cache

    async def process_user_jobs(
        self,
        user_id: str,
        max_jobs: int | None = None,
        *,
        batch_id: str | None = None,
        kinds: list[JobKind] | None = None,
        reporter: ProgressReporter | None = None,
    ) -> JobRunResult:
        """
        Claim up to ``max_jobs`` of the user's oldest queued jobs and run them
        one by one.

        If ``reporter`` signals cancellation between jobs, the claimed jobs
        that have not started are released back to ``queued`` untouched.
        """
        limit = settings.JOB_DEFAULT_BATCH_SIZE if max_jobs is None else max_jobs
        result = JobRunResult()
        if limit <= 0:
            return result

        reporter = reporter or NullProgressReporter()
        jobs = await self.repository.claim_queued_jobs(user_id, limit, batch_id=batch_id, kinds=kinds)
        if not jobs:
            logger.debug("No queued jobs to process", user_id=user_id, batch_id=batch_id)
            return result

        logger.info("Processing jobs", user_id=user_id, claimed=len(jobs), batch_id=batch_id)

        for index, job in enumerate(jobs):
            if reporter.cancelled:
                remaining = [pending.id for pending in jobs[index:]]
                result.released = await self.repository.release_jobs(remaining)
                logger.info(
                    "Job processing cancelled, released remaining jobs",
                    user_id=user_id,
                    released=result.released,
                )
                break

            status, classification, error = await self._run_job(job)
            result.processed += 1
            if status is JobStatus.DONE:
                result.succeeded += 1
            else:
                # a requeued job is still pending, only ``error`` is a failure
                if status is JobStatus.QUEUED:
                    result.retried += 1
                else:
                    result.failed += 1
                result.errors.append(f"Job {job.id}: {error}")

            await reporter.report(
                progress_percentage=(index + 1) / len(jobs) * 100,
                processed_items=result.succeeded,
                failed_items=result.failed,
                current_step=f"Processed {index + 1} of {len(jobs)} items",
            )

        if self.cache is not None:
            await cache_keys.invalidate_jobs(self.cache, user_id)

        logger.info("Job processing finished", user_id=user_id, **result.to_dict())
        return result

    async def _run_job(self, job: Job) -> tuple[JobStatus, ErrorClassification | None, Exception | None]:
        started = time.monotonic()
        attempts = job.attempts + 1

        try:
            handler = self.handlers.get(job.kind)
            if handler is None:
                raise UnknownJobKindError(f"No handler registered for job kind '{job.kind.value}'")
            output = await asyncio.wait_for(handler(job), timeout=self.job_timeout_seconds)

        except Exception as e:
            classification = classify(
                e, context={"job_id": job.id, "kind": job.kind.value, "attempt": attempts}
            )
            status = (
                JobStatus.QUEUED
                if classification.retryable and attempts < self.max_attempts
                else JobStatus.ERROR
            )
            await self.repository.finish_job(
                job.id,
                status,
                attempts,
                {
                    "error": classification.to_error_details(
                        timestamp=datetime.now(UTC).isoformat()
                    ),
                },
            )
            log_job_outcome(
                job.id,
                job.kind.value,
                status.value,
                attempts,
                (time.monotonic() - started) * 1000,
                user_id=job.user_id,
                error_category=classification.category.value,
            )
            return status, classification, e

        await self.repository.finish_job(
            job.id, JobStatus.DONE, attempts, {"output": output} if output else None
        )
        log_job_outcome(
            job.id,
            job.kind.value,
            JobStatus.DONE.value,
            attempts,
            (time.monotonic() - started) * 1000,
            user_id=job.user_id,
        )
        return JobStatus.DONE, None, None
