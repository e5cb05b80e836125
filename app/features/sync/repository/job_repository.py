"""
Persistence for the ``jobs`` table.

Status changes out of ``processing`` are guarded with
``WHERE status = 'processing'`` and claims use ``FOR UPDATE SKIP LOCKED``,
so two runners racing for the same user never execute the same row twice.
"""

from datetime import UTC, datetime, timedelta
from typing import Any

from psycopg.types.json import Jsonb

from app.db.helpers import (
    DatabaseError,
    execute_query,
    fetch_all,
    fetch_one,
    with_db_retry,
)
from app.db.pool import db_pool
from app.features.sync.domain import Job, JobKind, JobStatus
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class JobRepositoryError(DatabaseError):
    """More specific exception for job persistence failures."""


class JobRepository:
    JOB_SELECT_COLUMNS = """
        id, user_id, kind, payload, status, attempts, batch_id,
        result, created_at, updated_at
    """

    @classmethod
    def _row_to_job(cls, row: dict | None) -> Job | None:
        if not row:
            return None

        return Job(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            kind=JobKind(row["kind"]),
            payload=row.get("payload") or {},
            status=JobStatus(row["status"]),
            attempts=row["attempts"],
            batch_id=str(row["batch_id"]) if row.get("batch_id") else None,
            result=row.get("result"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def insert_job(
        self, user_id: str, kind: JobKind, payload: dict[str, Any], batch_id: str | None = None
    ) -> Job:
        query = f"""
            INSERT INTO jobs (user_id, kind, payload, status, attempts, batch_id)
            VALUES (%s, %s, %s, 'queued', 0, %s)
            RETURNING {self.JOB_SELECT_COLUMNS}
        """
        row = await fetch_one(query, (user_id, kind.value, Jsonb(payload), batch_id))
        if not row:
            raise JobRepositoryError("Failed to insert job", operation="insert_job")
        return self._row_to_job(row)

    async def insert_jobs(
        self,
        user_id: str,
        kind: JobKind,
        payloads: list[dict[str, Any]],
        batch_id: str,
    ) -> list[Job]:
        """Insert every payload in one transaction; all rows or none."""
        query = f"""
            INSERT INTO jobs (user_id, kind, payload, status, attempts, batch_id)
            VALUES (%s, %s, %s, 'queued', 0, %s)
            RETURNING {self.JOB_SELECT_COLUMNS}
        """
        jobs: list[Job] = []
        async with db_pool.transaction() as conn:
            for payload in payloads:
                row = await fetch_one(
                    query, (user_id, kind.value, Jsonb(payload), batch_id), connection=conn
                )
                jobs.append(self._row_to_job(row))
        return jobs

    @with_db_retry()
    async def list_jobs(
        self,
        user_id: str,
        status: JobStatus | None = None,
        batch_id: str | None = None,
        limit: int = 100,
    ) -> list[Job]:
        conditions = ["user_id = %s"]
        params: list[Any] = [user_id]
        if status:
            conditions.append("status = %s")
            params.append(status.value)
        if batch_id:
            conditions.append("batch_id = %s")
            params.append(batch_id)
        params.append(limit)

        query = f"""
            SELECT {self.JOB_SELECT_COLUMNS}
            FROM jobs
            WHERE {" AND ".join(conditions)}
            ORDER BY created_at DESC
            LIMIT %s
        """
        return [self._row_to_job(row) for row in await fetch_all(query, tuple(params))]

    async def claim_queued_jobs(
        self,
        user_id: str,
        limit: int,
        batch_id: str | None = None,
        kinds: list[JobKind] | None = None,
    ) -> list[Job]:
        """
        Flip up to ``limit`` of the user's oldest queued jobs to processing
        and return them, in a single statement.
        """
        conditions = ["user_id = %s", "status = 'queued'"]
        params: list[Any] = [user_id]
        if batch_id:
            conditions.append("batch_id = %s")
            params.append(batch_id)
        if kinds:
            conditions.append("kind = ANY(%s)")
            params.append([kind.value for kind in kinds])
        params.append(limit)

        query = f"""
            UPDATE jobs
            SET status = 'processing', updated_at = NOW()
            WHERE id IN (
                SELECT id FROM jobs
                WHERE {" AND ".join(conditions)}
                ORDER BY created_at ASC, id ASC
                LIMIT %s
                FOR UPDATE SKIP LOCKED
            )
            RETURNING {self.JOB_SELECT_COLUMNS}
        """
        rows = await fetch_all(query, tuple(params))
        jobs = [self._row_to_job(row) for row in rows]
        # RETURNING does not preserve the subquery order
        jobs.sort(key=lambda job: (job.created_at, job.id))
        return jobs

    async def finish_job(
        self, job_id: str, status: JobStatus, attempts: int, result: dict[str, Any] | None
    ) -> bool:
        """Move a processing job to done, queued or error. False if it was not processing."""
        if status not in (JobStatus.DONE, JobStatus.QUEUED, JobStatus.ERROR):
            raise ValueError(f"Cannot finish a job into status '{status}'")

        query = """
            UPDATE jobs
            SET status = %s, attempts = %s, result = %s, updated_at = NOW()
            WHERE id = %s AND status = 'processing'
        """
        affected = await execute_query(
            query, (status.value, attempts, Jsonb(result) if result is not None else None, job_id)
        )
        if affected != 1:
            logger.warning("Job finish skipped, job no longer processing", job_id=job_id, status=status.value)
        return affected == 1

    async def release_jobs(self, job_ids: list[str]) -> int:
        """Return claimed-but-unstarted jobs to the queue without spending an attempt."""
        if not job_ids:
            return 0
        query = """
            UPDATE jobs
            SET status = 'queued', updated_at = NOW()
            WHERE id = ANY(%s) AND status = 'processing'
        """
        return await execute_query(query, (job_ids,))

    @with_db_retry()
    async def count_by_status(self, user_id: str, batch_id: str | None = None) -> dict[str, int]:
        query = "SELECT status, COUNT(*) AS count FROM jobs WHERE user_id = %s"
        params: tuple = (user_id,)
        if batch_id:
            query += " AND batch_id = %s"
            params = (user_id, batch_id)
        query += " GROUP BY status"

        counts = {status.value: 0 for status in JobStatus}
        for row in await fetch_all(query, params):
            counts[row["status"]] = int(row["count"])
        return counts

    @with_db_retry()
    async def list_failed_since(self, user_id: str, since: datetime, limit: int = 500) -> list[Job]:
        query = f"""
            SELECT {self.JOB_SELECT_COLUMNS}
            FROM jobs
            WHERE user_id = %s AND status = 'error' AND updated_at >= %s
            ORDER BY updated_at DESC
            LIMIT %s
        """
        return [self._row_to_job(row) for row in await fetch_all(query, (user_id, since, limit))]

    async def recover_stuck_jobs(self, threshold_minutes: int, max_attempts: int) -> dict[str, int]:
        """
        Handle jobs left in processing by a crashed request. The lost run counts
        as an attempt; rows that reach ``max_attempts`` go to error.
        """
        cutoff = datetime.now(UTC) - timedelta(minutes=threshold_minutes)
        failure = {
            "error": {
                "category": "system",
                "severity": "high",
                "retryable": False,
                "message": f"Job stuck in processing for more than {threshold_minutes} minutes",
                "recovery_strategies": ["retry_later", "contact_support"],
            }
        }

        async with db_pool.transaction() as conn:
            failed = await execute_query(
                """
                UPDATE jobs
                SET status = 'error', attempts = attempts + 1, result = %s, updated_at = NOW()
                WHERE status = 'processing' AND updated_at < %s AND attempts + 1 >= %s
                """,
                (Jsonb(failure), cutoff, max_attempts),
                connection=conn,
            )
            requeued = await execute_query(
                """
                UPDATE jobs
                SET status = 'queued', attempts = attempts + 1, updated_at = NOW()
                WHERE status = 'processing' AND updated_at < %s
                """,
                (cutoff,),
                connection=conn,
            )

        if failed or requeued:
            logger.warning("Recovered stuck jobs", requeued=requeued, failed=failed, cutoff=cutoff.isoformat())
        return {"requeued": requeued, "failed": failed}
