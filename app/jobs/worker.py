"""
Generic background worker runner.

Reads the desired job name from CLI args or the WORKER_JOB environment
variable, wires the sync services and runs that job once.
"""

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable

from app.db.pool import db_pool
from app.features.sync.container import SyncContainer, build_container
from app.infrastructure.observability.logging import get_logger, setup_logging
from app.jobs.session_cleanup_job import SessionCleanupJob
from app.jobs.stuck_job_recovery_job import StuckJobRecoveryJob
from app.jobs.token_refresh_job import TokenRefreshJob

logger = get_logger(__name__)

JobCoroutine = Callable[[SyncContainer], Awaitable[dict]]


async def run_token_refresh(container: SyncContainer) -> dict:
    return await TokenRefreshJob(container.token_manager).run_once()


async def run_session_cleanup(container: SyncContainer) -> dict:
    return await SessionCleanupJob(container.tracker).run_once()


async def run_stuck_job_recovery(container: SyncContainer) -> dict:
    return await StuckJobRecoveryJob(container.queue).run_once()


JOB_REGISTRY: dict[str, JobCoroutine] = {
    "token_refresh": run_token_refresh,
    "session_cleanup": run_session_cleanup,
    "stuck_job_recovery": run_stuck_job_recovery,
}


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", "stuck_job_recovery").strip().lower()


async def run_worker(job_name: str | None = None, container: SyncContainer | None = None) -> dict:
    """Run the requested background job once."""
    name = (job_name or _resolve_job_name()).strip().lower()
    if name not in JOB_REGISTRY:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY.keys()))}"
        )

    logger.info("Starting background worker", job=name)

    if container is not None:
        return await JOB_REGISTRY[name](container)

    await db_pool.initialize()
    try:
        return await JOB_REGISTRY[name](build_container())
    finally:
        await db_pool.close()


def main() -> None:
    """CLI entrypoint."""
    setup_logging()
    job_name = _resolve_job_name()
    asyncio.run(run_worker(job_name))


if __name__ == "__main__":
    main()
