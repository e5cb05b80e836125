"""
Blocking sync: the client-facing import-then-process run.

One call creates a sync session, imports raw events through the provider
client, enqueues a normalize job per imported event under a fresh batch id
and runs those jobs inline. Progress flows through a ``ProgressChannel`` so
the import and the runner never write to the session row themselves.
"""

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from app.config import settings
from app.features.sync.domain import (
    BlockingSyncResult,
    ErrorCategory,
    JobKind,
    JobRunResult,
    JobStatus,
    ProviderSyncResult,
    SyncServiceName,
    SyncStatus,
)
from app.features.sync.domain.exceptions import (
    OAuthConfigurationError,
    ProviderServerError,
    SessionTerminalError,
    SyncFailedError,
)
from app.features.sync.services.error_classifier import classify
from app.features.sync.services.job_queue import JobQueue, new_batch_id
from app.features.sync.services.job_runner import JobRunner
from app.features.sync.services.progress import ProgressChannel, ProgressReporter
from app.features.sync.services.provider_clients import ProviderSyncClient
from app.features.sync.services.session_tracker import SyncSessionTracker
from app.features.sync.services.token_manager import TokenManager
from app.infrastructure.cache import QueryCache
from app.infrastructure.cache import keys as cache_keys
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

PREFERENCES_TTL_SECONDS = 600

# overall progress slices
IMPORT_START, IMPORT_END = 5, 70
PROCESS_START, PROCESS_END = 75, 99


class BlockingSyncService:
    def __init__(
        self,
        tracker: SyncSessionTracker,
        queue: JobQueue,
        runner: JobRunner,
        token_manager: TokenManager,
        provider_clients: Mapping[SyncServiceName, ProviderSyncClient],
        cache: QueryCache | None = None,
        provider_max_attempts: int | None = None,
        retry_delay_seconds: float | None = None,
        inline_max_jobs: int | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.tracker = tracker
        self.queue = queue
        self.runner = runner
        self.token_manager = token_manager
        self.provider_clients = dict(provider_clients)
        self.cache = cache
        self.provider_max_attempts = provider_max_attempts or settings.SYNC_PROVIDER_MAX_ATTEMPTS
        self.retry_delay_seconds = (
            settings.SYNC_PROVIDER_RETRY_DELAY_SECONDS
            if retry_delay_seconds is None
            else retry_delay_seconds
        )
        self.inline_max_jobs = inline_max_jobs or settings.SYNC_INLINE_MAX_JOBS
        self._sleep = sleep

    def _client_for(self, service: SyncServiceName) -> ProviderSyncClient:
        client = self.provider_clients.get(service)
        if client is None:
            raise OAuthConfigurationError(f"No provider client configured for {service.value} sync")
        return client

    async def _load_preferences(self, user_id: str, service: SyncServiceName) -> dict[str, Any]:
        if self.cache is None:
            return await self.tracker.latest_preferences(user_id, service)
        return await self.cache.get(
            cache_keys.sync_preferences(user_id, service.value),
            lambda: self.tracker.latest_preferences(user_id, service),
            ttl_seconds=PREFERENCES_TTL_SECONDS,
        )

    async def run(
        self,
        user_id: str,
        service: SyncServiceName | str,
        preferences: dict[str, Any] | None = None,
    ) -> BlockingSyncResult:
        """
        Run a full sync for one service.

        Raises:
            OAuthConfigurationError: no provider client or refresh capability configured
            IntegrationNotFoundError: the user never connected this service
            SyncFailedError: the run started but failed; the session holds the details
        """
        service = SyncServiceName(service)

        # fatal before any session exists
        client = self._client_for(service)
        self.token_manager.ensure_configured(client.provider)
        await self.token_manager.ensure_integration(user_id, client.provider, service.value)

        options = {**(await self._load_preferences(user_id, service)), **(preferences or {})}
        if preferences and self.cache is not None:
            await self.cache.set(
                cache_keys.sync_preferences(user_id, service.value),
                options,
                ttl_seconds=PREFERENCES_TTL_SECONDS,
            )

        session = await self.tracker.create_session(user_id, service, options)
        channel = ProgressChannel(self.tracker, session.id).start()
        reporter = channel.reporter()
        stage = "import"

        try:
            await reporter.report(
                status=SyncStatus.IMPORTING,
                progress_percentage=IMPORT_START,
                current_step=f"Importing {service.value} data...",
            )
            sync_result = await self._import(
                user_id, service, client, options, reporter.phase(IMPORT_START, IMPORT_END)
            )

            await channel.flush()
            if channel.cancelled:
                return await self._cancelled(channel, session.id, service)

            stage = "enqueue"
            batch_id = new_batch_id()
            job_ids = await self.queue.enqueue_batch(
                user_id,
                JobKind.NORMALIZE,
                [
                    {"raw_event_id": raw_id, "provider": client.provider, "service": service.value}
                    for raw_id in sync_result.raw_event_ids
                ],
                batch_id,
            )

            stage = "processing"
            await reporter.report(
                status=SyncStatus.PROCESSING,
                progress_percentage=PROCESS_START,
                imported_items=sync_result.items_synced,
                total_items=len(job_ids),
                current_step=f"Processing {len(job_ids)} imported items...",
            )

            run_result = JobRunResult()
            if job_ids:
                run_result = await self.runner.process_user_jobs(
                    user_id,
                    min(len(job_ids), self.inline_max_jobs),
                    batch_id=batch_id,
                    kinds=[JobKind.NORMALIZE],
                    reporter=reporter.phase(PROCESS_START, PROCESS_END),
                )

            await channel.close()
            if channel.cancelled:
                return await self._cancelled(channel, session.id, service, batch_id)

            stage = "finalize"
            # jobs past the inline cap or requeued for retry are left to the worker
            queued = 0
            if job_ids:
                batch = await self.queue.get_batch_status(user_id, batch_id)
                queued = batch["counts"][JobStatus.QUEUED.value]

            message = (
                f"{service.value} sync completed: {sync_result.items_synced} items imported, "
                f"{run_result.succeeded} processed"
            )
            if run_result.failed:
                message += f", {run_result.failed} failed"
            if queued:
                message += f", {queued} still queued"

            await self.tracker.mark_completed(
                session.id,
                {
                    "imported_items": sync_result.items_synced,
                    "processed_items": run_result.succeeded,
                    "failed_items": run_result.failed,
                },
                message=message,
            )

            logger.info(
                "Blocking sync finished",
                session_id=session.id,
                user_id=user_id,
                service=service.value,
                batch_id=batch_id,
                synced_items=sync_result.items_synced,
                queued_jobs=queued,
                **run_result.to_dict(),
            )
            return BlockingSyncResult(
                session_id=session.id,
                message=message,
                synced_items=sync_result.items_synced,
                processed_jobs=run_result.processed,
                failed_jobs=run_result.failed,
                batch_id=batch_id,
                queued_jobs=queued,
                partial_failure=run_result.failed > 0,
            )

        except SessionTerminalError:
            # the session was cancelled between the last progress update and finalize
            return await self._cancelled(channel, session.id, service)

        except Exception as e:
            await channel.close()
            classification = classify(
                e, context={"session_id": session.id, "service": service.value, "stage": stage}
            )
            details = classification.to_error_details(stage=stage)
            try:
                failed = await self.tracker.mark_failed(session.id, classification, stage)
                details = failed.error_details or details
            except SessionTerminalError:
                logger.info(
                    "Session already finished, keeping its final state",
                    session_id=session.id,
                )
                current = await self.tracker.get_session(session.id)
                if current.status is SyncStatus.CANCELLED:
                    # the cancel landed first, so the run reports cancelled
                    return await self._cancelled(channel, session.id, service)

            logger.error(
                "Blocking sync failed",
                session_id=session.id,
                user_id=user_id,
                service=service.value,
                stage=stage,
                category=classification.category.value,
                error_type=type(e).__name__,
            )
            raise SyncFailedError(
                f"{service.value} sync failed during {stage}: {e}", session.id, details
            ) from e

        finally:
            await channel.close()

    async def _import(
        self,
        user_id: str,
        service: SyncServiceName,
        client: ProviderSyncClient,
        options: dict[str, Any],
        reporter: ProgressReporter,
    ) -> ProviderSyncResult:
        """
        Call the provider client. An auth-shaped failure triggers exactly one
        forced token refresh; other retryable failures back off and retry up to
        ``provider_max_attempts``.
        """
        attempt = 1
        refreshed = False

        while True:
            try:
                result = await client.sync(user_id, options, reporter)
                if not result.success:
                    raise result.error or ProviderServerError(
                        f"{service.value} sync reported failure without an error",
                        provider=client.provider,
                    )
                return result

            except Exception as e:
                classification = classify(e, context={"service": service.value, "attempt": attempt})

                if (
                    classification.category is ErrorCategory.AUTH
                    and classification.retryable
                    and not refreshed
                ):
                    refreshed = True
                    await self.token_manager.handle_auth_failure(
                        user_id, client.provider, service.value
                    )
                    continue

                if classification.retryable and attempt < self.provider_max_attempts:
                    delay = self.retry_delay_seconds * 2 ** (attempt - 1)
                    logger.warning(
                        "Provider import failed, retrying",
                        service=service.value,
                        attempt=attempt,
                        delay=delay,
                        category=classification.category.value,
                    )
                    attempt += 1
                    await self._sleep(delay)
                    continue

                raise

    async def _cancelled(
        self,
        channel: ProgressChannel,
        session_id: str,
        service: SyncServiceName,
        batch_id: str | None = None,
    ) -> BlockingSyncResult:
        await channel.close()
        session = await self.tracker.get_session(session_id)
        logger.info("Blocking sync stopped after cancellation", session_id=session_id)
        return BlockingSyncResult(
            session_id=session_id,
            message=f"{service.value} sync cancelled",
            synced_items=session.imported_items,
            processed_jobs=session.processed_items + session.failed_items,
            failed_jobs=session.failed_items,
            batch_id=batch_id,
            cancelled=True,
        )
