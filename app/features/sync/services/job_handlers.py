"""
Handlers dispatched by the job runner, one per ``JobKind``.

The actual normalization and embedding logic lives in external
collaborators; handlers adapt a ``Job`` to those collaborators and turn
their failures into exceptions the runner can classify.
"""

from collections.abc import Mapping
from typing import Any, Protocol

from app.features.sync.domain import Job, JobKind, SyncServiceName
from app.features.sync.domain.exceptions import ProviderServerError, ProviderValidationError
from app.features.sync.services.job_runner import JobHandler
from app.features.sync.services.progress import NullProgressReporter
from app.features.sync.services.provider_clients import ProviderSyncClient
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class EventNormalizer(Protocol):
    async def normalize(self, user_id: str, payload: dict[str, Any]) -> dict[str, Any] | None: ...


class EventEmbedder(Protocol):
    async def embed(self, user_id: str, payload: dict[str, Any]) -> dict[str, Any] | None: ...


def make_normalize_handler(normalizer: EventNormalizer) -> JobHandler:
    async def handle(job: Job) -> dict[str, Any] | None:
        if not job.payload.get("raw_event_id"):
            raise ProviderValidationError("normalize job payload is missing raw_event_id")
        return await normalizer.normalize(job.user_id, job.payload)

    return handle


def make_embed_handler(embedder: EventEmbedder) -> JobHandler:
    async def handle(job: Job) -> dict[str, Any] | None:
        return await embedder.embed(job.user_id, job.payload)

    return handle


def make_provider_sync_handler(client: ProviderSyncClient) -> JobHandler:
    """Run a provider import as a queued job (no live session to report to)."""

    async def handle(job: Job) -> dict[str, Any]:
        options = job.payload.get("options") or {}
        result = await client.sync(job.user_id, options, NullProgressReporter())
        if not result.success:
            if result.error is not None:
                raise result.error
            raise ProviderServerError(
                f"{client.service} sync reported failure without an error",
                provider=client.provider,
            )
        return {"items_synced": result.items_synced, "raw_event_ids": list(result.raw_event_ids)}

    return handle


def build_handler_registry(
    normalizer: EventNormalizer | None = None,
    embedder: EventEmbedder | None = None,
    provider_clients: Mapping[SyncServiceName, ProviderSyncClient] | None = None,
) -> dict[JobKind, JobHandler]:
    """
    Wire whichever collaborators are available. Kinds without a handler are
    failed by the runner as non-retryable validation errors.
    """
    handlers: dict[JobKind, JobHandler] = {}
    if normalizer is not None:
        handlers[JobKind.NORMALIZE] = make_normalize_handler(normalizer)
    if embedder is not None:
        handlers[JobKind.EMBED] = make_embed_handler(embedder)
    for service, client in (provider_clients or {}).items():
        handlers[service.sync_job_kind] = make_provider_sync_handler(client)

    logger.debug("Job handlers registered", kinds=sorted(kind.value for kind in handlers))
    return handlers
