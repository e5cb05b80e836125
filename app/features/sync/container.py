"""
Wiring for the sync feature.

``build_container`` is called once at startup; the result lives on
``app.state.sync`` and is handed to routes through a dependency. Tests build
their own container from fakes.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field

from app.config import settings
from app.features.sync.domain import SyncServiceName
from app.features.sync.repository import (
    IntegrationRepository,
    JobRepository,
    SyncSessionRepository,
)
from app.features.sync.services.blocking_sync_service import BlockingSyncService
from app.features.sync.services.error_summary import ErrorSummaryService
from app.features.sync.services.job_handlers import (
    EventEmbedder,
    EventNormalizer,
    build_handler_registry,
)
from app.features.sync.services.job_queue import JobQueue
from app.features.sync.services.job_runner import JobRunner
from app.features.sync.services.provider_clients import (
    GoogleTokenRefreshClient,
    ProviderSyncClient,
    TokenRefreshClient,
)
from app.features.sync.services.session_tracker import SyncSessionTracker
from app.features.sync.services.token_manager import TokenManager
from app.infrastructure.cache import LocalCacheBackend, QueryCache, RedisCacheBackend
from app.infrastructure.observability.logging import get_logger
from app.services.infrastructure.encryption_service import CredentialCipher, FernetCredentialCipher

logger = get_logger(__name__)


@dataclass
class SyncContainer:
    cache: QueryCache
    jobs: JobRepository
    sessions: SyncSessionRepository
    integrations: IntegrationRepository
    queue: JobQueue
    runner: JobRunner
    tracker: SyncSessionTracker
    token_manager: TokenManager
    blocking_sync: BlockingSyncService
    error_summary: ErrorSummaryService
    provider_clients: dict[SyncServiceName, ProviderSyncClient] = field(default_factory=dict)


def build_cache(redis_client=None) -> QueryCache:
    if settings.CACHE_BACKEND == "redis":
        if redis_client is None:
            raise RuntimeError("CACHE_BACKEND=redis requires an initialized Redis client")
        backend = RedisCacheBackend(
            redis_client, stale_grace_seconds=settings.CACHE_STALE_GRACE_SECONDS
        )
    else:
        backend = LocalCacheBackend(max_entries=settings.CACHE_MAX_ENTRIES)

    return QueryCache(
        backend,
        default_ttl_seconds=settings.CACHE_DEFAULT_TTL_SECONDS,
        sweep_interval_seconds=settings.CACHE_SWEEP_INTERVAL_SECONDS,
    )


def default_refresh_clients() -> dict[str, TokenRefreshClient]:
    if not settings.google_oauth_configured():
        logger.warning("Google OAuth not configured, token refresh disabled")
        return {}
    return {"google": GoogleTokenRefreshClient()}


def default_cipher() -> CredentialCipher | None:
    if not settings.ENCRYPTION_KEY:
        logger.warning("ENCRYPTION_KEY not configured, credential access disabled")
        return None
    return FernetCredentialCipher()


def build_container(
    cache: QueryCache | None = None,
    *,
    redis_client=None,
    provider_clients: Mapping[SyncServiceName, ProviderSyncClient] | None = None,
    refresh_clients: Mapping[str, TokenRefreshClient] | None = None,
    cipher: CredentialCipher | None = None,
    normalizer: EventNormalizer | None = None,
    embedder: EventEmbedder | None = None,
    jobs: JobRepository | None = None,
    sessions: SyncSessionRepository | None = None,
    integrations: IntegrationRepository | None = None,
) -> SyncContainer:
    cache = cache or build_cache(redis_client)
    jobs = jobs or JobRepository()
    sessions = sessions or SyncSessionRepository()
    integrations = integrations or IntegrationRepository()
    provider_clients = dict(provider_clients or {})

    tracker = SyncSessionTracker(sessions)
    queue = JobQueue(jobs, cache=cache)
    runner = JobRunner(
        jobs,
        build_handler_registry(normalizer, embedder, provider_clients),
        cache=cache,
    )
    token_manager = TokenManager(
        integrations,
        default_refresh_clients() if refresh_clients is None else refresh_clients,
        cipher=cipher if cipher is not None else default_cipher(),
        cache=cache,
    )
    blocking_sync = BlockingSyncService(
        tracker, queue, runner, token_manager, provider_clients, cache=cache
    )

    logger.info(
        "Sync container built",
        cache_backend=type(cache.backend).__name__,
        provider_clients=sorted(service.value for service in provider_clients),
        refresh_providers=sorted(token_manager.refresh_clients),
    )
    return SyncContainer(
        cache=cache,
        jobs=jobs,
        sessions=sessions,
        integrations=integrations,
        queue=queue,
        runner=runner,
        tracker=tracker,
        token_manager=token_manager,
        blocking_sync=blocking_sync,
        error_summary=ErrorSummaryService(jobs, sessions),
        provider_clients=provider_clients,
    )
