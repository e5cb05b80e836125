"""
Token Manager: decrypts, refreshes and re-encrypts provider credentials.

Plaintext tokens only exist inside this module for the duration of a call.
Refreshes for the same (user, provider, service) are serialized so two
concurrent callers never spend the same refresh token twice.
"""

import asyncio
from collections.abc import Callable, Mapping
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import Any

from app.config import settings
from app.features.sync.domain import ErrorCategory, Integration, RefreshedTokens
from app.features.sync.domain.exceptions import (
    ConfigurationError,
    IntegrationNotFoundError,
    OAuthConfigurationError,
    ProviderNetworkError,
    ProviderServerError,
    ReauthorizationRequiredError,
)
from app.features.sync.services.error_classifier import classify
from app.features.sync.services.provider_clients import TokenRefreshClient
from app.infrastructure.cache import QueryCache
from app.infrastructure.cache import keys as cache_keys
from app.infrastructure.observability.logging import get_logger
from app.services.infrastructure.encryption_service import CredentialCipher, EncryptionError

logger = get_logger(__name__)

EXPIRY_CACHE_TTL_SECONDS = 300


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TokenManager:
    def __init__(
        self,
        integrations,
        refresh_clients: Mapping[str, TokenRefreshClient],
        cipher: CredentialCipher | None = None,
        cache: QueryCache | None = None,
        refresh_buffer_minutes: int | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.integrations = integrations
        self.refresh_clients = dict(refresh_clients)
        self.cipher = cipher
        self.cache = cache
        self.refresh_buffer = timedelta(
            minutes=(
                settings.TOKEN_REFRESH_BUFFER_MINUTES
                if refresh_buffer_minutes is None
                else refresh_buffer_minutes
            )
        )
        self._clock = clock
        self._locks: dict[tuple[str, str, str], asyncio.Lock] = {}
        self._lock_users: dict[tuple[str, str, str], int] = {}

    def ensure_configured(self, provider: str) -> None:
        """Raise ``OAuthConfigurationError`` unless refresh can work for ``provider``."""
        if self.cipher is None:
            raise OAuthConfigurationError("ENCRYPTION_KEY not configured", provider=provider)
        if provider not in self.refresh_clients:
            raise OAuthConfigurationError(
                f"No token refresh client configured for provider '{provider}'", provider=provider
            )

    async def ensure_integration(self, user_id: str, provider: str, service: str) -> Integration:
        integration = await self.integrations.get_integration(user_id, provider, service)
        if integration is None:
            raise IntegrationNotFoundError(user_id, provider, service)
        return integration

    def _needs_refresh(self, expiry_date: datetime | None) -> bool:
        if expiry_date is None:
            return True
        return expiry_date - self._clock() <= self.refresh_buffer

    async def _cached_expiry(self, user_id: str, provider: str, service: str) -> datetime | None:
        async def load() -> str | None:
            integration = await self.ensure_integration(user_id, provider, service)
            return integration.expiry_date.isoformat() if integration.expiry_date else None

        if self.cache is None:
            raw = await load()
        else:
            raw = await self.cache.get(
                cache_keys.integration_expiry(user_id, provider, service),
                load,
                ttl_seconds=EXPIRY_CACHE_TTL_SECONDS,
            )
        return datetime.fromisoformat(raw) if raw else None

    async def get_status(self, user_id: str, provider: str, service: str) -> dict[str, Any]:
        """
        Report credential health, refreshing first when the cached expiry has
        passed or falls inside the refresh buffer.
        """
        expiry = await self._cached_expiry(user_id, provider, service)
        refreshed = False

        if self._needs_refresh(expiry):
            _, tokens = await self._refresh(user_id, provider, service, force=False)
            if tokens is not None:
                expiry = tokens.expiry_date
                refreshed = True
            else:
                expiry = await self._cached_expiry(user_id, provider, service)

        now = self._clock()
        return {
            "user_id": user_id,
            "provider": provider,
            "service": service,
            "connected": True,
            "expiry_date": expiry.isoformat() if expiry else None,
            "expires_in_seconds": int((expiry - now).total_seconds()) if expiry else None,
            "refreshed": refreshed,
        }

    async def refresh(self, user_id: str, provider: str, service: str) -> datetime:
        """Refresh unconditionally and return the new expiry."""
        _, tokens = await self._refresh(user_id, provider, service, force=True)
        return tokens.expiry_date

    async def handle_auth_failure(self, user_id: str, provider: str, service: str) -> datetime:
        """Force a refresh after a provider call failed with an auth-shaped error."""
        logger.info(
            "Refreshing credentials after auth failure",
            user_id=user_id,
            provider=provider,
            service=service,
        )
        return await self.refresh(user_id, provider, service)

    async def get_access_token(self, user_id: str, provider: str, service: str) -> str:
        """Return a usable plaintext access token, refreshing first if it is about to expire."""
        self.ensure_configured(provider)
        integration = await self.ensure_integration(user_id, provider, service)

        if self._needs_refresh(integration.expiry_date):
            integration, tokens = await self._refresh(user_id, provider, service, force=False)
            if tokens is not None:
                return tokens.access_token

        if integration.access_token is None:
            raise ReauthorizationRequiredError("Integration has no access token", provider=provider)
        return self._decrypt(integration.access_token, provider, "access")

    async def find_expiring(
        self, provider: str, buffer_minutes: int | None = None, limit: int = 200
    ) -> list[Integration]:
        buffer = self.refresh_buffer if buffer_minutes is None else timedelta(minutes=buffer_minutes)
        return await self.integrations.list_expiring(provider, self._clock() + buffer, limit)

    @asynccontextmanager
    async def _refresh_lock(self, key: tuple[str, str, str]):
        """Hold the per-credential lock; the entry is dropped once nobody holds or awaits it."""
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    async def _refresh(
        self, user_id: str, provider: str, service: str, *, force: bool
    ) -> tuple[Integration, RefreshedTokens | None]:
        self.ensure_configured(provider)

        async with self._refresh_lock((user_id, provider, service)):
            # re-read under the lock; a concurrent caller may have refreshed already
            integration = await self.ensure_integration(user_id, provider, service)
            if not force and not self._needs_refresh(integration.expiry_date):
                return integration, None

            try:
                tokens = await self._perform_refresh(integration)
            except ReauthorizationRequiredError:
                # the cached expiry would keep reporting a dead credential as connected
                if self.cache is not None:
                    await cache_keys.invalidate_integration(self.cache, user_id, provider, service)
                raise
            await self._persist(integration, tokens)
            return integration, tokens

    async def _perform_refresh(self, integration: Integration) -> RefreshedTokens:
        provider = integration.provider
        client = self.refresh_clients[provider]

        if integration.refresh_token is None:
            raise ReauthorizationRequiredError(
                "No refresh token stored; re-authorization required", provider=provider
            )
        refresh_token = self._decrypt(integration.refresh_token, provider, "refresh")

        log_ctx = {
            "user_id": integration.user_id,
            "provider": provider,
            "service": integration.service,
        }
        try:
            return await client.refresh(refresh_token)

        except (ReauthorizationRequiredError, ConfigurationError):
            logger.warning("Token refresh requires user action", **log_ctx)
            raise

        except Exception as e:
            if "invalid_grant" in str(e).lower():
                logger.warning("Refresh token rejected (invalid_grant)", **log_ctx)
                raise ReauthorizationRequiredError(
                    "Refresh token was revoked or expired; re-authorization required",
                    provider=provider,
                    error_code="invalid_grant",
                ) from e

            classification = classify(e, context=log_ctx)
            logger.error(
                "Token refresh failed",
                category=classification.category.value,
                error_type=type(e).__name__,
                **log_ctx,
            )
            if classification.category in (ErrorCategory.NETWORK, ErrorCategory.RATE_LIMIT):
                raise ProviderNetworkError(f"Token refresh failed: {e}", provider=provider) from e
            raise ProviderServerError(f"Token refresh failed: {e}", provider=provider) from e

    async def _persist(self, integration: Integration, tokens: RefreshedTokens) -> None:
        try:
            access = self.cipher.encrypt(tokens.access_token)
            rotated = self.cipher.encrypt(tokens.refresh_token) if tokens.refresh_token else None
        except EncryptionError as e:
            raise ProviderServerError(
                f"Could not encrypt refreshed tokens: {e}", provider=integration.provider
            ) from e

        await self.integrations.update_tokens(
            integration.user_id,
            integration.provider,
            integration.service,
            access,
            rotated,
            tokens.expiry_date,
        )

        if self.cache is not None:
            await self.cache.set(
                cache_keys.integration_expiry(
                    integration.user_id, integration.provider, integration.service
                ),
                tokens.expiry_date.isoformat(),
                ttl_seconds=EXPIRY_CACHE_TTL_SECONDS,
            )

        logger.info(
            "Integration credentials refreshed",
            user_id=integration.user_id,
            provider=integration.provider,
            service=integration.service,
            expiry_date=tokens.expiry_date.isoformat(),
            rotated_refresh_token=rotated is not None,
        )

    def _decrypt(self, ciphertext: bytes, provider: str, which: str) -> str:
        try:
            return self.cipher.decrypt(ciphertext)
        except EncryptionError as e:
            raise ReauthorizationRequiredError(
                f"Stored {which} token could not be decrypted; re-authorization required",
                provider=provider,
            ) from e
