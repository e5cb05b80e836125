"""
Tests for credential refresh and decryption.
"""

import asyncio
from datetime import timedelta

import httpx
import pytest

from app.features.sync.domain import Integration, RefreshedTokens
from app.features.sync.domain.exceptions import (
    IntegrationNotFoundError,
    OAuthConfigurationError,
    ProviderNetworkError,
    ProviderRateLimitError,
    ProviderServerError,
    ReauthorizationRequiredError,
)
from app.features.sync.services.token_manager import TokenManager
from app.infrastructure.cache import LocalCacheBackend, QueryCache

KEY = ("user-123", "google", "gmail")


class FakeRefreshClient:
    def __init__(self, clock, error: Exception | None = None, rotate: str | None = None):
        self.clock = clock
        self.error = error
        self.rotate = rotate
        self.calls: list[str] = []

    async def refresh(self, refresh_token: str) -> RefreshedTokens:
        self.calls.append(refresh_token)
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return RefreshedTokens(
            access_token=f"access-{len(self.calls)}",
            expiry_date=self.clock() + timedelta(hours=1),
            refresh_token=self.rotate,
        )


@pytest.fixture
def refresh_client(clock):
    return FakeRefreshClient(clock)


@pytest.fixture
def integration(integration_repo, clock):
    return integration_repo.add(
        Integration(
            user_id="user-123",
            provider="google",
            service="gmail",
            access_token=b"enc:stale-access",
            refresh_token=b"enc:refresh-1",
            expiry_date=clock() + timedelta(minutes=2),
        )
    )


@pytest.fixture
def manager(integration_repo, refresh_client, cipher, clock):
    return TokenManager(
        integration_repo,
        {"google": refresh_client},
        cipher=cipher,
        cache=QueryCache(LocalCacheBackend()),
        refresh_buffer_minutes=5,
        clock=clock,
    )


@pytest.mark.asyncio
async def test_refresh_persists_only_ciphertext(manager, integration_repo, refresh_client, integration, clock):
    expiry = await manager.refresh(*KEY)

    stored = integration_repo.integrations[KEY]
    assert refresh_client.calls == ["refresh-1"]
    assert stored.access_token == b"enc:access-1"
    assert stored.refresh_token == b"enc:refresh-1"
    assert stored.expiry_date == expiry == clock() + timedelta(hours=1)


@pytest.mark.asyncio
async def test_rotated_refresh_token_is_stored(integration_repo, cipher, clock, integration):
    client = FakeRefreshClient(clock, rotate="refresh-2")
    manager = TokenManager(integration_repo, {"google": client}, cipher=cipher, clock=clock)

    await manager.refresh(*KEY)

    assert integration_repo.integrations[KEY].refresh_token == b"enc:refresh-2"


@pytest.mark.asyncio
async def test_get_access_token_refreshes_inside_buffer(manager, integration):
    assert await manager.get_access_token(*KEY) == "access-1"


@pytest.mark.asyncio
async def test_get_access_token_uses_stored_token_when_fresh(manager, integration, refresh_client, clock):
    integration.expiry_date = clock() + timedelta(hours=2)

    assert await manager.get_access_token(*KEY) == "stale-access"
    assert refresh_client.calls == []


@pytest.mark.asyncio
async def test_concurrent_refreshes_are_serialized(manager, integration, refresh_client):
    tokens = await asyncio.gather(*(manager.get_access_token(*KEY) for _ in range(5)))

    assert refresh_client.calls == ["refresh-1"]
    assert set(tokens) == {"access-1"}
    assert manager._locks == {}
    assert manager._lock_users == {}


@pytest.mark.asyncio
async def test_refresh_locks_are_released_per_credential(manager, integration_repo, integration, clock):
    for n in range(3):
        integration_repo.add(
            Integration(
                user_id=f"user-{n}",
                provider="google",
                service="gmail",
                access_token=b"enc:access",
                refresh_token=b"enc:refresh",
                expiry_date=clock(),
            )
        )
        await manager.refresh(f"user-{n}", "google", "gmail")

    assert manager._locks == {}


@pytest.mark.asyncio
async def test_failed_refresh_releases_lock(manager, integration):
    integration.refresh_token = None

    with pytest.raises(ReauthorizationRequiredError):
        await manager.refresh(*KEY)

    assert manager._locks == {}


@pytest.mark.asyncio
async def test_get_status_refreshes_proactively(manager, integration, refresh_client, clock):
    status = await manager.get_status(*KEY)

    assert status["refreshed"] is True
    assert status["connected"] is True
    assert status["expires_in_seconds"] == 3600
    assert len(refresh_client.calls) == 1

    again = await manager.get_status(*KEY)
    assert again["refreshed"] is False
    assert len(refresh_client.calls) == 1


@pytest.mark.asyncio
async def test_invalid_grant_requires_reauthorization(integration_repo, cipher, clock, integration):
    client = FakeRefreshClient(clock, error=Exception("invalid_grant: Token has been expired or revoked."))
    cache = QueryCache(LocalCacheBackend())
    manager = TokenManager(integration_repo, {"google": client}, cipher=cipher, cache=cache, clock=clock)
    await cache.set("integration_expiry:user-123:google:gmail", clock().isoformat())

    with pytest.raises(ReauthorizationRequiredError):
        await manager.refresh(*KEY)

    assert integration_repo.updates == []
    assert await cache.peek("integration_expiry:user-123:google:gmail") is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (httpx.ConnectError("connection refused"), ProviderNetworkError),
        (ProviderRateLimitError("slow down"), ProviderNetworkError),
        (RuntimeError("kaboom"), ProviderServerError),
        (ProviderServerError("upstream 500"), ProviderServerError),
    ],
)
async def test_refresh_failures_are_mapped(integration_repo, cipher, clock, integration, error, expected):
    client = FakeRefreshClient(clock, error=error)
    manager = TokenManager(integration_repo, {"google": client}, cipher=cipher, clock=clock)

    with pytest.raises(expected) as exc_info:
        await manager.refresh(*KEY)

    assert exc_info.value.__cause__ is error
    assert "Token refresh failed" in str(exc_info.value)


@pytest.mark.asyncio
async def test_undecryptable_refresh_token_requires_reauthorization(manager, integration, refresh_client):
    integration.refresh_token = b"tampered"

    with pytest.raises(ReauthorizationRequiredError):
        await manager.refresh(*KEY)
    assert refresh_client.calls == []


@pytest.mark.asyncio
async def test_missing_refresh_token_requires_reauthorization(manager, integration):
    integration.refresh_token = None

    with pytest.raises(ReauthorizationRequiredError):
        await manager.refresh(*KEY)


@pytest.mark.asyncio
async def test_missing_integration(manager):
    with pytest.raises(IntegrationNotFoundError):
        await manager.get_access_token(*KEY)


@pytest.mark.asyncio
async def test_unconfigured_manager(integration_repo, refresh_client, cipher, integration):
    without_cipher = TokenManager(integration_repo, {"google": refresh_client})
    without_client = TokenManager(integration_repo, {}, cipher=cipher)

    with pytest.raises(OAuthConfigurationError):
        await without_cipher.get_access_token(*KEY)
    with pytest.raises(OAuthConfigurationError):
        await without_client.refresh(*KEY)


@pytest.mark.asyncio
async def test_find_expiring_uses_buffer(manager, integration_repo, integration, clock):
    integration_repo.add(
        Integration(
            user_id="user-456",
            provider="google",
            service="calendar",
            access_token=b"enc:a",
            refresh_token=b"enc:r",
            expiry_date=clock() + timedelta(hours=3),
        )
    )

    expiring = await manager.find_expiring("google")

    assert [i.user_id for i in expiring] == ["user-123"]
