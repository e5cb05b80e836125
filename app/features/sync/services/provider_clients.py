"""
Provider collaborators consumed by the sync core.

The import clients (mail, calendar, file store) own their provider wire
formats and are registered at startup; this module only fixes their
interface. The Google token refresh client is implemented here because
credential refresh is part of the core.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import httpx

from app.config import settings
from app.features.sync.domain import ProviderSyncResult, RefreshedTokens
from app.features.sync.domain.exceptions import (
    OAuthConfigurationError,
    ProviderNetworkError,
    ProviderRateLimitError,
    ProviderServerError,
    ProviderValidationError,
    ReauthorizationRequiredError,
)
from app.features.sync.services.progress import ProgressReporter
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

# Request timeouts and retry configuration
REQUEST_TIMEOUT = 10  # seconds
MAX_RETRIES = 3
BACKOFF_FACTOR = 2  # 2, 4 seconds
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}

# Tokens without an expires_in are treated as good for an hour
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600


class ProviderSyncClient(Protocol):
    """Imports raw events for one provider/service pair."""

    provider: str
    service: str

    async def sync(
        self, user_id: str, options: dict[str, Any], reporter: ProgressReporter
    ) -> ProviderSyncResult: ...


class TokenRefreshClient(Protocol):
    async def refresh(self, refresh_token: str) -> RefreshedTokens: ...


class GoogleTokenRefreshClient:
    """
    Exchanges a Google refresh token for a new access token.

    Transport errors and 429/5xx responses are retried with backoff before a
    typed ``ProviderError`` is raised.
    """

    provider = "google"

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        token_url: str = GOOGLE_TOKEN_URL,
        transport: httpx.AsyncBaseTransport | None = None,
        backoff_factor: float = BACKOFF_FACTOR,
    ):
        self.client_id = client_id or settings.GOOGLE_CLIENT_ID
        self.client_secret = client_secret or settings.GOOGLE_CLIENT_SECRET
        self.token_url = token_url
        self.transport = transport
        self.backoff_factor = backoff_factor
        self._validate_config()

    def _validate_config(self) -> None:
        if not self.client_id:
            raise OAuthConfigurationError("GOOGLE_CLIENT_ID not configured", provider=self.provider)
        if not self.client_secret:
            raise OAuthConfigurationError("GOOGLE_CLIENT_SECRET not configured", provider=self.provider)

        logger.info(
            "Google token refresh client initialized",
            client_id_preview=self.client_id[:12] + "...",
        )

    async def _post_with_retry(self, data: dict, operation: str) -> httpx.Response:
        headers = {"Content-Type": "application/x-www-form-urlencoded"}

        async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT, transport=self.transport) as client:
            for attempt in range(1, MAX_RETRIES + 1):
                try:
                    response = await client.post(self.token_url, data=data, headers=headers)

                    if response.status_code in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                        wait_time = self.backoff_factor**attempt
                        logger.warning(
                            "Google OAuth transient status",
                            operation=operation,
                            status_code=response.status_code,
                            attempt=attempt,
                            wait_time=wait_time,
                        )
                        await asyncio.sleep(wait_time)
                        continue

                    return response

                except httpx.RequestError as exc:
                    if attempt == MAX_RETRIES:
                        raise ProviderNetworkError(
                            f"{operation} failed: {type(exc).__name__}: {exc}",
                            provider=self.provider,
                        ) from exc

                    wait_time = self.backoff_factor**attempt
                    logger.warning(
                        "Google OAuth request error, retrying",
                        operation=operation,
                        attempt=attempt,
                        wait_time=wait_time,
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
                    await asyncio.sleep(wait_time)

        raise ProviderServerError(f"{operation} failed: retries exhausted", provider=self.provider)

    async def refresh(self, refresh_token: str) -> RefreshedTokens:
        if not refresh_token:
            raise ReauthorizationRequiredError("No refresh token available", provider=self.provider)

        response = await self._post_with_retry(
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
            operation="token_refresh",
        )

        if response.status_code != 200:
            raise self._error_from_response(response)

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderServerError(
                "Token refresh returned a non-JSON body",
                provider=self.provider,
                status_code=response.status_code,
            ) from e

        access_token = data.get("access_token")
        if not access_token:
            raise ProviderServerError(
                "Token refresh response missing access_token",
                provider=self.provider,
                status_code=response.status_code,
            )

        expires_in = int(data.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SECONDS)
        tokens = RefreshedTokens(
            access_token=access_token,
            expiry_date=datetime.now(UTC) + timedelta(seconds=expires_in),
            refresh_token=data.get("refresh_token"),
        )
        logger.info(
            "Google token refreshed",
            expires_in=expires_in,
            rotated_refresh_token=tokens.refresh_token is not None,
        )
        return tokens

    def _error_from_response(self, response: httpx.Response) -> Exception:
        status = response.status_code
        try:
            body = response.json()
        except ValueError:
            body = {}
        error_code = body.get("error") if isinstance(body, dict) else None
        description = body.get("error_description", "") if isinstance(body, dict) else ""
        message = f"Token refresh failed ({status}): {error_code or 'unknown_error'} {description}".strip()

        logger.warning(
            "Google token refresh rejected",
            status_code=status,
            error_code=error_code,
        )

        kwargs = {"provider": self.provider, "status_code": status, "error_code": error_code}
        if error_code == "invalid_grant":
            return ReauthorizationRequiredError(message, **kwargs)
        if error_code in ("invalid_client", "unauthorized_client"):
            return OAuthConfigurationError(message, **kwargs)
        if status == 429:
            retry_after = response.headers.get("Retry-After")
            return ProviderRateLimitError(
                message,
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
                **kwargs,
            )
        if status >= 500:
            return ProviderServerError(message, **kwargs)
        return ProviderValidationError(message, **kwargs)
