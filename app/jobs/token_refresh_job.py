"""
Token Refresh Job for proactive OAuth credential management.

Refreshes integrations whose access token expires within the buffer so the
next blocking sync does not pay for the refresh. One invocation processes
one snapshot of expiring integrations and exits.
"""

import asyncio
import time
from datetime import UTC, datetime

from app.config import settings
from app.features.sync.domain import Integration
from app.features.sync.domain.exceptions import ConfigurationError, ProviderError
from app.features.sync.services.token_manager import TokenManager
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# Job configuration
BATCH_SIZE = 50  # Integrations fetched per run
MAX_CONCURRENT_REFRESHES = 10  # Limit concurrent refresh operations
REFRESH_TIMEOUT_SECONDS = 30  # Timeout for individual refresh operations


class TokenRefreshJobError(Exception):
    """Custom exception for token refresh job operations."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class TokenRefreshMetrics:
    """Metrics tracking for token refresh operations."""

    def __init__(self):
        self.reset()

    def reset(self):
        self.start_time = datetime.now(UTC)
        self.integrations_processed = 0
        self.tokens_refreshed = 0
        self.refresh_failures = 0
        self.reauth_required = 0
        self.total_duration_seconds = 0.0
        self.errors: list[dict] = []

    def record_success(self, integration: Integration, duration_ms: float):
        self.integrations_processed += 1
        self.tokens_refreshed += 1

        logger.debug(
            "Token refresh successful",
            user_id=integration.user_id,
            service=integration.service,
            duration_ms=round(duration_ms, 2),
            job_run="token_refresh",
        )

    def record_failure(self, integration: Integration, error: str, reauth_required: bool = False):
        self.integrations_processed += 1
        self.refresh_failures += 1
        if reauth_required:
            self.reauth_required += 1

        self.errors.append(
            {
                "user_id": integration.user_id,
                "service": integration.service,
                "error": error,
                "reauth_required": reauth_required,
                "timestamp": datetime.now(UTC).isoformat(),
            }
        )
        logger.warning(
            "Token refresh failed",
            user_id=integration.user_id,
            service=integration.service,
            error=error,
            reauth_required=reauth_required,
            job_run="token_refresh",
        )

    def finalize(self):
        self.total_duration_seconds = (datetime.now(UTC) - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        return {
            "job_run": "token_refresh",
            "start_time": self.start_time.isoformat(),
            "total_duration_seconds": round(self.total_duration_seconds, 2),
            "integrations_processed": self.integrations_processed,
            "tokens_refreshed": self.tokens_refreshed,
            "refresh_failures": self.refresh_failures,
            "reauth_required": self.reauth_required,
            "success_rate_percent": round(
                (
                    (self.tokens_refreshed / self.integrations_processed * 100)
                    if self.integrations_processed > 0
                    else 0
                ),
                2,
            ),
            "errors_count": len(self.errors),
        }


class TokenRefreshJob:
    """Refreshes every integration of one provider that is about to expire."""

    def __init__(
        self,
        token_manager: TokenManager,
        provider: str = "google",
        buffer_minutes: int | None = None,
    ):
        self.token_manager = token_manager
        self.provider = provider
        self.buffer_minutes = (
            settings.TOKEN_REFRESH_BUFFER_MINUTES if buffer_minutes is None else buffer_minutes
        )
        self.is_running = False
        self.job_metrics = TokenRefreshMetrics()

    async def run_once(self) -> dict:
        """
        Run a single iteration of the token refresh job.

        Raises:
            TokenRefreshJobError: refresh is not configured or expiring
                integrations could not be listed
        """
        if self.is_running:
            logger.warning("Token refresh job already running, skipping this iteration")
            return {"skipped": True, "reason": "already_running"}

        try:
            self.is_running = True
            self.job_metrics.reset()

            try:
                self.token_manager.ensure_configured(self.provider)
            except ConfigurationError as e:
                raise TokenRefreshJobError(str(e), operation="configure", recoverable=False) from e

            try:
                expiring = await self.token_manager.find_expiring(
                    self.provider, self.buffer_minutes, limit=BATCH_SIZE
                )
            except Exception as e:
                logger.error("Failed to list expiring integrations", error=str(e))
                raise TokenRefreshJobError(
                    f"Failed to list expiring integrations: {e}", operation="find_expiring"
                ) from e

            if not expiring:
                logger.info("No tokens found requiring refresh", buffer_minutes=self.buffer_minutes)
            else:
                logger.info(
                    "Found integrations with expiring tokens",
                    count=len(expiring),
                    buffer_minutes=self.buffer_minutes,
                )
                semaphore = asyncio.Semaphore(MAX_CONCURRENT_REFRESHES)
                await asyncio.gather(
                    *(self._refresh_with_semaphore(semaphore, item) for item in expiring),
                    return_exceptions=True,
                )

            self.job_metrics.finalize()
            metrics = self.job_metrics.to_dict()
            logger.info("Token refresh job completed", **metrics)
            return metrics

        finally:
            self.is_running = False

    async def _refresh_with_semaphore(self, semaphore: asyncio.Semaphore, integration: Integration):
        async with semaphore:
            await self._refresh_integration(integration)

    async def _refresh_integration(self, integration: Integration):
        start_time = time.time()

        try:
            await asyncio.wait_for(
                self.token_manager.refresh(
                    integration.user_id, integration.provider, integration.service
                ),
                timeout=REFRESH_TIMEOUT_SECONDS,
            )
            self.job_metrics.record_success(integration, (time.time() - start_time) * 1000)

        except TimeoutError:
            self.job_metrics.record_failure(
                integration, f"Token refresh timed out after {REFRESH_TIMEOUT_SECONDS}s"
            )

        except ProviderError as e:
            self.job_metrics.record_failure(integration, str(e), reauth_required=e.requires_reauth)

        except Exception as e:
            # one failed row is recorded; sibling refreshes keep running
            self.job_metrics.record_failure(integration, f"Unexpected error: {type(e).__name__}: {e}")
