"""
Exception types for the sync feature.

``ProviderError`` subclasses are raised at the point a provider or token
endpoint fails, so the classifier can read the category off the type
instead of matching message text.
"""

from app.features.sync.domain.classification import ErrorCategory


class ProviderError(Exception):
    """Base class for failures raised by provider and token-refresh clients."""

    category: ErrorCategory = ErrorCategory.UNKNOWN
    requires_reauth: bool = False

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        status_code: int | None = None,
        error_code: str | None = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.error_code = error_code


class ProviderAuthError(ProviderError):
    category = ErrorCategory.AUTH


class ReauthorizationRequiredError(ProviderAuthError):
    """The refresh token was rejected; only a fresh user consent fixes this."""

    requires_reauth = True


class ProviderRateLimitError(ProviderError):
    category = ErrorCategory.RATE_LIMIT

    def __init__(self, message: str, *, retry_after: float | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ProviderNetworkError(ProviderError):
    category = ErrorCategory.NETWORK


class ProviderPermissionError(ProviderError):
    category = ErrorCategory.PERMISSION


class ProviderValidationError(ProviderError):
    category = ErrorCategory.VALIDATION


class ProviderServerError(ProviderError):
    category = ErrorCategory.SYSTEM


class ConfigurationError(ProviderValidationError):
    """Fatal before any work starts; never retried."""


class OAuthConfigurationError(ConfigurationError):
    pass


class IntegrationNotFoundError(ConfigurationError):
    def __init__(self, user_id: str, provider: str, service: str):
        super().__init__(
            f"No {provider} integration for service '{service}'",
            provider=provider,
        )
        self.user_id = user_id
        self.service = service


class UnknownJobKindError(ProviderValidationError):
    pass


class SyncSessionError(Exception):
    """Base class for session tracker failures."""

    def __init__(self, message: str, session_id: str | None = None):
        super().__init__(message)
        self.session_id = session_id


class SessionNotFoundError(SyncSessionError):
    pass


class SessionNotCancellableError(SyncSessionError):
    def __init__(self, session_id: str, status: str):
        super().__init__(f"Session {session_id} is already {status}", session_id=session_id)
        self.status = status


class SessionTerminalError(SyncSessionError):
    """An update targeted a session that already reached a terminal status."""


class InvalidProgressUpdateError(SyncSessionError, ValueError):
    pass


class SyncFailedError(Exception):
    """Raised by the blocking sync after the session has been finalized as failed."""

    def __init__(self, message: str, session_id: str, error_details: dict):
        super().__init__(message)
        self.session_id = session_id
        self.error_details = error_details
