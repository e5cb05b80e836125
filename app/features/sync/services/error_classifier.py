"""
Error classification for provider, token and job failures.

Resolution order, first hit wins:

1. an explicit ``status_code`` argument
2. the category carried by a typed ``ProviderError``
3. an HTTP status found on the error (``status_code`` / ``response.status_code``)
4. network error codes and connection-level exception types
5. message text, checked category by category in the order
   auth, rate_limit, network, permission, validation, system

Anything left over is ``unknown``. ``classify`` never raises.
"""

import errno
import re
import socket
from collections import Counter
from collections.abc import Iterable
from typing import Any

import httpx

from app.features.sync.domain.classification import (
    ErrorCategory,
    ErrorClassification,
    ErrorSeverity,
    RecoveryStrategy,
)
from app.features.sync.domain.exceptions import ProviderError
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

NETWORK_ERROR_CODES = frozenset(
    {"ECONNREFUSED", "ECONNRESET", "ETIMEDOUT", "ENOTFOUND", "EAI_AGAIN", "EHOSTUNREACH", "EPIPE"}
)

_MESSAGE_PATTERNS: list[tuple[ErrorCategory, re.Pattern]] = [
    (
        ErrorCategory.AUTH,
        re.compile(
            r"unauthori[sz]ed|invalid[\s_-]?grant|invalid[\s_-]?token|token[\s_-]?(expired|revoked)"
            r"|invalid[\s_-]?credentials|\b401\b",
            re.IGNORECASE,
        ),
    ),
    (
        ErrorCategory.RATE_LIMIT,
        re.compile(
            r"rate[\s_-]?limit|quota|too[\s_-]?many[\s_-]?requests|\b429\b", re.IGNORECASE
        ),
    ),
    (
        ErrorCategory.NETWORK,
        re.compile(
            r"connection[\s_-]?(refused|reset|failed|error|aborted)|network|fetch[\s_-]?failed"
            r"|failed to fetch|timed?[\s_-]?out|dns|getaddrinfo|socket hang up"
            r"|econnrefused|econnreset|etimedout|enotfound",
            re.IGNORECASE,
        ),
    ),
    (
        ErrorCategory.PERMISSION,
        re.compile(
            r"forbidden|permission[\s_-]?denied|insufficient[\s_-]?(scope|permission)s?"
            r"|access[\s_-]?denied|\b403\b",
            re.IGNORECASE,
        ),
    ),
    (
        ErrorCategory.VALIDATION,
        re.compile(
            r"invalid[\s_-]?(input|format|request|argument|payload|data)|malformed"
            r"|bad[\s_-]?request|validation|\b(400|422)\b",
            re.IGNORECASE,
        ),
    ),
    (
        ErrorCategory.SYSTEM,
        re.compile(
            r"internal|server[\s_-]?error|service[\s_-]?unavailable|bad[\s_-]?gateway"
            r"|\b50[0-4]\b",
            re.IGNORECASE,
        ),
    ),
]


def _strategy(action, label, description, auto=False, eta=None) -> RecoveryStrategy:
    return RecoveryStrategy(
        action=action,
        label=label,
        description=description,
        auto_retryable=auto,
        estimated_time=eta,
    )


REFRESH_TOKEN = _strategy(
    "refresh_token", "Refresh access token", "Obtain a new access token with the stored refresh token", True, "a few seconds"
)
REAUTHENTICATE = _strategy(
    "reauthenticate", "Reconnect account", "Sign in to the provider again to grant fresh access"
)

CATEGORY_PROFILES: dict[ErrorCategory, dict[str, Any]] = {
    ErrorCategory.AUTH: {
        "severity": ErrorSeverity.HIGH,
        "retryable": True,
        "strategies": (REFRESH_TOKEN, REAUTHENTICATE),
        "user_message": "Your connection to the provider needs to be refreshed.",
    },
    ErrorCategory.RATE_LIMIT: {
        "severity": ErrorSeverity.MEDIUM,
        "retryable": True,
        "strategies": (
            _strategy("exponential_backoff", "Wait and retry", "Retry with increasing delays", True, "1-5 minutes"),
            _strategy("reduce_frequency", "Sync less often", "Lower the sync frequency in settings"),
        ),
        "user_message": "The provider is limiting requests right now. We'll retry shortly.",
    },
    ErrorCategory.NETWORK: {
        "severity": ErrorSeverity.MEDIUM,
        "retryable": True,
        "strategies": (
            _strategy("retry_now", "Retry now", "Retry the request immediately", True, "a few seconds"),
            _strategy("check_connectivity", "Check connectivity", "Verify network access to the provider"),
        ),
        "user_message": "We couldn't reach the provider. Please check your connection.",
    },
    ErrorCategory.PERMISSION: {
        "severity": ErrorSeverity.HIGH,
        "retryable": False,
        "strategies": (
            _strategy("review_permissions", "Review permissions", "Check the scopes granted to this app"),
            _strategy("reauthorize", "Re-authorize", "Reconnect and grant the required permissions"),
        ),
        "user_message": "This app doesn't have permission to access that data.",
    },
    ErrorCategory.VALIDATION: {
        "severity": ErrorSeverity.MEDIUM,
        "retryable": False,
        "strategies": (
            _strategy("check_data_format", "Check data format", "Inspect the input that was rejected"),
            _strategy("update_settings", "Update settings", "Adjust sync settings and try again"),
        ),
        "user_message": "Some data couldn't be processed because it was invalid.",
    },
    ErrorCategory.SYSTEM: {
        "severity": ErrorSeverity.HIGH,
        "retryable": True,
        "strategies": (
            _strategy("retry_later", "Retry later", "Retry once the service recovers", True, "5-15 minutes"),
            _strategy("contact_support", "Contact support", "Report the problem if it persists"),
        ),
        "user_message": "The provider is having problems. We'll try again later.",
    },
    ErrorCategory.UNKNOWN: {
        "severity": ErrorSeverity.MEDIUM,
        "retryable": True,
        "strategies": (
            _strategy("retry", "Retry", "Retry the operation", True, "a few seconds"),
            _strategy("review_logs", "Review logs", "Inspect logs for the underlying cause"),
        ),
        "user_message": "Something went wrong. We'll try again.",
    },
}


def _status_category(status: int | None) -> ErrorCategory | None:
    if status is None:
        return None
    if status == 401:
        return ErrorCategory.AUTH
    if status == 429:
        return ErrorCategory.RATE_LIMIT
    if status == 403:
        return ErrorCategory.PERMISSION
    if status in (400, 422):
        return ErrorCategory.VALIDATION
    if status == 408:
        return ErrorCategory.NETWORK
    if status >= 500:
        return ErrorCategory.SYSTEM
    return None


def _extract_status(error: Any) -> int | None:
    if isinstance(error, dict):
        status = error.get("status_code", error.get("status"))
    else:
        status = getattr(error, "status_code", None)
        if status is None:
            response = getattr(error, "response", None)
            status = getattr(response, "status_code", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def _extract_code(error: Any) -> str | None:
    if isinstance(error, dict):
        code = error.get("code")
    else:
        code = getattr(error, "error_code", None) or getattr(error, "code", None)
        if code is None and isinstance(error, OSError) and error.errno:
            code = errno.errorcode.get(error.errno)
    return str(code).upper() if code else None


def _extract_message(error: Any) -> str:
    if error is None:
        return ""
    if isinstance(error, str):
        return error
    if isinstance(error, dict):
        return str(error.get("message") or error.get("error") or "")
    return str(error)


def _is_connection_error(error: Any) -> bool:
    return isinstance(error, ConnectionError | TimeoutError | socket.gaierror | httpx.TransportError)


def _resolve_category(error: Any, status_code: int | None, code: str | None, message: str) -> tuple[ErrorCategory, str]:
    category = _status_category(status_code)
    if category:
        return category, "status"

    if isinstance(error, ProviderError) and error.category is not ErrorCategory.UNKNOWN:
        return error.category, "type"

    category = _status_category(_extract_status(error))
    if category:
        return category, "status"

    code = code.upper() if code else _extract_code(error)
    if (code and code in NETWORK_ERROR_CODES) or _is_connection_error(error):
        return ErrorCategory.NETWORK, "code"

    for candidate, pattern in _MESSAGE_PATTERNS:
        if pattern.search(message):
            return candidate, "message"

    return ErrorCategory.UNKNOWN, "default"


def classify(
    error: Any,
    *,
    status_code: int | None = None,
    code: str | None = None,
    context: dict[str, Any] | None = None,
) -> ErrorClassification:
    """
    Turn any failure into an ``ErrorClassification``.

    Args:
        error: exception, message string, ``{"message", "status", "code"}`` dict or None
        status_code: HTTP status when the caller knows it
        code: transport error code such as ``ECONNREFUSED``
        context: extra debug fields carried on the result
    """
    try:
        message = _extract_message(error)
        category, matched_by = _resolve_category(error, status_code, code, message)
        profile = CATEGORY_PROFILES[category]

        if status_code is None and isinstance(error, ProviderError) and error.requires_reauth:
            return ErrorClassification(
                category=ErrorCategory.AUTH,
                severity=ErrorSeverity.CRITICAL,
                retryable=False,
                recovery_strategies=(REAUTHENTICATE,),
                user_message="Your account connection has expired. Please reconnect to continue syncing.",
                technical_message=f"{type(error).__name__}: {message}",
                context={**(context or {}), "matched_by": "type"},
            )

        technical = f"{type(error).__name__}: {message}" if isinstance(error, BaseException) else message
        return ErrorClassification(
            category=category,
            severity=profile["severity"],
            retryable=profile["retryable"],
            recovery_strategies=profile["strategies"],
            user_message=profile["user_message"],
            technical_message=technical or "No error information available",
            context={**(context or {}), "matched_by": matched_by},
        )

    except Exception as e:  # never raise from here
        logger.warning("Error classification failed, using default", error=str(e))
        profile = CATEGORY_PROFILES[ErrorCategory.UNKNOWN]
        return ErrorClassification(
            category=ErrorCategory.UNKNOWN,
            severity=profile["severity"],
            retryable=True,
            recovery_strategies=profile["strategies"],
            user_message=profile["user_message"],
            technical_message="Unclassifiable error",
        )


def classify_batch(classifications: Iterable[ErrorClassification]) -> dict[str, Any]:
    """Summarize several classifications: counts, worst failure, unique suggested actions."""
    items = list(classifications)
    by_category = Counter(c.category.value for c in items)
    by_severity = Counter(c.severity.value for c in items)
    most_critical = max(items, key=lambda c: c.severity.rank, default=None)

    actions: list[str] = []
    for item in items:
        for strategy in item.recovery_strategies:
            if strategy.label not in actions:
                actions.append(strategy.label)

    return {
        "total": len(items),
        "by_category": dict(by_category),
        "by_severity": dict(by_severity),
        "retryable": sum(1 for c in items if c.retryable),
        "most_critical": most_critical.model_dump(mode="json") if most_critical else None,
        "suggested_actions": actions,
    }


def classification_from_details(details: dict[str, Any] | None) -> ErrorClassification:
    """Rebuild a classification from a stored ``error_details`` payload."""
    if not details or "category" not in details:
        return classify(details.get("message") if details else None)

    try:
        category = ErrorCategory(details["category"])
    except ValueError:
        category = ErrorCategory.UNKNOWN
    profile = CATEGORY_PROFILES[category]

    try:
        severity = ErrorSeverity(details.get("severity"))
    except ValueError:
        severity = profile["severity"]

    known = {s.action: s for p in CATEGORY_PROFILES.values() for s in p["strategies"]}
    known[REAUTHENTICATE.action] = REAUTHENTICATE
    actions = details.get("recovery_strategies") or []
    strategies = tuple(known[a] for a in actions if a in known) or profile["strategies"]

    return ErrorClassification(
        category=category,
        severity=severity,
        retryable=bool(details.get("retryable", profile["retryable"])),
        recovery_strategies=strategies,
        user_message=details.get("user_message") or profile["user_message"],
        technical_message=details.get("message") or "",
    )
