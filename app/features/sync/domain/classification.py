"""
Structured failure classification shared by the runner, the token manager
and the error summary.
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ErrorCategory(StrEnum):
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    PERMISSION = "permission"
    VALIDATION = "validation"
    SYSTEM = "system"
    UNKNOWN = "unknown"


class ErrorSeverity(StrEnum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    ErrorSeverity.CRITICAL: 4,
    ErrorSeverity.HIGH: 3,
    ErrorSeverity.MEDIUM: 2,
    ErrorSeverity.LOW: 1,
}


class RecoveryStrategy(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: str = Field(..., description="Machine-readable action id, e.g. refresh_token")
    label: str
    description: str
    auto_retryable: bool = False
    estimated_time: str | None = None


class ErrorClassification(BaseModel):
    """Derived from one failure; never cached across errors."""

    model_config = ConfigDict(frozen=True)

    category: ErrorCategory
    severity: ErrorSeverity
    retryable: bool
    recovery_strategies: tuple[RecoveryStrategy, ...] = ()
    user_message: str = ""
    technical_message: str = ""
    context: dict[str, Any] = Field(default_factory=dict)

    def has_strategy(self, action: str) -> bool:
        return any(strategy.action == action for strategy in self.recovery_strategies)

    def to_error_details(self, stage: str | None = None, timestamp: str | None = None) -> dict:
        """Payload stored in ``sync_sessions.error_details`` and ``jobs.result``."""
        details = {
            "category": self.category.value,
            "severity": self.severity.value,
            "retryable": self.retryable,
            "message": self.technical_message or self.user_message,
            "user_message": self.user_message,
            "recovery_strategies": [strategy.action for strategy in self.recovery_strategies],
        }
        if stage:
            details["stage"] = stage
        if timestamp:
            details["timestamp"] = timestamp
        return details
