"""
Error summary and urgency scoring.

Collects recent classified failures (failed jobs and failed sync sessions),
groups them into patterns and scores how urgently someone should look at
them.
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from app.features.sync.domain.classification import (
    ErrorCategory,
    ErrorClassification,
    ErrorSeverity,
)
from app.features.sync.services.error_classifier import classification_from_details
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

MIN_WINDOW_HOURS = 1
MAX_WINDOW_HOURS = 168

SUGGESTED_ACTIONS = {
    ErrorCategory.AUTH: "Check authentication credentials and refresh tokens",
    ErrorCategory.RATE_LIMIT: "Implement exponential backoff and rate limiting",
    ErrorCategory.VALIDATION: "Review data validation and processing logic",
    ErrorCategory.NETWORK: "Check network connectivity and retry logic",
    ErrorCategory.PERMISSION: "Verify granted scopes and re-authorize if needed",
    ErrorCategory.SYSTEM: "Monitor provider status and retry later",
}
DEFAULT_SUGGESTED_ACTION = "Review error logs and implement appropriate error handling"


@dataclass(slots=True)
class FailureRecord:
    classification: ErrorClassification
    occurred_at: datetime
    source: str  # "job" | "session"
    reference_id: str


@dataclass(slots=True)
class ErrorPattern:
    category: ErrorCategory
    severity: ErrorSeverity
    frequency: int
    pattern: str
    suggested_action: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "severity": self.severity.value,
            "frequency": self.frequency,
            "pattern": self.pattern,
            "suggested_action": self.suggested_action,
        }


@dataclass(slots=True)
class UrgencyScore:
    score: int
    level: str
    factors: list[str] = field(default_factory=list)


def suggested_action(category: ErrorCategory) -> str:
    return SUGGESTED_ACTIONS.get(category, DEFAULT_SUGGESTED_ACTION)


def build_patterns(records: list[FailureRecord]) -> list[ErrorPattern]:
    """Group by (category, severity), most frequent first."""
    counts = Counter(
        (r.classification.category, r.classification.severity) for r in records
    )
    patterns = [
        ErrorPattern(
            category=category,
            severity=severity,
            frequency=count,
            pattern=f"{category.value} errors ({severity.value} severity)",
            suggested_action=suggested_action(category),
        )
        for (category, severity), count in counts.items()
    ]
    # stable tie-break so repeated calls produce the same order
    patterns.sort(key=lambda p: (-p.frequency, -p.severity.rank, p.category.value))
    return patterns


def calculate_urgency(records: list[FailureRecord], window_hours: float) -> UrgencyScore:
    critical = sum(1 for r in records if r.classification.severity is ErrorSeverity.CRITICAL)
    rate = len(records) / max(window_hours, 1)
    categories = {r.classification.category for r in records}

    score = 0
    factors: list[str] = []

    if critical > 0:
        score += min(critical * 20, 60)
        factors.append(f"{critical} critical error(s)")

    if rate > 5:
        score += 30
        factors.append(f"High failure rate: {rate:.1f} errors/hour")
    elif rate > 2:
        score += 15
        factors.append(f"Moderate failure rate: {rate:.1f} errors/hour")

    if ErrorCategory.AUTH in categories:
        score += 25
        factors.append("Authentication errors detected")

    if ErrorCategory.RATE_LIMIT in categories:
        score += 15
        factors.append("Rate limiting issues detected")

    if ErrorCategory.VALIDATION in categories:
        score += 20
        factors.append("Data integrity issues detected")

    if len(records) > 100:
        score += 10
        factors.append(f"High total error count: {len(records)}")

    score = min(score, 100)
    if score >= 80:
        level = "critical"
    elif score >= 60:
        level = "high"
    elif score >= 30:
        level = "medium"
    else:
        level = "low"

    return UrgencyScore(score=score, level=level, factors=factors)


def generate_recommendations(
    records: list[FailureRecord], patterns: list[ErrorPattern], urgency: UrgencyScore
) -> list[str]:
    if not records:
        return ["No recent errors - system is healthy"]

    recommendations: list[str] = []
    categories = {r.classification.category for r in records}

    if urgency.level == "critical":
        recommendations.append("Review and resolve critical errors immediately")

    if patterns and patterns[0].frequency > 5:
        top = patterns[0]
        recommendations.append(f"Address recurring {top.pattern} ({top.frequency} occurrences)")

    if ErrorCategory.AUTH in categories:
        recommendations.append("Check authentication credentials and token validity")

    if ErrorCategory.RATE_LIMIT in categories:
        recommendations.append("Implement exponential backoff for API calls")
        recommendations.append("Consider upgrading API rate limits")

    if ErrorCategory.VALIDATION in categories:
        recommendations.append("Review data validation and processing logic")

    if len(records) > 50:
        recommendations.append("Consider implementing more robust error handling")

    return recommendations


def summarize(records: list[FailureRecord], window_hours: float) -> dict[str, Any]:
    """Pure summary over already-collected failures."""
    patterns = build_patterns(records)
    urgency = calculate_urgency(records, window_hours)

    strategies: dict[str, dict] = {}
    for record in records:
        for strategy in record.classification.recovery_strategies:
            strategies.setdefault(strategy.action, strategy.model_dump())

    by_category = Counter(r.classification.category.value for r in records)
    by_severity = Counter(r.classification.severity.value for r in records)

    return {
        "window_hours": window_hours,
        "total_errors": len(records),
        "by_category": dict(by_category),
        "by_severity": dict(by_severity),
        "critical_errors": [
            {
                "source": r.source,
                "reference_id": r.reference_id,
                "occurred_at": r.occurred_at.isoformat(),
                "message": r.classification.technical_message,
            }
            for r in records
            if r.classification.severity is ErrorSeverity.CRITICAL
        ],
        "patterns": [p.to_dict() for p in patterns],
        "recovery_strategies": list(strategies.values()),
        "urgency": {"score": urgency.score, "level": urgency.level, "factors": urgency.factors},
        "recommendations": generate_recommendations(records, patterns, urgency),
    }


class ErrorSummaryService:
    """Reads failures out of the job and session tables and summarizes them."""

    def __init__(self, job_repository, session_repository):
        self.jobs = job_repository
        self.sessions = session_repository

    async def collect_failures(self, user_id: str, since: datetime) -> list[FailureRecord]:
        records: list[FailureRecord] = []

        for job in await self.jobs.list_failed_since(user_id, since):
            details = (job.result or {}).get("error")
            records.append(
                FailureRecord(
                    classification=classification_from_details(details),
                    occurred_at=job.updated_at,
                    source="job",
                    reference_id=job.id,
                )
            )

        for session in await self.sessions.list_failed_since(user_id, since):
            records.append(
                FailureRecord(
                    classification=classification_from_details(session.error_details),
                    occurred_at=session.completed_at or session.started_at,
                    source="session",
                    reference_id=session.id,
                )
            )

        records.sort(key=lambda r: r.occurred_at, reverse=True)
        return records

    async def get_summary(self, user_id: str, hours: int = 24) -> dict[str, Any]:
        window = min(max(hours, MIN_WINDOW_HOURS), MAX_WINDOW_HOURS)
        since = datetime.now(UTC) - timedelta(hours=window)

        records = await self.collect_failures(user_id, since)
        summary = summarize(records, window)

        logger.info(
            "Error summary generated",
            user_id=user_id,
            window_hours=window,
            total_errors=summary["total_errors"],
            urgency=summary["urgency"]["level"],
        )
        return summary
