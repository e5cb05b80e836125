"""
Sync session tracker.

Owns the lifecycle of a ``sync_sessions`` row: creation, progress patches,
terminal transitions (completed / failed / cancelled) and retention.
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from app.features.sync.domain import (
    ErrorClassification,
    ProgressUpdate,
    ProgressView,
    SyncServiceName,
    SyncSession,
    SyncStatus,
)
from app.features.sync.domain.exceptions import (
    SessionNotCancellableError,
    SessionNotFoundError,
    SessionTerminalError,
)
from app.features.sync.services.error_classifier import classify
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

ESTIMATE_STATUSES = frozenset({SyncStatus.IMPORTING, SyncStatus.PROCESSING})


def _utcnow() -> datetime:
    return datetime.now(UTC)


def build_progress_view(session: SyncSession, now: datetime) -> ProgressView:
    """
    Render a session for polling clients.

    The time estimate is only present while importing or processing with
    0 < percentage < 100; it extrapolates elapsed time linearly.
    """
    elapsed = max((now - session.started_at).total_seconds(), 0.0)
    estimated_total = None
    estimated_remaining = None

    pct = session.progress_percentage
    if session.status in ESTIMATE_STATUSES and 0 < pct < 100:
        estimated_total = elapsed / pct * 100
        estimated_remaining = max(estimated_total - elapsed, 0.0)

    return ProgressView(
        session_id=session.id,
        service=session.service,
        status=session.status,
        progress_percentage=pct,
        current_step=session.current_step,
        total_items=session.total_items,
        imported_items=session.imported_items,
        processed_items=session.processed_items,
        failed_items=session.failed_items,
        error_details=session.error_details,
        started_at=session.started_at,
        completed_at=session.completed_at,
        elapsed_seconds=round(elapsed, 2),
        estimated_total_seconds=round(estimated_total, 2) if estimated_total is not None else None,
        estimated_remaining_seconds=(
            round(estimated_remaining, 2) if estimated_remaining is not None else None
        ),
    )


class SyncSessionTracker:
    def __init__(self, repository, clock: Callable[[], datetime] = _utcnow):
        self.repository = repository
        self._clock = clock

    async def create_session(
        self,
        user_id: str,
        service: SyncServiceName,
        preferences: dict[str, Any] | None = None,
    ) -> SyncSession:
        session = await self.repository.insert_session(
            user_id,
            service,
            preferences or {},
            current_step=f"Initializing {service.value} sync...",
        )
        logger.info("Sync session created", session_id=session.id, user_id=user_id, service=service.value)
        return session

    async def get_session(self, session_id: str, user_id: str | None = None) -> SyncSession:
        session = await self.repository.get_session(session_id, user_id)
        if session is None:
            raise SessionNotFoundError(f"Sync session {session_id} not found", session_id=session_id)
        return session

    async def _compare_and_update(
        self, session_id: str, changes: dict[str, Any], user_id: str | None = None
    ) -> SyncSession:
        updated = await self.repository.compare_and_update(session_id, changes, user_id)
        if updated is not None:
            return updated

        current = await self.get_session(session_id, user_id)
        raise SessionTerminalError(
            f"Sync session {session_id} is already {current.status.value}", session_id=session_id
        )

    async def update_progress(
        self,
        session_id: str,
        update: ProgressUpdate | dict[str, Any],
        user_id: str | None = None,
    ) -> SyncSession:
        """
        Apply a progress patch.

        Raises:
            InvalidProgressUpdateError: a counter was negative, fractional or not a number
            SessionNotFoundError: no such session (or not owned by ``user_id``)
            SessionTerminalError: the session already finished
        """
        if not isinstance(update, ProgressUpdate):
            update = ProgressUpdate.parse(update, session_id=session_id)

        changes = update.changes()
        session = await self._compare_and_update(session_id, changes, user_id)

        if session.is_terminal:
            logger.info(
                "Sync session finished",
                session_id=session_id,
                status=session.status.value,
                progress=session.progress_percentage,
            )
        return session

    async def get_progress_data(self, session_id: str, user_id: str | None = None) -> ProgressView:
        session = await self.get_session(session_id, user_id)
        return build_progress_view(session, self._clock())

    async def mark_failed(
        self,
        session_id: str,
        error: ErrorClassification | BaseException | str | None,
        stage: str,
    ) -> SyncSession:
        """Finalize as failed. Accumulated counters are left untouched."""
        classification = error if isinstance(error, ErrorClassification) else classify(error)
        details = classification.to_error_details(stage=stage, timestamp=self._clock().isoformat())

        session = await self._compare_and_update(
            session_id,
            {
                "status": SyncStatus.FAILED,
                "current_step": f"Failed during {stage}",
                "error_details": details,
            },
        )
        logger.warning(
            "Sync session failed",
            session_id=session_id,
            stage=stage,
            category=details["category"],
            severity=details["severity"],
        )
        return session

    async def mark_completed(
        self,
        session_id: str,
        final_counts: dict[str, int] | None = None,
        message: str = "Sync completed",
    ) -> SyncSession:
        fields = {
            "status": SyncStatus.COMPLETED,
            "progress_percentage": 100,
            "current_step": message,
            **(final_counts or {}),
        }
        session = await self._compare_and_update(
            session_id, ProgressUpdate.parse(fields, session_id=session_id).changes()
        )
        logger.info(
            "Sync session completed",
            session_id=session_id,
            imported_items=session.imported_items,
            processed_items=session.processed_items,
            failed_items=session.failed_items,
        )
        return session

    async def cancel_session(self, session_id: str, user_id: str | None = None) -> SyncSession:
        """
        Cancel an active session.

        Raises:
            SessionNotFoundError: missing or not owned by ``user_id``
            SessionNotCancellableError: already completed, failed or cancelled
        """
        updated = await self.repository.compare_and_update(
            session_id,
            {"status": SyncStatus.CANCELLED, "current_step": "Cancelled by user"},
            user_id,
        )
        if updated is not None:
            logger.info("Sync session cancelled", session_id=session_id, user_id=user_id)
            return updated

        current = await self.get_session(session_id, user_id)
        logger.info(
            "Cancel refused, session already terminal",
            session_id=session_id,
            status=current.status.value,
        )
        raise SessionNotCancellableError(session_id, current.status.value)

    async def cleanup_old_sessions(self, days: int) -> int:
        if days < 0:
            raise ValueError("days must be non-negative")
        cutoff = self._clock() - timedelta(days=days)
        return await self.repository.delete_started_before(cutoff)

    async def list_sessions(
        self,
        user_id: str,
        service: SyncServiceName | None = None,
        status: SyncStatus | None = None,
        limit: int = 50,
    ) -> list[SyncSession]:
        return await self.repository.list_sessions(user_id, service, status, limit)

    async def get_active_sessions(self, user_id: str) -> list[SyncSession]:
        return await self.repository.list_active(user_id)

    async def latest_preferences(self, user_id: str, service: SyncServiceName) -> dict[str, Any]:
        return await self.repository.latest_preferences(user_id, service) or {}
