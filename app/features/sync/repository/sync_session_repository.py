"""
Persistence for the ``sync_sessions`` table.

Every mutation of an existing row goes through ``compare_and_update``:
an UPDATE that only matches while the row is still in an active status.
Progress writes and cancellation share that primitive, so a late progress
event can never resurrect a cancelled or completed session.
"""

from datetime import datetime
from typing import Any

from psycopg.types.json import Jsonb

from app.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one, with_db_retry
from app.features.sync.domain import (
    ACTIVE_SYNC_STATUSES,
    TERMINAL_SYNC_STATUSES,
    SyncServiceName,
    SyncSession,
    SyncStatus,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# Columns a progress update may touch
UPDATABLE_COLUMNS = (
    "status",
    "progress_percentage",
    "current_step",
    "total_items",
    "imported_items",
    "processed_items",
    "failed_items",
    "error_details",
)
JSON_COLUMNS = frozenset({"error_details"})


class SyncSessionRepositoryError(DatabaseError):
    """More specific exception for session persistence failures."""


class SyncSessionRepository:
    SESSION_SELECT_COLUMNS = """
        id, user_id, service, status, progress_percentage, current_step,
        total_items, imported_items, processed_items, failed_items,
        error_details, preferences, started_at, completed_at
    """

    @classmethod
    def _row_to_session(cls, row: dict | None) -> SyncSession | None:
        if not row:
            return None

        return SyncSession(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            service=SyncServiceName(row["service"]),
            status=SyncStatus(row["status"]),
            progress_percentage=int(row["progress_percentage"] or 0),
            current_step=row.get("current_step"),
            total_items=row.get("total_items"),
            imported_items=row.get("imported_items") or 0,
            processed_items=row.get("processed_items") or 0,
            failed_items=row.get("failed_items") or 0,
            error_details=row.get("error_details"),
            preferences=row.get("preferences") or {},
            started_at=row["started_at"],
            completed_at=row.get("completed_at"),
        )

    async def insert_session(
        self,
        user_id: str,
        service: SyncServiceName,
        preferences: dict[str, Any],
        current_step: str,
    ) -> SyncSession:
        query = f"""
            INSERT INTO sync_sessions (
                user_id, service, status, progress_percentage, current_step,
                imported_items, processed_items, failed_items, preferences, started_at
            )
            VALUES (%s, %s, 'started', 0, %s, 0, 0, 0, %s, NOW())
            RETURNING {self.SESSION_SELECT_COLUMNS}
        """
        row = await fetch_one(query, (user_id, service.value, current_step, Jsonb(preferences)))
        if not row:
            raise SyncSessionRepositoryError("Failed to create sync session", operation="insert_session")
        return self._row_to_session(row)

    @with_db_retry()
    async def get_session(self, session_id: str, user_id: str | None = None) -> SyncSession | None:
        query = f"SELECT {self.SESSION_SELECT_COLUMNS} FROM sync_sessions WHERE id = %s"
        params: tuple = (session_id,)
        if user_id is not None:
            query += " AND user_id = %s"
            params = (session_id, user_id)
        return self._row_to_session(await fetch_one(query, params))

    async def compare_and_update(
        self, session_id: str, changes: dict[str, Any], user_id: str | None = None
    ) -> SyncSession | None:
        """
        Apply ``changes`` only while the session is active.

        Returns the updated session, or None when the row is missing, not
        owned by ``user_id`` or already terminal.
        """
        unknown = set(changes) - set(UPDATABLE_COLUMNS)
        if unknown:
            raise ValueError(f"Unsupported session columns: {sorted(unknown)}")

        assignments: list[str] = []
        params: list[Any] = []
        for column in UPDATABLE_COLUMNS:
            if column not in changes:
                continue
            value = changes[column]
            if column in JSON_COLUMNS and value is not None:
                value = Jsonb(value)
            elif column == "status":
                value = SyncStatus(value).value
            assignments.append(f"{column} = %s")
            params.append(value)

        new_status = changes.get("status")
        if new_status is not None and SyncStatus(new_status) in TERMINAL_SYNC_STATUSES:
            assignments.append("completed_at = COALESCE(completed_at, NOW())")

        if not assignments:
            session = await self.get_session(session_id, user_id)
            return session if session is not None and not session.is_terminal else None

        conditions = ["id = %s", "status = ANY(%s)"]
        params.extend([session_id, [status.value for status in ACTIVE_SYNC_STATUSES]])
        if user_id is not None:
            conditions.append("user_id = %s")
            params.append(user_id)

        query = f"""
            UPDATE sync_sessions
            SET {", ".join(assignments)}
            WHERE {" AND ".join(conditions)}
            RETURNING {self.SESSION_SELECT_COLUMNS}
        """
        return self._row_to_session(await fetch_one(query, tuple(params)))

    @with_db_retry()
    async def list_sessions(
        self,
        user_id: str,
        service: SyncServiceName | None = None,
        status: SyncStatus | None = None,
        limit: int = 50,
    ) -> list[SyncSession]:
        conditions = ["user_id = %s"]
        params: list[Any] = [user_id]
        if service:
            conditions.append("service = %s")
            params.append(service.value)
        if status:
            conditions.append("status = %s")
            params.append(status.value)
        params.append(limit)

        query = f"""
            SELECT {self.SESSION_SELECT_COLUMNS}
            FROM sync_sessions
            WHERE {" AND ".join(conditions)}
            ORDER BY started_at DESC
            LIMIT %s
        """
        return [self._row_to_session(row) for row in await fetch_all(query, tuple(params))]

    @with_db_retry()
    async def list_active(self, user_id: str) -> list[SyncSession]:
        query = f"""
            SELECT {self.SESSION_SELECT_COLUMNS}
            FROM sync_sessions
            WHERE user_id = %s AND status = ANY(%s)
            ORDER BY started_at DESC
        """
        statuses = [status.value for status in ACTIVE_SYNC_STATUSES]
        return [self._row_to_session(row) for row in await fetch_all(query, (user_id, statuses))]

    @with_db_retry()
    async def list_failed_since(self, user_id: str, since: datetime, limit: int = 200) -> list[SyncSession]:
        query = f"""
            SELECT {self.SESSION_SELECT_COLUMNS}
            FROM sync_sessions
            WHERE user_id = %s AND status = 'failed' AND completed_at >= %s
            ORDER BY completed_at DESC
            LIMIT %s
        """
        return [self._row_to_session(row) for row in await fetch_all(query, (user_id, since, limit))]

    @with_db_retry()
    async def latest_preferences(self, user_id: str, service: SyncServiceName) -> dict[str, Any] | None:
        query = """
            SELECT preferences
            FROM sync_sessions
            WHERE user_id = %s AND service = %s
            ORDER BY started_at DESC
            LIMIT 1
        """
        row = await fetch_one(query, (user_id, service.value))
        return row["preferences"] if row else None

    async def delete_started_before(self, cutoff: datetime) -> int:
        query = "DELETE FROM sync_sessions WHERE started_at < %s"
        deleted = await execute_query(query, (cutoff,))
        logger.info("Old sync sessions deleted", deleted=deleted, cutoff=cutoff.isoformat())
        return deleted
