"""
Persistence for the ``integrations`` table.

Token columns hold ciphertext (BYTEA). Refresh only rewrites token and
expiry columns; identity columns are never part of an UPDATE here.
"""

from datetime import datetime

from app.db.helpers import execute_query, fetch_all, fetch_one, with_db_retry
from app.features.sync.domain import Integration
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class IntegrationRepository:
    INTEGRATION_SELECT_COLUMNS = """
        user_id, provider, service, access_token, refresh_token, expiry_date, updated_at
    """

    @classmethod
    def _row_to_integration(cls, row: dict | None) -> Integration | None:
        if not row:
            return None

        return Integration(
            user_id=str(row["user_id"]),
            provider=row["provider"],
            service=row["service"],
            access_token=bytes(row["access_token"]) if row.get("access_token") else None,
            refresh_token=bytes(row["refresh_token"]) if row.get("refresh_token") else None,
            expiry_date=row.get("expiry_date"),
            updated_at=row.get("updated_at"),
        )

    @with_db_retry()
    async def get_integration(self, user_id: str, provider: str, service: str) -> Integration | None:
        query = f"""
            SELECT {self.INTEGRATION_SELECT_COLUMNS}
            FROM integrations
            WHERE user_id = %s AND provider = %s AND service = %s
        """
        return self._row_to_integration(await fetch_one(query, (user_id, provider, service)))

    @with_db_retry()
    async def update_tokens(
        self,
        user_id: str,
        provider: str,
        service: str,
        access_token: bytes,
        refresh_token: bytes | None,
        expiry_date: datetime,
    ) -> bool:
        """Store a refreshed token set; keep the old refresh token unless rotated."""
        query = """
            UPDATE integrations
            SET access_token = %s,
                refresh_token = COALESCE(%s, refresh_token),
                expiry_date = %s,
                updated_at = NOW()
            WHERE user_id = %s AND provider = %s AND service = %s
        """
        affected = await execute_query(
            query, (access_token, refresh_token, expiry_date, user_id, provider, service)
        )
        logger.info(
            "Integration tokens updated",
            user_id=user_id,
            provider=provider,
            service=service,
            rotated_refresh_token=refresh_token is not None,
            expiry_date=expiry_date.isoformat(),
            updated=affected == 1,
        )
        return affected == 1

    @with_db_retry()
    async def list_expiring(self, provider: str, before: datetime, limit: int = 200) -> list[Integration]:
        query = f"""
            SELECT {self.INTEGRATION_SELECT_COLUMNS}
            FROM integrations
            WHERE provider = %s
              AND refresh_token IS NOT NULL
              AND expiry_date IS NOT NULL
              AND expiry_date <= %s
            ORDER BY expiry_date ASC
            LIMIT %s
        """
        rows = await fetch_all(query, (provider, before, limit))
        return [self._row_to_integration(row) for row in rows]
