"""PostgreSQL repository adapter for tenant POS credentials.

Rows hold vault ciphertext only. Decryption happens in the worker, right
before authentication, and the plaintext is never written back.
"""

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from ...api.database import database_connection
from ..domain.entities import CredentialRecord
from ..domain.ports import ICredentialRepository

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)


class PostgresCredentialRepository(ICredentialRepository):
    """PostgreSQL implementation of ICredentialRepository."""

    def __init__(self, pool: "asyncpg.Pool"):
        self.pool = pool

    async def get(self, restaurant_id: str) -> CredentialRecord | None:
        async with database_connection(self.pool) as conn:
            row = await conn.fetchrow(
                """
                SELECT restaurant_id, client_id, encrypted_client_secret, location_id,
                       is_active, last_sync_at, notification_email
                FROM pos_credentials
                WHERE restaurant_id = $1
                """,
                restaurant_id,
            )
        if row is None:
            return None
        return CredentialRecord(
            restaurant_id=row["restaurant_id"],
            client_id=row["client_id"],
            encrypted_client_secret=row["encrypted_client_secret"],
            location_id=row["location_id"],
            is_active=row["is_active"],
            last_sync_at=row["last_sync_at"],
            notification_email=row["notification_email"],
        )

    async def save(self, record: CredentialRecord) -> None:
        async with database_connection(self.pool) as conn:
            await conn.execute(
                """
                INSERT INTO pos_credentials (
                    restaurant_id, client_id, encrypted_client_secret, location_id,
                    is_active, last_sync_at, notification_email, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, NOW(), NOW())
                ON CONFLICT (restaurant_id) DO UPDATE SET
                    client_id = EXCLUDED.client_id,
                    encrypted_client_secret = EXCLUDED.encrypted_client_secret,
                    location_id = EXCLUDED.location_id,
                    is_active = EXCLUDED.is_active,
                    last_sync_at = EXCLUDED.last_sync_at,
                    notification_email = EXCLUDED.notification_email,
                    updated_at = NOW()
                """,
                record.restaurant_id,
                record.client_id,
                record.encrypted_client_secret,
                record.location_id,
                record.is_active,
                record.last_sync_at,
                record.notification_email,
            )
        logger.info(f"Saved POS credentials for restaurant {record.restaurant_id}")

    async def set_last_sync_at(self, restaurant_id: str, synced_at: datetime) -> None:
        async with database_connection(self.pool) as conn:
            await conn.execute(
                """
                UPDATE pos_credentials
                SET last_sync_at = $2, updated_at = NOW()
                WHERE restaurant_id = $1
                """,
                restaurant_id,
                synced_at,
            )
