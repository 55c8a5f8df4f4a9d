"""
Device registry backed by PostgreSQL
"""

import asyncio
import asyncpg
import logging
from typing import AsyncIterator, Dict, List, Optional
from datetime import datetime, timezone

from errors import PersistenceFailure
from .models import ControllerRecord, _convert_ip_address, controller_key

logger = logging.getLogger(__name__)

# Errors that mean the write did not reach the database
_DATABASE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)

_RECORD_COLUMNS = """
    owner_id, controller_id, ip_address, name, network_name, network_configured,
    verified, credential_fingerprint, created_at, updated_at
"""


class DeviceRegistry:
    """Stores provisioned controllers, one row per (owner, controller)"""

    def __init__(self, config: Dict):
        self.config = config
        self.pool = None
        self.db_host = config['registry']['host']
        self.db_port = config['registry']['port']
        self.db_name = config['registry']['database']
        self.db_user = config['registry']['username']
        self.db_password = config['registry']['password']
        self.owner_id = config['registry']['owner_id']
        self.poll_interval = config['registry'].get('poll_interval', 5)

    async def initialize(self):
        """Initialize database connection pool and schema"""
        try:
            self.pool = await asyncpg.create_pool(
                host=self.db_host,
                port=self.db_port,
                database=self.db_name,
                user=self.db_user,
                password=self.db_password,
                min_size=1,
                max_size=5,
                command_timeout=10
            )

            logger.info("Registry connection pool created")

            await self.create_schema()
            logger.info("Registry schema initialized")

        except Exception as e:
            logger.error(f"Registry initialization failed: {e}")
            raise

    async def create_schema(self):
        """Create registry tables if they don't exist"""
        schema_sql = """
        CREATE TABLE IF NOT EXISTS controllers (
            owner_id TEXT NOT NULL,
            controller_id TEXT NOT NULL,
            ip_address INET NOT NULL,
            name TEXT,
            network_name TEXT,
            network_configured BOOLEAN DEFAULT false,
            verified BOOLEAN DEFAULT true,
            credential_fingerprint TEXT,
            created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMPTZ NOT NULL,
            PRIMARY KEY (owner_id, controller_id)
        );

        CREATE INDEX IF NOT EXISTS idx_controllers_owner_updated
        ON controllers(owner_id, updated_at DESC);
        """

        async with self.pool.acquire() as conn:
            await conn.execute(schema_sql)

    async def save_record(self, identifier: str, address: str, name: Optional[str] = None,
                          network_name: Optional[str] = None, configured_flag: bool = False,
                          verified: bool = True, credential_fingerprint: Optional[str] = None,
                          updated_at: Optional[datetime] = None) -> ControllerRecord:
        """
        Insert or update a controller record keyed by identifier.

        Last write wins on updated_at: an older write is dropped as a whole and
        the stored record is returned unchanged. created_at is never touched
        after the first insert.

        Raises:
            PersistenceFailure: the registry could not be written
        """
        if self.pool is None:
            raise PersistenceFailure("Registry is not initialized")

        controller_id = controller_key(identifier)
        updated_at = updated_at or datetime.now(timezone.utc)

        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(f"""
                    INSERT INTO controllers (
                        owner_id, controller_id, ip_address, name, network_name,
                        network_configured, verified, credential_fingerprint, updated_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                    ON CONFLICT (owner_id, controller_id) DO UPDATE SET
                        ip_address = EXCLUDED.ip_address,
                        name = EXCLUDED.name,
                        network_name = EXCLUDED.network_name,
                        network_configured = EXCLUDED.network_configured,
                        verified = EXCLUDED.verified,
                        credential_fingerprint = EXCLUDED.credential_fingerprint,
                        updated_at = EXCLUDED.updated_at
                    WHERE controllers.updated_at <= EXCLUDED.updated_at
                    RETURNING {_RECORD_COLUMNS}
                """,
                self.owner_id, controller_id, address, name, network_name,
                configured_flag, verified, credential_fingerprint, updated_at
                )

                if row is None:
                    logger.warning(f"Stale write for {controller_id} ignored, newer record already stored")
                    row = await conn.fetchrow(f"""
                        SELECT {_RECORD_COLUMNS} FROM controllers
                        WHERE owner_id = $1 AND controller_id = $2
                    """, self.owner_id, controller_id)

        except _DATABASE_ERRORS as e:
            logger.error(f"Failed to save controller {controller_id}: {e}")
            raise PersistenceFailure("Could not save the controller record", detail=str(e)) from e

        record = self._row_to_record(row)
        logger.info(f"[OK] Saved controller {record.controller_id} at {record.ip_address} "
                    f"(verified={record.verified})")
        return record

    async def delete_record(self, identifier: str) -> bool:
        """Remove a controller record; True if a row was deleted"""
        controller_id = controller_key(identifier)
        try:
            async with self.pool.acquire() as conn:
                result = await conn.execute("""
                    DELETE FROM controllers WHERE owner_id = $1 AND controller_id = $2
                """, self.owner_id, controller_id)

                rows_affected = int(result.split()[-1]) if result and result.split() else 0
                if rows_affected:
                    logger.info(f"Deleted controller {controller_id}")
                else:
                    logger.warning(f"No controller found with ID: {controller_id}")
                return rows_affected > 0

        except Exception as e:
            logger.error(f"Failed to delete controller {controller_id}: {e}")
            return False

    async def get_record(self, identifier: str) -> Optional[ControllerRecord]:
        """Get controller record by identifier"""
        controller_id = controller_key(identifier)
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(f"""
                    SELECT {_RECORD_COLUMNS} FROM controllers
                    WHERE owner_id = $1 AND controller_id = $2
                """, self.owner_id, controller_id)
                return self._row_to_record(row) if row else None

        except Exception as e:
            logger.error(f"Failed to get controller {controller_id}: {e}")
            return None

    async def list_records(self, owner_id: Optional[str] = None) -> List[ControllerRecord]:
        """Get all controllers for an owner, most recently updated first"""
        owner_id = owner_id or self.owner_id
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(f"""
                    SELECT {_RECORD_COLUMNS} FROM controllers
                    WHERE owner_id = $1
                    ORDER BY updated_at DESC
                """, owner_id)
                return [self._row_to_record(row) for row in rows]

        except Exception as e:
            logger.error(f"Failed to list controllers: {e}")
            return []

    async def stream_records(self, owner_id: Optional[str] = None,
                             poll_interval: Optional[float] = None) -> AsyncIterator[ControllerRecord]:
        """Yield each record when first seen and again whenever its updated_at changes"""
        poll_interval = poll_interval or self.poll_interval
        last_seen: Dict[str, datetime] = {}
        while True:
            for record in await self.list_records(owner_id):
                if last_seen.get(record.controller_id) != record.updated_at:
                    last_seen[record.controller_id] = record.updated_at
                    yield record
            await asyncio.sleep(poll_interval)

    @staticmethod
    def _row_to_record(row) -> ControllerRecord:
        return ControllerRecord(
            controller_id=row['controller_id'],
            ip_address=_convert_ip_address(row['ip_address']),
            name=row['name'],
            network_name=row['network_name'],
            network_configured=row['network_configured'],
            verified=row['verified'],
            credential_fingerprint=row['credential_fingerprint'],
            owner_id=row['owner_id'],
            created_at=row['created_at'],
            updated_at=row['updated_at'],
        )

    async def close(self):
        """Close database connection pool"""
        if self.pool:
            await self.pool.close()
            logger.info("Registry connection pool closed")
