"""
Database State Store - PostgreSQL-backed StateStore.

Stores one row per tracked resource (whole-record upserts) and keeps a
history of reported diagnostics.
"""

import json
import logging
from typing import Any, Dict, List, Optional

import asyncpg

from config import DatabaseConfig
from events import Diagnostic, DiagnosticSubscription
from migrate import run_migrations
from state import LifecycleState, ResourceRecord, StateStore

logger = logging.getLogger(__name__)


def _dump(value: Optional[Dict[str, Any]]) -> Optional[str]:
    return json.dumps(value, sort_keys=True) if value is not None else None


def _load(value: Optional[str]) -> Optional[Dict[str, Any]]:
    return json.loads(value) if value else None


class PostgresStateStore(StateStore):
    """StateStore persisting records in PostgreSQL through an asyncpg pool."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 1,
        max_pool_size: int = 10,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> "PostgresStateStore":
        return cls(
            host=config.host,
            port=config.port,
            database=config.database,
            user=config.user,
            password=config.password,
            min_pool_size=config.min_pool_size,
            max_pool_size=config.max_pool_size,
        )

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Apply database migrations to bring schema up to date."""
        self._ensure_connected()
        await run_migrations(self.pool)
        logger.info("Database schema initialized")

    # ==================== StateStore ====================

    async def get(self, resource_type: str, identifier: str) -> Optional[ResourceRecord]:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM resource_state
                WHERE resource_type = $1 AND identifier = $2
                """,
                resource_type,
                identifier,
            )
            if not row:
                return None
            return self._parse_record_row(row)

    async def put(self, record: ResourceRecord) -> None:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO resource_state
                    (resource_type, identifier, status, observed, error, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6)
                ON CONFLICT (resource_type, identifier) DO UPDATE
                SET status = EXCLUDED.status,
                    observed = EXCLUDED.observed,
                    error = EXCLUDED.error,
                    updated_at = EXCLUDED.updated_at
                """,
                record.resource_type,
                record.identifier,
                record.status.value,
                _dump(record.observed),
                _dump(record.error),
                record.updated_at,
            )
        logger.debug(f"Stored {record.resource_type} {record.identifier} ({record.status.value})")

    async def remove(self, resource_type: str, identifier: str) -> None:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            await conn.execute(
                "DELETE FROM resource_state WHERE resource_type = $1 AND identifier = $2",
                resource_type,
                identifier,
            )
        logger.debug(f"Removed {resource_type} {identifier} from state")

    async def list(self, resource_type: Optional[str] = None) -> List[ResourceRecord]:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            if resource_type:
                rows = await conn.fetch(
                    """
                    SELECT * FROM resource_state
                    WHERE resource_type = $1
                    ORDER BY identifier
                    """,
                    resource_type,
                )
            else:
                rows = await conn.fetch(
                    "SELECT * FROM resource_state ORDER BY resource_type, identifier"
                )
            return [self._parse_record_row(row) for row in rows]

    # ==================== Diagnostics history ====================

    async def record_diagnostic(self, diagnostic: Diagnostic) -> int:
        """Persist a diagnostic; returns its row ID."""
        self._ensure_connected()
        data = diagnostic.to_dict()
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                """
                INSERT INTO diagnostics
                    (resource_type, resource_key, action, severity, error, created_at)
                VALUES ($1, $2, $3, $4, $5, $6)
                RETURNING id
                """,
                diagnostic.resource_type,
                diagnostic.resource_key,
                data["action"],
                data["severity"],
                json.dumps(data["error"]),
                diagnostic.timestamp,
            )

    async def persist_diagnostics(self, subscription: DiagnosticSubscription) -> int:
        """
        Record every diagnostic delivered to a bus subscription.

        Runs until the subscription is closed with DiagnosticsBus.unsubscribe().
        A diagnostic that cannot be written is logged and skipped.

        Returns:
            Number of diagnostics recorded.
        """
        recorded = 0
        async for diagnostic in subscription:
            try:
                await self.record_diagnostic(diagnostic)
                recorded += 1
            except (asyncpg.PostgresError, OSError) as e:
                logger.error(f"Failed to record diagnostic {diagnostic.summary}: {e}")
        return recorded

    async def get_diagnostic_history(
        self, resource_type: str, resource_key: str, limit: int = 10
    ) -> List[Dict[str, Any]]:
        """Most recent diagnostics for one resource, newest first."""
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM diagnostics
                WHERE resource_type = $1 AND resource_key = $2
                ORDER BY created_at DESC
                LIMIT $3
                """,
                resource_type,
                resource_key,
                limit,
            )
            result = []
            for row in rows:
                entry = dict(row)
                entry["error"] = _load(entry.get("error")) or {}
                result.append(entry)
            return result

    def _parse_record_row(self, row: asyncpg.Record) -> ResourceRecord:
        """Convert a resource_state row, decoding its JSON columns."""
        data = dict(row)
        return ResourceRecord(
            resource_type=data["resource_type"],
            identifier=data["identifier"],
            status=LifecycleState(data["status"]),
            observed=_load(data.get("observed")),
            error=_load(data.get("error")),
            updated_at=data["updated_at"],
        )
