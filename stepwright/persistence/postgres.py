"""PostgreSQL implementation of the durable store."""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, List, Optional, Tuple

import asyncpg

from ..errors import PersistenceError
from .models import ActivityRecord, Lease
from .store import DurableStore

logger = logging.getLogger(__name__)

MIGRATIONS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    (
        "001_init",
        (
            """
            CREATE TABLE IF NOT EXISTS activity (
                seq BIGSERIAL PRIMARY KEY,
                id TEXT NOT NULL UNIQUE,
                trace_id TEXT NOT NULL,
                actor TEXT NOT NULL,
                action TEXT NOT NULL,
                payload JSONB NOT NULL,
                occurred_at TIMESTAMPTZ NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_activity_trace ON activity(trace_id)",
            "CREATE INDEX IF NOT EXISTS idx_activity_action ON activity(action)",
            """
            CREATE TABLE IF NOT EXISTS leases (
                file_path TEXT PRIMARY KEY,
                agent_id TEXT NOT NULL,
                acquired_at TIMESTAMPTZ NOT NULL,
                expires_at TIMESTAMPTZ NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_leases_expires ON leases(expires_at)",
        ),
    ),
)

_LEASE_COLUMNS = "file_path, agent_id, acquired_at, expires_at"


def _lease_from_row(row: asyncpg.Record) -> Lease:
    return Lease(
        file_path=row["file_path"],
        holder=row["agent_id"],
        acquired_at=row["acquired_at"],
        expires_at=row["expires_at"],
    )


class PostgresStore(DurableStore):
    """Persist journal and lease state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_version (
                version TEXT PRIMARY KEY,
                applied_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
            """
        )
        rows = await conn.fetch("SELECT version FROM schema_version")
        applied = {r["version"] for r in rows}
        for version, statements in MIGRATIONS:
            if version in applied:
                continue
            async with conn.transaction():
                for statement in statements:
                    await conn.execute(statement)
                await conn.execute(
                    "INSERT INTO schema_version (version) VALUES ($1) ON CONFLICT DO NOTHING",
                    version,
                )
            logger.info(f"Applied schema migration {version}")

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        try:
            conn = await self._connect()
        except (asyncpg.PostgresError, OSError) as exc:
            raise PersistenceError(f"Cannot connect to PostgreSQL: {exc}") from exc
        try:
            yield conn
        except asyncpg.PostgresError as exc:
            raise PersistenceError(f"PostgreSQL operation failed: {exc}") from exc
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def append_activity(self, record: ActivityRecord) -> None:
        async with self._connection() as conn:
            await conn.execute(
                "INSERT INTO activity (id, trace_id, actor, action, payload, occurred_at) "
                "VALUES ($1, $2, $3, $4, $5::jsonb, $6)",
                record.id,
                record.trace_id,
                record.actor,
                record.action,
                json.dumps(record.payload, default=str),
                record.occurred_at,
            )

    async def activities_for_trace(self, trace_id: str) -> List[ActivityRecord]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                "SELECT id, trace_id, actor, action, payload, occurred_at FROM activity "
                "WHERE trace_id = $1 ORDER BY seq",
                trace_id,
            )
        return [
            ActivityRecord(
                id=r["id"],
                trace_id=r["trace_id"],
                actor=r["actor"],
                action=r["action"],
                payload=json.loads(r["payload"]) if isinstance(r["payload"], str) else r["payload"],
                occurred_at=r["occurred_at"],
            )
            for r in rows
        ]

    async def unfinished_traces(self, start_action: str, end_action: str) -> List[str]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                SELECT trace_id FROM activity
                WHERE action = $1
                  AND trace_id NOT IN (SELECT trace_id FROM activity WHERE action = $2)
                GROUP BY trace_id
                ORDER BY MIN(seq)
                """,
                start_action,
                end_action,
            )
        return [r["trace_id"] for r in rows]

    # ------------------------------------------------------------------
    async def try_acquire_lease(
        self, file_path: str, holder: str, now: datetime, expires_at: datetime
    ) -> Tuple[bool, Lease]:
        async with self._connection() as conn:
            # A concurrent release can remove the row between the failed
            # insert and the read; try again in that case.
            for _ in range(3):
                async with conn.transaction():
                    await conn.execute(
                        "DELETE FROM leases WHERE file_path = $1 AND expires_at <= $2",
                        file_path,
                        now,
                    )
                    row = await conn.fetchrow(
                        f"INSERT INTO leases ({_LEASE_COLUMNS}) VALUES ($1, $2, $3, $4) "
                        f"ON CONFLICT (file_path) DO NOTHING RETURNING {_LEASE_COLUMNS}",
                        file_path,
                        holder,
                        now,
                        expires_at,
                    )
                    if row is not None:
                        return True, _lease_from_row(row)
                    current = await conn.fetchrow(
                        f"SELECT {_LEASE_COLUMNS} FROM leases WHERE file_path = $1",
                        file_path,
                    )
                    if current is not None:
                        return False, _lease_from_row(current)
        raise PersistenceError(f"Lease row for {file_path} kept changing during acquire")

    async def renew_lease(self, file_path: str, holder: str, expires_at: datetime) -> bool:
        async with self._connection() as conn:
            status = await conn.execute(
                "UPDATE leases SET expires_at = $1 WHERE file_path = $2 AND agent_id = $3",
                expires_at,
                file_path,
                holder,
            )
        return status.endswith(" 1")

    async def delete_lease(self, file_path: str, holder: str) -> bool:
        async with self._connection() as conn:
            status = await conn.execute(
                "DELETE FROM leases WHERE file_path = $1 AND agent_id = $2",
                file_path,
                holder,
            )
        return status.endswith(" 1")

    async def delete_expired_leases(self, now: datetime) -> List[Lease]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"DELETE FROM leases WHERE expires_at <= $1 RETURNING {_LEASE_COLUMNS}",
                now,
            )
        return [_lease_from_row(r) for r in rows]

    async def delete_leases_by_holder_prefix(self, prefix: str) -> List[Lease]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                "DELETE FROM leases WHERE left(agent_id, length($1)) = $1 "
                f"RETURNING {_LEASE_COLUMNS}",
                prefix,
            )
        return [_lease_from_row(r) for r in rows]

    async def get_lease(self, file_path: str) -> Optional[Lease]:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {_LEASE_COLUMNS} FROM leases WHERE file_path = $1", file_path
            )
        return _lease_from_row(row) if row else None

    async def list_leases(self) -> List[Lease]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"SELECT {_LEASE_COLUMNS} FROM leases ORDER BY file_path"
            )
        return [_lease_from_row(r) for r in rows]

    async def applied_migrations(self) -> List[str]:
        async with self._connection() as conn:
            rows = await conn.fetch("SELECT version FROM schema_version ORDER BY version")
        return [r["version"] for r in rows]

    async def close(self) -> None:
        pass
