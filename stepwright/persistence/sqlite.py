"""SQLite implementation of the durable store."""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, List, Optional, Tuple, TypeVar

from ..errors import PersistenceError
from .models import ActivityRecord, Lease
from .store import DurableStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

MIGRATIONS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    (
        "001_init",
        (
            """
            CREATE TABLE IF NOT EXISTS activity (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                trace_id TEXT NOT NULL,
                actor TEXT NOT NULL,
                action TEXT NOT NULL,
                payload TEXT NOT NULL,
                occurred_at TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_activity_trace ON activity(trace_id)",
            "CREATE INDEX IF NOT EXISTS idx_activity_action ON activity(action)",
            """
            CREATE TABLE IF NOT EXISTS leases (
                file_path TEXT PRIMARY KEY,
                agent_id TEXT NOT NULL,
                acquired_at TEXT NOT NULL,
                expires_at TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_leases_expires ON leases(expires_at)",
        ),
    ),
)


def _ts(value: datetime) -> str:
    """Fixed-width UTC text so lexical order matches time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TS_FORMAT)


def _parse_ts(value: str) -> datetime:
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=timezone.utc)


def _lease_from_row(row: sqlite3.Row) -> Lease:
    return Lease(
        file_path=row["file_path"],
        holder=row["agent_id"],
        acquired_at=_parse_ts(row["acquired_at"]),
        expires_at=_parse_ts(row["expires_at"]),
    )


class SQLiteStore(DurableStore):
    """Persist journal and lease state using SQLite.

    The connection runs in autocommit mode; every write is an explicit
    ``BEGIN IMMEDIATE`` transaction so lease acquisition is atomic across
    threads and processes sharing the database file.
    """

    def __init__(self, db_path: str | Path, busy_timeout_ms: int = 5000):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = sqlite3.connect(
                self.db_path, check_same_thread=False, isolation_level=None
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode = WAL")
            self._conn.execute("PRAGMA synchronous = FULL")
            self._conn.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)}")
        except sqlite3.Error as exc:
            raise PersistenceError(f"Cannot open journal database {self.db_path}: {exc}") from exc
        self._lock = threading.Lock()
        self._migrate()

    # ------------------------------------------------------------------
    # Schema management
    def _migrate(self) -> None:
        with self._lock:
            try:
                self._conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS schema_version (
                        version TEXT PRIMARY KEY,
                        applied_at TEXT NOT NULL
                    )
                    """
                )
                applied = {
                    row["version"]
                    for row in self._conn.execute("SELECT version FROM schema_version")
                }
                for version, statements in MIGRATIONS:
                    if version in applied:
                        continue
                    self._conn.execute("BEGIN IMMEDIATE")
                    try:
                        for statement in statements:
                            self._conn.execute(statement)
                        self._conn.execute(
                            "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                            (version, _ts(datetime.now(timezone.utc))),
                        )
                        self._conn.execute("COMMIT")
                    except sqlite3.Error:
                        self._conn.execute("ROLLBACK")
                        raise
                    logger.info(f"Applied schema migration {version} to {self.db_path}")
            except sqlite3.Error as exc:
                raise PersistenceError(f"Schema migration failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Helper methods
    def _transaction(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
                try:
                    result = fn(self._conn)
                except BaseException:
                    self._conn.execute("ROLLBACK")
                    raise
                self._conn.execute("COMMIT")
                return result
            except sqlite3.Error as exc:
                raise PersistenceError(f"SQLite write failed: {exc}") from exc

    def _fetchall(self, query: str, *params: Any) -> List[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(query, params).fetchall()
            except sqlite3.Error as exc:
                raise PersistenceError(f"SQLite read failed: {exc}") from exc

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        return await asyncio.to_thread(fn, *args)

    # ------------------------------------------------------------------
    # Journal
    async def append_activity(self, record: ActivityRecord) -> None:
        def _insert(conn: sqlite3.Connection) -> None:
            conn.execute(
                "INSERT INTO activity (id, trace_id, actor, action, payload, occurred_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    record.id,
                    record.trace_id,
                    record.actor,
                    record.action,
                    json.dumps(record.payload, default=str),
                    _ts(record.occurred_at),
                ),
            )

        await self._run(self._transaction, _insert)

    async def activities_for_trace(self, trace_id: str) -> List[ActivityRecord]:
        rows = await self._run(
            self._fetchall,
            "SELECT id, trace_id, actor, action, payload, occurred_at FROM activity "
            "WHERE trace_id = ? ORDER BY seq",
            trace_id,
        )
        return [
            ActivityRecord(
                id=r["id"],
                trace_id=r["trace_id"],
                actor=r["actor"],
                action=r["action"],
                payload=json.loads(r["payload"]) if r["payload"] else {},
                occurred_at=_parse_ts(r["occurred_at"]),
            )
            for r in rows
        ]

    async def unfinished_traces(self, start_action: str, end_action: str) -> List[str]:
        rows = await self._run(
            self._fetchall,
            """
            SELECT trace_id, MIN(seq) AS first_seq FROM activity
            WHERE action = ?
              AND trace_id NOT IN (SELECT trace_id FROM activity WHERE action = ?)
            GROUP BY trace_id
            ORDER BY first_seq
            """,
            start_action,
            end_action,
        )
        return [r["trace_id"] for r in rows]

    # ------------------------------------------------------------------
    # Leases
    async def try_acquire_lease(
        self, file_path: str, holder: str, now: datetime, expires_at: datetime
    ) -> Tuple[bool, Lease]:
        def _acquire(conn: sqlite3.Connection) -> Tuple[bool, Lease]:
            conn.execute(
                "DELETE FROM leases WHERE file_path = ? AND expires_at <= ?",
                (file_path, _ts(now)),
            )
            row = conn.execute(
                "SELECT file_path, agent_id, acquired_at, expires_at FROM leases "
                "WHERE file_path = ?",
                (file_path,),
            ).fetchone()
            if row is not None:
                return False, _lease_from_row(row)
            conn.execute(
                "INSERT INTO leases (file_path, agent_id, acquired_at, expires_at) "
                "VALUES (?, ?, ?, ?)",
                (file_path, holder, _ts(now), _ts(expires_at)),
            )
            return True, Lease(
                file_path=file_path,
                holder=holder,
                acquired_at=_parse_ts(_ts(now)),
                expires_at=_parse_ts(_ts(expires_at)),
            )

        return await self._run(self._transaction, _acquire)

    async def renew_lease(self, file_path: str, holder: str, expires_at: datetime) -> bool:
        def _renew(conn: sqlite3.Connection) -> bool:
            cur = conn.execute(
                "UPDATE leases SET expires_at = ? WHERE file_path = ? AND agent_id = ?",
                (_ts(expires_at), file_path, holder),
            )
            return cur.rowcount > 0

        return await self._run(self._transaction, _renew)

    async def delete_lease(self, file_path: str, holder: str) -> bool:
        def _delete(conn: sqlite3.Connection) -> bool:
            cur = conn.execute(
                "DELETE FROM leases WHERE file_path = ? AND agent_id = ?",
                (file_path, holder),
            )
            return cur.rowcount > 0

        return await self._run(self._transaction, _delete)

    def _delete_matching(self, where: str, *params: Any) -> List[Lease]:
        def _delete(conn: sqlite3.Connection) -> List[Lease]:
            rows = conn.execute(
                f"SELECT file_path, agent_id, acquired_at, expires_at FROM leases WHERE {where}",
                params,
            ).fetchall()
            conn.execute(f"DELETE FROM leases WHERE {where}", params)
            return [_lease_from_row(r) for r in rows]

        return self._transaction(_delete)

    async def delete_expired_leases(self, now: datetime) -> List[Lease]:
        return await self._run(self._delete_matching, "expires_at <= ?", _ts(now))

    async def delete_leases_by_holder_prefix(self, prefix: str) -> List[Lease]:
        return await self._run(
            self._delete_matching, "substr(agent_id, 1, length(?)) = ?", prefix, prefix
        )

    async def get_lease(self, file_path: str) -> Optional[Lease]:
        rows = await self._run(
            self._fetchall,
            "SELECT file_path, agent_id, acquired_at, expires_at FROM leases WHERE file_path = ?",
            file_path,
        )
        return _lease_from_row(rows[0]) if rows else None

    async def list_leases(self) -> List[Lease]:
        rows = await self._run(
            self._fetchall,
            "SELECT file_path, agent_id, acquired_at, expires_at FROM leases ORDER BY file_path",
        )
        return [_lease_from_row(r) for r in rows]

    async def applied_migrations(self) -> List[str]:
        rows = await self._run(
            self._fetchall, "SELECT version FROM schema_version ORDER BY version"
        )
        return [r["version"] for r in rows]

    async def close(self) -> None:
        with self._lock:
            self._conn.close()
