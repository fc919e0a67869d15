"""In-memory implementation of the durable store."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from .models import ActivityRecord, Lease
from .store import DurableStore


class InMemoryStore(DurableStore):
    """Keep journal and lease state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._activities: List[ActivityRecord] = []
        self._leases: Dict[str, Lease] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def append_activity(self, record: ActivityRecord) -> None:
        async with self._lock:
            self._activities.append(record.model_copy(deep=True))

    async def activities_for_trace(self, trace_id: str) -> List[ActivityRecord]:
        async with self._lock:
            return [
                r.model_copy(deep=True) for r in self._activities if r.trace_id == trace_id
            ]

    async def unfinished_traces(self, start_action: str, end_action: str) -> List[str]:
        async with self._lock:
            finished = {r.trace_id for r in self._activities if r.action == end_action}
            started: List[str] = []
            for r in self._activities:
                if r.action == start_action and r.trace_id not in finished:
                    if r.trace_id not in started:
                        started.append(r.trace_id)
            return started

    # ------------------------------------------------------------------
    async def try_acquire_lease(
        self, file_path: str, holder: str, now: datetime, expires_at: datetime
    ) -> Tuple[bool, Lease]:
        async with self._lock:
            current = self._leases.get(file_path)
            if current is not None and not current.is_expired(now):
                return False, current.model_copy()
            lease = Lease(
                file_path=file_path, holder=holder, acquired_at=now, expires_at=expires_at
            )
            self._leases[file_path] = lease
            return True, lease.model_copy()

    async def renew_lease(self, file_path: str, holder: str, expires_at: datetime) -> bool:
        async with self._lock:
            current = self._leases.get(file_path)
            if current is None or current.holder != holder:
                return False
            current.expires_at = expires_at
            return True

    async def delete_lease(self, file_path: str, holder: str) -> bool:
        async with self._lock:
            current = self._leases.get(file_path)
            if current is None or current.holder != holder:
                return False
            del self._leases[file_path]
            return True

    async def delete_expired_leases(self, now: datetime) -> List[Lease]:
        async with self._lock:
            expired = [lease for lease in self._leases.values() if lease.is_expired(now)]
            for lease in expired:
                del self._leases[lease.file_path]
            return expired

    async def delete_leases_by_holder_prefix(self, prefix: str) -> List[Lease]:
        async with self._lock:
            matched = [
                lease for lease in self._leases.values() if lease.holder.startswith(prefix)
            ]
            for lease in matched:
                del self._leases[lease.file_path]
            return matched

    async def get_lease(self, file_path: str) -> Optional[Lease]:
        async with self._lock:
            lease = self._leases.get(file_path)
            return lease.model_copy() if lease else None

    async def list_leases(self) -> List[Lease]:
        async with self._lock:
            return [lease.model_copy() for lease in self._leases.values()]

    async def applied_migrations(self) -> List[str]:
        return []

    async def close(self) -> None:
        pass
