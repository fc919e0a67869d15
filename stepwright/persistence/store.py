"""Store abstraction for the activity journal and the lease table."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol, Tuple

from .models import ActivityRecord, Lease


class DurableStore(Protocol):
    """Protocol for durable persistence backends.

    Every method either completes durably or raises ``PersistenceError``.
    """

    async def append_activity(self, record: ActivityRecord) -> None:
        """Durably append a journal record."""

    async def activities_for_trace(self, trace_id: str) -> List[ActivityRecord]:
        """Return the records of ``trace_id`` in append order."""

    async def unfinished_traces(self, start_action: str, end_action: str) -> List[str]:
        """Trace ids with a ``start_action`` record and no ``end_action`` record."""

    async def try_acquire_lease(
        self, file_path: str, holder: str, now: datetime, expires_at: datetime
    ) -> Tuple[bool, Lease]:
        """Atomically claim ``file_path``.

        Returns ``(True, new_lease)`` when granted, otherwise ``(False,
        current_lease)``. A lease already expired at ``now`` is replaced.
        """

    async def renew_lease(self, file_path: str, holder: str, expires_at: datetime) -> bool:
        """Extend a lease held by ``holder``; ``False`` if not the holder."""

    async def delete_lease(self, file_path: str, holder: str) -> bool:
        """Delete a lease held by ``holder``; ``False`` if not the holder."""

    async def delete_expired_leases(self, now: datetime) -> List[Lease]:
        """Delete and return every lease whose expiry is at or before ``now``."""

    async def delete_leases_by_holder_prefix(self, prefix: str) -> List[Lease]:
        """Delete and return leases whose holder starts with ``prefix``."""

    async def get_lease(self, file_path: str) -> Optional[Lease]:
        """Return the lease row for ``file_path`` if any."""

    async def list_leases(self) -> List[Lease]:
        """Return every lease row."""

    async def applied_migrations(self) -> List[str]:
        """Return applied schema versions in order."""

    async def close(self) -> None:
        """Release backend resources."""
