"""Durable, exclusive, expiring leases over file paths."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Iterable, List, Optional, Union

from pydantic import BaseModel

from .config import LeaseConfig
from .contracts import utcnow
from .persistence import DurableStore
from .persistence.models import Lease

logger = logging.getLogger(__name__)


class LeaseGranted(BaseModel):
    file_path: str
    holder: str
    expires_at: datetime


class LeaseBusy(BaseModel):
    file_path: str
    holder: str
    expires_at: datetime


AcquireOutcome = Union[LeaseGranted, LeaseBusy]


class ReleaseOutcome(str, Enum):
    OK = "ok"
    NOT_HOLDER = "not_holder"


class LeaseManager:
    """Grant and reclaim leases through the store's atomic lease operations.

    At most one unexpired lease exists per path. An expired lease is replaced
    by the next ``acquire`` on its path and removed by ``sweep_expired``.
    """

    def __init__(
        self,
        store: DurableStore,
        config: Optional[LeaseConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._config = config or LeaseConfig()
        self._clock = clock

    @property
    def config(self) -> LeaseConfig:
        return self._config

    def _ttl(self, ttl_ms: Optional[int]) -> timedelta:
        ttl_ms = ttl_ms if ttl_ms is not None else self._config.default_ttl_ms
        if ttl_ms <= 0:
            raise ValueError(f"Lease TTL must be positive, got {ttl_ms}ms")
        return timedelta(milliseconds=ttl_ms)

    async def acquire(
        self, path: str, holder: str, ttl_ms: Optional[int] = None
    ) -> AcquireOutcome:
        ttl = self._ttl(ttl_ms)
        now = self._clock()
        granted, lease = await self._store.try_acquire_lease(path, holder, now, now + ttl)
        if granted:
            logger.debug(f"Lease on {path} granted to {holder} until {lease.expires_at}")
            return LeaseGranted(
                file_path=path, holder=holder, expires_at=lease.expires_at
            )
        logger.info(f"Lease on {path} busy: held by {lease.holder} until {lease.expires_at}")
        return LeaseBusy(
            file_path=path, holder=lease.holder, expires_at=lease.expires_at
        )

    async def acquire_all(
        self, paths: Iterable[str], holder: str, ttl_ms: Optional[int] = None
    ) -> Union[List[LeaseGranted], LeaseBusy]:
        """Acquire every path or none of them.

        Paths are taken in sorted order so that two holders contending for
        overlapping sets cannot deadlock. On the first ``Busy`` the leases
        granted so far are released and that ``Busy`` is returned.
        """
        granted: List[LeaseGranted] = []
        for path in sorted(set(paths)):
            outcome = await self.acquire(path, holder, ttl_ms)
            if isinstance(outcome, LeaseBusy):
                for lease in granted:
                    await self.release(lease.file_path, holder)
                return outcome
            granted.append(outcome)
        return granted

    async def renew(self, path: str, holder: str, ttl_ms: Optional[int] = None) -> bool:
        """Push the expiry of a held lease forward; ``False`` if no longer held."""
        expires_at = self._clock() + self._ttl(ttl_ms)
        return await self._store.renew_lease(path, holder, expires_at)

    async def release(self, path: str, holder: str) -> ReleaseOutcome:
        if await self._store.delete_lease(path, holder):
            logger.debug(f"Lease on {path} released by {holder}")
            return ReleaseOutcome.OK
        return ReleaseOutcome.NOT_HOLDER

    async def release_all(self, paths: Iterable[str], holder: str) -> List[str]:
        """Release each path held by ``holder``; returns the paths released."""
        released = []
        for path in sorted(set(paths)):
            if await self.release(path, holder) is ReleaseOutcome.OK:
                released.append(path)
        return released

    async def release_holder_prefix(self, prefix: str) -> List[Lease]:
        """Drop every lease whose holder id starts with ``prefix``."""
        dropped = await self._store.delete_leases_by_holder_prefix(prefix)
        for lease in dropped:
            logger.warning(f"Released lease on {lease.file_path} held by {lease.holder}")
        return dropped

    async def sweep_expired(self) -> List[Lease]:
        """Reclaim every lease whose expiry has passed."""
        swept = await self._store.delete_expired_leases(self._clock())
        if swept:
            logger.info(f"Swept {len(swept)} expired lease(s)")
        return swept

    async def current(self, path: str) -> Optional[Lease]:
        lease = await self._store.get_lease(path)
        if lease is None or lease.is_expired(self._clock()):
            return None
        return lease

    async def list_leases(self) -> List[Lease]:
        return await self._store.list_leases()
