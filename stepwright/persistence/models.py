"""Data models for durable journal and lease state."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ActivityRecord(BaseModel):
    """One append-only journal entry."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    trace_id: str
    actor: str
    action: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=_utcnow)


class Lease(BaseModel):
    """Exclusive, expiring claim on a file path."""

    file_path: str
    holder: str
    expires_at: datetime
    acquired_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or _utcnow())
