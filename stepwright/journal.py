"""Append-only activity journal keyed by trace id."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .errors import PersistenceError
from .persistence import DurableStore
from .persistence.models import ActivityRecord

logger = logging.getLogger(__name__)

RUN_STARTED = "run.started"
RUN_FINISHED = "run.finished"
RUN_ABORTED = "run.aborted"
RUN_RECOVERED = "run.recovered"

STEP_READY = "step.ready"
STEP_INPUT_RESOLVED = "step.input.resolved"
STEP_ATTEMPT_STARTED = "step.attempt.started"
STEP_ATTEMPT_FAILED = "step.attempt.failed"
STEP_SUCCEEDED = "step.succeeded"
STEP_FAILED = "step.failed"
STEP_SKIPPED = "step.skipped"
STEP_CANCELLED = "step.cancelled"
STEP_LEASE_ACQUIRED = "step.lease.acquired"
STEP_LEASE_BUSY = "step.lease.busy"
STEP_LEASE_RELEASED = "step.lease.released"


class ActivityJournal:
    """Durable record of everything that happened in each run.

    ``append`` returns only after the store has committed the record; any
    store failure surfaces as ``PersistenceError``.
    """

    def __init__(self, store: DurableStore) -> None:
        self._store = store

    async def append(
        self,
        trace_id: str,
        actor: str,
        action: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> ActivityRecord:
        record = ActivityRecord(
            trace_id=trace_id, actor=actor, action=action, payload=payload or {}
        )
        try:
            await self._store.append_activity(record)
        except PersistenceError:
            logger.error(f"Failed to journal {action} for trace {trace_id}")
            raise
        return record

    async def query_by_trace(self, trace_id: str) -> List[ActivityRecord]:
        return await self._store.activities_for_trace(trace_id)

    async def unfinished_runs(self) -> List[str]:
        """Trace ids that have started but never recorded a terminal record."""
        return await self._store.unfinished_traces(RUN_STARTED, RUN_FINISHED)
