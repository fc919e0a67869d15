"""Run a single step: resolve its input, hold its leases, call its agent."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from .agents import AgentInvoker
from .config import LeaseConfig
from .constants import EXECUTOR_ACTOR
from .contracts import (
    ErrorCategory,
    InvocationContext,
    StepResult,
    StepState,
    StepStatus,
    utcnow,
)
from .errors import (
    AggregationError,
    LeaseConflictError,
    PersistenceError,
    StepExecutionError,
    StepTimeoutError,
    TransformError,
)
from .flows.models import RequestInput, Step
from .flows.transforms import TransformInput, apply_transform
from .journal import (
    STEP_ATTEMPT_FAILED,
    STEP_ATTEMPT_STARTED,
    STEP_FAILED,
    STEP_INPUT_RESOLVED,
    STEP_LEASE_ACQUIRED,
    STEP_LEASE_BUSY,
    STEP_LEASE_RELEASED,
    STEP_SUCCEEDED,
    ActivityJournal,
)
from .leases import LeaseBusy, LeaseManager
from .utils.retry import schedule_retry

logger = logging.getLogger(__name__)

StatusCallback = Callable[[str, StepStatus, int], None]


def holder_id(trace_id: str, step_id: str) -> str:
    """Lease holder id for one step of one run."""
    return f"{trace_id}/{step_id}"


def _category(value: str) -> ErrorCategory:
    try:
        return ErrorCategory(value)
    except ValueError:
        return ErrorCategory.AGENT_ERROR


class _LeaseLost(Exception):
    def __init__(self, path: str) -> None:
        super().__init__(path)
        self.path = path


class StepExecutor:
    """Executes one step to a terminal ``StepResult``.

    Agent failures and timeouts are retried up to ``retry.maxAttempts`` with a
    fixed ``retry.backoffMs`` delay. Busy leases are requeued separately, up
    to ``LeaseConfig.max_requeues`` times, and never consume agent attempts.
    Held leases are renewed every third of their TTL while an agent call runs;
    losing one ends the step with ``lease_contention``.
    Every attempt and the terminal outcome are journaled before returning.
    """

    def __init__(
        self,
        invoker: AgentInvoker,
        journal: ActivityJournal,
        leases: LeaseManager,
        lease_config: Optional[LeaseConfig] = None,
    ) -> None:
        self._invoker = invoker
        self._journal = journal
        self._leases = leases
        self._lease_config = lease_config or leases.config

    # ------------------------------------------------------------------
    # Input resolution
    def resolve_input(
        self, step: Step, request: Any, upstream: Mapping[str, StepState]
    ) -> Any:
        """Build the step's input from the request or settled upstream results.

        Raises ``AggregationError`` when a source step has not succeeded and
        ``TransformError`` when the named transform cannot be applied.
        """
        if isinstance(step.input, RequestInput):
            values: Dict[str, Any] = {"request": request}
        else:
            values = {}
            for source in step.input_sources:
                state = upstream.get(source)
                if state is None or state.status is not StepStatus.SUCCEEDED:
                    status = state.status.value if state else "missing"
                    raise AggregationError(
                        f"Step {step.id}: input source '{source}' has not succeeded ({status})"
                    )
                values[source] = state.result
        inp = TransformInput(
            values=values,
            request=request,
            args=step.input.transform_args,
            step_id=step.id,
        )
        return apply_transform(step.input.transform, inp)

    async def run_step(
        self,
        step: Step,
        request: Any,
        upstream: Mapping[str, StepState],
        *,
        trace_id: str,
        on_status: Optional[StatusCallback] = None,
    ) -> StepResult:
        """Resolve the input of ``step`` and execute it."""
        started_at = utcnow()
        try:
            resolved = self.resolve_input(step, request, upstream)
        except TransformError as exc:
            self._notify(on_status, step.id, StepStatus.RUNNING, 0)
            return await self._finish(
                step,
                trace_id,
                attempts=0,
                started_at=started_at,
                error=str(exc),
                category=ErrorCategory.INPUT,
            )
        await self._journal.append(
            trace_id,
            EXECUTOR_ACTOR,
            STEP_INPUT_RESOLVED,
            {
                "step_id": step.id,
                "source": step.input.source,
                "transform": step.input.transform,
                "sources": list(step.input_sources),
            },
        )
        return await self.execute(
            step, resolved, trace_id=trace_id, on_status=on_status, started_at=started_at
        )

    # ------------------------------------------------------------------
    # Execution
    async def execute(
        self,
        step: Step,
        resolved_input: Any,
        *,
        trace_id: str,
        on_status: Optional[StatusCallback] = None,
        started_at: Optional[datetime] = None,
    ) -> StepResult:
        started_at = started_at or utcnow()
        self._notify(on_status, step.id, StepStatus.RUNNING, 0)

        holder = holder_id(trace_id, step.id)
        paths = sorted(set(step.mutates))
        ttl_ms = step.lease_ttl_ms or self._lease_config.default_ttl_ms
        held: List[str] = []
        attempts = 0
        try:
            if paths:
                try:
                    await self._acquire_leases(step, paths, holder, ttl_ms, trace_id)
                except LeaseConflictError as exc:
                    return await self._finish(
                        step,
                        trace_id,
                        attempts=0,
                        started_at=started_at,
                        error=str(exc),
                        category=ErrorCategory.LEASE_CONTENTION,
                    )
                held = paths

            max_attempts = step.retry.max_attempts
            while True:
                attempts += 1
                if held:
                    lost = await self._renew_leases(held, holder, ttl_ms)
                    if lost:
                        return await self._finish(
                            step,
                            trace_id,
                            attempts=attempts - 1,
                            started_at=started_at,
                            error=f"lease on '{lost}' was lost before attempt {attempts}",
                            category=ErrorCategory.LEASE_CONTENTION,
                        )
                self._notify(on_status, step.id, StepStatus.RUNNING, attempts)
                await self._journal.append(
                    trace_id,
                    EXECUTOR_ACTOR,
                    STEP_ATTEMPT_STARTED,
                    {"step_id": step.id, "attempt": attempts, "agent": step.agent},
                )
                retryable = True
                try:
                    output = await self._attempt_holding(
                        step, resolved_input, trace_id, attempts, held, holder, ttl_ms
                    )
                except _LeaseLost as exc:
                    error = f"lease on '{exc.path}' was lost during attempt {attempts}"
                    category = ErrorCategory.LEASE_CONTENTION
                    retryable = False
                except StepExecutionError as exc:
                    error, category = str(exc), _category(exc.category)
                except PersistenceError:
                    raise
                except Exception as exc:
                    error = str(exc) or type(exc).__name__
                    category = ErrorCategory.AGENT_ERROR
                else:
                    return await self._finish(
                        step,
                        trace_id,
                        attempts=attempts,
                        started_at=started_at,
                        output=output,
                    )

                retrying = retryable and attempts < max_attempts
                await self._journal.append(
                    trace_id,
                    EXECUTOR_ACTOR,
                    STEP_ATTEMPT_FAILED,
                    {
                        "step_id": step.id,
                        "attempt": attempts,
                        "category": category.value,
                        "error": error,
                        "retrying": retrying,
                    },
                )
                if not retrying:
                    return await self._finish(
                        step,
                        trace_id,
                        attempts=attempts,
                        started_at=started_at,
                        error=error,
                        category=category,
                    )
                logger.warning(
                    f"Step {step.id} attempt {attempts}/{max_attempts} failed "
                    f"({category.value}): {error}; retrying in {step.retry.backoff_ms}ms"
                )
                self._notify(on_status, step.id, StepStatus.RETRYING, attempts)
                await schedule_retry(step.retry)
        finally:
            if held:
                released = await self._leases.release_all(held, holder)
                await self._journal.append(
                    trace_id,
                    EXECUTOR_ACTOR,
                    STEP_LEASE_RELEASED,
                    {"step_id": step.id, "paths": released},
                )

    async def _attempt_holding(
        self,
        step: Step,
        resolved_input: Any,
        trace_id: str,
        attempt: int,
        held: Sequence[str],
        holder: str,
        ttl_ms: int,
    ) -> Any:
        """Run one attempt while renewing ``held`` leases every third of their TTL.

        Raises ``_LeaseLost`` and abandons the agent call if a renewal fails.
        """
        if not held:
            return await self._attempt(step, resolved_input, trace_id, attempt)
        call = asyncio.ensure_future(self._attempt(step, resolved_input, trace_id, attempt))
        heartbeat = asyncio.ensure_future(self._heartbeat(held, holder, ttl_ms))
        try:
            done, _ = await asyncio.wait(
                {call, heartbeat}, return_when=asyncio.FIRST_COMPLETED
            )
            if call in done:
                return call.result()
            lost = heartbeat.result()
            logger.error(f"Step {step.id} lost its lease on {lost}; abandoning attempt {attempt}")
            raise _LeaseLost(lost)
        finally:
            call.cancel()
            heartbeat.cancel()
            await asyncio.gather(call, heartbeat, return_exceptions=True)

    async def _heartbeat(self, paths: Sequence[str], holder: str, ttl_ms: int) -> str:
        interval = ttl_ms / 3000
        while True:
            await asyncio.sleep(interval)
            lost = await self._renew_leases(paths, holder, ttl_ms)
            if lost:
                return lost

    async def _attempt(
        self, step: Step, resolved_input: Any, trace_id: str, attempt: int
    ) -> Any:
        context = InvocationContext(
            trace_id=trace_id, step_id=step.id, attempt=attempt, skills=step.skills
        )
        call = self._invoker.invoke(step.agent, resolved_input, context)
        if step.timeout_ms is None:
            return await call
        try:
            return await asyncio.wait_for(call, timeout=step.timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise StepTimeoutError(
                f"Agent '{step.agent}' did not respond within {step.timeout_ms}ms"
            ) from None

    async def _acquire_leases(
        self, step: Step, paths: Sequence[str], holder: str, ttl_ms: int, trace_id: str
    ) -> None:
        max_requeues = self._lease_config.max_requeues
        requeues = 0
        while True:
            outcome = await self._leases.acquire_all(paths, holder, ttl_ms)
            if not isinstance(outcome, LeaseBusy):
                await self._journal.append(
                    trace_id,
                    EXECUTOR_ACTOR,
                    STEP_LEASE_ACQUIRED,
                    {
                        "step_id": step.id,
                        "holder": holder,
                        "paths": [lease.file_path for lease in outcome],
                        "expires_at": min(lease.expires_at for lease in outcome).isoformat(),
                    },
                )
                return
            await self._journal.append(
                trace_id,
                EXECUTOR_ACTOR,
                STEP_LEASE_BUSY,
                {
                    "step_id": step.id,
                    "path": outcome.file_path,
                    "holder": outcome.holder,
                    "expires_at": outcome.expires_at.isoformat(),
                    "requeue": requeues,
                },
            )
            if requeues >= max_requeues:
                raise LeaseConflictError(
                    outcome.file_path, outcome.holder, outcome.expires_at
                )
            requeues += 1
            logger.warning(
                f"Step {step.id} waiting for lease on {outcome.file_path} held by "
                f"{outcome.holder} (requeue {requeues}/{max_requeues})"
            )
            await asyncio.sleep(self._lease_config.requeue_delay_ms / 1000)

    async def _renew_leases(
        self, paths: Sequence[str], holder: str, ttl_ms: int
    ) -> Optional[str]:
        for path in paths:
            if not await self._leases.renew(path, holder, ttl_ms):
                return path
        return None

    async def _finish(
        self,
        step: Step,
        trace_id: str,
        *,
        attempts: int,
        started_at: datetime,
        output: Any = None,
        error: Optional[str] = None,
        category: Optional[ErrorCategory] = None,
    ) -> StepResult:
        succeeded = error is None
        result = StepResult(
            step_id=step.id,
            status=StepStatus.SUCCEEDED if succeeded else StepStatus.FAILED,
            attempts=attempts,
            output=output if succeeded else None,
            error=error,
            error_category=category,
            started_at=started_at,
            finished_at=utcnow(),
        )
        payload: Dict[str, Any] = {"step_id": step.id, "attempts": attempts}
        if succeeded:
            logger.info(f"Step {step.id} succeeded after {attempts} attempt(s)")
        else:
            payload.update(error=error, category=category.value if category else None)
            logger.error(f"Step {step.id} failed ({payload['category']}): {error}")
        await self._journal.append(
            trace_id,
            EXECUTOR_ACTOR,
            STEP_SUCCEEDED if succeeded else STEP_FAILED,
            payload,
        )
        return result

    @staticmethod
    def _notify(
        callback: Optional[StatusCallback], step_id: str, status: StepStatus, attempt: int
    ) -> None:
        if callback is not None:
            callback(step_id, status, attempt)
