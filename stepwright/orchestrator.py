"""Drive a validated flow to completion."""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from .agents import AgentInvoker
from .config import StepwrightConfig, load_config
from .constants import ORCHESTRATOR_ACTOR, RECOVERY_ACTOR
from .contracts import (
    ErrorCategory,
    ExecutionRun,
    RunResult,
    RunStatus,
    StepResult,
    StepState,
    StepStatus,
    utcnow,
)
from .errors import AggregationError, PersistenceError
from .executor import StepExecutor
from .flows.graph import FlowGraph
from .flows.transforms import as_text
from .journal import (
    RUN_ABORTED,
    RUN_FINISHED,
    RUN_RECOVERED,
    RUN_STARTED,
    STEP_CANCELLED,
    STEP_FAILED,
    STEP_READY,
    STEP_SKIPPED,
    ActivityJournal,
)
from .leases import LeaseBusy, LeaseManager
from .persistence import DurableStore, get_store

logger = logging.getLogger(__name__)

RECOVERY_NOTE = "process stopped before the run finished; marked failed on recovery"


def run_lease_path(trace_id: str) -> str:
    """Lease key held by the orchestrator that owns a live run."""
    return f"run:{trace_id}"


def run_lease_holder(trace_id: str) -> str:
    return f"{trace_id}/orchestrator"


class _Halt:
    """Why a run stopped dispatching new work."""

    def __init__(
        self,
        status: RunStatus,
        category: ErrorCategory,
        message: str,
        run_category: Optional[ErrorCategory] = None,
    ) -> None:
        self.status = status
        self.category = category
        self.message = message
        self.run_category = run_category or category


class Orchestrator:
    """Schedules the steps of a flow onto a bounded pool of step tasks.

    Ready steps are dispatched as soon as a slot frees up, regardless of
    which dependency level they belong to. The orchestrator never retries;
    it only reacts to the terminal ``StepResult`` the executor reports.
    """

    def __init__(
        self,
        invoker: AgentInvoker,
        store: DurableStore | None = None,
        config: Optional[StepwrightConfig] = None,
    ) -> None:
        self._config = config or load_config()
        self._store = store or get_store(config=self._config)
        self.journal = ActivityJournal(self._store)
        self.leases = LeaseManager(self._store, self._config.lease)
        self._executor = StepExecutor(invoker, self.journal, self.leases)
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self._runs: Dict[str, ExecutionRun] = {}

    @property
    def store(self) -> DurableStore:
        return self._store

    def get_run(self, trace_id: str) -> Optional[ExecutionRun]:
        """Return the live or archived run for ``trace_id``."""
        return self._runs.get(trace_id)

    def active_runs(self) -> List[str]:
        return list(self._cancel_events)

    def cancel(self, trace_id: str) -> bool:
        """Request cancellation of an active run; ``False`` if not active."""
        event = self._cancel_events.get(trace_id)
        if event is None:
            return False
        logger.info(f"Cancellation requested for run {trace_id}")
        event.set()
        return True

    # ------------------------------------------------------------------
    async def run(
        self, graph: FlowGraph, payload: Any = None, trace_id: Optional[str] = None
    ) -> RunResult:
        """Execute ``graph`` with ``payload`` as the request and return the result."""
        trace_id = trace_id or str(uuid.uuid4())
        if trace_id in self._cancel_events:
            raise ValueError(f"Run {trace_id} is already active")
        run = ExecutionRun.start(graph.definition, trace_id)
        cancel_event = asyncio.Event()
        self._cancel_events[trace_id] = cancel_event
        keeper: Optional[asyncio.Task] = None
        try:
            await self._claim_run(trace_id)
            keeper = asyncio.create_task(
                self._keep_run_lease(trace_id), name=f"{trace_id}/run-lease"
            )
            self._runs[trace_id] = run
            logger.info(
                f"Starting run {trace_id} of flow {graph.id} ({len(graph.steps)} steps)"
            )
            await self.journal.append(
                trace_id,
                ORCHESTRATOR_ACTOR,
                RUN_STARTED,
                {
                    "flow_id": graph.id,
                    "flow_version": graph.definition.version,
                    "steps": list(graph.order),
                },
            )
            await self._drive(graph, run, payload, cancel_event)
            output = self._assemble_output(graph, run)
            run.finished_at = utcnow()
            await self.journal.append(
                trace_id,
                ORCHESTRATOR_ACTOR,
                RUN_FINISHED,
                {
                    "status": run.status.value,
                    "steps": {sid: st.status.value for sid, st in run.steps.items()},
                    "error": run.error,
                    "error_category": run.error_category.value if run.error_category else None,
                },
            )
        except PersistenceError as exc:
            output = None
            await self._abort(run, exc)
        finally:
            if keeper is not None:
                await self._release_run(trace_id, keeper)
            self._cancel_events.pop(trace_id, None)

        logger.info(f"Run {trace_id} finished with status {run.status.value}")
        return RunResult(
            trace_id=trace_id,
            flow_id=graph.id,
            status=run.status,
            steps={sid: st.model_copy(deep=True) for sid, st in run.steps.items()},
            output=output,
            started_at=run.started_at,
            finished_at=run.finished_at or utcnow(),
            error=run.error,
            error_category=run.error_category,
        )

    async def _claim_run(self, trace_id: str) -> None:
        outcome = await self.leases.acquire(run_lease_path(trace_id), run_lease_holder(trace_id))
        if isinstance(outcome, LeaseBusy):
            raise ValueError(f"Run {trace_id} is already active (held by {outcome.holder})")

    async def _keep_run_lease(self, trace_id: str) -> None:
        path, holder = run_lease_path(trace_id), run_lease_holder(trace_id)
        interval = self.leases.config.default_ttl_ms / 3000
        while True:
            await asyncio.sleep(interval)
            if not await self.leases.renew(path, holder):
                logger.warning(f"Run {trace_id} lost its run lease; recovery may close it")
                return

    async def _release_run(self, trace_id: str, keeper: asyncio.Task) -> None:
        keeper.cancel()
        for outcome in await asyncio.gather(keeper, return_exceptions=True):
            if isinstance(outcome, Exception):
                logger.error(f"Renewing the run lease of {trace_id} failed: {outcome}")
        try:
            await self.leases.release(run_lease_path(trace_id), run_lease_holder(trace_id))
        except PersistenceError as exc:
            logger.error(f"Could not release the run lease of {trace_id}: {exc}")

    async def _drive(
        self, graph: FlowGraph, run: ExecutionRun, payload: Any, cancel_event: asyncio.Event
    ) -> None:
        settings = graph.settings
        loop = asyncio.get_running_loop()
        deadline = (
            loop.time() + settings.overall_timeout_ms / 1000
            if settings.overall_timeout_ms
            else None
        )
        tasks: Dict[asyncio.Task, str] = {}
        cancel_waiter = asyncio.ensure_future(cancel_event.wait())
        halt: Optional[_Halt] = None

        try:
            for sid in graph.roots():
                await self._mark_ready(run, sid)

            while True:
                if halt is None:
                    for sid in graph.order:
                        if len(tasks) >= settings.max_parallelism:
                            break
                        if run.state(sid).status is StepStatus.READY and sid not in tasks.values():
                            task = asyncio.create_task(
                                self._run_step(graph, run, sid, payload),
                                name=f"{run.trace_id}/{sid}",
                            )
                            tasks[task] = sid
                if not tasks:
                    break

                timeout = None if deadline is None else max(0.0, deadline - loop.time())
                done, _ = await asyncio.wait(
                    set(tasks) | {cancel_waiter},
                    timeout=timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )

                for task in done:
                    if task is cancel_waiter:
                        continue
                    sid = tasks.pop(task)
                    failed = await self._settle_task(graph, run, sid, task)
                    if failed and settings.fail_fast and halt is None:
                        halt = _Halt(
                            RunStatus.FAILED,
                            ErrorCategory.CANCELLED,
                            f"step '{sid}' failed and failFast is set",
                            run.state(sid).error_category,
                        )

                if halt is None and cancel_waiter in done:
                    halt = _Halt(
                        RunStatus.CANCELLED, ErrorCategory.CANCELLED, "run cancelled by request"
                    )
                if halt is None and deadline is not None and loop.time() >= deadline:
                    halt = _Halt(
                        RunStatus.FAILED,
                        ErrorCategory.OVERALL_TIMEOUT,
                        f"overall timeout of {settings.overall_timeout_ms}ms elapsed",
                    )
                if halt is not None and (tasks or not run.all_terminal()):
                    await self._halt(graph, run, tasks, halt)
                    tasks.clear()
        finally:
            cancel_waiter.cancel()
            for task in tasks:
                task.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)

        if halt is not None:
            run.status = halt.status
            run.error = halt.message
            run.error_category = halt.run_category
        else:
            run.status = self._final_status(run)

    async def _run_step(
        self, graph: FlowGraph, run: ExecutionRun, step_id: str, payload: Any
    ) -> StepResult:
        step = graph.step(step_id)
        upstream = {sid: run.state(sid) for sid in step.input_sources}

        def on_status(sid: str, status: StepStatus, attempt: int) -> None:
            state = run.state(sid)
            if state.status is not status:
                state.transition(status)
            state.attempts = max(state.attempts, attempt)

        return await self._executor.run_step(
            step, payload, upstream, trace_id=run.trace_id, on_status=on_status
        )

    async def _settle_task(
        self, graph: FlowGraph, run: ExecutionRun, step_id: str, task: asyncio.Task
    ) -> bool:
        """Apply a finished step task to the run; returns ``True`` on failure."""
        state = run.state(step_id)
        exc = task.exception()
        if exc is None:
            result: StepResult = task.result()
        elif isinstance(exc, PersistenceError):
            raise exc
        elif isinstance(exc, AggregationError):
            await self._skip(run, step_id, str(exc))
            await self._skip_dependents(graph, run, step_id)
            return True
        else:
            logger.exception(f"Step {step_id} raised unexpectedly", exc_info=exc)
            result = StepResult(
                step_id=step_id,
                status=StepStatus.FAILED,
                attempts=state.attempts,
                error=f"{type(exc).__name__}: {exc}",
                error_category=ErrorCategory.INTERNAL,
                finished_at=utcnow(),
            )
            await self.journal.append(
                run.trace_id,
                ORCHESTRATOR_ACTOR,
                STEP_FAILED,
                {
                    "step_id": step_id,
                    "attempts": state.attempts,
                    "error": result.error,
                    "category": ErrorCategory.INTERNAL.value,
                },
            )

        state.attempts = max(state.attempts, result.attempts)
        if result.success:
            self._settle(state, StepStatus.SUCCEEDED, result.finished_at)
            state.result = result.output
            for child in graph.dependents[step_id]:
                child_state = run.state(child)
                if child_state.status is StepStatus.PENDING and all(
                    run.state(dep).status is StepStatus.SUCCEEDED
                    for dep in graph.dependencies(child)
                ):
                    await self._mark_ready(run, child)
            return False

        state.error = result.error
        state.error_category = result.error_category
        self._settle(state, result.status, result.finished_at)
        await self._skip_dependents(graph, run, step_id)
        return True

    @staticmethod
    def _settle(state: StepState, status: StepStatus, at: Optional[datetime]) -> None:
        if not state.can_transition(status) and state.can_transition(StepStatus.RUNNING):
            state.transition(StepStatus.RUNNING, at=at)
        state.transition(status, at=at)

    async def _mark_ready(self, run: ExecutionRun, step_id: str) -> None:
        run.state(step_id).transition(StepStatus.READY)
        await self.journal.append(
            run.trace_id, ORCHESTRATOR_ACTOR, STEP_READY, {"step_id": step_id}
        )

    async def _skip(self, run: ExecutionRun, step_id: str, reason: str) -> None:
        state = run.state(step_id)
        state.error = reason
        state.error_category = ErrorCategory.DEPENDENCY
        state.transition(StepStatus.SKIPPED)
        await self.journal.append(
            run.trace_id,
            ORCHESTRATOR_ACTOR,
            STEP_SKIPPED,
            {"step_id": step_id, "reason": reason},
        )

    async def _skip_dependents(self, graph: FlowGraph, run: ExecutionRun, step_id: str) -> None:
        for dependent in graph.transitive_dependents(step_id):
            if run.state(dependent).status in (StepStatus.PENDING, StepStatus.READY):
                await self._skip(run, dependent, f"dependency '{step_id}' did not succeed")

    async def _halt(
        self,
        graph: FlowGraph,
        run: ExecutionRun,
        tasks: Dict[asyncio.Task, str],
        halt: _Halt,
    ) -> None:
        """Abort in-flight steps and cancel everything not yet started."""
        logger.warning(f"Halting run {run.trace_id}: {halt.message}")
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        for task, sid in tasks.items():
            if not task.cancelled():
                # Finished before the cancel landed; keep its real outcome.
                await self._settle_task(graph, run, sid, task)

        for sid in graph.order:
            state = run.state(sid)
            if state.is_terminal:
                continue
            state.error = halt.message
            state.error_category = halt.category
            state.transition(StepStatus.CANCELLED)
            await self.journal.append(
                run.trace_id,
                ORCHESTRATOR_ACTOR,
                STEP_CANCELLED,
                {"step_id": sid, "reason": halt.message, "category": halt.category.value},
            )

    @staticmethod
    def _final_status(run: ExecutionRun) -> RunStatus:
        statuses = [st.status for st in run.steps.values()]
        if all(status is StepStatus.SUCCEEDED for status in statuses):
            return RunStatus.SUCCEEDED
        if any(status is StepStatus.SUCCEEDED for status in statuses):
            return RunStatus.PARTIAL
        return RunStatus.FAILED

    def _assemble_output(self, graph: FlowGraph, run: ExecutionRun) -> Any:
        """Build the declared output from the steps that succeeded."""
        spec = graph.output
        step_ids = spec.step_ids
        if len(step_ids) == 1:
            state = run.state(step_ids[0])
            return state.result if state.status is StepStatus.SUCCEEDED else None

        available = [
            (sid, run.state(sid).result)
            for sid in step_ids
            if run.state(sid).status is StepStatus.SUCCEEDED
        ]
        if spec.format == "json":
            return json.dumps({sid: value for sid, value in available}, default=str)
        if spec.format == "concat":
            texts = [as_text(value) for _, value in available]
            return "\n".join(text for text in texts if text)
        return "\n\n".join(f"## {sid}\n\n{as_text(value)}" for sid, value in available)

    async def _abort(self, run: ExecutionRun, exc: PersistenceError) -> None:
        logger.error(f"Aborting run {run.trace_id}: {exc}")
        for state in run.steps.values():
            if not state.is_terminal:
                self._settle(state, StepStatus.CANCELLED, None)
        run.status = RunStatus.FAILED
        run.error = str(exc)
        run.error_category = ErrorCategory.PERSISTENCE
        run.finished_at = utcnow()
        try:
            await self.journal.append(
                run.trace_id,
                ORCHESTRATOR_ACTOR,
                RUN_ABORTED,
                {"error": str(exc), "category": ErrorCategory.PERSISTENCE.value},
            )
        except PersistenceError as second:
            logger.error(f"Could not record abort of run {run.trace_id}: {second}")

    # ------------------------------------------------------------------
    async def recover(self) -> List[str]:
        """Close out runs a previous process left unfinished.

        Runs active in this orchestrator are left alone.
        """
        return await recover_runs(
            self.journal, self.leases, skip=tuple(self._cancel_events)
        )


async def recover_runs(
    journal: ActivityJournal, leases: LeaseManager, skip: Sequence[str] = ()
) -> List[str]:
    """Mark every run without a terminal journal record as failed.

    Unfinished runs are never resumed. A run whose orchestrator still
    renews its run lease is live and left alone; every other one has its
    leases released and is marked failed with a recovery note. Expired
    leases are swept first. Returns the recovered trace ids in start order.
    """
    await leases.sweep_expired()
    recovered: List[str] = []
    for trace_id in await journal.unfinished_runs():
        if trace_id in skip:
            continue
        holder = f"recovery/{trace_id}"
        claim = await leases.acquire(run_lease_path(trace_id), holder)
        if isinstance(claim, LeaseBusy):
            logger.info(f"Run {trace_id} is still owned by {claim.holder}; not recovering")
            continue
        try:
            released = await leases.release_holder_prefix(f"{trace_id}/")
            await journal.append(
                trace_id,
                RECOVERY_ACTOR,
                RUN_RECOVERED,
                {"released_leases": [lease.file_path for lease in released]},
            )
            await journal.append(
                trace_id,
                RECOVERY_ACTOR,
                RUN_FINISHED,
                {"status": RunStatus.FAILED.value, "note": RECOVERY_NOTE, "recovered": True},
            )
        finally:
            await leases.release(run_lease_path(trace_id), holder)
        logger.warning(f"Recovered unfinished run {trace_id}: {RECOVERY_NOTE}")
        recovered.append(trace_id)
    return recovered
