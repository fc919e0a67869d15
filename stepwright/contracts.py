"""Run-time contracts shared by the executor and the orchestrator."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .errors import InvalidTransitionError
from .flows.models import FlowDefinition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StepStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STEP_STATUSES


TERMINAL_STEP_STATUSES: FrozenSet[StepStatus] = frozenset(
    {StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.SKIPPED, StepStatus.CANCELLED}
)

# Forward-only step state machine.
ALLOWED_TRANSITIONS: Dict[StepStatus, FrozenSet[StepStatus]] = {
    StepStatus.PENDING: frozenset(
        {StepStatus.READY, StepStatus.SKIPPED, StepStatus.CANCELLED}
    ),
    StepStatus.READY: frozenset(
        {StepStatus.RUNNING, StepStatus.SKIPPED, StepStatus.CANCELLED}
    ),
    StepStatus.RUNNING: frozenset(
        {
            StepStatus.SUCCEEDED,
            StepStatus.RETRYING,
            StepStatus.FAILED,
            StepStatus.CANCELLED,
        }
    ),
    StepStatus.RETRYING: frozenset({StepStatus.RUNNING, StepStatus.CANCELLED}),
    StepStatus.SUCCEEDED: frozenset(),
    StepStatus.FAILED: frozenset(),
    StepStatus.SKIPPED: frozenset(),
    StepStatus.CANCELLED: frozenset(),
}


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PARTIAL = "partial"
    CANCELLED = "cancelled"


class ErrorCategory(str, Enum):
    AGENT_ERROR = "agent_error"
    TIMEOUT = "timeout"
    LEASE_CONTENTION = "lease_contention"
    INPUT = "input"
    DEPENDENCY = "dependency"
    CANCELLED = "cancelled"
    OVERALL_TIMEOUT = "overall_timeout"
    PERSISTENCE = "persistence"
    INTERNAL = "internal"


class StepState(BaseModel):
    """Mutable per-step state owned by the orchestrator."""

    step_id: str
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    error: Optional[str] = None
    error_category: Optional[ErrorCategory] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    result: Any = None
    history: List[StepStatus] = Field(default_factory=lambda: [StepStatus.PENDING])

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def can_transition(self, new_status: StepStatus) -> bool:
        return new_status in ALLOWED_TRANSITIONS[self.status]

    def transition(
        self, new_status: StepStatus, at: Optional[datetime] = None
    ) -> None:
        """Move to ``new_status`` or raise ``InvalidTransitionError``."""
        if not self.can_transition(new_status):
            raise InvalidTransitionError(
                f"Step {self.step_id}: {self.status.value} -> {new_status.value} is not allowed"
            )
        at = at or utcnow()
        if new_status is StepStatus.RUNNING and self.started_at is None:
            self.started_at = at
        if new_status.is_terminal:
            self.finished_at = at
        if new_status is not StepStatus.SUCCEEDED:
            self.result = None
        self.status = new_status
        self.history.append(new_status)


class InvocationContext(BaseModel):
    """Metadata passed to an agent invoker alongside the resolved input."""

    trace_id: str
    step_id: str
    attempt: int
    skills: Tuple[str, ...] = ()

    model_config = ConfigDict(frozen=True)


class StepResult(BaseModel):
    """Outcome of one step execution as reported by the step executor."""

    step_id: str
    status: StepStatus
    attempts: int = 0
    output: Any = None
    error: Optional[str] = None
    error_category: Optional[ErrorCategory] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return self.status is StepStatus.SUCCEEDED


class ExecutionRun(BaseModel):
    """A single run of a flow."""

    trace_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    flow: FlowDefinition
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    status: RunStatus = RunStatus.RUNNING
    steps: Dict[str, StepState] = Field(default_factory=dict)
    error: Optional[str] = None
    error_category: Optional[ErrorCategory] = None

    @classmethod
    def start(cls, flow: FlowDefinition, trace_id: Optional[str] = None) -> "ExecutionRun":
        run = cls(flow=flow, trace_id=trace_id or str(uuid.uuid4()))
        run.steps = {step.id: StepState(step_id=step.id) for step in flow.steps}
        return run

    def state(self, step_id: str) -> StepState:
        return self.steps[step_id]

    def in_status(self, *statuses: StepStatus) -> List[str]:
        return [sid for sid, st in self.steps.items() if st.status in statuses]

    def all_terminal(self) -> bool:
        return all(st.is_terminal for st in self.steps.values())


class RunResult(BaseModel):
    """Final result of a run: status of every step plus the declared output."""

    trace_id: str
    flow_id: str
    status: RunStatus
    steps: Dict[str, StepState]
    output: Any = None
    started_at: datetime
    finished_at: datetime
    error: Optional[str] = None
    error_category: Optional[ErrorCategory] = None

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.SUCCEEDED

    @property
    def duration_ms(self) -> float:
        return (self.finished_at - self.started_at).total_seconds() * 1000

    def step_statuses(self) -> Dict[str, str]:
        return {sid: st.status.value for sid, st in self.steps.items()}
