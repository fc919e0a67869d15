"""stepwright: dependency-ordered flow execution for AI agents."""

from .agents import AgentInvoker, CallableInvoker, PydanticAIInvoker, load_invoker
from .contracts import RunResult, RunStatus, StepStatus
from .executor import StepExecutor
from .flows import FlowGraph, load_flow, validate, validate_or_raise
from .journal import ActivityJournal
from .leases import LeaseManager
from .orchestrator import Orchestrator
from .persistence import get_store

__version__ = "0.1.0"
__all__ = [
    "ActivityJournal",
    "AgentInvoker",
    "CallableInvoker",
    "FlowGraph",
    "LeaseManager",
    "Orchestrator",
    "PydanticAIInvoker",
    "RunResult",
    "RunStatus",
    "StepExecutor",
    "StepStatus",
    "get_store",
    "load_flow",
    "load_invoker",
    "validate",
    "validate_or_raise",
]
