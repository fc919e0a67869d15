"""Boundary to the external actors that perform step work."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from importlib import import_module
from importlib.util import module_from_spec, spec_from_file_location
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol, runtime_checkable

from pydantic_ai import Agent

from .contracts import InvocationContext
from .errors import StepExecutionError

logger = logging.getLogger(__name__)


@runtime_checkable
class AgentInvoker(Protocol):
    """Performs one agent call.

    Any exception raised by ``invoke`` counts as a failed attempt.
    """

    async def invoke(
        self, agent_id: str, resolved_input: Any, context: InvocationContext
    ) -> Any: ...


class CallableInvoker:
    """Dispatch agent ids to plain callables.

    Each callable receives ``(resolved_input, context)``. Coroutine functions
    are awaited; synchronous ones run in a worker thread.
    """

    def __init__(self, agents: Mapping[str, Callable[..., Any]]) -> None:
        self._agents = dict(agents)

    @property
    def agent_ids(self) -> tuple[str, ...]:
        return tuple(self._agents)

    async def invoke(
        self, agent_id: str, resolved_input: Any, context: InvocationContext
    ) -> Any:
        fn = self._agents.get(agent_id)
        if fn is None:
            raise StepExecutionError(f"Unknown agent '{agent_id}'")
        if inspect.iscoroutinefunction(fn):
            return await fn(resolved_input, context)
        result = await asyncio.to_thread(fn, resolved_input, context)
        if inspect.isawaitable(result):
            result = await result
        return result


def _as_prompt(resolved_input: Any) -> str:
    if isinstance(resolved_input, str):
        return resolved_input
    return json.dumps(resolved_input, default=str, indent=2)


class PydanticAIInvoker:
    """Run pydantic-ai agents, one per agent id."""

    def __init__(self, agents: Mapping[str, Agent]) -> None:
        self._agents = dict(agents)

    @property
    def agent_ids(self) -> tuple[str, ...]:
        return tuple(self._agents)

    async def invoke(
        self, agent_id: str, resolved_input: Any, context: InvocationContext
    ) -> Any:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise StepExecutionError(f"Unknown agent '{agent_id}'")
        prompt = _as_prompt(resolved_input)
        if context.skills:
            prompt = f"{prompt}\n\nSkills: {', '.join(context.skills)}"
        logger.debug(
            f"Invoking agent {agent_id} for step {context.step_id} "
            f"(attempt {context.attempt}, trace {context.trace_id})"
        )
        result = await agent.run(prompt)
        return result.output


def _import_target(module_ref: str) -> Any:
    if module_ref.endswith(".py"):
        path = Path(module_ref).expanduser().resolve()
        spec = spec_from_file_location(path.stem, path)
        if spec is None or spec.loader is None:
            raise ImportError(f"Cannot load module from {path}")
        module = module_from_spec(spec)
        spec.loader.exec_module(module)
        return module
    return import_module(module_ref)


def load_invoker(target: str) -> AgentInvoker:
    """Load an invoker from ``"package.module:attr"`` or ``"path/file.py:attr"``.

    ``attr`` may be an ``AgentInvoker``, a mapping of agent ids to
    pydantic-ai ``Agent`` objects, or a mapping of agent ids to callables.
    """
    module_ref, sep, attr = target.rpartition(":")
    if not sep or not module_ref or not attr:
        raise ValueError(f"Expected 'module:attribute', got '{target}'")
    module = _import_target(module_ref)
    try:
        obj = getattr(module, attr)
    except AttributeError:
        raise ValueError(f"Module '{module_ref}' has no attribute '{attr}'") from None

    if isinstance(obj, AgentInvoker):
        return obj
    if isinstance(obj, Mapping):
        if obj and all(isinstance(value, Agent) for value in obj.values()):
            return PydanticAIInvoker(obj)
        if all(callable(value) for value in obj.values()):
            return CallableInvoker(obj)
    raise TypeError(
        f"'{target}' is neither an AgentInvoker nor a mapping of agents or callables"
    )
