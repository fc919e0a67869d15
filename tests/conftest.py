"""Shared fixtures for stepwright tests."""

import asyncio
import inspect
from typing import Any, Callable, Dict, List, Optional

import pytest

from stepwright.config import LeaseConfig, StepwrightConfig
from stepwright.contracts import InvocationContext
from stepwright.flows import FlowGraph, validate_or_raise
from stepwright.persistence import InMemoryStore


class ScriptedInvoker:
    """Agent invoker driven by per-agent behaviours.

    A behaviour is either a callable ``(input, context)`` (sync or async) or
    a constant returned as-is. Unknown agents echo their input. Every call is
    recorded with loop timestamps so tests can check ordering and overlap.
    """

    def __init__(self, behaviours: Optional[Dict[str, Any]] = None) -> None:
        self.behaviours = dict(behaviours or {})
        self.calls: List[Dict[str, Any]] = []
        self.active = 0
        self.max_active = 0

    async def invoke(self, agent_id: str, resolved_input: Any, context: InvocationContext) -> Any:
        loop = asyncio.get_running_loop()
        record = {
            "agent": agent_id,
            "step": context.step_id,
            "attempt": context.attempt,
            "input": resolved_input,
            "started": loop.time(),
            "ended": None,
        }
        self.calls.append(record)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            behaviour = self.behaviours.get(agent_id, lambda value, ctx: value)
            if not callable(behaviour):
                return behaviour
            result = behaviour(resolved_input, context)
            if inspect.isawaitable(result):
                result = await result
            return result
        finally:
            self.active -= 1
            record["ended"] = loop.time()

    def calls_for(self, step_id: str) -> List[Dict[str, Any]]:
        return [call for call in self.calls if call["step"] == step_id]

    def window(self, step_id: str) -> tuple:
        calls = self.calls_for(step_id)
        return calls[0]["started"], calls[-1]["ended"]

    @staticmethod
    def returning(value: Any, delay: float = 0.0) -> Callable:
        async def _behaviour(_input, _ctx):
            if delay:
                await asyncio.sleep(delay)
            return value

        return _behaviour

    @staticmethod
    def failing(message: str = "agent exploded", delay: float = 0.0) -> Callable:
        async def _behaviour(_input, _ctx):
            if delay:
                await asyncio.sleep(delay)
            raise RuntimeError(message)

        return _behaviour


@pytest.fixture
def invoker_factory():
    return ScriptedInvoker


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def config(tmp_path):
    return StepwrightConfig(
        lease=LeaseConfig(default_ttl_ms=60_000, max_requeues=50, requeue_delay_ms=20),
        daemon={"runtime_dir": str(tmp_path / "runtime")},
    )


@pytest.fixture
def graph_factory() -> Callable[..., FlowGraph]:
    """Build a validated graph from step dicts plus optional settings/output."""

    def _build(
        steps: List[Dict[str, Any]],
        output: Any = None,
        fmt: str = "markdown",
        **settings: Any,
    ) -> FlowGraph:
        raw = {
            "id": "test-flow",
            "name": "Test Flow",
            "steps": [{"agent": step.get("id"), **step} for step in steps],
            "output": {"from": output or steps[-1]["id"], "format": fmt},
            "settings": settings,
        }
        return validate_or_raise(raw)

    return _build
