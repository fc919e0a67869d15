import sys
import threading
import types
from pathlib import Path

import pytest
from pydantic_ai import Agent

from stepwright.agents import (
    AgentInvoker,
    CallableInvoker,
    PydanticAIInvoker,
    load_invoker,
)
from stepwright.contracts import InvocationContext
from stepwright.errors import StepExecutionError

FIXTURES = Path(__file__).resolve().parent.parent / "fixtures"


def _ctx(step_id="s", skills=()):
    return InvocationContext(trace_id="t", step_id=step_id, attempt=1, skills=skills)


@pytest.mark.asyncio
async def test_callable_invoker_runs_sync_agents_off_loop():
    seen = {}

    def sync_agent(value, context):
        seen["thread"] = threading.current_thread()
        return value * 2

    invoker = CallableInvoker({"double": sync_agent})
    assert await invoker.invoke("double", 21, _ctx()) == 42
    assert seen["thread"] is not threading.main_thread()


@pytest.mark.asyncio
async def test_callable_invoker_awaits_coroutines():
    async def async_agent(value, context):
        return f"{context.step_id}:{value}"

    invoker = CallableInvoker({"echo": async_agent})
    assert await invoker.invoke("echo", "hi", _ctx("greet")) == "greet:hi"
    assert isinstance(invoker, AgentInvoker)


@pytest.mark.asyncio
async def test_unknown_agent_is_an_execution_error():
    invoker = CallableInvoker({})
    with pytest.raises(StepExecutionError, match="Unknown agent 'ghost'"):
        await invoker.invoke("ghost", None, _ctx())


def test_load_invoker_from_file_path():
    invoker = load_invoker(f"{FIXTURES / 'flow_agents.py'}:AGENTS")
    assert isinstance(invoker, CallableInvoker)
    assert invoker.agent_ids == ("planner", "reviewer")


def test_load_invoker_wraps_pydantic_ai_agents(monkeypatch):
    module = types.ModuleType("sw_test_agents")
    module.AGENTS = {"writer": Agent("test")}
    monkeypatch.setitem(sys.modules, "sw_test_agents", module)

    invoker = load_invoker("sw_test_agents:AGENTS")
    assert isinstance(invoker, PydanticAIInvoker)
    assert invoker.agent_ids == ("writer",)


@pytest.mark.asyncio
async def test_pydantic_ai_invoker_returns_agent_output():
    invoker = PydanticAIInvoker({"writer": Agent("test")})
    output = await invoker.invoke("writer", {"task": "summarise"}, _ctx(skills=("python",)))
    assert isinstance(output, str)


@pytest.mark.parametrize(
    "target, error",
    [
        ("no_colon", ValueError),
        (f"{FIXTURES / 'flow_agents.py'}:MISSING", ValueError),
        (f"{FIXTURES / 'flow_agents.py'}:NOT_AGENTS", TypeError),
        ("stepwright_missing_module:AGENTS", ImportError),
    ],
)
def test_load_invoker_rejects_bad_targets(target, error):
    with pytest.raises(error):
        load_invoker(target)
