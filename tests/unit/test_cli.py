import asyncio
from pathlib import Path

from typer.testing import CliRunner

import stepwright.cli as cli
import stepwright.persistence as persistence
from stepwright.cli import app
from stepwright.config import StepwrightConfig
from stepwright.daemon import DaemonController
from stepwright.journal import ActivityJournal
from stepwright.leases import LeaseManager
from stepwright.persistence import InMemoryStore

FIXTURES = Path(__file__).resolve().parent.parent / "fixtures"
FLOW = FIXTURES / "review_flow.yaml"
AGENTS = f"{FIXTURES / 'flow_agents.py'}:AGENTS"


def _setup_store() -> InMemoryStore:
    store = InMemoryStore()
    persistence._store_instance = store
    return store


def test_flow_validate_reports_order():
    runner = CliRunner()
    result = runner.invoke(app, ["flow", "validate", str(FLOW)])
    assert result.exit_code == 0, f"Command failed. Output: {result.output}"
    assert "Flow 'code-review' is valid (2 steps)" in result.output
    assert "Order: plan -> review" in result.output


def test_flow_validate_lists_every_issue(tmp_path):
    flow = tmp_path / "bad.yaml"
    flow.write_text(
        """
id: bad
name: Bad
steps:
  - id: a
    agent: ""
    dependsOn: [b]
  - id: b
    agent: x
    dependsOn: [a]
output:
  from: missing
"""
    )
    runner = CliRunner()
    result = runner.invoke(app, ["flow", "validate", str(flow)])
    assert result.exit_code == 1
    assert f"Flow {flow} is invalid:" in result.output
    assert "[missing_agent]" in result.output
    assert "[cycle]" in result.output
    assert "[unknown_output_step]" in result.output


def test_flow_validate_missing_path(tmp_path):
    runner = CliRunner()
    result = runner.invoke(app, ["flow", "validate", str(tmp_path / "nope.yaml")])
    assert result.exit_code == 1
    assert "Specified path does not exist" in result.output


def test_flow_run_succeeds_and_journals():
    store = _setup_store()
    runner = CliRunner()
    result = runner.invoke(
        app,
        [
            "flow",
            "run",
            str(FLOW),
            "--agents",
            AGENTS,
            "--payload",
            "Review auth",
            "--trace-id",
            "cli-trace",
        ],
    )
    assert result.exit_code == 0, f"Command failed. Output: {result.output}"
    assert "Run cli-trace: succeeded" in result.output
    assert "plan: succeeded (attempts: 1)" in result.output
    assert "reviewed (review): plan: Review auth" in result.output

    actions = [r.action for r in asyncio.run(store.activities_for_trace("cli-trace"))]
    assert actions[0] == "run.started"
    assert actions[-1] == "run.finished"


def test_flow_run_failure_exits_nonzero_with_report():
    _setup_store()
    runner = CliRunner()
    result = runner.invoke(
        app,
        [
            "flow",
            "run",
            str(FLOW),
            "--agents",
            f"{FIXTURES / 'flow_agents.py'}:FAILING_AGENTS",
            "--report",
        ],
    )
    assert result.exit_code == 1
    assert "# Code Review (failed)" in result.output
    assert "agent_error: model unavailable" in result.output
    assert "```mermaid" in result.output


def test_flow_run_rejects_bad_agents_reference():
    _setup_store()
    runner = CliRunner()
    result = runner.invoke(
        app,
        ["flow", "run", str(FLOW), "--agents", f"{FIXTURES / 'flow_agents.py'}:NOT_AGENTS"],
    )
    assert result.exit_code == 1
    assert "Cannot load agents" in result.output


def test_journal_show_and_missing():
    store = _setup_store()
    journal = ActivityJournal(store)
    asyncio.run(journal.append("t-1", "orchestrator", "run.started", {"flow_id": "f"}))

    runner = CliRunner()
    result = runner.invoke(app, ["journal", "show", "t-1"])
    assert result.exit_code == 0, f"Command failed. Output: {result.output}"
    assert "Trace: t-1" in result.output
    assert "run.started" in result.output
    assert '"flow_id": "f"' in result.output

    missing = runner.invoke(app, ["journal", "show", "missing"])
    assert missing.exit_code == 1
    assert "No activity found for trace missing" in missing.output


def test_journal_recover():
    store = _setup_store()
    journal = ActivityJournal(store)
    asyncio.run(journal.append("lost", "orchestrator", "run.started"))

    runner = CliRunner()
    result = runner.invoke(app, ["journal", "recover"])
    assert result.exit_code == 0, f"Command failed. Output: {result.output}"
    assert "Recovered 1 run(s):" in result.output
    assert "lost" in result.output

    again = runner.invoke(app, ["journal", "recover"])
    assert "No unfinished runs found" in again.output


def test_lease_list_and_sweep():
    store = _setup_store()
    leases = LeaseManager(store)
    runner = CliRunner()

    empty = runner.invoke(app, ["lease", "list"])
    assert "No leases held" in empty.output

    asyncio.run(leases.acquire("src/app.py", "t-1/edit", ttl_ms=60_000))
    listed = runner.invoke(app, ["lease", "list"])
    assert "src/app.py" in listed.output
    assert "t-1/edit" in listed.output
    assert "(expired)" not in listed.output

    swept = runner.invoke(app, ["lease", "sweep"])
    assert swept.exit_code == 0
    assert "Swept 0 expired lease(s)" in swept.output


def test_daemon_commands_are_idempotent(tmp_path, monkeypatch):
    config = StepwrightConfig(daemon={"runtime_dir": str(tmp_path), "stop_timeout_s": 2})
    controller = DaemonController(config, command=["sleep", "30"])
    monkeypatch.setattr(cli, "_daemon", lambda: controller)
    runner = CliRunner()

    assert "Daemon is not running" in runner.invoke(app, ["daemon", "status"]).output
    started = runner.invoke(app, ["daemon", "start"])
    assert "Daemon started (PID:" in started.output
    try:
        assert "Daemon is already running" in runner.invoke(app, ["daemon", "start"]).output
        assert "Daemon is running (PID:" in runner.invoke(app, ["daemon", "status"]).output
    finally:
        stopped = runner.invoke(app, ["daemon", "stop"])
    assert "Daemon stopped (PID:" in stopped.output
    assert "Daemon is not running" in runner.invoke(app, ["daemon", "stop"]).output
