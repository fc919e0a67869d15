"""Command line interface for stepwright flows."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Optional

import typer
import yaml

from stepwright.agents import AgentInvoker, load_invoker
from stepwright.config import load_config
from stepwright.contracts import RunResult
from stepwright.daemon import DaemonController
from stepwright.flows import FlowGraph, load_flow, validate
from stepwright.journal import ActivityJournal
from stepwright.leases import LeaseManager
from stepwright.orchestrator import Orchestrator, recover_runs
from stepwright.persistence import get_store
from stepwright.reporting import render_report

app = typer.Typer(help="CLI for stepwright flows")

# Command groups
flow_app = typer.Typer(help="Commands for validating and running flows")
journal_app = typer.Typer(help="Commands for inspecting the activity journal")
lease_app = typer.Typer(help="Commands for inspecting and sweeping leases")
daemon_app = typer.Typer(help="Commands for controlling the background daemon")

app.add_typer(flow_app, name="flow")
app.add_typer(journal_app, name="journal")
app.add_typer(lease_app, name="lease")
app.add_typer(daemon_app, name="daemon")


@app.callback()
def main() -> None:
    """stepwright CLI entry point."""
    pass


def _load_graph(path: Path) -> FlowGraph:
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    try:
        raw = load_flow(path)
    except (ValueError, yaml.YAMLError) as exc:
        typer.secho(f"Cannot read flow {path}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    result = validate(raw)
    if isinstance(result, FlowGraph):
        return result
    typer.secho(f"Flow {path} is invalid:", fg=typer.colors.RED)
    for issue in result:
        typer.echo(f"  - [{issue.code}] {issue.message}")
    raise typer.Exit(code=1)


def _parse_payload(payload: Optional[str]) -> Any:
    if payload is None:
        return None
    try:
        return json.loads(payload)
    except json.JSONDecodeError:
        return payload


@flow_app.command("validate")
def flow_validate(path: Path) -> None:
    """
    Validate a flow specification without running it.

    Every problem in the flow is reported at once.

    Example:
        stepwright flow validate ./flows/code_review.yaml
    """
    graph = _load_graph(path)
    typer.secho(
        f"Flow '{graph.id}' is valid ({len(graph.steps)} steps)", fg=typer.colors.GREEN
    )
    typer.echo(f"  Order: {' -> '.join(graph.order)}")


async def _run_flow(
    graph: FlowGraph, invoker: AgentInvoker, payload: Any, trace_id: Optional[str]
) -> RunResult:
    config = load_config()
    orchestrator = Orchestrator(invoker, store=get_store(), config=config)
    return await orchestrator.run(graph, payload, trace_id=trace_id)


@flow_app.command("run")
def flow_run(
    path: Path,
    agents: str = typer.Option(
        ..., "--agents", help="Invoker to use, as 'package.module:attr' or 'file.py:attr'"
    ),
    payload: Optional[str] = typer.Option(
        None, "--payload", help="Request payload; parsed as JSON when possible"
    ),
    trace_id: Optional[str] = typer.Option(None, "--trace-id", help="Trace id for the run"),
    report: bool = typer.Option(False, "--report", help="Print a markdown run report"),
) -> None:
    """
    Run a flow to completion with the given agents.

    Exits with code 1 unless every step succeeded.

    Example:
        stepwright flow run ./flows/review.yaml --agents my_agents:AGENTS --payload "Review auth"
    """
    graph = _load_graph(path)
    try:
        invoker = load_invoker(agents)
    except (ImportError, ValueError, TypeError) as exc:
        typer.secho(f"Cannot load agents: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    result = asyncio.run(_run_flow(graph, invoker, _parse_payload(payload), trace_id))

    if report:
        typer.echo(render_report(graph, result))
    else:
        colour = typer.colors.GREEN if result.succeeded else typer.colors.RED
        typer.secho(f"Run {result.trace_id}: {result.status.value}", fg=colour)
        for sid in graph.order:
            state = result.steps[sid]
            line = f"  {sid}: {state.status.value} (attempts: {state.attempts})"
            if state.error:
                category = state.error_category.value if state.error_category else "error"
                line += f" [{category}] {state.error}"
            typer.echo(line)
        if result.error:
            typer.echo(f"Error: {result.error}")
        if result.output is not None:
            typer.echo("Output:")
            typer.echo(
                result.output
                if isinstance(result.output, str)
                else json.dumps(result.output, default=str, indent=2)
            )
    if not result.succeeded:
        raise typer.Exit(code=1)


@journal_app.command("show")
def journal_show(trace_id: str) -> None:
    """Show every journal record of a run, in order."""
    journal = ActivityJournal(get_store())
    records = asyncio.run(journal.query_by_trace(trace_id))
    if not records:
        typer.echo(f"No activity found for trace {trace_id}")
        raise typer.Exit(code=1)
    typer.echo(f"Trace: {trace_id}")
    for record in records:
        payload = json.dumps(record.payload, default=str, sort_keys=True)
        typer.echo(
            f"  {record.occurred_at.isoformat()} {record.actor:<12} {record.action:<22} {payload}"
        )


@journal_app.command("recover")
def journal_recover() -> None:
    """Mark runs left unfinished by a crashed process as failed."""
    store = get_store()
    leases = LeaseManager(store, load_config().lease)
    recovered = asyncio.run(recover_runs(ActivityJournal(store), leases))
    if not recovered:
        typer.echo("No unfinished runs found")
        return
    typer.echo(f"Recovered {len(recovered)} run(s):")
    for trace_id in recovered:
        typer.echo(f"  {trace_id}")


@lease_app.command("list")
def lease_list() -> None:
    """List lease rows, including expired ones not yet swept."""
    leases = LeaseManager(get_store(), load_config().lease)
    rows = asyncio.run(leases.list_leases())
    if not rows:
        typer.echo("No leases held")
        return
    for lease in rows:
        marker = " (expired)" if lease.is_expired() else ""
        typer.echo(
            f"{lease.file_path}  {lease.holder}  until {lease.expires_at.isoformat()}{marker}"
        )


@lease_app.command("sweep")
def lease_sweep() -> None:
    """Reclaim every expired lease."""
    leases = LeaseManager(get_store(), load_config().lease)
    swept = asyncio.run(leases.sweep_expired())
    typer.echo(f"Swept {len(swept)} expired lease(s)")
    for lease in swept:
        typer.echo(f"  {lease.file_path} (held by {lease.holder})")


def _daemon() -> DaemonController:
    return DaemonController(load_config())


@daemon_app.command("start")
def daemon_start() -> None:
    """Start the daemon; reports the running daemon if already started."""
    typer.echo(_daemon().start().message)


@daemon_app.command("stop")
def daemon_stop() -> None:
    """Stop the daemon; succeeds when it is already stopped."""
    typer.echo(_daemon().stop().message)


@daemon_app.command("restart")
def daemon_restart() -> None:
    """Stop the daemon if running, then start it."""
    typer.echo(_daemon().restart().message)


@daemon_app.command("status")
def daemon_status() -> None:
    """Report whether the daemon is running."""
    typer.echo(_daemon().status().message)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
