"""Human-readable run reports."""

from __future__ import annotations

import json
import re
from typing import Any, List

from .contracts import RunResult, StepStatus
from .flows.graph import FlowGraph

_MERMAID_STYLE = {
    StepStatus.SUCCEEDED: "fill:#d4edda,stroke:#28a745",
    StepStatus.FAILED: "fill:#f8d7da,stroke:#dc3545",
    StepStatus.SKIPPED: "fill:#e2e3e5,stroke:#6c757d",
    StepStatus.CANCELLED: "fill:#fff3cd,stroke:#ffc107",
}


def _node_id(step_id: str) -> str:
    return re.sub(r"[^A-Za-z0-9_]", "_", step_id)


def render_mermaid(graph: FlowGraph, result: RunResult | None = None) -> str:
    """Mermaid ``graph TD`` of the flow's dependencies, coloured by outcome."""
    lines = ["graph TD"]
    for sid in graph.order:
        step = graph.step(sid)
        label = (step.name or sid).replace('"', "'")
        lines.append(f'    {_node_id(sid)}["{label}"]')
    for sid in graph.order:
        for dep in graph.dependencies(sid):
            lines.append(f"    {_node_id(dep)} --> {_node_id(sid)}")
    if result is not None:
        for sid, state in result.steps.items():
            style = _MERMAID_STYLE.get(state.status)
            if style:
                lines.append(f"    style {_node_id(sid)} {style}")
    return "\n".join(lines)


def _format_output(output: Any) -> str:
    if output is None:
        return "_No output._"
    if isinstance(output, str):
        return output
    return "```json\n" + json.dumps(output, default=str, indent=2) + "\n```"


def _duration(state) -> str:
    if state.started_at is None or state.finished_at is None:
        return "-"
    return f"{(state.finished_at - state.started_at).total_seconds() * 1000:.0f}ms"


def render_report(graph: FlowGraph, result: RunResult) -> str:
    """Markdown report of a finished run."""
    counts = {status: 0 for status in StepStatus}
    for state in result.steps.values():
        counts[state.status] += 1

    lines: List[str] = [
        f"# {graph.definition.name} ({result.status.value})",
        "",
        f"- Flow: `{graph.id}` v{graph.definition.version}",
        f"- Trace: `{result.trace_id}`",
        f"- Duration: {result.duration_ms:.0f}ms",
        (
            f"- Steps: {len(result.steps)} total, "
            f"{counts[StepStatus.SUCCEEDED]} succeeded, "
            f"{counts[StepStatus.FAILED]} failed, "
            f"{counts[StepStatus.SKIPPED]} skipped, "
            f"{counts[StepStatus.CANCELLED]} cancelled"
        ),
    ]
    if result.error:
        category = result.error_category.value if result.error_category else "error"
        lines.append(f"- Error ({category}): {result.error}")

    lines += [
        "",
        "## Steps",
        "",
        "| Step | Agent | Status | Attempts | Duration | Error |",
        "| --- | --- | --- | --- | --- | --- |",
    ]
    for sid in graph.order:
        state = result.steps[sid]
        error = (state.error or "").replace("|", "\\|").replace("\n", " ")
        if state.error_category and error:
            error = f"{state.error_category.value}: {error}"
        lines.append(
            f"| {sid} | {graph.step(sid).agent} | {state.status.value} | "
            f"{state.attempts} | {_duration(state)} | {error} |"
        )

    lines += [
        "",
        "## Output",
        "",
        _format_output(result.output),
        "",
        "## Dependency graph",
        "",
        "```mermaid",
        render_mermaid(graph, result),
        "```",
        "",
    ]
    return "\n".join(lines)
