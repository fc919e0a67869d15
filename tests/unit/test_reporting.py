import pytest

from stepwright.orchestrator import Orchestrator
from stepwright.reporting import render_mermaid, render_report


def test_mermaid_without_result_lists_nodes_and_edges(graph_factory):
    graph = graph_factory(
        [
            {"id": "plan-it", "name": 'The "plan"'},
            {"id": "build", "dependsOn": ["plan-it"]},
        ]
    )
    diagram = render_mermaid(graph)
    assert diagram.splitlines() == [
        "graph TD",
        "    plan_it[\"The 'plan'\"]",
        '    build["build"]',
        "    plan_it --> build",
    ]


@pytest.mark.asyncio
async def test_report_summarises_partial_run(invoker_factory, graph_factory, store, config):
    invoker = invoker_factory({"a": "alpha", "b": invoker_factory.failing("bad | input")})
    graph = graph_factory(
        [{"id": "a"}, {"id": "b"}, {"id": "c", "dependsOn": ["b"]}],
        output=["a", "c"],
        failFast=False,
    )
    result = await Orchestrator(invoker, store=store, config=config).run(graph)

    report = render_report(graph, result)

    assert report.startswith("# Test Flow (partial)")
    assert f"- Trace: `{result.trace_id}`" in report
    assert "- Steps: 3 total, 1 succeeded, 1 failed, 1 skipped, 0 cancelled" in report
    assert "| a | a | succeeded | 1 |" in report
    assert "agent_error: bad \\| input" in report
    assert "| c | c | skipped | 0 | - |" in report
    assert "## a\n\nalpha" in report
    assert "style b fill:#f8d7da" in report
