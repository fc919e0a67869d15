"""Immutable, validated flow graph."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, List, Mapping, Tuple

from .models import FlowDefinition, FlowSettings, OutputSpec, Step


def topological_order(steps: Tuple[Step, ...]) -> Tuple[str, ...]:
    """Kahn's algorithm, ties broken by declaration order.

    Steps caught in a cycle are left out of the result.
    """
    indegree: Dict[str, int] = {step.id: 0 for step in steps}
    dependents: Dict[str, List[str]] = {step.id: [] for step in steps}
    for step in steps:
        for dep in step.depends_on:
            if dep in dependents:
                dependents[dep].append(step.id)
                indegree[step.id] += 1

    queue = deque(sid for sid, degree in indegree.items() if degree == 0)
    order: List[str] = []
    while queue:
        current = queue.popleft()
        order.append(current)
        for child in dependents[current]:
            indegree[child] -= 1
            if indegree[child] == 0:
                queue.append(child)
    return tuple(order)


@dataclass(frozen=True)
class FlowGraph:
    """A flow whose dependency graph has been checked to be a DAG.

    Only ``stepwright.flows.validator`` should construct one; use
    ``validate`` or ``validate_or_raise``.
    """

    definition: FlowDefinition
    order: Tuple[str, ...]
    dependents: Mapping[str, Tuple[str, ...]]
    steps_by_id: Mapping[str, Step]

    @classmethod
    def build(cls, definition: FlowDefinition) -> "FlowGraph":
        steps_by_id = {step.id: step for step in definition.steps}
        children: Dict[str, List[str]] = {step.id: [] for step in definition.steps}
        for step in definition.steps:
            for dep in step.depends_on:
                children[dep].append(step.id)
        return cls(
            definition=definition,
            order=topological_order(definition.steps),
            dependents=MappingProxyType(
                {sid: tuple(kids) for sid, kids in children.items()}
            ),
            steps_by_id=MappingProxyType(steps_by_id),
        )

    @property
    def id(self) -> str:
        return self.definition.id

    @property
    def settings(self) -> FlowSettings:
        return self.definition.settings

    @property
    def output(self) -> OutputSpec:
        return self.definition.output

    @property
    def steps(self) -> Tuple[Step, ...]:
        return self.definition.steps

    def step(self, step_id: str) -> Step:
        return self.steps_by_id[step_id]

    def dependencies(self, step_id: str) -> Tuple[str, ...]:
        return self.steps_by_id[step_id].depends_on

    def roots(self) -> Tuple[str, ...]:
        return tuple(sid for sid in self.order if not self.dependencies(sid))

    def transitive_dependents(self, step_id: str) -> Tuple[str, ...]:
        """Every step reachable downstream of ``step_id``, in topological order."""
        seen = set()
        stack = list(self.dependents[step_id])
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.dependents[current])
        return tuple(sid for sid in self.order if sid in seen)
