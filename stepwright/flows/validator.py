"""Flow validation.

``validate`` turns a raw flow specification into a ``FlowGraph`` or the full
list of problems with it. Every semantic check runs on every call, so a
single pass reports all issues. Validation is pure: it never touches the
store, the journal or any agent.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple, Union

from pydantic import ValidationError

from ..errors import FlowValidationError
from .graph import FlowGraph
from .models import (
    AggregateInput,
    FlowDefinition,
    FlowHeader,
    FlowSettings,
    OutputSpec,
    Step,
    StepInput,
)
from .transforms import REQUIRES_ARGS, lookup

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValidationIssue:
    code: str
    message: str
    step_id: Optional[str] = None
    path: Optional[str] = None


def _schema_issues(
    exc: ValidationError, loc_prefix: Tuple[Any, ...] = (), step_id: Optional[str] = None
) -> List[ValidationIssue]:
    issues = []
    for err in exc.errors():
        path = ".".join(str(part) for part in (*loc_prefix, *err.get("loc", ())))
        prefix = f"step '{step_id}': " if step_id else ""
        issues.append(
            ValidationIssue(
                code="schema",
                message=f"{prefix}{path or 'flow'}: {err.get('msg')}",
                step_id=step_id,
                path=path or None,
            )
        )
    return issues


def _salvage_step(raw_step: Mapping[str, Any], exc: ValidationError) -> Optional[Step]:
    """Re-parse a rejected step without its broken fields.

    The result only feeds the graph checks so a schema error does not hide a
    cycle or an empty agent elsewhere; ``None`` when the id itself is broken.
    """
    broken = {err["loc"][0] for err in exc.errors() if err.get("loc")}
    if "id" in broken:
        return None
    try:
        return Step.model_validate({k: v for k, v in raw_step.items() if k not in broken})
    except ValidationError:
        return None


def _parse_steps(raw_steps: Any) -> Tuple[List[Step], List[ValidationIssue]]:
    if raw_steps is None:
        return [], []
    if not isinstance(raw_steps, (list, tuple)):
        issue = ValidationIssue(
            code="schema", message="steps: Input should be a valid list", path="steps"
        )
        return [], [issue]
    steps: List[Step] = []
    issues: List[ValidationIssue] = []
    for index, raw_step in enumerate(raw_steps):
        try:
            steps.append(Step.model_validate(raw_step))
        except ValidationError as exc:
            step_id = raw_step.get("id") if isinstance(raw_step, Mapping) else None
            if not isinstance(step_id, str):
                step_id = None
            issues.extend(_schema_issues(exc, ("steps", index), step_id))
            if isinstance(raw_step, Mapping):
                salvaged = _salvage_step(raw_step, exc)
                if salvaged is not None:
                    steps.append(salvaged)
    return steps, issues


def _parse_flow(
    raw: Mapping[str, Any],
) -> Tuple[Optional[FlowDefinition], List[Step], Optional[OutputSpec], List[ValidationIssue]]:
    """Parse header, steps, output and settings independently.

    Returns the definition (``None`` if any part failed), the steps usable for
    graph checks, the parsed output and every schema issue.
    """
    issues: List[ValidationIssue] = []

    header_raw = {k: v for k, v in raw.items() if k not in ("steps", "output", "settings")}
    header: Optional[FlowHeader] = None
    try:
        header = FlowHeader.model_validate(header_raw)
    except ValidationError as exc:
        issues.extend(_schema_issues(exc))

    steps, step_issues = _parse_steps(raw.get("steps"))
    issues.extend(step_issues)

    output: Optional[OutputSpec] = None
    if "output" not in raw:
        issues.append(
            ValidationIssue(code="schema", message="output: Field required", path="output")
        )
    else:
        try:
            output = OutputSpec.model_validate(raw["output"])
        except ValidationError as exc:
            issues.extend(_schema_issues(exc, ("output",)))

    settings: Optional[FlowSettings] = None
    try:
        settings = FlowSettings.model_validate(raw.get("settings") or {})
    except ValidationError as exc:
        issues.extend(_schema_issues(exc, ("settings",)))

    if issues or header is None or output is None or settings is None:
        return None, steps, output, issues
    definition = FlowDefinition(
        **header.model_dump(), steps=tuple(steps), output=output, settings=settings
    )
    return definition, steps, output, issues


def _find_cycles(steps: Dict[str, Step]) -> List[Tuple[str, ...]]:
    """Return each distinct dependency cycle once, as ``(a, b, ..., a)``."""
    children: Dict[str, List[str]] = {sid: [] for sid in steps}
    for step in steps.values():
        for dep in step.depends_on:
            if dep in children:
                children[dep].append(step.id)

    visited: Set[str] = set()
    on_stack: Set[str] = set()
    path: List[str] = []
    cycles: List[Tuple[str, ...]] = []
    seen_members: Set[frozenset] = set()

    def visit(node: str) -> None:
        visited.add(node)
        on_stack.add(node)
        path.append(node)
        for child in children[node]:
            if child not in visited:
                visit(child)
            elif child in on_stack:
                cycle = tuple(path[path.index(child):]) + (child,)
                members = frozenset(cycle)
                if members not in seen_members:
                    seen_members.add(members)
                    cycles.append(cycle)
        on_stack.discard(node)
        path.pop()

    for sid in steps:
        if sid not in visited:
            visit(sid)
    return cycles


def _check_step(step: Step, known: Set[str]) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []
    sid = step.id

    if not step.agent or not step.agent.strip():
        issues.append(
            ValidationIssue(
                code="missing_agent",
                message=f"step '{sid}': agent identifier is empty",
                step_id=sid,
                path="agent",
            )
        )

    for dep in step.depends_on:
        if dep not in known:
            issues.append(
                ValidationIssue(
                    code="unknown_dependency",
                    message=f"step '{sid}': dependsOn references unknown step '{dep}'",
                    step_id=sid,
                    path="dependsOn",
                )
            )
        elif dep == sid:
            issues.append(
                ValidationIssue(
                    code="cycle",
                    message=f"step '{sid}': depends on itself",
                    step_id=sid,
                    path="dependsOn",
                )
            )

    transform = lookup(step.input.transform)
    if transform is None:
        issues.append(
            ValidationIssue(
                code="unknown_transform",
                message=f"step '{sid}': transform '{step.input.transform}' is not registered",
                step_id=sid,
                path="input.transform",
            )
        )
    elif transform in REQUIRES_ARGS and step.input.transform_args is None:
        issues.append(
            ValidationIssue(
                code="missing_transform_args",
                message=f"step '{sid}': transform '{transform.value}' requires transformArgs",
                step_id=sid,
                path="input.transformArgs",
            )
        )

    if isinstance(step.input, StepInput):
        if not step.input.step_id:
            issues.append(
                ValidationIssue(
                    code="missing_step_source",
                    message=f"step '{sid}': input source 'step' requires stepId",
                    step_id=sid,
                    path="input.stepId",
                )
            )
        elif step.input.step_id not in step.depends_on:
            issues.append(
                ValidationIssue(
                    code="step_source_not_dependency",
                    message=(
                        f"step '{sid}': input stepId '{step.input.step_id}' "
                        "is not listed in dependsOn"
                    ),
                    step_id=sid,
                    path="input.stepId",
                )
            )
    elif isinstance(step.input, AggregateInput):
        if not step.input_sources:
            issues.append(
                ValidationIssue(
                    code="empty_aggregate",
                    message=f"step '{sid}': aggregate input has no source steps",
                    step_id=sid,
                    path="input.from",
                )
            )
        for source in step.input.from_ or ():
            if source not in step.depends_on:
                issues.append(
                    ValidationIssue(
                        code="aggregate_not_dependency",
                        message=(
                            f"step '{sid}': aggregate input '{source}' "
                            "is not listed in dependsOn"
                        ),
                        step_id=sid,
                        path="input.from",
                    )
                )
    return issues


def validate(
    raw: Union[Mapping[str, Any], FlowDefinition],
) -> Union[FlowGraph, List[ValidationIssue]]:
    """Validate ``raw`` and return a ``FlowGraph`` or every issue found.

    Schema errors do not stop the graph checks: steps that fail parsing are
    checked on their remaining fields.
    """
    if isinstance(raw, FlowDefinition):
        definition: Optional[FlowDefinition] = raw
        parsed_steps: List[Step] = list(raw.steps)
        output: Optional[OutputSpec] = raw.output
        issues: List[ValidationIssue] = []
    elif isinstance(raw, Mapping):
        definition, parsed_steps, output, issues = _parse_flow(raw)
    else:
        return [ValidationIssue(code="schema", message="flow: Input should be a mapping")]

    if not parsed_steps and not any(i.path and i.path.startswith("steps") for i in issues):
        issues.append(
            ValidationIssue(code="no_steps", message="flow must have at least one step")
        )

    steps: Dict[str, Step] = {}
    for step in parsed_steps:
        if step.id in steps:
            issues.append(
                ValidationIssue(
                    code="duplicate_step",
                    message=f"step '{step.id}': duplicate step id",
                    step_id=step.id,
                    path="id",
                )
            )
            continue
        steps[step.id] = step

    known = set(steps)
    for step in parsed_steps:
        issues.extend(_check_step(step, known))

    for cycle in _find_cycles(steps):
        if len(cycle) == 2:
            continue  # self-dependency, reported by _check_step
        issues.append(
            ValidationIssue(
                code="cycle",
                message=f"dependency cycle: {' -> '.join(cycle)}",
                step_id=cycle[0],
                path="dependsOn",
            )
        )

    if output is not None:
        if not output.step_ids:
            issues.append(
                ValidationIssue(
                    code="empty_output",
                    message="output must name at least one step",
                    path="output.from",
                )
            )
        for target in output.step_ids:
            if target not in known:
                issues.append(
                    ValidationIssue(
                        code="unknown_output_step",
                        message=f"output references unknown step '{target}'",
                        path="output.from",
                    )
                )

    if issues or definition is None:
        flow_id = raw.get("id") if isinstance(raw, Mapping) else raw.id
        logger.debug(f"Flow {flow_id} failed validation with {len(issues)} issue(s)")
        return issues
    return FlowGraph.build(definition)


def validate_or_raise(raw: Union[Mapping[str, Any], FlowDefinition]) -> FlowGraph:
    """Like ``validate`` but raises ``FlowValidationError`` on any issue."""
    result = validate(raw)
    if isinstance(result, FlowGraph):
        return result
    raise FlowValidationError(result)
