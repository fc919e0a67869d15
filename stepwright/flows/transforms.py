"""Built-in input transforms for inter-step communication.

The registry is closed: every transform a flow may reference is a member of
``TransformName``. Flows naming anything else are rejected by the validator
before a run starts.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Mapping

from ..errors import TransformError


class TransformName(str, Enum):
    PASSTHROUGH = "passthrough"
    MERGE_AS_CONTEXT = "merge_as_context"
    EXTRACT_SECTION = "extract_section"
    APPEND_TO_REQUEST = "append_to_request"
    JSON_EXTRACT = "json_extract"
    TEMPLATE_FILL = "template_fill"


@dataclass(frozen=True)
class TransformInput:
    """Values feeding a transform.

    ``values`` maps each source (a step id, or ``"request"``) to its payload,
    in declaration order.
    """

    values: Mapping[str, Any]
    request: Any = None
    args: Any = None
    step_id: str = field(default="")


Transform = Callable[[TransformInput], Any]


def as_text(value: Any) -> str:
    """Render a payload as text for text-oriented transforms."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def _joined_text(inp: TransformInput) -> str:
    texts = [as_text(v) for v in inp.values.values()]
    return texts[0] if len(texts) == 1 else "\n\n".join(texts)


def passthrough(inp: TransformInput) -> Any:
    if len(inp.values) == 1:
        return next(iter(inp.values.values()))
    return dict(inp.values)


def merge_as_context(inp: TransformInput) -> str:
    """Combine every input as a markdown section headed by its source id."""
    return "\n\n".join(f"## {key}\n{as_text(value)}" for key, value in inp.values.items())


def extract_section(inp: TransformInput) -> str:
    section = str(inp.args)
    collected: list[str] = []
    in_section = False
    for line in _joined_text(inp).split("\n"):
        if line.startswith("## "):
            if in_section:
                break
            if section in line:
                in_section = True
                continue
        if in_section:
            collected.append(line)

    if not in_section:
        raise TransformError(f"Section '{section}' not found")

    while collected and not collected[0].strip():
        collected.pop(0)
    while collected and not collected[-1].strip():
        collected.pop()
    return "\n".join(collected)


def append_to_request(inp: TransformInput) -> str:
    request = as_text(inp.request)
    output = _joined_text(inp)
    request_part = f"Original: {request}" if request else "Original:"
    output_part = f"Step Output: {output}" if output else "Step Output:"
    return f"{request_part}\n\n{output_part}"


def json_extract(inp: TransformInput) -> Any:
    """Walk a dotted path (``user.items.0.name``) through JSON input."""
    field_path = str(inp.args)
    raw = passthrough(inp)
    if isinstance(raw, str):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise TransformError(f"Invalid JSON input: {exc}") from exc
    else:
        data = raw

    current = data
    for segment in field_path.split("."):
        if isinstance(current, list) and segment.isdigit():
            index = int(segment)
            if index >= len(current):
                raise TransformError(f"Field '{field_path}' not found")
            current = current[index]
        elif isinstance(current, dict) and segment in current:
            current = current[segment]
        else:
            raise TransformError(f"Field '{field_path}' not found")
    return current


_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")


def template_fill(inp: TransformInput) -> str:
    if not isinstance(inp.args, Mapping):
        raise TransformError("template_fill requires a mapping of variables")
    context = dict(inp.args)

    def _replace(match: re.Match) -> str:
        name = match.group(1)
        if name not in context:
            raise TransformError(f"Missing context variable: {name}")
        return str(context[name])

    return _PLACEHOLDER.sub(_replace, _joined_text(inp))


REGISTRY: Dict[TransformName, Transform] = {
    TransformName.PASSTHROUGH: passthrough,
    TransformName.MERGE_AS_CONTEXT: merge_as_context,
    TransformName.EXTRACT_SECTION: extract_section,
    TransformName.APPEND_TO_REQUEST: append_to_request,
    TransformName.JSON_EXTRACT: json_extract,
    TransformName.TEMPLATE_FILL: template_fill,
}

REQUIRES_ARGS: FrozenSet[TransformName] = frozenset(
    {
        TransformName.EXTRACT_SECTION,
        TransformName.JSON_EXTRACT,
        TransformName.TEMPLATE_FILL,
    }
)


def lookup(name: str) -> TransformName | None:
    """Return the registered transform for ``name`` or ``None``."""
    try:
        return TransformName(name)
    except ValueError:
        return None


def apply_transform(name: TransformName | str, inp: TransformInput) -> Any:
    transform_name = TransformName(name)
    try:
        return REGISTRY[transform_name](inp)
    except TransformError:
        raise
    except Exception as exc:
        raise TransformError(
            f"Transform {transform_name.value} failed for step {inp.step_id}: {exc}"
        ) from exc
