"""Flow specification, validation and the immutable flow graph."""

from __future__ import annotations

from .graph import FlowGraph
from .loader import load_flow
from .models import (
    AggregateInput,
    FlowDefinition,
    FlowSettings,
    InputSpec,
    OutputSpec,
    RequestInput,
    RetrySpec,
    Step,
    StepInput,
)
from .transforms import TransformInput, TransformName, apply_transform
from .validator import ValidationIssue, validate, validate_or_raise

__all__ = [
    "AggregateInput",
    "FlowDefinition",
    "FlowGraph",
    "FlowSettings",
    "InputSpec",
    "OutputSpec",
    "RequestInput",
    "RetrySpec",
    "Step",
    "StepInput",
    "TransformInput",
    "TransformName",
    "ValidationIssue",
    "apply_transform",
    "load_flow",
    "validate",
    "validate_or_raise",
]
