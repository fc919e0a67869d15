"""Declarative flow specification models.

Raw flow documents use camelCase keys (``dependsOn``, ``maxParallelism``);
the models expose snake_case attributes and accept either form. All models
are frozen: a loaded flow is read-only for the lifetime of a run.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..constants import (
    DEFAULT_BACKOFF_MS,
    DEFAULT_FAIL_FAST,
    DEFAULT_FLOW_VERSION,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_PARALLELISM,
)


class _SpecModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="forbid",
    )


class RequestInput(_SpecModel):
    """Input taken from the original run payload."""

    source: Literal["request"] = "request"
    transform: str = "passthrough"
    transform_args: Any = None


class StepInput(_SpecModel):
    """Input taken from a single upstream step."""

    source: Literal["step"]
    step_id: Optional[str] = None
    transform: str = "passthrough"
    transform_args: Any = None


class AggregateInput(_SpecModel):
    """Input merged from several upstream steps (defaults to ``dependsOn``)."""

    source: Literal["aggregate"]
    from_: Optional[Tuple[str, ...]] = Field(default=None, alias="from")
    transform: str = "passthrough"
    transform_args: Any = None


InputSpec = Annotated[
    Union[RequestInput, StepInput, AggregateInput], Field(discriminator="source")
]


class RetrySpec(_SpecModel):
    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    backoff_ms: int = Field(default=DEFAULT_BACKOFF_MS, ge=0)


class FlowSettings(_SpecModel):
    max_parallelism: int = Field(default=DEFAULT_MAX_PARALLELISM, ge=1)
    fail_fast: bool = DEFAULT_FAIL_FAST
    overall_timeout_ms: Optional[int] = Field(default=None, gt=0)


class OutputSpec(_SpecModel):
    from_: Union[str, Tuple[str, ...]] = Field(alias="from")
    format: Literal["markdown", "json", "concat"] = "markdown"

    @property
    def step_ids(self) -> Tuple[str, ...]:
        if isinstance(self.from_, str):
            return (self.from_,)
        return tuple(self.from_)


class Step(_SpecModel):
    """One unit of work delegated to an agent."""

    id: str = Field(min_length=1)
    name: Optional[str] = None
    agent: str = ""
    depends_on: Tuple[str, ...] = ()
    input: InputSpec = Field(default_factory=RequestInput)
    skills: Tuple[str, ...] = ()
    timeout_ms: Optional[int] = Field(default=None, gt=0)
    retry: RetrySpec = Field(default_factory=RetrySpec)
    mutates: Tuple[str, ...] = ()
    lease_ttl_ms: Optional[int] = Field(default=None, gt=0)

    @property
    def input_sources(self) -> Tuple[str, ...]:
        """Upstream step ids whose outputs feed this step's input."""
        if isinstance(self.input, StepInput):
            return (self.input.step_id,) if self.input.step_id else ()
        if isinstance(self.input, AggregateInput):
            if self.input.from_ is None:
                return self.depends_on
            return self.input.from_
        return ()


class FlowHeader(_SpecModel):
    """Top-level identity of a flow, without its steps."""

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: Optional[str] = None
    version: str = DEFAULT_FLOW_VERSION


class FlowDefinition(FlowHeader):
    steps: Tuple[Step, ...] = ()
    output: OutputSpec
    settings: FlowSettings = Field(default_factory=FlowSettings)
