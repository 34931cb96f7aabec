"""Workflow definition and instance models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import (
    Annotated,
    Any,
    Callable,
    Dict,
    Iterator,
    List,
    Literal,
    Mapping,
    Optional,
    Type,
    Union,
)

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from .contracts import utcnow
from .expressions import Expression


class RetryPolicy(BaseModel):
    """How often, and after which delay, a failed step is attempted again."""

    max_retries: int = Field(default=3, ge=0)
    delay_ms: float = Field(default=1000, ge=0, validation_alias=AliasChoices("delay_ms", "delay"))
    backoff: float = Field(default=1.0, ge=1.0)

    model_config = ConfigDict(frozen=True, populate_by_name=True)


class _StepBase(BaseModel):
    name: str
    retry_policy: Optional[RetryPolicy] = None
    on_error: Literal["fail", "continue"] = "fail"

    model_config = ConfigDict(frozen=True, populate_by_name=True)


class AgentStep(_StepBase):
    """Ask an external agent to run ``action`` and merge its result."""

    type: Literal["agent"] = "agent"
    agent_name: str = Field(validation_alias=AliasChoices("agent_name", "agent"))
    action: str
    parameters: Dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("parameters", "params")
    )
    timeout_ms: Optional[float] = Field(
        default=None, gt=0, validation_alias=AliasChoices("timeout_ms", "timeout")
    )
    # Guard: the step is skipped when this evaluates false.
    condition: Optional[Expression] = None


class ConditionStep(_StepBase):
    """Branch to another step depending on a predicate over the data."""

    type: Literal["condition"] = "condition"
    condition: Expression
    on_true: Optional[str] = None
    on_false: Optional[str] = None


class ParallelStep(_StepBase):
    """Run nested steps concurrently and join on all of them."""

    type: Literal["parallel"] = "parallel"
    steps: List[Step] = Field(min_length=1)


class DelayStep(_StepBase):
    type: Literal["delay"] = "delay"
    delay_ms: float = Field(ge=0, validation_alias=AliasChoices("delay_ms", "delay"))


TransformScript = Union[
    Callable[[Dict[str, Any]], Mapping[str, Any]],
    Dict[str, Expression],
]


class TransformStep(_StepBase):
    """Derive new data from a snapshot of the instance data.

    ``script`` is either a function receiving a deep copy of the data and
    returning a mapping, or a mapping of output keys to expressions.
    """

    type: Literal["transform"] = "transform"
    script: TransformScript


Step = Annotated[
    Union[AgentStep, ConditionStep, ParallelStep, DelayStep, TransformStep],
    Field(discriminator="type"),
]

ParallelStep.model_rebuild()


def iter_steps(steps: List[Step]) -> Iterator[Step]:
    """Yield ``steps`` and every nested parallel step, depth first."""
    for step in steps:
        yield step
        if isinstance(step, ParallelStep):
            yield from iter_steps(step.steps)


class WorkflowDefinition(BaseModel):
    """Static, named description of an ordered, branchable list of steps."""

    id: str = ""
    name: str
    description: Optional[str] = None
    version: str = "1.0.0"
    steps: List[Step] = Field(min_length=1)
    conditions: Dict[str, Expression] = Field(default_factory=dict)
    retry_policy: RetryPolicy = RetryPolicy()
    timeout_ms: float = Field(
        default=30000, gt=0, validation_alias=AliasChoices("timeout_ms", "timeout")
    )
    data_schema: Optional[Type[BaseModel]] = None
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    @model_validator(mode="after")
    def _check_step_names(self) -> WorkflowDefinition:
        seen: set[str] = set()
        for step in iter_steps(self.steps):
            if step.name in seen:
                raise ValueError(f"Duplicate step name: {step.name}")
            seen.add(step.name)

        # Failures inside a parallel step are handled by the parallel step.
        for step in self.steps:
            if not isinstance(step, ParallelStep):
                continue
            for child in iter_steps(step.steps):
                if child.retry_policy is not None or child.on_error != "fail":
                    raise ValueError(
                        f"Step {child.name} inside parallel step {step.name} "
                        "cannot set retry_policy or on_error"
                    )

        top_level = {step.name for step in self.steps}
        for step in self.steps:
            if not isinstance(step, ConditionStep):
                continue
            for target in (step.on_true, step.on_false):
                if target is not None and target not in top_level:
                    raise ValueError(
                        f"Step {step.name} branches to unknown step: {target}"
                    )
        return self

    def step_index(self, name: str) -> int:
        """Index of the top-level step called ``name``."""
        for index, step in enumerate(self.steps):
            if step.name == name:
                return index
        raise KeyError(name)


class InstanceStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self is not InstanceStatus.RUNNING


class InstanceContext(BaseModel):
    start_time: datetime = Field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    initiator: Optional[str] = None
    priority: str = "normal"


class HistoryEntry(BaseModel):
    """A successfully executed step."""

    step_index: int
    step_name: str
    result: Any = None
    timestamp: datetime = Field(default_factory=utcnow)


class ErrorEntry(BaseModel):
    """A failed step attempt."""

    step_index: int
    step_name: str
    error: str
    error_type: str
    timestamp: datetime = Field(default_factory=utcnow)


class WorkflowInstance(BaseModel):
    """One execution of a workflow definition."""

    id: str
    definition_id: str
    status: InstanceStatus = InstanceStatus.RUNNING
    current_step_index: int = 0
    data: Dict[str, Any] = Field(default_factory=dict)
    context: InstanceContext = Field(default_factory=InstanceContext)
    history: List[HistoryEntry] = Field(default_factory=list)
    errors: List[ErrorEntry] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration_ms(self) -> Optional[float]:
        if self.context.end_time is None:
            return None
        delta = self.context.end_time - self.context.start_time
        return delta.total_seconds() * 1000

    def failures_at(self, step_index: int) -> int:
        """Number of recorded failures for the step at ``step_index``."""
        return sum(1 for error in self.errors if error.step_index == step_index)


__all__ = [
    "RetryPolicy",
    "AgentStep",
    "ConditionStep",
    "ParallelStep",
    "DelayStep",
    "TransformStep",
    "Step",
    "iter_steps",
    "WorkflowDefinition",
    "InstanceStatus",
    "InstanceContext",
    "HistoryEntry",
    "ErrorEntry",
    "WorkflowInstance",
]
