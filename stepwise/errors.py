"""Exception types raised by the workflow core."""

from __future__ import annotations

from typing import Optional


class StepwiseError(Exception):
    """Base class for workflow errors.

    ``instance_id`` is filled in by the engine when the error terminates a
    workflow instance so callers can look up the failed instance.
    """

    def __init__(self, message: str, *, instance_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.instance_id = instance_id


class DefinitionNotFound(StepwiseError, KeyError):
    """No workflow definition is registered under the requested id."""

    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow not found: {workflow_id}")
        self.workflow_id = workflow_id

    def __str__(self) -> str:
        return self.args[0]


class InvalidDefinition(StepwiseError, ValueError):
    """A workflow definition failed structural validation."""


class StepTimeout(StepwiseError, TimeoutError):
    """An agent step did not receive a response before its deadline."""

    def __init__(
        self, step_name: str, timeout_ms: float, *, instance_id: Optional[str] = None
    ) -> None:
        super().__init__(
            f"Step {step_name} timed out after {timeout_ms}ms", instance_id=instance_id
        )
        self.step_name = step_name
        self.timeout_ms = timeout_ms


class AgentNotFound(StepwiseError, LookupError):
    """The agent registry has no agent with the requested name."""


class ActionFailed(StepwiseError):
    """An agent action is missing or raised while executing."""


class TransformError(StepwiseError):
    """A transform step's script raised or returned a non-mapping."""


class StepResultError(StepwiseError):
    """A step result could not be merged into the instance data."""


class ConditionEvaluationError(StepwiseError):
    """A condition expression is malformed or failed to evaluate."""


class HandlerError(StepwiseError):
    """A bus subscriber raised while handling an event."""


class RequestTimeout(StepwiseError, TimeoutError):
    """No response was published for a bus request in time."""


class RequestFailed(StepwiseError):
    """The responder of a bus request reported an error."""

    def __init__(self, message: str, error_type: Optional[str] = None) -> None:
        super().__init__(message)
        self.error_type = error_type


__all__ = [
    "StepwiseError",
    "DefinitionNotFound",
    "InvalidDefinition",
    "StepTimeout",
    "AgentNotFound",
    "ActionFailed",
    "TransformError",
    "StepResultError",
    "ConditionEvaluationError",
    "HandlerError",
    "RequestTimeout",
    "RequestFailed",
]
