"""Stepwise: in-process workflow orchestration over an event bus."""

from .bus import EventBus
from .config import StepwiseConfig, load_config
from .engine import WorkflowEngine
from .errors import (
    ActionFailed,
    AgentNotFound,
    DefinitionNotFound,
    InvalidDefinition,
    StepTimeout,
    StepwiseError,
)
from .expressions import Expression
from .manager import WorkflowManager
from .models import (
    AgentStep,
    ConditionStep,
    DelayStep,
    InstanceStatus,
    ParallelStep,
    RetryPolicy,
    TransformStep,
    WorkflowDefinition,
    WorkflowInstance,
)
from .registry import AgentRegistry, InMemoryAgentRegistry

__version__ = "0.1.0"
__all__ = [
    "EventBus",
    "WorkflowEngine",
    "WorkflowManager",
    "StepwiseConfig",
    "load_config",
    "Expression",
    "AgentStep",
    "ConditionStep",
    "DelayStep",
    "ParallelStep",
    "TransformStep",
    "RetryPolicy",
    "WorkflowDefinition",
    "WorkflowInstance",
    "InstanceStatus",
    "AgentRegistry",
    "InMemoryAgentRegistry",
    "StepwiseError",
    "DefinitionNotFound",
    "InvalidDefinition",
    "StepTimeout",
    "AgentNotFound",
    "ActionFailed",
]
