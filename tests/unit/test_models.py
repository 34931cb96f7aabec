"""Tests for workflow definition and instance models."""

import pytest
from pydantic import ValidationError

from stepwise.models import (
    AgentStep,
    ConditionStep,
    DelayStep,
    ErrorEntry,
    InstanceStatus,
    ParallelStep,
    TransformStep,
    WorkflowDefinition,
    WorkflowInstance,
    iter_steps,
)


def _definition(**overrides):
    data = {
        "name": "Demo",
        "steps": [
            {"type": "agent", "name": "fetch", "agent": "fetcher", "action": "fetch",
             "params": {"limit": 5}, "timeout": 2000},
            {"type": "condition", "name": "check", "condition": "count > 0",
             "on_true": "done"},
            {"type": "parallel", "name": "fan-out", "steps": [
                {"type": "delay", "name": "wait", "delay": 0},
                {"type": "transform", "name": "shape", "script": {"total": "count * 2"}},
            ]},
            {"type": "agent", "name": "done", "agent_name": "notifier", "action": "notify"},
        ],
    }
    data.update(overrides)
    return WorkflowDefinition.model_validate(data)


def test_steps_are_parsed_by_type():
    definition = _definition()

    fetch, check, fan_out, done = definition.steps
    assert isinstance(fetch, AgentStep)
    assert fetch.agent_name == "fetcher"
    assert fetch.parameters == {"limit": 5}
    assert fetch.timeout_ms == 2000
    assert isinstance(check, ConditionStep)
    assert check.condition.source == "count > 0"
    assert isinstance(fan_out, ParallelStep)
    assert isinstance(fan_out.steps[0], DelayStep)
    assert isinstance(fan_out.steps[1], TransformStep)
    assert isinstance(done, AgentStep)
    assert [step.name for step in iter_steps(definition.steps)] == [
        "fetch", "check", "fan-out", "wait", "shape", "done",
    ]
    assert definition.step_index("done") == 3


def test_definition_defaults():
    definition = _definition()
    assert definition.version == "1.0.0"
    assert definition.timeout_ms == 30000
    assert definition.retry_policy.max_retries == 3
    assert definition.steps[0].on_error == "fail"


def test_duplicate_step_names_are_rejected():
    with pytest.raises(ValidationError, match="Duplicate step name"):
        _definition(steps=[
            {"type": "delay", "name": "same", "delay_ms": 0},
            {"type": "parallel", "name": "group", "steps": [
                {"type": "delay", "name": "same", "delay_ms": 0},
            ]},
        ])


def test_unknown_branch_target_is_rejected():
    with pytest.raises(ValidationError, match="unknown step"):
        _definition(steps=[
            {"type": "condition", "name": "check", "condition": "x", "on_false": "nowhere"},
        ])


@pytest.mark.parametrize(
    "steps",
    [
        [],
        [{"name": "untyped", "delay_ms": 0}],
        [{"type": "teleport", "name": "beam"}],
        [{"type": "parallel", "name": "empty", "steps": []}],
        [{"type": "delay", "name": "negative", "delay_ms": -1}],
        [{"type": "agent", "name": "bad-mode", "agent_name": "a", "action": "b",
          "on_error": "ignore"}],
    ],
)
def test_invalid_steps_are_rejected(steps):
    with pytest.raises(ValidationError):
        _definition(steps=steps)


def test_definition_is_immutable():
    definition = _definition()
    with pytest.raises(ValidationError):
        definition.name = "Changed"


def test_instance_helpers():
    instance = WorkflowInstance(id="i-1", definition_id="demo")
    assert instance.status is InstanceStatus.RUNNING
    assert not instance.is_terminal
    assert instance.duration_ms is None

    instance.errors.extend([
        ErrorEntry(step_index=0, step_name="a", error="x", error_type="ValueError"),
        ErrorEntry(step_index=1, step_name="b", error="y", error_type="ValueError"),
        ErrorEntry(step_index=0, step_name="a", error="z", error_type="ValueError"),
    ])
    assert instance.failures_at(0) == 2
    assert instance.failures_at(2) == 0

    instance.status = InstanceStatus.STOPPED
    assert instance.is_terminal


@pytest.mark.parametrize(
    "nested",
    [
        {"type": "delay", "name": "inner", "delay_ms": 0, "on_error": "continue"},
        {"type": "delay", "name": "inner", "delay_ms": 0, "retry_policy": {"max_retries": 1}},
        {"type": "parallel", "name": "group", "steps": [
            {"type": "delay", "name": "inner", "delay_ms": 0, "on_error": "continue"},
        ]},
    ],
)
def test_nested_parallel_steps_cannot_set_failure_handling(nested):
    with pytest.raises(ValidationError, match="cannot set retry_policy or on_error"):
        _definition(steps=[{"type": "parallel", "name": "outer", "steps": [nested]}])


def test_top_level_steps_may_set_failure_handling():
    definition = _definition(steps=[
        {"type": "parallel", "name": "outer", "on_error": "continue",
         "retry_policy": {"max_retries": 1}, "steps": [
            {"type": "delay", "name": "inner", "delay_ms": 0},
        ]},
    ])
    assert definition.steps[0].on_error == "continue"
