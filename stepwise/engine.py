"""Workflow engine: runs workflow instances step by step over the event bus."""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Mapping
from datetime import timedelta
from typing import Any, Dict, List, NamedTuple, Optional, Union

from pydantic import ValidationError

from .bus import EventBus
from .config import EngineConfig
from .contracts import AGENT_REQUEST_EVENT, AgentRequest, new_id, utcnow
from .errors import (
    ActionFailed,
    AgentNotFound,
    ConditionEvaluationError,
    DefinitionNotFound,
    InvalidDefinition,
    RequestFailed,
    RequestTimeout,
    StepResultError,
    StepTimeout,
    StepwiseError,
    TransformError,
)
from .expressions import Expression
from .models import (
    AgentStep,
    ConditionStep,
    DelayStep,
    ErrorEntry,
    HistoryEntry,
    InstanceContext,
    InstanceStatus,
    ParallelStep,
    RetryPolicy,
    Step,
    TransformStep,
    WorkflowDefinition,
    WorkflowInstance,
)
from .persistence import InMemoryInstanceRepository, InstanceRepository
from .utils.retry import schedule_retry

logger = logging.getLogger(__name__)

WORKFLOW_STARTED_EVENT = "workflow.started"
STEP_COMPLETED_EVENT = "workflow.step.completed"
WORKFLOW_COMPLETED_EVENT = "workflow.completed"
WORKFLOW_STOPPED_EVENT = "workflow.stopped"

ENGINE_SENDER_ID = "workflow_engine"


class _Outcome(NamedTuple):
    result: Any
    jump_to: Optional[int] = None


class WorkflowEngine:
    """Holds workflow definitions and runs their instances.

    Each instance is executed by one sequential loop inside
    :meth:`start_workflow`. Agent steps are dispatched as ``agent.request``
    events on the bus and the loop suspends until the correlated response
    arrives or the step times out.
    """

    def __init__(
        self,
        bus: Optional[EventBus] = None,
        config: Optional[EngineConfig] = None,
        repository: Optional[InstanceRepository] = None,
    ) -> None:
        config = config or EngineConfig()
        self.bus = bus
        self.default_timeout_ms = config.default_timeout_ms
        self.default_retry_policy = RetryPolicy(
            max_retries=config.retry.max_retries,
            delay_ms=config.retry.delay_ms,
            backoff=config.retry.backoff,
        )
        self.instance_retention_ms = config.instance_retention_ms
        self._workflows: Dict[str, WorkflowDefinition] = {}
        self._instances = repository or InMemoryInstanceRepository()

    def set_event_bus(self, bus: EventBus) -> None:
        self.bus = bus

    # ------------------------------------------------------------------
    def register_workflow(
        self,
        workflow_id: str,
        definition: Union[WorkflowDefinition, Mapping[str, Any]],
    ) -> WorkflowDefinition:
        """Store a workflow definition under ``workflow_id``.

        Mappings are validated into a :class:`WorkflowDefinition`. Definitions
        that leave ``retry_policy`` or ``timeout_ms`` unset take the engine's
        defaults. An
        existing definition with the same id is replaced; instances already
        running keep the definition they started with.

        Raises:
            InvalidDefinition: If the mapping does not describe a valid workflow.
        """
        if isinstance(definition, WorkflowDefinition):
            update: Dict[str, Any] = {"id": workflow_id}
            if "retry_policy" not in definition.model_fields_set:
                update["retry_policy"] = self.default_retry_policy
            if "timeout_ms" not in definition.model_fields_set:
                update["timeout_ms"] = self.default_timeout_ms
            definition = definition.model_copy(update=update)
        else:
            data = dict(definition)
            data["id"] = workflow_id
            data.setdefault("retry_policy", self.default_retry_policy)
            if "timeout_ms" not in data and "timeout" not in data:
                data["timeout_ms"] = self.default_timeout_ms
            try:
                definition = WorkflowDefinition.model_validate(data)
            except ValidationError as exc:
                raise InvalidDefinition(f"Invalid workflow {workflow_id}: {exc}") from exc

        if workflow_id in self._workflows:
            logger.warning(f"Replacing existing workflow definition: {workflow_id}")
        self._workflows[workflow_id] = definition
        logger.info(f"Registered workflow: {definition.name} (ID: {workflow_id})")
        return definition

    def unregister_workflow(self, workflow_id: str) -> bool:
        removed = self._workflows.pop(workflow_id, None) is not None
        if removed:
            logger.info(f"Unregistered workflow: {workflow_id}")
        return removed

    async def start_workflow(
        self,
        workflow_id: str,
        initial_data: Optional[Mapping[str, Any]] = None,
        *,
        initiator: Optional[str] = None,
        priority: str = "normal",
        instance_id: Optional[str] = None,
    ) -> str:
        """Create an instance of ``workflow_id`` and run it to a terminal state.

        Args:
            workflow_id: Registered workflow to run.
            initial_data: Starting data context, deep-copied into the instance.
            initiator: Who started the workflow, kept in the instance context.
            priority: Informational priority label.
            instance_id: Optional id for the instance (generated if not provided).

        Returns:
            The instance id once the workflow completed or was stopped.

        Raises:
            DefinitionNotFound: If ``workflow_id`` is not registered.
            Exception: The error of a step that failed after exhausting its
                retries; ``StepwiseError`` subclasses carry ``instance_id``.
        """
        definition = self._workflows.get(workflow_id)
        if definition is None:
            raise DefinitionNotFound(workflow_id)

        instance_id = instance_id or new_id(workflow_id)
        if self._instances.get(instance_id) is not None:
            raise ValueError(f"Workflow instance already exists: {instance_id}")

        instance = WorkflowInstance(
            id=instance_id,
            definition_id=workflow_id,
            data=copy.deepcopy(dict(initial_data or {})),
            context=InstanceContext(initiator=initiator, priority=priority),
        )
        self._instances.add(instance)
        logger.info(
            f"Started workflow instance: {instance.id} (Workflow: {definition.name})"
        )
        self._emit(
            WORKFLOW_STARTED_EVENT,
            {"instance_id": instance.id, "workflow_id": workflow_id},
        )

        await self._execute(instance, definition)
        return instance.id

    # ------------------------------------------------------------------
    async def _execute(
        self, instance: WorkflowInstance, definition: WorkflowDefinition
    ) -> None:
        try:
            await self._run_steps(instance, definition)
        except asyncio.CancelledError:
            if instance.status is InstanceStatus.RUNNING:
                logger.warning(f"Workflow cancelled: {instance.id}")
                self._mark_stopped(instance)
            raise

        if instance.status is InstanceStatus.RUNNING:
            instance.status = InstanceStatus.COMPLETED
            instance.context.end_time = utcnow()
            logger.info(f"Workflow completed: {instance.id}")
            self._emit(
                WORKFLOW_COMPLETED_EVENT,
                {
                    "instance_id": instance.id,
                    "workflow_id": instance.definition_id,
                    "duration_ms": instance.duration_ms,
                },
            )

    async def _run_steps(
        self, instance: WorkflowInstance, definition: WorkflowDefinition
    ) -> None:
        steps = definition.steps

        while (
            instance.status is InstanceStatus.RUNNING
            and instance.current_step_index < len(steps)
        ):
            index = instance.current_step_index
            step = steps[index]

            if isinstance(step, AgentStep) and step.condition is not None:
                if not self._check(step.condition, instance, definition):
                    logger.info(
                        f"Skipping step {step.name}: condition not met (instance: {instance.id})"
                    )
                    instance.current_step_index = index + 1
                    continue

            logger.info(f"Executing step: {step.name} (instance: {instance.id})")
            try:
                outcome = await self._execute_step(step, instance, definition)
                if instance.status is not InstanceStatus.RUNNING:
                    logger.info(
                        f"Ignoring result of step {step.name}: instance {instance.id} is {instance.status.value}"
                    )
                    break
                self._merge_result(instance, definition, outcome.result)
            except Exception as exc:
                await self._handle_step_error(step, index, instance, definition, exc)
                continue

            instance.history.append(
                HistoryEntry(step_index=index, step_name=step.name, result=outcome.result)
            )
            self._emit(
                STEP_COMPLETED_EVENT,
                {
                    "instance_id": instance.id,
                    "workflow_id": instance.definition_id,
                    "step_index": index,
                    "step_name": step.name,
                    "result": outcome.result,
                },
            )
            instance.current_step_index = (
                outcome.jump_to if outcome.jump_to is not None else index + 1
            )

    async def _execute_step(
        self,
        step: Step,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        nested: bool = False,
    ) -> _Outcome:
        if isinstance(step, AgentStep):
            return _Outcome(await self._execute_agent_step(step, instance, definition))
        if isinstance(step, ConditionStep):
            return self._execute_condition_step(step, instance, definition, nested)
        if isinstance(step, ParallelStep):
            return _Outcome(await self._execute_parallel_step(step, instance, definition))
        if isinstance(step, DelayStep):
            await asyncio.sleep(step.delay_ms / 1000)
            return _Outcome({"delayed": step.delay_ms})
        if isinstance(step, TransformStep):
            return _Outcome(self._execute_transform_step(step, instance))
        raise InvalidDefinition(f"Unknown step type: {type(step).__name__}")

    async def _execute_agent_step(
        self,
        step: AgentStep,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
    ) -> Any:
        if self.bus is None:
            raise StepwiseError("Event bus is not configured")

        timeout_ms = step.timeout_ms or definition.timeout_ms
        request = AgentRequest(
            instance_id=instance.id,
            step_name=step.name,
            agent=step.agent_name,
            action=step.action,
            params={**step.parameters, **copy.deepcopy(instance.data)},
        )
        try:
            return await self.bus.request(
                AGENT_REQUEST_EVENT,
                request.model_dump(exclude={"correlation_id", "response_event"}),
                timeout_ms=timeout_ms,
                metadata={"sender_id": instance.id},
            )
        except RequestTimeout as exc:
            raise StepTimeout(step.name, timeout_ms) from exc
        except RequestFailed as exc:
            if exc.error_type == AgentNotFound.__name__:
                raise AgentNotFound(str(exc)) from exc
            raise ActionFailed(str(exc)) from exc

    def _execute_condition_step(
        self,
        step: ConditionStep,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        nested: bool,
    ) -> _Outcome:
        result = self._check(step.condition, instance, definition)
        target = step.on_true if result else step.on_false
        # Branching only applies to top-level steps.
        if target is None or nested:
            return _Outcome({"condition_result": result})
        logger.info(f"Condition {step.name} is {result}, branching to {target}")
        return _Outcome({"condition_result": result}, definition.step_index(target))

    async def _execute_parallel_step(
        self,
        step: ParallelStep,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
    ) -> Dict[str, List[Any]]:
        # Siblings run to completion even if one of them fails.
        results = await asyncio.gather(
            *(self._execute_nested(child, instance, definition) for child in step.steps),
            return_exceptions=True,
        )
        for child, result in zip(step.steps, results):
            if isinstance(result, BaseException):
                logger.error(f"Parallel branch {child.name} of {step.name} failed: {result}")
                raise result
        return {"parallel_results": list(results)}

    async def _execute_nested(
        self,
        step: Step,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
    ) -> Any:
        if isinstance(step, AgentStep) and step.condition is not None:
            if not self._check(step.condition, instance, definition):
                logger.info(f"Skipping parallel branch {step.name}: condition not met")
                return None
        outcome = await self._execute_step(step, instance, definition, nested=True)
        return outcome.result

    def _execute_transform_step(
        self, step: TransformStep, instance: WorkflowInstance
    ) -> Dict[str, Any]:
        snapshot = copy.deepcopy(instance.data)
        try:
            if callable(step.script):
                output = step.script(snapshot)
            else:
                output = {key: expr.evaluate(snapshot) for key, expr in step.script.items()}
        except Exception as exc:
            raise TransformError(f"Transform step {step.name} failed: {exc}") from exc

        if not isinstance(output, Mapping):
            raise TransformError(
                f"Transform step {step.name} returned {type(output).__name__}, expected a mapping"
            )
        return dict(output)

    def _check(
        self,
        condition: Expression,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
    ) -> bool:
        """Evaluate a condition, treating evaluation errors as false."""
        condition = definition.conditions.get(condition.source, condition)
        try:
            return condition.test(instance.data)
        except ConditionEvaluationError as exc:
            logger.error(f"Condition evaluation failed (instance: {instance.id}): {exc}")
            return False

    def _merge_result(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        result: Any,
    ) -> None:
        if not isinstance(result, Mapping):
            return
        merged = {**instance.data, **result}
        if definition.data_schema is not None:
            try:
                definition.data_schema.model_validate(merged)
            except ValidationError as exc:
                raise StepResultError(
                    f"Step result does not match {definition.data_schema.__name__}: {exc}"
                ) from exc
        instance.data = merged

    async def _handle_step_error(
        self,
        step: Step,
        index: int,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        exc: Exception,
    ) -> None:
        if instance.status is not InstanceStatus.RUNNING:
            logger.info(
                f"Ignoring failure of step {step.name}: instance {instance.id} is {instance.status.value}"
            )
            return

        instance.errors.append(
            ErrorEntry(
                step_index=index,
                step_name=step.name,
                error=str(exc),
                error_type=type(exc).__name__,
            )
        )
        policy = step.retry_policy or definition.retry_policy
        failures = instance.failures_at(index)

        if failures <= policy.max_retries:
            logger.warning(
                f"Step {step.name} failed, retrying ({failures}/{policy.max_retries}): {exc}"
            )
            await schedule_retry(failures, policy.delay_ms, policy.backoff)
            return

        if step.on_error == "continue":
            logger.warning(f"Step {step.name} failed, continuing: {exc}")
            instance.current_step_index = index + 1
            return

        instance.status = InstanceStatus.FAILED
        instance.context.end_time = utcnow()
        logger.error(f"Workflow failed: {instance.id} at step {step.name}: {exc}")
        if isinstance(exc, StepwiseError) and exc.instance_id is None:
            exc.instance_id = instance.id
        raise exc

    def _emit(self, event_name: str, payload: Dict[str, Any]) -> None:
        if self.bus is not None:
            self.bus.publish(event_name, payload, {"sender_id": ENGINE_SENDER_ID})

    # ------------------------------------------------------------------
    def get_instance_status(self, instance_id: str) -> Optional[WorkflowInstance]:
        """Return a snapshot of the instance, including history and errors."""
        instance = self._instances.get(instance_id)
        return instance.model_copy(deep=True) if instance is not None else None

    def stop_workflow(self, instance_id: str) -> bool:
        """Mark a running instance as stopped.

        An agent call already in flight is not interrupted; its result is
        discarded when it arrives.
        """
        instance = self._instances.get(instance_id)
        if instance is None or instance.is_terminal:
            return False
        self._mark_stopped(instance)
        return True

    def _mark_stopped(self, instance: WorkflowInstance) -> None:
        instance.status = InstanceStatus.STOPPED
        instance.context.end_time = utcnow()
        logger.info(f"Workflow stopped: {instance.id}")
        self._emit(
            WORKFLOW_STOPPED_EVENT,
            {"instance_id": instance.id, "workflow_id": instance.definition_id},
        )

    def remove_instance(self, instance_id: str) -> bool:
        instance = self._instances.get(instance_id)
        if instance is None or not instance.is_terminal:
            return False
        return self._instances.remove(instance_id)

    def prune_instances(self, max_age_ms: Optional[float] = None) -> int:
        """Forget terminal instances that ended more than ``max_age_ms`` ago."""
        max_age_ms = max_age_ms if max_age_ms is not None else self.instance_retention_ms
        cutoff = utcnow() - timedelta(milliseconds=max_age_ms)
        removed = self._instances.prune(cutoff)
        if removed:
            logger.info(f"Pruned {removed} finished workflow instances")
        return removed

    def get_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        return self._workflows.get(workflow_id)

    def get_workflows(self) -> List[WorkflowDefinition]:
        return list(self._workflows.values())

    def get_running_instances(self) -> List[WorkflowInstance]:
        return [
            instance.model_copy(deep=True)
            for instance in self._instances.list_instances(InstanceStatus.RUNNING)
        ]

    def get_metrics(self) -> Dict[str, Any]:
        counts = {status.value: 0 for status in InstanceStatus}
        for instance in self._instances.list_instances():
            counts[instance.status.value] += 1
        return {
            "total_workflows": len(self._workflows),
            "total_instances": sum(counts.values()),
            "running_instances": counts[InstanceStatus.RUNNING.value],
            "instances_by_status": counts,
            "registered_at": [
                {"id": workflow.id, "registered_at": workflow.created_at}
                for workflow in self._workflows.values()
            ],
        }

    def health_check(self) -> Dict[str, Any]:
        return {
            "status": "healthy" if self.bus is not None else "unhealthy",
            "registered": len(self._workflows),
            "running": len(self._instances.list_instances(InstanceStatus.RUNNING)),
        }
