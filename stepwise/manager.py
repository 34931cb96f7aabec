"""Composition root wiring the event bus, engine and agent registry."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .bus import EventBus
from .catalogue import (
    CONTENT_CREATION,
    CONTENT_PUBLISHING,
    TRENDING_CONTENT,
    USER_ANALYSIS,
    USER_BEHAVIOR_ANALYSIS,
    register_builtin_workflows,
)
from .config import StepwiseConfig
from .contracts import (
    AGENT_REQUEST_EVENT,
    AGENT_RESPONSE_EVENT,
    ERROR_EVENT,
    AgentRequest,
    AgentResponse,
    EventRecord,
    utcnow,
)
from .engine import WORKFLOW_COMPLETED_EVENT, WorkflowEngine
from .models import WorkflowDefinition, WorkflowInstance
from .registry import AgentRegistry, InMemoryAgentRegistry

logger = logging.getLogger(__name__)

WORKFLOW_FAILED_EVENT = "workflow.failed"
MANAGER_ID = "workflow_manager"


class WorkflowManager:
    """Owns one event bus and one engine and serves agent requests.

    Construct it at application start, call :meth:`start` (or use it as an
    async context manager) and pass it to whatever needs to run workflows.
    """

    def __init__(
        self,
        registry: Optional[AgentRegistry] = None,
        config: Optional[StepwiseConfig] = None,
        *,
        register_builtins: bool = True,
    ) -> None:
        self.config = config or StepwiseConfig()
        self.bus = EventBus(self.config.bus)
        self.engine = WorkflowEngine(self.bus, self.config.engine)
        self.registry = registry if registry is not None else InMemoryAgentRegistry()
        self.register_builtins = register_builtins
        self._subscriptions: List[str] = []
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> WorkflowManager:
        """Register built-in workflows and subscribe the manager's handlers."""
        if self._started:
            return self
        if self.register_builtins:
            register_builtin_workflows(self.engine)

        metadata = {"agent_id": MANAGER_ID}
        self._subscriptions = [
            self.bus.subscribe(AGENT_REQUEST_EVENT, self._handle_agent_request, metadata),
            self.bus.subscribe(WORKFLOW_COMPLETED_EVENT, self._on_workflow_completed, metadata),
            self.bus.subscribe(WORKFLOW_FAILED_EVENT, self._on_workflow_failed, metadata),
            self.bus.subscribe(ERROR_EVENT, self._on_error, metadata),
        ]
        self._started = True
        logger.info("Workflow manager started")
        return self

    async def stop(self) -> None:
        """Unsubscribe handlers and cancel agent calls still in flight."""
        if not self._started:
            return
        for subscription_id in self._subscriptions:
            self.bus.unsubscribe(subscription_id)
        self._subscriptions = []
        await self.bus.close()
        self._started = False
        logger.info("Workflow manager stopped")

    async def __aenter__(self) -> WorkflowManager:
        return self.start()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    async def _handle_agent_request(self, payload: Dict[str, Any]) -> None:
        request = AgentRequest.model_validate(payload)
        logger.debug(
            f"Agent request {request.agent}.{request.action} "
            f"(instance: {request.instance_id}, step: {request.step_name})"
        )
        try:
            result = self.registry.invoke(request.agent, request.action, request.params)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            logger.warning(
                f"Agent {request.agent}.{request.action} failed for "
                f"{request.instance_id}/{request.step_name}: {exc}"
            )
            self._reply(request, error=exc)
            return
        self._reply(request, result=result)

    def _reply(
        self,
        request: AgentRequest,
        result: Any = None,
        error: Optional[BaseException] = None,
    ) -> None:
        metadata = {"sender_id": MANAGER_ID, "correlation_id": request.correlation_id}
        if request.response_event:
            self.bus.respond(request.response_event, result, error, dict(metadata))
        response = AgentResponse(
            instance_id=request.instance_id,
            step_name=request.step_name,
            result=result,
            error=str(error) if error is not None else None,
            error_type=type(error).__name__ if error is not None else None,
        )
        self.bus.publish(AGENT_RESPONSE_EVENT, response.model_dump(), dict(metadata))

    def _on_workflow_completed(self, payload: Dict[str, Any]) -> None:
        logger.info(
            f"Workflow completed: {payload.get('workflow_id')} ({payload.get('instance_id')}) "
            f"in {payload.get('duration_ms')}ms"
        )

    def _on_workflow_failed(self, payload: Dict[str, Any]) -> None:
        logger.error(
            f"Workflow failed: {payload.get('workflow_id')} ({payload.get('instance_id')}): "
            f"{payload.get('error')}"
        )

    def _on_error(self, payload: Dict[str, Any]) -> None:
        logger.error(
            f"Event handler error on {payload.get('event_name')}: {payload.get('error')}"
        )

    def _ensure_started(self) -> None:
        if not self._started:
            raise RuntimeError("WorkflowManager is not started")

    # ------------------------------------------------------------------
    def register_workflow(
        self, workflow_id: str, definition: WorkflowDefinition | Mapping[str, Any]
    ) -> WorkflowDefinition:
        return self.engine.register_workflow(workflow_id, definition)

    async def start_workflow(
        self,
        workflow_id: str,
        data: Optional[Mapping[str, Any]] = None,
        **options: Any,
    ) -> str:
        """Run ``workflow_id`` to completion and return the instance id.

        On failure a ``workflow.failed`` event is published before the error
        is re-raised; the failed instance stays available through
        :meth:`get_workflow_status`.
        """
        self._ensure_started()
        try:
            return await self.engine.start_workflow(workflow_id, data, **options)
        except Exception as exc:
            instance_id = getattr(exc, "instance_id", None)
            if instance_id is not None:
                self.bus.publish(
                    WORKFLOW_FAILED_EVENT,
                    {
                        "instance_id": instance_id,
                        "workflow_id": workflow_id,
                        "error": str(exc),
                        "error_type": type(exc).__name__,
                    },
                    {"sender_id": MANAGER_ID},
                )
            raise

    async def start_content_creation_workflow(
        self, params: Optional[Mapping[str, Any]] = None, **options: Any
    ) -> str:
        return await self.start_workflow(CONTENT_CREATION, params, **options)

    async def start_user_behavior_analysis_workflow(
        self, user_id: str, **options: Any
    ) -> str:
        options.setdefault("initiator", user_id)
        return await self.start_workflow(
            USER_BEHAVIOR_ANALYSIS, {"user_id": user_id}, **options
        )

    async def start_content_publishing_workflow(
        self, content_id: str, platforms: Sequence[str] = (), **options: Any
    ) -> str:
        return await self.start_workflow(
            CONTENT_PUBLISHING,
            {"content_id": content_id, "platforms": list(platforms)},
            **options,
        )

    async def start_trending_content_workflow(
        self, user_id: str, platforms: Sequence[str] = (), **options: Any
    ) -> str:
        options.setdefault("initiator", user_id)
        data: Dict[str, Any] = {"user_id": user_id}
        if platforms:
            data["platforms"] = list(platforms)
        return await self.start_workflow(TRENDING_CONTENT, data, **options)

    async def start_user_analysis_workflow(self, user_id: str, **options: Any) -> str:
        options.setdefault("initiator", user_id)
        return await self.start_workflow(USER_ANALYSIS, {"user_id": user_id}, **options)

    # ------------------------------------------------------------------
    def get_workflow_status(self, instance_id: str) -> Optional[WorkflowInstance]:
        return self.engine.get_instance_status(instance_id)

    def stop_workflow(self, instance_id: str) -> bool:
        return self.engine.stop_workflow(instance_id)

    def get_workflows(self) -> List[WorkflowDefinition]:
        return self.engine.get_workflows()

    def get_running_instances(self) -> List[WorkflowInstance]:
        return self.engine.get_running_instances()

    def get_event_stats(self) -> Dict[str, Any]:
        return self.bus.get_event_stats()

    def get_event_history(self, **filters: Any) -> List[EventRecord]:
        return self.bus.get_event_history(**filters)

    def get_status(self) -> Dict[str, Any]:
        return {
            "workflows": self.engine.get_metrics(),
            "events": self.bus.get_metrics(),
            "timestamp": utcnow().isoformat(),
        }

    def health_check(self) -> Dict[str, Any]:
        """Aggregate engine and bus health."""
        engine_health = self.engine.health_check()
        bus_health = self.bus.health_check()
        healthy = (
            self._started
            and engine_health["status"] == "healthy"
            and bus_health["status"] == "healthy"
        )
        return {
            "status": "healthy" if healthy else "unhealthy",
            "started": self._started,
            "timestamp": utcnow().isoformat(),
            "components": {
                "workflow_engine": engine_health,
                "event_bus": bus_health,
            },
        }

    def cleanup(self, max_event_age_ms: Optional[float] = None) -> Dict[str, int]:
        """Prune old event history and finished instances."""
        removed_events = self.bus.cleanup_history(max_event_age_ms)
        removed_instances = self.engine.prune_instances()
        logger.info(
            f"Workflow manager cleanup removed {removed_events} events "
            f"and {removed_instances} instances"
        )
        return {"events": removed_events, "instances": removed_instances}
