"""Agent registry used to serve ``agent.request`` events."""

from __future__ import annotations

import inspect
import logging
from collections.abc import Mapping
from typing import Any, Dict, Optional, Protocol

from ..errors import ActionFailed, AgentNotFound
from .models import AgentDescriptor

logger = logging.getLogger(__name__)


class AgentRegistry(Protocol):
    """Capability to run ``action`` of the agent called ``agent_name``.

    Implementations raise :class:`AgentNotFound` for unknown agents and
    :class:`ActionFailed` when the action is missing or fails. ``invoke`` may
    be a coroutine function or return the result directly.
    """

    def invoke(self, agent_name: str, action: str, params: Dict[str, Any]) -> Any:
        """Run the action and return its result."""


def _public_actions(agent: Any) -> list[str]:
    if isinstance(agent, Mapping):
        return [name for name, value in agent.items() if callable(value)]
    return [
        name
        for name in dir(agent)
        if not name.startswith("_") and callable(getattr(agent, name, None))
    ]


class InMemoryAgentRegistry(AgentRegistry):
    """Keeps agent objects by name.

    An agent is any object whose public methods are its actions, or a mapping
    of action names to callables. Actions receive the request params as a
    single dict and may be sync or async.
    """

    def __init__(self, agents: Optional[Mapping[str, Any]] = None) -> None:
        self._agents: Dict[str, Any] = {}
        for name, agent in (agents or {}).items():
            self.register(agent, name=name)

    def register(self, agent: Any, name: Optional[str] = None) -> AgentDescriptor:
        """Add ``agent`` under ``name`` (defaults to its ``name`` attribute)."""
        name = name or getattr(agent, "name", None) or type(agent).__name__
        if name in self._agents:
            raise ValueError(f"Agent {name} is already registered")
        self._agents[name] = agent
        logger.info(f"Registered agent: {name}")
        return self.describe(name)

    def unregister(self, name: str) -> bool:
        removed = self._agents.pop(name, None) is not None
        if removed:
            logger.info(f"Unregistered agent: {name}")
        return removed

    def get(self, name: str) -> Any:
        return self._agents.get(name)

    def describe(self, name: str) -> AgentDescriptor:
        agent = self._agents.get(name)
        if agent is None:
            raise AgentNotFound(f"Agent not found: {name}")
        return AgentDescriptor(
            name=name,
            description=inspect.getdoc(agent) if not isinstance(agent, Mapping) else None,
            version=getattr(agent, "version", None),
            actions=_public_actions(agent),
        )

    def list_agents(self) -> list[AgentDescriptor]:
        return [self.describe(name) for name in self._agents]

    async def invoke(self, agent_name: str, action: str, params: Dict[str, Any]) -> Any:
        agent = self._agents.get(agent_name)
        if agent is None:
            raise AgentNotFound(f"Agent not found: {agent_name}")

        if isinstance(agent, Mapping):
            method = agent.get(action)
        elif action.startswith("_"):
            method = None
        else:
            method = getattr(agent, action, None)
        if method is None or not callable(method):
            raise ActionFailed(f"Agent {agent_name} has no action {action}")

        try:
            result = method(params)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            raise ActionFailed(f"{agent_name}.{action} failed: {exc}") from exc
        return result

    def __contains__(self, name: object) -> bool:
        return name in self._agents

    def __len__(self) -> int:
        return len(self._agents)
