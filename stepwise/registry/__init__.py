"""Agent registry for workflow steps."""

from __future__ import annotations

from .agents import AgentRegistry, InMemoryAgentRegistry
from .models import AgentDescriptor

__all__ = ["AgentDescriptor", "AgentRegistry", "InMemoryAgentRegistry"]
