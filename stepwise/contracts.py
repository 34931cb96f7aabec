"""Message contracts carried over the event bus."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

AGENT_REQUEST_EVENT = "agent.request"
AGENT_RESPONSE_EVENT = "agent.response"
ERROR_EVENT = "error"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: Optional[str] = None) -> str:
    token = uuid.uuid4().hex
    return f"{prefix}_{token}" if prefix else token


class EventMetadata(BaseModel):
    """Envelope metadata attached to every published event."""

    event_id: str = Field(default_factory=new_id)
    timestamp: datetime = Field(default_factory=utcnow)
    correlation_id: Optional[str] = None
    sender_id: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class EventRecord(BaseModel):
    """A published event as kept in the bus history."""

    name: str
    payload: Any = None
    metadata: EventMetadata = Field(default_factory=EventMetadata)

    model_config = ConfigDict(frozen=True)

    @property
    def event_id(self) -> str:
        return self.metadata.event_id


class Subscription(BaseModel):
    """A handler registered for one event name."""

    id: str
    event_name: str
    handler: Callable[..., Any]
    metadata: Dict[str, Any] = Field(default_factory=dict)
    subscribed_at: datetime = Field(default_factory=utcnow)

    @property
    def agent_id(self) -> Optional[str]:
        return self.metadata.get("agent_id")


class AgentRequest(BaseModel):
    """Payload of an ``agent.request`` event published by the engine."""

    instance_id: str
    step_name: str
    agent: str
    action: str
    params: Dict[str, Any] = Field(default_factory=dict)
    correlation_id: Optional[str] = None
    response_event: Optional[str] = None


class AgentResponse(BaseModel):
    """Observational ``agent.response`` payload published by the manager."""

    instance_id: str
    step_name: str
    result: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None


class ResponsePayload(BaseModel):
    """Body published on a request's correlated response event."""

    result: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


__all__ = [
    "AGENT_REQUEST_EVENT",
    "AGENT_RESPONSE_EVENT",
    "ERROR_EVENT",
    "EventMetadata",
    "EventRecord",
    "Subscription",
    "AgentRequest",
    "AgentResponse",
    "ResponsePayload",
    "new_id",
    "utcnow",
]
