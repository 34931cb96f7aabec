"""Pydantic models describing registered agents."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field


class AgentDescriptor(BaseModel):
    """Metadata describing an agent available to workflow steps."""

    name: str
    description: Optional[str] = None
    version: Optional[str] = None
    actions: List[str] = Field(default_factory=list)
