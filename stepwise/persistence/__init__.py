"""Instance state storage for the workflow engine."""

from __future__ import annotations

from .inmemory import InMemoryInstanceRepository
from .repository import InstanceRepository

__all__ = ["InstanceRepository", "InMemoryInstanceRepository"]
