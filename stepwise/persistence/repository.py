"""Repository abstraction for workflow instance state."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional, Protocol

from ..models import InstanceStatus, WorkflowInstance


class InstanceRepository(Protocol):
    """Protocol for workflow instance stores."""

    def add(self, instance: WorkflowInstance) -> None:
        """Store a newly created instance."""

    def get(self, instance_id: str) -> WorkflowInstance | None:
        """Return the live instance or ``None``."""

    def list_instances(self, status: Optional[InstanceStatus] = None) -> list[WorkflowInstance]:
        """Return all instances, optionally filtered by status."""

    def remove(self, instance_id: str) -> bool:
        """Forget an instance."""

    def prune(
        self,
        ended_before: datetime,
        statuses: Iterable[InstanceStatus] = (),
    ) -> int:
        """Drop terminal instances that ended before ``ended_before``."""
