"""In-memory implementation of the instance repository."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, Optional

from ..models import InstanceStatus, WorkflowInstance
from .repository import InstanceRepository


class InMemoryInstanceRepository(InstanceRepository):
    """Store workflow instances in local memory.

    State is lost when the process exits. Terminal instances stay until
    :meth:`prune` or :meth:`remove` drops them.
    """

    def __init__(self) -> None:
        self._instances: Dict[str, WorkflowInstance] = {}

    def add(self, instance: WorkflowInstance) -> None:
        self._instances[instance.id] = instance

    def get(self, instance_id: str) -> WorkflowInstance | None:
        return self._instances.get(instance_id)

    def list_instances(self, status: Optional[InstanceStatus] = None) -> list[WorkflowInstance]:
        if status is None:
            return list(self._instances.values())
        return [i for i in self._instances.values() if i.status is status]

    def remove(self, instance_id: str) -> bool:
        return self._instances.pop(instance_id, None) is not None

    def prune(
        self,
        ended_before: datetime,
        statuses: Iterable[InstanceStatus] = (),
    ) -> int:
        statuses = set(statuses) or {
            InstanceStatus.COMPLETED,
            InstanceStatus.FAILED,
            InstanceStatus.STOPPED,
        }
        expired = [
            instance_id
            for instance_id, instance in self._instances.items()
            if instance.status in statuses
            and instance.context.end_time is not None
            and instance.context.end_time < ended_before
        ]
        for instance_id in expired:
            del self._instances[instance_id]
        return len(expired)

    def __len__(self) -> int:
        return len(self._instances)
