from datetime import timedelta

from stepwise.contracts import utcnow
from stepwise.models import InstanceStatus, WorkflowInstance
from stepwise.persistence import InMemoryInstanceRepository


def _instance(instance_id, status, ended_minutes_ago=None):
    instance = WorkflowInstance(id=instance_id, definition_id="demo", status=status)
    if ended_minutes_ago is not None:
        instance.context.end_time = utcnow() - timedelta(minutes=ended_minutes_ago)
    return instance


def test_add_get_list_remove():
    repo = InMemoryInstanceRepository()
    repo.add(_instance("a", InstanceStatus.RUNNING))
    repo.add(_instance("b", InstanceStatus.COMPLETED, ended_minutes_ago=1))

    assert repo.get("a").id == "a"
    assert repo.get("missing") is None
    assert [i.id for i in repo.list_instances()] == ["a", "b"]
    assert [i.id for i in repo.list_instances(InstanceStatus.RUNNING)] == ["a"]
    assert repo.remove("a") is True
    assert repo.remove("a") is False
    assert len(repo) == 1


def test_prune_only_drops_old_terminal_instances():
    repo = InMemoryInstanceRepository()
    repo.add(_instance("running", InstanceStatus.RUNNING))
    repo.add(_instance("old-done", InstanceStatus.COMPLETED, ended_minutes_ago=120))
    repo.add(_instance("old-failed", InstanceStatus.FAILED, ended_minutes_ago=90))
    repo.add(_instance("recent", InstanceStatus.STOPPED, ended_minutes_ago=1))

    cutoff = utcnow() - timedelta(minutes=60)
    assert repo.prune(cutoff, statuses=[InstanceStatus.FAILED]) == 1
    assert repo.prune(cutoff) == 1
    assert sorted(i.id for i in repo.list_instances()) == ["recent", "running"]
