"""End-to-end tests running the built-in workflows through the manager."""

import pytest

from stepwise import WorkflowManager
from stepwise.config import EngineConfig, RetryConfig, StepwiseConfig
from stepwise.errors import ActionFailed, AgentNotFound, DefinitionNotFound
from stepwise.models import InstanceStatus
from stepwise.registry import InMemoryAgentRegistry
from tests.fixtures.agents import build_platform_registry

FAST_CONFIG = StepwiseConfig(
    engine=EngineConfig(default_timeout_ms=1000, retry=RetryConfig(max_retries=0, delay_ms=0))
)


@pytest.mark.asyncio
async def test_trending_content_workflow():
    async with WorkflowManager(build_platform_registry(), FAST_CONFIG) as manager:
        instance_id = await manager.start_trending_content_workflow("user-1")
        instance = manager.get_workflow_status(instance_id)

    assert instance.status is InstanceStatus.COMPLETED
    assert instance.context.initiator == "user-1"
    assert instance.data["recommended_topic"]["title"] == "AI tools for writers"
    suggestions = instance.data["content_suggestions"]
    assert [idea["type"] for idea in suggestions["content_ideas"]] == [
        "interest-based",
        "trending-based",
    ]
    assert suggestions["recommended_platforms"][0]["platform"] == "zhihu"
    assert suggestions["optimal_timing"] == [20, 21]
    assert instance.data["analysis_complete"] is True


@pytest.mark.asyncio
async def test_user_analysis_workflow():
    async with WorkflowManager(build_platform_registry(), FAST_CONFIG) as manager:
        instance_id = await manager.start_user_analysis_workflow("user-2")
        instance = manager.get_workflow_status(instance_id)

    report = instance.data["analysis_report"]
    assert report["user_id"] == "user-2"
    assert report["content_recommendations"]["available_content"] == 2
    assert report["user_profile"]["engagement_level"] == "high"


@pytest.mark.asyncio
async def test_content_creation_and_behavior_workflows():
    async with WorkflowManager(build_platform_registry(), FAST_CONFIG) as manager:
        creation = manager.get_workflow_status(
            await manager.start_content_creation_workflow({"author": "me"})
        )
        behavior = manager.get_workflow_status(
            await manager.start_user_behavior_analysis_workflow("user-3")
        )

    assert creation.data["content"] == {"title": "Draft", "topic_count": 2}
    assert creation.data["scheduled"] is True
    assert creation.data["schedule_type"] == "optimal"
    assert behavior.data["patterns"] == {"views_per_day": 6.0}
    assert behavior.data["recommendations"] == ["post more in the evening"]


@pytest.mark.asyncio
async def test_publishing_only_targets_requested_platforms():
    registry = build_platform_registry()
    async with WorkflowManager(registry, FAST_CONFIG) as manager:
        instance_id = await manager.start_content_publishing_workflow("c-1", ["weibo"])
        instance = manager.get_workflow_status(instance_id)

    assert registry.get("publish_scheduler").published == ["weibo"]
    assert instance.data["prepared"] == "c-1"
    assert instance.data["parallel_results"] == [
        {"platform": "weibo", "post_id": "w-1"},
        None,
    ]


@pytest.mark.asyncio
async def test_publishing_continues_when_monitoring_fails():
    async with WorkflowManager(build_platform_registry(fail_monitoring=True), FAST_CONFIG) as manager:
        instance_id = await manager.start_content_publishing_workflow("c-2")
        instance = manager.get_workflow_status(instance_id)

    assert instance.status is InstanceStatus.COMPLETED
    assert [error.step_name for error in instance.errors] == ["monitor-performance"]
    assert len(instance.data["parallel_results"]) == 2


@pytest.mark.asyncio
async def test_failure_publishes_workflow_failed_event():
    async with WorkflowManager(InMemoryAgentRegistry(), FAST_CONFIG) as manager:
        with pytest.raises(AgentNotFound) as exc_info:
            await manager.start_user_analysis_workflow("user-4")

        instance = manager.get_workflow_status(exc_info.value.instance_id)
        assert instance.status is InstanceStatus.FAILED

        [failed] = manager.get_event_history(event_name="workflow.failed")
        assert failed.payload["instance_id"] == instance.id
        assert failed.payload["workflow_id"] == "user-analysis"
        assert failed.payload["error_type"] == "AgentNotFound"

        responses = manager.get_event_history(event_name="agent.response")
        assert responses[0].payload["error_type"] == "AgentNotFound"


@pytest.mark.asyncio
async def test_custom_workflow_with_mapping_agent():
    def explode(params):
        raise RuntimeError("kaboom")

    registry = InMemoryAgentRegistry({"bomb": {"explode": explode}})
    async with WorkflowManager(registry, FAST_CONFIG, register_builtins=False) as manager:
        assert manager.get_workflows() == []
        manager.register_workflow("boom", {
            "name": "Boom",
            "steps": [{"type": "agent", "name": "go", "agent_name": "bomb", "action": "explode"}],
        })
        with pytest.raises(ActionFailed, match="kaboom"):
            await manager.start_workflow("boom")
        with pytest.raises(DefinitionNotFound):
            await manager.start_workflow("unknown")
        assert manager.get_event_history(event_name="workflow.failed")[0].payload["workflow_id"] == "boom"


@pytest.mark.asyncio
async def test_manager_lifecycle_and_status():
    manager = WorkflowManager(build_platform_registry(), FAST_CONFIG)
    assert manager.health_check()["status"] == "unhealthy"
    with pytest.raises(RuntimeError):
        await manager.start_workflow("user-analysis", {"user_id": "x"})

    manager.start()
    try:
        await manager.start_user_analysis_workflow("user-5")

        health = manager.health_check()
        assert health["status"] == "healthy"
        assert health["components"]["workflow_engine"]["registered"] == 5

        status = manager.get_status()
        assert status["workflows"]["total_workflows"] == 5
        assert status["workflows"]["instances_by_status"]["completed"] == 1
        assert status["events"]["published_total"] > 0

        stats = manager.get_event_stats()
        assert stats["events_by_name"]["workflow.completed"] == 1
        assert stats["events_by_name"]["agent.request"] == 2
        assert manager.get_running_instances() == []
        assert manager.stop_workflow("unknown") is False

        assert manager.cleanup() == {"events": 0, "instances": 0}
    finally:
        await manager.stop()

    assert not manager.started
    assert manager.get_event_stats()["total_subscribers"] == 0
