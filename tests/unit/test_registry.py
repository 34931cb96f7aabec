"""Tests for the in-memory agent registry."""

import pytest

from stepwise.errors import ActionFailed, AgentNotFound
from stepwise.registry import AgentDescriptor, InMemoryAgentRegistry
from tests.fixtures.agents import HotTopicsAgent, UserBehaviorAgent


def test_register_uses_agent_name():
    registry = InMemoryAgentRegistry()
    descriptor = registry.register(HotTopicsAgent())

    assert isinstance(descriptor, AgentDescriptor)
    assert descriptor.name == "hot_topics"
    assert descriptor.actions == ["get_hot_topics"]
    assert descriptor.description == "Returns a fixed list of trending topics."
    assert "hot_topics" in registry
    assert len(registry) == 1


def test_duplicate_registration_is_rejected():
    registry = InMemoryAgentRegistry()
    registry.register(HotTopicsAgent())
    with pytest.raises(ValueError):
        registry.register(HotTopicsAgent())


def test_unregister_and_list():
    registry = InMemoryAgentRegistry({"behavior": UserBehaviorAgent()})
    registry.register(HotTopicsAgent())

    assert [d.name for d in registry.list_agents()] == ["behavior", "hot_topics"]
    assert registry.unregister("behavior") is True
    assert registry.unregister("behavior") is False
    assert registry.get("behavior") is None
    with pytest.raises(AgentNotFound):
        registry.describe("behavior")


@pytest.mark.asyncio
async def test_invoke_sync_and_async_actions():
    registry = InMemoryAgentRegistry()
    agent = HotTopicsAgent()
    registry.register(agent)
    registry.register(UserBehaviorAgent())

    topics = await registry.invoke("hot_topics", "get_hot_topics", {"limit": 3})
    profile = await registry.invoke("user_behavior", "analyze", {})

    assert len(topics["topics"]) == 2
    assert agent.calls == [{"limit": 3}]
    assert profile["interests"] == [{"keyword": "AI"}]


@pytest.mark.asyncio
async def test_invoke_mapping_agent():
    async def shout(params):
        return {"text": params["text"].upper()}

    registry = InMemoryAgentRegistry({"shouter": {"shout": shout}})

    assert await registry.invoke("shouter", "shout", {"text": "hi"}) == {"text": "HI"}
    assert registry.describe("shouter").actions == ["shout"]


@pytest.mark.asyncio
async def test_invoke_errors():
    registry = InMemoryAgentRegistry()
    registry.register(HotTopicsAgent())
    registry.register(UserBehaviorAgent())

    with pytest.raises(AgentNotFound):
        await registry.invoke("ghost", "anything", {})
    with pytest.raises(ActionFailed, match="has no action"):
        await registry.invoke("hot_topics", "missing", {})
    with pytest.raises(ActionFailed, match="has no action"):
        await registry.invoke("hot_topics", "__init__", {})
    with pytest.raises(ActionFailed) as exc_info:
        await registry.invoke("user_behavior", "collect_behavior_data", None)
    assert isinstance(exc_info.value.__cause__, AttributeError)
