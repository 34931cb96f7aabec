"""Test fixtures providing fake agents for workflow tests."""

import asyncio

from stepwise.bus import EventBus
from stepwise.contracts import AGENT_REQUEST_EVENT
from stepwise.registry import InMemoryAgentRegistry

PROFILE = {
    "interests": {"primary": [{"interest": "AI", "weight": 0.8}]},
    "platform_usage": {
        "weibo": {"engagement_rate": 0.12},
        "zhihu": {"engagement_rate": 0.3},
    },
    "activity_time": {"peak_hours": [20, 21, 22]},
    "engagement_level": {"level": "high"},
    "content_preference": {"favorite_platform": "zhihu"},
}


class HotTopicsAgent:
    """Returns a fixed list of trending topics."""

    name = "hot_topics"

    def __init__(self):
        self.calls = []

    def get_hot_topics(self, params):
        self.calls.append(params)
        return {
            "topics": [
                {"title": "Football final tonight", "keywords": ["football"]},
                {"title": "AI tools for writers", "keywords": ["ai", "writing"]},
            ]
        }


class UserBehaviorAgent:
    name = "user_behavior"

    def collect_behavior_data(self, params):
        return {"behavior": {"user_id": params.get("user_id"), "views": 42}}

    def analyze_patterns(self, params):
        return {"patterns": {"views_per_day": params["behavior"]["views"] / 7}}

    async def analyze(self, params):
        await asyncio.sleep(0)
        return {"profile": PROFILE, "interests": [{"keyword": "AI"}]}


class ContentAnalysisAgent:
    name = "content_analysis"

    def __init__(self, fail_monitoring=False):
        self.fail_monitoring = fail_monitoring

    def analyze_topics(self, params):
        return {"analysis": {"topic_count": len(params.get("topics", []))}}

    def generate_recommendations(self, params):
        return {"recommendations": ["post more in the evening"]}

    def monitor_performance(self, params):
        if self.fail_monitoring:
            raise RuntimeError("metrics service unavailable")
        return {"performance": {"views": 100}}


class ContentManagementAgent:
    name = "content_management"

    def create_content(self, params):
        return {"content": {"title": "Draft", "topic_count": params["analysis"]["topic_count"]}}

    def prepare_for_publish(self, params):
        return {"prepared": params.get("content_id")}

    def search(self, params):
        return {"search_results": {"contents": [{"id": "c1"}, {"id": "c2"}]}}


class PublishSchedulerAgent:
    name = "publish_scheduler"

    def __init__(self):
        self.published = []

    def schedule_publish(self, params):
        return {"scheduled": True, "schedule_type": params.get("schedule_type")}

    async def publish_to_weibo(self, params):
        self.published.append("weibo")
        return {"platform": "weibo", "post_id": "w-1"}

    async def publish_to_zhihu(self, params):
        self.published.append("zhihu")
        return {"platform": "zhihu", "post_id": "z-1"}


def build_platform_registry(fail_monitoring=False):
    """Registry serving every agent used by the built-in workflows."""
    registry = InMemoryAgentRegistry()
    registry.register(HotTopicsAgent())
    registry.register(UserBehaviorAgent())
    registry.register(ContentAnalysisAgent(fail_monitoring=fail_monitoring))
    registry.register(ContentManagementAgent())
    registry.register(PublishSchedulerAgent())
    return registry


platform_registry = build_platform_registry()


def serve_registry(bus: EventBus, registry: InMemoryAgentRegistry) -> str:
    """Answer ``agent.request`` events on ``bus`` from ``registry``."""

    async def _handle(payload):
        try:
            result = await registry.invoke(
                payload["agent"], payload["action"], payload["params"]
            )
        except Exception as exc:
            bus.respond(payload["response_event"], error=exc)
            return
        bus.respond(payload["response_event"], result)

    return bus.subscribe(AGENT_REQUEST_EVENT, _handle, {"agent_id": "test_responder"})
