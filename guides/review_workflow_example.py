"""Custom review workflow example using stepwise."""

import asyncio

from stepwise import InMemoryAgentRegistry, WorkflowManager


class ReviewAgent:
    """Scores a draft and suggests a title."""

    name = "reviewer"

    async def score(self, params):
        await asyncio.sleep(0.1)
        return {"score": min(len(params["draft"]) / 100, 1.0)}

    def suggest_title(self, params):
        return {"title": params["draft"].split(".")[0][:40]}


class PublisherAgent:
    name = "publisher"

    def publish(self, params):
        print(f"Publishing '{params['title']}' (score {params['score']:.2f})")
        return {"published": True}

    def request_rewrite(self, params):
        print("Draft sent back to the author")
        return {"published": False}


REVIEW_WORKFLOW = {
    "name": "Draft review",
    "steps": [
        {
            "type": "parallel",
            "name": "review",
            "steps": [
                {"type": "agent", "name": "score", "agent": "reviewer", "action": "score"},
                {"type": "agent", "name": "title", "agent": "reviewer", "action": "suggest_title"},
            ],
        },
        {
            "type": "transform",
            "name": "collect",
            "script": {"score": "parallel_results[0].score", "title": "parallel_results[1].title"},
        },
        {
            "type": "agent",
            "name": "publish",
            "agent": "publisher",
            "action": "publish",
            "condition": "score >= 0.5",
        },
        {
            "type": "agent",
            "name": "rewrite",
            "agent": "publisher",
            "action": "request_rewrite",
            "condition": "score < 0.5",
        },
    ],
}


async def main():
    registry = InMemoryAgentRegistry()
    registry.register(ReviewAgent())
    registry.register(PublisherAgent())

    async with WorkflowManager(registry, register_builtins=False) as manager:
        manager.register_workflow("draft-review", REVIEW_WORKFLOW)
        draft = "Stepwise runs workflows in process. " * 4
        instance_id = await manager.start_workflow("draft-review", {"draft": draft})
        instance = manager.get_workflow_status(instance_id)
        print(f"Instance {instance.id}: {instance.status.value}")
        print(f"Steps: {[entry.step_name for entry in instance.history]}")


if __name__ == "__main__":
    asyncio.run(main())
