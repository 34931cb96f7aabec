"""Built-in workflow definitions of the content platform.

The step lists are application policy; the agents they name live outside
this package and are reached through the agent registry.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Mapping

if TYPE_CHECKING:
    from .engine import WorkflowEngine

logger = logging.getLogger(__name__)

CONTENT_CREATION = "content-creation"
USER_BEHAVIOR_ANALYSIS = "user-behavior-analysis"
CONTENT_PUBLISHING = "content-publishing"
TRENDING_CONTENT = "trending-content"
USER_ANALYSIS = "user-analysis"


def _top_platforms(platform_usage: Mapping[str, Any], limit: int = 3) -> List[tuple]:
    ranked = sorted(
        platform_usage.items(),
        key=lambda item: (item[1] or {}).get("engagement_rate", 0),
        reverse=True,
    )
    return ranked[:limit]


def match_hot_topics(context: Dict[str, Any]) -> Dict[str, Any]:
    """Pick the hot topics whose title mentions one of the user's interests."""
    topics = context.get("topics") or []
    interests = context.get("interests") or []
    keywords = [i.get("keyword") for i in interests if i.get("keyword")]

    matches = [
        topic
        for topic in topics
        if topic.get("title") and any(k in topic["title"] for k in keywords)
    ]
    recommended = matches[0] if matches else (topics[0] if topics else None)
    return {"matched_topics": matches, "recommended_topic": recommended}


def build_content_suggestions(context: Dict[str, Any]) -> Dict[str, Any]:
    """Combine the user profile and the recommended topic into content ideas."""
    profile = context.get("profile") or {}
    interests = (profile.get("interests") or {}).get("primary") or []
    recommended = context.get("recommended_topic")

    ideas = [
        {
            "type": "interest-based",
            "title": f"Content ideas about {interest.get('interest')}",
            "description": f"Based on your interest in {interest.get('interest')} (weight {interest.get('weight')})",
            "keywords": [interest.get("interest")],
            "priority": interest.get("weight"),
        }
        for interest in interests
    ]
    if recommended:
        ideas.append(
            {
                "type": "trending-based",
                "title": f"Trending: {recommended.get('title') or 'current hot topic'}",
                "description": "Content idea based on what is trending right now",
                "keywords": recommended.get("keywords") or ["trending"],
                "priority": 0.9,
            }
        )

    platforms = [
        {
            "platform": platform,
            "engagement_rate": stats.get("engagement_rate"),
            "reason": f"High engagement ({round((stats.get('engagement_rate') or 0) * 100)}%)",
        }
        for platform, stats in _top_platforms(profile.get("platform_usage") or {})
    ]
    peak_hours = (profile.get("activity_time") or {}).get("peak_hours") or []
    favourite = (profile.get("content_preference") or {}).get("favorite_platform")
    topic = interests[0].get("interest") if interests else "related"

    return {
        "content_suggestions": {
            "content_ideas": ideas,
            "recommended_platforms": platforms,
            "optimal_timing": peak_hours[:2],
            "summary": f"Create {topic} content and publish on {favourite or 'the recommended platforms'}",
        },
        "analysis_complete": True,
    }


def build_user_report(context: Dict[str, Any]) -> Dict[str, Any]:
    """Summarise a behaviour profile and matching content into a report."""
    profile = context.get("profile") or {}
    search = context.get("search_results") or {}
    interests = (profile.get("interests") or {}).get("primary") or []
    peak_hours = (profile.get("activity_time") or {}).get("peak_hours") or []
    engagement = (profile.get("engagement_level") or {}).get("level", "unknown")
    favourite = (profile.get("content_preference") or {}).get("favorite_platform")

    report = {
        "user_id": context.get("user_id"),
        "analysis_date": datetime.now(timezone.utc).isoformat(),
        "user_profile": {
            "interests": interests,
            "activity_pattern": peak_hours,
            "engagement_level": engagement,
            "preferred_platforms": [
                {
                    "platform": platform,
                    "engagement_rate": round((stats.get("engagement_rate") or 0) * 100),
                }
                for platform, stats in _top_platforms(profile.get("platform_usage") or {})
            ],
        },
        "content_recommendations": {
            "available_content": len(search.get("contents") or []),
            "recommended_topics": [i.get("interest") for i in interests],
            "optimal_timing": peak_hours[:2],
        },
        "summary": (
            f"Found {len(interests)} main interests; "
            f"publish on {favourite or 'the recommended platforms'}"
        ),
    }
    return {"analysis_report": report, "analysis_complete": True}


BUILTIN_WORKFLOWS: Dict[str, Dict[str, Any]] = {
    CONTENT_CREATION: {
        "name": "Content creation",
        "description": "From collecting inspiration to scheduling the finished content",
        "steps": [
            {
                "type": "agent",
                "name": "collect-inspiration",
                "agent_name": "hot_topics",
                "action": "get_hot_topics",
                "parameters": {"sources": ["weibo", "zhihu", "v2ex"]},
            },
            {
                "type": "agent",
                "name": "analyze-content",
                "agent_name": "content_analysis",
                "action": "analyze_topics",
            },
            {
                "type": "agent",
                "name": "create-content",
                "agent_name": "content_management",
                "action": "create_content",
            },
            {
                "type": "agent",
                "name": "schedule-publish",
                "agent_name": "publish_scheduler",
                "action": "schedule_publish",
                "parameters": {"schedule_type": "optimal"},
            },
        ],
    },
    USER_BEHAVIOR_ANALYSIS: {
        "name": "User behavior analysis",
        "description": "Analyse user behaviour and generate personalised recommendations",
        "steps": [
            {
                "type": "agent",
                "name": "collect-behavior",
                "agent_name": "user_behavior",
                "action": "collect_behavior_data",
            },
            {
                "type": "agent",
                "name": "analyze-patterns",
                "agent_name": "user_behavior",
                "action": "analyze_patterns",
            },
            {
                "type": "agent",
                "name": "generate-recommendations",
                "agent_name": "content_analysis",
                "action": "generate_recommendations",
            },
        ],
    },
    CONTENT_PUBLISHING: {
        "name": "Content publishing",
        "description": "Publish to several platforms in parallel and monitor the results",
        "steps": [
            {
                "type": "agent",
                "name": "prepare-content",
                "agent_name": "content_management",
                "action": "prepare_for_publish",
            },
            {
                "type": "parallel",
                "name": "publish-parallel",
                "steps": [
                    {
                        "type": "agent",
                        "name": "publish-weibo",
                        "agent_name": "publish_scheduler",
                        "action": "publish_to_weibo",
                        "condition": "not platforms or 'weibo' in platforms",
                    },
                    {
                        "type": "agent",
                        "name": "publish-zhihu",
                        "agent_name": "publish_scheduler",
                        "action": "publish_to_zhihu",
                        "condition": "not platforms or 'zhihu' in platforms",
                    },
                ],
            },
            {
                "type": "agent",
                "name": "monitor-performance",
                "agent_name": "content_analysis",
                "action": "monitor_performance",
                "on_error": "continue",
            },
        ],
    },
    TRENDING_CONTENT: {
        "name": "Trending content",
        "description": "Turn current hot topics into content ideas for one user",
        "steps": [
            {
                "type": "agent",
                "name": "fetch-hot-topics",
                "agent_name": "hot_topics",
                "action": "get_hot_topics",
                "parameters": {"platforms": ["weibo", "zhihu", "juejin"], "limit": 10},
            },
            {
                "type": "agent",
                "name": "analyze-interests",
                "agent_name": "user_behavior",
                "action": "analyze",
                "parameters": {"analysis_type": "profile"},
            },
            {"type": "transform", "name": "match-topics", "script": match_hot_topics},
            {
                "type": "transform",
                "name": "build-suggestions",
                "script": build_content_suggestions,
            },
        ],
    },
    USER_ANALYSIS: {
        "name": "User analysis",
        "description": "In-depth behaviour analysis with a summary report",
        "steps": [
            {
                "type": "agent",
                "name": "analyze-behavior",
                "agent_name": "user_behavior",
                "action": "analyze",
                "parameters": {"analysis_type": "profile", "time_range": "30d"},
            },
            {
                "type": "agent",
                "name": "search-content",
                "agent_name": "content_management",
                "action": "search",
            },
            {"type": "transform", "name": "build-report", "script": build_user_report},
        ],
    },
}


def register_builtin_workflows(engine: WorkflowEngine) -> List[str]:
    """Register every built-in workflow on ``engine`` and return their ids."""
    for workflow_id, definition in BUILTIN_WORKFLOWS.items():
        engine.register_workflow(workflow_id, definition)
    logger.info(f"Registered {len(BUILTIN_WORKFLOWS)} built-in workflows")
    return list(BUILTIN_WORKFLOWS)
