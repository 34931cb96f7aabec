"""In-process event bus with publish/subscribe and request/response."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import defaultdict, deque
from collections.abc import Mapping
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Set

from .config import BusConfig
from .contracts import (
    ERROR_EVENT,
    EventMetadata,
    EventRecord,
    ResponsePayload,
    Subscription,
    new_id,
    utcnow,
)
from .errors import HandlerError, RequestFailed, RequestTimeout

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Any]


class EventBus:
    """Decouples producers and consumers of named events.

    Handlers run synchronously inside :meth:`publish`, in subscription
    order. Coroutine handlers are scheduled as tasks on the running loop.
    A failing handler never affects the publisher or other subscribers; the
    failure is re-published as an ``error`` event.
    """

    def __init__(self, config: Optional[BusConfig] = None) -> None:
        config = config or BusConfig()
        self.history_size = config.history_size
        self.request_timeout_ms = config.request_timeout_ms
        self.history_max_age_ms = config.history_max_age_ms

        self._subscriptions: Dict[str, Subscription] = {}
        self._by_event: Dict[str, Dict[str, Subscription]] = defaultdict(dict)
        self._history: Deque[EventRecord] = deque(maxlen=self.history_size)
        self._tasks: Set[asyncio.Task] = set()
        self._published_total = 0
        self._started = time.monotonic()

    # ------------------------------------------------------------------
    def subscribe(
        self,
        event_name: str,
        handler: Handler,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Register ``handler`` for ``event_name`` and return the subscription id."""
        metadata = dict(metadata or {})
        subscription_id = new_id(metadata.get("agent_id") or "unknown")
        subscription = Subscription(
            id=subscription_id,
            event_name=event_name,
            handler=handler,
            metadata=metadata,
        )
        self._subscriptions[subscription_id] = subscription
        self._by_event[event_name][subscription_id] = subscription
        logger.debug(
            f"Subscribed {subscription.agent_id or 'unknown'} to event: {event_name}"
        )
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """Remove a subscription. Unknown ids are ignored."""
        subscription = self._subscriptions.pop(subscription_id, None)
        if subscription is None:
            return False
        handlers = self._by_event.get(subscription.event_name)
        if handlers is not None:
            handlers.pop(subscription_id, None)
            if not handlers:
                del self._by_event[subscription.event_name]
        logger.debug(f"Unsubscribed {subscription_id} from {subscription.event_name}")
        return True

    def publish(
        self,
        event_name: str,
        data: Any = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Record the event in history and deliver it to every subscriber.

        Returns:
            The event id.
        """
        return self._publish(event_name, data, metadata)

    def broadcast(
        self,
        event_name: str,
        data: Optional[Mapping[str, Any]] = None,
        exclude_agents: Iterable[str] = (),
    ) -> str:
        """Publish to every subscriber except those registered by ``exclude_agents``."""
        excluded = list(exclude_agents)
        payload = {
            **(data or {}),
            "broadcast": True,
            "exclude_agents": excluded,
            "timestamp": utcnow(),
        }
        return self._publish(
            event_name, payload, {"type": "broadcast"}, exclude=set(excluded)
        )

    def _publish(
        self,
        event_name: str,
        data: Any,
        metadata: Optional[Dict[str, Any]],
        exclude: Optional[Set[str]] = None,
    ) -> str:
        extra = dict(metadata or {})
        correlation_id = extra.pop("correlation_id", None)
        sender_id = extra.pop("sender_id", None) or extra.pop("agent_id", None)
        record = EventRecord(
            name=event_name,
            payload=dict(data) if isinstance(data, Mapping) else data,
            metadata=EventMetadata(
                correlation_id=correlation_id, sender_id=sender_id, extra=extra
            ),
        )
        self._history.append(record)
        self._published_total += 1

        # Snapshot: handlers may unsubscribe themselves while being delivered to.
        subscriptions = list(self._by_event.get(event_name, {}).values())
        logger.debug(
            f"Publishing event: {event_name} ({record.event_id}) to {len(subscriptions)} handlers"
        )
        for subscription in subscriptions:
            if exclude and subscription.agent_id in exclude:
                continue
            self._deliver(subscription, record.name, data)
        return record.event_id

    def _deliver(self, subscription: Subscription, event_name: str, data: Any) -> None:
        # History keeps its own copy; handlers get the published object.
        try:
            outcome = subscription.handler(data)
            if inspect.isawaitable(outcome):
                self._schedule(subscription, event_name, outcome)
        except Exception as exc:
            self._report_handler_error(subscription, event_name, exc)

    def _schedule(self, subscription: Subscription, event_name: str, awaitable: Any) -> None:
        try:
            task = asyncio.ensure_future(awaitable)
        except RuntimeError:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise HandlerError(
                f"Async handler {subscription.id} requires a running event loop"
            )
        self._tasks.add(task)
        task.add_done_callback(partial(self._on_task_done, subscription, event_name))

    def _on_task_done(
        self, subscription: Subscription, event_name: str, task: asyncio.Task
    ) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._report_handler_error(subscription, event_name, exc)

    def _report_handler_error(
        self, subscription: Subscription, event_name: str, exc: BaseException
    ) -> None:
        logger.error(
            f"Error in event handler {subscription.id} for {event_name}: {exc}"
        )
        if event_name == ERROR_EVENT:
            return
        handler_error = HandlerError(
            f"Handler {subscription.id} failed on {event_name}: {exc}"
        )
        handler_error.__cause__ = exc
        self._publish(
            ERROR_EVENT,
            {
                "event_name": event_name,
                "subscription_id": subscription.id,
                "agent_id": subscription.agent_id,
                "error": str(exc),
                "error_type": type(exc).__name__,
                "handler_error": handler_error,
                "timestamp": utcnow(),
            },
            {"sender_id": "event_bus"},
        )

    # ------------------------------------------------------------------
    async def request(
        self,
        event_name: str,
        data: Optional[Mapping[str, Any]] = None,
        timeout_ms: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Publish ``event_name`` and wait for its single correlated response.

        The request payload gains ``correlation_id`` and ``response_event``
        keys; the responder publishes on ``response_event`` (see
        :meth:`respond`). Only the first response is consumed.

        Raises:
            RequestTimeout: No response arrived within ``timeout_ms``.
            RequestFailed: The response carried an error.
        """
        timeout_ms = timeout_ms or self.request_timeout_ms
        correlation_id = new_id("req")
        response_event = f"{event_name}.response.{correlation_id}"
        future: asyncio.Future = asyncio.get_running_loop().create_future()

        def _on_response(payload: Any) -> None:
            if future.done():
                return
            self.unsubscribe(subscription_id)
            future.set_result(payload)

        subscription_id = self.subscribe(
            response_event, _on_response, {"agent_id": "event_bus"}
        )
        body = {
            **(data or {}),
            "correlation_id": correlation_id,
            "response_event": response_event,
        }
        try:
            self._publish(
                event_name, body, {**(metadata or {}), "correlation_id": correlation_id}
            )
            payload = await asyncio.wait_for(future, timeout_ms / 1000)
        except asyncio.TimeoutError:
            logger.warning(f"Request {correlation_id} on {event_name} timed out")
            raise RequestTimeout(
                f"Request timed out after {timeout_ms}ms: {event_name}"
            ) from None
        finally:
            self.unsubscribe(subscription_id)

        if not isinstance(payload, Mapping):
            return payload
        response = ResponsePayload.model_validate(payload)
        if response.error:
            raise RequestFailed(response.error, error_type=response.error_type)
        return response.result

    def respond(
        self,
        response_event: str,
        result: Any = None,
        error: Optional[BaseException | str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Publish the response for a request on its correlated event name."""
        error_type = type(error).__name__ if isinstance(error, BaseException) else None
        payload = ResponsePayload(
            result=result,
            error=str(error) if error is not None else None,
            error_type=error_type,
        )
        return self._publish(response_event, payload.model_dump(), metadata)

    # ------------------------------------------------------------------
    def get_event_history(
        self,
        event_name: Optional[str] = None,
        agent_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[EventRecord]:
        """Return the most recent matching events, oldest first."""
        history: Iterable[EventRecord] = self._history
        if event_name is not None:
            history = (e for e in history if e.name == event_name)
        if agent_id is not None:
            history = (e for e in history if e.metadata.sender_id == agent_id)
        if since is not None:
            history = (e for e in history if e.metadata.timestamp >= since)
        matches = list(history)
        if limit <= 0:
            return []
        return matches[-limit:]

    def clear_history(self) -> None:
        self._history.clear()

    def cleanup_history(self, max_age_ms: Optional[float] = None) -> int:
        """Drop events older than ``max_age_ms``. Returns the number removed."""
        max_age_ms = max_age_ms if max_age_ms is not None else self.history_max_age_ms
        cutoff = utcnow() - timedelta(milliseconds=max_age_ms)
        kept = [e for e in self._history if e.metadata.timestamp >= cutoff]
        removed = len(self._history) - len(kept)
        if removed:
            self._history = deque(kept, maxlen=self.history_size)
            logger.info(f"Cleaned up {removed} events from history")
        return removed

    def get_subscribers(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": subscription.id,
                "event_name": subscription.event_name,
                "agent_id": subscription.agent_id,
                "subscribed_at": subscription.subscribed_at,
            }
            for subscription in self._subscriptions.values()
        ]

    def subscriber_count(self, event_name: Optional[str] = None) -> int:
        if event_name is None:
            return len(self._subscriptions)
        return len(self._by_event.get(event_name, {}))

    def get_event_stats(self) -> Dict[str, Any]:
        events_by_name: Dict[str, int] = defaultdict(int)
        events_by_agent: Dict[str, int] = defaultdict(int)
        for event in self._history:
            events_by_name[event.name] += 1
            events_by_agent[event.metadata.sender_id or "unknown"] += 1
        return {
            "total_events": len(self._history),
            "total_subscribers": len(self._subscriptions),
            "events_by_name": dict(events_by_name),
            "events_by_agent": dict(events_by_agent),
        }

    def get_metrics(self) -> Dict[str, Any]:
        stats = self.get_event_stats()
        stats.update(
            history_size=len(self._history),
            history_capacity=self.history_size,
            published_total=self._published_total,
            pending_handlers=len(self._tasks),
        )
        return stats

    def health_check(self) -> Dict[str, Any]:
        return {
            "status": "healthy",
            "subscribers": len(self._subscriptions),
            "event_history": len(self._history),
            "pending_handlers": len(self._tasks),
            "uptime_s": round(time.monotonic() - self._started, 3),
        }

    async def close(self) -> None:
        """Cancel handler tasks that are still running."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
