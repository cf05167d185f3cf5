"""
Event Subscription Registry
===========================

Explicit subscription registry used by the collaboration manager and the
stream engine to fan out events to listeners.

Features:
- Topic-scoped subscriptions with optional event-type filters
- Wildcard ("*") topic subscribers
- Sync and async handlers
- Per-subscriber emission ordering
- Handler failures isolated and logged

Author: Builder Engine Team
Version: 2.0.0
"""

from __future__ import annotations

import inspect
import itertools
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Union

import structlog

logger = structlog.get_logger(__name__)

WILDCARD_TOPIC = "*"

EventHandler = Callable[["Event"], Union[None, Awaitable[None]]]


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass(frozen=True)
class Event:
    """An event delivered to subscribers."""

    type: str
    topic: str
    payload: Dict[str, Any] = field(default_factory=dict)
    sequence: int = 0
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "topic": self.topic,
            "payload": self.payload,
            "sequence": self.sequence,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class Subscription:
    """A registered handler."""

    id: str
    topic: str
    handler: EventHandler
    event_types: Optional[FrozenSet[str]] = None

    def accepts(self, event: Event) -> bool:
        return self.event_types is None or event.type in self.event_types


# =============================================================================
# REGISTRY
# =============================================================================


class EventRegistry:
    """
    Subscription registry with ordered, isolated delivery.

    Usage:
        registry = EventRegistry()
        sub_id = registry.subscribe("session-1", on_event, event_types={"user:joined"})
        await registry.publish("session-1", "user:joined", {"user_id": "u1"})
        registry.unsubscribe(sub_id)
    """

    def __init__(self, name: str = "events"):
        self._subscriptions: Dict[str, List[Subscription]] = defaultdict(list)
        self._index: Dict[str, Subscription] = {}
        self._counter = itertools.count(1)
        self._sequence = itertools.count(1)
        self._logger = structlog.get_logger(f"event_registry.{name}")
        self._metrics = {
            "events_published": 0,
            "deliveries": 0,
            "handler_failures": 0,
        }

    def subscribe(
        self,
        topic: str,
        handler: EventHandler,
        event_types: Optional[Any] = None,
    ) -> str:
        """Register a handler for a topic; returns the subscription id"""
        sub_id = f"sub-{next(self._counter)}"
        subscription = Subscription(
            id=sub_id,
            topic=topic,
            handler=handler,
            event_types=frozenset(event_types) if event_types else None,
        )
        self._subscriptions[topic].append(subscription)
        self._index[sub_id] = subscription
        self._logger.debug("subscription_created", subscription_id=sub_id, topic=topic)
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """Remove a subscription"""
        subscription = self._index.pop(subscription_id, None)
        if subscription is None:
            return False

        subs = self._subscriptions.get(subscription.topic, [])
        self._subscriptions[subscription.topic] = [
            s for s in subs if s.id != subscription_id
        ]
        if not self._subscriptions[subscription.topic]:
            del self._subscriptions[subscription.topic]

        self._logger.debug("subscription_removed", subscription_id=subscription_id)
        return True

    def clear_topic(self, topic: str) -> int:
        """Drop every subscription on a topic"""
        subs = self._subscriptions.pop(topic, [])
        for sub in subs:
            self._index.pop(sub.id, None)
        return len(subs)

    def subscriber_count(self, topic: Optional[str] = None) -> int:
        if topic is None:
            return len(self._index)
        return len(self._subscriptions.get(topic, []))

    async def publish(
        self,
        topic: str,
        event_type: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Event:
        """
        Deliver an event to every matching subscriber in registration order.

        Handlers are awaited one after another so a subscriber observes events
        in the order they were emitted.
        """
        event = Event(
            type=event_type,
            topic=topic,
            payload=payload or {},
            sequence=next(self._sequence),
        )
        self._metrics["events_published"] += 1

        targets = list(self._subscriptions.get(topic, []))
        if topic != WILDCARD_TOPIC:
            targets.extend(self._subscriptions.get(WILDCARD_TOPIC, []))

        for subscription in targets:
            if not subscription.accepts(event):
                continue
            await self._deliver(subscription, event)

        return event

    async def _deliver(self, subscription: Subscription, event: Event) -> None:
        try:
            result = subscription.handler(event)
            if inspect.isawaitable(result):
                await result
            self._metrics["deliveries"] += 1
        except Exception as e:
            self._metrics["handler_failures"] += 1
            self._logger.error(
                "subscriber_handler_failed",
                subscription_id=subscription.id,
                topic=event.topic,
                event_type=event.type,
                error=str(e),
                exc_info=True,
            )

    def get_metrics(self) -> Dict[str, Any]:
        return {
            **self._metrics,
            "subscriptions": len(self._index),
            "topics": len(self._subscriptions),
        }
