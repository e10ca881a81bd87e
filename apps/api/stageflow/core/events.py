"""In-process change feed.

One channel per logical table. Subscribers of a channel receive events in the
order they were published on that channel; there is no ordering across
channels. Delivery is at-least-once from the consumer's point of view: a
reconnecting consumer may see an event twice and must merge idempotently by
record id. Nothing is persisted or replayed; consumers that lose their
subscription re-fetch authoritative state instead.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

from stageflow.metrics import observe_feed_subscriber_failure


logger = logging.getLogger("stageflow.feed")

ChangeEventType = Literal["insert", "update", "delete"]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ChangeEvent:
    table: str
    event_type: ChangeEventType
    record: dict[str, Any]
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    published_at: str = field(default_factory=_now_iso)
    correlation_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "table": self.table,
            "event_type": self.event_type,
            "record": self.record,
            "published_at": self.published_at,
            "correlation_id": self.correlation_id,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ChangeEvent:
        return cls(
            table=str(payload["table"]),
            event_type=payload["event_type"],
            record=dict(payload.get("record") or {}),
            event_id=str(payload.get("event_id") or uuid.uuid4()),
            published_at=str(payload.get("published_at") or _now_iso()),
            correlation_id=payload.get("correlation_id"),
        )


ChangeHandler = Callable[[ChangeEvent], None]


class Subscription:
    def __init__(self, feed: ChangeFeed, table: str, handler: ChangeHandler) -> None:
        self.feed = feed
        self.table = table
        self.handler = handler
        self.active = True

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self.feed._remove(self)


class ChangeFeed:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[Subscription]] = defaultdict(list)
        self._channel_locks: dict[str, threading.RLock] = defaultdict(threading.RLock)
        self._lock = threading.Lock()

    def subscribe(self, table: str, handler: ChangeHandler) -> Subscription:
        subscription = Subscription(self, table, handler)
        with self._lock:
            self._subscribers[table].append(subscription)
        return subscription

    def publish(self, table: str, event: ChangeEvent) -> int:
        with self._lock:
            subscribers = list(self._subscribers.get(table, []))
            channel_lock = self._channel_locks[table]

        delivered = 0
        with channel_lock:
            for subscription in subscribers:
                if not subscription.active:
                    continue
                try:
                    subscription.handler(event)
                    delivered += 1
                except Exception as exc:
                    observe_feed_subscriber_failure(table)
                    logger.exception(
                        "change_feed.subscriber_failed",
                        extra={"table": table, "event_type": event.event_type, "error": str(exc)},
                    )
        return delivered

    def subscriber_count(self, table: str) -> int:
        with self._lock:
            return sum(1 for item in self._subscribers.get(table, []) if item.active)

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.table, [])
            if subscription in subscribers:
                subscribers.remove(subscription)


change_feed = ChangeFeed()
