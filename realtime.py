"""
Change notifications for collections.

The store publishes one Change per insert/update/delete; subscribers register
for a table and an event ("INSERT", "UPDATE", "DELETE" or "*"). Delivery is
best effort: a callback that raises is logged and skipped, and nothing is
replayed for subscribers that were not registered when the change happened.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from logging_config import logger

EVENTS = ("INSERT", "UPDATE", "DELETE")
ALL_EVENTS = "*"


@dataclass
class Change:
    table: str
    event: str
    record: Dict[str, Any]
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_message(self) -> Dict[str, Any]:
        return {"table": self.table, "event": self.event, "record": self.record, "at": self.at}


class Subscription:
    def __init__(self, feed: "ChangeFeed", table: str, event: str, callback: Callable[[Change], Any]):
        self.feed = feed
        self.table = table
        self.event = event
        self.callback = callback
        self.active = True

    def matches(self, change: Change) -> bool:
        return self.table == change.table and self.event in (ALL_EVENTS, change.event)

    def unsubscribe(self):
        if self.active:
            self.active = False
            self.feed._remove(self)


class ChangeFeed:
    def __init__(self):
        self._subscriptions: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, table: str, event: str, callback: Callable[[Change], Any]) -> Subscription:
        event = event.upper()
        if event != ALL_EVENTS and event not in EVENTS:
            raise ValueError(f"Unknown event: {event}")
        sub = Subscription(self, table, event, callback)
        with self._lock:
            self._subscriptions.append(sub)
        logger.info(f"Subscribed to {table}:{event}")
        return sub

    def _remove(self, sub: Subscription):
        with self._lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)
        logger.info(f"Unsubscribed from {sub.table}:{sub.event}")

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, table: str, event: str, record: Dict[str, Any]) -> int:
        """Deliver a change to every matching subscriber, returns how many got it."""
        change = Change(table=table, event=event, record=record)
        with self._lock:
            targets = [s for s in self._subscriptions if s.matches(change)]
        delivered = 0
        for sub in targets:
            try:
                sub.callback(change)
                delivered += 1
            except Exception as e:
                logger.warning(f"Change callback for {table}:{event} failed: {e}")
        return delivered


feed = ChangeFeed()
