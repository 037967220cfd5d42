"""
Change feed for the queues and queue_members tables.

The store publishes an event after every committed write; subscribers get
an async callback per event. Delivery is at-least-once and the event only
says *which table* changed, so subscribers are expected to re-fetch rather
than patch their state from the payload.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Optional

logger = logging.getLogger(__name__)

QUEUES_TABLE = "queues"
MEMBERS_TABLE = "queue_members"


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    kind: str  # insert, update
    row_id: Optional[str] = None


ChangeCallback = Callable[[ChangeEvent], Awaitable[None]]


class Subscription:
    """Handle returned by `ChangeFeed.subscribe`."""

    def __init__(self, feed: "ChangeFeed", tables: frozenset[str], callback: ChangeCallback):
        self._feed = feed
        self.tables = tables
        self.callback = callback
        self.closed = False

    def close(self) -> None:
        """Stop receiving events. Safe to call more than once."""
        if self.closed:
            return
        self.closed = True
        self._feed._remove(self)


class ChangeFeed:
    """In-process publish/subscribe keyed by table name."""

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []
        self._pending: set[asyncio.Task] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, tables: Iterable[str], callback: ChangeCallback) -> Subscription:
        subscription = Subscription(self, frozenset(tables), callback)
        self._subscriptions.append(subscription)
        return subscription

    def publish(self, event: ChangeEvent) -> None:
        """Schedule delivery of `event` to every subscriber of its table."""
        for subscription in list(self._subscriptions):
            if event.table not in subscription.tables:
                continue
            task = asyncio.create_task(self._deliver(subscription, event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait until every scheduled delivery has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _deliver(self, subscription: Subscription, event: ChangeEvent) -> None:
        if subscription.closed:
            return
        try:
            await subscription.callback(event)
        except Exception:
            logger.exception("Change subscriber failed on %s event for %s", event.kind, event.table)

    def _remove(self, subscription: Subscription) -> None:
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            pass
