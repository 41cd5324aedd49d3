"""In-process push feed of entry-set snapshots.

Every write to the repository republishes the complete, start-ordered entry
set of the affected user-day. Subscribers never see diffs.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from collections import defaultdict
from typing import DefaultDict, Optional, Set, Tuple

from .domain import Snapshot

logger = logging.getLogger(__name__)

FeedKey = Tuple[str, dt.date]


class Subscription:
    """Async iterator over snapshots for one user-day."""

    def __init__(self, feed: "EntryFeed", key: FeedKey) -> None:
        self._feed = feed
        self.key = key
        self._queue: "asyncio.Queue[Optional[Snapshot]]" = asyncio.Queue()
        self.closed = False

    def push(self, snapshot: Optional[Snapshot]) -> None:
        if not self.closed:
            self._queue.put_nowait(snapshot)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Snapshot:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        snapshot = await self._queue.get()
        if snapshot is None:
            raise StopAsyncIteration
        return snapshot

    async def next_snapshot(self, timeout: Optional[float] = None) -> Snapshot:
        return await asyncio.wait_for(self.__anext__(), timeout)

    def close(self) -> None:
        if self.closed:
            return
        self._feed.discard(self)
        self._queue.put_nowait(None)
        self.closed = True


class EntryFeed:
    def __init__(self) -> None:
        self._subscribers: DefaultDict[FeedKey, Set[Subscription]] = defaultdict(set)

    def open(self, user_id: str, day: dt.date) -> Subscription:
        subscription = Subscription(self, (user_id, day))
        self._subscribers[subscription.key].add(subscription)
        return subscription

    def discard(self, subscription: Subscription) -> None:
        listeners = self._subscribers.get(subscription.key)
        if not listeners:
            return
        listeners.discard(subscription)
        if not listeners:
            del self._subscribers[subscription.key]

    def subscriber_count(self, user_id: str, day: dt.date) -> int:
        return len(self._subscribers.get((user_id, day), ()))

    def publish(self, user_id: str, day: dt.date, snapshot: Snapshot) -> None:
        listeners = list(self._subscribers.get((user_id, day), ()))
        logger.debug("Publishing %d entries for %s on %s to %d subscribers", len(snapshot), user_id, day, len(listeners))
        for subscription in listeners:
            subscription.push(snapshot)
