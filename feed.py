"""
Change feed and live snapshot subscriptions.

Services publish a topic after every write; a subscription watching that topic
re-runs its query and delivers the full current result. Deliveries coalesce:
several writes before the consumer reads produce one fresh snapshot, and a
snapshot equal to the last one delivered is skipped. Each snapshot is
authoritative and replaces whatever the consumer held before.

Subscriptions wait on the event loop, not on a worker thread. Writers publish
from threadpool handlers, so the wake-up is handed to the subscriber's loop.
Only the snapshot query itself runs in the threadpool.

Topics used by the services:
    ads:<uid>               ads owned by a user
    conversation:<id>       one conversation record
    messages:<id>           messages of one conversation
    inbox:<uid>             conversations a user takes part in
    notifications:<uid>     a user's notifications
"""

import asyncio
import logging
import threading
from typing import Any, Callable, Dict, Iterable, Optional, Set

from fastapi.concurrency import run_in_threadpool

logger = logging.getLogger(__name__)

SnapshotQuery = Callable[[], Any]

_NOTHING_SENT = object()


class Subscription:
    def __init__(self, feed: "ChangeFeed", topics: Iterable[str], query: SnapshotQuery):
        self._feed = feed
        self.topics: Set[str] = set(topics)
        self._query = query
        self._loop = asyncio.get_running_loop()
        self._changed = asyncio.Event()
        self._changed.set()  # first read delivers the initial snapshot
        self._closed = False
        self._last: Any = _NOTHING_SENT

    @property
    def closed(self) -> bool:
        return self._closed

    def notify(self) -> None:
        """Mark the subscription stale. Safe to call from any thread."""
        try:
            self._loop.call_soon_threadsafe(self._changed.set)
        except RuntimeError:
            # reader's loop has shut down
            logger.debug("Dropped change for %s, event loop closed", sorted(self.topics))

    async def next_snapshot(self, timeout: Optional[float] = None) -> Optional[Any]:
        """
        Wait for a change and return a full snapshot.

        Returns None on timeout or once the subscription is closed.
        """
        while not self._closed:
            try:
                await asyncio.wait_for(self._changed.wait(), timeout)
            except asyncio.TimeoutError:
                return None
            self._changed.clear()
            if self._closed:
                break
            snapshot = await run_in_threadpool(self._query)
            if snapshot != self._last:
                self._last = snapshot
                return snapshot
        return None

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._feed._remove(self)
        self.notify()  # wake a waiting reader

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class ChangeFeed:
    """
    Application-scoped registry of live subscriptions.

    ``subscribe`` must be called from the event loop that will read the
    subscription; ``publish`` may be called from any thread.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_topic: Dict[str, Set[Subscription]] = {}

    def subscribe(self, topics: Iterable[str], query: SnapshotQuery) -> Subscription:
        sub = Subscription(self, topics, query)
        with self._lock:
            for topic in sub.topics:
                self._by_topic.setdefault(topic, set()).add(sub)
        logger.debug("Subscribed to %s", sorted(sub.topics))
        return sub

    def publish(self, *topics: str) -> None:
        with self._lock:
            targets: Set[Subscription] = set()
            for topic in topics:
                targets.update(self._by_topic.get(topic, ()))
        for sub in targets:
            sub.notify()

    def active_count(self, topic: Optional[str] = None) -> int:
        with self._lock:
            if topic is not None:
                return len(self._by_topic.get(topic, ()))
            return len({s for subs in self._by_topic.values() for s in subs})

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            for topic in sub.topics:
                subs = self._by_topic.get(topic)
                if subs is None:
                    continue
                subs.discard(sub)
                if not subs:
                    del self._by_topic[topic]
        logger.debug("Released subscription to %s", sorted(sub.topics))
