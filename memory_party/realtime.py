"""In-process live snapshot streams over the database.

A subscriber registers a query under a topic and receives the complete query
result once immediately and again after every ``publish`` on that topic.
Snapshots are never incremental, so consumers recompute their derived state
from each delivery. Only the newest undelivered snapshot is buffered.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Callable, List

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from .database import engine

logger = logging.getLogger(__name__)

Snapshot = List[dict]
Query = Callable[[Session], Snapshot]

_CLOSED = object()


def topic(kind: str, event_id: str) -> str:
    return f"{kind}:{event_id}"


class Subscription:
    def __init__(self, hub: "LiveHub", topic_name: str, query: Query) -> None:
        self.topic = topic_name
        self.query = query
        self.closed = False
        self._hub = hub
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=1)

    def deliver(self, snapshot: Snapshot) -> None:
        if self.closed:
            return
        self._replace(snapshot)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._hub._discard(self)
        self._replace(_CLOSED)

    def _replace(self, item: Any) -> None:
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(item)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Snapshot:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()


class LiveHub:
    def __init__(self, bind=None) -> None:
        self._engine = bind if bind is not None else engine
        self._subscribers: defaultdict[str, set[Subscription]] = defaultdict(set)

    def subscribe(self, topic_name: str, query: Query) -> Subscription:
        subscription = Subscription(self, topic_name, query)
        snapshot = self._run(query)
        subscription.deliver(snapshot if snapshot is not None else [])
        self._subscribers[topic_name].add(subscription)
        return subscription

    def publish(self, topic_name: str) -> int:
        """Push a fresh snapshot to every subscriber of ``topic_name``."""
        delivered = 0
        for subscription in list(self._subscribers.get(topic_name, ())):
            snapshot = self._run(subscription.query)
            if snapshot is None:
                continue
            subscription.deliver(snapshot)
            delivered += 1
        return delivered

    def subscriber_count(self, topic_name: str) -> int:
        return len(self._subscribers.get(topic_name, ()))

    def _discard(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.topic)
        if not subscribers:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._subscribers[subscription.topic]

    def _run(self, query: Query) -> Snapshot | None:
        try:
            with Session(self._engine) as session:
                return query(session)
        except SQLAlchemyError:
            logger.exception("Live query failed; keeping the previous snapshot")
            return None


hub = LiveHub()
