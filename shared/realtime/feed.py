"""
shared/realtime/feed.py
Change feed: subscribe(table, filter) → async stream of change events.

Two backends share one interface:
- LocalChangeFeed: in-process asyncio queues (single instance, tests)
- RedisChangeFeed: Redis pub/sub on "changes:<table>" (multiple instances)

Events are published only after the primary write commits. Within one
table channel, subscribers see events in publication order. Subscriptions
must be closed by their consumer; a forgotten subscription keeps its
registration alive.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)


class ChangeAction(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass
class ChangeEvent:
    table: str
    action: ChangeAction
    row: Dict[str, Any]

    def to_json(self) -> str:
        return json.dumps(
            {"table": self.table, "action": self.action.value, "row": self.row},
            default=_json_default,
        )

    @classmethod
    def from_json(cls, raw: str) -> "ChangeEvent":
        data = json.loads(raw)
        return cls(table=data["table"], action=ChangeAction(data["action"]), row=data["row"])


def _json_default(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return str(value)


def _normalize(value: Any) -> str:
    """Compare filter values and row values the way they travel on the wire."""
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


@dataclass
class ChangeFilter:
    """
    Row predicate: every column must equal its value, or be one of the
    values when a list/set/tuple is given.
    """
    conditions: Dict[str, Any] = field(default_factory=dict)
    actions: Optional[Iterable[ChangeAction]] = None

    def matches(self, event: ChangeEvent) -> bool:
        if self.actions is not None and event.action not in self.actions:
            return False
        for column, expected in self.conditions.items():
            if column not in event.row:
                return False
            actual = _normalize(event.row[column])
            if isinstance(expected, (list, set, tuple, frozenset)):
                if actual not in {_normalize(v) for v in expected}:
                    return False
            elif actual != _normalize(expected):
                return False
        return True


class Subscription:
    """
    One live registration. Iterate it for events; close() (or leaving the
    async with block) tears it down. Closing is idempotent.
    """

    def __init__(self, table: str, change_filter: ChangeFilter, max_size: int,
                 on_close: Callable[["Subscription"], None]):
        self.id = uuid.uuid4().hex
        self.table = table
        self.filter = change_filter
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_size)
        self._on_close = on_close
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, event: ChangeEvent) -> None:
        if self._closed or not self.filter.matches(event):
            return
        if self._queue.full():
            # Slow consumer: drop the oldest event so the newest still arrives
            dropped = self._queue.get_nowait()
            logger.warning(
                "Subscription %s overflowed; dropped %s on %s",
                self.id, dropped.action.value, dropped.table,
            )
        self._queue.put_nowait(event)

    async def get(self, timeout: Optional[float] = None) -> Optional[ChangeEvent]:
        """Next event, or None once the subscription is closed and drained."""
        if self._closed and self._queue.empty():
            return None
        return await asyncio.wait_for(self._queue.get(), timeout)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Wake a consumer blocked in get()
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(None)
        self._on_close(self)

    def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        return self

    async def __anext__(self) -> ChangeEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()


class LocalChangeFeed:
    """In-process change feed. Publishing fans out synchronously to queues."""

    def __init__(self, queue_size: int = 256):
        self.queue_size = queue_size
        self._subscribers: Dict[str, List[Subscription]] = {}

    async def publish(self, event: ChangeEvent) -> None:
        for sub in list(self._subscribers.get(event.table, [])):
            sub.deliver(event)

    async def subscribe(self, table: str, change_filter: ChangeFilter) -> Subscription:
        sub = Subscription(table, change_filter, self.queue_size, self._remove)
        self._subscribers.setdefault(table, []).append(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        subs = self._subscribers.get(sub.table, [])
        if sub in subs:
            subs.remove(sub)

    def subscriber_count(self, table: Optional[str] = None) -> int:
        if table is not None:
            return len(self._subscribers.get(table, []))
        return sum(len(subs) for subs in self._subscribers.values())

    async def close(self) -> None:
        for subs in list(self._subscribers.values()):
            for sub in list(subs):
                sub.close()


class RedisChangeFeed:
    """
    Redis pub/sub change feed. Each subscription owns a PubSub connection
    and a reader task that filters messages into the subscription queue.
    """

    CHANNEL_PREFIX = "changes:"

    def __init__(self, client, queue_size: int = 256):
        self.client = client
        self.queue_size = queue_size
        self._readers: Dict[str, asyncio.Task] = {}
        self._subscriptions: Dict[str, Subscription] = {}

    def _channel(self, table: str) -> str:
        return f"{self.CHANNEL_PREFIX}{table}"

    async def publish(self, event: ChangeEvent) -> None:
        await self.client.publish(self._channel(event.table), event.to_json())

    async def subscribe(self, table: str, change_filter: ChangeFilter) -> Subscription:
        pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        await pubsub.subscribe(self._channel(table))
        sub = Subscription(table, change_filter, self.queue_size, self._remove)
        self._subscriptions[sub.id] = sub
        self._readers[sub.id] = asyncio.create_task(self._read(sub, pubsub))
        return sub

    async def _read(self, sub: Subscription, pubsub) -> None:
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    event = ChangeEvent.from_json(message["data"])
                except (ValueError, KeyError):
                    logger.warning("Discarding malformed change event on %s", sub.table)
                    continue
                sub.deliver(event)
        except asyncio.CancelledError:
            pass
        finally:
            await pubsub.unsubscribe()
            await pubsub.aclose()

    def _remove(self, sub: Subscription) -> None:
        self._subscriptions.pop(sub.id, None)
        reader = self._readers.pop(sub.id, None)
        if reader is not None:
            reader.cancel()

    def subscriber_count(self, table: Optional[str] = None) -> int:
        if table is not None:
            return sum(1 for sub in self._subscriptions.values() if sub.table == table)
        return len(self._subscriptions)

    async def close(self) -> None:
        """Close every open subscription so blocked consumers see end-of-stream."""
        readers = list(self._readers.values())
        for sub in list(self._subscriptions.values()):
            sub.close()
        for reader in readers:
            reader.cancel()
        await asyncio.gather(*readers, return_exceptions=True)


# ── Process-wide feed ─────────────────────────────────────────

change_feed = LocalChangeFeed()


def set_change_feed(feed) -> None:
    global change_feed
    change_feed = feed


def get_change_feed():
    """FastAPI dependency / service accessor for the active change feed."""
    return change_feed


async def publish_change(table: str, action: ChangeAction, row: Dict[str, Any]) -> None:
    """
    Best-effort publication after commit. A feed failure is logged and
    never reaches the operation that produced the change.
    """
    try:
        # Same JSON-safe row shape from every backend
        wire_row = json.loads(json.dumps(row, default=_json_default))
        await get_change_feed().publish(ChangeEvent(table=table, action=action, row=wire_row))
    except Exception:
        logger.warning("Change publication failed for %s %s", table, action.value, exc_info=True)
