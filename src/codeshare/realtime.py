"""In-process change notifications, fed by Postgres LISTEN/NOTIFY.

Database triggers (see schema.sql) NOTIFY on code inserts and share-link
deletions. ``PostgresChangeFeed`` republishes those payloads on a
``RealtimeHub``; subscribers filter by resource, event type and column values.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from codeshare.config import settings
from codeshare.db import listen_conn

logger = logging.getLogger(__name__)

INSERT = "INSERT"
DELETE = "DELETE"

Callback = Callable[["ChangeEvent"], Awaitable[None] | None]


@dataclass(frozen=True)
class ChangeEvent:
    resource: str  # table name
    event_type: str  # INSERT or DELETE
    record: dict[str, Any]


@dataclass
class Subscription:
    """Handle returned by ``RealtimeHub.subscribe``."""
    id: int
    resource: str
    event_type: str
    filter: dict[str, Any]
    callback: Callback
    active: bool = True

    def matches(self, event: ChangeEvent) -> bool:
        if event.resource != self.resource or event.event_type != self.event_type:
            return False
        return all(str(event.record.get(col)) == str(val) for col, val in self.filter.items())


class RealtimeHub:
    """Fan-out of change events to matching subscriptions."""

    def __init__(self) -> None:
        self._subs: dict[int, Subscription] = {}
        self._ids = itertools.count(1)
        self._tasks: set[asyncio.Task] = set()

    def subscribe(
        self,
        resource: str,
        event_type: str,
        filter: dict[str, Any] | None,
        callback: Callback,
    ) -> Subscription:
        sub = Subscription(
            id=next(self._ids),
            resource=resource,
            event_type=event_type,
            filter=dict(filter or {}),
            callback=callback,
        )
        self._subs[sub.id] = sub
        logger.debug("Subscribed #%d to %s %s %s", sub.id, event_type, resource, sub.filter)
        return sub

    def unsubscribe(self, handle: Subscription) -> None:
        handle.active = False
        self._subs.pop(handle.id, None)

    @property
    def subscription_count(self) -> int:
        return len(self._subs)

    def publish(self, event: ChangeEvent) -> int:
        """Deliver ``event`` to every matching subscription. Returns the count."""
        delivered = 0
        for sub in list(self._subs.values()):
            if not sub.active or not sub.matches(event):
                continue
            delivered += 1
            try:
                result = sub.callback(event)
            except Exception:
                logger.warning("Subscriber #%d failed on %s %s", sub.id, event.event_type,
                               event.resource, exc_info=True)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._task_done)
        return delivered

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Async subscriber failed", exc_info=task.exception())


def parse_notification(payload: str) -> ChangeEvent | None:
    """Decode a trigger payload: {"table": ..., "type": ..., "record": {...}}."""
    try:
        data = json.loads(payload)
        return ChangeEvent(
            resource=data["table"],
            event_type=data["type"].upper(),
            record=data.get("record") or {},
        )
    except (ValueError, KeyError, TypeError, AttributeError):
        logger.warning("Ignoring malformed change notification: %s", payload[:200])
        return None


class PostgresChangeFeed:
    """Background task relaying NOTIFY payloads to a hub.

    Reconnects after connection loss; events missed in between are picked up
    by the subscribers' polling fallback.
    """

    def __init__(self, hub: RealtimeHub, channel: str | None = None, reconnect_delay_s: float = 5.0) -> None:
        self.hub = hub
        self.channel = channel or settings.realtime_channel
        self.reconnect_delay_s = reconnect_delay_s
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"change-feed-{self.channel}")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self) -> None:
        while True:
            try:
                async with listen_conn(self.channel) as conn:
                    logger.info("Listening for changes on %s", self.channel)
                    async for notify in conn.notifies():
                        event = parse_notification(notify.payload)
                        if event is not None:
                            self.hub.publish(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("Change feed on %s dropped, reconnecting in %.0fs",
                               self.channel, self.reconnect_delay_s, exc_info=True)
            await asyncio.sleep(self.reconnect_delay_s)
