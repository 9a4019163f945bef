"""Realtime sync for one shared view: code inserts and link revocation.

Push events come from the ``RealtimeHub``; a polling fallback re-checks the
link and the latest code on a fixed interval in case an event was missed.
Both paths feed the same handlers, so a change is applied at least once.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any
from uuid import UUID

from codeshare.backend import CODES, SHARED_LINKS, Backend
from codeshare.config import settings
from codeshare.models import Code
from codeshare.realtime import DELETE, INSERT, ChangeEvent, RealtimeHub, Subscription

logger = logging.getLogger(__name__)


class SyncChannel:
    """Owns the subscriptions and poll timer for one (group, link) pair."""

    def __init__(
        self,
        backend: Backend,
        hub: RealtimeHub,
        group_id: UUID,
        link_id: UUID,
        *,
        on_code: Callable[[Code], Any],
        on_deleted: Callable[[], Any],
        poll_interval_s: float | None = None,
    ) -> None:
        self.backend = backend
        self.hub = hub
        self.group_id = group_id
        self.link_id = link_id
        self.on_code = on_code
        self.on_deleted = on_deleted
        self.poll_interval_s = poll_interval_s if poll_interval_s is not None else settings.link_recheck_interval_s

        self._active = False
        self._subs: list[Subscription] = []
        self._poll_task: asyncio.Task | None = None
        self._last_code_id: UUID | None = None

    @property
    def is_active(self) -> bool:
        return self._active

    def start(self) -> SyncChannel:
        if self._active:
            return self
        self._active = True
        logger.debug("Sync channel up for group %s link %s", self.group_id, self.link_id)
        self._subs = [
            self.hub.subscribe(SHARED_LINKS, DELETE, {"id": self.link_id}, self._on_link_deleted),
            self.hub.subscribe(CODES, INSERT, {"group_id": self.group_id}, self._on_code_inserted),
        ]
        self._poll_task = asyncio.create_task(self._poll_loop(), name=f"sync-poll-{self.link_id}")
        return self

    def close(self) -> None:
        if not self._active:
            return
        self._active = False
        for sub in self._subs:
            self.hub.unsubscribe(sub)
        self._subs.clear()
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None
        logger.debug("Sync channel closed for link %s", self.link_id)

    def seen(self, code: Code | None) -> None:
        """Record the code already on screen so polling does not re-emit it."""
        if code is not None:
            self._last_code_id = code.id

    async def check_link_exists(self) -> bool:
        """Ask the backend whether the link survives; report deletion if not."""
        if not self._active:
            return True
        try:
            exists = await self.backend.share_link_exists(self.link_id)
        except Exception:
            logger.warning("Error checking link %s", self.link_id, exc_info=True)
            return True
        if not exists and self._active:
            logger.info("Link %s no longer exists", self.link_id)
            self.on_deleted()
        return exists

    async def refresh_code(self) -> Code | None:
        """Fetch the newest code for the group and hand it on if it changed."""
        if not self._active:
            return None
        try:
            code = await self.backend.fetch_latest_code(self.group_id)
        except Exception:
            logger.warning("Error fetching latest code for group %s", self.group_id, exc_info=True)
            return None
        if code is None or not self._active:
            return code
        if code.id != self._last_code_id:
            self._last_code_id = code.id
            self.on_code(code)
        return code

    async def _on_link_deleted(self, event: ChangeEvent) -> None:
        logger.info("Delete event for link %s", self.link_id)
        await self.check_link_exists()

    async def _on_code_inserted(self, event: ChangeEvent) -> None:
        await self.refresh_code()

    async def _poll_loop(self) -> None:
        while self._active:
            await asyncio.sleep(self.poll_interval_s)
            if await self.check_link_exists():
                await self.refresh_code()
