"""Public, no-login view of a group's current code through a share link.

``SharedViewController.start()`` runs, in order:
  1. validate the link for the viewer (existence, expiry, restriction)
  2. register the view atomically (one-time links succeed exactly once);
     a resumed stream skips this, its view is already counted
  3. load the group and its latest code
  4. start the sync channel, the expiry countdown and periodic re-validation

Any link error moves the view to the terminal ERROR state: group and code are
cleared and every timer and subscription is released.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from codeshare.backend import Backend
from codeshare.config import settings
from codeshare.errors import LinkDeletedError, LinkError, LinkExpiredError, LinkNotFoundError
from codeshare.models import Code, Group, ShareLink, ViewPhase, ViewState
from codeshare.realtime import RealtimeHub
from codeshare.share_links import (
    check_link,
    format_time_remaining,
    is_nearing_expiry,
    remaining_ms,
    status_message,
)
from codeshare.sync import SyncChannel

logger = logging.getLogger(__name__)

Listener = Callable[[ViewState], Any]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ViewContext:
    """Who is looking at what. The email comes from the request, if any."""
    group_id: UUID
    token: str | None
    user_email: str | None = None


class SharedViewController:
    def __init__(
        self,
        backend: Backend,
        hub: RealtimeHub,
        context: ViewContext,
        *,
        recheck_interval_s: float | None = None,
        countdown_interval_s: float = 1.0,
        clock: Callable[[], datetime] = utcnow,
        register_view: bool = True,
    ) -> None:
        self.backend = backend
        self.hub = hub
        self.context = context
        self.recheck_interval_s = recheck_interval_s if recheck_interval_s is not None else settings.link_recheck_interval_s
        self.countdown_interval_s = countdown_interval_s
        self.clock = clock
        # False when a reconnecting stream resumes a view it already registered
        self.register_view = register_view

        self.state = ViewState()
        self.share_link: ShareLink | None = None
        self.sync: SyncChannel | None = None
        self._active = False
        self._timers: list[asyncio.Task] = []
        self._listeners: list[Listener] = []

    @property
    def is_active(self) -> bool:
        return self._active

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener`` with every new state. Returns a remover."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def start(self) -> SharedViewController:
        if self._active:
            return self
        self._active = True
        ctx = self.context

        if not ctx.token:
            self._fail(LinkNotFoundError("Invalid link parameters"))
            return self

        try:
            link = check_link(
                await self.backend.get_share_link(ctx.group_id, ctx.token), ctx.user_email, self.clock()
            )
            if not self._active:
                return self

            if self.register_view:
                link = await self.backend.register_share_link_view(ctx.group_id, ctx.token)
                if not self._active:
                    return self
            self.share_link = link

            group = await self.backend.get_group(ctx.group_id)
            if group is None:
                raise LinkNotFoundError()
            try:
                latest = await self.backend.fetch_latest_code(ctx.group_id)
            except Exception:
                logger.warning("Error fetching code for group %s", ctx.group_id, exc_info=True)
                latest = None
        except LinkError as e:
            logger.info("Shared view of group %s refused: %s", ctx.group_id, e)
            self._fail(e)
            return self
        except Exception:
            logger.warning("Failed to load shared group %s", ctx.group_id, exc_info=True)
            self._fail(LinkError("Failed to load shared group"))
            return self

        if not self._active:
            return self
        self._ready(group, latest)
        if not self._active:
            return self

        self.sync = SyncChannel(
            self.backend,
            self.hub,
            ctx.group_id,
            link.id,
            on_code=self._on_code,
            on_deleted=self._on_deleted,
            poll_interval_s=self.recheck_interval_s,
        ).start()
        self.sync.seen(latest)
        self._timers.append(asyncio.create_task(self._recheck_loop(), name=f"view-recheck-{link.id}"))
        if link.expires_at is not None:
            self._timers.append(asyncio.create_task(self._countdown_loop(), name=f"view-countdown-{link.id}"))
        return self

    def close(self) -> None:
        self._active = False
        self._teardown()

    async def revalidate(self) -> bool:
        """Re-read the link from the backend and re-apply the access rules."""
        if not self._active:
            return False
        ctx = self.context
        try:
            link = await self.backend.get_share_link(ctx.group_id, ctx.token or "")
        except Exception:
            logger.warning("Error re-validating link for group %s", ctx.group_id, exc_info=True)
            return True
        if not self._active:
            return False
        if link is None:
            self._fail(LinkDeletedError())
            return False
        try:
            check_link(link, ctx.user_email, self.clock())
        except LinkError as e:
            self._fail(e)
            return False
        return True

    # --- state transitions ---

    def _ready(self, group: Group, latest: Code | None) -> None:
        link = self.share_link
        self._set(
            phase=ViewPhase.READY,
            error=None,
            is_deletion=False,
            group=group,
            latest_code=latest,
            one_time_view=bool(link and link.one_time_view),
        )
        self._update_countdown()

    def _fail(self, error: LinkError) -> None:
        if not self._active:
            return
        self._set(
            phase=ViewPhase.ERROR,
            error=error.reason,
            error_kind=error.kind,
            is_deletion=error.is_deletion,
            group=None,
            latest_code=None,
            time_remaining_text=None,
            nearing_expiry=False,
        )
        self.close()

    def _on_code(self, code: Code) -> None:
        logger.debug("Shared view of group %s now shows code %s", self.context.group_id, code.id)
        self._set(latest_code=code)

    def _on_deleted(self) -> None:
        self._fail(LinkDeletedError())

    def _update_countdown(self) -> None:
        link = self.share_link
        if link is None or not self._active:
            return
        ms = remaining_ms(link, self.clock())
        if ms is not None and ms <= 0:
            self._set(link_time_remaining_ms=0, status_message=status_message(link, 0))
            self._fail(LinkExpiredError())
            return
        self._set(
            link_time_remaining_ms=ms,
            time_remaining_text=format_time_remaining(ms) if ms is not None else None,
            status_message=status_message(link, ms),
            nearing_expiry=is_nearing_expiry(ms),
        )

    def _set(self, **changes: Any) -> bool:
        if not self._active:
            return False
        self.state = self.state.model_copy(update=changes)
        for listener in list(self._listeners):
            try:
                listener(self.state)
            except Exception:
                logger.warning("Shared view listener failed", exc_info=True)
        return True

    def _teardown(self) -> None:
        for task in self._timers:
            task.cancel()
        self._timers.clear()
        if self.sync is not None:
            self.sync.close()
            self.sync = None

    # --- timers ---

    async def _countdown_loop(self) -> None:
        while self._active:
            await asyncio.sleep(self.countdown_interval_s)
            self._update_countdown()

    async def _recheck_loop(self) -> None:
        while self._active:
            await asyncio.sleep(self.recheck_interval_s)
            await self.revalidate()
