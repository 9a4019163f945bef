"""Resume keys for shared-view SSE streams.

A browser ``EventSource`` reconnects on its own after a dropped connection and
sends the last event id it saw as ``Last-Event-ID``. Streams use a resume key
as that id, so a reconnect from the same page continues the view it already
registered instead of consuming a one-time link a second time.
"""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass
from uuid import UUID

from codeshare.config import settings

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    group_id: UUID
    token: str
    released_at: float | None = None  # None while a stream holds the key


class ResumeRegistry:
    def __init__(self, ttl_s: float | None = None, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_s = ttl_s if ttl_s is not None else settings.stream_resume_ttl_s
        self.clock = clock
        self._entries: dict[str, _Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def issue(self, group_id: UUID, token: str) -> str:
        self._purge()
        key = secrets.token_urlsafe(18)
        self._entries[key] = _Entry(group_id, token)
        return key

    def claim(self, key: str | None, group_id: UUID, token: str | None) -> bool:
        """Take over ``key`` for a reconnecting stream of the same link."""
        if not key:
            return False
        self._purge()
        entry = self._entries.get(key)
        if entry is None or entry.group_id != group_id or entry.token != token:
            return False
        entry.released_at = None
        logger.debug("Resumed shared view of group %s", group_id)
        return True

    def release(self, key: str) -> None:
        """The stream went away; the key stays claimable for ``ttl_s``."""
        entry = self._entries.get(key)
        if entry is not None:
            entry.released_at = self.clock()

    def discard(self, key: str) -> None:
        self._entries.pop(key, None)

    def _purge(self) -> None:
        cutoff = self.clock() - self.ttl_s
        stale = [k for k, e in self._entries.items() if e.released_at is not None and e.released_at < cutoff]
        for key in stale:
            del self._entries[key]
