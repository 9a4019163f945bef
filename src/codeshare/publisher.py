"""Code publisher — keeps a model's current TOTP code generated and stored.

Per model, one ``CodePublisher`` runs two timers on the event loop:
  1. a tick (1s) recomputing the countdown and regenerating when the
     30-second window rolls over
  2. a force refresh (30s) as a backstop against drift or missed ticks

Each refresh cycle: generate -> show -> persist. A failed persist marks the
code stale but keeps showing it; the next scheduled cycle retries.

Writes to state are gated on the publisher still being active and on no
later-started cycle having written already, so a slow cycle can never
overwrite a newer code or touch state after ``close()``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from codeshare.auth.totp import current_epoch, generate_code, time_remaining
from codeshare.backend import Backend
from codeshare.config import settings
from codeshare.errors import InvalidSecretError, PersistFailure
from codeshare.models import PublisherPhase, PublisherState, TimerState

logger = logging.getLogger(__name__)

ERROR_CODE = "Error"


class CodePublisher:
    """Refresh loop for one (secret, model) pair. ``close()`` ends it."""

    def __init__(
        self,
        backend: Backend,
        model_id: UUID,
        secret: str | None,
        *,
        tick_s: float | None = None,
        force_refresh_s: float | None = None,
        clock: Callable[[], float] = time.time,
        on_change: Callable[[PublisherState], Any] | None = None,
    ) -> None:
        self.backend = backend
        self.model_id = model_id
        self.secret = secret
        self.tick_s = tick_s if tick_s is not None else settings.publisher_tick_s
        self.force_refresh_s = force_refresh_s if force_refresh_s is not None else settings.publisher_force_refresh_s
        self.clock = clock
        self.on_change = on_change

        self.state = PublisherState(model_id=model_id)
        self.timer = TimerState()
        self._active = False
        self._timers: list[asyncio.Task] = []
        self._inflight: set[asyncio.Task] = set()
        self._started_seq = 0
        self._applied_seq = 0
        self._last_epoch: int | None = None

    @property
    def is_active(self) -> bool:
        return self._active

    def start(self) -> CodePublisher:
        """Publish immediately, then keep publishing until ``close()``."""
        if self._active:
            return self
        self._active = True
        self._update_timer(self.clock())
        self._schedule_refresh()
        self._timers = [
            asyncio.create_task(self._tick_loop(), name=f"publisher-tick-{self.model_id}"),
            asyncio.create_task(self._force_loop(), name=f"publisher-force-{self.model_id}"),
        ]
        logger.info("Publisher started for model %s", self.model_id)
        return self

    def close(self) -> None:
        """Stop timers and drop results of cycles still in flight."""
        if not self._active:
            return
        self._active = False
        for task in self._timers:
            task.cancel()
        self._timers.clear()
        logger.info("Publisher stopped for model %s", self.model_id)

    async def refresh(self) -> None:
        """Run one generate-and-persist cycle."""
        if not self._active:
            return
        self._started_seq += 1
        seq = self._started_seq
        now = self.clock()
        self._last_epoch = current_epoch(now)

        if not self._apply(seq, phase=PublisherPhase.GENERATING):
            return
        try:
            code = generate_code(self.secret, now)
        except InvalidSecretError as e:
            logger.warning("Cannot generate code for model %s: %s", self.model_id, e)
            self._apply(seq, phase=PublisherPhase.IDLE, code=ERROR_CODE, stale=True, error=str(e))
            return

        if not self._apply(seq, phase=PublisherPhase.PERSISTING, code=code, error=None):
            return

        try:
            if not await self.backend.update_model_code(self.model_id, code):
                raise PersistFailure(f"Code for model {self.model_id} was not stored")
        except Exception as e:
            if self._apply(seq, phase=PublisherPhase.PERSIST_FAILED, stale=True, error=str(e)):
                logger.warning("Failed to store code for model %s; retrying next cycle",
                               self.model_id, exc_info=not isinstance(e, PersistFailure))
            return

        self._apply(
            seq,
            phase=PublisherPhase.PUBLISHED,
            stale=False,
            published_at=datetime.fromtimestamp(now, tz=timezone.utc),
        )

    def _apply(self, seq: int, **changes: Any) -> bool:
        """Write ``changes`` if this cycle may still touch state."""
        if not self._active or seq < self._applied_seq:
            return False
        self._applied_seq = seq
        self.state = self.state.model_copy(update=changes)
        self._notify()
        return True

    def _notify(self) -> None:
        if self.on_change is not None:
            try:
                self.on_change(self.state)
            except Exception:
                logger.warning("Publisher observer failed", exc_info=True)

    def _schedule_refresh(self) -> None:
        task = asyncio.create_task(self.refresh())
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    def _update_timer(self, now: float) -> None:
        self.timer = TimerState(time_remaining=time_remaining(now))
        self.state = self.state.model_copy(update={"time_remaining": self.timer.time_remaining})
        self._notify()

    def _tick(self) -> None:
        if not self._active:
            return
        now = self.clock()
        self._update_timer(now)
        if current_epoch(now) != self._last_epoch:
            self._schedule_refresh()

    async def _tick_loop(self) -> None:
        while self._active:
            await asyncio.sleep(self.tick_s)
            self._tick()

    async def _force_loop(self) -> None:
        while self._active:
            await asyncio.sleep(self.force_refresh_s)
            if self._active:
                self._schedule_refresh()


class PublisherRegistry:
    """One publisher per model for the lifetime of the dashboard process."""

    def __init__(self, backend: Backend) -> None:
        self.backend = backend
        self._publishers: dict[UUID, CodePublisher] = {}

    def get(self, model_id: UUID) -> CodePublisher | None:
        return self._publishers.get(model_id)

    async def start(self, model_id: UUID) -> CodePublisher:
        existing = self._publishers.get(model_id)
        if existing is not None and existing.is_active:
            return existing
        try:
            secret = await self.backend.get_model_secret(model_id)
        except InvalidSecretError as e:
            # Publish anyway so the display shows the error code.
            logger.warning("Secret for model %s unusable: %s", model_id, e)
            secret = ""
        if secret is None:
            raise LookupError(f"Model {model_id} not found or has no secret")
        publisher = CodePublisher(self.backend, model_id, secret).start()
        self._publishers[model_id] = publisher
        return publisher

    async def start_all(self) -> int:
        started = 0
        for model in await self.backend.list_models():
            try:
                await self.start(model.id)
                started += 1
            except LookupError:
                logger.info("Skipping model %s (%s): no secret", model.id, model.name)
        logger.info("Started %d publishers", started)
        return started

    def stop(self, model_id: UUID) -> bool:
        publisher = self._publishers.pop(model_id, None)
        if publisher is None:
            return False
        publisher.close()
        return True

    def stop_all(self) -> None:
        for publisher in self._publishers.values():
            publisher.close()
        self._publishers.clear()

    def status(self) -> dict[str, Any]:
        """Publisher status for dashboard/API."""
        return {
            "running": len(self._publishers),
            "publishers": {
                str(model_id): p.state.model_dump(mode="json") | {"active": p.is_active}
                for model_id, p in self._publishers.items()
            },
        }
