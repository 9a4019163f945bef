"""Tests for the code publisher refresh loop."""

from __future__ import annotations

import asyncio

import pytest

from codeshare.auth.totp import generate_code
from codeshare.backend import MemoryBackend
from codeshare.models import PublisherPhase
from codeshare.publisher import ERROR_CODE, CodePublisher, PublisherRegistry

from tests.conftest import RFC_SECRET, settle

T0 = 1_700_000_025.0  # 15s into an epoch
NEXT_EPOCH = 1_700_000_040.0


class Clock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class CountingBackend(MemoryBackend):
    def __init__(self) -> None:
        super().__init__()
        self.calls: list[str] = []
        self.result = True

    async def update_model_code(self, model_id, code):
        self.calls.append(code)
        if not self.result:
            return False
        return await super().update_model_code(model_id, code)


class RaisingBackend(MemoryBackend):
    async def update_model_code(self, model_id, code):
        raise ConnectionError("database unavailable")


class BlockingBackend(MemoryBackend):
    """Each update waits on a future the test resolves."""

    def __init__(self) -> None:
        super().__init__()
        self.pending: list[asyncio.Future] = []

    async def update_model_code(self, model_id, code):
        fut = asyncio.get_running_loop().create_future()
        self.pending.append(fut)
        return await fut


def make_publisher(backend, model_id, secret=RFC_SECRET, clock=None, **kwargs):
    kwargs.setdefault("tick_s", 60)
    kwargs.setdefault("force_refresh_s", 60)
    return CodePublisher(backend, model_id, secret, clock=clock or Clock(T0), **kwargs)


@pytest.mark.asyncio
async def test_publishes_immediately_on_start():
    backend = CountingBackend()
    group = backend.add_group("Ops")
    model = backend.add_model(group.id, "aws", RFC_SECRET)

    publisher = make_publisher(backend, model.id).start()
    await settle()

    expected = generate_code(RFC_SECRET, T0)
    assert publisher.state.phase == PublisherPhase.PUBLISHED
    assert publisher.state.code == expected
    assert publisher.state.stale is False
    assert publisher.state.time_remaining == 15
    assert backend.calls == [expected]
    assert backend.models[model.id].code == expected
    latest = await backend.fetch_latest_code(group.id)
    assert latest is not None and latest.code == expected
    publisher.close()


@pytest.mark.asyncio
async def test_persist_failure_keeps_code_and_marks_stale():
    backend = CountingBackend()
    model = backend.add_model(None, "aws", RFC_SECRET)
    backend.result = False

    publisher = make_publisher(backend, model.id).start()
    await settle()

    assert publisher.state.phase == PublisherPhase.PERSIST_FAILED
    assert publisher.state.stale is True
    assert publisher.state.code == generate_code(RFC_SECRET, T0)
    assert publisher.is_active

    # Next scheduled cycle retries with no extra backoff.
    backend.result = True
    await publisher.refresh()
    assert publisher.state.phase == PublisherPhase.PUBLISHED
    assert publisher.state.stale is False
    assert publisher.state.error is None
    publisher.close()


@pytest.mark.asyncio
async def test_persist_exception_is_contained():
    backend = RaisingBackend()
    model = backend.add_model(None, "aws", RFC_SECRET)

    publisher = make_publisher(backend, model.id).start()
    await settle()

    assert publisher.state.phase == PublisherPhase.PERSIST_FAILED
    assert publisher.state.stale is True
    assert "database unavailable" in publisher.state.error
    assert publisher.state.code == generate_code(RFC_SECRET, T0)
    assert publisher.is_active
    publisher.close()


@pytest.mark.asyncio
async def test_invalid_secret_shows_error_code():
    backend = CountingBackend()
    model = backend.add_model(None, "broken", "not-base32!")

    publisher = make_publisher(backend, model.id, secret="not-base32!").start()
    await settle()

    assert publisher.state.code == ERROR_CODE
    assert publisher.state.stale is True
    assert backend.calls == []
    assert publisher.is_active
    publisher.close()


@pytest.mark.asyncio
async def test_no_state_change_after_close():
    backend = BlockingBackend()
    model = backend.add_model(None, "aws", RFC_SECRET)

    publisher = make_publisher(backend, model.id).start()
    await settle()
    assert publisher.state.phase == PublisherPhase.PERSISTING
    before = publisher.state

    publisher.close()
    backend.pending[0].set_result(False)
    await settle()

    assert publisher.state == before
    assert publisher.state.stale is False


@pytest.mark.asyncio
async def test_later_started_cycle_wins():
    backend = BlockingBackend()
    model = backend.add_model(None, "aws", RFC_SECRET)
    clock = Clock(T0)

    publisher = make_publisher(backend, model.id, clock=clock).start()
    await settle()

    clock.now = NEXT_EPOCH + 5
    second = asyncio.create_task(publisher.refresh())
    await settle()
    second_code = generate_code(RFC_SECRET, clock.now)
    assert publisher.state.code == second_code
    assert len(backend.pending) == 2

    backend.pending[1].set_result(True)
    await second
    assert publisher.state.phase == PublisherPhase.PUBLISHED

    # The earlier cycle finishing late must not touch the newer state.
    backend.pending[0].set_result(False)
    await settle()
    assert publisher.state.code == second_code
    assert publisher.state.phase == PublisherPhase.PUBLISHED
    assert publisher.state.stale is False
    publisher.close()


@pytest.mark.asyncio
async def test_tick_regenerates_on_window_boundary():
    backend = CountingBackend()
    model = backend.add_model(None, "aws", RFC_SECRET)
    clock = Clock(T0)

    publisher = make_publisher(backend, model.id, clock=clock, tick_s=0.01).start()
    await asyncio.sleep(0.05)
    assert len(backend.calls) == 1

    clock.now = NEXT_EPOCH
    await asyncio.sleep(0.05)
    assert len(backend.calls) == 2
    assert publisher.state.code == generate_code(RFC_SECRET, NEXT_EPOCH)
    assert publisher.state.time_remaining == 0

    # Further ticks inside the same window do not regenerate.
    clock.now = NEXT_EPOCH + 3
    await asyncio.sleep(0.05)
    assert len(backend.calls) == 2
    assert publisher.state.time_remaining == 27
    publisher.close()


@pytest.mark.asyncio
async def test_force_refresh_backstop():
    backend = CountingBackend()
    group = backend.add_group("Ops")
    model = backend.add_model(group.id, "aws", RFC_SECRET)

    publisher = make_publisher(backend, model.id, force_refresh_s=0.02).start()
    await asyncio.sleep(0.15)
    publisher.close()

    assert len(backend.calls) >= 3
    # Same window, same code: only one codes row.
    assert len([c for c in backend.codes if c.group_id == group.id]) == 1


@pytest.mark.asyncio
async def test_close_stops_timers():
    backend = CountingBackend()
    model = backend.add_model(None, "aws", RFC_SECRET)

    publisher = make_publisher(backend, model.id, force_refresh_s=0.01).start()
    await settle()
    publisher.close()
    calls = len(backend.calls)
    await asyncio.sleep(0.05)
    assert len(backend.calls) == calls
    assert not publisher.is_active


@pytest.mark.asyncio
async def test_on_change_observer():
    backend = CountingBackend()
    model = backend.add_model(None, "aws", RFC_SECRET)
    phases = []

    publisher = make_publisher(backend, model.id, on_change=lambda s: phases.append(s.phase)).start()
    await settle()
    publisher.close()

    assert PublisherPhase.GENERATING in phases
    assert PublisherPhase.PERSISTING in phases
    assert phases[-1] == PublisherPhase.PUBLISHED


@pytest.mark.asyncio
async def test_registry_start_stop(backend, model):
    registry = PublisherRegistry(backend)
    publisher = await registry.start(model.id)
    assert await registry.start(model.id) is publisher
    await settle()

    status = registry.status()
    assert status["running"] == 1
    entry = status["publishers"][str(model.id)]
    assert entry["active"] is True
    assert entry["phase"] == "published"

    assert registry.stop(model.id) is True
    assert registry.stop(model.id) is False
    assert not publisher.is_active


@pytest.mark.asyncio
async def test_registry_unknown_model(backend):
    from uuid import uuid4

    registry = PublisherRegistry(backend)
    with pytest.raises(LookupError):
        await registry.start(uuid4())


@pytest.mark.asyncio
async def test_registry_start_all(backend, group):
    backend.add_model(group.id, "a", RFC_SECRET)
    backend.add_model(group.id, "b", RFC_SECRET)
    registry = PublisherRegistry(backend)
    assert await registry.start_all() == 2
    registry.stop_all()
    assert registry.status()["running"] == 0
