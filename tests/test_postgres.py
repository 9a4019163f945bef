"""PostgresBackend, schema functions and the change feed against a real database.

Skipped unless DATABASE_URL points at a PostgreSQL the tests may write to.
Each test creates its own group and deletes it afterwards (rows cascade).
"""

from __future__ import annotations

import asyncio
import os
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from codeshare.backend import CODES, SHARED_LINKS
from codeshare.config import Settings
from codeshare.crypto import generate_master_key
from codeshare.db import apply_schema, close_pool, execute, execute_one, init_pool
from codeshare.errors import LinkAlreadyUsedError, LinkExpiredError, LinkNotFoundError
from codeshare.models import Group, ShareLinkCreate
from codeshare.realtime import DELETE, INSERT, PostgresChangeFeed, RealtimeHub
from codeshare.repository import PostgresBackend

from tests.conftest import RFC_SECRET

pytestmark = pytest.mark.skipif(
    not os.environ.get("DATABASE_URL"),
    reason="needs a PostgreSQL database (set DATABASE_URL)",
)


@pytest.fixture
async def pg(monkeypatch):
    monkeypatch.setattr(
        "codeshare.crypto.settings", Settings(_env_file=None, codeshare_master_key=generate_master_key())
    )
    apply_schema()
    await init_pool(min_size=1, max_size=6)
    try:
        yield PostgresBackend()
    finally:
        await close_pool()


@pytest.fixture
async def pg_group(pg):
    row = await execute_one(
        "INSERT INTO groups (title) VALUES (%s) RETURNING id, title, description, created_by, created_at",
        (f"test-{uuid4()}",),
    )
    group = Group(**row)
    try:
        yield group
    finally:
        await execute("DELETE FROM groups WHERE id = %s", (group.id,))


async def test_update_model_code_appends_on_change(pg, pg_group):
    model = await pg.add_model(pg_group.id, "aws-root", RFC_SECRET)
    assert await pg.get_model_secret(model.id) == RFC_SECRET

    assert await pg.update_model_code(model.id, "111111") is True
    assert await pg.update_model_code(model.id, "111111") is True
    assert await pg.update_model_code(model.id, "222222") is True

    rows = await execute("SELECT code FROM codes WHERE group_id = %s ORDER BY created_at", (pg_group.id,))
    assert [r["code"] for r in rows] == ["111111", "222222"]
    assert (await pg.fetch_latest_code(pg_group.id)).code == "222222"


async def test_update_unknown_model_is_soft_failure(pg):
    assert await pg.update_model_code(uuid4(), "111111") is False


async def test_register_view_errors(pg, pg_group):
    with pytest.raises(LinkNotFoundError):
        await pg.register_share_link_view(pg_group.id, "missing")

    past = datetime.now(timezone.utc) - timedelta(minutes=1)
    expired = await pg.create_share_link(pg_group.id, ShareLinkCreate(expires_at=past))
    with pytest.raises(LinkExpiredError):
        await pg.register_share_link_view(pg_group.id, expired.access_token)


async def test_one_time_view_is_atomic(pg, pg_group):
    link = await pg.create_share_link(pg_group.id, ShareLinkCreate(one_time_view=True))

    results = await asyncio.gather(
        *(pg.register_share_link_view(pg_group.id, link.access_token) for _ in range(5)),
        return_exceptions=True,
    )

    successes = [r for r in results if not isinstance(r, Exception)]
    assert len(successes) == 1
    assert all(isinstance(r, LinkAlreadyUsedError) for r in results if isinstance(r, Exception))
    assert (await pg.get_share_link(pg_group.id, link.access_token)).views_count == 1


async def test_change_feed_relays_trigger_notifications(pg, pg_group):
    hub = RealtimeHub()
    received: asyncio.Queue = asyncio.Queue()
    hub.subscribe(CODES, INSERT, {"group_id": pg_group.id}, received.put_nowait)
    feed = PostgresChangeFeed(hub, reconnect_delay_s=0.1)
    feed.start()
    try:
        await asyncio.sleep(1.0)  # LISTEN in place

        model = await pg.add_model(pg_group.id, "aws-root", RFC_SECRET)
        await pg.update_model_code(model.id, "333333")
        event = await asyncio.wait_for(received.get(), timeout=5)
        assert event.record["code"] == "333333"

        link = await pg.create_share_link(pg_group.id, ShareLinkCreate())
        hub.subscribe(SHARED_LINKS, DELETE, {"id": link.id}, received.put_nowait)
        assert await pg.delete_share_link(link.id) is True
        event = await asyncio.wait_for(received.get(), timeout=5)
        assert event.record == {"id": str(link.id), "group_id": str(pg_group.id)}
    finally:
        await feed.stop()
