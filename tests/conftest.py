"""Shared fixtures: an in-memory backend seeded with one group and model."""

from __future__ import annotations

import asyncio

import pytest

from codeshare.backend import MemoryBackend

# RFC 6238 test secret ("12345678901234567890" in base32)
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


async def settle(rounds: int = 10) -> None:
    """Let pending callbacks and tasks on the loop run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def backend() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture
def group(backend):
    return backend.add_group("Ops", "Shared ops accounts")


@pytest.fixture
def model(backend, group):
    return backend.add_model(group.id, "aws-root", RFC_SECRET)
