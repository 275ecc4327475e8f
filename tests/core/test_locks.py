"""Tests for per-key asyncio locks."""
import asyncio

import pytest

from marketchat.core.locks import KeyedLock


@pytest.mark.asyncio
async def test_same_key_is_serialized():
    locks = KeyedLock("test")
    order = []

    async def worker(name: str):
        async with locks.acquire(1):
            order.append(f"{name}-in")
            await asyncio.sleep(0.01)
            order.append(f"{name}-out")

    await asyncio.gather(worker("a"), worker("b"))

    assert order in (
        ["a-in", "a-out", "b-in", "b-out"],
        ["b-in", "b-out", "a-in", "a-out"],
    )


@pytest.mark.asyncio
async def test_different_keys_run_concurrently():
    locks = KeyedLock("test")
    inside = asyncio.Event()
    release = asyncio.Event()

    async def holder():
        async with locks.acquire("a"):
            inside.set()
            await release.wait()

    task = asyncio.create_task(holder())
    await inside.wait()

    # "b" is free while "a" is held
    async with locks.acquire("b"):
        assert locks.locked("a")
        assert locks.locked("b")

    release.set()
    await task


@pytest.mark.asyncio
async def test_registry_drops_released_keys():
    locks = KeyedLock("test")

    async with locks.acquire((None, 1, 2)):
        assert len(locks) == 1

    assert len(locks) == 0
    assert not locks.locked((None, 1, 2))


@pytest.mark.asyncio
async def test_lock_released_when_body_raises():
    locks = KeyedLock("test")

    with pytest.raises(RuntimeError):
        async with locks.acquire(7):
            raise RuntimeError("boom")

    assert len(locks) == 0
    async with locks.acquire(7):
        pass
