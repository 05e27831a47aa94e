import asyncio

import pytest

from memostore.core.locks import KeyedLock


@pytest.mark.asyncio
async def test_same_key_is_serialized_in_arrival_order() -> None:
    locks = KeyedLock()
    order: list[str] = []

    async def worker(name: str) -> None:
        async with locks.hold("alice"):
            order.append(f"{name}:start")
            await asyncio.sleep(0.01)
            order.append(f"{name}:end")

    await asyncio.gather(worker("a"), worker("b"), worker("c"))

    assert order == ["a:start", "a:end", "b:start", "b:end", "c:start", "c:end"]


@pytest.mark.asyncio
async def test_different_keys_do_not_block_each_other() -> None:
    locks = KeyedLock()
    inside = asyncio.Event()

    async def holder() -> None:
        async with locks.hold("alice"):
            await asyncio.wait_for(inside.wait(), timeout=1)

    async def other() -> None:
        async with locks.hold("bob"):
            assert locks.is_held("alice")
            inside.set()

    await asyncio.gather(holder(), other())


@pytest.mark.asyncio
async def test_lock_entries_are_dropped_when_idle() -> None:
    locks = KeyedLock()

    async with locks.hold("alice"):
        assert len(locks) == 1
        assert locks.is_held("alice")

    assert len(locks) == 0
    assert not locks.is_held("alice")


@pytest.mark.asyncio
async def test_lock_is_released_when_body_raises() -> None:
    locks = KeyedLock()

    with pytest.raises(RuntimeError):
        async with locks.hold("alice"):
            raise RuntimeError("boom")

    assert len(locks) == 0
    async with locks.hold("alice"):
        pass
