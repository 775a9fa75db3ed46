import asyncio

import pytest

from app.core.locks import KeyedLocks


@pytest.mark.asyncio
async def test_locks_are_dropped_after_release():
    locks = KeyedLocks()

    async with locks.hold(["b", "a"]):
        assert len(locks) == 2

    assert len(locks) == 0


@pytest.mark.asyncio
async def test_waiter_keeps_lock_until_it_is_done():
    locks = KeyedLocks()
    order = []
    first_inside = asyncio.Event()
    release_first = asyncio.Event()

    async def first():
        async with locks.hold(["item"]):
            order.append("first")
            first_inside.set()
            await release_first.wait()

    async def second():
        await first_inside.wait()
        async with locks.hold(["item"]):
            order.append("second")

    tasks = [asyncio.create_task(first()), asyncio.create_task(second())]
    await first_inside.wait()
    await asyncio.sleep(0)
    assert len(locks) == 1
    release_first.set()
    await asyncio.gather(*tasks)

    assert order == ["first", "second"]
    assert len(locks) == 0
