import asyncio

import pytest

from covpipe.agents.concurrency import ConcurrencyController
from covpipe.core.errors import RunCancelled


def test_epochs_increase_per_group():
    controller = ConcurrencyController()
    a1 = controller.acquire("wf-refs/heads/main")
    a2 = controller.acquire("wf-refs/heads/main")
    b1 = controller.acquire("wf-refs/pull/1/merge")

    assert (a1.epoch, a2.epoch, b1.epoch) == (1, 2, 1)
    assert not a1.is_current()
    assert a2.is_current()
    assert b1.is_current()


def test_ensure_current_raises_for_superseded():
    controller = ConcurrencyController()
    old = controller.acquire("g")
    controller.acquire("g")

    with pytest.raises(RunCancelled) as exc_info:
        old.ensure_current("package-handoff")
    assert exc_info.value.step == "package-handoff"


def test_bind_cancels_previous_task():
    controller = ConcurrencyController()

    async def scenario():
        first_token = controller.acquire("g")
        first = asyncio.get_running_loop().create_task(asyncio.sleep(10))
        controller.bind(first_token, first)

        second_token = controller.acquire("g")
        second = asyncio.get_running_loop().create_task(asyncio.sleep(0))
        controller.bind(second_token, second)

        with pytest.raises(asyncio.CancelledError):
            await first
        await second
        return first, second

    first, second = asyncio.run(scenario())
    assert first.cancelled()
    assert not second.cancelled()


def test_other_groups_not_cancelled():
    controller = ConcurrencyController()

    async def scenario():
        a = asyncio.get_running_loop().create_task(asyncio.sleep(0.01))
        controller.bind(controller.acquire("pr-1"), a)
        b = asyncio.get_running_loop().create_task(asyncio.sleep(0.01))
        controller.bind(controller.acquire("pr-2"), b)
        await asyncio.gather(a, b)
        return a, b

    a, b = asyncio.run(scenario())
    assert not a.cancelled()
    assert not b.cancelled()


def test_release_only_by_current_owner():
    controller = ConcurrencyController()

    async def scenario():
        old = controller.acquire("g")
        controller.bind(old, asyncio.get_running_loop().create_task(asyncio.sleep(0)))
        new = controller.acquire("g")
        task = asyncio.get_running_loop().create_task(asyncio.sleep(10))
        controller.bind(new, task)

        controller.release(old)
        assert controller.in_flight("g") is task

        controller.release(new)
        assert controller.in_flight("g") is None
        task.cancel()

    asyncio.run(scenario())
