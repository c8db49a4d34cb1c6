"""Event router: per-source ordering, lane concurrency, failure isolation."""

from __future__ import annotations

import asyncio

from crowdfund_relay.models.events import EventKind

from tests.conftest import settle
from tests.factories import CF_A, CF_B, make_contribution_event, tx


async def test_same_source_runs_in_arrival_order(router):
    seen: list[str] = []

    async def slow_handler(event):
        # Yield several times so a concurrent lane could overtake
        for _ in range(3):
            await asyncio.sleep(0)
        seen.append(event.transaction_hash)

    router.register(EventKind.CONTRIBUTED, slow_handler)
    for n in range(1, 6):
        router.submit(make_contribution_event(CF_A, tx_hash=tx(n)))
    await settle(router)

    assert seen == [tx(n) for n in range(1, 6)]


async def test_one_event_at_a_time_per_source(router):
    running = 0
    peak = 0

    async def handler(event):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1

    router.register(EventKind.CONTRIBUTED, handler)
    for n in range(4):
        router.submit(make_contribution_event(CF_A, tx_hash=tx(n)))
    await settle(router)
    assert peak == 1


async def test_different_sources_interleave(router):
    """A blocked lane does not hold up another source."""
    gate = asyncio.Event()
    done: list[str] = []

    async def handler(event):
        if event.source_address == CF_A:
            await gate.wait()
        done.append(event.source_address)

    router.register(EventKind.CONTRIBUTED, handler)
    router.submit(make_contribution_event(CF_A))
    router.submit(make_contribution_event(CF_B))

    for _ in range(10):
        await asyncio.sleep(0)
    assert done == [CF_B]

    gate.set()
    await settle(router)
    assert done == [CF_B, CF_A]


async def test_handler_failure_is_isolated(router):
    """An exception in one event's handler does not stop the lane."""
    seen: list[str] = []

    async def handler(event):
        if event.transaction_hash == tx(1):
            raise RuntimeError("boom")
        seen.append(event.transaction_hash)

    router.register(EventKind.CONTRIBUTED, handler)
    router.submit(make_contribution_event(CF_A, tx_hash=tx(1)))
    router.submit(make_contribution_event(CF_A, tx_hash=tx(2)))
    await settle(router)

    assert seen == [tx(2)]


async def test_unregistered_kind_is_dropped(router):
    assert router.submit(make_contribution_event()) is False
    assert router.active_lanes() == 0


async def test_lanes_are_reaped_when_idle(router):
    async def handler(event):
        pass

    router.register(EventKind.CONTRIBUTED, handler)
    router.submit(make_contribution_event(CF_A))
    router.submit(make_contribution_event(CF_B))
    assert router.active_lanes() == 2
    await settle(router)
    await asyncio.sleep(0)
    assert router.active_lanes() == 0


async def test_drain_timeout_and_stop_accepting(router):
    gate = asyncio.Event()

    async def handler(event):
        await gate.wait()

    router.register(EventKind.CONTRIBUTED, handler)
    router.submit(make_contribution_event(CF_A))
    await asyncio.sleep(0)

    assert await router.drain(0.05) is False

    router.stop_accepting()
    assert router.submit(make_contribution_event(CF_B)) is False

    gate.set()
    assert await router.drain(1.0) is True
    await router.close()
