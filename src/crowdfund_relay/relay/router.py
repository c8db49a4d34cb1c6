"""Event router - dispatch table plus one ordered lane per source address."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from crowdfund_relay.models.events import EventKind, LedgerEvent

log = logging.getLogger(__name__)

EventCallback = Callable[[LedgerEvent], Awaitable[None]]


@dataclass
class _Lane:
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    task: asyncio.Task | None = None


class EventRouter:
    """Routes decoded events to their registered handlers.

    Events from the same source address run one at a time in arrival
    order; different addresses proceed concurrently. A lane's worker
    exits once its queue is empty and is restarted by the next submit().
    """

    def __init__(self) -> None:
        self._handlers: dict[EventKind, list[EventCallback]] = {}
        self._lanes: dict[str, _Lane] = {}
        self._closed = False

    def register(self, kind: EventKind, handler: EventCallback) -> None:
        self._handlers.setdefault(kind, []).append(handler)

    def handles(self, kind: EventKind) -> bool:
        return bool(self._handlers.get(kind))

    def submit(self, event: LedgerEvent) -> bool:
        """Queue an event on its lane. Safe to call from synchronous callbacks."""
        if self._closed:
            log.debug("Router closed, dropping %s from %s", event.kind.value, event.source_address)
            return False
        if not self.handles(event.kind):
            log.debug("No handler for %s", event.kind.value)
            return False

        lane = self._lanes.get(event.source_address)
        if lane is None:
            lane = _Lane()
            self._lanes[event.source_address] = lane
        lane.queue.put_nowait(event)
        if lane.task is None:
            lane.task = asyncio.create_task(
                self._run_lane(event.source_address, lane),
                name=f"lane-{event.source_address[:10]}",
            )
        return True

    def pending(self) -> int:
        return sum(lane.queue.qsize() for lane in self._lanes.values())

    def active_lanes(self) -> int:
        return len(self._lanes)

    async def dispatch(self, event: LedgerEvent) -> None:
        """Run every handler for the event; failures are logged, never raised."""
        for handler in self._handlers.get(event.kind, []):
            try:
                await handler(event)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log.error(
                    "Handler for %s in tx %s failed: %s",
                    event.kind.value, event.transaction_hash, exc, exc_info=True,
                )

    async def _run_lane(self, address: str, lane: _Lane) -> None:
        try:
            while not lane.queue.empty():
                event = lane.queue.get_nowait()
                try:
                    await self.dispatch(event)
                finally:
                    lane.queue.task_done()
        finally:
            if self._lanes.get(address) is lane:
                del self._lanes[address]

    def stop_accepting(self) -> None:
        """Reject new events; queued ones still run."""
        self._closed = True

    async def drain(self, timeout: float) -> bool:
        """Wait for queued events to finish. Returns False on timeout."""
        lanes = list(self._lanes.values())
        if not lanes:
            return True
        try:
            await asyncio.wait_for(
                asyncio.gather(*(lane.queue.join() for lane in lanes)), timeout=timeout,
            )
            return True
        except asyncio.TimeoutError:
            log.warning("Drain timed out with %d event(s) still queued", self.pending())
            return False

    async def close(self) -> None:
        self._closed = True
        tasks = [lane.task for lane in self._lanes.values() if lane.task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._lanes.clear()
