"""Mock implementations of all external-facing components."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

from crowdfund_relay.errors import (
    DispatchError,
    NotConnectedError,
    RpcError,
    StreamConnectionError,
)
from crowdfund_relay.interfaces.stream import CloseCallback, LogHandler, SubscriptionHandle
from crowdfund_relay.models.records import MessageHandle


def _topic_set(entry: Any) -> set[str]:
    if isinstance(entry, str):
        return {entry.lower()}
    return {t.lower() for t in entry}


@dataclass
class _Sub:
    handle: SubscriptionHandle
    log_filter: dict[str, Any]
    handler: LogHandler


class MockConnection:
    """Implements StreamConnection in memory.

    Subscriptions live only within the current epoch; drop() simulates the
    node closing the socket and emit() delivers a raw log to every matching
    live subscription.
    """

    def __init__(self) -> None:
        self._epoch = 0
        self._open = False
        self._on_close: CloseCallback | None = None
        self._next_id = 0
        self.last_activity = time.monotonic()

        self.open_failures = 0  # upcoming open() calls that raise
        self.subscribe_failures: set[str] = set()  # addresses whose subscribe raises
        self.probe_error: Exception | None = None
        self.responses: dict[str, Any] = {"eth_blockNumber": "0x3e8"}

        self.subs: dict[str, _Sub] = {}
        self.unsubscribed: list[SubscriptionHandle] = []
        self.requests: list[tuple[str, list]] = []
        self.call_log: list[str] = []
        self.open_calls = 0
        self.close_calls = 0
        self.pings = 0

    @property
    def epoch(self) -> int:
        return self._epoch

    def set_close_callback(self, callback: CloseCallback | None) -> None:
        self._on_close = callback

    async def open(self) -> None:
        self.open_calls += 1
        self.call_log.append("open")
        if self.open_failures > 0:
            self.open_failures -= 1
            raise StreamConnectionError("mock open failure")
        self._epoch += 1
        self._open = True
        self.subs.clear()
        self.last_activity = time.monotonic()

    async def close(self) -> None:
        self.close_calls += 1
        self._open = False
        self.subs.clear()

    def is_open(self) -> bool:
        return self._open

    async def subscribe(
        self, log_filter: dict[str, Any], handler: LogHandler, label: str = "",
    ) -> SubscriptionHandle:
        if not self._open:
            raise NotConnectedError("mock stream is closed")
        address = str(log_filter["address"]).lower()
        self.call_log.append(f"subscribe:{label}:{address}")
        if address in self.subscribe_failures:
            raise RpcError("eth_subscribe", -32000, "mock subscribe failure")
        self._next_id += 1
        handle = SubscriptionHandle(f"0x{self._next_id:x}", self._epoch, address, label)
        self.subs[handle.subscription_id] = _Sub(handle, log_filter, handler)
        return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        self.unsubscribed.append(handle)
        if handle.epoch == self._epoch:
            self.subs.pop(handle.subscription_id, None)

    async def request(self, method: str, params: list[Any]) -> Any:
        self.requests.append((method, params))
        if not self._open:
            raise NotConnectedError("mock stream is closed")
        value = self.responses.get(method)
        if isinstance(value, Exception):
            raise value
        return value

    async def probe(self) -> float:
        if self.probe_error is not None:
            raise self.probe_error
        if not self._open:
            raise StreamConnectionError("mock stream is closed")
        return 0.01

    async def ping(self) -> None:
        if not self._open:
            raise NotConnectedError("mock stream is closed")
        self.pings += 1
        self.last_activity = time.monotonic()

    # ── Test helpers ──────────────────────────────────────

    def live(self) -> list[tuple[str, str]]:
        """(address, label) for every subscription of the current epoch."""
        return sorted((s.handle.address, s.handle.label) for s in self.subs.values())

    def live_for(self, address: str) -> list[str]:
        return sorted(s.handle.label for s in self.subs.values() if s.handle.address == address.lower())

    def emit(self, log_entry: dict[str, Any]) -> int:
        """Deliver a raw log to matching subscriptions. Returns delivery count."""
        address = str(log_entry["address"]).lower()
        topic0 = str(log_entry["topics"][0]).lower()
        delivered = 0
        for sub in list(self.subs.values()):
            if str(sub.log_filter["address"]).lower() != address:
                continue
            topics = sub.log_filter.get("topics") or []
            if topics and topic0 not in _topic_set(topics[0]):
                continue
            sub.handler(log_entry)
            delivered += 1
        self.last_activity = time.monotonic()
        return delivered

    def drop(self, reason: str = "mock server close") -> None:
        """Simulate the node closing the socket."""
        epoch = self._epoch
        self._open = False
        self.subs.clear()
        if self._on_close is not None:
            self._on_close(epoch, reason)


class MockNotifier:
    """Implements NotificationDispatcher. Records every message."""

    def __init__(self, fail: bool = False, ready: bool = True) -> None:
        self.fail = fail
        self.ready = ready
        self.started = False
        self.closed = False
        self.start_calls = 0
        self.sent: list[tuple[str | None, str]] = []
        self.replies: list[tuple[MessageHandle, str]] = []
        self._count = 0

    async def start(self) -> None:
        self.start_calls += 1
        self.started = True
        self.closed = False

    async def close(self) -> None:
        self.closed = True

    async def is_ready(self) -> bool:
        return self.ready

    async def send(self, entity_address: str | None, message: str) -> MessageHandle:
        if self.fail:
            raise DispatchError("mock dispatch failure")
        self._count += 1
        self.sent.append((entity_address, message))
        thread = f"thread-{self._count}" if entity_address else None
        return MessageHandle(message_id=f"msg-{self._count}", thread_id=thread)

    async def reply(self, handle: MessageHandle, message: str) -> None:
        if self.fail:
            raise DispatchError("mock dispatch failure")
        self.replies.append((handle, message))


class MockQueries:
    """Implements the LedgerQueries surface with canned answers."""

    def __init__(self) -> None:
        self.totals: dict[str, int] = {}  # missing -> query failure (None)
        self.tokens: dict[str, str] = {}
        self.head: int | None = 1000
        self.logs: list[dict[str, Any]] = []
        self.total_calls: list[tuple[str, int | None]] = []
        self.get_logs_calls: list[tuple[str, list, int, int | None]] = []

    async def total_contributed(self, crowdfund: str, block: int | None = None) -> int | None:
        self.total_calls.append((crowdfund, block))
        return self.totals.get(crowdfund.lower())

    async def crowdfund_token(self, crowdfund: str) -> str | None:
        return self.tokens.get(crowdfund.lower())

    async def block_number(self) -> int | None:
        return self.head

    async def get_logs(
        self, address: str, topics: list[Any], from_block: int, to_block: int | None = None,
    ) -> list[dict[str, Any]]:
        self.get_logs_calls.append((address, topics, from_block, to_block))
        return [entry for entry in self.logs if entry["address"].lower() == address.lower()]
