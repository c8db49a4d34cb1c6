"""StreamConnection protocol - the single streaming transport to the ledger."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Protocol

LogHandler = Callable[[dict[str, Any]], None]
CloseCallback = Callable[[int, str], None]


@dataclass(frozen=True)
class SubscriptionHandle:
    """A live log subscription, valid only within the epoch that created it."""

    subscription_id: str
    epoch: int
    address: str
    label: str  # event kind or "factory" for diagnostics


class StreamConnection(Protocol):
    """Owns exactly one live transport to the event source."""

    @property
    def epoch(self) -> int:
        """Counter incremented by every successful open()."""
        ...

    @property
    def last_activity(self) -> float:
        """time.monotonic() of the last inbound frame (message or pong)."""
        ...

    def set_close_callback(self, callback: CloseCallback | None) -> None:
        ...

    async def open(self) -> None:
        """Establish the transport. Raises StreamConnectionError on failure."""
        ...

    async def close(self) -> None:
        """Tear down the transport, invalidating every handle of this epoch."""
        ...

    def is_open(self) -> bool:
        ...

    async def subscribe(
        self, log_filter: dict[str, Any], handler: LogHandler, label: str = "",
    ) -> SubscriptionHandle:
        """Create a log subscription. Raises NotConnectedError when closed."""
        ...

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        ...

    async def request(self, method: str, params: list[Any]) -> Any:
        """Plain JSON-RPC call over the transport."""
        ...

    async def probe(self) -> float:
        """Round-trip latency in seconds. Raises StreamConnectionError."""
        ...

    async def ping(self) -> None:
        """Send a keepalive frame."""
        ...
