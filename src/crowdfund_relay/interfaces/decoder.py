"""EventDecoder protocol - raw logs to typed ledger events."""

from __future__ import annotations

from typing import Any, Protocol

from crowdfund_relay.models.events import EventKind, LedgerEvent


class EventDecoder(Protocol):

    def topic_for(self, kind: EventKind) -> str:
        """topic0 (0x-prefixed keccak of the event signature)."""
        ...

    def decode(self, kind: EventKind, log: dict[str, Any]) -> LedgerEvent | None:
        """Decode one log. Returns None if the log is malformed or removed."""
        ...
