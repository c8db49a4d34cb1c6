"""NotificationDispatcher protocol - posts updates to the messaging platform."""

from __future__ import annotations

from typing import Protocol

from crowdfund_relay.models.records import MessageHandle


class NotificationDispatcher(Protocol):
    """Failures are raised as DispatchError and never affect stored state."""

    async def start(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def is_ready(self) -> bool:
        """True when the platform client can currently deliver messages."""
        ...

    async def send(self, entity_address: str | None, message: str) -> MessageHandle:
        ...

    async def reply(self, handle: MessageHandle, message: str) -> None:
        ...
