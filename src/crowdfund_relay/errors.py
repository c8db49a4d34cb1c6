"""Exception taxonomy for the relay.

Connection-level errors escalate to the orchestrator's state machine.
Subscription errors are recoverable on the next rebuild. Store errors are
caller logic errors surfaced to the invoking handler. Dispatch errors are
logged and swallowed by handlers.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for all relay errors."""


# ── Transport ──────────────────────────────────────────────


class StreamConnectionError(RelayError, ConnectionError):
    """The streaming transport could not be established or was lost."""


class NotConnectedError(RelayError):
    """An operation needed an open transport but there is none."""


class RpcError(RelayError):
    """The node answered a JSON-RPC request with an error object."""

    def __init__(self, method: str, code: int | None, message: str) -> None:
        super().__init__(f"{method} failed ({code}): {message}")
        self.method = method
        self.code = code
        self.message = message


class SubscriptionError(RelayError):
    """Per-entity subscriptions could not be created."""

    def __init__(self, address: str, reason: str) -> None:
        super().__init__(f"subscription for {address} failed: {reason}")
        self.address = address
        self.reason = reason


class ReconnectExhaustedError(RelayError):
    """Reconnect attempts exceeded the configured cap."""


# ── State store ────────────────────────────────────────────


class AlreadyExistsError(RelayError):
    def __init__(self, address: str) -> None:
        super().__init__(f"crowdfund {address} is already tracked")
        self.address = address


class NotFoundError(RelayError):
    def __init__(self, address: str) -> None:
        super().__init__(f"crowdfund {address} is not tracked")
        self.address = address


class InvalidTransitionError(RelayError):
    def __init__(self, address: str, current: str, requested: str) -> None:
        super().__init__(
            f"crowdfund {address}: cannot move from {current} to {requested}"
        )
        self.address = address
        self.current = current
        self.requested = requested


# ── Notifications ──────────────────────────────────────────


class DispatchError(RelayError):
    """The messaging platform rejected or failed a notification."""
