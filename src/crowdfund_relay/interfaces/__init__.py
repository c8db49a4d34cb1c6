"""Protocol interfaces for all crowdfund_relay components."""

from crowdfund_relay.interfaces.stream import (
    CloseCallback,
    LogHandler,
    StreamConnection,
    SubscriptionHandle,
)
from crowdfund_relay.interfaces.store import StateStore
from crowdfund_relay.interfaces.notifier import NotificationDispatcher
from crowdfund_relay.interfaces.decoder import EventDecoder

__all__ = [
    "CloseCallback", "LogHandler", "StreamConnection", "SubscriptionHandle",
    "StateStore",
    "NotificationDispatcher",
    "EventDecoder",
]
