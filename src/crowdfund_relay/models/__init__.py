"""Data models for the crowdfund_relay service."""

from crowdfund_relay.models.events import ENTITY_KINDS, EventKind, LedgerEvent
from crowdfund_relay.models.records import (
    ActivityRecord,
    AppendResult,
    Contribution,
    CrowdfundRecord,
    CrowdfundStatus,
    MessageHandle,
)
from crowdfund_relay.models.config import (
    DiscordConfig,
    HealthConfig,
    LedgerConfig,
    ReconnectConfig,
    RelayConfig,
)

__all__ = [
    "ENTITY_KINDS", "EventKind", "LedgerEvent",
    "ActivityRecord", "AppendResult", "Contribution", "CrowdfundRecord",
    "CrowdfundStatus", "MessageHandle",
    "DiscordConfig", "HealthConfig", "LedgerConfig", "ReconnectConfig",
    "RelayConfig",
]
