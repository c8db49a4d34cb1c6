"""Internal record types for state persistence and operation results."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class CrowdfundStatus(str, Enum):
    """Lifecycle of a tracked crowdfund. Terminal states never change."""

    ACTIVE = "active"
    FINALIZED = "finalized"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self is not CrowdfundStatus.ACTIVE


class AppendResult(str, Enum):
    """Outcome of append_contribution_if_new."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class Contribution:
    """A single contribution as observed on the ledger. Immutable once stored."""

    contributor: str
    amount: int  # wei
    running_total: int  # wei, ledger total after this contribution
    timestamp: str  # ISO 8601, observation time
    transaction_hash: str
    block_number: int = 0


@dataclass
class CrowdfundRecord:
    """A tracked crowdfund as persisted in the state store."""

    address: str
    status: CrowdfundStatus = CrowdfundStatus.ACTIVE
    creator: str | None = None
    party: str | None = None
    token_name: str | None = None
    token_symbol: str | None = None
    total_supply: int | None = None
    token_address: str | None = None
    message_id: str | None = None
    thread_id: str | None = None
    total_contributed: int = 0  # wei
    contributions: list[Contribution] = field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""


@dataclass(frozen=True)
class MessageHandle:
    """Opaque reference to a notification posted on the messaging platform."""

    message_id: str
    thread_id: str | None = None


@dataclass
class ActivityRecord:
    """A single activity log entry."""

    id: int
    event_type: str
    address: str | None
    tx_hash: str | None
    amount: int | None  # wei
    message: str
    created_at: str
