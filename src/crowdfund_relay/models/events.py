"""Ledger event models decoded from the log stream."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventKind(str, Enum):
    """Kinds of ledger logs the relay subscribes to."""

    CROWDFUND_CREATED = "crowdfund_created"  # factory-level
    TOKEN_CREATED = "token_created"  # factory-level
    PRESALE_CREATED = "presale_created"  # presale contract
    PRESALE_PURCHASE = "presale_purchase"  # presale contract
    CONTRIBUTED = "contributed"  # per crowdfund
    FINALIZED = "finalized"  # per crowdfund
    REFUNDED = "refunded"  # per crowdfund


# Kinds that need one live subscription per active crowdfund
ENTITY_KINDS: tuple[EventKind, ...] = (
    EventKind.CONTRIBUTED,
    EventKind.FINALIZED,
    EventKind.REFUNDED,
)


@dataclass(frozen=True)
class LedgerEvent:
    """A decoded log: typed kind, emitting address and named fields."""

    kind: EventKind
    source_address: str  # lowercase 0x address of the emitting contract
    transaction_hash: str
    block_number: int
    log_index: int = 0
    fields: dict[str, Any] = field(default_factory=dict)
