"""StateStore protocol - durable crowdfund state and the dedup index."""

from __future__ import annotations

from typing import Protocol

from crowdfund_relay.models.records import (
    ActivityRecord,
    AppendResult,
    Contribution,
    CrowdfundRecord,
    CrowdfundStatus,
)


class StateStore(Protocol):
    """Persists crowdfund records across restarts.

    Updates to a single record are linearizable; updates to different
    records are independent.
    """

    # ── Lifecycle ──────────────────────────────────────────

    async def initialize(self) -> None:
        """Create tables if they don't exist."""
        ...

    async def close(self) -> None:
        ...

    # ── Crowdfunds ─────────────────────────────────────────

    async def create_entity(
        self,
        address: str,
        message_id: str | None = None,
        *,
        creator: str | None = None,
        party: str | None = None,
        token_name: str | None = None,
        token_symbol: str | None = None,
        total_supply: int | None = None,
    ) -> CrowdfundRecord:
        """Raises AlreadyExistsError if the address is already tracked."""
        ...

    async def get_entity(self, address: str) -> CrowdfundRecord:
        """Raises NotFoundError if the address is not tracked."""
        ...

    async def set_status(
        self, address: str, status: CrowdfundStatus, token_address: str | None = None,
    ) -> bool:
        """Move to a terminal status. Returns False for a same-status replay."""
        ...

    async def attach_message(
        self, address: str, message_id: str, thread_id: str | None = None,
    ) -> bool:
        """Set the notification handles once. Returns False if already set."""
        ...

    async def append_contribution_if_new(
        self, address: str, contribution: Contribution,
    ) -> AppendResult:
        ...

    async def list_active_addresses(self) -> set[str]:
        ...

    async def list_entities(
        self, status: CrowdfundStatus | None = None,
    ) -> list[CrowdfundRecord]:
        ...

    # ── Activity log ───────────────────────────────────────

    async def log_activity(
        self,
        event_type: str,
        message: str,
        address: str | None = None,
        tx_hash: str | None = None,
        amount: int | None = None,
    ) -> None:
        ...

    async def get_recent_activity(self, limit: int = 50) -> list[ActivityRecord]:
        ...
