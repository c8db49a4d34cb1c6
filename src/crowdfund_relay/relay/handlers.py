"""Per-kind event handlers: state first, then notification."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from crowdfund_relay.errors import (
    AlreadyExistsError,
    DispatchError,
    InvalidTransitionError,
    NotFoundError,
    SubscriptionError,
)
from crowdfund_relay.interfaces.notifier import NotificationDispatcher
from crowdfund_relay.interfaces.store import StateStore
from crowdfund_relay.ledger.queries import LedgerQueries
from crowdfund_relay.models.events import EventKind, LedgerEvent
from crowdfund_relay.models.records import (
    AppendResult,
    Contribution,
    CrowdfundRecord,
    CrowdfundStatus,
    MessageHandle,
)
from crowdfund_relay.notify import render
from crowdfund_relay.relay.registry import SubscriptionRegistry
from crowdfund_relay.relay.router import EventRouter

log = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class EventHandlers:
    """Applies decoded ledger events to the store and relays notifications.

    Dispatch failures are logged and never undo a state change that has
    already been committed.
    """

    def __init__(
        self,
        store: StateStore,
        registry: SubscriptionRegistry,
        notifier: NotificationDispatcher,
        queries: LedgerQueries | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._notifier = notifier
        self._queries = queries
        # Price per bps of each presale seen by this process, for purchase notices
        self._presale_prices: dict[int, int] = {}

    def register(self, router: EventRouter) -> None:
        router.register(EventKind.CROWDFUND_CREATED, self.on_crowdfund_created)
        router.register(EventKind.CONTRIBUTED, self.on_contributed)
        router.register(EventKind.FINALIZED, self.on_finalized)
        router.register(EventKind.REFUNDED, self.on_refunded)
        router.register(EventKind.TOKEN_CREATED, self.on_token_created)
        router.register(EventKind.PRESALE_CREATED, self.on_presale_created)
        router.register(EventKind.PRESALE_PURCHASE, self.on_presale_purchase)

    # ── Factory events ────────────────────────────────────

    async def on_crowdfund_created(self, event: LedgerEvent) -> None:
        f = event.fields
        address = str(f["crowdfund"]).lower()
        log.info("Crowdfund created: %s (%s) tx=%s", address, f.get("symbol"), event.transaction_hash)

        try:
            record = await self._store.create_entity(
                address,
                creator=f.get("creator"),
                party=f.get("party"),
                token_name=f.get("name"),
                token_symbol=f.get("symbol"),
                total_supply=f.get("total_supply"),
            )
            await self._store.log_activity(
                "crowdfund_created",
                f"Crowdfund {record.token_name or address} created",
                address=address,
                tx_hash=event.transaction_hash,
            )
        except AlreadyExistsError:
            log.info("Crowdfund %s already tracked, treating as replay", address)
            record = await self._store.get_entity(address)

        if record.status is CrowdfundStatus.ACTIVE:
            try:
                await self._registry.add_entity(address)
            except SubscriptionError as exc:
                log.warning("Could not subscribe %s yet: %s", address, exc.reason)

        if record.message_id is not None:
            return
        try:
            handle = await self._notifier.send(address, render.crowdfund_created(record))
        except DispatchError as exc:
            log.warning("Creation notice for %s not delivered: %s", address, exc)
            return
        await self._store.attach_message(address, handle.message_id, handle.thread_id)

    async def on_token_created(self, event: LedgerEvent) -> None:
        f = event.fields
        log.info("Token launched: %s (%s)", f.get("token_address"), f.get("symbol"))
        await self._store.log_activity(
            "token_created",
            f"Token {f.get('name')} ({f.get('symbol')}) launched",
            address=f.get("token_address"),
            tx_hash=event.transaction_hash,
        )
        try:
            await self._notifier.send(None, render.token_created(event))
        except DispatchError as exc:
            log.warning("Token launch notice not delivered: %s", exc)

    # ── Presale events ────────────────────────────────────

    async def on_presale_created(self, event: LedgerEvent) -> None:
        f = event.fields
        presale_id = int(f["presale_id"])
        log.info("Presale %d created: %s (%s)", presale_id, f.get("name"), f.get("symbol"))
        if f.get("eth_per_bps"):
            self._presale_prices[presale_id] = int(f["eth_per_bps"])
        await self._store.log_activity(
            "presale_created",
            f"Presale #{presale_id} {f.get('name')} ({f.get('symbol')}) created",
            address=f.get("deployer"),
            tx_hash=event.transaction_hash,
        )
        try:
            await self._notifier.send(None, render.presale_created(event))
        except DispatchError as exc:
            log.warning("Presale notice not delivered: %s", exc)

    async def on_presale_purchase(self, event: LedgerEvent) -> None:
        f = event.fields
        presale_id = int(f["presale_id"])
        amount = int(f["eth_amount"])
        log.info("Presale %d purchase: %d wei from %s", presale_id, amount, f.get("buyer"))
        await self._store.log_activity(
            "presale_purchase",
            f"{render.format_eth(amount)} ETH into presale #{presale_id}",
            address=f.get("buyer"),
            tx_hash=event.transaction_hash,
            amount=amount,
        )
        message = render.presale_purchase(event, self._presale_prices.get(presale_id))
        try:
            await self._notifier.send(None, message)
        except DispatchError as exc:
            log.warning("Presale purchase notice not delivered: %s", exc)

    # ── Crowdfund events ──────────────────────────────────

    async def on_contributed(self, event: LedgerEvent) -> None:
        address = event.source_address
        try:
            record = await self._store.get_entity(address)
        except NotFoundError:
            log.warning(
                "Contribution to untracked crowdfund %s (tx %s) ignored",
                address, event.transaction_hash,
            )
            return

        if record.status.is_terminal:
            log.info(
                "Contribution to %s crowdfund %s (tx %s) ignored",
                record.status.value, address, event.transaction_hash,
            )
            return

        amount = int(event.fields["amount"])
        contributor = str(event.fields["contributor"])
        running_total = await self._ledger_running_total(record, event.block_number, amount)
        if running_total is None:
            running_total = record.total_contributed + amount
            log.warning(
                "Ledger total unavailable for %s, using local sum %d", address, running_total,
            )

        result = await self._store.append_contribution_if_new(
            address,
            Contribution(
                contributor=contributor,
                amount=amount,
                running_total=running_total,
                timestamp=_now(),
                transaction_hash=event.transaction_hash,
                block_number=event.block_number,
            ),
        )
        if result is AppendResult.DUPLICATE:
            log.debug("Duplicate contribution %s on %s", event.transaction_hash, address)
            return

        log.info(
            "Contribution %s wei to %s from %s (total %d)",
            amount, address, contributor, running_total,
        )
        await self._store.log_activity(
            "contribution",
            f"{render.format_eth(amount)} ETH from {contributor}",
            address=address,
            tx_hash=event.transaction_hash,
            amount=amount,
        )
        await self._reply(
            record,
            render.contribution(record, contributor, amount, running_total, event.transaction_hash),
        )

    async def _ledger_running_total(
        self, record: CrowdfundRecord, block: int, amount: int,
    ) -> int | None:
        """Ledger total including this contribution, or None if the query fails.

        totalContributed() at a block is the end-of-block value, so several
        contributions in one block would all see the same figure. Read the
        total before the block instead and add what this crowdfund already
        recorded from the same block, in log order.
        """
        if self._queries is None:
            return None
        if block <= 0:
            return await self._queries.total_contributed(record.address, None)
        before = await self._queries.total_contributed(record.address, block - 1)
        if before is None:
            return None
        same_block = sum(c.amount for c in record.contributions if c.block_number == block)
        return before + same_block + amount

    async def on_finalized(self, event: LedgerEvent) -> None:
        token = None
        if self._queries is not None:
            token = await self._queries.crowdfund_token(event.source_address)
        await self._close_out(event, CrowdfundStatus.FINALIZED, token)

    async def on_refunded(self, event: LedgerEvent) -> None:
        await self._close_out(event, CrowdfundStatus.REFUNDED)

    async def _close_out(
        self, event: LedgerEvent, status: CrowdfundStatus, token_address: str | None = None,
    ) -> None:
        address = event.source_address
        try:
            changed = await self._store.set_status(address, status, token_address)
        except NotFoundError:
            log.warning("%s for untracked crowdfund %s ignored", status.value, address)
            return
        except InvalidTransitionError as exc:
            log.warning("Ignoring %s for %s: %s", status.value, address, exc)
            await self._registry.remove_entity(address)
            return

        await self._registry.remove_entity(address)
        if not changed:
            log.debug("Crowdfund %s already %s", address, status.value)
            return

        record = await self._store.get_entity(address)
        await self._store.log_activity(
            status.value,
            f"Crowdfund {record.token_name or address} {status.value}",
            address=address,
            tx_hash=event.transaction_hash,
            amount=record.total_contributed,
        )
        if status is CrowdfundStatus.FINALIZED:
            await self._reply(record, render.finalized(record, token_address))
        else:
            await self._reply(record, render.refunded(record))

    async def _reply(self, record: CrowdfundRecord, message: str) -> None:
        if record.message_id is None:
            log.debug("No notification thread for %s, update not posted", record.address)
            return
        try:
            await self._notifier.reply(MessageHandle(record.message_id, record.thread_id), message)
        except DispatchError as exc:
            log.warning("Update for %s not delivered: %s", record.address, exc)
