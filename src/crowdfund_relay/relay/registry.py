"""Subscription registry - which live subscriptions exist for which crowdfund."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Iterable

from crowdfund_relay.errors import (
    NotConnectedError,
    RpcError,
    StreamConnectionError,
    SubscriptionError,
)
from crowdfund_relay.interfaces.decoder import EventDecoder
from crowdfund_relay.interfaces.stream import LogHandler, StreamConnection, SubscriptionHandle
from crowdfund_relay.ledger.queries import LedgerQueries
from crowdfund_relay.models.events import ENTITY_KINDS, EventKind, LedgerEvent

log = logging.getLogger(__name__)

EventSink = Callable[[LedgerEvent], Any]


class SubscriptionRegistry:
    """Maps each tracked crowdfund to one live handle per entity event kind.

    Bookkeeping is guarded by a lock so concurrent add/remove calls for the
    same address never create duplicate subscriptions. Handles only mean
    anything within the connection epoch that created them; after a
    reconnect the whole table is rebuilt with rebuild_all().
    """

    def __init__(
        self,
        connection: StreamConnection,
        decoder: EventDecoder,
        sink: EventSink,
        queries: LedgerQueries | None = None,
        backfill_blocks: int = 0,
    ) -> None:
        self._conn = connection
        self._decoder = decoder
        self._sink = sink
        self._queries = queries
        self._backfill_blocks = backfill_blocks
        self._lock = asyncio.Lock()
        self._entities: dict[str, dict[EventKind, SubscriptionHandle]] = {}
        self._factories: dict[EventKind, SubscriptionHandle] = {}

    # ── Log plumbing ──────────────────────────────────────

    def log_handler(self, kind: EventKind) -> LogHandler:
        """Synchronous stream callback: decode the log and pass it to the sink."""

        def _on_log(entry: dict[str, Any]) -> None:
            event = self._decoder.decode(kind, entry)
            if event is not None:
                self._sink(event)

        return _on_log

    def _filter(self, address: str, kind: EventKind) -> dict[str, Any]:
        return {"address": address, "topics": [self._decoder.topic_for(kind)]}

    # ── Factory subscriptions ─────────────────────────────

    async def add_factory(self, kind: EventKind, address: str) -> SubscriptionHandle:
        """Subscribe to a factory-level event. Raises SubscriptionError."""
        address = address.lower()
        try:
            handle = await self._conn.subscribe(
                self._filter(address, kind), self.log_handler(kind), label=kind.value,
            )
        except (NotConnectedError, StreamConnectionError, RpcError) as exc:
            raise SubscriptionError(address, str(exc)) from exc
        self._factories[kind] = handle
        log.info("Watching %s on factory %s", kind.value, address)
        return handle

    # ── Entity subscriptions ──────────────────────────────

    async def add_entity(self, address: str) -> None:
        """Subscribe every entity event kind for a crowdfund.

        Idempotent within an epoch. Either all kinds end up subscribed or
        none do; a partial failure unwinds and raises SubscriptionError.
        """
        address = address.lower()
        async with self._lock:
            existing = self._entities.get(address)
            if existing and all(h.epoch == self._conn.epoch for h in existing.values()):
                return
            if not self._conn.is_open():
                raise SubscriptionError(address, "stream is not open")

            created: dict[EventKind, SubscriptionHandle] = {}
            try:
                for kind in ENTITY_KINDS:
                    created[kind] = await self._conn.subscribe(
                        self._filter(address, kind), self.log_handler(kind), label=kind.value,
                    )
            except (NotConnectedError, StreamConnectionError, RpcError) as exc:
                for handle in created.values():
                    await self._conn.unsubscribe(handle)
                raise SubscriptionError(address, str(exc)) from exc
            self._entities[address] = created

        log.info("Subscribed crowdfund %s (%d kinds)", address, len(created))
        if self._backfill_blocks > 0:
            await self._backfill(address)

    async def remove_entity(self, address: str) -> None:
        """Drop a crowdfund's subscriptions. Unknown addresses are a no-op."""
        address = address.lower()
        async with self._lock:
            handles = self._entities.pop(address, None)
            if not handles:
                return
            for handle in handles.values():
                await self._conn.unsubscribe(handle)
        log.info("Unsubscribed crowdfund %s", address)

    async def rebuild_all(self, addresses: Iterable[str]) -> dict[str, str]:
        """Make the entity table match ``addresses`` on the current epoch.

        Entries from an older epoch are forgotten (their subscriptions died
        with the old transport). Current-epoch entries for a target are kept
        as they are; current-epoch entries for anything else are
        unsubscribed so no live subscription is left untracked.

        Never raises for individual addresses; returns address -> reason
        for the ones that failed.
        """
        targets = sorted({a.lower() for a in addresses})
        wanted = set(targets)
        epoch = self._conn.epoch
        async with self._lock:
            for address, handles in list(self._entities.items()):
                current = all(h.epoch == epoch for h in handles.values())
                if current and address in wanted:
                    continue
                del self._entities[address]
                live = [h for h in handles.values() if h.epoch == epoch]
                for handle in live:
                    await self._conn.unsubscribe(handle)
                if live:
                    log.info("Unsubscribed crowdfund %s (no longer active)", address)

        failures: dict[str, str] = {}
        for address in targets:
            try:
                await self.add_entity(address)
            except SubscriptionError as exc:
                failures[address] = exc.reason
        log.info(
            "Rebuilt subscriptions: %d/%d crowdfunds, %d failed",
            len(targets) - len(failures), len(targets), len(failures),
        )
        return failures

    def reset(self) -> None:
        """Drop all bookkeeping, e.g. after the transport died."""
        self._entities.clear()
        self._factories.clear()

    # ── Introspection ─────────────────────────────────────

    def addresses(self) -> set[str]:
        return set(self._entities)

    def handles(self, address: str) -> dict[EventKind, SubscriptionHandle]:
        return dict(self._entities.get(address.lower(), {}))

    def factory_handles(self) -> dict[EventKind, SubscriptionHandle]:
        return dict(self._factories)

    # ── Catch-up ──────────────────────────────────────────

    async def _backfill(self, address: str) -> None:
        """Replay recent logs for an address. Best-effort; duplicates are harmless."""
        if self._queries is None:
            return
        head = await self._queries.block_number()
        if head is None:
            return
        start = max(0, head - self._backfill_blocks)
        by_topic = {self._decoder.topic_for(kind): kind for kind in ENTITY_KINDS}
        try:
            entries = await self._queries.get_logs(address, [list(by_topic)], start, head)
        except (NotConnectedError, StreamConnectionError, RpcError) as exc:
            log.warning("Backfill for %s failed: %s", address, exc)
            return

        replayed = 0
        for entry in entries:
            topics = entry.get("topics") or []
            kind = by_topic.get(topics[0].lower()) if topics else None
            if kind is None:
                continue
            event = self._decoder.decode(kind, entry)
            if event is not None:
                self._sink(event)
                replayed += 1
        if replayed:
            log.info("Backfilled %d event(s) for %s from block %d", replayed, address, start)
