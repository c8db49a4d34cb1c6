"""Relay orchestrator - connection lifecycle, resubscription and shutdown."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable

from crowdfund_relay.errors import (
    NotConnectedError,
    ReconnectExhaustedError,
    RpcError,
    StreamConnectionError,
    SubscriptionError,
)
from crowdfund_relay.interfaces.decoder import EventDecoder
from crowdfund_relay.interfaces.notifier import NotificationDispatcher
from crowdfund_relay.interfaces.store import StateStore
from crowdfund_relay.interfaces.stream import StreamConnection
from crowdfund_relay.ledger.queries import LedgerQueries
from crowdfund_relay.models.config import RelayConfig
from crowdfund_relay.models.events import EventKind
from crowdfund_relay.relay.backoff import delay_for
from crowdfund_relay.relay.handlers import EventHandlers
from crowdfund_relay.relay.health import HealthMonitor
from crowdfund_relay.relay.registry import SubscriptionRegistry
from crowdfund_relay.relay.router import EventRouter

log = logging.getLogger(__name__)

# Errors that mean "this bring-up attempt failed, try again later"
_RETRYABLE = (StreamConnectionError, NotConnectedError, SubscriptionError, RpcError)



class OrchestratorState(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    RUNNING = "running"
    RECONNECTING = "reconnecting"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


# States in which a transport fault leads to a reconnect
_FAULT_STATES = (OrchestratorState.INITIALIZING, OrchestratorState.RUNNING)


class RelayOrchestrator:
    """Owns the relay's lifecycle.

    Idle -> Initializing -> Running, and on any transport fault
    Running -> Reconnecting -> Initializing with capped exponential
    backoff. A stop request from any state moves to ShuttingDown, which
    drains in-flight handlers and closes every component before Stopped.
    Only one fault is acted on per connection period; later reports while
    a reconnect is already underway are ignored. A fault reported while
    Initializing sends the relay straight back to Reconnecting. The
    attempt counter is reset only once a health check has passed on the
    new connection.
    """

    def __init__(
        self,
        config: RelayConfig,
        connection: StreamConnection,
        store: StateStore,
        notifier: NotificationDispatcher,
        decoder: EventDecoder,
        queries: LedgerQueries | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._cfg = config
        self._sleep = sleep
        self.connection = connection
        self.store = store
        self.notifier = notifier
        self.queries = queries

        self.router = EventRouter()
        self.registry = SubscriptionRegistry(
            connection,
            decoder,
            self.router.submit,
            queries=queries,
            backfill_blocks=config.ledger.backfill_blocks,
        )
        self.handlers = EventHandlers(store, self.registry, notifier, queries)
        self.handlers.register(self.router)
        self.health: HealthMonitor | None = None

        self.state = OrchestratorState.IDLE
        self.transitions: list[OrchestratorState] = [OrchestratorState.IDLE]
        self.reconnect_attempts = 0
        self.last_error: str | None = None
        self.fatal_error: BaseException | None = None

        self._stop = asyncio.Event()
        self._fault = asyncio.Event()
        self._fault_reason = ""

    # ── State ─────────────────────────────────────────────

    def _set_state(self, new: OrchestratorState) -> None:
        if new is self.state:
            return
        log.info("Relay state: %s -> %s", self.state.value, new.value)
        self.state = new
        self.transitions.append(new)

    def request_stop(self) -> None:
        """Begin shutdown. Safe to call from signal handlers and from any state."""
        if not self._stop.is_set():
            log.info("Stop requested")
        self._stop.set()

    def request_reconnect(self, reason: str) -> bool:
        """Report a transport fault. Honoured while Initializing or Running, once per period."""
        if self.state not in _FAULT_STATES or self._fault.is_set():
            log.debug("Ignoring fault in state %s: %s", self.state.value, reason)
            return False
        self._fault_reason = reason
        self._fault.set()
        return True

    def _on_stream_closed(self, epoch: int, reason: str) -> None:
        if epoch != self.connection.epoch:
            return
        self.request_reconnect(f"stream closed: {reason}")

    # ── Main entry ────────────────────────────────────────

    async def run(self) -> None:
        """Drive the relay until it is stopped or gives up reconnecting."""
        if self.state is not OrchestratorState.IDLE:
            raise RuntimeError(f"orchestrator already ran (state {self.state.value})")

        try:
            await self.store.initialize()
            await self.notifier.start()
        except Exception as exc:
            log.critical("Relay could not start: %s", exc, exc_info=True)
            self.fatal_error = exc
            await self._shutdown()
            return

        await self.store.log_activity("relay_started", "Relay started")
        self.connection.set_close_callback(self._on_stream_closed)

        lifecycle = asyncio.create_task(self._lifecycle(), name="relay-lifecycle")
        stop_wait = asyncio.create_task(self._stop.wait(), name="relay-stop")
        try:
            await asyncio.wait({lifecycle, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (lifecycle, stop_wait):
                if not task.done():
                    task.cancel()
                    try:
                        await task
                    except asyncio.CancelledError:
                        pass
            if lifecycle.done() and not lifecycle.cancelled() and lifecycle.exception():
                exc = lifecycle.exception()
                log.critical("Relay lifecycle crashed: %s", exc, exc_info=exc)
                self.fatal_error = exc
            await self._shutdown()

    async def _lifecycle(self) -> None:
        while True:
            self._set_state(OrchestratorState.INITIALIZING)
            try:
                await self._bring_up()
            except _RETRYABLE as exc:
                reason = f"bring-up failed: {exc}"
            else:
                if self._fault.is_set():
                    reason = f"fault during bring-up: {self._fault_reason}"
                else:
                    self._set_state(OrchestratorState.RUNNING)
                    await self._fault.wait()
                    reason = self._fault_reason

            self._set_state(OrchestratorState.RECONNECTING)
            self.last_error = reason
            log.warning("Connection fault: %s", reason)
            await self._teardown_stream()
            await self._restart_notifier()

            self.reconnect_attempts += 1
            limit = self._cfg.reconnect.max_attempts
            if self.reconnect_attempts > limit:
                self.fatal_error = ReconnectExhaustedError(
                    f"gave up after {limit} reconnect attempts; last error: {reason}"
                )
                log.critical("%s", self.fatal_error)
                return

            delay = delay_for(self.reconnect_attempts, self._cfg.reconnect)
            log.info(
                "Reconnect attempt %d/%d in %.1fs", self.reconnect_attempts, limit, delay,
            )
            await self._sleep(delay)

    # ── Bring-up / teardown ───────────────────────────────

    async def _bring_up(self) -> None:
        """Open, subscribe factories, rebuild crowdfund subscriptions, start health."""
        self._fault.clear()
        self.registry.reset()

        # 1. Transport
        await self.connection.open()

        # 2. Factory-level subscriptions
        ledger = self._cfg.ledger
        if ledger.crowdfund_factory:
            await self.registry.add_factory(EventKind.CROWDFUND_CREATED, ledger.crowdfund_factory)
        else:
            log.warning("No crowdfund factory configured; new crowdfunds will not be seen")
        if ledger.token_factory:
            await self.registry.add_factory(EventKind.TOKEN_CREATED, ledger.token_factory)
        if ledger.presale_contract:
            await self.registry.add_factory(EventKind.PRESALE_CREATED, ledger.presale_contract)
            await self.registry.add_factory(EventKind.PRESALE_PURCHASE, ledger.presale_contract)

        # 3. Per-crowdfund subscriptions from durable state
        active = await self.store.list_active_addresses()
        failures = await self.registry.rebuild_all(active)
        for address, why in failures.items():
            log.warning("Crowdfund %s left unsubscribed: %s", address, why)
        await self._reconcile(set(failures))

        if not self.connection.is_open():
            raise StreamConnectionError("stream lost during bring-up")

        # 4. Health monitoring
        self.health = HealthMonitor(
            self.connection,
            self.notifier,
            self._cfg.health,
            self.request_reconnect,
            on_healthy=self._on_healthy,
        )
        await self.health.start()
        log.info(
            "Relay running: epoch %d, %d crowdfund(s) watched",
            self.connection.epoch, len(self.registry.addresses()),
        )

    async def _reconcile(self, failed: set[str]) -> None:
        """Second pass against the store after the rebuild.

        Factory subscriptions are already live while the rebuild runs, so a
        crowdfund can be created or closed out between the store read and
        the end of the rebuild. Subscribe what became active and drop what
        no longer is.
        """
        active = {a.lower() for a in await self.store.list_active_addresses()}
        watched = self.registry.addresses()
        for address in sorted(active - watched - failed):
            try:
                await self.registry.add_entity(address)
            except SubscriptionError as exc:
                log.warning("Crowdfund %s left unsubscribed: %s", address, exc.reason)
        for address in sorted(watched - active):
            await self.registry.remove_entity(address)

    def _on_healthy(self) -> None:
        if self._fault.is_set():
            return
        if self.reconnect_attempts:
            log.info(
                "Connection healthy, clearing %d reconnect attempt(s)", self.reconnect_attempts,
            )
        self.reconnect_attempts = 0

    async def _restart_notifier(self) -> None:
        """Give the dispatcher a fresh session for the next connection."""
        try:
            await self.notifier.close()
            await self.notifier.start()
        except Exception as exc:
            log.warning("Notifier restart failed: %s", exc)

    async def _teardown_stream(self) -> None:
        if self.health is not None:
            await self.health.stop()
            self.health = None
        self.registry.reset()
        try:
            await self.connection.close()
        except Exception as exc:
            log.warning("Error closing stream: %s", exc)

    async def _shutdown(self) -> None:
        if self.state is OrchestratorState.STOPPED:
            return
        self._set_state(OrchestratorState.SHUTTING_DOWN)

        if self.health is not None:
            await self.health.stop()
            self.health = None

        self.router.stop_accepting()
        if not await self.router.drain(self._cfg.drain_timeout):
            log.warning("Abandoning %d queued event(s)", self.router.pending())
        await self.router.close()

        self.connection.set_close_callback(None)
        for name, closer in (
            ("stream", self.connection.close),
            ("notifier", self.notifier.close),
        ):
            try:
                await closer()
            except Exception as exc:
                log.warning("Error closing %s: %s", name, exc)

        try:
            await self.store.log_activity("relay_stopped", "Relay stopped")
        except Exception as exc:
            log.debug("Could not record shutdown: %s", exc)
        try:
            await self.store.close()
        except Exception as exc:
            log.warning("Error closing store: %s", exc)

        self._set_state(OrchestratorState.STOPPED)
        if self.fatal_error is not None:
            log.critical("Relay stopped with fatal error: %s", self.fatal_error)
        else:
            log.info("Relay shut down cleanly")
