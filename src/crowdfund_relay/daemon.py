"""Process entry - builds the concrete components and runs the orchestrator."""

from __future__ import annotations

import asyncio
import logging
import signal

from crowdfund_relay.ledger.connection import WebSocketStreamConnection
from crowdfund_relay.ledger.decoder import AbiEventDecoder
from crowdfund_relay.ledger.queries import LedgerQueries
from crowdfund_relay.models.config import RelayConfig
from crowdfund_relay.notify.discord import DiscordNotifier
from crowdfund_relay.relay.orchestrator import RelayOrchestrator
from crowdfund_relay.storage.sqlite import SQLiteStateStore

log = logging.getLogger(__name__)


def build_relay(cfg: RelayConfig) -> RelayOrchestrator:
    """Wire the production components together."""
    connection = WebSocketStreamConnection(
        cfg.ledger.ws_url,
        open_timeout=cfg.ledger.open_timeout,
        request_timeout=cfg.ledger.request_timeout,
    )
    return RelayOrchestrator(
        config=cfg,
        connection=connection,
        store=SQLiteStateStore(cfg.db_path),
        notifier=DiscordNotifier(cfg.discord),
        decoder=AbiEventDecoder(),
        queries=LedgerQueries(connection),
    )


async def run_relay(cfg: RelayConfig) -> RelayOrchestrator:
    """Run until SIGINT/SIGTERM or a fatal error. Returns the stopped orchestrator."""
    relay = build_relay(cfg)

    log.info("Starting crowdfund relay")
    log.info("  Endpoint: %s", relay.connection.endpoint)  # type: ignore[attr-defined]
    log.info("  Crowdfund factory: %s", cfg.ledger.crowdfund_factory or "(not set)")
    log.info("  Token factory: %s", cfg.ledger.token_factory or "(not set)")
    log.info("  Channel: %s", cfg.discord.channel_id or "(not set)")
    log.info("  DB: %s", cfg.db_path)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, relay.request_stop)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    try:
        await relay.run()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except NotImplementedError:
                pass
    return relay
