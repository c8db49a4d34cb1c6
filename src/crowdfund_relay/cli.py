"""CLI entry point for the crowdfund relay."""

from __future__ import annotations

import asyncio
import logging
import sys
from urllib.parse import urlsplit

import click

from crowdfund_relay.config import load_config
from crowdfund_relay.daemon import run_relay
from crowdfund_relay.errors import NotFoundError
from crowdfund_relay.models.records import CrowdfundStatus
from crowdfund_relay.notify.render import format_eth, format_supply
from crowdfund_relay.storage.sqlite import SQLiteStateStore


def _require_endpoint(cfg) -> None:
    """Exit with error if the ledger stream or factory is not configured."""
    if not cfg.ledger.ws_url:
        click.echo("Error: No websocket endpoint configured.", err=True)
        click.echo("Set CROWDFUND_RELAY_WS_URL or [ledger] ws_url in config.", err=True)
        sys.exit(1)
    if not cfg.ledger.crowdfund_factory:
        click.echo("Error: No crowdfund factory configured.", err=True)
        click.echo("Set CROWDFUND_RELAY_CROWDFUND_FACTORY or [ledger] crowdfund_factory.", err=True)
        sys.exit(1)


def _require_discord(cfg) -> None:
    if not cfg.discord.token or not cfg.discord.channel_id:
        click.echo("Error: Discord token and channel must both be configured.", err=True)
        click.echo("Set CROWDFUND_RELAY_DISCORD_TOKEN and CROWDFUND_RELAY_CHANNEL_ID.", err=True)
        sys.exit(1)


def _mask(secret: str) -> str:
    return "***configured***" if secret else "(not set)"


@click.group()
@click.option("-c", "--config", "config_path", default=None, help="Path to config TOML file")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """crowdfund-relay - ledger crowdfund events to Discord."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose

    cfg = load_config(config_path)
    level = logging.DEBUG if verbose else getattr(logging, cfg.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# ── Relay ──────────────────────────────────────────────


@cli.command()
@click.pass_context
def run(ctx: click.Context) -> None:
    """Start the relay."""
    cfg = load_config(ctx.obj["config_path"])
    _require_endpoint(cfg)
    _require_discord(cfg)

    click.echo("Starting crowdfund relay")
    relay = asyncio.run(run_relay(cfg))
    if relay.fatal_error is not None:
        click.echo(f"Relay stopped: {relay.fatal_error}", err=True)
        sys.exit(1)


# ── Info ───────────────────────────────────────────────


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show relay configuration."""
    cfg = load_config(ctx.obj["config_path"])
    click.echo(f"Endpoint:       {urlsplit(cfg.ledger.ws_url).netloc or '(not set)'}")
    click.echo(f"CF factory:     {cfg.ledger.crowdfund_factory or '(not set)'}")
    click.echo(f"Token factory:  {cfg.ledger.token_factory or '(not set)'}")
    click.echo(f"Presale:        {cfg.ledger.presale_contract or '(not set)'}")
    click.echo(f"Backfill:       {cfg.ledger.backfill_blocks} blocks")
    click.echo(
        f"Reconnect:      base={cfg.reconnect.base_delay}s factor={cfg.reconnect.factor} "
        f"cap={cfg.reconnect.max_delay}s attempts={cfg.reconnect.max_attempts}"
    )
    click.echo(
        f"Health:         check={cfg.health.check_interval}s "
        f"keepalive={cfg.health.keepalive_interval}s stale={cfg.health.stale_after}s"
    )
    click.echo(f"Channel:        {cfg.discord.channel_id or '(not set)'}")
    click.echo(f"Threads:        {cfg.discord.create_threads}")
    click.echo(f"Discord token:  {_mask(cfg.discord.token)}")
    click.echo(f"DB path:        {cfg.db_path}")


@cli.command()
@click.option(
    "--status", "filter_status", default=None,
    type=click.Choice([s.value for s in CrowdfundStatus]),
    help="Only show crowdfunds in this state",
)
@click.pass_context
def crowdfunds(ctx: click.Context, filter_status: str | None) -> None:
    """List tracked crowdfunds."""
    cfg = load_config(ctx.obj["config_path"])

    async def _list():
        store = SQLiteStateStore(cfg.db_path)
        await store.initialize()
        try:
            records = await store.list_entities(
                CrowdfundStatus(filter_status) if filter_status else None
            )
            if not records:
                click.echo("No crowdfunds tracked.")
                return
            for r in records:
                click.echo(
                    f"  [{r.status.value:9s}] {r.address} "
                    f"{(r.token_symbol or '?'):>8s} raised={format_eth(r.total_contributed)} ETH"
                )
        finally:
            await store.close()

    asyncio.run(_list())


@cli.command()
@click.argument("address")
@click.pass_context
def show(ctx: click.Context, address: str) -> None:
    """Show one crowdfund and its contributions."""
    cfg = load_config(ctx.obj["config_path"])

    async def _show() -> bool:
        store = SQLiteStateStore(cfg.db_path)
        await store.initialize()
        try:
            try:
                r = await store.get_entity(address)
            except NotFoundError:
                click.echo(f"Crowdfund {address} is not tracked.", err=True)
                return False

            click.echo(f"Crowdfund:      {r.address}")
            click.echo(f"Status:         {r.status.value}")
            click.echo(f"Token:          {r.token_name or '?'} ({r.token_symbol or '?'})")
            click.echo(f"Supply:         {format_supply(r.total_supply)}")
            click.echo(f"Creator:        {r.creator or '?'}")
            click.echo(f"Party:          {r.party or '?'}")
            if r.token_address:
                click.echo(f"Token address:  {r.token_address}")
            click.echo(f"Raised:         {format_eth(r.total_contributed)} ETH")
            click.echo(f"Message:        {r.message_id or '(none)'} thread={r.thread_id or '(none)'}")
            click.echo(f"Created:        {r.created_at}")
            click.echo("")
            click.echo(f"Contributions ({len(r.contributions)})")
            for c in r.contributions:
                click.echo(
                    f"  {c.timestamp} {c.contributor} +{format_eth(c.amount)} "
                    f"total={format_eth(c.running_total)} tx={c.transaction_hash[:18]}..."
                )
            return True
        finally:
            await store.close()

    if not asyncio.run(_show()):
        sys.exit(1)


@cli.command()
@click.option("-n", "--limit", type=int, default=20, help="Number of entries to show")
@click.pass_context
def activity(ctx: click.Context, limit: int) -> None:
    """Show the recent activity log."""
    cfg = load_config(ctx.obj["config_path"])

    async def _activity():
        store = SQLiteStateStore(cfg.db_path)
        await store.initialize()
        try:
            entries = await store.get_recent_activity(limit)
            if not entries:
                click.echo("No activity recorded.")
                return
            for e in entries:
                where = f" {e.address}" if e.address else ""
                click.echo(f"  {e.created_at} [{e.event_type}]{where} {e.message}")
        finally:
            await store.close()

    asyncio.run(_activity())


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
