"""Configuration loading: TOML file + environment variables."""

from __future__ import annotations

import os
from pathlib import Path

try:
    import tomllib  # Python 3.11+
except ModuleNotFoundError:
    import tomli as tomllib  # type: ignore[no-redef]

from crowdfund_relay.models.config import (
    DiscordConfig,
    HealthConfig,
    LedgerConfig,
    ReconnectConfig,
    RelayConfig,
)

ENV_PREFIX = "CROWDFUND_RELAY_"


def load_config(
    config_path: str | Path | None = None,
    env_prefix: str = ENV_PREFIX,
) -> RelayConfig:
    """Load relay configuration from a TOML file and env vars.

    Priority (highest wins):
        1. Environment variables (CROWDFUND_RELAY_WS_URL, etc.)
        2. TOML config file
        3. Defaults from RelayConfig
    """
    raw: dict = {}
    if config_path is not None:
        p = Path(config_path).expanduser()
        if p.exists():
            with open(p, "rb") as f:
                raw = tomllib.load(f)

    cfg = RelayConfig()

    # ── Relay section ──────────────────────────────────────
    relay = raw.get("relay", {})
    if v := relay.get("log_level"):
        cfg.log_level = str(v)
    if (v := relay.get("drain_timeout")) is not None:
        cfg.drain_timeout = float(v)

    # ── Ledger section ─────────────────────────────────────
    ledger = raw.get("ledger", {})
    defaults = LedgerConfig()
    cfg.ledger = LedgerConfig(
        ws_url=str(ledger.get("ws_url", defaults.ws_url)),
        crowdfund_factory=str(ledger.get("crowdfund_factory", "")).lower(),
        token_factory=str(ledger.get("token_factory", "")).lower(),
        presale_contract=str(ledger.get("presale_contract", "")).lower(),
        open_timeout=float(ledger.get("open_timeout", defaults.open_timeout)),
        request_timeout=float(ledger.get("request_timeout", defaults.request_timeout)),
        backfill_blocks=int(ledger.get("backfill_blocks", defaults.backfill_blocks)),
    )

    # ── Reconnect section ──────────────────────────────────
    reconnect = raw.get("reconnect", {})
    defaults_rc = ReconnectConfig()
    cfg.reconnect = ReconnectConfig(
        base_delay=float(reconnect.get("base_delay", defaults_rc.base_delay)),
        factor=float(reconnect.get("factor", defaults_rc.factor)),
        max_delay=float(reconnect.get("max_delay", defaults_rc.max_delay)),
        max_attempts=int(reconnect.get("max_attempts", defaults_rc.max_attempts)),
        jitter=float(reconnect.get("jitter", defaults_rc.jitter)),
    )

    # ── Health section ─────────────────────────────────────
    health = raw.get("health", {})
    defaults_h = HealthConfig()
    cfg.health = HealthConfig(
        check_interval=float(health.get("check_interval", defaults_h.check_interval)),
        keepalive_interval=float(health.get("keepalive_interval", defaults_h.keepalive_interval)),
        stale_after=float(health.get("stale_after", defaults_h.stale_after)),
        probe_timeout=float(health.get("probe_timeout", defaults_h.probe_timeout)),
    )

    # ── Discord section ────────────────────────────────────
    discord = raw.get("discord", {})
    defaults_d = DiscordConfig()
    cfg.discord = DiscordConfig(
        token=str(discord.get("token", "")),
        channel_id=str(discord.get("channel_id", "")),
        api_base=str(discord.get("api_base", defaults_d.api_base)),
        create_threads=bool(discord.get("create_threads", defaults_d.create_threads)),
        request_timeout=float(discord.get("request_timeout", defaults_d.request_timeout)),
        ready_cache_seconds=float(
            discord.get("ready_cache_seconds", defaults_d.ready_cache_seconds)
        ),
    )

    # ── Storage section ────────────────────────────────────
    storage = raw.get("storage", {})
    if v := storage.get("db_path"):
        cfg.db_path = str(v)

    # ── Environment variable overrides (highest priority) ──
    if url := os.environ.get(f"{env_prefix}WS_URL"):
        cfg.ledger.ws_url = url
    if token := os.environ.get(f"{env_prefix}DISCORD_TOKEN"):
        cfg.discord.token = token
    if channel := os.environ.get(f"{env_prefix}CHANNEL_ID"):
        cfg.discord.channel_id = channel
    if factory := os.environ.get(f"{env_prefix}CROWDFUND_FACTORY"):
        cfg.ledger.crowdfund_factory = factory.lower()
    if factory := os.environ.get(f"{env_prefix}TOKEN_FACTORY"):
        cfg.ledger.token_factory = factory.lower()
    if presale := os.environ.get(f"{env_prefix}PRESALE_CONTRACT"):
        cfg.ledger.presale_contract = presale.lower()
    if db := os.environ.get(f"{env_prefix}DB_PATH"):
        cfg.db_path = db
    if level := os.environ.get(f"{env_prefix}LOG_LEVEL"):
        cfg.log_level = level

    # Expand ~ in paths
    if cfg.db_path != ":memory:":
        cfg.db_path = str(Path(cfg.db_path).expanduser())

    return cfg
