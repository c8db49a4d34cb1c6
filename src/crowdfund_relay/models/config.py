"""Configuration models for the relay."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class LedgerConfig:
    """Streaming endpoint and the factory contracts to watch."""

    ws_url: str = ""  # wss:// JSON-RPC endpoint, usually with an API key in the path
    crowdfund_factory: str = ""  # emits crowdfund_created
    token_factory: str = ""  # emits token_created, optional
    presale_contract: str = ""  # emits presale_created and presale_purchase, optional
    open_timeout: float = 15.0  # seconds
    request_timeout: float = 20.0  # seconds
    backfill_blocks: int = 0  # 0 disables the catch-up scan on resubscribe


@dataclass
class ReconnectConfig:
    """Capped exponential backoff between reconnect attempts."""

    base_delay: float = 5.0  # seconds before the first retry
    factor: float = 2.0
    max_delay: float = 300.0
    max_attempts: int = 10  # attempts before giving up
    jitter: float = 0.0  # max random seconds added to each wait


@dataclass
class HealthConfig:
    """Liveness checks for a connection that has not explicitly failed."""

    check_interval: float = 60.0  # seconds between health checks
    keepalive_interval: float = 20.0  # seconds between websocket pings
    stale_after: float = 120.0  # seconds without any inbound traffic
    probe_timeout: float = 10.0


@dataclass
class DiscordConfig:
    """Destination channel for notifications."""

    token: str = ""  # loaded from env var CROWDFUND_RELAY_DISCORD_TOKEN
    channel_id: str = ""
    api_base: str = "https://discord.com/api/v10"
    create_threads: bool = True
    request_timeout: float = 15.0
    ready_cache_seconds: float = 30.0


@dataclass
class RelayConfig:
    """Complete relay configuration."""

    log_level: str = "info"
    drain_timeout: float = 10.0  # seconds to finish in-flight handlers on shutdown

    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    reconnect: ReconnectConfig = field(default_factory=ReconnectConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    discord: DiscordConfig = field(default_factory=DiscordConfig)

    # Storage
    db_path: str = "~/.crowdfund_relay/state.db"
