"""Shared fixtures for crowdfund_relay tests."""

from __future__ import annotations

import asyncio

import pytest
from pytest_metadata.plugin import metadata_key

from crowdfund_relay.ledger.decoder import AbiEventDecoder
from crowdfund_relay.models.config import (
    DiscordConfig,
    HealthConfig,
    LedgerConfig,
    ReconnectConfig,
    RelayConfig,
)
from crowdfund_relay.relay.handlers import EventHandlers
from crowdfund_relay.relay.orchestrator import OrchestratorState, RelayOrchestrator
from crowdfund_relay.relay.registry import SubscriptionRegistry
from crowdfund_relay.relay.router import EventRouter
from crowdfund_relay.storage.sqlite import SQLiteStateStore

from tests.factories import CROWDFUND_FACTORY, TOKEN_FACTORY
from tests.mocks import MockConnection, MockNotifier, MockQueries


# ── Report metadata ──────────────────────────────────────────────


def pytest_configure(config):
    """Add ledger info to the report Environment table."""
    meta = config.stash.setdefault(metadata_key, {})
    meta["Ledger"] = "EVM JSON-RPC (mocked)"
    meta["Crowdfund Factory"] = CROWDFUND_FACTORY
    meta["Token Factory"] = TOKEN_FACTORY


def make_test_config(**overrides) -> RelayConfig:
    """Build a RelayConfig suitable for testing."""
    defaults = dict(
        log_level="debug",
        drain_timeout=1.0,
        db_path=":memory:",
        ledger=LedgerConfig(
            ws_url="ws://127.0.0.1:1/",
            crowdfund_factory=CROWDFUND_FACTORY,
            token_factory=TOKEN_FACTORY,
            open_timeout=2.0,
            request_timeout=2.0,
        ),
        reconnect=ReconnectConfig(base_delay=1.0, factor=2.0, max_delay=8.0, max_attempts=3),
        # Long intervals so the monitor never fires unless a test drives it
        health=HealthConfig(
            check_interval=3600, keepalive_interval=3600, stale_after=7200, probe_timeout=1,
        ),
        discord=DiscordConfig(token="test-token", channel_id="1234567890"),
    )
    defaults.update(overrides)
    return RelayConfig(**defaults)


class FakeSleep:
    """Stands in for asyncio.sleep in the orchestrator; records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


async def wait_for_state(orch: RelayOrchestrator, state: OrchestratorState, timeout: float = 2.0) -> None:
    """Poll until the orchestrator reaches ``state``."""
    async def _poll():
        while orch.state is not state:
            await asyncio.sleep(0.005)
    await asyncio.wait_for(_poll(), timeout=timeout)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll until ``predicate()`` is true."""
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.005)
    await asyncio.wait_for(_poll(), timeout=timeout)


async def settle(router: EventRouter, timeout: float = 2.0) -> None:
    """Let queued events finish."""
    await asyncio.sleep(0)
    assert await router.drain(timeout)


@pytest.fixture
def test_config():
    """Default RelayConfig for tests."""
    return make_test_config()


@pytest.fixture
async def store():
    """Initialized in-memory SQLiteStateStore."""
    s = SQLiteStateStore(":memory:")
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def mock_connection():
    return MockConnection()


@pytest.fixture
def mock_notifier():
    return MockNotifier()


@pytest.fixture
def mock_queries():
    return MockQueries()


@pytest.fixture
def decoder():
    return AbiEventDecoder()


@pytest.fixture
def router():
    return EventRouter()


@pytest.fixture
async def open_connection(mock_connection):
    """MockConnection already in its first epoch."""
    await mock_connection.open()
    return mock_connection


@pytest.fixture
def registry(mock_connection, decoder, router, mock_queries):
    return SubscriptionRegistry(mock_connection, decoder, router.submit, queries=mock_queries)


@pytest.fixture
def handlers(store, registry, mock_notifier, mock_queries, router):
    """EventHandlers wired to the router, store and mocks."""
    h = EventHandlers(store, registry, mock_notifier, mock_queries)
    h.register(router)
    return h


@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest.fixture
def orchestrator(test_config, mock_connection, store, mock_notifier, decoder, mock_queries, fake_sleep):
    """RelayOrchestrator wired with mocks; store is shared with the test."""
    return RelayOrchestrator(
        config=test_config,
        connection=mock_connection,
        store=store,
        notifier=mock_notifier,
        decoder=decoder,
        queries=mock_queries,
        sleep=fake_sleep,
    )
