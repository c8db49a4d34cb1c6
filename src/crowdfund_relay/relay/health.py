"""Health monitor - detects a connection that is silently dead."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

from crowdfund_relay.errors import NotConnectedError, RpcError, StreamConnectionError
from crowdfund_relay.interfaces.notifier import NotificationDispatcher
from crowdfund_relay.interfaces.stream import StreamConnection
from crowdfund_relay.models.config import HealthConfig

log = logging.getLogger(__name__)


class HealthMonitor:
    """Periodic liveness checks plus a keepalive ping.

    The first failed check calls ``on_unhealthy(reason)`` once and the
    monitor goes quiet; the orchestrator stops it and starts a fresh one
    after the reconnect. Every passing check calls ``on_healthy()``.
    """

    def __init__(
        self,
        connection: StreamConnection,
        notifier: NotificationDispatcher,
        config: HealthConfig,
        on_unhealthy: Callable[[str], None],
        on_healthy: Callable[[], None] | None = None,
    ) -> None:
        self._conn = connection
        self._notifier = notifier
        self._config = config
        self._on_unhealthy = on_unhealthy
        self._on_healthy = on_healthy
        self._running = False
        self._check_task: asyncio.Task | None = None
        self._keepalive_task: asyncio.Task | None = None
        self.last_latency: float | None = None
        self.checks_run = 0

    @property
    def running(self) -> bool:
        return self._running

    # ── Lifecycle ─────────────────────────────────────────

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._check_task = asyncio.create_task(self._check_loop(), name="health-check")
        self._keepalive_task = asyncio.create_task(self._keepalive_loop(), name="keepalive")
        log.debug(
            "Health monitor started (check=%ss, keepalive=%ss, stale_after=%ss)",
            self._config.check_interval,
            self._config.keepalive_interval,
            self._config.stale_after,
        )

    async def stop(self) -> None:
        self._running = False
        current = asyncio.current_task()
        for task in (self._check_task, self._keepalive_task):
            if task is None or task is current:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._check_task = None
        self._keepalive_task = None

    # ── Checks ────────────────────────────────────────────

    async def check(self) -> str | None:
        """Run one round of checks. Returns the failure reason, or None if healthy."""
        self.checks_run += 1
        if not self._conn.is_open():
            return "stream transport is closed"

        idle = time.monotonic() - self._conn.last_activity
        if idle > self._config.stale_after:
            return f"no inbound traffic for {idle:.0f}s"

        try:
            self.last_latency = await asyncio.wait_for(
                self._conn.probe(), timeout=self._config.probe_timeout,
            )
        except asyncio.TimeoutError:
            return f"probe timed out after {self._config.probe_timeout}s"
        except (StreamConnectionError, NotConnectedError, RpcError) as exc:
            return f"probe failed: {exc}"

        try:
            ready = await asyncio.wait_for(
                self._notifier.is_ready(), timeout=self._config.probe_timeout,
            )
        except asyncio.TimeoutError:
            ready = False
        if not ready:
            return "notification dispatcher is not ready"

        log.debug("Health OK (probe %.0f ms, idle %.1fs)", self.last_latency * 1000, idle)
        return None

    async def _check_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._config.check_interval)
            except asyncio.CancelledError:
                break

            try:
                reason = await self.check()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                log.error("Health check error: %s", exc, exc_info=True)
                reason = f"health check error: {exc}"

            if not self._running:
                break
            if reason is not None:
                log.warning("Health check failed: %s", reason)
                self._running = False
                self._on_unhealthy(reason)
                break
            if self._on_healthy is not None:
                self._on_healthy()

    async def _keepalive_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._config.keepalive_interval)
            except asyncio.CancelledError:
                break
            try:
                await self._conn.ping()
            except asyncio.CancelledError:
                break
            except (StreamConnectionError, NotConnectedError) as exc:
                # The check loop turns a dead transport into a reconnect
                log.debug("Keepalive ping failed: %s", exc)
