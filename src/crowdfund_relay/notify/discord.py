"""Discord REST notifier - posts crowdfund updates to a channel and its threads."""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from crowdfund_relay.errors import DispatchError
from crowdfund_relay.models.config import DiscordConfig
from crowdfund_relay.models.records import MessageHandle

log = logging.getLogger(__name__)

MAX_CONTENT = 2000  # Discord message limit
MAX_THREAD_NAME = 100


class DiscordNotifier:
    """NotificationDispatcher backed by the Discord bot REST API.

    Each crowdfund gets one channel message; when threads are enabled a
    thread is opened on it and every later update is posted there.
    """

    def __init__(self, config: DiscordConfig, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._cfg = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._ready_at: float | None = None

    async def start(self) -> None:
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            base_url=self._cfg.api_base.rstrip("/"),
            headers={
                "Authorization": f"Bot {self._cfg.token}",
                "User-Agent": "DiscordBot (crowdfund-relay, 0.1.0)",
            },
            timeout=httpx.Timeout(self._cfg.request_timeout, connect=10),
            transport=self._transport,
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        self._ready_at = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise DispatchError("notifier not started")
        return self._client

    # ── Readiness ──────────────────────────────────────────

    async def is_ready(self) -> bool:
        """True if the bot token authenticates. Cached for ready_cache_seconds."""
        if self._client is None:
            return False
        now = time.monotonic()
        if self._ready_at is not None and now - self._ready_at < self._cfg.ready_cache_seconds:
            return True
        try:
            resp = await self._client.get("/users/@me")
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            log.warning("Discord readiness check failed: %s", exc)
            self._ready_at = None
            return False
        self._ready_at = now
        return True

    # ── Messages ───────────────────────────────────────────

    async def send(self, entity_address: str | None, message: str) -> MessageHandle:
        channel = self._cfg.channel_id
        data = await self._post(f"/channels/{channel}/messages", {"content": _clip(message)})
        message_id = str(data["id"])

        thread_id: str | None = None
        if self._cfg.create_threads and entity_address:
            try:
                thread = await self._post(
                    f"/channels/{channel}/messages/{message_id}/threads",
                    {"name": _thread_name(message, entity_address)},
                )
                thread_id = str(thread["id"])
            except DispatchError as exc:
                log.warning("Could not open thread for %s: %s", entity_address, exc)

        log.info("Posted message %s (thread %s)", message_id, thread_id)
        return MessageHandle(message_id=message_id, thread_id=thread_id)

    async def reply(self, handle: MessageHandle, message: str) -> None:
        if handle.thread_id:
            await self._post(f"/channels/{handle.thread_id}/messages", {"content": _clip(message)})
            return
        await self._post(
            f"/channels/{self._cfg.channel_id}/messages",
            {
                "content": _clip(message),
                "message_reference": {
                    "message_id": handle.message_id,
                    "fail_if_not_exists": False,
                },
            },
        )

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            resp = await self.client.post(path, json=payload)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as exc:
            raise DispatchError(
                f"POST {path} -> HTTP {exc.response.status_code}: {exc.response.text[:200]}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise DispatchError(f"POST {path} failed: {exc}") from exc


def _clip(text: str) -> str:
    return text if len(text) <= MAX_CONTENT else text[: MAX_CONTENT - 3] + "..."


def _thread_name(message: str, address: str) -> str:
    first = message.splitlines()[0].strip("*# ") if message else ""
    return (first or address)[:MAX_THREAD_NAME]
