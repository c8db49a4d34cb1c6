"""JSON-RPC websocket stream - the single live transport to the ledger node."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit

import aiohttp

from crowdfund_relay.errors import NotConnectedError, RpcError, StreamConnectionError
from crowdfund_relay.interfaces.stream import CloseCallback, LogHandler, SubscriptionHandle

log = logging.getLogger(__name__)


@dataclass
class _Pending:
    method: str
    future: asyncio.Future
    handler: LogHandler | None = None  # bound to the subscription id on reply


class WebSocketStreamConnection:
    """Owns one aiohttp websocket to an EVM node and multiplexes JSON-RPC over it.

    Every successful open() starts a new epoch. Subscriptions belong to the
    epoch that created them and all of them die together when the socket
    closes; callers must resubscribe against the next epoch. Notifications
    are handed to their handler synchronously from the reader task, so
    handlers see logs in exactly the order the node sent them.
    """

    def __init__(
        self,
        ws_url: str,
        open_timeout: float = 15.0,
        request_timeout: float = 20.0,
    ) -> None:
        self._url = ws_url
        self._open_timeout = open_timeout
        self._request_timeout = request_timeout

        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader: asyncio.Task | None = None
        self._connected = False
        self._closing = False
        self._epoch = 0
        self._next_id = 0
        self._pending: dict[int, _Pending] = {}
        self._handlers: dict[str, LogHandler] = {}
        self._on_close: CloseCallback | None = None
        self._last_activity = time.monotonic()

    # ── State ─────────────────────────────────────────────

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def last_activity(self) -> float:
        return self._last_activity

    @property
    def endpoint(self) -> str:
        """Host part of the URL only; the path usually carries an API key."""
        return urlsplit(self._url).netloc

    def set_close_callback(self, callback: CloseCallback | None) -> None:
        self._on_close = callback

    def is_open(self) -> bool:
        return self._connected and self._ws is not None and not self._ws.closed

    def active_subscriptions(self) -> int:
        return len(self._handlers)

    # ── Lifecycle ─────────────────────────────────────────

    async def open(self) -> None:
        """Connect within open_timeout or raise StreamConnectionError."""
        if self.is_open():
            return

        session = aiohttp.ClientSession()
        try:
            ws = await asyncio.wait_for(
                session.ws_connect(self._url, autoping=False, max_msg_size=0),
                timeout=self._open_timeout,
            )
        except (asyncio.TimeoutError, aiohttp.ClientError, OSError) as exc:
            await session.close()
            raise StreamConnectionError(
                f"could not connect to {self.endpoint}: {exc or type(exc).__name__}"
            ) from exc

        self._session = session
        self._ws = ws
        self._epoch += 1
        self._handlers.clear()
        self._connected = True
        self._closing = False
        self._last_activity = time.monotonic()
        self._reader = asyncio.create_task(
            self._read_loop(ws, self._epoch), name=f"ws-reader-{self._epoch}",
        )
        log.info("Stream connected to %s (epoch %d)", self.endpoint, self._epoch)

    async def close(self) -> None:
        """Close the socket; every handle from this epoch becomes invalid."""
        self._closing = True
        self._connected = False
        ws, self._ws = self._ws, None
        reader, self._reader = self._reader, None
        session, self._session = self._session, None

        if ws is not None and not ws.closed:
            try:
                await ws.close()
            except Exception as exc:
                log.debug("Error closing websocket: %s", exc)

        if reader is not None:
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass

        self._fail_pending(StreamConnectionError("connection closed"))
        self._handlers.clear()

        if session is not None:
            await session.close()
        log.info("Stream closed (epoch %d)", self._epoch)

    # ── Subscriptions ─────────────────────────────────────

    async def subscribe(
        self, log_filter: dict[str, Any], handler: LogHandler, label: str = "",
    ) -> SubscriptionHandle:
        if not self.is_open():
            raise NotConnectedError("cannot subscribe: stream is not open")
        epoch = self._epoch
        sub_id = await self._call("eth_subscribe", ["logs", log_filter], handler=handler)
        address = log_filter.get("address")
        if isinstance(address, list):
            address = ",".join(address)
        handle = SubscriptionHandle(
            subscription_id=str(sub_id),
            epoch=epoch,
            address=str(address or "").lower(),
            label=label,
        )
        log.debug("Subscribed %s %s -> %s", label, handle.address, handle.subscription_id)
        return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        if handle.epoch != self._epoch:
            return  # died with its transport
        self._handlers.pop(handle.subscription_id, None)
        if not self.is_open():
            return
        try:
            await self._call("eth_unsubscribe", [handle.subscription_id])
        except (StreamConnectionError, NotConnectedError, RpcError) as exc:
            log.warning("eth_unsubscribe %s failed: %s", handle.subscription_id, exc)

    # ── Requests ──────────────────────────────────────────

    async def request(self, method: str, params: list[Any]) -> Any:
        return await self._call(method, params)

    async def probe(self) -> float:
        """Round-trip an eth_blockNumber; returns latency in seconds."""
        start = time.monotonic()
        try:
            await self._call("eth_blockNumber", [])
        except NotConnectedError as exc:
            raise StreamConnectionError(str(exc)) from exc
        return time.monotonic() - start

    async def ping(self) -> None:
        if not self.is_open() or self._ws is None:
            raise NotConnectedError("cannot ping: stream is not open")
        try:
            await self._ws.ping()
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as exc:
            raise StreamConnectionError(f"ping failed: {exc}") from exc

    async def _call(
        self, method: str, params: list[Any], handler: LogHandler | None = None,
    ) -> Any:
        if not self.is_open() or self._ws is None:
            raise NotConnectedError(f"cannot call {method}: stream is not open")

        self._next_id += 1
        req_id = self._next_id
        future = asyncio.get_running_loop().create_future()
        self._pending[req_id] = _Pending(method, future, handler)
        try:
            await self._ws.send_str(json.dumps(
                {"jsonrpc": "2.0", "id": req_id, "method": method, "params": params}
            ))
            return await asyncio.wait_for(future, timeout=self._request_timeout)
        except (StreamConnectionError, RpcError):
            raise
        except asyncio.TimeoutError as exc:
            raise StreamConnectionError(
                f"{method} timed out after {self._request_timeout}s"
            ) from exc
        except (aiohttp.ClientError, ConnectionError) as exc:
            raise StreamConnectionError(f"{method} send failed: {exc}") from exc
        finally:
            self._pending.pop(req_id, None)

    # ── Reader ────────────────────────────────────────────

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse, epoch: int) -> None:
        reason = "closed by server"
        try:
            async for msg in ws:
                self._last_activity = time.monotonic()
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._handle_text(msg.data)
                elif msg.type == aiohttp.WSMsgType.PING:
                    await ws.pong(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    reason = f"transport error: {ws.exception()}"
                    break
            if ws.close_code is not None:
                reason = f"closed by server (code {ws.close_code})"
        except asyncio.CancelledError:
            reason = "cancelled"
            raise
        except Exception as exc:
            reason = f"reader failed: {exc}"
            log.error("Stream reader failed: %s", exc, exc_info=True)
        finally:
            self._reader_exited(epoch, reason)

    def _reader_exited(self, epoch: int, reason: str) -> None:
        if epoch != self._epoch:
            return
        self._connected = False
        self._fail_pending(StreamConnectionError(f"connection lost: {reason}"))
        self._handlers.clear()
        if self._closing:
            return
        log.warning("Stream lost (epoch %d): %s", epoch, reason)
        if self._on_close is not None:
            try:
                self._on_close(epoch, reason)
            except Exception:
                log.error("Close callback failed", exc_info=True)

    def _handle_text(self, data: str) -> None:
        try:
            payload = json.loads(data)
        except ValueError:
            log.warning("Dropping non-JSON frame: %.80s", data)
            return
        for message in payload if isinstance(payload, list) else [payload]:
            if isinstance(message, dict):
                self._dispatch(message)

    def _dispatch(self, message: dict[str, Any]) -> None:
        if message.get("method") == "eth_subscription":
            params = message.get("params") or {}
            handler = self._handlers.get(str(params.get("subscription")))
            if handler is None:
                log.debug("Notification for unknown subscription %s", params.get("subscription"))
                return
            try:
                handler(params.get("result") or {})
            except Exception:
                log.error("Log handler failed", exc_info=True)
            return

        pending = self._pending.get(message.get("id"))  # type: ignore[arg-type]
        if pending is None or pending.future.done():
            return

        if message.get("error") is not None:
            err = message["error"]
            pending.future.set_exception(
                RpcError(pending.method, err.get("code"), err.get("message", str(err)))
            )
            return

        result = message.get("result")
        if pending.handler is not None and result is not None:
            # Bind before any notification for this id can be read
            self._handlers[str(result)] = pending.handler
        pending.future.set_result(result)

    def _fail_pending(self, exc: Exception) -> None:
        for pending in list(self._pending.values()):
            if not pending.future.done():
                pending.future.set_exception(exc)
        self._pending.clear()
