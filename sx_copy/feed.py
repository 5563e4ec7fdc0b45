"""Real-time feed transport.

SX.bet publishes order updates on Ably channels. ``AblyTransport`` speaks the
Ably JSON realtime protocol directly over an aiohttp websocket:

    GET  {api}/user/token                      -> Ably token request
    POST https://rest.ably.io/keys/{key}/requestToken -> access token
    WS   wss://realtime.ably.io/?access_token=..&format=json&v=1.2

Protocol messages used (``action`` field):
    CONNECTED 4, DISCONNECTED 6, CLOSE 7, ERROR 9,
    ATTACH 10, ATTACHED 11, DETACH 12, MESSAGE 15

The transport knows nothing about reconnects or subscriptions surviving
them; that is the connection manager's job.
"""
from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Dict, Optional, Protocol
from urllib.parse import quote, urlencode

import aiohttp

from .errors import FeedConnectionError

log = logging.getLogger(__name__)

# Callback: (channel, data)
MessageCallback = Callable[[str, Any], None]
TokenSource = Callable[[], Awaitable[Dict[str, Any]]]

ABLY_REST = "https://rest.ably.io"
ABLY_REALTIME_WS = "wss://realtime.ably.io/"
ABLY_PROTOCOL_VERSION = "1.2"

ACTION_HEARTBEAT = 0
ACTION_CONNECTED = 4
ACTION_DISCONNECTED = 6
ACTION_CLOSE = 7
ACTION_CLOSED = 8
ACTION_ERROR = 9
ACTION_ATTACH = 10
ACTION_ATTACHED = 11
ACTION_DETACH = 12
ACTION_MESSAGE = 15


class FeedTransport(Protocol):
    """What the connection manager needs from a pub/sub session."""

    async def open(self, on_message: MessageCallback) -> None: ...

    async def attach(self, channel: str) -> None: ...

    async def detach(self, channel: str) -> None: ...

    async def close(self) -> None: ...

    async def wait_closed(self) -> None:
        """Return once the current session has ended for any reason."""
        ...


def decode_message_data(message: Dict[str, Any]) -> Any:
    data = message.get("data")
    encoding = str(message.get("encoding") or "")
    if isinstance(data, str) and "json" in encoding.split("/"):
        try:
            return json.loads(data)
        except json.JSONDecodeError:
            log.warning("undecodable json message on %s", message.get("name"))
            return None
    return data


class AblyTransport:
    """One Ably realtime session over aiohttp.

    Usage:
        transport = AblyTransport(api.create_token_request)
        await transport.open(on_message)
        await transport.attach("active_orders_v2:0xtoken:0xwallet")
    """

    def __init__(
        self,
        token_source: TokenSource,
        *,
        rewind: str = "10s",
        heartbeat_s: float = 15.0,
        attach_timeout_s: float = 10.0,
    ) -> None:
        self._token_source = token_source
        self._rewind = rewind
        self._heartbeat_s = heartbeat_s
        self._attach_timeout_s = attach_timeout_s

        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader: Optional[asyncio.Task[None]] = None
        self._on_message: Optional[MessageCallback] = None
        self._pending_attach: dict[str, asyncio.Future[None]] = {}
        self._closed = asyncio.Event()
        self._closed.set()

    async def _access_token(self, session: aiohttp.ClientSession) -> str:
        token_request = await self._token_source()
        key_name = str(token_request.get("keyName") or "")
        if not key_name:
            raise FeedConnectionError("token request has no keyName")
        url = f"{ABLY_REST}/keys/{quote(key_name, safe='')}/requestToken"
        async with session.post(url, json=token_request,
                                timeout=aiohttp.ClientTimeout(total=10)) as resp:
            body = await resp.json(content_type=None)
            if resp.status >= 400 or not isinstance(body, dict) or not body.get("token"):
                raise FeedConnectionError(f"ably token exchange failed: status={resp.status}")
            return str(body["token"])

    async def open(self, on_message: MessageCallback) -> None:
        await self.close()
        self._on_message = on_message
        self._session = aiohttp.ClientSession()
        try:
            token = await self._access_token(self._session)
            query = urlencode({"access_token": token, "format": "json", "v": ABLY_PROTOCOL_VERSION})
            log.info("feed connecting: %s", ABLY_REALTIME_WS)
            self._ws = await self._session.ws_connect(f"{ABLY_REALTIME_WS}?{query}",
                                                      heartbeat=self._heartbeat_s)
            await self._await_connected(self._ws)
        except BaseException:
            await self.close()
            raise
        self._closed.clear()
        self._reader = asyncio.create_task(self._read_loop(self._ws), name="feed-reader")
        log.info("feed connected")

    @staticmethod
    async def _await_connected(ws: aiohttp.ClientWebSocketResponse) -> None:
        async for msg in ws:
            if msg.type != aiohttp.WSMsgType.TEXT:
                break
            frame = json.loads(msg.data)
            action = frame.get("action")
            if action == ACTION_CONNECTED:
                return
            if action in (ACTION_ERROR, ACTION_DISCONNECTED, ACTION_CLOSED):
                raise FeedConnectionError(f"feed refused connection: {frame.get('error')}")
        raise FeedConnectionError("feed closed before CONNECTED")

    async def attach(self, channel: str) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            raise FeedConnectionError("feed is not open")
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._pending_attach[channel] = fut
        frame = {"action": ACTION_ATTACH, "channel": channel}
        if self._rewind:
            frame["params"] = {"rewind": self._rewind}
        try:
            await ws.send_str(json.dumps(frame))
            await asyncio.wait_for(fut, self._attach_timeout_s)
        except asyncio.TimeoutError as exc:
            raise FeedConnectionError(f"attach timed out for {channel}") from exc
        finally:
            self._pending_attach.pop(channel, None)
        log.debug("attached %s", channel)

    async def detach(self, channel: str) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            return
        await ws.send_str(json.dumps({"action": ACTION_DETACH, "channel": channel}))

    async def close(self) -> None:
        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
        ws, self._ws = self._ws, None
        if ws is not None and not ws.closed:
            try:
                await ws.send_str(json.dumps({"action": ACTION_CLOSE}))
            except (aiohttp.ClientError, ConnectionError, RuntimeError) as exc:
                log.debug("feed close frame not sent: %s", exc)
            await ws.close()
        session, self._session = self._session, None
        if session is not None:
            await session.close()
        self._fail_pending(FeedConnectionError("feed closed"))
        self._closed.set()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    # ── Internals ──

    def _fail_pending(self, exc: Exception) -> None:
        for fut in self._pending_attach.values():
            if not fut.done():
                fut.set_exception(exc)

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    if not self._handle(msg.data):
                        break
                elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                    log.warning("feed ws closed/error: %s", msg.type)
                    break
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("feed reader error")
        finally:
            self._fail_pending(FeedConnectionError("feed session ended"))
            self._closed.set()

    def _handle(self, raw: str) -> bool:
        """Process one protocol frame; False ends the session."""
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError:
            return True

        action = frame.get("action")
        channel = str(frame.get("channel") or "")

        if action == ACTION_MESSAGE:
            for message in frame.get("messages") or ():
                data = decode_message_data(message)
                if data is None or self._on_message is None:
                    continue
                try:
                    self._on_message(channel, data)
                except Exception:
                    log.exception("feed message callback error")
            return True

        if action == ACTION_ATTACHED:
            fut = self._pending_attach.get(channel)
            if fut is not None and not fut.done():
                fut.set_result(None)
            return True

        if action == ACTION_ERROR and channel:
            fut = self._pending_attach.get(channel)
            err = FeedConnectionError(f"channel error on {channel}: {frame.get('error')}")
            if fut is not None and not fut.done():
                fut.set_exception(err)
            else:
                log.warning("%s", err)
            return True

        if action in (ACTION_ERROR, ACTION_DISCONNECTED, ACTION_CLOSED):
            log.warning("feed session ended by server: action=%s error=%s", action, frame.get("error"))
            return False

        return True
