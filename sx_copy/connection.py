"""Connection manager: one logical feed session with reconnect + resubscribe.

State machine::

    disconnected ─connect()─→ connecting ─→ connected
    connected ─disconnect()─→ disconnected
    connected ─drop─→ reconnecting ─ok─→ connected      (attempts reset)
                      reconnecting ─fail─→ reconnecting (attempts + 1)
                      reconnecting ─attempts > max─→ failed  (fatal, once)

Subscriptions are kept in registration order and re-attached on every
reconnect *before* the state is reported as connected. Messages that arrive
while the session is not connected are held and flushed afterwards, so no
handler sees traffic until every channel is back.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any, Optional

from .errors import FeedConnectionError
from .feed import FeedTransport
from .models import ConnectionState

log = logging.getLogger(__name__)

# Handler: (channel, data)
ChannelHandler = Callable[[str, Any], None]
# Callback: (old_state, new_state)
StateCallback = Callable[[ConnectionState, ConnectionState], None]
FatalCallback = Callable[[str], None]

MAX_HELD_MESSAGES = 10_000


class ConnectionManager:
    """Owns the feed session, its subscriptions and the reconnect policy.

    Usage:
        conn = ConnectionManager(transport, max_attempts=5)
        conn.on_fatal(lambda reason: ...)
        await conn.connect()
        await conn.subscribe("active_orders_v2:0xtoken:0xwallet", handler)
    """

    def __init__(
        self,
        transport: FeedTransport,
        *,
        reconnect_interval_s: float = 5.0,
        max_attempts: int = 10,
        backoff_cap: int = 5,
        connect_timeout_s: float = 30.0,
        max_held_messages: int = MAX_HELD_MESSAGES,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._transport = transport
        self._interval = reconnect_interval_s
        self._max_attempts = max_attempts
        self._backoff_cap = max(1, backoff_cap)
        self._connect_timeout = connect_timeout_s
        self._sleep = sleep

        self._state = ConnectionState.DISCONNECTED
        self._attempts = 0
        self._subs: dict[str, ChannelHandler] = {}
        self._held: deque[tuple[str, Any]] = deque(maxlen=max(1, max_held_messages))
        self.dropped_messages = 0
        self._closing = False
        self._supervisor: Optional[asyncio.Task[None]] = None

        self._state_callbacks: list[StateCallback] = []
        self._fatal_callbacks: list[FatalCallback] = []

    # ── Accessors ──

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def subscriptions(self) -> tuple[str, ...]:
        return tuple(self._subs)

    def on_state(self, cb: StateCallback) -> None:
        self._state_callbacks.append(cb)

    def on_fatal(self, cb: FatalCallback) -> None:
        self._fatal_callbacks.append(cb)

    # ── Public API ──

    async def connect(self) -> None:
        if self._state is ConnectionState.CONNECTED:
            return
        self._closing = False
        self._attempts = 0
        self._set_state(ConnectionState.CONNECTING)
        try:
            await asyncio.wait_for(self._open_and_restore(), self._connect_timeout)
        except asyncio.TimeoutError as exc:
            await self._close_transport()
            self._set_state(ConnectionState.DISCONNECTED)
            raise FeedConnectionError(
                f"feed connection not established within {self._connect_timeout:.0f}s"
            ) from exc
        except Exception as exc:
            await self._close_transport()
            self._set_state(ConnectionState.DISCONNECTED)
            raise FeedConnectionError(f"feed connection failed: {exc}") from exc

        self._mark_connected()
        self._supervisor = asyncio.create_task(self._supervise(), name="feed-supervisor")

    async def subscribe(self, channel: str, handler: ChannelHandler) -> None:
        if channel in self._subs:
            self._subs[channel] = handler
            return
        self._subs[channel] = handler
        log.info("subscribing %s", channel)
        if not self.is_connected:
            return
        try:
            await self._transport.attach(channel)
        except Exception as exc:
            if not self.is_connected:
                # Session dropped mid-attach; the reconnect will restore it.
                return
            self._subs.pop(channel, None)
            raise FeedConnectionError(f"subscribe failed for {channel}: {exc}") from exc

    async def unsubscribe(self, channel: str) -> None:
        if self._subs.pop(channel, None) is None:
            return
        log.info("unsubscribing %s", channel)
        if not self.is_connected:
            return
        try:
            await self._transport.detach(channel)
        except Exception as exc:
            log.warning("detach failed for %s: %s", channel, exc)

    async def disconnect(self) -> None:
        """Graceful teardown. Clears subscriptions; safe to call twice."""
        self._closing = True
        supervisor, self._supervisor = self._supervisor, None
        if supervisor is not None and supervisor is not asyncio.current_task():
            supervisor.cancel()
            await asyncio.gather(supervisor, return_exceptions=True)
        await self._close_transport()
        self._subs.clear()
        self._held.clear()
        if self._state is not ConnectionState.FAILED:
            self._set_state(ConnectionState.DISCONNECTED)

    # ── Internals ──

    async def _open_and_restore(self) -> None:
        await self._transport.open(self._on_message)
        for channel in list(self._subs):
            await self._transport.attach(channel)
        if self._subs:
            log.info("restored %d subscription(s)", len(self._subs))

    async def _close_transport(self) -> None:
        try:
            await self._transport.close()
        except Exception as exc:
            log.warning("feed close failed: %s", exc)

    def _mark_connected(self) -> None:
        self._attempts = 0
        self._set_state(ConnectionState.CONNECTED)
        while self._held and self.is_connected:
            channel, data = self._held.popleft()
            self._deliver(channel, data)

    async def _supervise(self) -> None:
        while not self._closing:
            await self._transport.wait_closed()
            if self._closing:
                return
            log.warning("feed connection lost")
            self._set_state(ConnectionState.RECONNECTING)
            if not await self._reconnect():
                return

    async def _reconnect(self) -> bool:
        while not self._closing:
            self._attempts += 1
            if self._attempts > self._max_attempts:
                await self._close_transport()
                self._set_state(ConnectionState.FAILED)
                self._emit_fatal(f"max reconnect attempts ({self._max_attempts}) exceeded")
                return False

            delay = self._interval * min(self._attempts, self._backoff_cap)
            log.info("reconnect attempt %d/%d in %.1fs", self._attempts, self._max_attempts, delay)
            await self._sleep(delay)
            if self._closing:
                return False

            await self._close_transport()
            try:
                await asyncio.wait_for(self._open_and_restore(), self._connect_timeout)
            except Exception as exc:
                log.warning("reconnect attempt %d failed: %s", self._attempts, exc)
                continue

            log.info("reconnected after %d attempt(s)", self._attempts)
            self._mark_connected()
            return True
        return False

    def _on_message(self, channel: str, data: Any) -> None:
        if not self.is_connected:
            if len(self._held) == self._held.maxlen:
                if self.dropped_messages == 0:
                    log.warning("hold buffer full (%d messages) while %s; dropping oldest",
                                self._held.maxlen, self._state.value)
                self.dropped_messages += 1
            self._held.append((channel, data))
            return
        self._deliver(channel, data)

    def _deliver(self, channel: str, data: Any) -> None:
        handler = self._subs.get(channel)
        if handler is None:
            log.debug("dropping message for unsubscribed channel %s", channel)
            return
        try:
            handler(channel, data)
        except Exception:
            log.exception("channel handler error on %s", channel)

    def _set_state(self, new: ConnectionState) -> None:
        old = self._state
        if old is new:
            return
        self._state = new
        log.info("connection state: %s -> %s", old.value, new.value)
        for cb in self._state_callbacks:
            try:
                cb(old, new)
            except Exception:
                log.exception("connection state callback error")

    def _emit_fatal(self, reason: str) -> None:
        log.error("feed connection failed permanently: %s", reason)
        for cb in self._fatal_callbacks:
            try:
                cb(reason)
            except Exception:
                log.exception("fatal callback error")
