"""Order monitor: feed batches in, ``OrderEvent``s out.

One channel per wallet (``active_orders_v2:{token}:{wallet}``). Each channel
has its own inbox and worker, so batches on one channel are handled strictly
in arrival order while different wallets proceed concurrently. Inside a
batch, updates are applied in ``updateTime`` order.

Classification:
    INACTIVE                     → cancelled
    FILLED                       → filled
    ACTIVE, pending fill != 0    → skipped (in-flight artifact)
    ACTIVE, own wallet           → own_detected
    ACTIVE, fill != 0            → skipped (resend of a partially filled order)
    ACTIVE                       → filters → detected | dropped
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, Optional

from .config import Config
from .connection import ConnectionManager
from .filters import evaluate_filters
from .market_cache import MarketCache, MarketFetcher
from .models import Market, OrderEvent, OrderEventKind, OrderStatus, OrderUpdate, parse_order_update
from .odds import format_odds
from .telemetry import TelemetrySink

log = logging.getLogger(__name__)


@dataclass(slots=True)
class _Channel:
    wallet: str
    inbox: asyncio.Queue[Any]
    worker: Optional[asyncio.Task[None]] = None


class OrderMonitor:
    """Subscribes to wallet order channels and publishes lifecycle events.

    Usage:
        monitor = OrderMonitor(cfg, conn, api.get_markets, own_wallet=signer.address)
        await monitor.start()
        event = await monitor.events.get()
    """

    def __init__(
        self,
        cfg: Config,
        connection: ConnectionManager,
        fetch_markets: MarketFetcher,
        own_wallet: str,
        *,
        telemetry: Optional[TelemetrySink] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cfg = cfg
        self._conn = connection
        self._markets = MarketCache(fetch_markets)
        self.own_wallet = own_wallet.lower()
        self._telemetry = telemetry or TelemetrySink()
        self._clock = clock

        self.events: asyncio.Queue[OrderEvent] = asyncio.Queue()
        self._channels: dict[str, _Channel] = {}
        self._running = False

        self.detected = 0
        self.skipped = 0
        self.filtered: Counter[str] = Counter()
        self.processed = 0

    @property
    def monitored_wallets(self) -> tuple[str, ...]:
        return tuple(w for w in self.cfg.monitoring.wallets if w != self.own_wallet)

    @property
    def markets(self) -> MarketCache:
        return self._markets

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        for wallet in (self.own_wallet, *self.monitored_wallets):
            channel = self.cfg.order_channel(wallet)
            state = _Channel(wallet=wallet, inbox=asyncio.Queue())
            state.worker = asyncio.create_task(self._worker(channel, state), name=f"monitor:{wallet[:10]}")
            self._channels[channel] = state
            await self._conn.subscribe(channel, self._on_message)
        log.info("monitoring %d wallet(s) plus own wallet %s",
                 len(self.monitored_wallets), self.own_wallet)

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        channels, self._channels = self._channels, {}
        for channel in channels:
            await self._conn.unsubscribe(channel)
        workers = [c.worker for c in channels.values() if c.worker is not None]
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        log.info("order monitor stopped")

    def stats(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "detected": self.detected,
            "skipped": self.skipped,
            "filtered": dict(self.filtered),
            "markets_cached": len(self._markets),
            "queued_events": self.events.qsize(),
        }

    # ── Feed side ──

    def _on_message(self, channel: str, data: Any) -> None:
        state = self._channels.get(channel)
        if state is None:
            return
        state.inbox.put_nowait(data)

    async def _worker(self, channel: str, state: _Channel) -> None:
        while True:
            data = await state.inbox.get()
            try:
                await self.process_batch(state.wallet, data)
            except Exception:
                log.exception("order batch failed on %s", channel)

    # ── Processing ──

    async def process_batch(self, wallet: str, data: Any) -> list[OrderEvent]:
        """Classify one feed batch for ``wallet``; returns the events published."""
        items: Sequence[Any] = data if isinstance(data, list) else [data]
        updates = [u for u in (parse_order_update(item) for item in items) if u is not None]
        updates.sort(key=lambda u: u.update_time)
        is_own = wallet.lower() == self.own_wallet

        markets: dict[str, Market] = {}
        if not is_own:
            wanted = [u.order.market_hash for u in updates if self._is_candidate(u)]
            if wanted:
                markets = await self._markets.get_many(wanted)

        published: list[OrderEvent] = []
        for update in updates:
            self.processed += 1
            event = self._classify(wallet, is_own, update, markets)
            if event is not None:
                self.events.put_nowait(event)
                published.append(event)
        return published

    @staticmethod
    def _is_candidate(update: OrderUpdate) -> bool:
        o = update.order
        return (update.status is OrderStatus.ACTIVE
                and o.pending_fill_amount == 0 and o.fill_amount == 0)

    def _classify(self, wallet: str, is_own: bool, update: OrderUpdate,
                  markets: dict[str, Market]) -> Optional[OrderEvent]:
        order = update.order
        now = self._clock()

        if update.status is OrderStatus.INACTIVE:
            kind = OrderEventKind.OWN_CANCELLED if is_own else OrderEventKind.CANCELLED
            return OrderEvent(kind, order, wallet, received_at=now)
        if update.status is OrderStatus.FILLED:
            kind = OrderEventKind.OWN_FILLED if is_own else OrderEventKind.FILLED
            return OrderEvent(kind, order, wallet, received_at=now)

        if order.pending_fill_amount != 0:
            self.skipped += 1
            log.debug("skipping %s: pending fill %d", order.order_hash, order.pending_fill_amount)
            return None
        if is_own:
            return OrderEvent(OrderEventKind.OWN_DETECTED, order, wallet, received_at=now)
        if order.fill_amount != 0:
            self.skipped += 1
            log.debug("skipping %s: already partially filled", order.order_hash)
            return None

        market = markets.get(order.market_hash)
        result = evaluate_filters(order, market, self.cfg.filters, now)
        if not result.passed:
            self.filtered[result.reason] += 1
            log.info("filtered %s from %s: %s", order.order_hash, wallet, result.detail)
            self._telemetry.emit("order_filtered", order_hash=order.order_hash, wallet=wallet,
                                 reason=result.reason, detail=result.detail)
            return None

        self.detected += 1
        log.info("detected %s from %s: %s @ %s on %s", order.order_hash, wallet,
                 order.total_bet_size, format_odds(order.percentage_odds, self.cfg.odds_format),
                 market.label if market else order.market_hash)
        self._telemetry.emit("order_detected", order_hash=order.order_hash, wallet=wallet,
                             market_hash=order.market_hash, odds=str(order.percentage_odds),
                             stake=str(order.total_bet_size))
        return OrderEvent(OrderEventKind.DETECTED, order, wallet, market=market, received_at=now)
