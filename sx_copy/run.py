"""Entry point: wires all components and runs the copy bot.

Architecture:
    ┌──────────────┐
    │ Ably feed     │──batches──→ ConnectionManager (reconnect, resubscribe)
    └──────────────┘                     ↓
                                   OrderMonitor ──markets──→ SX REST
                                         ↓ OrderEvent queue
                                   CopyBotRunner
                          detected ↓            ↓ source cancelled / filled
                          OrderCopyEngine      cascade cancel
                                ↓                  ↓
                             Ledger (mappings, exposure)
                                ↓
                          TelemetrySink (JSONL)

Usage:
    python -m sx_copy.run --network testnet --wallets 0xabc...,0xdef...
    sx-copy --odds-method percentage --odds-value 2.5 --telemetry events.jsonl
"""
from __future__ import annotations

import asyncio
import logging
import logging.handlers
import signal
import sys
import time
from collections.abc import Callable, Coroutine
from typing import Any, Optional, Sequence

from .api_client import SXApiClient
from .config import Config, parse_args
from .connection import ConnectionManager
from .copy_engine import OrderCopyEngine
from .errors import ApiError, ConfigError, CopyBotError, SigningError
from .feed import AblyTransport, FeedTransport
from .ledger import Ledger
from .models import ConnectionState, CopyResult, OrderEvent, OrderEventKind
from .monitor import OrderMonitor
from .stake import format_stake
from .telemetry import TelemetrySink
from .wallet import WalletSigner

log = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s  %(message)s"
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 10


class CopyBotRunner:
    """Application context: owns every component and the shutdown sequence."""

    def __init__(
        self,
        cfg: Config,
        *,
        api: Optional[SXApiClient] = None,
        signer: Optional[WalletSigner] = None,
        transport: Optional[FeedTransport] = None,
        telemetry: Optional[TelemetrySink] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cfg = cfg
        if telemetry is None:
            telemetry = TelemetrySink.to_file(cfg.telemetry_path) if cfg.telemetry_path else TelemetrySink()
        self.telemetry = telemetry

        # Components
        self.api = api or SXApiClient(cfg.api_url, cfg.api_key, cfg.api)
        self.signer = signer or WalletSigner(cfg.private_key, cfg.chain_id, cfg.rpc_url)
        self.connection = ConnectionManager(
            transport or AblyTransport(self.api.create_token_request, rewind=cfg.monitoring.rewind),
            reconnect_interval_s=cfg.network.reconnect_interval_s,
            max_attempts=cfg.network.max_reconnect_attempts,
            backoff_cap=cfg.network.reconnect_backoff_cap,
            connect_timeout_s=cfg.network.connect_timeout_s,
        )
        self.ledger = Ledger()
        self.engine = OrderCopyEngine(cfg, self.api, self.signer, telemetry=self.telemetry, clock=clock)
        self.monitor = OrderMonitor(cfg, self.connection, self.api.get_markets, self.signer.address,
                                    telemetry=self.telemetry, clock=clock)

        self._tasks: set[asyncio.Task[Any]] = set()
        self._dispatcher: Optional[asyncio.Task[None]] = None
        self._status_task: Optional[asyncio.Task[None]] = None
        self._shutdown_task: Optional[asyncio.Task[None]] = None
        self._shutting_down = False
        self._stopped = asyncio.Event()
        self.shutdown_reason = ""

        self.copies_ok = 0
        self.copies_failed = 0
        self.duplicates = 0
        self.cascades = 0

        self._wire()

    def _wire(self) -> None:
        """Connect callbacks between components."""
        self.connection.on_state(self._on_connection_state)
        self.connection.on_fatal(lambda reason: self.request_shutdown(f"feed failed: {reason}"))

    # ── Lifecycle ──

    async def start(self) -> None:
        log.info("starting copy bot on %s as %s", self.cfg.network.name, self.signer.address)
        await self.engine.initialize()

        balance = await self.signer.token_balance(self.cfg.base_token)
        if balance is not None:
            log.info("wallet balance: %s", format_stake(balance))

        await self.connection.connect()
        await self.monitor.start()
        self._dispatcher = asyncio.create_task(self._dispatch(), name="dispatcher")
        self._status_task = asyncio.create_task(self._status_loop(), name="status")
        log.info("copy bot started: %d monitored wallet(s), %d subscription(s)",
                 len(self.monitor.monitored_wallets), len(self.connection.subscriptions))

    async def run(self) -> None:
        """Start, then block until shutdown has completed."""
        try:
            await self.start()
        except BaseException:
            await self.shutdown("startup failed")
            raise
        await self._stopped.wait()

    def request_shutdown(self, reason: str) -> None:
        """Schedule ``shutdown``; safe to call from callbacks and signal handlers."""
        if self._shutting_down or self._shutdown_task is not None:
            return
        self._shutdown_task = asyncio.get_running_loop().create_task(self.shutdown(reason), name="shutdown")

    async def shutdown(self, reason: str) -> None:
        """Ordered teardown. A second call is a no-op."""
        if self._shutting_down:
            return
        self._shutting_down = True
        self.shutdown_reason = reason
        log.info("shutting down: %s", reason)

        for task in (self._status_task, self._dispatcher):
            if task is not None:
                task.cancel()
        await asyncio.gather(*(t for t in (self._status_task, self._dispatcher) if t is not None),
                             return_exceptions=True)

        await self.monitor.stop()
        await self._drain(self.cfg.shutdown_grace_s)

        if self.cfg.copying.cancel_all_on_shutdown:
            await self.cancel_all_open_orders("shutdown")

        await self.connection.disconnect()
        self.log_status()
        await self.api.close()
        self.ledger.clear()
        self.telemetry.emit("shutdown", reason=reason)
        self.telemetry.close()
        self._stopped.set()
        log.info("shutdown complete")

    async def _drain(self, grace_s: float) -> None:
        pending = [t for t in self._tasks if not t.done()]
        if not pending:
            return
        log.info("waiting up to %.1fs for %d in-flight operation(s)", grace_s, len(pending))
        _, still_running = await asyncio.wait(pending, timeout=grace_s)
        for task in still_running:
            task.cancel()
        await asyncio.gather(*still_running, return_exceptions=True)
        if still_running:
            log.warning("abandoned %d operation(s) at shutdown", len(still_running))

    # ── Event handling ──

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("task %s failed: %r", task.get_name(), task.exception())

    async def _dispatch(self) -> None:
        while True:
            event = await self.monitor.events.get()
            try:
                self.handle_event(event)
            except Exception:
                log.exception("event dispatch error")

    def handle_event(self, event: OrderEvent) -> None:
        kind = event.kind
        order_hash = event.order.order_hash
        if kind is OrderEventKind.DETECTED:
            self._spawn(self.handle_order_detected(event), f"copy:{order_hash[:10]}")
        elif kind in (OrderEventKind.CANCELLED, OrderEventKind.FILLED):
            if self.cfg.copying.auto_cancel_on_source:
                self._spawn(self.handle_source_closed(event), f"cascade:{order_hash[:10]}")
        elif kind is OrderEventKind.OWN_DETECTED:
            self.ledger.record_own_instruction(event.order)
        elif kind in (OrderEventKind.OWN_CANCELLED, OrderEventKind.OWN_FILLED):
            if self.ledger.remove(order_hash) is not None:
                log.info("own order %s %s, no longer tracked", order_hash,
                         "filled" if kind is OrderEventKind.OWN_FILLED else "cancelled")

    async def handle_order_detected(self, event: OrderEvent) -> Optional[CopyResult]:
        source_hash = event.order.order_hash
        async with self.ledger.claim(source_hash):
            if self.ledger.is_already_copied(source_hash):
                self.duplicates += 1
                log.debug("%s already copied, ignoring redelivery", source_hash)
                return None
            result = await self.engine.copy_order(event.order, event.wallet)
            if result.success and result.derived is not None:
                self.ledger.record_mapping(result.derived, source_hash, event.wallet)
                self.copies_ok += 1
            else:
                self.copies_failed += 1
            return result

    async def handle_source_closed(self, event: OrderEvent) -> bool:
        """Cancel the derived order of a cancelled or filled source order."""
        source_hash = event.order.order_hash
        async with self.ledger.claim(source_hash):
            derived = self.ledger.find_derived(source_hash)
            if derived is None:
                return False
            try:
                await self.engine.cancel_orders([derived.order_hash])
            except (ApiError, SigningError) as exc:
                log.error("cascade cancel of %s for source %s failed: %s",
                          derived.order_hash, source_hash, exc)
                self.telemetry.emit("cascade_cancel", source_hash=source_hash,
                                    derived_hash=derived.order_hash, ok=False, error=str(exc))
                return False
            self.ledger.pop_mapping(source_hash)
            self.ledger.remove(derived.order_hash)
            self.cascades += 1
            log.info("source %s %s, cancelled derived %s", source_hash, event.kind.value, derived.order_hash)
            self.telemetry.emit("cascade_cancel", source_hash=source_hash,
                                derived_hash=derived.order_hash, ok=True, trigger=event.kind.value)
            return True

    async def cancel_all_open_orders(self, reason: str) -> bool:
        try:
            await self.engine.cancel_all_orders()
        except (ApiError, SigningError) as exc:
            log.error("cancel-all (%s) failed: %s", reason, exc)
            return False
        self.ledger.clear()
        log.warning("cancelled all open orders (%s)", reason)
        return True

    def _on_connection_state(self, old: ConnectionState, new: ConnectionState) -> None:
        self.telemetry.emit("connection_state", old=old.value, new=new.value)
        if (old is ConnectionState.CONNECTED and new is ConnectionState.RECONNECTING
                and self.cfg.copying.cancel_all_on_disconnect and not self._shutting_down):
            log.warning("feed disconnected, cancelling all open orders")
            self._spawn(self.cancel_all_open_orders("disconnect"), "cancel-all")

    # ── Status ──

    def status(self) -> dict[str, Any]:
        exposure = self.ledger.exposure_stats()
        return {
            "connection": self.connection.state.value,
            "monitored_wallets": len(self.monitor.monitored_wallets),
            "subscriptions": len(self.connection.subscriptions),
            "tracked_orders": exposure.count,
            "open_exposure": exposure.total_open_exposure,
            "mappings": exposure.mappings,
            "copies_ok": self.copies_ok,
            "copies_failed": self.copies_failed,
            "duplicates": self.duplicates,
            "cascades": self.cascades,
            "monitor": self.monitor.stats(),
        }

    def log_status(self) -> None:
        s = self.status()
        log.info("status: conn=%s tracked=%d exposure=%s mappings=%d copied=%d failed=%d filtered=%s",
                 s["connection"], s["tracked_orders"], format_stake(s["open_exposure"]),
                 s["mappings"], s["copies_ok"], s["copies_failed"], s["monitor"]["filtered"])
        self.telemetry.emit("exposure", count=s["tracked_orders"],
                            total_open_exposure=str(s["open_exposure"]), mappings=s["mappings"])
        self.telemetry.flush()

    async def _status_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cfg.status_interval_s)
            try:
                self.log_status()
            except Exception:
                log.exception("status loop error")


def setup_logging(cfg: Config) -> None:
    logging.basicConfig(
        level=getattr(logging, cfg.log_level, logging.INFO),
        format=LOG_FORMAT,
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )
    if cfg.log_file:
        handler = logging.handlers.RotatingFileHandler(
            cfg.log_file, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS, encoding="utf-8",
        )
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(handler)


async def _amain(cfg: Config) -> int:
    runner = CopyBotRunner(cfg)

    # Graceful shutdown on SIGINT/SIGTERM
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, runner.request_shutdown, sig.name)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    try:
        await runner.run()
    except CopyBotError as exc:
        log.error("copy bot failed to start: %s", exc)
        return 1
    return 1 if runner.shutdown_reason.startswith("feed failed") else 0


def main(argv: Sequence[str] | None = None) -> int:
    try:
        cfg = parse_args(argv)
        cfg.require_credentials()
    except ConfigError as exc:
        print(f"configuration error: {exc}", file=sys.stderr)
        return 2

    setup_logging(cfg)
    try:
        return asyncio.run(_amain(cfg))
    except KeyboardInterrupt:
        log.info("interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
