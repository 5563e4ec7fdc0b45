"""Transform + submit: turn a source order into a signed derived order.

``copy_order`` never raises for per-order problems; every failure comes back
as a ``CopyResult`` with a ``CopyFailure`` kind. It also never touches the
ledger: recording a successful copy is the caller's job.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Dict, Optional

from .api_client import SXApiClient
from .config import API_EXPIRY_SECONDS, DEFAULT_ORDER_EXPIRY, LADDER_STEP_RANGE, Config
from .errors import ApiError, SigningError, ValidationError
from .models import (
    CopyFailure, CopyResult, Metadata, NewOrder, Order, OrderModification, SignedOrder,
)
from .odds import (
    DEFAULT_LADDER_STEP, adjust_by_percentage, adjust_by_steps, format_odds,
    is_on_ladder, quantize_to_ladder,
)
from .stake import clamp_stake, format_stake, parse_stake, scale_stake
from .telemetry import TelemetrySink
from .wallet import WalletSigner, new_salt, now_ts

log = logging.getLogger(__name__)


class OrderCopyEngine:
    """Applies odds/stake rules, signs and posts derived orders.

    Usage:
        engine = OrderCopyEngine(cfg, api, signer)
        await engine.initialize()
        result = await engine.copy_order(order, source_wallet)
    """

    def __init__(
        self,
        cfg: Config,
        api: SXApiClient,
        signer: WalletSigner,
        *,
        telemetry: Optional[TelemetrySink] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.cfg = cfg
        self._api = api
        self._signer = signer
        self._telemetry = telemetry or TelemetrySink()
        self._clock = clock
        self._sleep = sleep
        self.metadata: Optional[Metadata] = None
        self.ladder_step = DEFAULT_LADDER_STEP

    async def initialize(self) -> Metadata:
        metadata = await self._api.get_metadata()
        lo, hi = LADDER_STEP_RANGE
        if not lo <= metadata.odds_ladder_step_size <= hi:
            raise ValidationError(
                f"ladder step size has suspicious value {metadata.odds_ladder_step_size}; check metadata"
            )
        self.metadata = metadata
        self.ladder_step = metadata.odds_ladder_step_size or DEFAULT_LADDER_STEP
        log.info("copy engine initialized: executor=%s ladder_step=%d",
                 metadata.executor_address, self.ladder_step)
        return metadata

    # ── Adjustments ──

    def adjust_odds(self, odds: str) -> str:
        rule = self.cfg.copying.odds
        if rule.method == "percentage":
            adjusted = adjust_by_percentage(odds, rule.value, rule.ensure_ladder_compliance, self.ladder_step)
        elif rule.method == "fixed":
            adjusted = adjust_by_steps(odds, rule.value, self.ladder_step)
        else:
            adjusted = odds
        if rule.ensure_ladder_compliance and not is_on_ladder(adjusted, self.ladder_step):
            adjusted = quantize_to_ladder(adjusted, self.ladder_step)
        return adjusted

    def adjust_stake(self, stake: str) -> str:
        rule = self.cfg.copying.stake
        if rule.method == "percentage":
            return scale_stake(stake, rule.value)
        if rule.method == "fixed":
            return rule.min_stake
        parse_stake(stake)
        return stake

    # ── Copy ──

    def _fail(self, source: Order, failure: CopyFailure, error: str, *,
              status: str = "", mods: Sequence[OrderModification] = ()) -> CopyResult:
        log.warning("copy of %s failed (%s): %s", source.order_hash, failure.value, error)
        self._telemetry.emit("copy_failed", source_hash=source.order_hash,
                             failure=failure.value, error=error, status=status)
        return CopyResult(False, source.order_hash, failure=failure, error=error,
                          status=status, modifications=tuple(mods))

    async def copy_order(self, source: Order, source_wallet: str) -> CopyResult:
        copying = self.cfg.copying
        if not copying.enabled:
            return CopyResult(False, source.order_hash, failure=CopyFailure.DISABLED,
                              error="order copying is disabled")
        if self.metadata is None:
            return self._fail(source, CopyFailure.NOT_INITIALIZED, "engine not initialized")

        if copying.delay_s > 0:
            await self._sleep(copying.delay_s)

        mods: list[OrderModification] = []
        original_odds = str(source.percentage_odds)
        try:
            odds = self.adjust_odds(original_odds)
        except ValidationError as exc:
            return self._fail(source, CopyFailure.INVALID_ODDS, str(exc))
        if odds != original_odds:
            mods.append(OrderModification("odds", original_odds, odds))

        original_stake = str(source.total_bet_size)
        try:
            stake = self.adjust_stake(original_stake)
        except ValidationError as exc:
            return self._fail(source, CopyFailure.INVALID_STAKE, str(exc), mods=mods)
        check = clamp_stake(stake, copying.stake.min_stake, copying.stake.max_stake)
        if not check.ok:
            if parse_stake(stake) < parse_stake(copying.stake.min_stake):
                return self._fail(source, CopyFailure.STAKE_BELOW_MINIMUM, check.reason, mods=mods)
            log.info("clamping stake for %s: %s", source.order_hash, check.reason)
            stake = check.clamped or stake
        if stake != original_stake:
            mods.append(OrderModification("stake", original_stake, stake))

        maker = self._signer.address
        original_maker = source.maker or source_wallet
        if original_maker.lower() != maker.lower():
            mods.append(OrderModification("maker", original_maker, maker))

        new_order = NewOrder(
            market_hash=source.market_hash,
            maker=maker,
            total_bet_size=stake,
            percentage_odds=odds,
            expiry=DEFAULT_ORDER_EXPIRY,
            api_expiry=int(self._clock()) + API_EXPIRY_SECONDS,
            base_token=self.cfg.base_token,
            executor=self.metadata.executor_address,
            salt=new_salt(),
            is_maker_betting_outcome_one=source.is_maker_betting_outcome_one,
        )
        fmt = self.cfg.odds_format
        log.debug("derived order for %s: odds %s -> %s, stake %s -> %s",
                  source.order_hash, format_odds(original_odds, fmt), format_odds(odds, fmt),
                  format_stake(original_stake), format_stake(stake))

        try:
            signed = SignedOrder(new_order, self._signer.sign_order(new_order))
        except SigningError as exc:
            return self._fail(source, CopyFailure.SIGNING_FAILED, str(exc), mods=mods)

        try:
            response = await self._api.post_orders([signed])
        except ApiError as exc:
            return self._fail(source, CopyFailure.SUBMIT_FAILED, str(exc), mods=mods)

        if response.inserted == 0 or not response.orders:
            status = response.status_text
            return self._fail(source, CopyFailure.REJECTED, f"order submission failed: {status}",
                              status=status, mods=mods)

        derived_hash = response.orders[0]
        derived = signed.as_order(derived_hash)
        log.info("copied %s -> %s (%s, %s) from %s", source.order_hash, derived_hash,
                 format_odds(odds, fmt), format_stake(stake), source_wallet)
        self._telemetry.emit("order_copied", source_hash=source.order_hash, derived_hash=derived_hash,
                             source_wallet=source_wallet, odds=odds, stake=stake,
                             modifications=[m.to_dict() for m in mods])
        return CopyResult(True, source.order_hash, derived_hash=derived_hash, derived=derived,
                          status=response.status_text, modifications=tuple(mods))

    # ── Cancellation ──

    def _cancel_envelope(self, signature: str, salt: str, timestamp: int) -> Dict[str, Any]:
        return {"signature": signature, "salt": salt, "maker": self._signer.address,
                "timestamp": timestamp}

    async def cancel_orders(self, order_hashes: Sequence[str]) -> Dict[str, Any]:
        hashes = list(order_hashes)
        salt, timestamp = new_salt(), now_ts()
        signature = self._signer.sign_cancellation(hashes, salt, timestamp)
        payload = {"orderHashes": hashes, **self._cancel_envelope(signature, salt, timestamp)}
        response = await self._api.cancel_orders(payload)
        log.info("cancelled %d order(s)", len(hashes))
        return response

    async def cancel_event_orders(self, sportx_event_id: str) -> Dict[str, Any]:
        salt, timestamp = new_salt(), now_ts()
        signature = self._signer.sign_event_cancellation(sportx_event_id, salt, timestamp)
        payload = {"sportXeventId": sportx_event_id, **self._cancel_envelope(signature, salt, timestamp)}
        response = await self._api.cancel_event_orders(payload)
        log.info("cancelled orders for event %s", sportx_event_id)
        return response

    async def cancel_all_orders(self) -> Dict[str, Any]:
        salt, timestamp = new_salt(), now_ts()
        signature = self._signer.sign_cancel_all(salt, timestamp)
        response = await self._api.cancel_all_orders(self._cancel_envelope(signature, salt, timestamp))
        log.info("cancelled all open orders")
        return response
