"""Data models for the copy pipeline.

API payloads are camelCase; everything past the parsing boundary uses these
frozen snapshots so components can pass orders by value.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from .utils import as_bool, as_int, as_str

log = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────
# Enums
# ──────────────────────────────────────────────────────────────

class OrderStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    FILLED = "FILLED"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class OrderEventKind(str, Enum):
    """Lifecycle notifications produced by the order monitor.

    The ``OWN_*`` kinds refer to this bot's wallet and feed exposure
    accounting; the rest refer to monitored wallets and drive copying.
    """
    DETECTED = "detected"
    CANCELLED = "cancelled"
    FILLED = "filled"
    OWN_DETECTED = "own_detected"
    OWN_CANCELLED = "own_cancelled"
    OWN_FILLED = "own_filled"

    @property
    def is_own(self) -> bool:
        return self.value.startswith("own_")


class CopyFailure(str, Enum):
    DISABLED = "disabled"
    INVALID_ODDS = "invalid_odds"
    INVALID_STAKE = "invalid_stake"
    STAKE_BELOW_MINIMUM = "stake_below_minimum"
    SIGNING_FAILED = "signing_failed"
    SUBMIT_FAILED = "submit_failed"
    REJECTED = "rejected"
    NOT_INITIALIZED = "not_initialized"


# ──────────────────────────────────────────────────────────────
# Orders
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True, slots=True)
class Order:
    """One maker order as reported by the exchange."""
    order_hash: str
    market_hash: str
    total_bet_size: int          # USDC minor units
    percentage_odds: int         # implied probability * 10^20
    fill_amount: int = 0
    pending_fill_amount: int = 0
    expiry: int = 0
    api_expiry: int = 0
    salt: str = ""
    is_maker_betting_outcome_one: bool = True
    signature: str = ""
    maker: str = ""
    base_token: str = ""
    update_time: int = 0
    sportx_event_id: str = ""

    @property
    def open_exposure(self) -> int:
        return max(0, self.total_bet_size - self.fill_amount)

    @classmethod
    def from_api(cls, d: Dict[str, Any]) -> "Order":
        order_hash = as_str(d.get("orderHash")).strip()
        market_hash = as_str(d.get("marketHash")).strip()
        if not order_hash or not market_hash:
            raise ValueError("order payload missing orderHash/marketHash")
        return cls(
            order_hash=order_hash,
            market_hash=market_hash,
            total_bet_size=as_int(d.get("totalBetSize")),
            percentage_odds=as_int(d.get("percentageOdds")),
            fill_amount=as_int(d.get("fillAmount")),
            pending_fill_amount=as_int(d.get("pendingFillAmount")),
            expiry=as_int(d.get("expiry")),
            api_expiry=as_int(d.get("apiExpiry")),
            salt=as_str(d.get("salt")),
            is_maker_betting_outcome_one=as_bool(d.get("isMakerBettingOutcomeOne"), True),
            signature=as_str(d.get("signature")),
            maker=as_str(d.get("maker")).lower(),
            base_token=as_str(d.get("baseToken")),
            update_time=as_int(d.get("updateTime")),
            sportx_event_id=as_str(d.get("sportXeventId") or d.get("sportXEventId")),
        )


@dataclass(frozen=True, slots=True)
class OrderUpdate:
    order: Order
    status: OrderStatus

    @property
    def update_time(self) -> int:
        return self.order.update_time


def parse_order_update(d: Any) -> Optional[OrderUpdate]:
    """Parse one feed entry; ``None`` for anything malformed."""
    if not isinstance(d, dict):
        log.warning("ignoring non-object order update: %r", type(d).__name__)
        return None
    try:
        status = OrderStatus(as_str(d.get("status")).upper())
        order = Order.from_api(d)
    except ValueError as exc:
        log.warning("ignoring malformed order update: %s", exc)
        return None
    return OrderUpdate(order=order, status=status)


@dataclass(frozen=True, slots=True)
class NewOrder:
    """Unsigned order in the exchange's canonical field set."""
    market_hash: str
    maker: str
    total_bet_size: str
    percentage_odds: str
    expiry: int
    api_expiry: int
    base_token: str
    executor: str
    salt: str
    is_maker_betting_outcome_one: bool

    def to_api(self) -> Dict[str, Any]:
        return {
            "marketHash": self.market_hash,
            "maker": self.maker,
            "totalBetSize": self.total_bet_size,
            "percentageOdds": self.percentage_odds,
            "expiry": self.expiry,
            "apiExpiry": self.api_expiry,
            "baseToken": self.base_token,
            "executor": self.executor,
            "salt": self.salt,
            "isMakerBettingOutcomeOne": self.is_maker_betting_outcome_one,
        }


@dataclass(frozen=True, slots=True)
class SignedOrder:
    order: NewOrder
    signature: str

    def to_api(self) -> Dict[str, Any]:
        d = self.order.to_api()
        d["signature"] = self.signature
        return d

    def as_order(self, order_hash: str) -> Order:
        """Snapshot of this order once the exchange has assigned its hash."""
        o = self.order
        return Order(
            order_hash=order_hash,
            market_hash=o.market_hash,
            total_bet_size=int(o.total_bet_size),
            percentage_odds=int(o.percentage_odds),
            expiry=o.expiry,
            api_expiry=o.api_expiry,
            salt=o.salt,
            is_maker_betting_outcome_one=o.is_maker_betting_outcome_one,
            signature=self.signature,
            maker=o.maker.lower(),
            base_token=o.base_token,
            update_time=int(time.time() * 1000),
        )


@dataclass(frozen=True, slots=True)
class OrderResponse:
    """Result of POST /orders/new."""
    orders: tuple[str, ...]
    statuses: tuple[str, ...]
    inserted: int

    @classmethod
    def from_api(cls, d: Dict[str, Any]) -> "OrderResponse":
        data = d.get("data") or {}
        return cls(
            orders=tuple(as_str(h) for h in data.get("orders") or ()),
            statuses=tuple(as_str(s) for s in data.get("statuses") or ()),
            inserted=as_int(data.get("inserted")),
        )

    @property
    def status_text(self) -> str:
        return ",".join(self.statuses) or "unknown"


# ──────────────────────────────────────────────────────────────
# Markets & metadata
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True, slots=True)
class Market:
    market_hash: str
    sport_id: int = 0
    league_id: int = 0
    market_type: int = 0
    game_time: int = 0              # unix seconds
    status: str = "ACTIVE"
    sportx_event_id: str = ""
    live_enabled: bool = False
    legs: tuple[str, ...] = ()
    sport_label: str = ""
    league_label: str = ""
    team_one_name: str = ""
    team_two_name: str = ""
    outcome_one_name: str = ""
    outcome_two_name: str = ""

    @property
    def is_parlay(self) -> bool:
        return len(self.legs) > 0

    def is_live(self, now: float) -> bool:
        return self.game_time <= now

    @property
    def label(self) -> str:
        if self.team_one_name or self.team_two_name:
            return f"{self.team_one_name} vs {self.team_two_name}"
        return self.market_hash

    @classmethod
    def from_api(cls, d: Dict[str, Any]) -> "Market":
        market_hash = as_str(d.get("marketHash")).strip()
        if not market_hash:
            raise ValueError("market payload missing marketHash")
        legs = []
        for leg in d.get("legs") or ():
            if isinstance(leg, dict):
                legs.append(as_str(leg.get("marketHash")))
            else:
                legs.append(as_str(leg))
        return cls(
            market_hash=market_hash,
            sport_id=as_int(d.get("sportId")),
            league_id=as_int(d.get("leagueId")),
            market_type=as_int(d.get("type")),
            game_time=as_int(d.get("gameTime")),
            status=as_str(d.get("status"), "ACTIVE"),
            sportx_event_id=as_str(d.get("sportXEventId") or d.get("sportXeventId")),
            live_enabled=as_bool(d.get("liveEnabled")),
            legs=tuple(legs),
            sport_label=as_str(d.get("sportLabel")),
            league_label=as_str(d.get("leagueLabel")),
            team_one_name=as_str(d.get("teamOneName")),
            team_two_name=as_str(d.get("teamTwoName")),
            outcome_one_name=as_str(d.get("outcomeOneName")),
            outcome_two_name=as_str(d.get("outcomeTwoName")),
        )


@dataclass(frozen=True, slots=True)
class Metadata:
    executor_address: str
    odds_ladder_step_size: int
    domain_version: str = ""
    maker_order_minimums: Dict[str, str] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, d: Dict[str, Any]) -> "Metadata":
        return cls(
            executor_address=as_str(d.get("executorAddress")),
            odds_ladder_step_size=as_int(d.get("oddsLadderStepSize")),
            domain_version=as_str(d.get("domainVersion")),
            maker_order_minimums={str(k): as_str(v) for k, v in (d.get("makerOrderMinimums") or {}).items()},
            raw=dict(d),
        )


# ──────────────────────────────────────────────────────────────
# Pipeline messages
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True, slots=True)
class OrderEvent:
    kind: OrderEventKind
    order: Order
    wallet: str
    market: Optional[Market] = None
    received_at: float = 0.0


@dataclass(frozen=True, slots=True)
class OrderModification:
    field: str
    original: str
    modified: str

    def to_dict(self) -> Dict[str, str]:
        return {"field": self.field, "original": self.original, "modified": self.modified}


@dataclass(frozen=True, slots=True)
class CopyResult:
    success: bool
    source_hash: str
    derived_hash: Optional[str] = None
    derived: Optional[Order] = None
    failure: Optional[CopyFailure] = None
    error: str = ""
    status: str = ""
    modifications: tuple[OrderModification, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "source_hash": self.source_hash,
            "derived_hash": self.derived_hash,
            "failure": self.failure.value if self.failure else None,
            "error": self.error,
            "status": self.status,
            "modifications": [m.to_dict() for m in self.modifications],
        }


@dataclass(frozen=True, slots=True)
class MappingEntry:
    source_hash: str
    derived_hash: str
    derived: Order
    source_wallet: str = ""
    created_at: float = 0.0


@dataclass(frozen=True, slots=True)
class ExposureStats:
    count: int
    total_open_exposure: int
    mappings: int = 0
