"""Inclusion filters for source orders.

Checks run in a fixed order and the first failure wins:
market known → sport → market type → league → parlay → live → odds range.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .config import OrderFilters
from .models import Market, Order
from .odds import implied_probability


@dataclass(frozen=True, slots=True)
class FilterResult:
    passed: bool
    reason: str = ""     # short code, e.g. "odds_range"
    detail: str = ""


PASSED = FilterResult(True)


def evaluate_filters(order: Order, market: Optional[Market],
                     filters: OrderFilters, now: float) -> FilterResult:
    if market is None:
        return FilterResult(False, "market_not_found", f"market {order.market_hash} not found")

    if filters.sports and market.sport_id not in filters.sports:
        return FilterResult(False, "sport", f"sport {market.sport_id} not included")

    if filters.market_types and market.market_type not in filters.market_types:
        return FilterResult(False, "market_type", f"market type {market.market_type} not included")

    if filters.leagues and market.league_id not in filters.leagues:
        return FilterResult(False, "league", f"league {market.league_id} not included")

    if filters.exclude_parlay and market.is_parlay:
        return FilterResult(False, "parlay", f"parlay with {len(market.legs)} legs")

    if filters.exclude_live and market.is_live(now):
        return FilterResult(False, "live", f"game started at {market.game_time}")

    prob = implied_probability(order.percentage_odds)
    if prob < filters.min_odds or prob > filters.max_odds:
        return FilterResult(
            False, "odds_range",
            f"implied probability {prob.normalize()} outside [{filters.min_odds}, {filters.max_odds}]",
        )

    return PASSED
