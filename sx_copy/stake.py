"""Stake sizing in USDC minor units (6 decimals)."""
from __future__ import annotations

import re
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import NamedTuple, Optional, Union

from .errors import ValidationError
from .odds import finite_number, round_half_up

USDC_DECIMALS = 6
USDC_UNIT = 10 ** USDC_DECIMALS
MAX_STAKE_PERCENTAGE = 1000

StakeLike = Union[int, str]

_DIGITS_RE = re.compile(r"^[0-9]+$")


class StakeCheck(NamedTuple):
    ok: bool
    clamped: Optional[str]
    reason: str = ""


def parse_stake(value: StakeLike) -> int:
    if isinstance(value, bool):
        raise ValidationError("Invalid stake format")
    if isinstance(value, int):
        if value < 0:
            raise ValidationError("Invalid stake format")
        return value
    text = str(value).strip()
    if not _DIGITS_RE.match(text):
        raise ValidationError("Invalid stake format")
    return int(text)


def scale_stake(value: StakeLike, pct: float) -> str:
    """``scale_stake("1000000", 50) == "500000"``; pct is limited to [0, 1000]."""
    stake = parse_stake(value)
    pct = finite_number(pct, "Stake percentage")
    if pct < 0 or pct > MAX_STAKE_PERCENTAGE:
        raise ValidationError(f"Percentage must be between 0 and {MAX_STAKE_PERCENTAGE}")
    return str(stake * round_half_up(pct * 100) // 10000)


def clamp_stake(value: StakeLike, minimum: StakeLike, maximum: StakeLike) -> StakeCheck:
    """Check ``value`` against [minimum, maximum].

    Out-of-range values report ``ok=False`` with the nearest bound attached;
    whether to use it is the caller's decision.
    """
    stake = parse_stake(value)
    lo = parse_stake(minimum)
    hi = parse_stake(maximum)
    if stake < lo:
        return StakeCheck(False, str(lo), f"stake {format_stake(stake)} below minimum {format_stake(lo)}")
    if stake > hi:
        return StakeCheck(False, str(hi), f"stake {format_stake(stake)} above maximum {format_stake(hi)}")
    return StakeCheck(True, None)


def to_wei(amount: Union[str, int, float, Decimal]) -> str:
    """``"20"`` USDC -> ``"20000000"``. Sub-unit fractions are truncated."""
    try:
        dec = Decimal(str(amount).strip())
    except InvalidOperation as exc:
        raise ValidationError(f"Invalid USDC amount: {amount!r}") from exc
    if not dec.is_finite() or dec < 0:
        raise ValidationError(f"Invalid USDC amount: {amount!r}")
    return str(int((dec * USDC_UNIT).to_integral_value(rounding=ROUND_DOWN)))


def from_wei(value: StakeLike) -> Decimal:
    return Decimal(parse_stake(value)) / USDC_UNIT


def format_stake(value: StakeLike) -> str:
    return f"{from_wei(value):.2f} USDC"
