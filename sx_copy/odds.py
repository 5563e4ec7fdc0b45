"""Fixed-point odds arithmetic.

SX expresses a maker's odds as the implied probability scaled by 10^20, so
``"50000000000000000000"`` is 50%. The exchange only accepts odds that sit on
a ladder of rungs ``step_size * 10^15`` wide (default step 125 = 0.125%).

Everything here is integer arithmetic. Inputs may be ``int`` or decimal
strings; results are returned as strings, the way the API carries them.
"""
from __future__ import annotations

import math
import re
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from typing import Union

from .errors import ValidationError

ODDS_PRECISION = 10 ** 20
LADDER_UNIT = 10 ** 15
DEFAULT_LADDER_STEP = 125

ODDS_FORMATS = ("implied", "decimal", "american")

OddsLike = Union[int, str]

_DIGITS_RE = re.compile(r"^[0-9]+$")


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves toward +inf."""
    return math.floor(value + 0.5)


def finite_number(value: float, what: str) -> float:
    """``float(value)``, or ValidationError for NaN, infinities and non-numbers."""
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{what} must be a number, got {value!r}") from exc
    if not math.isfinite(number):
        raise ValidationError(f"{what} must be finite, got {value!r}")
    return number


def parse_odds(value: OddsLike) -> int:
    """Parse an odds value without range checks. Raises ValidationError."""
    if isinstance(value, bool):
        raise ValidationError(f"Invalid odds value: {value!r}")
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if text.startswith("-") and _DIGITS_RE.match(text[1:]):
        return -int(text[1:])
    if not _DIGITS_RE.match(text):
        raise ValidationError(f"Invalid odds value: {value!r}")
    return int(text)


def _odds_or_none(value: OddsLike) -> int | None:
    try:
        return parse_odds(value)
    except ValidationError:
        return None


def is_valid_odds(value: OddsLike) -> bool:
    odds = _odds_or_none(value)
    return odds is not None and 0 <= odds <= ODDS_PRECISION


def ladder_rung(step_size: int = DEFAULT_LADDER_STEP) -> int:
    if step_size <= 0:
        raise ValidationError(f"Invalid ladder step size: {step_size}")
    return int(step_size) * LADDER_UNIT


def is_on_ladder(value: OddsLike, step_size: int = DEFAULT_LADDER_STEP) -> bool:
    odds = _odds_or_none(value)
    if odds is None or odds < 0:
        return False
    return odds % ladder_rung(step_size) == 0


def quantize_to_ladder(value: OddsLike, step_size: int = DEFAULT_LADDER_STEP) -> str:
    """Floor ``value`` to the nearest rung at or below it."""
    odds = parse_odds(value)
    if odds < 0:
        raise ValidationError(f"Invalid odds value: {value!r}")
    rung = ladder_rung(step_size)
    return str((odds // rung) * rung)


def adjust_by_percentage(
    value: OddsLike,
    pct: float,
    ensure_ladder: bool = False,
    step_size: int = DEFAULT_LADDER_STEP,
) -> str:
    """Scale maker odds by ``1 + pct/100``.

    Positive ``pct`` makes the derived order less attractive for the maker
    (higher implied probability, so the taker gets a better price). Fractional
    percentages are honoured to two decimals.
    """
    if not is_valid_odds(value):
        raise ValidationError("Invalid maker odds")
    odds = parse_odds(value)

    # huge finite pct can still overflow to inf once scaled
    basis_points = finite_number(finite_number(pct, "Odds adjustment percentage") * 100,
                                 "Odds adjustment percentage")
    factor = 10000 + round_half_up(basis_points)
    adjusted = odds * factor // 10000
    if ensure_ladder:
        adjusted = int(quantize_to_ladder(adjusted, step_size)) if adjusted >= 0 else adjusted

    if not 0 <= adjusted <= ODDS_PRECISION:
        raise ValidationError("Adjusted odds out of valid range")
    return str(adjusted)


def adjust_by_steps(value: OddsLike, steps: float, step_size: int = DEFAULT_LADDER_STEP) -> str:
    """Move maker odds by whole ladder rungs."""
    if not is_valid_odds(value):
        raise ValidationError("Invalid maker odds")
    rungs = finite_number(steps, "Ladder steps")
    if rungs != int(rungs):
        raise ValidationError(f"Ladder steps must be a whole number, got {steps!r}")
    adjusted = parse_odds(value) + int(rungs) * ladder_rung(step_size)
    if adjusted < 0:
        raise ValidationError("Adjusted odds would be negative")
    if adjusted > ODDS_PRECISION:
        raise ValidationError("Adjusted odds out of valid range")
    return str(adjusted)


def implied_probability(value: OddsLike) -> Decimal:
    """Exact implied probability in [0, 1]."""
    return Decimal(parse_odds(value)).scaleb(-20)


def taker_odds(value: OddsLike) -> str:
    """Odds seen by the taker on the other side of a maker order."""
    if not is_valid_odds(value):
        raise ValidationError("Invalid maker odds")
    return str(ODDS_PRECISION - parse_odds(value))


def implied_to_odds(implied: Union[float, str, Decimal]) -> str:
    """``0.5`` -> ``"50000000000000000000"``. Truncated to whole basis points."""
    try:
        prob = Decimal(str(implied).strip())
    except InvalidOperation as exc:
        raise ValidationError(f"Invalid implied probability: {implied!r}") from exc
    if not prob.is_finite() or not 0 <= prob <= 1:
        raise ValidationError(f"Invalid implied probability: {implied!r}")
    bps = int((prob * 10000).to_integral_value(rounding=ROUND_FLOOR))
    return str(ODDS_PRECISION * bps // 10000)


def to_decimal_odds(value: OddsLike) -> Decimal:
    """European odds (``1 / probability``); zero odds give 0."""
    prob = implied_probability(value)
    if prob == 0:
        return Decimal(0)
    return 1 / prob


def from_decimal_odds(decimal_odds: Union[float, str, Decimal]) -> str:
    """``2.5`` -> ``"40000000000000000000"``; anything at or below 1 is ``"0"``."""
    try:
        dec = Decimal(str(decimal_odds).strip())
    except InvalidOperation as exc:
        raise ValidationError(f"Invalid decimal odds: {decimal_odds!r}") from exc
    if not dec.is_finite():
        raise ValidationError(f"Invalid decimal odds: {decimal_odds!r}")
    if dec <= 1:
        return "0"
    return implied_to_odds(1 / dec)


def format_odds(value: OddsLike, fmt: str = "implied", places: int = 2) -> str:
    """Display form for logs.

    ``implied``  ``"52500000000000000000"`` -> ``"52.50%"``
    ``decimal``  ``"40000000000000000000"`` -> ``"2.50"``
    ``american`` ``"40000000000000000000"`` -> ``"+150"``, 60% -> ``"-150"``
    """
    if fmt == "implied":
        pct = implied_probability(value) * 100
        return f"{pct:.{places}f}%"
    if fmt == "decimal":
        return f"{to_decimal_odds(value):.{places}f}"
    if fmt == "american":
        dec = to_decimal_odds(value)
        if dec <= 1:
            return "n/a"
        if dec >= 2:
            return f"+{(dec - 1) * 100:.0f}"
        return f"-{100 / (dec - 1):.0f}"
    raise ValidationError(f"Unknown odds format {fmt!r}; expected one of {ODDS_FORMATS}")
