"""Tests for odds and stake arithmetic."""
from __future__ import annotations

from decimal import Decimal

import pytest

from sx_copy.errors import ValidationError
from sx_copy.odds import (
    ODDS_PRECISION, adjust_by_percentage, adjust_by_steps, format_odds,
    implied_probability, is_on_ladder, is_valid_odds, quantize_to_ladder,
    from_decimal_odds, implied_to_odds, round_half_up, taker_odds, to_decimal_odds,
)
from sx_copy.stake import (
    clamp_stake, format_stake, from_wei, scale_stake, to_wei,
)


FIFTY = "50000000000000000000"
NINETY_FIVE = "95000000000000000000"
NINETY_NINE = "99000000000000000000"


# ──────────────────────────────────────────────────────────────
# Odds validation
# ──────────────────────────────────────────────────────────────


class TestOddsValidation:
    def test_bounds_inclusive(self) -> None:
        assert is_valid_odds("0")
        assert is_valid_odds(str(ODDS_PRECISION))
        assert is_valid_odds(FIFTY)

    def test_out_of_range(self) -> None:
        assert not is_valid_odds(str(ODDS_PRECISION + 1))
        assert not is_valid_odds("-1")
        assert not is_valid_odds(-5)

    def test_malformed(self) -> None:
        assert not is_valid_odds("abc")
        assert not is_valid_odds("1.5")
        assert not is_valid_odds("")
        assert not is_valid_odds("1e20")

    def test_int_input(self) -> None:
        assert is_valid_odds(5 * 10 ** 19)

    def test_round_half_up(self) -> None:
        assert round_half_up(2.5) == 3
        assert round_half_up(-2.5) == -2
        assert round_half_up(321.0) == 321


# ──────────────────────────────────────────────────────────────
# Percentage adjustment
# ──────────────────────────────────────────────────────────────


class TestAdjustByPercentage:
    def test_ten_percent(self) -> None:
        assert adjust_by_percentage(FIFTY, 10, False, 125) == "55000000000000000000"

    def test_one_percent(self) -> None:
        assert adjust_by_percentage(FIFTY, 1) == "50500000000000000000"

    def test_hundred_percent_hits_ceiling(self) -> None:
        assert adjust_by_percentage(FIFTY, 100) == str(ODDS_PRECISION)

    def test_fractional_percentage(self) -> None:
        assert adjust_by_percentage(FIFTY, 3.21) == "51605000000000000000"

    def test_integer_division_truncates(self) -> None:
        assert adjust_by_percentage("33333333333333333333", 5) == "34999999999999999999"

    def test_small_odds(self) -> None:
        assert adjust_by_percentage("10000000000000000000", 33) == "13300000000000000000"

    def test_high_odds(self) -> None:
        assert adjust_by_percentage(NINETY_FIVE, 5) == "99750000000000000000"

    def test_negative_percentage(self) -> None:
        assert adjust_by_percentage(FIFTY, -10) == "45000000000000000000"

    def test_tiny_odds_not_laddered(self) -> None:
        assert adjust_by_percentage("1000000000000000", 10) == "1100000000000000"

    def test_ladder_rounds_down(self) -> None:
        # 51.605% floors to the 51.5% rung
        assert adjust_by_percentage(FIFTY, 3.21, True, 125) == "51500000000000000000"

    def test_result_out_of_range(self) -> None:
        with pytest.raises(ValidationError, match="out of valid range"):
            adjust_by_percentage(NINETY_NINE, 10)

    def test_invalid_input(self) -> None:
        with pytest.raises(ValidationError, match="Invalid maker odds"):
            adjust_by_percentage(str(ODDS_PRECISION + 1), 1)
        with pytest.raises(ValidationError, match="Invalid maker odds"):
            adjust_by_percentage("fifty", 1)

    @pytest.mark.parametrize("pct", [float("nan"), float("inf"), float("-inf"), 1e308])
    def test_non_finite_percentage(self, pct: float) -> None:
        with pytest.raises(ValidationError, match="finite"):
            adjust_by_percentage(FIFTY, pct, True, 125)


# ──────────────────────────────────────────────────────────────
# Step adjustment
# ──────────────────────────────────────────────────────────────


class TestAdjustBySteps:
    def test_one_step_up(self) -> None:
        assert adjust_by_steps(FIFTY, 1) == "50125000000000000000"

    def test_one_step_down(self) -> None:
        assert adjust_by_steps(FIFTY, -1) == "49875000000000000000"

    def test_three_steps_from_high(self) -> None:
        assert adjust_by_steps(NINETY_FIVE, 3) == "95375000000000000000"

    def test_ten_steps(self) -> None:
        assert adjust_by_steps(FIFTY, 10) == "51250000000000000000"

    def test_custom_step_size(self) -> None:
        assert adjust_by_steps(FIFTY, 2, step_size=25) == "50050000000000000000"

    def test_negative_result(self) -> None:
        with pytest.raises(ValidationError, match="negative"):
            adjust_by_steps("1000000000000000", -10)

    def test_above_ceiling(self) -> None:
        with pytest.raises(ValidationError, match="out of valid range"):
            adjust_by_steps(NINETY_NINE, 10)

    @pytest.mark.parametrize("steps", [float("nan"), float("inf")])
    def test_non_finite_steps(self, steps: float) -> None:
        with pytest.raises(ValidationError, match="finite"):
            adjust_by_steps(FIFTY, steps)

    def test_fractional_steps(self) -> None:
        with pytest.raises(ValidationError, match="whole number"):
            adjust_by_steps(FIFTY, 1.5)
        assert adjust_by_steps(FIFTY, 2.0) == "50250000000000000000"

    @pytest.mark.parametrize("odds", [FIFTY, "50125000000000000000", "12500000000000000000"])
    @pytest.mark.parametrize("steps", [1, 4, 17])
    def test_round_trip(self, odds: str, steps: int) -> None:
        up = adjust_by_steps(odds, steps)
        assert adjust_by_steps(up, -steps) == odds


# ──────────────────────────────────────────────────────────────
# Ladder
# ──────────────────────────────────────────────────────────────


class TestLadder:
    def test_floor(self) -> None:
        assert quantize_to_ladder("50100000000000000000") == FIFTY
        assert quantize_to_ladder("50124999999999999999") == FIFTY

    def test_on_rung_unchanged(self) -> None:
        assert quantize_to_ladder("50125000000000000000") == "50125000000000000000"

    def test_never_rounds_up(self) -> None:
        for raw in ("1", "124999999999999999", "99999999999999999999"):
            assert int(quantize_to_ladder(raw)) <= int(raw)

    @pytest.mark.parametrize("raw", ["0", "1", "33333333333333333333", "99999999999999999999",
                                     str(ODDS_PRECISION)])
    def test_idempotent(self, raw: str) -> None:
        once = quantize_to_ladder(raw)
        assert quantize_to_ladder(once) == once

    def test_is_on_ladder(self) -> None:
        assert is_on_ladder(FIFTY)
        assert is_on_ladder("50125000000000000000")
        assert not is_on_ladder("50100000000000000000")
        assert not is_on_ladder("garbage")

    def test_step_size_zero_rejected(self) -> None:
        with pytest.raises(ValidationError):
            quantize_to_ladder(FIFTY, 0)


# ──────────────────────────────────────────────────────────────
# Conversions
# ──────────────────────────────────────────────────────────────


class TestOddsConversions:
    def test_implied_probability_exact(self) -> None:
        assert implied_probability("20000000000000000000") == Decimal("0.2")
        assert implied_probability("19999999999999999999") < Decimal("0.2")

    def test_taker_odds(self) -> None:
        assert taker_odds("52500000000000000000") == "47500000000000000000"

    def test_format_odds(self) -> None:
        assert format_odds("52500000000000000000") == "52.50%"

    def test_format_decimal(self) -> None:
        assert format_odds(FIFTY, "decimal") == "2.00"
        assert format_odds("40000000000000000000", "decimal") == "2.50"
        assert format_odds("0", "decimal") == "0.00"

    def test_format_american(self) -> None:
        assert format_odds("40000000000000000000", "american") == "+150"
        assert format_odds(FIFTY, "american") == "+100"
        assert format_odds("60000000000000000000", "american") == "-150"
        assert format_odds(str(ODDS_PRECISION), "american") == "n/a"

    def test_unknown_format(self) -> None:
        with pytest.raises(ValidationError, match="Unknown odds format"):
            format_odds(FIFTY, "fractional")

    def test_implied_to_odds(self) -> None:
        assert implied_to_odds(0.5) == FIFTY
        assert implied_to_odds("0.33339") == "33330000000000000000"
        assert implied_to_odds(1) == str(ODDS_PRECISION)
        with pytest.raises(ValidationError):
            implied_to_odds(1.5)
        with pytest.raises(ValidationError):
            implied_to_odds("nan")

    def test_decimal_odds_conversion(self) -> None:
        assert to_decimal_odds(FIFTY) == Decimal(2)
        assert to_decimal_odds("0") == Decimal(0)
        assert from_decimal_odds(2.5) == "40000000000000000000"
        assert from_decimal_odds("3") == "33330000000000000000"
        assert from_decimal_odds(1) == "0"
        with pytest.raises(ValidationError):
            from_decimal_odds("inf")


# ──────────────────────────────────────────────────────────────
# Stake
# ──────────────────────────────────────────────────────────────


class TestScaleStake:
    def test_half(self) -> None:
        assert scale_stake("1000000", 50) == "500000"

    def test_identity(self) -> None:
        assert scale_stake("1000000", 100) == "1000000"

    def test_zero(self) -> None:
        assert scale_stake("1000000", 0) == "0"

    def test_fractional(self) -> None:
        assert scale_stake("1000000", 66.67) == "666700"

    def test_truncates(self) -> None:
        assert scale_stake("1234567", 25) == "308641"

    def test_max_percentage(self) -> None:
        assert scale_stake("1000000", 1000) == "10000000"

    @pytest.mark.parametrize("pct", [-1, -0.01, 1000.01, 1001])
    def test_percentage_out_of_range(self, pct: float) -> None:
        with pytest.raises(ValidationError, match="between 0 and 1000"):
            scale_stake("1000000", pct)

    @pytest.mark.parametrize("pct", [float("nan"), float("inf")])
    def test_non_finite_percentage(self, pct: float) -> None:
        with pytest.raises(ValidationError, match="finite"):
            scale_stake("1000000", pct)

    @pytest.mark.parametrize("stake", ["1.5", "-100", "abc", ""])
    def test_invalid_stake(self, stake: str) -> None:
        with pytest.raises(ValidationError, match="Invalid stake format"):
            scale_stake(stake, 50)


class TestClampStake:
    def test_within(self) -> None:
        check = clamp_stake("30000000", "20000000", "50000000")
        assert check.ok
        assert check.clamped is None

    def test_bounds_inclusive(self) -> None:
        assert clamp_stake("20000000", "20000000", "50000000").ok
        assert clamp_stake("50000000", "20000000", "50000000").ok

    def test_below_min(self) -> None:
        check = clamp_stake("10000000", "20000000", "50000000")
        assert not check.ok
        assert check.clamped == "20000000"
        assert "below minimum" in check.reason

    def test_above_max(self) -> None:
        check = clamp_stake("60000000", "20000000", "50000000")
        assert not check.ok
        assert check.clamped == "50000000"
        assert "above maximum" in check.reason


class TestUsdcUnits:
    def test_to_wei(self) -> None:
        assert to_wei("20") == "20000000"
        assert to_wei("0.5") == "500000"
        assert to_wei(50) == "50000000"

    def test_to_wei_truncates_dust(self) -> None:
        assert to_wei("1.0000009") == "1000000"

    def test_to_wei_rejects(self) -> None:
        with pytest.raises(ValidationError):
            to_wei("-1")
        with pytest.raises(ValidationError):
            to_wei("lots")

    def test_from_wei(self) -> None:
        assert from_wei("1500000") == Decimal("1.5")

    def test_format(self) -> None:
        assert format_stake("20000000") == "20.00 USDC"
