import pytest

from ge_tracker.analysis import (
    PositionStatus,
    TradingSignal,
    TrendDirection,
    VolatilityCategory,
    analyze,
)
from ge_tracker.models import PricePoint


def test_empty_series_has_no_analysis() -> None:
    assert analyze([]) is None


def test_single_point_guards_every_division() -> None:
    analysis = analyze([PricePoint(date="2024/01/01", price=1_500_000)])

    assert analysis is not None
    assert analysis.data_points == 1
    assert analysis.min_price == analysis.max_price == analysis.avg_price == 1_500_000
    assert analysis.range_position == 50
    assert analysis.z_score == 0
    assert analysis.std_dev == 0
    assert analysis.weekly_change == analysis.daily_change == 0
    assert analysis.trend_direction is TrendDirection.STABLE
    assert analysis.percentile_rank == 50
    assert analysis.position_status is PositionStatus.NORMAL
    assert analysis.trading_signal is TradingSignal.NORMAL


def test_zero_prices_do_not_divide_by_zero() -> None:
    analysis = analyze([0, 0, 0])

    assert analysis is not None
    assert analysis.weekly_change_percent == 0
    assert analysis.price_range_percent == 0
    assert analysis.volatility == 0
    assert analysis.volatility_category is VolatilityCategory.LOW


def test_rising_series_statistics() -> None:
    prices = [100] * 8 + [110]
    analysis = analyze(prices)

    assert analysis is not None
    assert analysis.current_price == 110
    assert analysis.weekly_change == 10
    assert analysis.weekly_change_percent == pytest.approx(10.0)
    assert analysis.daily_change == 10
    assert analysis.overall_change == 10
    assert analysis.trend_direction is TrendDirection.RISING
    assert analysis.avg_price == 101
    assert analysis.range_position == 100
    assert analysis.position_status is PositionStatus.AT_HIGH
    assert analysis.trading_signal is TradingSignal.ABOVE_AVERAGE
    assert analysis.percentile_rank == pytest.approx(8.5 / 9 * 100)


def test_falling_series_is_a_good_buy_at_its_low() -> None:
    analysis = analyze([200, 200, 200, 200, 200, 200, 150])

    assert analysis is not None
    assert analysis.trend_direction is TrendDirection.FALLING
    assert analysis.range_position == 0
    assert analysis.position_status is PositionStatus.AT_LOW
    assert analysis.trading_signal is TradingSignal.GOOD_BUY
    assert analysis.volatility_category is VolatilityCategory.HIGH


def test_small_moves_stay_stable() -> None:
    analysis = analyze([1000, 1005, 1010, 1000, 1015])

    assert analysis is not None
    assert analysis.trend_direction is TrendDirection.STABLE
    assert analysis.volatility_category is VolatilityCategory.LOW


def test_average_rounds_half_up() -> None:
    analysis = analyze([2, 3])

    assert analysis is not None
    assert analysis.avg_price == 3


def test_stored_dicts_are_accepted_and_serialised_without_enums() -> None:
    analysis = analyze([{"date": "2024/01/01", "price": 5}, {"date": "2024/01/02", "price": 15}])

    assert analysis is not None
    stored = analysis.to_dict()
    assert stored["currentPrice"] == 15
    assert stored["trendDirection"] == "rising"
    assert stored["positionStatus"] == "at_recent_high"
    assert stored["volatilityCategory"] in {"Low", "Moderate", "High"}
    assert all(isinstance(key, str) and "_" not in key for key in stored)
