"""Price-history statistics used for trend and trading-signal reporting."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Iterable, Mapping

WEEKLY_LOOKBACK = 7
DAILY_LOOKBACK = 2
TREND_THRESHOLD_PCT = 2.0
VOLATILITY_LOW_MAX = 3.0
VOLATILITY_MODERATE_MAX = 8.0


class TrendDirection(str, Enum):
    RISING = "rising"
    FALLING = "falling"
    STABLE = "stable"


class VolatilityCategory(str, Enum):
    LOW = "Low"
    MODERATE = "Moderate"
    HIGH = "High"


class TradingSignal(str, Enum):
    GOOD_BUY = "good_buy"
    GOOD_SELL = "good_sell"
    BELOW_AVERAGE = "below_average"
    ABOVE_AVERAGE = "above_average"
    NORMAL = "normal"


class PositionStatus(str, Enum):
    AT_HIGH = "at_recent_high"
    NEAR_HIGH = "near_recent_high"
    NORMAL = "normal_range"
    NEAR_LOW = "near_recent_low"
    AT_LOW = "at_recent_low"


@dataclass(frozen=True)
class PriceAnalysis:
    current_price: float
    min_price: float
    max_price: float
    avg_price: float
    weekly_change: float
    weekly_change_percent: float
    daily_change: float
    daily_change_percent: float
    overall_change: float
    overall_change_percent: float
    trend_direction: TrendDirection
    data_points: int
    price_range: float
    price_range_percent: float
    std_dev: float
    volatility: float
    volatility_category: VolatilityCategory
    range_position: float
    z_score: float
    percentile_rank: float
    trading_signal: TradingSignal
    position_status: PositionStatus

    def to_dict(self) -> dict[str, Any]:
        """Return the stored form: camelCase keys, enum members as plain strings."""

        out: dict[str, Any] = {}
        for key, value in asdict(self).items():
            head, *rest = key.split("_")
            camel = head + "".join(part.capitalize() for part in rest)
            out[camel] = value.value if isinstance(value, Enum) else value
        return out


def _pct(delta: float, base: float) -> float:
    return (delta / base * 100.0) if base > 0 else 0.0


def _price_of(point: Any) -> float:
    if isinstance(point, Mapping):
        return float(point["price"])
    if isinstance(point, (int, float)):
        return float(point)
    return float(point.price)


def _round_half_up(value: float) -> float:
    return float(math.floor(value + 0.5))


def _volatility_category(volatility: float) -> VolatilityCategory:
    if volatility > VOLATILITY_MODERATE_MAX:
        return VolatilityCategory.HIGH
    if volatility > VOLATILITY_LOW_MAX:
        return VolatilityCategory.MODERATE
    return VolatilityCategory.LOW


def _trading_signal(avg_deviation_pct: float, range_position: float) -> TradingSignal:
    if avg_deviation_pct < -10 and range_position < 30:
        return TradingSignal.GOOD_BUY
    if avg_deviation_pct > 10 and range_position > 70:
        return TradingSignal.GOOD_SELL
    if avg_deviation_pct < -5:
        return TradingSignal.BELOW_AVERAGE
    if avg_deviation_pct > 5:
        return TradingSignal.ABOVE_AVERAGE
    return TradingSignal.NORMAL


def _position_status(range_position: float) -> PositionStatus:
    if range_position >= 90:
        return PositionStatus.AT_HIGH
    if range_position <= 10:
        return PositionStatus.AT_LOW
    if range_position >= 70:
        return PositionStatus.NEAR_HIGH
    if range_position <= 30:
        return PositionStatus.NEAR_LOW
    return PositionStatus.NORMAL


def analyze(series: Iterable[Any]) -> PriceAnalysis | None:
    """Compute trend, volatility and position statistics for *series*.

    *series* is ordered oldest first; entries may be ``PricePoint`` objects,
    stored ``{"price": ...}`` dictionaries or bare numbers. The last entry is
    treated as the current price. Returns ``None`` for an empty series.
    """

    prices = [_price_of(point) for point in series]
    if not prices:
        return None

    n = len(prices)
    current = prices[-1]
    oldest = prices[0]
    min_price = min(prices)
    max_price = max(prices)
    avg_price = _round_half_up(sum(prices) / n)

    week_ago = prices[max(0, n - WEEKLY_LOOKBACK)]
    day_ago = prices[max(0, n - DAILY_LOOKBACK)]
    weekly_change = current - week_ago
    weekly_change_percent = _pct(weekly_change, week_ago)
    daily_change = current - day_ago
    overall_change = current - oldest

    if abs(weekly_change_percent) > TREND_THRESHOLD_PCT:
        trend = TrendDirection.RISING if weekly_change_percent > 0 else TrendDirection.FALLING
    else:
        trend = TrendDirection.STABLE

    variance = sum((price - avg_price) ** 2 for price in prices) / n
    std_dev = math.sqrt(variance)
    volatility = (std_dev / avg_price * 100.0) if avg_price > 0 else 0.0

    price_range = max_price - min_price
    range_position = ((current - min_price) / price_range * 100.0) if price_range > 0 else 50.0
    z_score = ((current - avg_price) / std_dev) if std_dev > 0 else 0.0

    less = sum(1 for price in prices if price < current)
    equal = sum(1 for price in prices if price == current)
    percentile_rank = (less + 0.5 * equal) / n * 100.0

    avg_deviation_pct = _pct(current - avg_price, avg_price)

    return PriceAnalysis(
        current_price=current,
        min_price=min_price,
        max_price=max_price,
        avg_price=avg_price,
        weekly_change=weekly_change,
        weekly_change_percent=weekly_change_percent,
        daily_change=daily_change,
        daily_change_percent=_pct(daily_change, day_ago),
        overall_change=overall_change,
        overall_change_percent=_pct(overall_change, oldest),
        trend_direction=trend,
        data_points=n,
        price_range=price_range,
        price_range_percent=_pct(price_range, min_price),
        std_dev=std_dev,
        volatility=volatility,
        volatility_category=_volatility_category(volatility),
        range_position=range_position,
        z_score=z_score,
        percentile_rank=percentile_rank,
        trading_signal=_trading_signal(avg_deviation_pct, range_position),
        position_status=_position_status(range_position),
    )
