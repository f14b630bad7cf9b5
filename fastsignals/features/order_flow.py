"""
Order-Flow Pressure

Estimates genuine buying vs selling interest from price action and volume
on the fast timeframe. Four independent reads are summed into buy and
sell tallies and normalized into a score in [-100, 100].
"""

from dataclasses import dataclass
from typing import Sequence

from ..models import Candle

MIN_CANDLES = 20
DIRECTIONAL_THRESHOLD = 30.0
STRONG_THRESHOLD = 50.0


@dataclass(frozen=True)
class OrderFlow:
    score: float = 0.0
    valid: bool = False
    buying: float = 0.0
    selling: float = 0.0

    @property
    def is_bullish(self) -> bool:
        return self.valid and self.score > DIRECTIONAL_THRESHOLD

    @property
    def is_bearish(self) -> bool:
        return self.valid and self.score < -DIRECTIONAL_THRESHOLD

    @property
    def is_strong(self) -> bool:
        return self.valid and abs(self.score) > STRONG_THRESHOLD


def _closing_strength(candles: Sequence[Candle]):
    """Volume-weighted close position within each bar's range."""
    buying = selling = 0.0
    for c in candles:
        if c.range == 0:
            continue
        position = (c.close - c.low) / c.range
        if position > 0.7:
            buying += position * c.volume
        elif position < 0.3:
            selling += (1 - position) * c.volume
    return buying, selling


def _body_wick(candles: Sequence[Candle]):
    buying = selling = 0.0
    for c in candles:
        if c.range == 0:
            continue
        body = c.body
        if c.is_bullish and body > c.range * 0.5 and c.upper_wick < body * 0.3:
            buying += 3
        if c.is_bearish and body > c.range * 0.5 and c.lower_wick < body * 0.3:
            selling += 3
        if c.lower_wick > body * 1.5:
            buying += 2
        if c.upper_wick > body * 1.5:
            selling += 2
    return buying, selling


def _momentum(candles: Sequence[Candle]):
    """Net move count and price-weighted volume velocity."""
    buying = selling = 0.0
    up_moves = down_moves = 0
    up_volume = down_volume = 0.0

    for prev, cur in zip(candles, candles[1:]):
        change = cur.close - prev.close
        if change > 0:
            up_moves += 1
            up_volume += cur.volume * abs(change)
        elif change < 0:
            down_moves += 1
            down_volume += cur.volume * abs(change)

    if up_moves > down_moves:
        buying += (up_moves - down_moves) * 2
    else:
        selling += (down_moves - up_moves) * 2

    if up_volume > down_volume * 1.2:
        buying += 5
    elif down_volume > up_volume * 1.2:
        selling += 5
    return buying, selling


def _sequence(candles: Sequence[Candle]):
    higher_lows = lower_lows = higher_highs = lower_highs = 0
    for prev, cur in zip(candles, candles[1:]):
        if cur.low > prev.low:
            higher_lows += 1
        if cur.low < prev.low:
            lower_lows += 1
        if cur.high > prev.high:
            higher_highs += 1
        if cur.high < prev.high:
            lower_highs += 1

    buying = 8.0 if higher_lows >= 3 and higher_highs >= 2 else 0.0
    selling = 8.0 if lower_highs >= 3 and lower_lows >= 2 else 0.0
    return buying, selling


def analyze_pressure(candles: Sequence[Candle]) -> OrderFlow:
    """
    Score buying vs selling pressure.

    Args:
        candles: Fast-timeframe candles, oldest first (at least 20)

    Returns:
        OrderFlow with score in [-100, 100]; invalid when data is short
        or no pressure was observed at all
    """
    if len(candles) < MIN_CANDLES:
        return OrderFlow()

    candles = list(candles)
    parts = (
        _closing_strength(candles[-10:]),
        _body_wick(candles[-5:]),
        _momentum(candles[-20:]),
        _sequence(candles[-5:]),
    )
    buying = sum(p[0] for p in parts)
    selling = sum(p[1] for p in parts)

    total = buying + selling
    if total == 0:
        return OrderFlow()

    score = (buying - selling) / total * 100
    return OrderFlow(score=score, valid=True, buying=buying, selling=selling)
