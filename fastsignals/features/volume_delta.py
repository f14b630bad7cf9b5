"""
Cumulative Volume Delta

Approximates aggressor flow from bar data: a bar closing at or above the
previous close counts its volume as buying, otherwise as selling.
"""

from dataclasses import dataclass, field
from typing import List, NamedTuple, Sequence

import numpy as np

from ..models import Candle


class CVDPoint(NamedTuple):
    index: int      # index into the candle sequence
    cvd: float
    delta: float
    price: float


@dataclass(frozen=True)
class CVD:
    valid: bool = False
    current: float = 0.0
    values: List[CVDPoint] = field(default_factory=list)
    momentum: float = 0.0
    is_rising: bool = False
    percent_change: float = 0.0


def signed_volume(candles: Sequence[Candle]) -> np.ndarray:
    """Per-bar signed volume; the first bar has no reference close and gets 0."""
    if not candles:
        return np.zeros(0)
    closes = np.array([c.close for c in candles], dtype=float)
    volumes = np.array([c.volume for c in candles], dtype=float)

    deltas = np.zeros(len(candles))
    deltas[1:] = np.where(closes[1:] >= closes[:-1], volumes[1:], -volumes[1:])
    return deltas


def cvd_series(candles: Sequence[Candle]) -> np.ndarray:
    """CVD aligned with ``candles`` (entry i is the running total through bar i)."""
    return np.cumsum(signed_volume(candles))


def cumulative_volume_delta(candles: Sequence[Candle], lookback: int = 100) -> CVD:
    """
    Summarize CVD over the most recent ``lookback`` bars.

    Returns:
        CVD with current value, per-bar points, 5-bar momentum and rising flag
    """
    if len(candles) < 10:
        return CVD()

    start = max(0, len(candles) - lookback)
    window = list(candles[start:])
    deltas = signed_volume(window)[1:]
    running = np.cumsum(deltas)

    points = [
        CVDPoint(index=start + i + 1, cvd=float(running[i]), delta=float(deltas[i]),
                 price=window[i + 1].close)
        for i in range(len(deltas))
    ]
    if len(points) < 5:
        return CVD()

    current = points[-1].cvd
    momentum = float(sum(p.delta for p in points[-5:]))
    is_rising = current > points[-5].cvd

    percent_change = 0.0
    if len(points) >= 10:
        base = points[-10].cvd
        percent_change = (current - base) / abs(base or 1) * 100

    return CVD(
        valid=True,
        current=current,
        values=points,
        momentum=momentum,
        is_rising=is_rising,
        percent_change=percent_change,
    )
