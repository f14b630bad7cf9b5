"""
Indicator Math

EMA, RSI and ATR over plain price sequences, computed with pandas.
Series outputs are aligned with their input: warm-up positions are NaN so
that index i always refers to bar i.
"""

from typing import Optional, Sequence

import numpy as np
import pandas as pd


def validate_period(period: int, min_period: int = 1) -> int:
    """
    Validate indicator period.

    Raises:
        ValueError: If period is invalid
    """
    if not isinstance(period, int) or period < min_period:
        raise ValueError(f"Period must be integer >= {min_period}, got {period}")
    return period


def ema_series(values: Sequence[float], period: int) -> np.ndarray:
    """Exponential moving average, NaN until ``period`` values are available."""
    validate_period(period)
    series = pd.Series(values, dtype=float)
    ema = series.ewm(span=period, adjust=False).mean()
    ema.iloc[:period - 1] = np.nan
    return ema.to_numpy()


def ema(values: Sequence[float], period: int) -> Optional[float]:
    """Latest EMA value or None if not enough data."""
    if len(values) < period:
        return None
    return float(ema_series(values, period)[-1])


def rsi_series(closes: Sequence[float], period: int = 14) -> np.ndarray:
    """
    Wilder RSI aligned with ``closes``.

    Args:
        closes: Close prices, oldest first
        period: Smoothing period (default: 14)

    Returns:
        Array the same length as closes; the first ``period`` entries are NaN
    """
    validate_period(period, min_period=2)
    series = pd.Series(closes, dtype=float)
    delta = series.diff()

    gain = delta.where(delta > 0, 0.0)
    loss = -delta.where(delta < 0, 0.0)

    # Wilder smoothing is an EMA with alpha = 1/period
    avg_gain = gain.ewm(alpha=1.0 / period, adjust=False, min_periods=period).mean()
    avg_loss = loss.ewm(alpha=1.0 / period, adjust=False, min_periods=period).mean()

    rs = avg_gain / avg_loss.replace(0, 1e-10)
    rsi = 100 - (100 / (1 + rs))
    rsi.iloc[:period] = np.nan
    return rsi.to_numpy()


def true_range(highs: Sequence[float], lows: Sequence[float],
               closes: Sequence[float]) -> np.ndarray:
    high = pd.Series(highs, dtype=float)
    low = pd.Series(lows, dtype=float)
    prev_close = pd.Series(closes, dtype=float).shift(1)

    ranges = pd.concat([
        high - low,
        (high - prev_close).abs(),
        (low - prev_close).abs(),
    ], axis=1)
    return ranges.max(axis=1).to_numpy()


def atr(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float],
        period: int = 14) -> Optional[float]:
    """
    Latest Wilder ATR, or None with fewer than ``period + 1`` bars.
    """
    validate_period(period)
    if len(closes) < period + 1:
        return None

    tr = pd.Series(true_range(highs, lows, closes)[1:])
    value = tr.ewm(alpha=1.0 / period, adjust=False, min_periods=period).mean().iloc[-1]
    if pd.isna(value) or value <= 0:
        return None
    return float(value)
