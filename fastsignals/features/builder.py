"""
Feature Assembly

Computes every shared feature once per evaluation pass so detectors read
from a single consistent FeatureSet instead of recomputing indicators.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, List, Sequence

import numpy as np

from ..config import Settings
from ..indicators import atr as compute_atr, ema as compute_ema, rsi_series
from ..models import Candle, Direction, Snapshot
from .order_flow import OrderFlow, analyze_pressure
from .sweeps import SweepResult, detect_liquidity_sweep
from .volume_delta import CVD, cumulative_volume_delta, cvd_series

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeatureSet:
    """Pre-computed features shared across all detectors (compute once)."""
    price: float
    atr: float

    # Primary timeframe, live-merged
    primary: List[Candle]
    highs: np.ndarray
    lows: np.ndarray
    closes: np.ndarray
    volumes: np.ndarray
    ema: Optional[float]
    rsi: np.ndarray
    cvd: np.ndarray

    # Fast timeframe
    fast: List[Candle]
    order_flow: OrderFlow
    fast_cvd: CVD
    volume_ratio: float

    # Higher timeframe used for sweep agreement
    htf: List[Candle] = field(default_factory=list)

    # Sweep candidates against the recent fast-timeframe range
    support_level: Optional[float] = None
    resistance_level: Optional[float] = None
    sweep_long: SweepResult = field(default_factory=SweepResult)
    sweep_short: SweepResult = field(default_factory=SweepResult)

    @property
    def current_rsi(self) -> Optional[float]:
        if len(self.rsi) == 0 or np.isnan(self.rsi[-1]):
            return None
        return float(self.rsi[-1])

    def sweep_for(self, direction: Direction) -> SweepResult:
        return self.sweep_long if direction is Direction.LONG else self.sweep_short


def volume_ratio(candles: Sequence[Candle], recent: int = 5, baseline: int = 10) -> float:
    """Mean volume of the last ``recent`` bars over the ``baseline`` bars before them."""
    if len(candles) < recent + baseline:
        return 0.0
    recent_bars = candles[-recent:]
    baseline_bars = candles[-(recent + baseline):-recent]
    base = sum(c.volume for c in baseline_bars) / baseline
    if base <= 0:
        return 0.0
    return (sum(c.volume for c in recent_bars) / recent) / base


def reference_levels(candles: Sequence[Candle], lookback: int, search_bars: int):
    """
    Support/resistance visible before the sweep search window.

    The newest ``search_bars`` bars are excluded so a sweep bar can
    actually trade beyond the level it is measured against.
    """
    reference = candles[-lookback:-search_bars] if search_bars else candles[-lookback:]
    if not reference:
        return None, None
    return min(c.low for c in reference), max(c.high for c in reference)


def build_features(snapshot: Snapshot, settings: Settings) -> Optional[FeatureSet]:
    """
    Assemble the FeatureSet for one pass.

    Returns:
        FeatureSet, or None when there is too little data for ATR
    """
    tf = settings.timeframes
    fc = settings.features

    primary = snapshot.live_candles(tf.primary)
    if len(primary) < fc.atr_period + 1:
        return None

    highs = np.array([c.high for c in primary], dtype=float)
    lows = np.array([c.low for c in primary], dtype=float)
    closes = np.array([c.close for c in primary], dtype=float)
    volumes = np.array([c.volume for c in primary], dtype=float)

    atr = compute_atr(highs, lows, closes, fc.atr_period)
    if atr is None:
        logger.debug(f"{snapshot.instrument}: ATR unavailable, skipping features")
        return None

    price = snapshot.price if snapshot.price is not None else float(closes[-1])
    fast = snapshot.live_candles(tf.fast)
    htf = snapshot.live_candles(tf.confirmation[0]) if tf.confirmation else []

    sp = fc.sweep
    support, resistance = reference_levels(fast, sp.level_lookback, sp.search_bars)
    sweep_long = SweepResult(reason='no reference level')
    sweep_short = SweepResult(reason='no reference level')
    if support is not None:
        sweep_long = detect_liquidity_sweep(fast, Direction.LONG, support, atr, htf, sp)
        sweep_short = detect_liquidity_sweep(fast, Direction.SHORT, resistance, atr, htf, sp)

    return FeatureSet(
        price=price,
        atr=atr,
        primary=primary,
        highs=highs,
        lows=lows,
        closes=closes,
        volumes=volumes,
        ema=compute_ema(closes, fc.ema_period),
        rsi=rsi_series(closes, fc.rsi_period),
        cvd=cvd_series(primary),
        fast=fast,
        order_flow=analyze_pressure(fast),
        fast_cvd=cumulative_volume_delta(fast, fc.cvd_lookback),
        volume_ratio=volume_ratio(fast, fc.volume_recent_bars, fc.volume_baseline_bars),
        htf=htf,
        support_level=support,
        resistance_level=resistance,
        sweep_long=sweep_long,
        sweep_short=sweep_short,
    )
