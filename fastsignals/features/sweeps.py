"""
Liquidity Sweep Detection

Detects a stop run through a reference level followed by an immediate
reclaim: the sweep bar pierces the level by a bounded amount, closes back
on the defended side and leaves a dominant rejection wick.

The quality score (0-100) combines:
  - sweep bar wick share of range and wick/body rejection strength
  - false-breakout profile (sweep volume vs local average, where quieter
    is better, close position, and how long price lingered beyond the level)
  - post-sweep hold rate on the defended side
  - optional higher-timeframe agreement and volume clustering at the level

Penetration depth acts as a hard bound rather than a scored term, so a
larger wick with all else equal never lowers quality.
"""

from dataclasses import dataclass
from typing import Optional, Sequence, List

from ..config import SweepParams
from ..models import Candle, Direction

MIN_CANDLES = 30


@dataclass(frozen=True)
class SweepResult:
    is_sweep: bool = False
    direction: Optional[Direction] = None
    level: float = 0.0
    extreme: float = 0.0          # sweep low for LONG, sweep high for SHORT
    quality: float = 0.0
    tier: str = ''
    penetration_pct: float = 0.0
    wick_size_atr: float = 0.0
    wick_quality: float = 0.0
    rejection_strength: float = 0.0
    volume_ratio: float = 0.0
    false_breakout_score: float = 0.0
    momentum_score: float = 0.0
    bars_held: int = 0
    recovery_strength: str = ''
    has_volume_cluster: bool = False
    htf_aligned: bool = False
    reason: str = ''

    @property
    def sweep_type(self) -> str:
        if not self.is_sweep:
            return ''
        return 'BEAR_TRAP' if self.direction is Direction.LONG else 'BULL_TRAP'


def _rejected(reason: str, **kwargs) -> SweepResult:
    return SweepResult(is_sweep=False, reason=reason, **kwargs)


def _pierces(c: Candle, direction: Direction, level: float, p: SweepParams) -> bool:
    """Bar traded beyond the level and closed back on the defended side."""
    if direction is Direction.LONG:
        return c.low < level * (1 - p.level_tolerance) and c.close > level * (1 + p.reclaim_tolerance)
    return c.high > level * (1 + p.level_tolerance) and c.close < level * (1 - p.reclaim_tolerance)


def _wick(c: Candle, direction: Direction) -> float:
    return c.lower_wick if direction is Direction.LONG else c.upper_wick


def _extreme(c: Candle, direction: Direction) -> float:
    return c.low if direction is Direction.LONG else c.high


def _false_breakout_score(window: Sequence[Candle], sweep: Candle, direction: Direction,
                          level: float, volume_ratio: float) -> float:
    score = 0.0

    # Quiet sweeps are stop runs rather than real participation
    if volume_ratio < 1.3:
        score += 25
    elif volume_ratio < 1.8:
        score += 15
    elif volume_ratio < 2.5:
        score += 8

    if direction is Direction.LONG:
        closed_strong = sweep.close > sweep.low + sweep.range * 0.6
        beyond = sum(1 for c in window if c.close < level * 0.999)
    else:
        closed_strong = sweep.close < sweep.high - sweep.range * 0.6
        beyond = sum(1 for c in window if c.close > level * 1.001)

    if closed_strong:
        score += 15

    if beyond <= 3:
        score += 20
    elif beyond <= 6:
        score += 10

    return min(60.0, score)


def _post_sweep_momentum(after: Sequence[Candle], direction: Direction, level: float,
                         p: SweepParams):
    """Returns (valid, score, bars_held, recovery_strength)."""
    if len(after) < 2:
        return False, 0.0, 0, ''

    bars_held = 0
    strong_bars = 0
    for c in after:
        if direction is Direction.LONG:
            if c.low > level * (1 - p.hold_tolerance):
                bars_held += 1
            if c.is_bullish and c.body > c.range * 0.5:
                strong_bars += 1
        else:
            if c.high < level * (1 + p.hold_tolerance):
                bars_held += 1
            if c.is_bearish and c.body > c.range * 0.5:
                strong_bars += 1

    hold_rate = bars_held / len(after)
    if hold_rate >= 0.8:
        score = 15.0
    elif hold_rate >= 0.6:
        score = 10.0
    elif hold_rate >= p.min_hold_rate:
        score = 5.0
    else:
        return False, 0.0, bars_held, ''

    if strong_bars >= 2:
        score += 5
    strength = 'STRONG' if strong_bars >= 2 else 'MODERATE' if strong_bars >= 1 else 'WEAK'
    return True, min(15.0, score), bars_held, strength


def _htf_aligned(htf_candles: Optional[Sequence[Candle]], direction: Direction,
                 level: float, p: SweepParams) -> bool:
    if not htf_candles or len(htf_candles) < 6:
        return False

    last = htf_candles[-1]
    recent = htf_candles[-3:]
    if direction is Direction.LONG:
        agreeing = sum(1 for c in recent if c.is_bullish)
        return last.is_bullish and last.close > level * (1 + p.hold_tolerance) and agreeing >= 2
    agreeing = sum(1 for c in recent if c.is_bearish)
    return last.is_bearish and last.close < level * (1 - p.hold_tolerance) and agreeing >= 2


def volume_concentration(candles: Sequence[Candle], level: float, atr: float) -> float:
    """Share of volume traded by bars touching level +/- half an ATR."""
    band = atr * 0.5
    upper, lower = level + band, level - band

    total = sum(c.volume for c in candles)
    at_level = sum(c.volume for c in candles if c.low <= upper and c.high >= lower)
    return at_level / total if total > 0 else 0.0


def _quality_tier(quality: float, htf_aligned: bool) -> str:
    if quality >= 85 and htf_aligned:
        return 'VERY_HIGH'
    if quality >= 80:
        return 'HIGH'
    if quality >= 70:
        return 'MEDIUM_HIGH'
    return 'MEDIUM'


def _evaluate(candles: List[Candle], sweep_pos: int, direction: Direction, level: float,
              atr: float, htf_candles, p: SweepParams) -> SweepResult:
    sweep = candles[sweep_pos]
    wick = _wick(sweep, direction)
    body = sweep.body

    if direction is Direction.LONG:
        penetration = (level - sweep.low) / level * 100
    else:
        penetration = (sweep.high - level) / level * 100

    if not p.min_penetration_pct < penetration < p.max_penetration_pct:
        return _rejected('penetration out of bounds', penetration_pct=penetration)
    if wick < body * p.min_wick_body_ratio or wick <= atr * p.min_wick_atr:
        return _rejected('rejection wick too small', penetration_pct=penetration)

    wick_quality = wick / sweep.range * 100 if sweep.range > 0 else 0.0
    rejection_strength = 100.0 if body == 0 else min(100.0, wick / body * 30)

    local = candles[-20:]
    baseline = local[:-5]
    avg_volume = sum(c.volume for c in baseline) / len(baseline) if baseline else 0.0
    volume_ratio = sweep.volume / avg_volume if avg_volume > 0 else 1.0

    fb_score = _false_breakout_score(local, sweep, direction, level, volume_ratio)
    if fb_score < p.min_false_breakout_score:
        return _rejected('breakout looked genuine', penetration_pct=penetration,
                         false_breakout_score=fb_score)

    window_start = len(candles) - p.search_bars
    after = candles[max(sweep_pos + 1, window_start):]
    held, momentum_score, bars_held, strength = _post_sweep_momentum(after, direction, level, p)
    if not held:
        return _rejected('level not held after sweep', penetration_pct=penetration,
                         false_breakout_score=fb_score)

    htf_aligned = _htf_aligned(htf_candles, direction, level, p)
    has_cluster = volume_concentration(candles[-30:], level, atr) > p.cluster_threshold

    quality = 50.0
    quality += wick_quality * 0.15
    quality += rejection_strength * 0.10
    quality += fb_score / 60 * 20
    quality += momentum_score
    quality += 15 if htf_aligned else 0
    quality += 10 if has_cluster else 0
    if volume_ratio < 1.5:
        quality += 10
    elif volume_ratio < 2.0:
        quality += 5
    quality = float(min(100, round(quality)))

    metrics = dict(
        direction=direction,
        level=level,
        extreme=_extreme(sweep, direction),
        quality=quality,
        penetration_pct=penetration,
        wick_size_atr=wick / atr,
        wick_quality=wick_quality,
        rejection_strength=rejection_strength,
        volume_ratio=volume_ratio,
        false_breakout_score=fb_score,
        momentum_score=momentum_score,
        bars_held=bars_held,
        recovery_strength=strength,
        has_volume_cluster=has_cluster,
        htf_aligned=htf_aligned,
    )

    if quality < p.min_quality:
        return _rejected('quality too low', **metrics)

    return SweepResult(is_sweep=True, tier=_quality_tier(quality, htf_aligned), **metrics)


def detect_liquidity_sweep(candles: Sequence[Candle], direction: Direction, level: float,
                           atr: float, htf_candles: Optional[Sequence[Candle]] = None,
                           params: Optional[SweepParams] = None) -> SweepResult:
    """
    Look for a liquidity sweep of ``level`` within the most recent bars.

    Args:
        candles: Fast-timeframe candles, oldest first (at least 30)
        direction: LONG for a sweep below support, SHORT for a sweep above resistance
        level: Reference level that was swept
        atr: Current ATR for wick and clustering thresholds
        htf_candles: Optional higher-timeframe candles for agreement bonus
        params: Detection thresholds

    Returns:
        SweepResult; ``is_sweep`` is False with a ``reason`` when rejected
    """
    p = params or SweepParams()
    if len(candles) < MIN_CANDLES or not level or level <= 0 or not atr or atr <= 0:
        return _rejected('insufficient data')

    candles = list(candles)
    window_start = len(candles) - p.search_bars
    positions = [
        i for i in range(len(candles) - 1, window_start - 1, -1)
        if _pierces(candles[i], direction, level, p)
    ]
    if not positions:
        return _rejected('no sweep candle')

    result = SweepResult()
    for pos in positions:
        result = _evaluate(candles, pos, direction, level, atr, htf_candles, p)
        if result.is_sweep:
            return result
    return result
