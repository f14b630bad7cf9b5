"""
Signal Detectors Framework

Base class, concrete detectors and the priority-ordered bank that runs
them. Each detector is a pure check over a market snapshot plus the shared
FeatureSet and either returns a SignalCandidate or None.

The bank evaluates detectors in configured priority order and stops at the
first candidate, so a lower-priority detector never competes with a
higher-priority one in the same pass.
"""

import logging
import math
from typing import Optional, List, Dict, Iterable, Tuple

from .config import Settings
from .features import (
    FeatureSet, SwingPivot, detect_liquidity_sweep,
    find_swing_highs, find_swing_lows, latest_pivot_pair,
)
from .models import Direction, SignalCandidate, Snapshot, Urgency

logger = logging.getLogger(__name__)

MAX_CONFIDENCE = 95.0


# ═══════════════════════════════════════════════════════════════════════════
# BASE DETECTOR CLASS
# ═══════════════════════════════════════════════════════════════════════════

class SignalDetector:
    """
    Base class for all signal detectors.

    Subclasses must implement:
      - detect(snapshot, features) -> Optional[SignalCandidate]
    """

    name: str = "base"
    display_name: str = "Base Detector"
    category: str = "unknown"

    def __init__(self, settings: Settings):
        self.settings = settings
        self.params = getattr(settings.detectors, self.name, None)

    @property
    def enabled(self) -> bool:
        return bool(getattr(self.params, 'enabled', True))

    def detect(self, snapshot: Snapshot, features: FeatureSet) -> Optional[SignalCandidate]:
        raise NotImplementedError

    def structural_stop(self, level: float, direction: Direction, atr: float,
                        signal_type: str) -> float:
        """Stop beyond ``level`` by the signal family's ATR multiple plus buffer."""
        policy = self.settings.risk.stop_policy(signal_type)
        offset = atr * (policy.atr_multiplier + policy.buffer_atr)
        return level - offset if direction is Direction.LONG else level + offset

    def make_candidate(self, signal_type: str, direction: Direction, urgency: Urgency,
                       confidence: float, entry: float, stop: float, rationale: str,
                       **metrics) -> SignalCandidate:
        return SignalCandidate(
            signal_type=signal_type,
            direction=direction,
            urgency=urgency,
            confidence=float(min(MAX_CONFIDENCE, max(0.0, confidence))),
            entry_price=entry,
            stop_price=stop,
            rationale=rationale,
            detector=self.name,
            metrics=metrics,
        )

    def get_info(self) -> dict:
        return {
            'name': self.name,
            'display_name': self.display_name,
            'category': self.category,
            'enabled': self.enabled,
        }


def _count_recovery_candles(candles, direction: Direction, strong_ratio: float) -> Tuple[int, int]:
    """Returns (strong-bodied, directional) candle counts in the given direction."""
    strong = directional = 0
    for c in candles:
        agrees = c.is_bullish if direction is Direction.LONG else c.is_bearish
        if not agrees:
            continue
        directional += 1
        if c.range > 0 and c.body / c.range > strong_ratio:
            strong += 1
    return strong, directional


def _divergence_pair(highs, lows, direction: Direction, left: int, right: int,
                     min_gap: int) -> Optional[Tuple[SwingPivot, SwingPivot]]:
    """Prior/recent swing lows for LONG, swing highs for SHORT."""
    if direction is Direction.LONG:
        pivots = find_swing_lows(lows, left, right)
    else:
        pivots = find_swing_highs(highs, left, right)
    return latest_pivot_pair(pivots, min_gap)


def _order_flow_agrees(features: FeatureSet, direction: Direction, min_score: float) -> bool:
    of = features.order_flow
    if direction is Direction.LONG:
        return of.is_bullish and of.score >= min_score
    return of.is_bearish and of.score <= -min_score


def _of_label(features: FeatureSet) -> str:
    of = features.order_flow
    return f"OF: {of.score:.1f} ({'STRONG' if of.is_strong else 'NORMAL'})"


# ═══════════════════════════════════════════════════════════════════════════
# DETECTORS
# ═══════════════════════════════════════════════════════════════════════════

# ── Liquidity Sweep Reversal ─────────────────────────────────────────────

class LiquiditySweepReversalDetector(SignalDetector):
    """
    Stop run below support (above resistance) that is immediately reclaimed,
    confirmed by opposing order flow and a strong recovery sequence.
    """
    name = "liquidity_sweep_reversal"
    display_name = "Liquidity Sweep Reversal"
    category = "order_flow"

    def detect(self, snapshot: Snapshot, features: FeatureSet) -> Optional[SignalCandidate]:
        p = self.params
        if not features.order_flow.valid or len(features.fast) < 5:
            return None
        if features.volume_ratio < p.min_volume_ratio:
            return None

        for direction in (Direction.LONG, Direction.SHORT):
            candidate = self._check(direction, features)
            if candidate:
                return candidate
        return None

    def _distance_adjustment(self, distance: float) -> float:
        p = self.params
        for threshold, delta in p.distance_adjustments:
            if distance > threshold:
                return delta
        if distance < p.near_distance_atr:
            return p.near_distance_bonus
        return 0.0

    def _check(self, direction: Direction, f: FeatureSet) -> Optional[SignalCandidate]:
        p = self.params
        if not _order_flow_agrees(f, direction, p.min_order_flow_score):
            return None

        sweep = f.sweep_for(direction)
        if not sweep.is_sweep or sweep.quality < p.min_sweep_quality:
            return None

        strong, directional = _count_recovery_candles(f.fast[-5:], direction, p.strong_body_ratio)
        if strong < p.min_strong_candles and directional < p.min_directional_candles:
            return None

        distance = (f.price - sweep.extreme) / f.atr * direction.sign
        if distance > p.stale_atr:
            return None

        confidence = p.base_confidence
        confidence += 12 if sweep.tier in ('HIGH', 'VERY_HIGH') else 6
        confidence += 10 if f.order_flow.is_strong else 5
        confidence += 8 if f.volume_ratio > 2.0 else 4
        confidence += 5 if sweep.quality >= 90 else 0
        confidence += 5 if strong >= p.min_strong_candles else 0
        confidence += self._distance_adjustment(distance)

        bullish = direction is Direction.LONG
        signal_type = 'LIQUIDITY_SWEEP_BULLISH' if bullish else 'LIQUIDITY_SWEEP_BEARISH'
        stop = self.structural_stop(sweep.extreme, direction, f.atr, signal_type)

        rationale = (
            f"🎣 LIQUIDITY SWEEP REVERSAL - {'BULLISH' if bullish else 'BEARISH'}\n"
            f"Swept: {sweep.extreme:.6f}\n"
            f"Quality: {sweep.quality:.0f}% | {sweep.tier}\n"
            f"📊 {_of_label(f)}\n"
            f"Volume: {f.volume_ratio:.1f}x"
        )
        return self.make_candidate(
            signal_type, direction, Urgency.CRITICAL, confidence, f.price, stop, rationale,
            sweep_extreme=sweep.extreme,
            sweep_quality=sweep.quality,
            sweep_tier=sweep.tier,
            penetration_pct=sweep.penetration_pct,
            distance_atr=distance,
            strong_candles=strong,
            order_flow=f.order_flow.score,
            volume_ratio=f.volume_ratio,
        )


# ── RSI Divergence ───────────────────────────────────────────────────────

class RSIDivergenceDetector(SignalDetector):
    """
    Price makes a lower low while RSI makes a higher low (bullish), or a
    higher high against a lower RSI high (bearish), from an extreme zone.
    """
    name = "rsi_divergence"
    display_name = "RSI Divergence"
    category = "momentum"

    def detect(self, snapshot: Snapshot, features: FeatureSet) -> Optional[SignalCandidate]:
        p = self.params
        f = features
        n = p.lookback_bars
        if len(f.closes) < n + 20:
            return None

        current = f.current_rsi
        if current is None or not f.order_flow.valid:
            return None
        if p.require_volume_confirmation and f.volume_ratio < p.min_volume_ratio:
            return None

        if current < p.oversold_level:
            direction = Direction.LONG
        elif current > p.overbought_level:
            direction = Direction.SHORT
        else:
            return None

        if not _order_flow_agrees(f, direction, p.min_order_flow_score):
            return None

        rsi = f.rsi[-n:]
        pair = _divergence_pair(f.highs[-n:], f.lows[-n:], direction,
                                p.pivot_left, p.pivot_right, p.min_pivot_gap)
        if pair is None:
            return None
        prior, recent = pair

        rsi_recent, rsi_prior = float(rsi[recent.index]), float(rsi[prior.index])
        if math.isnan(rsi_recent) or math.isnan(rsi_prior):
            return None

        if direction is Direction.LONG:
            price_div = recent.value < prior.value
            rsi_div = rsi_recent > rsi_prior + p.min_rsi_difference
            confirming = current > rsi_recent - p.confirm_tolerance
            strength = rsi_recent - rsi_prior
            extremity = 8 if current < 20 else 5 if current < 25 else 0
        else:
            price_div = recent.value > prior.value
            rsi_div = rsi_recent < rsi_prior - p.min_rsi_difference
            confirming = current < rsi_recent + p.confirm_tolerance
            strength = rsi_prior - rsi_recent
            extremity = 8 if current > 80 else 5 if current > 75 else 0

        age = n - 1 - recent.index
        if not (price_div and rsi_div and confirming and age <= p.max_pivot_age):
            return None

        sweep_boost = 0
        if p.require_liquidity_sweep:
            sweep = detect_liquidity_sweep(f.fast, direction, recent.value, f.atr, f.htf,
                                           self.settings.features.sweep)
            if not sweep.is_sweep:
                return None
            sweep_boost = 10 if sweep.quality >= 80 else 5 if sweep.quality >= 70 else 0

        bars_apart = recent.index - prior.index
        confidence = p.base_confidence
        confidence += 12 if f.order_flow.is_strong else 8
        confidence += extremity
        confidence += sweep_boost
        confidence += 8 if strength > 10 else 4 if strength > 5 else 0
        confidence += 5 if 5 <= bars_apart <= 12 else 0

        bullish = direction is Direction.LONG
        signal_type = 'RSI_BULLISH_DIVERGENCE' if bullish else 'RSI_BEARISH_DIVERGENCE'
        stop = self.structural_stop(recent.value, direction, f.atr, signal_type)

        rationale = (
            f"{'📈 BULLISH' if bullish else '📉 BEARISH'} RSI DIVERGENCE\n"
            f"Price: {'Lower low' if bullish else 'Higher high'} | "
            f"RSI: {'Higher low' if bullish else 'Lower high'}\n"
            f"RSI: {current:.1f} ({'Oversold' if bullish else 'Overbought'})\n"
            f"Swing spacing: {bars_apart} bars\n"
            f"📊 {_of_label(f)}"
        )
        return self.make_candidate(
            signal_type, direction, Urgency.HIGH, confidence, f.price, stop, rationale,
            rsi=current,
            rsi_at_recent=rsi_recent,
            rsi_at_prior=rsi_prior,
            recent_pivot=recent.value,
            prior_pivot=prior.value,
            bars_apart=bars_apart,
            order_flow=f.order_flow.score,
        )


# ── CVD Divergence ───────────────────────────────────────────────────────

class CVDDivergenceDetector(SignalDetector):
    """
    Price makes a new swing extreme while cumulative volume delta, sitting
    in the extreme of its recent range, fails to confirm it.
    """
    name = "cvd_divergence"
    display_name = "CVD Divergence"
    category = "order_flow"

    def detect(self, snapshot: Snapshot, features: FeatureSet) -> Optional[SignalCandidate]:
        p = self.params
        f = features
        n = p.lookback_bars
        if len(f.cvd) < n + 20 or not f.order_flow.valid:
            return None

        cvd = f.cvd[-n:]
        current = float(cvd[-1])
        cvd_min, cvd_max = float(cvd.min()), float(cvd.max())
        percentile = (current - cvd_min) / ((cvd_max - cvd_min) or 1)

        if percentile < p.extreme_percentile:
            direction = Direction.LONG
        elif percentile > 1 - p.extreme_percentile:
            direction = Direction.SHORT
        else:
            return None

        if not _order_flow_agrees(f, direction, p.min_order_flow_score):
            return None

        pair = _divergence_pair(f.highs[-n:], f.lows[-n:], direction,
                                p.pivot_left, p.pivot_right, p.min_pivot_gap)
        if pair is None:
            return None
        prior, recent = pair

        cvd_recent, cvd_prior = float(cvd[recent.index]), float(cvd[prior.index])
        scale = abs(cvd_prior) or 1.0
        tolerance = abs(cvd_recent) * 0.05

        if direction is Direction.LONG:
            price_div = recent.value < prior.value
            difference = (cvd_recent - cvd_prior) / scale
            confirming = current >= cvd_recent - tolerance
            percentile_bonus = 8 if percentile < 0.2 else 5
        else:
            price_div = recent.value > prior.value
            difference = (cvd_prior - cvd_recent) / scale
            confirming = current <= cvd_recent + tolerance
            percentile_bonus = 8 if percentile > 0.8 else 5

        age = n - 1 - recent.index
        if not (price_div and difference > p.min_cvd_difference and confirming
                and age <= p.max_pivot_age):
            return None

        rsi_boost = 0
        if p.require_rsi_confirmation:
            rsi = f.rsi[-n:]
            rsi_recent, rsi_prior = float(rsi[recent.index]), float(rsi[prior.index])
            if math.isnan(rsi_recent) or math.isnan(rsi_prior):
                return None
            agrees = rsi_recent > rsi_prior if direction is Direction.LONG else rsi_recent < rsi_prior
            if not agrees:
                return None
            rsi_boost = 12

        strength = abs(difference) * 100
        bars_apart = recent.index - prior.index
        confidence = p.base_confidence
        confidence += 12 if f.order_flow.is_strong else 8
        confidence += percentile_bonus
        confidence += rsi_boost
        confidence += 8 if strength > 20 else 4 if strength > 10 else 0
        confidence += 5 if 5 <= bars_apart <= 12 else 0

        bullish = direction is Direction.LONG
        signal_type = 'CVD_BULLISH_DIVERGENCE' if bullish else 'CVD_BEARISH_DIVERGENCE'
        stop = self.structural_stop(recent.value, direction, f.atr, signal_type)

        rationale = (
            f"📊 {'BULLISH' if bullish else 'BEARISH'} CVD DIVERGENCE\n"
            f"Price: {'Lower low' if bullish else 'Higher high'} | "
            f"CVD: {'Higher low' if bullish else 'Lower high'}\n"
            f"CVD Diff: {strength:.1f}%\n"
            f"Swing spacing: {bars_apart} bars\n"
            f"{_of_label(f)}"
        )
        return self.make_candidate(
            signal_type, direction, Urgency.HIGH, confidence, f.price, stop, rationale,
            cvd=current,
            cvd_at_recent=cvd_recent,
            cvd_at_prior=cvd_prior,
            cvd_percentile=percentile,
            recent_pivot=recent.value,
            prior_pivot=prior.value,
            bars_apart=bars_apart,
            order_flow=f.order_flow.score,
        )


# ── Breakout ─────────────────────────────────────────────────────────────

class BreakoutDetector(SignalDetector):
    """
    Volume surge carrying price out of its recent range, on the trend
    side of the slow EMA.
    """
    name = "breakout"
    display_name = "Volume Breakout"
    category = "momentum"

    def detect(self, snapshot: Snapshot, features: FeatureSet) -> Optional[SignalCandidate]:
        p = self.params
        f = features
        if len(f.volumes) < p.volume_lookback + 1 or len(f.closes) < p.range_bars + 1:
            return None
        if f.ema is None:
            return None

        avg_volume = float(f.volumes[-(p.volume_lookback + 1):-1].mean())
        if avg_volume <= 0:
            return None
        volume_ratio = float(f.volumes[-1]) / avg_volume
        if volume_ratio < p.min_volume_ratio:
            return None

        range_high = float(f.highs[-(p.range_bars + 1):-1].max())
        range_low = float(f.lows[-(p.range_bars + 1):-1].min())
        prev_close = float(f.closes[-2])
        price = f.price

        if price > range_high and price > f.ema:
            direction, level = Direction.LONG, range_high
            change = (price - prev_close) / prev_close
        elif price < range_low and price < f.ema:
            direction, level = Direction.SHORT, range_low
            change = (prev_close - price) / prev_close
        else:
            return None

        if change <= p.min_price_change:
            return None

        bullish = direction is Direction.LONG
        signal_type = 'BREAKOUT_BULLISH' if bullish else 'BREAKOUT_BEARISH'
        offset = f.atr * p.stop_buffer_atr
        stop = level - offset if bullish else level + offset

        rationale = (
            f"{'🚀 BULLISH BREAKOUT' if bullish else '📉 BEARISH BREAKDOWN'} - "
            f"{volume_ratio:.1f}x volume surge breaking {level:.2f}\n"
            f"Change: {change * 100:.2f}%"
        )
        return self.make_candidate(
            signal_type, direction, Urgency.CRITICAL, p.confidence, price, stop, rationale,
            volume_ratio=volume_ratio,
            range_high=range_high,
            range_low=range_low,
            price_change=change,
        )


# ── Support / Resistance Reaction ────────────────────────────────────────

class SupportResistanceReactionDetector(SignalDetector):
    """
    Current bar tags the recent support (resistance) and has already moved
    a meaningful fraction of ATR back away from it.
    """
    name = "sr_reaction"
    display_name = "Support/Resistance Reaction"
    category = "structure"

    def detect(self, snapshot: Snapshot, features: FeatureSet) -> Optional[SignalCandidate]:
        p = self.params
        f = features
        if len(f.lows) < p.level_bars + 1:
            return None

        support = float(f.lows[-(p.level_bars + 1):-1].min())
        resistance = float(f.highs[-(p.level_bars + 1):-1].max())
        current_low = float(f.lows[-1])
        current_high = float(f.highs[-1])
        price = f.price
        min_move = f.atr * p.min_bounce_atr

        if current_low <= support * (1 + p.touch_threshold) and price > current_low + min_move:
            stop = support - f.atr * p.stop_buffer_atr
            rationale = f"💪 BOUNCING FROM SUPPORT at {support:.2f}"
            return self.make_candidate(
                'SUPPORT_BOUNCE', Direction.LONG, Urgency.HIGH, p.confidence, price, stop,
                rationale, level=support, move_atr=(price - current_low) / f.atr,
            )

        if current_high >= resistance * (1 - p.touch_threshold) and price < current_high - min_move:
            stop = resistance + f.atr * p.stop_buffer_atr
            rationale = f"🚫 REJECTED AT RESISTANCE {resistance:.2f}"
            return self.make_candidate(
                'RESISTANCE_REJECTION', Direction.SHORT, Urgency.HIGH, p.confidence, price, stop,
                rationale, level=resistance, move_atr=(current_high - price) / f.atr,
            )

        return None


# ═══════════════════════════════════════════════════════════════════════════
# DETECTOR BANK
# ═══════════════════════════════════════════════════════════════════════════

DETECTOR_CLASSES = {
    cls.name: cls for cls in (
        LiquiditySweepReversalDetector,
        CVDDivergenceDetector,
        RSIDivergenceDetector,
        BreakoutDetector,
        SupportResistanceReactionDetector,
    )
}


class DetectorBank:
    """
    Runs registered detectors in priority order and returns the first
    candidate produced.
    """

    def __init__(self):
        self.detectors: List[SignalDetector] = []

    def register(self, detector: SignalDetector):
        self.detectors.append(detector)
        logger.info(f"Registered signal detector: {detector.name} ({detector.display_name})")

    def register_defaults(self, settings: Settings):
        """Register enabled detectors in the configured priority order."""
        for name in settings.detectors.order:
            detector = DETECTOR_CLASSES[name](settings)
            if detector.enabled:
                self.register(detector)
            else:
                logger.info(f"Signal detector disabled: {name}")
        logger.info(f"DetectorBank: {len(self.detectors)} detectors registered")

    @classmethod
    def from_settings(cls, settings: Settings) -> 'DetectorBank':
        bank = cls()
        bank.register_defaults(settings)
        return bank

    @property
    def names(self) -> List[str]:
        return [d.name for d in self.detectors]

    def evaluate(self, snapshot: Snapshot, features: FeatureSet,
                 only: Optional[Iterable[str]] = None) -> Optional[SignalCandidate]:
        """
        Run detectors and return the highest-priority candidate.

        Args:
            snapshot: Market snapshot for one instrument
            features: Shared features computed from that snapshot
            only: Restrict to these detector names (fast-path subset)

        Returns:
            First candidate in priority order, or None
        """
        allowed = set(only) if only is not None else None
        for detector in self.detectors:
            if allowed is not None and detector.name not in allowed:
                continue
            candidate = detector.detect(snapshot, features)
            if candidate:
                logger.info(
                    f"[{detector.name}] {snapshot.instrument} candidate: "
                    f"{candidate.direction.value} @ {candidate.entry_price:.6g} "
                    f"(type={candidate.signal_type}, conf={candidate.confidence:.0f})"
                )
                return candidate
        return None

    def get_info(self) -> List[Dict]:
        return [d.get_info() for d in self.detectors]
