"""
Tests for the Detector Bank

Scenario tests build FeatureSets directly so each detector's rules can be
exercised without a full market history.
"""

import dataclasses

import numpy as np
import pytest

from fastsignals.config import Settings
from fastsignals.detectors import (
    BreakoutDetector, CVDDivergenceDetector, DetectorBank, LiquiditySweepReversalDetector,
    RSIDivergenceDetector, SupportResistanceReactionDetector,
)
from fastsignals.features import FeatureSet, OrderFlow, SweepResult
from fastsignals.features.volume_delta import CVD
from fastsignals.models import Direction, SignalCandidate, Snapshot, Urgency


def make_features(primary=None, fast=None, **overrides) -> FeatureSet:
    primary = list(primary or [])
    fast = list(fast or [])
    values = dict(
        price=100.0,
        atr=2.0,
        primary=primary,
        highs=np.array([c.high for c in primary], dtype=float),
        lows=np.array([c.low for c in primary], dtype=float),
        closes=np.array([c.close for c in primary], dtype=float),
        volumes=np.array([c.volume for c in primary], dtype=float),
        ema=None,
        rsi=np.full(len(primary), np.nan),
        cvd=np.zeros(len(primary)),
        fast=fast,
        order_flow=OrderFlow(),
        fast_cvd=CVD(),
        volume_ratio=1.0,
    )
    values.update(overrides)
    return FeatureSet(**values)


SNAPSHOT = Snapshot(instrument='BTCUSDT', buffers={}, price=100.0, ready=True)


@pytest.fixture
def recovery_bars(bar):
    """Five fast bars, three of them strongly bullish."""
    return [
        bar(0, 99.0, 99.6, 98.9, 99.5),
        bar(1, 99.5, 99.6, 99.2, 99.3),
        bar(2, 99.3, 100.0, 99.25, 99.9),
        bar(3, 99.9, 100.0, 99.7, 99.8),
        bar(4, 99.8, 100.3, 99.75, 100.2),
    ]


@pytest.fixture
def sweep_features(recovery_bars):
    return make_features(
        fast=recovery_bars,
        order_flow=OrderFlow(score=55.0, valid=True, buying=80.0, selling=23.0),
        volume_ratio=2.5,
        sweep_long=SweepResult(is_sweep=True, direction=Direction.LONG, level=98.0,
                               extreme=97.0, quality=82.0, tier='HIGH'),
    )


class TestLiquiditySweepReversal:
    """Test sweep reversal scenario"""

    def test_bullish_sweep_candidate(self, settings, sweep_features):
        """Test a quality sweep with recovery yields a long candidate"""
        detector = LiquiditySweepReversalDetector(settings)
        candidate = detector.detect(SNAPSHOT, sweep_features)

        assert candidate is not None
        assert candidate.direction is Direction.LONG
        assert candidate.signal_type == 'LIQUIDITY_SWEEP_BULLISH'
        assert candidate.urgency is Urgency.CRITICAL
        assert candidate.confidence >= settings.detectors.liquidity_sweep_reversal.base_confidence + 20
        # Stop beyond the sweep extreme
        assert candidate.stop_price < 97.0
        assert candidate.stop_price == pytest.approx(95.0)
        assert candidate.metrics['sweep_quality'] == 82.0

    def test_confidence_clamped(self, settings, sweep_features):
        """Test confidence never exceeds 95"""
        candidate = LiquiditySweepReversalDetector(settings).detect(SNAPSHOT, sweep_features)
        assert candidate.confidence <= 95

    def test_needs_agreeing_order_flow(self, settings, sweep_features):
        """Test order flow against the sweep blocks it"""
        features = dataclasses.replace(
            sweep_features, order_flow=OrderFlow(score=-40.0, valid=True, buying=10.0, selling=40.0)
        )
        assert LiquiditySweepReversalDetector(settings).detect(SNAPSHOT, features) is None

    def test_needs_volume(self, settings, sweep_features):
        """Test the sweep needs a volume surge"""
        features = dataclasses.replace(sweep_features, volume_ratio=1.0)
        assert LiquiditySweepReversalDetector(settings).detect(SNAPSHOT, features) is None

    def test_low_quality_sweep_ignored(self, settings, sweep_features):
        """Test sweeps below the quality floor are ignored"""
        weak = dataclasses.replace(sweep_features.sweep_long, quality=65.0, tier='MEDIUM')
        features = dataclasses.replace(sweep_features, sweep_long=weak)
        assert LiquiditySweepReversalDetector(settings).detect(SNAPSHOT, features) is None

    def test_stale_sweep_ignored(self, settings, sweep_features):
        """Test price too far from the sweep is ignored"""
        # 3 ATR above the sweep low
        features = dataclasses.replace(sweep_features, price=103.0)
        assert LiquiditySweepReversalDetector(settings).detect(SNAPSHOT, features) is None

    def test_needs_recovery_candles(self, settings, sweep_features, bar):
        """Test the sweep needs strong recovery candles"""
        flat = [bar(i, 100.0, 100.2, 99.8, 99.9) for i in range(5)]
        features = dataclasses.replace(sweep_features, fast=flat)
        assert LiquiditySweepReversalDetector(settings).detect(SNAPSHOT, features) is None


# Divergence scenarios use 50 primary bars; the 30-bar lookback starts at bar 20
PRIOR, RECENT = 35, 44


def swing_bars(bar, pivots, high_side=False, n=50):
    """Flat bars around 100 with swing extremes at the given indices."""
    bars = []
    for i in range(n):
        if high_side:
            high = pivots.get(i, 100.0)
            low = high - 2.0
        else:
            low = pivots.get(i, 100.0)
            high = low + 2.0
        mid = (high + low) / 2
        bars.append(bar(i, mid, high, low, mid))
    return bars


BULLISH_FLOW = OrderFlow(score=40.0, valid=True, buying=60.0, selling=20.0)
BEARISH_FLOW = OrderFlow(score=-40.0, valid=True, buying=20.0, selling=60.0)


def with_values(features, name, points):
    """Copy of ``features`` with array ``name`` overwritten at bar indices."""
    values = getattr(features, name).copy()
    for index, value in points.items():
        values[index] = value
    return dataclasses.replace(features, **{name: values})


@pytest.fixture
def bullish_rsi(bar):
    rsi = np.full(50, 40.0)
    rsi[PRIOR], rsi[RECENT], rsi[-1] = 25.0, 29.0, 30.0
    return make_features(primary=swing_bars(bar, {PRIOR: 98.0, RECENT: 97.0}),
                         rsi=rsi, order_flow=BULLISH_FLOW)


@pytest.fixture
def bearish_rsi(bar):
    rsi = np.full(50, 60.0)
    rsi[PRIOR], rsi[RECENT], rsi[-1] = 75.0, 71.0, 70.0
    return make_features(primary=swing_bars(bar, {PRIOR: 102.0, RECENT: 103.0}, high_side=True),
                         rsi=rsi, order_flow=BEARISH_FLOW)


class TestRSIDivergence:
    """Test RSI divergence from oversold and overbought zones"""

    def test_bullish_divergence(self, settings, bullish_rsi):
        """Test lower price low against a higher RSI low"""
        candidate = RSIDivergenceDetector(settings).detect(SNAPSHOT, bullish_rsi)

        assert candidate is not None
        assert candidate.signal_type == 'RSI_BULLISH_DIVERGENCE'
        assert candidate.direction is Direction.LONG
        assert candidate.urgency is Urgency.HIGH
        # base 65 + order flow 8 + spacing 5
        assert candidate.confidence == 78
        assert candidate.stop_price == pytest.approx(97.0 - 2.0 * 1.2)
        assert candidate.metrics['bars_apart'] == RECENT - PRIOR
        assert candidate.metrics['prior_pivot'] == 98.0

    def test_bearish_divergence(self, settings, bearish_rsi):
        """Test higher price high against a lower RSI high"""
        candidate = RSIDivergenceDetector(settings).detect(SNAPSHOT, bearish_rsi)

        assert candidate is not None
        assert candidate.signal_type == 'RSI_BEARISH_DIVERGENCE'
        assert candidate.direction is Direction.SHORT
        assert candidate.confidence == 78
        assert candidate.stop_price == pytest.approx(103.0 + 2.0 * 1.2)

    def test_extremity_bonus(self, settings, bullish_rsi):
        """Test deeper oversold readings earn the larger bonus"""
        features = with_values(bullish_rsi, 'rsi', {-1: 19.0, PRIOR: 10.0, RECENT: 18.0})
        candidate = RSIDivergenceDetector(settings).detect(SNAPSHOT, features)
        # strength 8 adds 4, extremity below 20 adds 8
        assert candidate.confidence == 78 + 4 + 8

    def test_needs_extreme_zone(self, settings, bullish_rsi):
        """Test no signal while RSI is mid-range"""
        features = with_values(bullish_rsi, 'rsi', {-1: 50.0})
        assert RSIDivergenceDetector(settings).detect(SNAPSHOT, features) is None

    def test_needs_agreeing_order_flow(self, settings, bullish_rsi):
        """Test order flow against the divergence blocks it"""
        features = dataclasses.replace(bullish_rsi, order_flow=BEARISH_FLOW)
        assert RSIDivergenceDetector(settings).detect(SNAPSHOT, features) is None

    def test_needs_valid_order_flow(self, settings, bullish_rsi):
        """Test order flow without enough data blocks the signal"""
        features = dataclasses.replace(bullish_rsi, order_flow=OrderFlow())
        assert RSIDivergenceDetector(settings).detect(SNAPSHOT, features) is None

    def test_needs_price_divergence(self, settings, bar, bullish_rsi):
        """Test a higher price low is not a divergence"""
        features = make_features(primary=swing_bars(bar, {PRIOR: 98.0, RECENT: 99.0}),
                                 rsi=bullish_rsi.rsi, order_flow=BULLISH_FLOW)
        assert RSIDivergenceDetector(settings).detect(SNAPSHOT, features) is None

    def test_needs_rsi_divergence(self, settings, bullish_rsi):
        """Test RSI must rise by more than the minimum difference"""
        features = with_values(bullish_rsi, 'rsi', {RECENT: 26.5})
        assert RSIDivergenceDetector(settings).detect(SNAPSHOT, features) is None

    def test_needs_recovery_from_recent_pivot(self, settings, bullish_rsi):
        """Test RSI falling back below the recent pivot reading"""
        features = with_values(bullish_rsi, 'rsi', {-1: 25.0})
        assert RSIDivergenceDetector(settings).detect(SNAPSHOT, features) is None

    def test_stale_pivot_ignored(self, settings, bar):
        """Test the recent pivot must be within max_pivot_age bars"""
        rsi = np.full(50, 40.0)
        rsi[28], rsi[37], rsi[-1] = 25.0, 29.0, 30.0
        features = make_features(primary=swing_bars(bar, {28: 98.0, 37: 97.0}),
                                 rsi=rsi, order_flow=BULLISH_FLOW)
        assert RSIDivergenceDetector(settings).detect(SNAPSHOT, features) is None

    def test_min_pivot_gap(self, bullish_rsi):
        """Test pivots closer than min_pivot_gap are not paired"""
        settings = Settings.from_dict({
            'instruments': ['BTCUSDT'],
            'detectors': {'rsi_divergence': {'min_pivot_gap': RECENT - PRIOR + 1}},
        })
        assert RSIDivergenceDetector(settings).detect(SNAPSHOT, bullish_rsi) is None

    def test_optional_volume_confirmation(self, bullish_rsi):
        """Test low volume blocks the signal when confirmation is required"""
        settings = Settings.from_dict({
            'instruments': ['BTCUSDT'],
            'detectors': {'rsi_divergence': {'require_volume_confirmation': True}},
        })
        assert RSIDivergenceDetector(settings).detect(SNAPSHOT, bullish_rsi) is None

    def test_optional_sweep_requirement(self, bullish_rsi):
        """Test a required liquidity sweep blocks the signal without one"""
        settings = Settings.from_dict({
            'instruments': ['BTCUSDT'],
            'detectors': {'rsi_divergence': {'require_liquidity_sweep': True}},
        })
        assert RSIDivergenceDetector(settings).detect(SNAPSHOT, bullish_rsi) is None

    def test_needs_history(self, settings, bar):
        """Test too few primary bars"""
        features = make_features(primary=swing_bars(bar, {}, n=40), order_flow=BULLISH_FLOW)
        assert RSIDivergenceDetector(settings).detect(SNAPSHOT, features) is None


@pytest.fixture
def bullish_cvd(bar):
    cvd = np.full(50, 50.0)
    cvd[25] = 100.0
    cvd[PRIOR], cvd[RECENT], cvd[-1] = -100.0, -60.0, -58.0
    return make_features(primary=swing_bars(bar, {PRIOR: 98.0, RECENT: 97.0}),
                         cvd=cvd, order_flow=BULLISH_FLOW)


@pytest.fixture
def bearish_cvd(bar):
    cvd = np.full(50, -50.0)
    cvd[25] = -100.0
    cvd[PRIOR], cvd[RECENT], cvd[-1] = 100.0, 60.0, 58.0
    return make_features(primary=swing_bars(bar, {PRIOR: 102.0, RECENT: 103.0}, high_side=True),
                         cvd=cvd, order_flow=BEARISH_FLOW)


class TestCVDDivergence:
    """Test CVD divergence from the extremes of its range"""

    def test_bullish_divergence(self, settings, bullish_cvd):
        """Test lower price low against a higher CVD low"""
        candidate = CVDDivergenceDetector(settings).detect(SNAPSHOT, bullish_cvd)

        assert candidate is not None
        assert candidate.signal_type == 'CVD_BULLISH_DIVERGENCE'
        assert candidate.direction is Direction.LONG
        # base 65 + order flow 8 + percentile 5 + strength 8 + spacing 5
        assert candidate.confidence == 91
        assert candidate.metrics['cvd_percentile'] == pytest.approx(0.21)
        assert candidate.stop_price == pytest.approx(97.0 - 2.0 * 1.2)

    def test_bearish_divergence(self, settings, bearish_cvd):
        """Test higher price high against a lower CVD high"""
        candidate = CVDDivergenceDetector(settings).detect(SNAPSHOT, bearish_cvd)

        assert candidate is not None
        assert candidate.signal_type == 'CVD_BEARISH_DIVERGENCE'
        assert candidate.direction is Direction.SHORT
        assert candidate.confidence == 91
        assert candidate.stop_price == pytest.approx(103.0 + 2.0 * 1.2)

    def test_needs_extreme_percentile(self, settings, bullish_cvd):
        """Test no signal while CVD sits mid-range"""
        features = with_values(bullish_cvd, 'cvd', {-1: 0.0})
        assert CVDDivergenceDetector(settings).detect(SNAPSHOT, features) is None

    def test_needs_agreeing_order_flow(self, settings, bullish_cvd):
        """Test order flow against the divergence blocks it"""
        features = dataclasses.replace(bullish_cvd, order_flow=BEARISH_FLOW)
        assert CVDDivergenceDetector(settings).detect(SNAPSHOT, features) is None

    def test_needs_price_divergence(self, settings, bar, bullish_cvd):
        """Test a higher price low is not a divergence"""
        features = make_features(primary=swing_bars(bar, {PRIOR: 98.0, RECENT: 99.0}),
                                 cvd=bullish_cvd.cvd, order_flow=BULLISH_FLOW)
        assert CVDDivergenceDetector(settings).detect(SNAPSHOT, features) is None

    def test_needs_cvd_difference(self, settings, bullish_cvd):
        """Test CVD must rise by more than the minimum relative difference"""
        features = with_values(bullish_cvd, 'cvd', {RECENT: -98.0})
        assert CVDDivergenceDetector(settings).detect(SNAPSHOT, features) is None

    def test_needs_recovery_from_recent_pivot(self, settings, bullish_cvd):
        """Test CVD falling back below the recent pivot reading"""
        features = with_values(bullish_cvd, 'cvd', {-1: -70.0})
        assert CVDDivergenceDetector(settings).detect(SNAPSHOT, features) is None

    def test_stale_pivot_ignored(self, settings, bar):
        """Test the recent pivot must be within max_pivot_age bars"""
        cvd = np.full(50, 50.0)
        cvd[25] = 100.0
        cvd[28], cvd[37], cvd[-1] = -100.0, -60.0, -58.0
        features = make_features(primary=swing_bars(bar, {28: 98.0, 37: 97.0}),
                                 cvd=cvd, order_flow=BULLISH_FLOW)
        assert CVDDivergenceDetector(settings).detect(SNAPSHOT, features) is None

    def test_min_pivot_gap(self, bullish_cvd):
        """Test pivots closer than min_pivot_gap are not paired"""
        settings = Settings.from_dict({
            'instruments': ['BTCUSDT'],
            'detectors': {'cvd_divergence': {'min_pivot_gap': RECENT - PRIOR + 1}},
        })
        assert CVDDivergenceDetector(settings).detect(SNAPSHOT, bullish_cvd) is None

    def test_rsi_confirmation(self, bullish_cvd):
        """Test required RSI agreement blocks or boosts the signal"""
        settings = Settings.from_dict({
            'instruments': ['BTCUSDT'],
            'detectors': {'cvd_divergence': {'require_rsi_confirmation': True}},
        })
        detector = CVDDivergenceDetector(settings)
        assert detector.detect(SNAPSHOT, bullish_cvd) is None

        agreeing = with_values(bullish_cvd, 'rsi', {PRIOR: 25.0, RECENT: 29.0})
        candidate = detector.detect(SNAPSHOT, agreeing)
        assert candidate is not None
        # 91 plus the RSI boost, clamped
        assert candidate.confidence == 95

        opposing = with_values(bullish_cvd, 'rsi', {PRIOR: 29.0, RECENT: 25.0})
        assert detector.detect(SNAPSHOT, opposing) is None

    def test_needs_history(self, settings, bar):
        """Test too few primary bars"""
        features = make_features(primary=swing_bars(bar, {}, n=40), order_flow=BULLISH_FLOW)
        assert CVDDivergenceDetector(settings).detect(SNAPSHOT, features) is None


class TestBreakout:
    """Test volume breakout"""

    def test_bullish_breakout(self, settings, bar):
        """Test a volume breakout above the range"""
        primary = [bar(i, 100.0, 101.0, 99.0, 100.2, 100.0) for i in range(50)]
        primary.append(bar(50, 100.2, 102.5, 100.1, 102.0, 400.0))
        features = make_features(primary=primary, price=102.0, atr=1.0, ema=100.5)

        candidate = BreakoutDetector(settings).detect(SNAPSHOT, features)
        assert candidate is not None
        assert candidate.signal_type == 'BREAKOUT_BULLISH'
        assert candidate.confidence == 85
        # Stop just below the broken range edge
        assert candidate.stop_price == pytest.approx(101.0 - 0.3)

    def test_no_breakout_without_volume(self, settings, bar):
        """Test no breakout without a volume surge"""
        primary = [bar(i, 100.0, 101.0, 99.0, 100.2, 100.0) for i in range(51)]
        features = make_features(primary=primary, price=102.0, atr=1.0, ema=100.5)
        assert BreakoutDetector(settings).detect(SNAPSHOT, features) is None


class TestSupportResistanceReaction:
    """Test S/R reaction"""

    def test_support_bounce(self, settings, bar):
        """Test a bounce off support"""
        primary = [bar(i, 101.0, 102.0, 100.0, 101.0) for i in range(30)]
        primary.append(bar(30, 100.5, 101.0, 100.1, 100.9))
        features = make_features(primary=primary, price=100.9, atr=1.0)

        candidate = SupportResistanceReactionDetector(settings).detect(SNAPSHOT, features)
        assert candidate is not None
        assert candidate.signal_type == 'SUPPORT_BOUNCE'
        assert candidate.direction is Direction.LONG
        assert candidate.stop_price == pytest.approx(99.5)

    def test_resistance_rejection(self, settings, bar):
        """Test a rejection at resistance"""
        primary = [bar(i, 101.0, 102.0, 100.0, 101.0) for i in range(30)]
        primary.append(bar(30, 101.5, 101.95, 101.0, 101.2))
        features = make_features(primary=primary, price=101.2, atr=1.0)

        candidate = SupportResistanceReactionDetector(settings).detect(SNAPSHOT, features)
        assert candidate is not None
        assert candidate.signal_type == 'RESISTANCE_REJECTION'
        assert candidate.stop_price == pytest.approx(102.5)

    def test_mid_range_no_signal(self, settings, bar):
        """Test no reaction signal mid-range"""
        primary = [bar(i, 101.0, 102.0, 100.0, 101.0) for i in range(30)]
        primary.append(bar(30, 101.0, 101.2, 100.8, 101.0))
        features = make_features(primary=primary, price=101.0, atr=1.0)
        assert SupportResistanceReactionDetector(settings).detect(SNAPSHOT, features) is None


class StubDetector:
    """Minimal detector returning a fixed candidate."""

    def __init__(self, name, candidate=None, error=None):
        self.name = name
        self.display_name = name
        self.enabled = True
        self.candidate = candidate
        self.error = error
        self.calls = 0

    def detect(self, snapshot, features):
        self.calls += 1
        if self.error:
            raise self.error
        return self.candidate

    def get_info(self):
        return {'name': self.name}


def candidate(signal_type, direction=Direction.LONG):
    return SignalCandidate(
        signal_type=signal_type, direction=direction, urgency=Urgency.HIGH,
        confidence=80.0, entry_price=100.0, stop_price=99.0, rationale='test',
    )


class TestDetectorBank:
    """Test priority evaluation"""

    def test_default_registration_order(self, settings):
        """Test the bank follows the configured order"""
        bank = DetectorBank.from_settings(settings)
        assert bank.names == list(settings.detectors.order)

    def test_disabled_detector_skipped(self):
        """Test disabled detectors are not registered"""
        settings = Settings.from_dict({
            'instruments': ['BTCUSDT'],
            'detectors': {'breakout': {'enabled': False}},
        })
        assert 'breakout' not in DetectorBank.from_settings(settings).names

    def test_first_candidate_wins(self):
        """Test the first candidate stops evaluation"""
        bank = DetectorBank()
        first = StubDetector('first', candidate('FIRST'))
        second = StubDetector('second', candidate('SECOND', Direction.SHORT))
        bank.register(first)
        bank.register(second)

        result = bank.evaluate(SNAPSHOT, make_features())
        assert result.signal_type == 'FIRST'
        assert second.calls == 0

    def test_falls_through_to_next(self):
        """Test evaluation falls through to the next detector"""
        bank = DetectorBank()
        bank.register(StubDetector('none'))
        bank.register(StubDetector('second', candidate('SECOND')))
        assert bank.evaluate(SNAPSHOT, make_features()).signal_type == 'SECOND'

    def test_only_restricts_detectors(self):
        """Test only restricts evaluation to named detectors"""
        bank = DetectorBank()
        first = StubDetector('first', candidate('FIRST'))
        bank.register(first)
        bank.register(StubDetector('second', candidate('SECOND')))

        result = bank.evaluate(SNAPSHOT, make_features(), only=('second',))
        assert result.signal_type == 'SECOND'
        assert first.calls == 0

    def test_no_candidate(self):
        """Test no detector fires"""
        bank = DetectorBank()
        bank.register(StubDetector('none'))
        assert bank.evaluate(SNAPSHOT, make_features()) is None

    def test_detector_errors_propagate(self):
        """Test detector errors propagate to the caller"""
        bank = DetectorBank()
        bank.register(StubDetector('broken', error=RuntimeError('boom')))
        with pytest.raises(RuntimeError):
            bank.evaluate(SNAPSHOT, make_features())


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
