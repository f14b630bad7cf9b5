"""
Feature Layer

Pure functions over market snapshots: order-flow pressure, cumulative
volume delta, swing pivots and liquidity sweeps.
"""

from .order_flow import OrderFlow, analyze_pressure
from .volume_delta import CVD, CVDPoint, cumulative_volume_delta, cvd_series, signed_volume
from .pivots import PivotKind, SwingPivot, find_swing_highs, find_swing_lows, latest_pivot_pair
from .sweeps import SweepResult, detect_liquidity_sweep, volume_concentration
from .builder import FeatureSet, build_features, reference_levels, volume_ratio

__all__ = [
    # Order flow
    'OrderFlow',
    'analyze_pressure',

    # Volume delta
    'CVD',
    'CVDPoint',
    'cumulative_volume_delta',
    'cvd_series',
    'signed_volume',

    # Structure
    'PivotKind',
    'SwingPivot',
    'find_swing_highs',
    'find_swing_lows',
    'latest_pivot_pair',

    # Sweeps
    'SweepResult',
    'detect_liquidity_sweep',
    'volume_concentration',

    # Assembly
    'FeatureSet',
    'build_features',
    'reference_levels',
    'volume_ratio',
]
