"""
Shared fixtures: candle factories and small settings.
"""

import pytest

from fastsignals.config import Settings
from fastsignals.models import Candle

MINUTE = 60_000
HALF_HOUR = 30 * MINUTE
START = 1_700_000_000_000 - (1_700_000_000_000 % (4 * 3_600_000))


def make_bar(i, o, h, l, c, v=100.0, interval=MINUTE):
    open_time = START + i * interval
    return Candle(open_time, open_time + interval - 1, o, h, l, c, v)


def sweep_series(sweep_low=99.5, sweep_volume=250.0):
    """
    50 one-minute bars with support at 100.0 swept by bar 44.

    Bars 0-19 define the support, bars 20-43 trade above it, bar 44 wicks
    below and closes back above, bars 45-49 hold above the level.
    """
    bars = []
    for i in range(20):
        bars.append(make_bar(i, 100.4, 100.9, 100.0, 100.5))
    for i in range(20, 44):
        bars.append(make_bar(i, 100.7, 101.0, 100.6, 100.8))
    bars.append(make_bar(44, 100.1, 100.5, sweep_low, 100.4, v=sweep_volume))
    for i in range(45, 50):
        bars.append(make_bar(i, 100.6, 100.9, 100.55, 100.65))
    return bars


def trending_bars(n, start_price=100.0, step=0.1, spread=1.0, interval=HALF_HOUR, volume=100.0):
    """Steady trend with a constant high-low spread."""
    bars = []
    price = start_price
    for i in range(n):
        o = price
        c = price + step
        h = max(o, c) + spread / 2
        l = min(o, c) - spread / 2
        bars.append(make_bar(i, o, h, l, c, volume, interval))
        price = c
    return bars


@pytest.fixture
def bar():
    return make_bar


@pytest.fixture
def sweep_bars():
    return sweep_series


@pytest.fixture
def trend():
    return trending_bars


@pytest.fixture
def settings():
    return Settings.from_dict({
        'instruments': {'BTCUSDT': {'precision': 2}, 'ETHUSDT': {}},
        'cache': {'primary_capacity': 60, 'fast_capacity': 60,
                  'confirmation_capacity': 20, 'min_ready_bars': 30},
        'history': {'max_retries': 3, 'base_delay_seconds': 0.0, 'max_delay_seconds': 0.0},
        'signal_log': {'enabled': False},
        'notifier': {'kind': 'log'},
    })
