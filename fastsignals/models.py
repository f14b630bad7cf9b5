"""
Core Data Structures

Shared record types for the signal pipeline: candles, snapshots of the
market cache and the signal candidates emitted by detectors.

Candles are parsed strictly at the cache boundary so nothing downstream
ever sees a partially-typed or non-finite bar.
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any, Tuple, List, Mapping


class MalformedUpdate(ValueError):
    """Raised when an incoming market update cannot be parsed into a Candle."""


# Binance kline payloads use single-letter keys
_CANDLE_ALIASES = {
    'open_time': ('open_time', 'openTime', 't'),
    'close_time': ('close_time', 'closeTime', 'T'),
    'open': ('open', 'o'),
    'high': ('high', 'h'),
    'low': ('low', 'l'),
    'close': ('close', 'c'),
    'volume': ('volume', 'v'),
}

_TIMEFRAME_UNITS_MS = {
    'm': 60_000,
    'h': 3_600_000,
    'd': 86_400_000,
    'w': 604_800_000,
}


def timeframe_to_ms(timeframe: str) -> int:
    """
    Convert an interval label like '1m', '30m' or '4h' to milliseconds.

    Raises:
        ValueError: If the label is not a positive count followed by m/h/d/w
    """
    if not timeframe or len(timeframe) < 2:
        raise ValueError(f"Invalid timeframe: {timeframe!r}")

    unit = timeframe[-1]
    count = timeframe[:-1]
    if unit not in _TIMEFRAME_UNITS_MS or not count.isdigit() or int(count) <= 0:
        raise ValueError(f"Invalid timeframe: {timeframe!r}")

    return int(count) * _TIMEFRAME_UNITS_MS[unit]


def _pick(payload: Mapping[str, Any], name: str) -> Any:
    for key in _CANDLE_ALIASES[name]:
        if key in payload:
            return payload[key]
    raise MalformedUpdate(f"Missing field '{name}'")


def _to_float(value: Any, name: str) -> float:
    if isinstance(value, bool):
        raise MalformedUpdate(f"Field '{name}' is not numeric: {value!r}")
    try:
        result = float(value)
    except (TypeError, ValueError):
        raise MalformedUpdate(f"Field '{name}' is not numeric: {value!r}")
    if not math.isfinite(result):
        raise MalformedUpdate(f"Field '{name}' is not finite: {value!r}")
    return result


def _to_int(value: Any, name: str) -> int:
    number = _to_float(value, name)
    if number != int(number):
        raise MalformedUpdate(f"Field '{name}' is not an integer timestamp: {value!r}")
    return int(number)


# ═══════════════════════════════════════════════════════════════════════════
# MARKET DATA
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Candle:
    """One OHLCV bar. Times are epoch milliseconds."""
    open_time: int
    close_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    @property
    def body(self) -> float:
        return abs(self.close - self.open)

    @property
    def range(self) -> float:
        return self.high - self.low

    @property
    def upper_wick(self) -> float:
        return self.high - max(self.open, self.close)

    @property
    def lower_wick(self) -> float:
        return min(self.open, self.close) - self.low

    @property
    def is_bullish(self) -> bool:
        return self.close > self.open

    @property
    def is_bearish(self) -> bool:
        return self.close < self.open

    def with_price(self, price: float) -> 'Candle':
        """Return this bar as if ``price`` were the latest trade inside it."""
        return Candle(
            open_time=self.open_time,
            close_time=self.close_time,
            open=self.open,
            high=max(self.high, price),
            low=min(self.low, price),
            close=price,
            volume=self.volume,
        )

    @classmethod
    def from_payload(cls, payload: Any) -> 'Candle':
        """
        Parse a loosely typed update into a validated Candle.

        Accepts an existing Candle, a mapping with either long field names or
        Binance kline keys (t, T, o, h, l, c, v), with numbers or numeric strings.

        Raises:
            MalformedUpdate: If any field is missing, non-numeric, non-finite
                or the bar is internally inconsistent
        """
        if isinstance(payload, Candle):
            return payload
        if not isinstance(payload, Mapping):
            raise MalformedUpdate(f"Unsupported candle payload type: {type(payload).__name__}")

        open_time = _to_int(_pick(payload, 'open_time'), 'open_time')
        close_time = _to_int(_pick(payload, 'close_time'), 'close_time')

        prices = {
            name: _to_float(_pick(payload, name), name)
            for name in ('open', 'high', 'low', 'close')
        }
        volume = _to_float(_pick(payload, 'volume'), 'volume')

        if any(p <= 0 for p in prices.values()):
            raise MalformedUpdate(f"Non-positive price in candle at {open_time}")
        if volume < 0:
            raise MalformedUpdate(f"Negative volume in candle at {open_time}")
        if prices['high'] < prices['low']:
            raise MalformedUpdate(f"High below low in candle at {open_time}")
        for name in ('open', 'close'):
            if not prices['low'] <= prices[name] <= prices['high']:
                raise MalformedUpdate(f"{name} outside high/low range in candle at {open_time}")
        if close_time < open_time:
            raise MalformedUpdate(f"Close time before open time in candle at {open_time}")

        return cls(
            open_time=open_time,
            close_time=close_time,
            open=prices['open'],
            high=prices['high'],
            low=prices['low'],
            close=prices['close'],
            volume=volume,
        )


@dataclass(frozen=True)
class Snapshot:
    """
    Read-only view of one instrument's cache at a point in time.

    ``buffers`` maps timeframe label to an oldest-first tuple of candles where
    the last element is the bar still forming.
    """
    instrument: str
    buffers: Dict[str, Tuple[Candle, ...]]
    price: Optional[float]
    ready: bool
    gaps: Tuple[str, ...] = ()

    def candles(self, timeframe: str) -> Tuple[Candle, ...]:
        return self.buffers.get(timeframe, ())

    def live_candles(self, timeframe: str) -> List[Candle]:
        """Candles with the in-progress bar merged with the live price."""
        bars = list(self.buffers.get(timeframe, ()))
        if bars and self.price is not None:
            bars[-1] = bars[-1].with_price(self.price)
        return bars

    def has_gap(self, timeframe: str) -> bool:
        return timeframe in self.gaps

    @property
    def last_price(self) -> Optional[float]:
        return self.price


# ═══════════════════════════════════════════════════════════════════════════
# SIGNALS
# ═══════════════════════════════════════════════════════════════════════════

class Direction(Enum):
    """Trade direction"""
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def sign(self) -> int:
        return 1 if self is Direction.LONG else -1


class Urgency(Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"


@dataclass(frozen=True)
class SignalCandidate:
    """A proposed alert emitted by a detector, before risk gating."""
    signal_type: str        # e.g. "LIQUIDITY_SWEEP_BULLISH"
    direction: Direction
    urgency: Urgency
    confidence: float       # 0-100
    entry_price: float
    stop_price: float       # structural stop proposal
    rationale: str
    detector: str = ""
    metrics: Dict[str, Any] = field(default_factory=dict)
