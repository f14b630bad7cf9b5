"""
Market State Cache

Rolling multi-timeframe view of each instrument, built from an unordered
stream of incremental kline updates and price ticks.

Each timeframe is a fixed-capacity ring whose newest entry is the bar still
forming: an update with the same open time refines it in place, a newer
open time freezes it and appends the next bar, evicting the oldest.
"""

import logging
import math
import threading
import time
from collections import deque
from typing import Optional, Dict, List, Any, Iterable, Union, Mapping

from .models import Candle, MalformedUpdate, Snapshot, timeframe_to_ms

logger = logging.getLogger(__name__)


class TimeframeBuffer:
    """Fixed-capacity ring of candles with strictly increasing open times."""

    def __init__(self, timeframe: str, capacity: int):
        if capacity <= 0:
            raise ValueError(f"Buffer capacity must be positive, got {capacity}")
        self.timeframe = timeframe
        self.interval_ms = timeframe_to_ms(timeframe)
        self.capacity = capacity
        self._bars: deque = deque(maxlen=capacity)
        self._gap_count = 0

    def __len__(self) -> int:
        return len(self._bars)

    @property
    def last(self) -> Optional[Candle]:
        return self._bars[-1] if self._bars else None

    def apply(self, candle: Candle) -> bool:
        """
        Merge one candle update into the ring.

        Returns:
            True if this update closed the previous bar and opened a new one
        """
        last = self.last
        if last is None:
            self._bars.append(candle)
            return False

        if candle.open_time == last.open_time:
            self._bars[-1] = candle
            return False

        if candle.open_time < last.open_time:
            logger.debug(
                f"Stale {self.timeframe} update ignored "
                f"(open_time={candle.open_time} < {last.open_time})"
            )
            return False

        if candle.open_time - last.open_time != self.interval_ms:
            self._gap_count += 1
            logger.warning(
                f"Gap in {self.timeframe} stream: {last.open_time} -> {candle.open_time}"
            )

        # deque(maxlen) evicts the oldest bar at capacity
        self._bars.append(candle)
        return True

    def replace(self, candles: Iterable[Candle]):
        """Replace contents with a sorted, de-duplicated history load."""
        by_time = {c.open_time: c for c in candles}
        ordered = [by_time[t] for t in sorted(by_time)]
        self._bars = deque(ordered[-self.capacity:], maxlen=self.capacity)

    def has_gap(self) -> bool:
        """True if any consecutive pair of bars is not exactly one interval apart."""
        bars = self._bars
        for i in range(1, len(bars)):
            if bars[i].open_time - bars[i - 1].open_time != self.interval_ms:
                return True
        return False

    def to_tuple(self) -> tuple:
        return tuple(self._bars)

    @property
    def gap_count(self) -> int:
        return self._gap_count


class InstrumentCache:
    """All timeframe buffers plus live price and readiness for one instrument."""

    def __init__(self, instrument: str, capacities: Mapping[str, int],
                 primary: str, min_ready_bars: int):
        self.instrument = instrument
        self.primary = primary
        self.min_ready_bars = min_ready_bars
        self.buffers: Dict[str, TimeframeBuffer] = {
            tf: TimeframeBuffer(tf, cap) for tf, cap in capacities.items()
        }
        self.price: Optional[float] = None
        self.excluded = False
        self.last_error: Optional[str] = None
        self.last_update: Optional[float] = None
        self.lock = threading.Lock()

    @property
    def ready(self) -> bool:
        return not self.excluded and len(self.buffers[self.primary]) >= self.min_ready_bars


class MarketStateCache:
    """
    Per-instrument, per-timeframe market state.

    Writes for one instrument are serialized by that instrument's lock, so
    different instruments never contend with each other.
    """

    def __init__(self, instruments: Iterable[str], capacities: Mapping[str, int],
                 primary: str, min_ready_bars: int = 200):
        """
        Initialize the cache.

        Args:
            instruments: Instrument symbols to track
            capacities: Ring capacity per timeframe label
            primary: Decision timeframe that gates readiness
            min_ready_bars: Primary bars required before evaluation
        """
        if primary not in capacities:
            raise ValueError(f"Primary timeframe {primary!r} has no configured capacity")

        self.primary = primary
        self.timeframes = tuple(capacities)
        self._instruments: Dict[str, InstrumentCache] = {
            symbol: InstrumentCache(symbol, capacities, primary, min_ready_bars)
            for symbol in instruments
        }

        self.stats = {
            'candle_updates': 0,
            'bars_closed': 0,
            'malformed_updates': 0,
            'price_ticks': 0,
            'rejected_ticks': 0,
        }

        logger.info(
            f"MarketStateCache initialized: {len(self._instruments)} instruments, "
            f"timeframes={list(self.timeframes)}, primary={primary}"
        )

    @classmethod
    def from_settings(cls, settings) -> 'MarketStateCache':
        capacities = {tf: settings.capacity_for(tf) for tf in settings.timeframes.all()}
        return cls(
            instruments=settings.instruments.keys(),
            capacities=capacities,
            primary=settings.timeframes.primary,
            min_ready_bars=settings.cache.min_ready_bars,
        )

    @property
    def instruments(self) -> List[str]:
        return list(self._instruments)

    def _get(self, instrument: str) -> InstrumentCache:
        try:
            return self._instruments[instrument]
        except KeyError:
            raise KeyError(f"Unknown instrument: {instrument}")

    def _buffer(self, entry: InstrumentCache, timeframe: str) -> TimeframeBuffer:
        try:
            return entry.buffers[timeframe]
        except KeyError:
            raise KeyError(f"Unknown timeframe {timeframe!r} for {entry.instrument}")

    def apply_candle_update(self, instrument: str, timeframe: str,
                            candle: Union[Candle, Mapping[str, Any]]) -> bool:
        """
        Apply one kline update.

        Args:
            instrument: Instrument symbol
            timeframe: Timeframe label
            candle: Parsed Candle or raw payload

        Returns:
            True if a bar closed on this update; False for refinements,
            stale updates and malformed payloads
        """
        entry = self._get(instrument)
        buffer = self._buffer(entry, timeframe)

        try:
            parsed = Candle.from_payload(candle)
        except MalformedUpdate as e:
            self.stats['malformed_updates'] += 1
            logger.warning(f"Skipping malformed {instrument} {timeframe} update: {e}")
            return False

        with entry.lock:
            was_ready = entry.ready
            closed = buffer.apply(parsed)
            entry.last_update = time.time()
            if not was_ready and entry.ready:
                logger.info(f"✓ {instrument} is ready ({len(entry.buffers[self.primary])} primary bars)")

        self.stats['candle_updates'] += 1
        if closed:
            self.stats['bars_closed'] += 1
        return closed

    def apply_price_tick(self, instrument: str, price: Any) -> bool:
        """
        Record the latest trade price. Non-finite or non-positive ticks are ignored.

        Returns:
            True if the price was accepted
        """
        entry = self._get(instrument)
        try:
            value = float(price)
        except (TypeError, ValueError):
            value = float('nan')

        if not math.isfinite(value) or value <= 0:
            self.stats['rejected_ticks'] += 1
            logger.debug(f"Ignoring invalid price tick for {instrument}: {price!r}")
            return False

        with entry.lock:
            entry.price = value
            entry.last_update = time.time()
        self.stats['price_ticks'] += 1
        return True

    def load_history(self, instrument: str, timeframe: str, candles: Iterable[Any]) -> int:
        """
        Replace a buffer with a historical load. Malformed rows are dropped.

        A successful primary load clears any previous exclusion.

        Returns:
            Number of candles stored
        """
        entry = self._get(instrument)
        buffer = self._buffer(entry, timeframe)

        parsed: List[Candle] = []
        for raw in candles:
            try:
                parsed.append(Candle.from_payload(raw))
            except MalformedUpdate as e:
                self.stats['malformed_updates'] += 1
                logger.warning(f"Dropping malformed {instrument} {timeframe} history row: {e}")

        with entry.lock:
            buffer.replace(parsed)
            if timeframe == self.primary:
                entry.excluded = False
                entry.last_error = None
                if entry.price is None and len(buffer):
                    entry.price = buffer.last.close
            stored = len(buffer)

        logger.info(f"Loaded {stored} {timeframe} bars for {instrument}")
        return stored

    def mark_not_ready(self, instrument: str, reason: str):
        """Exclude an instrument from evaluation until history is reloaded."""
        entry = self._get(instrument)
        with entry.lock:
            entry.excluded = True
            entry.last_error = reason
        logger.error(f"❌ {instrument} marked not ready: {reason}")

    def is_ready(self, instrument: str) -> bool:
        return self._get(instrument).ready

    def is_excluded(self, instrument: str) -> bool:
        return self._get(instrument).excluded

    def snapshot(self, instrument: str) -> Snapshot:
        """Consistent read-only copy of one instrument's state."""
        entry = self._get(instrument)
        with entry.lock:
            buffers = {tf: buf.to_tuple() for tf, buf in entry.buffers.items()}
            gaps = tuple(tf for tf, buf in entry.buffers.items() if buf.has_gap())
            return Snapshot(
                instrument=instrument,
                buffers=buffers,
                price=entry.price,
                ready=entry.ready,
                gaps=gaps,
            )

    def status(self) -> Dict[str, Dict[str, Any]]:
        """Readiness and buffer sizes per instrument."""
        result = {}
        for symbol, entry in self._instruments.items():
            with entry.lock:
                result[symbol] = {
                    'ready': entry.ready,
                    'excluded': entry.excluded,
                    'price': entry.price,
                    'bars': {tf: len(buf) for tf, buf in entry.buffers.items()},
                    'last_error': entry.last_error,
                    'last_update': entry.last_update,
                }
        return result

    def get_statistics(self) -> Dict[str, int]:
        return self.stats.copy()
