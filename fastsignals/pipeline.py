"""
Signal Pipeline

One InstrumentWorker per instrument owns a bounded event queue and a
single consumer task, so every cache write and evaluation pass for that
instrument runs in order while different instruments run concurrently.

A bar close on the primary timeframe triggers a full pass over the
detector bank; price ticks trigger a throttled fast-path pass over a
subset of detectors.
"""

import asyncio
import logging
import sqlite3
import time
from typing import Optional, Dict, Any, Callable, Awaitable, Tuple

from .config import Settings
from .detectors import DetectorBank
from .dispatch import Dispatcher, DispatchResult, SOURCE_BAR_CLOSE, SOURCE_FAST_PATH
from .features import build_features
from .feed import CandleUpdate, FeedEvent, PriceTick
from .history import HistoryClient, backoff_delay, load_instrument_history
from .market_cache import MarketStateCache
from .notifier import Notifier
from .risk import RiskGate
from .signal_log import SignalLog

logger = logging.getLogger(__name__)


class InstrumentWorker:
    """Serialized event consumer for one instrument."""

    def __init__(self, instrument: str, settings: Settings, cache: MarketStateCache,
                 bank: DetectorBank, dispatcher: Dispatcher,
                 reload: Optional[Callable[[], Awaitable[bool]]] = None,
                 clock: Callable[[], float] = time.monotonic):
        """
        Args:
            instrument: Instrument symbol
            settings: Loaded settings
            cache: Shared market cache
            bank: Detector bank
            dispatcher: Dispatcher shared by all workers
            reload: Coroutine factory that reloads this instrument's history
            clock: Monotonic time source for fast-path throttling and reload backoff
        """
        self.instrument = instrument
        self.settings = settings
        self.cache = cache
        self.bank = bank
        self.dispatcher = dispatcher
        self.reload = reload
        self.clock = clock

        self.queue: asyncio.Queue = asyncio.Queue(maxsize=settings.pipeline.queue_size)
        self.running = False
        self._task: Optional[asyncio.Task] = None
        self._reload_task: Optional[asyncio.Task] = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._last_fast_pass: Optional[float] = None
        self._reload_failures = 0
        self._next_reload_at: Optional[float] = None

        self.stats = {
            'events': 0,
            'dropped_ticks': 0,
            'evicted_events': 0,
            'passes': 0,
            'fast_passes': 0,
            'candidates': 0,
            'signals_sent': 0,
            'errors': 0,
            'reloads': 0,
        }

    # ═══════════════════════════════════════════════════════════════════
    # QUEUE
    # ═══════════════════════════════════════════════════════════════════

    def submit(self, event: FeedEvent) -> bool:
        """
        Enqueue without blocking the feed.

        On overflow a price tick is dropped; a candle update evicts the
        oldest queued event.

        Returns:
            False if the event was dropped
        """
        try:
            self.queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            pass

        if isinstance(event, PriceTick):
            self.stats['dropped_ticks'] += 1
            return False

        try:
            self.queue.get_nowait()
            self.queue.task_done()
            self.stats['evicted_events'] += 1
        except asyncio.QueueEmpty:
            pass
        self.queue.put_nowait(event)
        logger.warning(f"{self.instrument}: event queue full, evicted oldest event")
        return True

    def start(self):
        if self._task is not None:
            return
        self.running = True
        self._task = asyncio.create_task(self._consume(), name=f"worker-{self.instrument}")

    async def _consume(self):
        while self.running:
            event = await self.queue.get()
            try:
                if not self.running:
                    break
                self._idle.clear()
                await self._handle(event)
            finally:
                self._idle.set()
                self.queue.task_done()

    async def drain(self):
        """Wait until every queued event has been processed."""
        await self.queue.join()

    async def stop(self, timeout: float):
        """Stop evaluating; give an in-flight pass ``timeout`` seconds, then cancel."""
        self.running = False

        if not self._idle.is_set():
            try:
                await asyncio.wait_for(self._idle.wait(), timeout)
            except asyncio.TimeoutError:
                logger.warning(f"{self.instrument}: in-flight pass cancelled after {timeout:.0f}s")

        for task in (self._task, self._reload_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._task = None
        self._reload_task = None

    # ═══════════════════════════════════════════════════════════════════
    # EVENT HANDLING
    # ═══════════════════════════════════════════════════════════════════

    async def _handle(self, event: FeedEvent):
        self.stats['events'] += 1

        if isinstance(event, CandleUpdate):
            closed = self.cache.apply_candle_update(self.instrument, event.timeframe, event.payload)
            if closed and event.timeframe == self.settings.timeframes.primary:
                await self.evaluate(SOURCE_BAR_CLOSE)

        elif isinstance(event, PriceTick):
            if not self.cache.apply_price_tick(self.instrument, event.price):
                return
            fp = self.settings.fast_path
            if not fp.enabled:
                return
            now = self.clock()
            if self._last_fast_pass is not None and now - self._last_fast_pass < fp.min_interval_seconds:
                return
            self._last_fast_pass = now
            await self.evaluate(SOURCE_FAST_PATH, only=fp.detectors)

    def _schedule_reload(self, reason: str) -> bool:
        """
        Start a background history reload unless one is running or a
        failed reload is still backing off.

        Returns:
            True if a reload was started
        """
        if self.reload is None:
            return False
        if self._reload_task is not None and not self._reload_task.done():
            return False
        if self._next_reload_at is not None and self.clock() < self._next_reload_at:
            return False
        self.stats['reloads'] += 1
        logger.warning(f"{self.instrument}: {reason}, reloading history")
        self._reload_task = asyncio.create_task(self._run_reload())
        return True

    async def _run_reload(self) -> bool:
        loaded = await self.reload()
        if loaded:
            self._reload_failures = 0
            self._next_reload_at = None
        else:
            delay = backoff_delay(self._reload_failures, self.settings.history)
            self._reload_failures += 1
            self._next_reload_at = self.clock() + delay
            logger.warning(f"{self.instrument}: reload failed, next attempt in {delay:.0f}s at the earliest")
        return loaded

    async def evaluate(self, source: str, only: Optional[Tuple[str, ...]] = None) -> Optional[DispatchResult]:
        """
        Run one evaluation pass: detector bank, risk gate, dispatch.

        A gap in any timeframe the features read skips the pass and
        reloads history. An instrument excluded after failed history
        loads retries the reload on each primary bar close.

        Any unexpected error is logged and the pass is skipped.
        """
        try:
            snapshot = self.cache.snapshot(self.instrument)
            if not snapshot.ready:
                if source == SOURCE_BAR_CLOSE and self.cache.is_excluded(self.instrument):
                    self._schedule_reload("excluded after failed history load")
                return None

            gapped = [tf for tf in self.settings.timeframes.feature_inputs() if snapshot.has_gap(tf)]
            if gapped:
                self._schedule_reload(f"gap on {', '.join(gapped)}")
                return None

            features = build_features(snapshot, self.settings)
            if features is None:
                return None

            self.stats['fast_passes' if source == SOURCE_FAST_PATH else 'passes'] += 1
            candidate = self.bank.evaluate(snapshot, features, only=only)
            if candidate is None:
                return None

            self.stats['candidates'] += 1
            result = await self.dispatcher.dispatch(self.instrument, candidate, features.atr, source)
            if result.sent:
                self.stats['signals_sent'] += 1
            return result

        except Exception:
            self.stats['errors'] += 1
            logger.exception(f"{self.instrument}: evaluation pass failed ({source})")
            return None


class SignalPipeline:
    """
    Wires cache, detectors, risk gate and dispatcher to per-instrument workers.
    """

    def __init__(self, settings: Settings, history_client: HistoryClient, notifier: Notifier,
                 signal_log: Optional[SignalLog] = None, gate: Optional[RiskGate] = None,
                 bank: Optional[DetectorBank] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.settings = settings
        self.history_client = history_client
        self.notifier = notifier
        self.signal_log = signal_log

        self.cache = MarketStateCache.from_settings(settings)
        self.bank = bank or DetectorBank.from_settings(settings)
        self.gate = gate or RiskGate(settings.risk)
        self.dispatcher = Dispatcher(settings, self.gate, notifier, signal_log)

        self.workers: Dict[str, InstrumentWorker] = {
            symbol: InstrumentWorker(
                symbol, settings, self.cache, self.bank, self.dispatcher,
                reload=self._reloader(symbol), clock=clock,
            )
            for symbol in settings.instruments
        }
        self.timeframes = set(settings.timeframes.all())
        self.started = False

        logger.info(
            f"SignalPipeline initialized: {len(self.workers)} instruments, "
            f"detectors={self.bank.names}"
        )

    def _reloader(self, instrument: str) -> Callable[[], Awaitable[bool]]:
        async def reload() -> bool:
            return await load_instrument_history(self.cache, self.history_client, instrument, self.settings)
        return reload

    async def load_history(self) -> Dict[str, bool]:
        """Load history for all instruments concurrently."""
        symbols = list(self.workers)
        results = await asyncio.gather(*(
            load_instrument_history(self.cache, self.history_client, symbol, self.settings)
            for symbol in symbols
        ))
        loaded = dict(zip(symbols, results))

        ok = sum(1 for v in loaded.values() if v)
        logger.info(f"📊 History loaded for {ok}/{len(loaded)} instruments")
        return loaded

    async def start(self) -> Dict[str, bool]:
        """Load history, then start every worker."""
        loaded = await self.load_history()
        for worker in self.workers.values():
            worker.start()
        self.started = True
        return loaded

    def submit(self, event: FeedEvent) -> bool:
        """Route a feed event to its instrument's worker. Never blocks."""
        worker = self.workers.get(event.instrument)
        if worker is None:
            logger.debug(f"Ignoring event for unconfigured instrument {event.instrument}")
            return False
        if isinstance(event, CandleUpdate) and event.timeframe not in self.timeframes:
            logger.debug(f"Ignoring {event.instrument} update for unconfigured timeframe {event.timeframe}")
            return False
        return worker.submit(event)

    async def drain(self):
        await asyncio.gather(*(w.drain() for w in self.workers.values()))

    def on_position_closed(self, was_loss: bool = False, instrument: Optional[str] = None) -> int:
        """
        Deliver a position-close event.

        Every sent alert counts as an open position until a close event
        arrives; the running process receives them through run.py's
        SIGUSR1 (win) and SIGUSR2 (loss) handlers.

        Args:
            was_loss: A losing close arms the post-loss pause
            instrument: Close the oldest open log entry for this instrument only

        Returns:
            Open position count after the close
        """
        count = self.gate.on_position_closed(was_loss)
        if self.signal_log is not None:
            try:
                self.signal_log.close_oldest(was_loss, instrument)
            except sqlite3.Error as e:
                logger.error(f"Position closed but log update failed: {e}")
        logger.info(f"🔔 Position closed ({'loss' if was_loss else 'win'}) | Open: {count}")
        return count

    async def stop(self):
        timeout = self.settings.pipeline.shutdown_timeout_seconds
        await asyncio.gather(*(w.stop(timeout) for w in self.workers.values()))
        await self.notifier.close()
        await self.history_client.close()
        if self.signal_log is not None:
            self.signal_log.close()
        self.started = False
        logger.info("Signal pipeline stopped")

    def status(self) -> Dict[str, Any]:
        return {
            'instruments': self.cache.status(),
            'workers': {symbol: dict(w.stats, queued=w.queue.qsize()) for symbol, w in self.workers.items()},
            'cache': self.cache.get_statistics(),
            'dispatch': dict(self.dispatcher.stats),
            'risk': self.gate.stats(),
            'detectors': self.bank.names,
        }
