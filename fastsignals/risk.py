"""
Risk Gate & Rate Limiter

Stateful gate every candidate passes before dispatch. Checks run in a
fixed order and a rejection never mutates the counters, so asking twice
against unchanged state yields the same answer.

Gate order:
  1. post-loss pause
  2. open-position cap
  3. daily and per-instrument signal counters
  4. confidence floor
  5. per-instrument and per-signal-type cooldowns

Dispatch reserves a slot before sending and commits or releases it once
delivery is settled, so in-flight sends count against the caps.

State lives in memory only; daily counters reset when the date changes in
the configured timezone.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Callable, Tuple, Any

import pytz

from .config import RiskConfig
from .models import Direction, SignalCandidate

logger = logging.getLogger(__name__)

MAX_SCALED_CONFIDENCE = 95.0

# Rejection reasons
PAUSED_AFTER_LOSS = 'PAUSED_AFTER_LOSS'
MAX_CONCURRENT = 'MAX_CONCURRENT'
MAX_DAILY = 'MAX_DAILY'
MAX_PER_INSTRUMENT = 'MAX_PER_INSTRUMENT'
CONFIDENCE_TOO_LOW = 'CONFIDENCE_TOO_LOW'
INSTRUMENT_COOLDOWN = 'INSTRUMENT_COOLDOWN'
SIGNAL_TYPE_COOLDOWN = 'SIGNAL_TYPE_COOLDOWN'


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    reason: Optional[str] = None
    remaining_seconds: Optional[float] = None


@dataclass(frozen=True)
class ConfidenceCheck:
    valid: bool
    size_factor: float = 0.0


@dataclass(frozen=True)
class StopDecision:
    stop: float
    valid: bool
    was_clamped: bool
    risk_percent: float
    original_risk_percent: float
    reason: Optional[str] = None


@dataclass
class RiskState:
    """Mutable counters owned by one RiskGate."""
    open_position_count: int = 0
    daily_signal_count: int = 0
    per_instrument_daily_count: Dict[str, int] = field(default_factory=dict)
    last_loss_timestamp: Optional[float] = None
    pause_seconds: Optional[float] = None     # overrides configured duration for a forced pause
    last_alert_per_instrument: Dict[str, float] = field(default_factory=dict)
    last_alert_per_signal_type: Dict[Tuple[str, str], float] = field(default_factory=dict)
    trading_date: Optional[str] = None
    # Slots reserved by sends still in flight
    pending_signal_count: int = 0
    pending_per_instrument: Dict[str, int] = field(default_factory=dict)


class RiskGate:
    """
    Decides whether a candidate may be sent and finalizes its stop.

    All reads and writes of RiskState happen under one lock so concurrent
    instrument workers see consistent counters.
    """

    def __init__(self, config: RiskConfig, state: Optional[RiskState] = None,
                 clock: Callable[[], float] = time.time):
        """
        Initialize the gate.

        Args:
            config: Risk settings
            state: Existing state to adopt (default: fresh counters)
            clock: Epoch-seconds time source
        """
        self.config = config
        self.state = state or RiskState()
        self.clock = clock
        self.tz = pytz.timezone(config.timezone)
        self._lock = threading.RLock()

        logger.info(
            f"RiskGate initialized: max_daily={config.max_daily_signals}, "
            f"per_instrument={config.max_per_instrument_daily}, "
            f"max_concurrent={config.max_concurrent_positions}, "
            f"min_confidence={config.min_confidence}"
        )

    # ── Daily rollover ────────────────────────────────────────────────────

    def _local_date(self, now: float) -> str:
        return datetime.fromtimestamp(now, tz=pytz.utc).astimezone(self.tz).strftime('%Y-%m-%d')

    def _roll_daily(self, now: float):
        today = self._local_date(now)
        if self.state.trading_date != today:
            if self.state.trading_date is not None and self.state.daily_signal_count > 0:
                logger.info(
                    f"📊 Signals sent on {self.state.trading_date}: {self.state.daily_signal_count}"
                )
            self.state.trading_date = today
            self.state.daily_signal_count = 0
            self.state.per_instrument_daily_count = {}

    # ── Pause handling ────────────────────────────────────────────────────

    def _pause_remaining(self, now: float) -> float:
        loss_time = self.state.last_loss_timestamp
        if loss_time is None:
            return 0.0
        duration = self.state.pause_seconds
        if duration is None:
            if not self.config.pause_after_loss:
                return 0.0
            duration = self.config.pause_duration_minutes * 60
        return max(0.0, loss_time + duration - now)

    def pause_status(self) -> Dict[str, Any]:
        with self._lock:
            now = self.clock()
            remaining = self._pause_remaining(now)
            if remaining <= 0:
                return {'is_paused': False}
            return {
                'is_paused': True,
                'remaining_minutes': math.ceil(remaining / 60),
                'resume_time': datetime.fromtimestamp(now + remaining, tz=self.tz).isoformat(),
                'loss_time': datetime.fromtimestamp(self.state.last_loss_timestamp, tz=self.tz).isoformat(),
            }

    def clear_pause(self):
        with self._lock:
            self.state.last_loss_timestamp = None
            self.state.pause_seconds = None
        logger.info("✓ Signal pause manually cleared")

    def force_pause(self, minutes: Optional[float] = None) -> Dict[str, Any]:
        """Pause emission now, for ``minutes`` or the configured duration."""
        with self._lock:
            now = self.clock()
            self.state.last_loss_timestamp = now
            self.state.pause_seconds = (minutes if minutes is not None
                                        else self.config.pause_duration_minutes) * 60
            resume = datetime.fromtimestamp(now + self.state.pause_seconds, tz=self.tz)
        logger.warning(f"Signals manually paused until {resume.strftime('%H:%M:%S')}")
        return {'paused': True, 'resume_time': resume.isoformat()}

    # ── Gate checks ───────────────────────────────────────────────────────

    def can_emit(self, instrument: str) -> GateDecision:
        """
        Pause, position cap and daily counters, in that order.

        Reserved slots of in-flight sends count against every cap.
        """
        with self._lock:
            now = self.clock()
            self._roll_daily(now)
            cfg = self.config
            state = self.state
            pending = state.pending_signal_count

            remaining = self._pause_remaining(now)
            if remaining > 0:
                return GateDecision(False, PAUSED_AFTER_LOSS, remaining)

            if cfg.max_concurrent_positions and state.open_position_count + pending >= cfg.max_concurrent_positions:
                return GateDecision(False, MAX_CONCURRENT)

            if state.daily_signal_count + pending >= cfg.max_daily_signals:
                return GateDecision(False, MAX_DAILY)

            per_instrument = (state.per_instrument_daily_count.get(instrument, 0)
                              + state.pending_per_instrument.get(instrument, 0))
            if per_instrument >= cfg.max_per_instrument_daily:
                return GateDecision(False, MAX_PER_INSTRUMENT)

            return GateDecision(True)

    def check_confidence(self, confidence: float) -> ConfidenceCheck:
        """
        Validate confidence and scale position size.

        Size grows linearly from base_size at min_confidence to max_size at 95.
        """
        cfg = self.config
        if confidence < cfg.min_confidence:
            return ConfidenceCheck(valid=False)

        span = MAX_SCALED_CONFIDENCE - cfg.min_confidence
        above = min(confidence, MAX_SCALED_CONFIDENCE) - cfg.min_confidence
        factor = cfg.base_size + (cfg.max_size - cfg.base_size) * (above / span)
        return ConfidenceCheck(valid=True, size_factor=min(cfg.max_size, max(cfg.base_size, factor)))

    def check_cooldown(self, instrument: str, signal_type: str) -> GateDecision:
        with self._lock:
            now = self.clock()
            last = self.state.last_alert_per_instrument.get(instrument)
            if last is not None and now - last < self.config.alert_cooldown_seconds:
                return GateDecision(False, INSTRUMENT_COOLDOWN,
                                    self.config.alert_cooldown_seconds - (now - last))

            last = self.state.last_alert_per_signal_type.get((instrument, signal_type))
            if last is not None and now - last < self.config.signal_type_cooldown_seconds:
                return GateDecision(False, SIGNAL_TYPE_COOLDOWN,
                                    self.config.signal_type_cooldown_seconds - (now - last))
            return GateDecision(True)

    def evaluate(self, instrument: str, candidate: SignalCandidate) -> GateDecision:
        """Run the full ordered gate chain for one candidate."""
        decision = self.can_emit(instrument)
        if not decision.allowed:
            return decision
        if not self.check_confidence(candidate.confidence).valid:
            return GateDecision(False, CONFIDENCE_TOO_LOW)
        return self.check_cooldown(instrument, candidate.signal_type)

    def reserve(self, instrument: str, candidate: SignalCandidate) -> GateDecision:
        """
        Run the gate chain and, if allowed, hold one slot for the send.

        Check and reservation happen under one lock acquisition, so workers
        sending concurrently can never overshoot the caps together. Every
        allowed reservation must end in ``commit`` or ``release``.

        Returns:
            GateDecision; when allowed a slot is held for ``instrument``
        """
        with self._lock:
            if self.state.pending_per_instrument.get(instrument, 0):
                # One in-flight alert per instrument
                return GateDecision(False, INSTRUMENT_COOLDOWN)

            decision = self.evaluate(instrument, candidate)
            if decision.allowed:
                self.state.pending_signal_count += 1
                self.state.pending_per_instrument[instrument] = 1
            return decision

    def release(self, instrument: str):
        """Give back a reserved slot without recording a send."""
        with self._lock:
            self._drop_reservation(instrument)

    def commit(self, instrument: str, signal_type: str):
        """Turn a reserved slot into a recorded send."""
        with self._lock:
            self._drop_reservation(instrument)
            self.record(instrument, signal_type)

    def _drop_reservation(self, instrument: str):
        held = self.state.pending_per_instrument.pop(instrument, 0)
        if held:
            self.state.pending_signal_count = max(0, self.state.pending_signal_count - held)

    # ── Stop finalization ─────────────────────────────────────────────────

    def finalize_stop(self, entry: float, proposed_stop: float, direction: Direction,
                      signal_type: str, atr: Optional[float]) -> StopDecision:
        """
        Pick the tighter of the structural and ATR stops, then clamp.

        The stop is pulled in to the signal family's max_stop_percent when
        wider; if it still exceeds the absolute ceiling it is rejected.
        A stop on the wrong side of entry is rejected.

        Returns:
            StopDecision with final stop and risk percentages
        """
        policy = self.config.stop_policy(signal_type)
        sign = direction.sign

        stop = proposed_stop
        if atr and atr > 0:
            atr_stop = entry - sign * atr * policy.atr_multiplier
            # Tighter means closer to entry
            stop = max(proposed_stop, atr_stop) if direction is Direction.LONG else min(proposed_stop, atr_stop)

        if (entry - stop) * sign <= 0:
            return StopDecision(stop=stop, valid=False, was_clamped=False, risk_percent=0.0,
                                original_risk_percent=0.0, reason='STOP_WRONG_SIDE')

        original_pct = abs(entry - stop) / entry * 100
        was_clamped = False
        if original_pct > policy.max_stop_percent:
            stop = entry - sign * entry * policy.max_stop_percent / 100
            was_clamped = True
            logger.debug(
                f"Stop too wide for {signal_type}: {original_pct:.2f}% > "
                f"{policy.max_stop_percent:.2f}%, clamped to {stop:.6g}"
            )

        final_pct = abs(entry - stop) / entry * 100
        if final_pct > self.config.max_stop_loss_percent:
            logger.info(
                f"Stop exceeds absolute max for {signal_type}: {final_pct:.2f}% > "
                f"{self.config.max_stop_loss_percent:.2f}%"
            )
            return StopDecision(stop=stop, valid=False, was_clamped=was_clamped,
                                risk_percent=final_pct, original_risk_percent=original_pct,
                                reason='STOP_EXCEEDS_MAX')

        return StopDecision(stop=stop, valid=True, was_clamped=was_clamped,
                            risk_percent=final_pct, original_risk_percent=original_pct)

    # ── Recording ─────────────────────────────────────────────────────────

    def record(self, instrument: str, signal_type: str):
        """Record a confirmed send: cooldowns, daily counters and open positions."""
        with self._lock:
            now = self.clock()
            self._roll_daily(now)
            self.state.last_alert_per_instrument[instrument] = now
            self.state.last_alert_per_signal_type[(instrument, signal_type)] = now
            self.state.daily_signal_count += 1
            count = self.state.per_instrument_daily_count.get(instrument, 0) + 1
            self.state.per_instrument_daily_count[instrument] = count
            self.state.open_position_count += 1

        logger.info(
            f"📊 Signals today: {self.state.daily_signal_count}/{self.config.max_daily_signals} "
            f"({instrument}: {count}/{self.config.max_per_instrument_daily}), "
            f"open positions: {self.state.open_position_count}"
        )

    def on_position_closed(self, was_loss: bool = False) -> int:
        """
        Release an open position slot; a loss arms the post-loss pause.

        Returns:
            Open position count after the close
        """
        with self._lock:
            self.state.open_position_count = max(0, self.state.open_position_count - 1)
            if was_loss and self.config.pause_after_loss:
                self.state.last_loss_timestamp = self.clock()
                self.state.pause_seconds = None
                logger.warning(
                    f"❌ Loss recorded - pausing signals for {self.config.pause_duration_minutes:.0f} minutes"
                )
            return self.state.open_position_count

    def set_open_positions(self, count: int) -> int:
        with self._lock:
            self.state.open_position_count = max(0, int(count))
            return self.state.open_position_count

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            self._roll_daily(self.clock())
            return {
                'open_positions': self.state.open_position_count,
                'daily_signals': self.state.daily_signal_count,
                'pending_signals': self.state.pending_signal_count,
                'by_instrument': dict(self.state.per_instrument_daily_count),
                'trading_date': self.state.trading_date,
                'pause_status': self.pause_status(),
                'limits': {
                    'max_concurrent': self.config.max_concurrent_positions,
                    'max_daily': self.config.max_daily_signals,
                    'max_per_instrument': self.config.max_per_instrument_daily,
                    'max_stop_loss_percent': self.config.max_stop_loss_percent,
                    'pause_after_loss': self.config.pause_after_loss,
                    'pause_duration_minutes': self.config.pause_duration_minutes,
                },
                'confidence_scaling': {
                    'min_confidence': self.config.min_confidence,
                    'base_size': self.config.base_size,
                    'max_size': self.config.max_size,
                },
            }
