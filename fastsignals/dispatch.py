"""
Dispatch & Dedup

Turns a gated candidate into an alert: finalizes the stop, derives take
profits, formats both messages and hands them to the notifier. A risk gate
slot is reserved before the send; the counters and the signal log are
only updated once delivery is confirmed.
"""

import asyncio
import logging
import sqlite3
import time
from dataclasses import dataclass
from typing import Optional, Tuple

from .config import Settings
from .models import Direction, SignalCandidate
from .notifier import AlertPayload, NotificationError, Notifier
from .risk import RiskGate, INSTRUMENT_COOLDOWN, SIGNAL_TYPE_COOLDOWN
from .signal_log import SignalLog

logger = logging.getLogger(__name__)

INVALID_STOP = 'INVALID_STOP'
SEND_FAILED = 'SEND_FAILED'

SOURCE_BAR_CLOSE = 'bar_close'
SOURCE_FAST_PATH = 'fast_path'

# Cooldowns are routine and logged quietly
_QUIET_REASONS = (INSTRUMENT_COOLDOWN, SIGNAL_TYPE_COOLDOWN)


@dataclass(frozen=True)
class DispatchResult:
    sent: bool
    reason: Optional[str] = None
    payload: Optional[AlertPayload] = None


def decimal_places(price: float) -> int:
    """Display precision derived from price magnitude."""
    if price < 0.01:
        return 8
    if price < 1:
        return 6
    if price < 100:
        return 4
    return 2


def take_profits(entry: float, stop: float, direction: Direction,
                 tp1_multiple: float = 0.5, tp2_multiple: float = 1.1) -> Tuple[float, float]:
    """TP1/TP2 at fixed multiples of the entry-to-stop risk."""
    risk = abs(entry - stop)
    sign = direction.sign
    return entry + sign * risk * tp1_multiple, entry + sign * risk * tp2_multiple


class Dispatcher:
    """Final step of an evaluation pass."""

    def __init__(self, settings: Settings, gate: RiskGate, notifier: Notifier,
                 signal_log: Optional[SignalLog] = None):
        self.settings = settings
        self.gate = gate
        self.notifier = notifier
        self.signal_log = signal_log
        self.stats = {
            'sent': 0,
            'rejected': 0,
            'failed': 0,
        }

    def _reject(self, instrument: str, candidate: SignalCandidate, reason: str) -> DispatchResult:
        self.stats['rejected'] += 1
        message = f"⛔ {instrument}: {candidate.signal_type} blocked - {reason}"
        if reason in _QUIET_REASONS:
            logger.debug(message)
        else:
            logger.info(message)
        return DispatchResult(sent=False, reason=reason)

    def _format(self, instrument: str, candidate: SignalCandidate, entry: float, stop: float,
                tp1: float, tp2: float, size_factor: float, risk_percent: float,
                was_clamped: bool) -> AlertPayload:
        precision = self.settings.precision_for(instrument)
        decimals = precision if precision is not None else decimal_places(entry)
        direction = candidate.direction.value
        urgency = candidate.urgency.value

        risk = abs(entry - stop)
        rr1 = abs(tp1 - entry) / risk
        rr2 = abs(tp2 - entry) / risk
        position = self.settings.risk.position_size_percent * size_factor

        summary = (
            f"⚡ URGENT {instrument}\n"
            f"✅ {direction} - {urgency} URGENCY\n"
            f"\n"
            f"Entry: {entry:.{decimals}f}\n"
            f"TP1: {tp1:.{decimals}f}\n"
            f"TP2: {tp2:.{decimals}f}\n"
            f"SL: {stop:.{decimals}f}\n"
            f"\n"
            f"{candidate.rationale}"
        )

        extras = []
        if was_clamped:
            extras.append("⚠️ SL adjusted to max allowed")
        if 'order_flow' in candidate.metrics:
            extras.append(f"📊 Order Flow: {candidate.metrics['order_flow']:.1f}")
        if 'sweep_quality' in candidate.metrics:
            extras.append(
                f"🎣 Sweep Quality: {candidate.metrics['sweep_quality']:.0f}% "
                f"({candidate.metrics.get('sweep_tier', 'N/A')})"
            )

        detail = (
            f"{instrument} - FAST SIGNAL DETAILS\n"
            f"\n"
            f"Urgency: {urgency}\n"
            f"Confidence: {candidate.confidence:.0f}%\n"
            f"Type: {candidate.signal_type}\n"
            f"\n"
            f"⚡ MARKET ORDER - EXECUTE NOW\n"
            f"Entry: {entry:.{decimals}f}\n"
            f"\n"
            f"Position: {position:.2f}% (scaled by confidence, {size_factor:.2f}x)\n"
            f"Risk: {risk_percent:.2f}%\n"
            f"R:R → TP1: 1:{rr1:.2f} | TP2: 1:{rr2:.2f}\n"
        )
        if extras:
            detail += "\n" + "\n".join(extras) + "\n"

        return AlertPayload(
            instrument=instrument,
            summary=summary,
            detail=detail,
            direction=direction,
            signal_type=candidate.signal_type,
        )

    async def dispatch(self, instrument: str, candidate: SignalCandidate, atr: Optional[float],
                       source: str = SOURCE_BAR_CLOSE) -> DispatchResult:
        """
        Gate, finalize and deliver one candidate.

        Args:
            instrument: Instrument symbol
            candidate: Detector output
            atr: Primary-timeframe ATR for the ATR stop
            source: Pipeline source tag ('bar_close' or 'fast_path')

        Returns:
            DispatchResult; ``sent`` is True only after confirmed delivery
        """
        decision = self.gate.reserve(instrument, candidate)
        if not decision.allowed:
            return self._reject(instrument, candidate, decision.reason)

        try:
            return await self._deliver(instrument, candidate, atr, source)
        finally:
            # No-op once the send was committed
            self.gate.release(instrument)

    async def _deliver(self, instrument: str, candidate: SignalCandidate, atr: Optional[float],
                       source: str) -> DispatchResult:
        entry = candidate.entry_price
        stop_decision = self.gate.finalize_stop(entry, candidate.stop_price, candidate.direction,
                                                candidate.signal_type, atr)
        if not stop_decision.valid:
            logger.info(f"❌ {instrument}: stop validation failed ({stop_decision.reason})")
            return self._reject(instrument, candidate, INVALID_STOP)

        if stop_decision.was_clamped:
            logger.warning(
                f"⚠️ {instrument}: SL adjusted from {stop_decision.original_risk_percent:.2f}% "
                f"to {stop_decision.risk_percent:.2f}%"
            )

        dc = self.settings.dispatch
        stop = stop_decision.stop
        tp1, tp2 = take_profits(entry, stop, candidate.direction, dc.tp1_multiple, dc.tp2_multiple)
        size_factor = self.gate.check_confidence(candidate.confidence).size_factor

        payload = self._format(instrument, candidate, entry, stop, tp1, tp2, size_factor,
                               stop_decision.risk_percent, stop_decision.was_clamped)

        try:
            await asyncio.wait_for(self.notifier.send(payload), timeout=dc.send_timeout_seconds)
        except (NotificationError, asyncio.TimeoutError) as e:
            self.stats['failed'] += 1
            logger.error(f"❌ {instrument}: alert not delivered, signal not recorded: {str(e) or 'timeout'}")
            return DispatchResult(sent=False, reason=SEND_FAILED, payload=payload)

        self.gate.commit(instrument, candidate.signal_type)
        self.stats['sent'] += 1

        if self.signal_log is not None:
            try:
                self.signal_log.append({
                    'timestamp_utc': time.time(),
                    'instrument': instrument,
                    'direction': candidate.direction.value,
                    'signal_type': candidate.signal_type,
                    'urgency': candidate.urgency.value,
                    'confidence': candidate.confidence,
                    'size_factor': size_factor,
                    'entry_price': entry,
                    'stop_price': stop,
                    'tp1_price': tp1,
                    'tp2_price': tp2,
                    'risk_percent': stop_decision.risk_percent,
                    'stop_clamped': stop_decision.was_clamped,
                    'source': source,
                    'rationale': candidate.rationale,
                    'metrics': candidate.metrics,
                })
            except sqlite3.Error as e:
                logger.error(f"{instrument}: signal sent but log append failed: {e}")

        logger.info(
            f"⚡ SENT: {instrument} {candidate.signal_type} @ {entry:.6g} | "
            f"SL: {stop_decision.risk_percent:.2f}% | conf {candidate.confidence:.0f}% | {source}"
        )
        return DispatchResult(sent=True, payload=payload)
