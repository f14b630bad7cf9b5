"""
Market Data Feed

Binance USD-M futures combined websocket stream: one kline stream per
instrument and timeframe plus the 24h ticker for the last price. Messages
are decoded into CandleUpdate / PriceTick events and pushed to a callback
that must not block.
"""

import asyncio
import json
import logging
import random
from dataclasses import dataclass
from typing import Optional, Dict, Any, Callable, List, Union

import websockets

from .config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CandleUpdate:
    instrument: str
    timeframe: str
    payload: Dict[str, Any]
    is_final: bool = False


@dataclass(frozen=True)
class PriceTick:
    instrument: str
    price: Any


FeedEvent = Union[CandleUpdate, PriceTick]


def stream_names(instruments: List[str], timeframes: List[str]) -> List[str]:
    names = []
    for symbol in instruments:
        lower = symbol.lower()
        names.extend(f"{lower}@kline_{tf}" for tf in timeframes)
        names.append(f"{lower}@ticker")
    return names


def parse_stream_message(message: Union[str, bytes, Dict[str, Any]]) -> Optional[FeedEvent]:
    """
    Decode one combined-stream message.

    Returns:
        CandleUpdate, PriceTick, or None for anything unrecognized. Field
        values are passed through untouched; the cache validates them.
    """
    if isinstance(message, (str, bytes)):
        try:
            message = json.loads(message)
        except ValueError:
            logger.debug("Ignoring non-JSON feed message")
            return None

    if not isinstance(message, dict):
        return None
    data = message.get('data', message)
    if not isinstance(data, dict):
        return None

    event = data.get('e')
    symbol = data.get('s')
    if not isinstance(symbol, str):
        return None

    if event == 'kline':
        k = data.get('k')
        if not isinstance(k, dict) or 'i' not in k:
            return None
        payload = {key: k.get(key) for key in ('t', 'T', 'o', 'h', 'l', 'c', 'v')}
        return CandleUpdate(instrument=symbol.upper(), timeframe=k['i'],
                            payload=payload, is_final=bool(k.get('x')))

    if event == '24hrTicker':
        return PriceTick(instrument=symbol.upper(), price=data.get('c'))

    return None


class BinanceFuturesFeed:
    """Combined-stream websocket client with automatic reconnect."""

    def __init__(self, settings: Settings, on_event: Callable[[FeedEvent], Any],
                 instruments: Optional[List[str]] = None):
        """
        Args:
            settings: Loaded settings
            on_event: Non-blocking callback for every decoded event
            instruments: Subset of configured instruments (default: all)
        """
        self.config = settings.feed
        self.on_event = on_event
        self.instruments = list(instruments or settings.instruments.keys())
        self.streams = stream_names(self.instruments, list(settings.timeframes.all()))
        self.url = f"{self.config.ws_url}?streams={'/'.join(self.streams)}"

        self.running = False
        self.connected = False
        self.stats = {
            'messages': 0,
            'events': 0,
            'reconnects': 0,
        }

    async def _listen(self, ws):
        async for message in ws:
            self.stats['messages'] += 1
            event = parse_stream_message(message)
            if event is None:
                continue
            self.stats['events'] += 1
            self.on_event(event)

    async def run(self):
        """Connect, listen and reconnect with backoff until stop() is called."""
        self.running = True
        attempt = 0

        while self.running:
            try:
                async with websockets.connect(
                    self.url,
                    ping_interval=self.config.ping_interval_seconds,
                    ping_timeout=10,
                ) as ws:
                    self.connected = True
                    attempt = 0
                    logger.info(f"✓ Feed connected: {len(self.streams)} streams")
                    await self._listen(ws)
            except asyncio.CancelledError:
                raise
            except (websockets.exceptions.WebSocketException, OSError, asyncio.TimeoutError) as e:
                logger.warning(f"Feed connection error: {e}")
            finally:
                self.connected = False

            if not self.running:
                break

            delay = min(self.config.reconnect_delay_seconds * (2 ** attempt),
                        self.config.max_reconnect_delay_seconds)
            delay *= 0.75 + random.random() * 0.5
            attempt += 1
            self.stats['reconnects'] += 1
            logger.info(f"Feed reconnecting in {delay:.1f} seconds...")
            await asyncio.sleep(delay)

        logger.info("Feed stopped")

    def stop(self):
        self.running = False
