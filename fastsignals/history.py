"""
Historical Data Loader

One-shot REST fetch that seeds the market cache before streaming starts,
and reloads an instrument after a gap. Failed fetches are retried with
exponential backoff and jitter; an instrument whose history cannot be
loaded is marked not-ready instead of crashing the process.
"""

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from typing import Optional, List, Dict, Any, Callable, Awaitable

import aiohttp

from .config import HistoryConfig, Settings
from .market_cache import MarketStateCache

logger = logging.getLogger(__name__)


class HistoryUnavailable(Exception):
    """Raised when historical candles cannot be fetched."""


class HistoryClient(ABC):
    """Source of historical candles and the latest price."""

    @abstractmethod
    async def fetch_candles(self, instrument: str, timeframe: str, limit: int) -> List[Dict[str, Any]]:
        """Return candle payloads, oldest first."""

    async def fetch_price(self, instrument: str) -> Optional[float]:
        return None

    async def close(self):
        pass


class BinanceHistoryClient(HistoryClient):
    """Binance USD-M futures REST client (klines and ticker price)."""

    MAX_LIMIT = 1500

    def __init__(self, config: HistoryConfig, session: Optional[aiohttp.ClientSession] = None):
        self.config = config
        self.base_url = config.rest_url.rstrip('/')
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout_seconds)
            )
            self._owns_session = True
        return self._session

    async def _get(self, path: str, params: Dict[str, Any]) -> Any:
        session = await self._get_session()
        try:
            async with session.get(f"{self.base_url}{path}", params=params) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise HistoryUnavailable(f"GET {path} returned {resp.status}: {text[:200]}")
                return await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise HistoryUnavailable(f"GET {path} failed: {e}") from e

    async def fetch_candles(self, instrument: str, timeframe: str, limit: int) -> List[Dict[str, Any]]:
        rows = await self._get('/fapi/v1/klines', {
            'symbol': instrument,
            'interval': timeframe,
            'limit': min(limit, self.MAX_LIMIT),
        })
        if not isinstance(rows, list):
            raise HistoryUnavailable(f"Unexpected klines response for {instrument} {timeframe}")

        # [open_time, open, high, low, close, volume, close_time, ...]
        return [
            {
                'open_time': row[0],
                'open': row[1],
                'high': row[2],
                'low': row[3],
                'close': row[4],
                'volume': row[5],
                'close_time': row[6],
            }
            for row in rows
            if isinstance(row, list) and len(row) >= 7
        ]

    async def fetch_price(self, instrument: str) -> Optional[float]:
        data = await self._get('/fapi/v1/ticker/price', {'symbol': instrument})
        try:
            return float(data['price'])
        except (KeyError, TypeError, ValueError):
            return None

    async def close(self):
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


def backoff_delay(attempt: int, config: HistoryConfig) -> float:
    """Exponential backoff with +/-25% jitter, capped at max_delay_seconds."""
    delay = min(config.base_delay_seconds * (2 ** attempt), config.max_delay_seconds)
    return delay * (0.75 + random.random() * 0.5)


async def fetch_with_retry(client: HistoryClient, instrument: str, timeframe: str, limit: int,
                           config: HistoryConfig,
                           sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep) -> List[Dict[str, Any]]:
    """
    Fetch candles, retrying up to ``config.max_retries`` attempts.

    Raises:
        HistoryUnavailable: When every attempt failed
    """
    attempts = max(1, config.max_retries)
    last_error: Optional[Exception] = None

    for attempt in range(attempts):
        try:
            return await client.fetch_candles(instrument, timeframe, limit)
        except HistoryUnavailable as e:
            last_error = e
            logger.warning(f"{instrument} {timeframe} history attempt {attempt + 1}/{attempts} failed: {e}")

            if attempt < attempts - 1:
                delay = backoff_delay(attempt, config)
                logger.info(f"Retrying in {delay:.1f} seconds...")
                await sleep(delay)

    raise HistoryUnavailable(f"{instrument} {timeframe}: {last_error}")


async def load_instrument_history(cache: MarketStateCache, client: HistoryClient, instrument: str,
                                  settings: Settings,
                                  sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep) -> bool:
    """
    Load every configured timeframe for one instrument into the cache.

    The primary timeframe is loaded last so the instrument only becomes
    eligible once all of its timeframes are in place.

    Returns:
        True if the instrument loaded; False if it was marked not-ready
    """
    tf = settings.timeframes
    order = [t for t in tf.all() if t != tf.primary] + [tf.primary]

    try:
        for timeframe in order:
            rows = await fetch_with_retry(client, instrument, timeframe,
                                          settings.capacity_for(timeframe), settings.history, sleep)
            cache.load_history(instrument, timeframe, rows)
    except HistoryUnavailable as e:
        cache.mark_not_ready(instrument, f"history unavailable: {e}")
        return False

    try:
        price = await client.fetch_price(instrument)
    except HistoryUnavailable as e:
        logger.warning(f"{instrument}: ticker price unavailable, using last close: {e}")
        price = None
    if price is not None:
        cache.apply_price_tick(instrument, price)

    if not cache.is_ready(instrument):
        logger.warning(
            f"{instrument}: history loaded but fewer than {settings.cache.min_ready_bars} "
            f"{tf.primary} bars, waiting for live data"
        )
    return True
