"""
Notification Sinks

Delivers formatted alerts. The Telegram sink sends a summary message,
optionally forwards it to a broadcast channel, then sends the detail.
Only the summary send is confirmed; the forward and the detail are
best-effort and their failures are logged.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, List

import aiohttp

from .config import NotifierConfig, Settings

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Raised when an alert could not be delivered."""


@dataclass(frozen=True)
class AlertPayload:
    instrument: str
    summary: str
    detail: str
    direction: str = ''
    signal_type: str = ''


class Notifier(ABC):
    """Async alert sink."""

    @abstractmethod
    async def send(self, payload: AlertPayload):
        """Deliver a payload; raise NotificationError when it was not delivered."""

    async def close(self):
        pass


class LogNotifier(Notifier):
    """Writes alerts to the log instead of sending them (dry runs)."""

    def __init__(self):
        self.sent: List[AlertPayload] = []

    async def send(self, payload: AlertPayload):
        self.sent.append(payload)
        logger.info(f"[DRY RUN] {payload.instrument}\n{payload.summary}\n{payload.detail}")


class TelegramNotifier(Notifier):
    """Telegram Bot API sink over aiohttp."""

    def __init__(self, config: NotifierConfig, session: Optional[aiohttp.ClientSession] = None):
        token = config.bot_token
        chat_id = config.chat_id
        if not token or not chat_id:
            raise NotificationError(
                f"Telegram credentials missing: set {config.bot_token_env} and {config.chat_id_env}"
            )

        self.config = config
        self.chat_id = chat_id
        self.channel_id = config.channel_id
        self.base_url = f"{config.api_url.rstrip('/')}/bot{token}"
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout_seconds)
            )
            self._owns_session = True
        return self._session

    async def _call(self, method: str, body: dict) -> dict:
        session = await self._get_session()
        try:
            async with session.post(f"{self.base_url}/{method}", json=body) as resp:
                data = await resp.json(content_type=None)
                if resp.status != 200 or not data.get('ok'):
                    raise NotificationError(
                        f"Telegram {method} failed ({resp.status}): {data.get('description', 'unknown error')}"
                    )
                return data.get('result') or {}
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise NotificationError(f"Telegram {method} failed: {e}") from e

    async def _send_text(self, text: str, chat_id: str) -> dict:
        body = {'chat_id': chat_id, 'text': text}
        if self.config.parse_mode:
            body['parse_mode'] = self.config.parse_mode
        return await self._call('sendMessage', body)

    async def send(self, payload: AlertPayload):
        result = await self._send_text(payload.summary, self.chat_id)
        logger.info(f"{payload.instrument}: Telegram sent to {self.chat_id}")

        message_id = result.get('message_id')
        if self.channel_id and message_id is not None:
            try:
                await self._call('forwardMessage', {
                    'chat_id': self.channel_id,
                    'from_chat_id': self.chat_id,
                    'message_id': message_id,
                })
                logger.info(f"{payload.instrument}: forwarded to channel")
            except NotificationError as e:
                logger.warning(f"{payload.instrument}: forward error: {e}")

        if payload.detail:
            try:
                await self._send_text(payload.detail, self.chat_id)
            except NotificationError as e:
                logger.error(f"{payload.instrument}: detail message not delivered: {e}")

    async def close(self):
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


def create_notifier(settings: Settings, dry_run: bool = False,
                    session: Optional[aiohttp.ClientSession] = None) -> Notifier:
    """
    Build the configured notifier.

    Args:
        settings: Loaded settings
        dry_run: Force the log sink regardless of configuration
        session: Shared aiohttp session (optional)
    """
    kind = 'log' if dry_run else settings.notifier.kind
    if kind == 'log':
        logger.info("Notifier: log only")
        return LogNotifier()
    if kind == 'telegram':
        logger.info("Notifier: Telegram")
        return TelegramNotifier(settings.notifier, session=session)
    raise NotificationError(f"Unknown notifier kind: {kind}")
