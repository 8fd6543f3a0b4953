"""Telegram delivery channel built on python-telegram-bot."""

from __future__ import annotations

import base64
import binascii
import logging
import re
from typing import Optional, Union

from telegram import Bot, InputFile
from telegram.error import BadRequest, Forbidden, InvalidToken, NetworkError, RetryAfter, TelegramError

from services.errors import DeliveryPermanentError, DeliveryTransientError

logger = logging.getLogger(__name__)

CAPTION_LIMIT = 1024
MESSAGE_LIMIT = 4096
_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w/+.-]+);base64,(?P<data>.+)$", re.DOTALL)


def decode_data_url(url: str) -> Optional[bytes]:
    """Return the bytes of a base64 ``data:`` URL, or None for regular URLs."""
    match = _DATA_URL_RE.match(url.strip())
    if not match:
        return None
    try:
        return base64.b64decode(match.group("data"), validate=False)
    except (binascii.Error, ValueError):
        return None


def _caption(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    return text if len(text) <= CAPTION_LIMIT else text[: CAPTION_LIMIT - 1] + "…"


def map_telegram_error(exc: TelegramError) -> Exception:
    """Translate Telegram API errors into retryable or permanent delivery errors."""
    if isinstance(exc, RetryAfter):
        retry_after = exc.retry_after
        seconds = int(retry_after.total_seconds()) if hasattr(retry_after, "total_seconds") else int(retry_after)
        return DeliveryTransientError(f"Telegram rate limit: {exc}", retry_after=seconds, original_error=exc)
    if isinstance(exc, InvalidToken):
        logger.error("Telegram rejected the bot token, check TELEGRAM_BOT_TOKEN: %s", exc)
        return DeliveryTransientError(f"Telegram bot token rejected: {exc}", original_error=exc)
    if isinstance(exc, Forbidden):
        return DeliveryPermanentError(f"Telegram refused delivery: {exc}", original_error=exc)
    if isinstance(exc, BadRequest):
        return DeliveryPermanentError(f"Telegram rejected message: {exc}", original_error=exc)
    if isinstance(exc, NetworkError):
        return DeliveryTransientError(f"Telegram network error: {exc}", original_error=exc)
    return DeliveryTransientError(f"Telegram error: {exc}", original_error=exc)


class TelegramChannel:
    """Push channel for completed generations. Every send raises a delivery error on failure."""

    def __init__(self, token: str, *, bot: Optional[Bot] = None) -> None:
        self._bot = bot or Bot(token=token)
        self._initialized = False

    async def _ready_bot(self) -> Bot:
        if not self._initialized:
            try:
                await self._bot.initialize()
            except TelegramError as exc:
                raise map_telegram_error(exc) from exc
            self._initialized = True
        return self._bot

    async def send_photo(self, chat_id: str, url: str, caption: Optional[str] = None) -> None:
        bot = await self._ready_bot()
        data = decode_data_url(url)
        photo: Union[str, InputFile] = InputFile(data, filename="image.png") if data is not None else url
        try:
            await bot.send_photo(chat_id=chat_id, photo=photo, caption=_caption(caption))
        except TelegramError as exc:
            raise map_telegram_error(exc) from exc

    async def send_document(
        self,
        chat_id: str,
        document: Union[bytes, str],
        filename: str,
        caption: Optional[str] = None,
    ) -> None:
        bot = await self._ready_bot()
        payload: Union[str, InputFile] = InputFile(document, filename=filename) if isinstance(document, bytes) else document
        try:
            await bot.send_document(chat_id=chat_id, document=payload, caption=_caption(caption))
        except TelegramError as exc:
            raise map_telegram_error(exc) from exc

    async def send_message(self, chat_id: str, text: str) -> None:
        bot = await self._ready_bot()
        try:
            await bot.send_message(chat_id=chat_id, text=text[:MESSAGE_LIMIT])
        except TelegramError as exc:
            raise map_telegram_error(exc) from exc

    async def close(self) -> None:
        if self._initialized:
            try:
                await self._bot.shutdown()
            except TelegramError as exc:
                logger.warning("Telegram bot shutdown failed: %s", exc)
            self._initialized = False
