"""Delivery of completed generations to the user's Telegram chat.

A delivery first claims the request with a conditional UPDATE (``sent_to_telegram``
still false and no live lease), sends outside of any DB transaction, then sets
``sent_to_telegram`` in a short follow-up transaction. Redelivered jobs see the
flag or the lease and never send twice.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Dict, Optional, Protocol, Union

from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from database import async_session_maker
from models.generation_request import GenerationRequest
from models.user import User
from services.errors import DeliveryPermanentError, DeliveryTransientError, RenderingError
from services.generation_types import DOCUMENT_URL_TYPES, IMAGE_TYPES
from services.job_queue import schedule_delivery_retry
from services.rendering import extract_content

logger = logging.getLogger(__name__)

FALLBACK_MAX_CHARS = 3000
FALLBACK_CUT_CHARS = 2900
FALLBACK_NOTICE = "\n\n…\nThe full text is too long for a chat message. Open the app to read it in full."

TYPE_TITLES = {
    "worksheet": "Worksheet",
    "quiz": "Quiz",
    "vocabulary": "Vocabulary",
    "lesson_plan": "Lesson plan",
    "feedback": "Feedback",
    "content_adaptation": "Adapted content",
    "message": "Message",
    "image_generation": "Image",
    "photosession": "Photosession",
    "presentation": "Presentation",
    "transcription": "Transcription",
    "text_generation": "Text",
}

ALREADY_SENT = "already_sent"
NOT_COMPLETED = "not_completed"
NOT_FOUND = "not_found"
SKIPPED = "skipped"
SENT = "sent"
DEFERRED = "deferred"

MAX_DELIVERY_DEFERRALS = 5


class DeliveryChannel(Protocol):
    async def send_photo(self, chat_id: str, url: str, caption: Optional[str] = None) -> None: ...

    async def send_document(
        self, chat_id: str, document: Union[bytes, str], filename: str, caption: Optional[str] = None
    ) -> None: ...

    async def send_message(self, chat_id: str, text: str) -> None: ...


class Renderer(Protocol):
    async def render_to_document(self, payload: Any) -> bytes: ...


@dataclass
class DeliveryResult:
    outcome: str
    note: Optional[str] = None

    @property
    def delivered(self) -> bool:
        return self.outcome in (ALREADY_SENT, SKIPPED, SENT)


def shape_fallback_text(text: str) -> str:
    """Cut long texts so they fit a single chat message."""
    value = (text or "").strip() or "Your generation is ready. Open the app to see the result."
    if len(value) > FALLBACK_MAX_CHARS:
        return value[:FALLBACK_CUT_CHARS] + FALLBACK_NOTICE
    return value


def _first_url(result: Dict[str, Any], keys) -> Optional[str]:
    for key in keys:
        value = result.get(key)
        if isinstance(value, list) and value:
            value = value[0]
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


class DeliveryDispatcher:
    def __init__(
        self,
        channel: DeliveryChannel,
        renderer: Renderer,
        *,
        session_maker: Optional[async_sessionmaker] = None,
        lease_seconds: int = 120,
    ) -> None:
        self.channel = channel
        self.renderer = renderer
        self.session_maker = session_maker or async_session_maker
        self.lease_seconds = max(int(lease_seconds), 1)

    async def deliver(self, request_id: str) -> DeliveryResult:
        """Send a completed generation to its owner's chat at most once."""
        async with self.session_maker() as db:
            row = (
                await db.execute(
                    select(GenerationRequest, User)
                    .join(User, User.id == GenerationRequest.user_id)
                    .where(GenerationRequest.id == request_id)
                )
            ).first()
            if row is None:
                logger.warning("Delivery skipped, generation %s not found", request_id)
                return DeliveryResult(NOT_FOUND)
            request, user = row
            if request.sent_to_telegram:
                return DeliveryResult(ALREADY_SENT)
            if request.status != "completed":
                return DeliveryResult(NOT_COMPLETED)

            generation_type = request.generation_type
            result = request.result if isinstance(request.result, dict) else {"content": request.result}
            chat_id = user.chat_address

            if not chat_id:
                note = "skipped: no chat channel"
                await self._mark_sent(db, request_id, note, claimed=False)
                return DeliveryResult(SKIPPED, note)

            if not await self._claim(db, request_id):
                raise DeliveryTransientError(f"Delivery of {request_id} is already in progress")

        try:
            note = await self._dispatch(chat_id, generation_type, result)
        except DeliveryPermanentError as exc:
            logger.warning("Delivery of %s refused permanently: %s", request_id, exc.message)
            note = f"undeliverable: {exc.message}"
            async with self.session_maker() as db:
                await self._mark_sent(db, request_id, note, claimed=True)
            return DeliveryResult(SKIPPED, note)
        except Exception:
            async with self.session_maker() as db:
                await self._release(db, request_id)
            raise

        async with self.session_maker() as db:
            await self._mark_sent(db, request_id, note, claimed=True)
        logger.info("Generation %s delivered to chat %s (%s)", request_id, chat_id, note)
        return DeliveryResult(SENT, note)

    async def _claim(self, db: AsyncSession, request_id: str) -> bool:
        now = datetime.now(timezone.utc)
        outcome = await db.execute(
            update(GenerationRequest)
            .where(
                GenerationRequest.id == request_id,
                GenerationRequest.sent_to_telegram.is_(False),
                or_(
                    GenerationRequest.delivery_claimed_until.is_(None),
                    GenerationRequest.delivery_claimed_until < now,
                ),
            )
            .values(delivery_claimed_until=now + timedelta(seconds=self.lease_seconds))
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return outcome.rowcount == 1

    async def _release(self, db: AsyncSession, request_id: str) -> None:
        await db.execute(
            update(GenerationRequest)
            .where(GenerationRequest.id == request_id, GenerationRequest.sent_to_telegram.is_(False))
            .values(delivery_claimed_until=None)
            .execution_options(synchronize_session=False)
        )
        await db.commit()

    async def _mark_sent(self, db: AsyncSession, request_id: str, note: str, *, claimed: bool) -> None:
        query = update(GenerationRequest).where(
            GenerationRequest.id == request_id,
            GenerationRequest.sent_to_telegram.is_(False),
        )
        if not claimed:
            query = query.where(GenerationRequest.delivery_claimed_until.is_(None))
        await db.execute(
            query.values(
                sent_to_telegram=True,
                telegram_sent_at=datetime.now(timezone.utc),
                delivery_claimed_until=None,
                delivery_note=note[:255],
            ).execution_options(synchronize_session=False)
        )
        await db.commit()

    async def _dispatch(self, chat_id: str, generation_type: str, result: Dict[str, Any]) -> str:
        title = TYPE_TITLES.get(generation_type, "Result")

        if generation_type in IMAGE_TYPES:
            url = _first_url(result, ("imageUrl", "imageUrls", "url", "photoUrl"))
            if url:
                try:
                    await self.channel.send_photo(chat_id, url, caption=f"{title} is ready")
                    return "photo"
                except DeliveryPermanentError as exc:
                    logger.warning("Photo send rejected, sending text notice: %s", exc.message)
                    await self.channel.send_message(chat_id, f"{title} is ready but could not be attached. Open the app to view it.")
                    return "photo_fallback_text"
            await self.channel.send_message(chat_id, shape_fallback_text(extract_content(result)))
            return "text"

        if generation_type in DOCUMENT_URL_TYPES:
            url = _first_url(result, ("pdfUrl", "exportUrl", "pptxUrl"))
            if url:
                try:
                    await self.channel.send_document(chat_id, url, f"{generation_type}.pdf", caption=f"{title} is ready")
                    return "document_url"
                except DeliveryPermanentError as exc:
                    logger.warning("Document send rejected, sending link: %s", exc.message)
                    await self.channel.send_message(chat_id, f"{title} is ready: {url}")
                    return "document_link"
            link = _first_url(result, ("gammaUrl", "url"))
            await self.channel.send_message(
                chat_id, f"{title} is ready: {link}" if link else shape_fallback_text(extract_content(result))
            )
            return "text"

        content = extract_content(result)
        try:
            document = await self.renderer.render_to_document(result)
        except RenderingError as exc:
            logger.warning("Rendering %s failed, falling back to text: %s", generation_type, exc.message)
            await self.channel.send_message(chat_id, shape_fallback_text(content))
            return "text_fallback"

        try:
            await self.channel.send_document(chat_id, document, f"{generation_type}.pdf", caption=title)
            return "pdf"
        except DeliveryPermanentError as exc:
            logger.warning("PDF send rejected, falling back to text: %s", exc.message)
            await self.channel.send_message(chat_id, shape_fallback_text(content))
            return "text_fallback"


async def record_delivery_failure(request_id: str, message: str) -> None:
    """Release the claim of a delivery that exhausted its retries and keep the reason."""
    async with async_session_maker() as db:
        await db.execute(
            update(GenerationRequest)
            .where(GenerationRequest.id == request_id, GenerationRequest.sent_to_telegram.is_(False))
            .values(delivery_claimed_until=None, delivery_note=f"failed: {message}"[:255])
            .execution_options(synchronize_session=False)
        )
        await db.commit()


def deliver_generation_job(request_id: str, deferrals: int = 0) -> Dict[str, Any]:
    """RQ worker entrypoint for Telegram delivery jobs.

    A send throttled with an explicit wait (``retry_after``) is rescheduled after
    that wait instead of spending the job's short backoff retries, at most
    ``MAX_DELIVERY_DEFERRALS`` times.
    """
    from services.runtime import get_runtime

    runtime = get_runtime()
    try:
        outcome = runtime.run(runtime.dispatcher.deliver(request_id))
    except DeliveryTransientError as exc:
        if not exc.retry_after or deferrals >= MAX_DELIVERY_DEFERRALS:
            raise
        schedule_delivery_retry(request_id, exc.retry_after, deferrals=deferrals + 1)
        logger.warning("Delivery of %s throttled, retrying in %ss", request_id, exc.retry_after)
        return {"request_id": request_id, "outcome": DEFERRED, "note": f"retry_after={exc.retry_after}"}
    return {"request_id": request_id, "outcome": outcome.outcome, "note": outcome.note}
