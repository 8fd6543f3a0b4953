"""Generation request store: lifecycle record and guarded status transitions.

Status moves only from ``pending`` to ``completed`` or ``failed``. Both
transitions are conditional UPDATEs on ``status = 'pending'`` so two writers
racing on the same request cannot both win. Failing a request refunds its
credits in the same transaction.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
import uuid

from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.generation_request import GenerationRequest
from services.credits import refund_credits
from services.errors import InvalidTransition, NotFound, ValidationError
from services.generation_types import resolve_generation_type, validate_params

logger = logging.getLogger(__name__)

PENDING = "pending"
COMPLETED = "completed"
FAILED = "failed"
TERMINAL_STATUSES = (COMPLETED, FAILED)
MAX_ERROR_LENGTH = 1000


async def create_request(
    user_id: str,
    generation_type: str,
    input_params: Optional[Dict[str, Any]],
    credit_cost: int,
    db: AsyncSession,
    *,
    request_id: Optional[str] = None,
) -> GenerationRequest:
    """Validate and add a pending request to the session. The caller commits."""
    canonical_type = resolve_generation_type(generation_type)
    params = validate_params(canonical_type, input_params)
    if int(credit_cost) < 0:
        raise ValidationError("credit_cost must not be negative")

    request = GenerationRequest(
        id=request_id or str(uuid.uuid4()),
        user_id=user_id,
        generation_type=canonical_type,
        input_params=params,
        status=PENDING,
        credit_cost=int(credit_cost),
        attempts=0,
        sent_to_telegram=False,
    )
    db.add(request)
    await db.flush()
    return request


async def get_request(request_id: str, db: AsyncSession, *, user_id: Optional[str] = None) -> GenerationRequest:
    query = select(GenerationRequest).where(GenerationRequest.id == request_id)
    if user_id is not None:
        query = query.where(GenerationRequest.user_id == user_id)
    result = await db.execute(query.execution_options(populate_existing=True))
    request = result.scalar_one_or_none()
    if not request:
        raise NotFound("Generation request not found")
    return request


async def _guard_transition(request_id: str, target: str, db: AsyncSession) -> None:
    result = await db.execute(select(GenerationRequest.status).where(GenerationRequest.id == request_id))
    current = result.scalar_one_or_none()
    if current is None:
        raise NotFound("Generation request not found")
    raise InvalidTransition(request_id, current, target)


async def mark_completed(request_id: str, result: Any, db: AsyncSession) -> GenerationRequest:
    """Move a pending request to ``completed`` with its result."""
    if result is None:
        raise ValidationError("A completed generation must carry a result")

    now = datetime.now(timezone.utc)
    outcome = await db.execute(
        update(GenerationRequest)
        .where(GenerationRequest.id == request_id, GenerationRequest.status == PENDING)
        .values(status=COMPLETED, result=result, error=None, completed_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if outcome.rowcount != 1:
        await db.rollback()
        await _guard_transition(request_id, COMPLETED, db)
    await db.commit()
    logger.info("Generation %s completed", request_id)
    return await get_request(request_id, db)


async def mark_failed(request_id: str, error: str, db: AsyncSession) -> GenerationRequest:
    """Move a pending request to ``failed`` and refund its charge atomically."""
    message = (str(error or "").strip() or "Generation failed")[:MAX_ERROR_LENGTH]
    now = datetime.now(timezone.utc)
    outcome = await db.execute(
        update(GenerationRequest)
        .where(GenerationRequest.id == request_id, GenerationRequest.status == PENDING)
        .values(status=FAILED, result=None, error=message, completed_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if outcome.rowcount != 1:
        await db.rollback()
        await _guard_transition(request_id, FAILED, db)

    try:
        await refund_credits(request_id, db, reason="Refund for failed generation", commit=False)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    logger.info("Generation %s failed: %s", request_id, message)
    return await get_request(request_id, db)


async def record_attempt(request_id: str, db: AsyncSession, *, queue_job_id: Optional[str] = None) -> None:
    values: Dict[str, Any] = {
        "attempts": GenerationRequest.attempts + 1,
        "updated_at": datetime.now(timezone.utc),
    }
    if queue_job_id:
        values["queue_job_id"] = queue_job_id
    await db.execute(
        update(GenerationRequest)
        .where(GenerationRequest.id == request_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def list_requests(
    user_id: str,
    db: AsyncSession,
    *,
    limit: int = 20,
    offset: int = 0,
) -> Tuple[List[GenerationRequest], int]:
    limit = max(min(int(limit), 100), 1)
    offset = max(int(offset), 0)
    total = await db.scalar(
        select(func.count()).select_from(GenerationRequest).where(GenerationRequest.user_id == user_id)
    )
    result = await db.execute(
        select(GenerationRequest)
        .where(GenerationRequest.user_id == user_id)
        .order_by(GenerationRequest.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all()), int(total or 0)


async def list_stale_pending(cutoff: datetime, db: AsyncSession) -> List[str]:
    result = await db.execute(
        select(GenerationRequest.id).where(
            GenerationRequest.status == PENDING,
            GenerationRequest.created_at < cutoff,
        )
    )
    return list(result.scalars().all())


def serialize_status(request: GenerationRequest) -> Dict[str, Any]:
    """Client-facing status view: result only when completed, error only when failed."""
    payload: Dict[str, Any] = {"status": request.status}
    if request.status == COMPLETED:
        payload["result"] = request.result
    elif request.status == FAILED:
        payload["error"] = request.error
    return payload


def serialize_request(request: GenerationRequest) -> Dict[str, Any]:
    payload = {
        "id": request.id,
        "generation_type": request.generation_type,
        "credit_cost": request.credit_cost,
        "sent_to_telegram": bool(request.sent_to_telegram),
        "created_at": request.created_at.isoformat() if request.created_at else None,
        "completed_at": request.completed_at.isoformat() if request.completed_at else None,
    }
    payload.update(serialize_status(request))
    return payload
