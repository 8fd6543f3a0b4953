"""Credit ledger: subscriptions, operation costs and balance mutations.

Every balance change on a subscription is written together with exactly one
CreditTransaction row in the same flush. Writers lock the subscription row
(``FOR UPDATE`` where the backend supports it) and the mapper's version
column rejects any write based on a stale read.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
import uuid

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_transaction import CHARGE_TYPES, CreditCost, CreditTransaction
from models.subscription import Subscription, SubscriptionPlan
from services.errors import InsufficientCredits, NotFound, SubscriptionInactive, ValidationError

logger = logging.getLogger(__name__)


PLAN_CATALOG: List[Dict[str, Any]] = [
    {
        "plan_key": "starter",
        "plan_name": "Starter",
        "monthly_credits": 100,
        "price": Decimal("0"),
        "allow_overage": False,
        "overage_cost_per_credit": None,
        "features": ["Basic text generation", "Limited images", "Generation history"],
    },
    {
        "plan_key": "pro",
        "plan_name": "Pro",
        "monthly_credits": 500,
        "price": Decimal("990"),
        "allow_overage": True,
        "overage_cost_per_credit": Decimal("2"),
        "features": ["Unlimited text generation", "Priority processing", "More images", "Photosessions", "Presentations"],
    },
    {
        "plan_key": "business",
        "plan_name": "Business",
        "monthly_credits": 2000,
        "price": Decimal("2990"),
        "allow_overage": True,
        "overage_cost_per_credit": Decimal("1.5"),
        "features": ["Unlimited generation", "Highest priority", "All features", "Video transcription", "24/7 support"],
    },
]

CREDIT_COST_CATALOG: List[Dict[str, Any]] = [
    {"operation_type": "text_generation", "operation_name": "Short text generation", "credit_cost": 1},
    {"operation_type": "worksheet", "operation_name": "Worksheet", "credit_cost": 2},
    {"operation_type": "quiz", "operation_name": "Quiz", "credit_cost": 2},
    {"operation_type": "vocabulary", "operation_name": "Vocabulary list", "credit_cost": 2},
    {"operation_type": "lesson_plan", "operation_name": "Lesson plan", "credit_cost": 3},
    {"operation_type": "feedback", "operation_name": "Student feedback", "credit_cost": 2},
    {"operation_type": "content_adaptation", "operation_name": "Content adaptation", "credit_cost": 3},
    {"operation_type": "message", "operation_name": "Message to parents", "credit_cost": 1},
    {"operation_type": "image_generation", "operation_name": "Image generation", "credit_cost": 5},
    {"operation_type": "photosession", "operation_name": "AI photosession", "credit_cost": 10},
    {"operation_type": "presentation", "operation_name": "Presentation", "credit_cost": 8},
    {"operation_type": "transcription", "operation_name": "Video transcription", "credit_cost": 15},
]


async def seed_billing_catalog(db: AsyncSession) -> Dict[str, int]:
    """Insert missing plans and operation costs. Existing rows are left untouched."""
    plans_created = 0
    costs_created = 0

    existing_plans = set((await db.execute(select(SubscriptionPlan.plan_key))).scalars().all())
    for plan in PLAN_CATALOG:
        if plan["plan_key"] in existing_plans:
            continue
        db.add(SubscriptionPlan(id=str(uuid.uuid4()), currency="RUB", is_active=True, **plan))
        plans_created += 1

    existing_costs = set((await db.execute(select(CreditCost.operation_type))).scalars().all())
    for cost in CREDIT_COST_CATALOG:
        if cost["operation_type"] in existing_costs:
            continue
        db.add(CreditCost(id=str(uuid.uuid4()), is_active=True, **cost))
        costs_created += 1

    if plans_created or costs_created:
        await db.commit()
        logger.info("Seeded billing catalog: plans=%s costs=%s", plans_created, costs_created)
    return {"plans_created": plans_created, "costs_created": costs_created}


async def get_operation_cost(operation_type: str, db: AsyncSession) -> CreditCost:
    result = await db.execute(select(CreditCost).where(CreditCost.operation_type == operation_type))
    cost = result.scalar_one_or_none()
    if not cost or not cost.is_active:
        raise ValidationError(f"Operation {operation_type} is not available")
    return cost


async def _get_default_plan(db: AsyncSession) -> SubscriptionPlan:
    plan_key = settings.DEFAULT_PLAN_KEY
    result = await db.execute(select(SubscriptionPlan).where(SubscriptionPlan.plan_key == plan_key))
    plan = result.scalar_one_or_none()
    if plan:
        return plan

    await seed_billing_catalog(db)
    result = await db.execute(select(SubscriptionPlan).where(SubscriptionPlan.plan_key == plan_key))
    plan = result.scalar_one_or_none()
    if not plan:
        raise NotFound(f"Subscription plan {plan_key} not found")
    return plan


async def get_or_create_subscription(user_id: str, db: AsyncSession) -> Subscription:
    """Return the user's subscription, enrolling them on the default plan if needed."""
    result = await db.execute(select(Subscription).where(Subscription.user_id == user_id))
    subscription = result.scalar_one_or_none()
    if subscription:
        return subscription

    plan = await _get_default_plan(db)
    now = datetime.now(timezone.utc)
    subscription = Subscription(
        id=str(uuid.uuid4()),
        user_id=user_id,
        plan_id=plan.id,
        status="active",
        credits_balance=int(plan.monthly_credits or 0),
        extra_credits=0,
        credits_used=0,
        overage_credits_used=0,
        allow_overage=bool(plan.allow_overage),
        overage_cost_per_credit=plan.overage_cost_per_credit,
        start_date=now,
        end_date=now + timedelta(days=30),
        auto_renew=True,
    )
    db.add(subscription)
    try:
        await db.commit()
    except IntegrityError:
        # Another request enrolled the same user first.
        await db.rollback()
        result = await db.execute(select(Subscription).where(Subscription.user_id == user_id))
        return result.scalar_one()

    logger.info("Subscription created: user=%s plan=%s", user_id, plan.plan_key)
    result = await db.execute(select(Subscription).where(Subscription.id == subscription.id))
    return result.scalar_one()


async def _lock_subscription(db: AsyncSession, *, user_id: Optional[str] = None, subscription_id: Optional[str] = None) -> Subscription:
    query = select(Subscription)
    if subscription_id:
        query = query.where(Subscription.id == subscription_id)
    else:
        query = query.where(Subscription.user_id == user_id)
    query = query.with_for_update(of=Subscription).execution_options(populate_existing=True)
    result = await db.execute(query)
    subscription = result.scalar_one_or_none()
    if not subscription:
        raise NotFound("Subscription not found")
    return subscription


async def reserve_credits(
    user_id: str,
    operation_type: str,
    db: AsyncSession,
    *,
    generation_request_id: Optional[str] = None,
    description: Optional[str] = None,
    commit: bool = True,
) -> Dict[str, Any]:
    """Charge the cost of ``operation_type`` to the user's subscription.

    Extra credits are consumed first, then the main balance, then overage
    (main balance goes negative) when the subscription allows it. Raises
    InsufficientCredits without mutating anything when the charge cannot be
    covered.
    """
    cost_record = await get_operation_cost(operation_type, db)
    cost = max(int(cost_record.credit_cost), 0)
    await get_or_create_subscription(user_id, db)
    subscription = await _lock_subscription(db, user_id=user_id)

    if subscription.status != "active":
        raise SubscriptionInactive("Subscription is not active")

    balance = int(subscription.credits_balance or 0)
    extra = int(subscription.extra_credits or 0)
    total_before = balance + extra
    if not subscription.allow_overage and total_before < cost:
        raise InsufficientCredits(required=cost, available=total_before)

    from_extra = min(max(extra, 0), cost)
    remaining = cost - from_extra
    from_balance = min(max(balance, 0), remaining)
    overage = remaining - from_balance

    subscription.extra_credits = extra - from_extra
    subscription.credits_balance = balance - from_balance - overage
    subscription.credits_used = int(subscription.credits_used or 0) + cost
    subscription.overage_credits_used = int(subscription.overage_credits_used or 0) + overage
    total_after = subscription.total_available

    metadata: Dict[str, Any] = {
        "plan": subscription.plan.plan_key if subscription.plan else None,
        "from_extra": from_extra,
        "from_balance": from_balance,
        "overage": overage,
    }
    if overage and subscription.overage_cost_per_credit is not None:
        metadata["overage_charge"] = str(Decimal(overage) * Decimal(subscription.overage_cost_per_credit))

    transaction = CreditTransaction(
        id=str(uuid.uuid4()),
        user_id=user_id,
        subscription_id=subscription.id,
        type="overage" if overage else "debit",
        amount=cost,
        balance_before=total_before,
        balance_after=total_after,
        operation_type=operation_type,
        generation_request_id=generation_request_id,
        description=description or f"Charge for {operation_type}",
        metadata_json=metadata,
    )
    db.add(transaction)
    await db.flush()
    if commit:
        await db.commit()

    logger.info(
        "Credits reserved: user=%s operation=%s cost=%s balance_after=%s request=%s",
        user_id,
        operation_type,
        cost,
        total_after,
        generation_request_id,
    )
    return {
        "ok": True,
        "charged": cost,
        "overage": overage,
        "new_balance": total_after,
        "transaction_id": transaction.id,
    }


async def refund_credits(
    generation_request_id: str,
    db: AsyncSession,
    *,
    reason: Optional[str] = None,
    commit: bool = True,
) -> Optional[int]:
    """Reverse the charge for a generation request, at most once.

    Returns the total balance after the refund, the unchanged balance when the
    refund was already applied, or None when the request was never charged.
    """
    charge_result = await db.execute(
        select(CreditTransaction).where(
            CreditTransaction.generation_request_id == generation_request_id,
            CreditTransaction.type.in_(CHARGE_TYPES),
        )
    )
    charge = charge_result.scalar_one_or_none()
    if not charge:
        return None

    subscription = await _lock_subscription(db, subscription_id=charge.subscription_id)

    existing = await db.execute(
        select(CreditTransaction.id).where(
            CreditTransaction.generation_request_id == generation_request_id,
            CreditTransaction.type == "refund",
        )
    )
    if existing.scalar_one_or_none():
        logger.info("Refund already applied for request %s", generation_request_id)
        return subscription.total_available

    meta = charge.metadata_json or {}
    amount = int(charge.amount)
    from_extra = int(meta.get("from_extra", 0))
    overage = int(meta.get("overage", 0))
    from_balance = amount - from_extra

    total_before = subscription.total_available
    subscription.extra_credits = int(subscription.extra_credits or 0) + from_extra
    subscription.credits_balance = int(subscription.credits_balance or 0) + from_balance
    subscription.credits_used = max(int(subscription.credits_used or 0) - amount, 0)
    subscription.overage_credits_used = max(int(subscription.overage_credits_used or 0) - overage, 0)
    total_after = subscription.total_available

    db.add(
        CreditTransaction(
            id=str(uuid.uuid4()),
            user_id=charge.user_id,
            subscription_id=subscription.id,
            type="refund",
            amount=amount,
            balance_before=total_before,
            balance_after=total_after,
            operation_type=charge.operation_type,
            generation_request_id=generation_request_id,
            description=reason or f"Refund for {charge.operation_type}",
            metadata_json={"from_extra": from_extra, "from_balance": from_balance - overage, "overage": overage},
        )
    )
    await db.flush()
    if commit:
        await db.commit()

    logger.info("Credits refunded: request=%s amount=%s balance_after=%s", generation_request_id, amount, total_after)
    return total_after


async def grant_credits(
    user_id: str,
    amount: int,
    db: AsyncSession,
    *,
    description: Optional[str] = None,
    bonus: bool = False,
) -> int:
    """Add credits to a subscription. Bonus grants go to the extra-credits pool."""
    grant = int(amount)
    if grant <= 0:
        raise ValidationError("amount must be greater than 0")

    await get_or_create_subscription(user_id, db)
    subscription = await _lock_subscription(db, user_id=user_id)
    total_before = subscription.total_available
    if bonus:
        subscription.extra_credits = int(subscription.extra_credits or 0) + grant
    else:
        subscription.credits_balance = int(subscription.credits_balance or 0) + grant
    total_after = subscription.total_available

    db.add(
        CreditTransaction(
            id=str(uuid.uuid4()),
            user_id=user_id,
            subscription_id=subscription.id,
            type="grant",
            amount=grant,
            balance_before=total_before,
            balance_after=total_after,
            description=description or f"Granted {grant} credits",
            metadata_json={"pool": "extra" if bonus else "balance"},
        )
    )
    await db.commit()
    logger.info("Credits granted: user=%s amount=%s balance_after=%s", user_id, grant, total_after)
    return total_after


def serialize_transaction(entry: CreditTransaction) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "type": entry.type,
        "amount": entry.amount,
        "balance_before": entry.balance_before,
        "balance_after": entry.balance_after,
        "operation_type": entry.operation_type,
        "generation_request_id": entry.generation_request_id,
        "description": entry.description,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


async def list_transactions(user_id: str, db: AsyncSession, *, limit: int = 30) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.user_id == user_id)
        .order_by(CreditTransaction.created_at.desc())
        .limit(max(min(int(limit), 200), 1))
    )
    return [serialize_transaction(entry) for entry in result.scalars().all()]


async def get_credit_summary(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    subscription = await get_or_create_subscription(user_id, db)
    plan = subscription.plan
    return {
        "success": True,
        "subscription": {
            "id": subscription.id,
            "status": subscription.status,
            "credits_balance": subscription.credits_balance,
            "extra_credits": subscription.extra_credits,
            "credits_used": subscription.credits_used,
            "overage_credits_used": subscription.overage_credits_used,
            "total_available": subscription.total_available,
            "allow_overage": subscription.allow_overage,
            "start_date": subscription.start_date.isoformat() if subscription.start_date else None,
            "end_date": subscription.end_date.isoformat() if subscription.end_date else None,
        },
        "plan": {
            "plan_key": plan.plan_key,
            "plan_name": plan.plan_name,
            "monthly_credits": plan.monthly_credits,
            "allow_overage": plan.allow_overage,
            "features": plan.features or [],
        },
    }


async def list_plans(db: AsyncSession) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(SubscriptionPlan)
        .where(SubscriptionPlan.is_active.is_(True))
        .order_by(SubscriptionPlan.monthly_credits.asc())
    )
    return [
        {
            "plan_key": plan.plan_key,
            "plan_name": plan.plan_name,
            "monthly_credits": plan.monthly_credits,
            "price": str(plan.price),
            "currency": plan.currency,
            "allow_overage": plan.allow_overage,
            "overage_cost_per_credit": str(plan.overage_cost_per_credit) if plan.overage_cost_per_credit is not None else None,
            "features": plan.features or [],
        }
        for plan in result.scalars().all()
    ]


async def list_costs(db: AsyncSession) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(CreditCost).where(CreditCost.is_active.is_(True)).order_by(CreditCost.credit_cost.asc())
    )
    return [
        {
            "operation_type": cost.operation_type,
            "operation_name": cost.operation_name,
            "credit_cost": cost.credit_cost,
            "description": cost.description,
        }
        for cost in result.scalars().all()
    ]
