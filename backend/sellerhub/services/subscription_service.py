"""Subscription service - current plan binding, activation, renewal and cancellation"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import redis
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from sellerhub.core.config import settings
from sellerhub.core.errors import SubscriptionNotFound
from sellerhub.db.redis import get_cached_subscription, invalidate_subscription_cache, set_cached_subscription
from sellerhub.models.credit_transaction import CreditTransaction
from sellerhub.models.subscription import Subscription
from sellerhub.services import ledger_service
from sellerhub.services.ledger_service import TransactionType, seller_lock
from sellerhub.services.plan_catalog import PlanSpec, build_plan, get_plan, get_plans
from sellerhub.utils.dates import ensure_utc, utcnow

logger = logging.getLogger(__name__)


def list_available_plans(db: Session) -> Dict[str, List[Dict[str, Any]]]:
    """List active catalog plans"""
    return {"plans": [plan.to_dict() for plan in get_plans(db)]}


def serialize_subscription(subscription: Subscription, plan: Optional[PlanSpec] = None) -> Dict[str, Any]:
    """Subscription view returned by the API and stored in the cache"""
    plan = plan or build_plan(subscription.plan)
    renewal_date = ensure_utc(subscription.renewal_date)
    return {
        "subscription": {
            "id": subscription.id,
            "seller_id": subscription.seller_id,
            "plan_id": subscription.plan_id,
            "plan_name": plan.name,
            "plan_type": plan.plan_type,
            "status": subscription.status,
            "start_date": ensure_utc(subscription.start_date).isoformat(),
            "end_date": ensure_utc(subscription.end_date).isoformat(),
            "renewal_date": renewal_date.isoformat() if renewal_date else None,
            "credits_allocated": subscription.credits_allocated,
            "credits_used": subscription.credits_used,
            "bonus_credits": subscription.bonus_credits,
            "credits_remaining": subscription.credits_remaining,
            "total_credits_remaining": subscription.total_credits_remaining,
            "is_auto_assigned": subscription.is_auto_assigned,
        },
        "plan": plan.to_dict(),
    }


def find_current(seller_id: str, db: Session, for_update: bool = False) -> Optional[Subscription]:
    query = db.query(Subscription).filter(
        Subscription.seller_id == seller_id,
        Subscription.is_current.is_(True)
    )
    if for_update:
        query = query.with_for_update().execution_options(populate_existing=True)
    return query.first()


def get_current_subscription(seller_id: str, db: Session) -> Subscription:
    """Get the seller's current subscription.

    Sellers without one get the default free plan when AUTO_ASSIGN_FREE_PLAN
    is on.

    Raises:
        SubscriptionNotFound: if there is no current subscription and none was assigned
    """
    subscription = find_current(seller_id, db)
    if subscription:
        return subscription

    if settings.AUTO_ASSIGN_FREE_PLAN and settings.DEFAULT_FREE_PLAN_ID:
        logger.info(f"Seller {seller_id} has no subscription, assigning free plan {settings.DEFAULT_FREE_PLAN_ID}")
        return assign_default_free_plan(seller_id, db)

    raise SubscriptionNotFound("No subscription found", details={"seller_id": seller_id})


def get_current_subscription_view(seller_id: str, db: Session) -> Dict[str, Any]:
    """Serialized current subscription, served from Redis when cached"""
    try:
        cached = get_cached_subscription(seller_id)
        if cached:
            return cached
    except redis.RedisError as e:
        logger.warning(f"Subscription cache read failed for seller {seller_id}: {e}")

    view = serialize_subscription(get_current_subscription(seller_id, db))

    try:
        set_cached_subscription(seller_id, view)
    except redis.RedisError as e:
        logger.warning(f"Subscription cache write failed for seller {seller_id}: {e}")
    return view


def activate_subscription(
    seller_id: str,
    plan: PlanSpec,
    db: Session,
    reference_id: Optional[str] = None,
    reference_type: Optional[str] = None,
    is_auto_assigned: bool = False,
    now: Optional[datetime] = None,
) -> Tuple[Subscription, Optional[CreditTransaction]]:
    """Create, renew or replace the seller's subscription for ``plan`` without committing.

    Callers hold ``seller_lock(seller_id)`` and commit. Renewing the active
    plan extends the window from ``max(now, end_date)``; any other case
    supersedes the current row. Returns the subscription and the credit
    entry for ``credits_granted`` (None for plans that grant no credits).
    Free plans only top the balance up to ``credits_granted``.
    """
    now = now or utcnow()
    duration = timedelta(days=plan.duration_days)
    current = find_current(seller_id, db, for_update=True)

    if current and current.plan_id == plan.id and current.status == "active":
        current.end_date = max(now, ensure_utc(current.end_date)) + duration
        current.renewal_date = current.end_date
        subscription = current
        description = f"Renewed {plan.name}"
        logger.info(f"Renewing subscription {current.id} for seller {seller_id} until {current.end_date}")
    else:
        subscription = Subscription(
            seller_id=seller_id,
            plan_id=plan.id,
            status="active",
            start_date=now,
            end_date=now + duration,
            renewal_date=now + duration,
            credits_allocated=0,
            credits_used=0,
            bonus_credits=0,
            is_auto_assigned=is_auto_assigned,
            is_current=True,
        )
        carry_over = 0
        if current:
            carry_over = current.total_credits_remaining if settings.CARRY_OVER_CREDITS else 0
            current.is_current = False
            if current.status == "active":
                current.status = "cancelled"
            # The partial unique index needs the old row out of the way first
            db.flush()
            logger.info(
                f"Superseding subscription {current.id} ({current.plan_id}) with plan {plan.id} "
                f"for seller {seller_id}, carry-over={carry_over}"
            )

        db.add(subscription)
        db.flush()

        if carry_over > 0:
            ledger_service.apply_debit(
                current, carry_over, f"Balance carried over to {plan.name}", db,
                reference_id=str(subscription.id), reference_type="subscription",
            )
            ledger_service.apply_credit(
                subscription, carry_over, f"Balance carried over from {current.plan_id}", db,
                reference_id=str(current.id), reference_type="subscription",
            )
        description = f"Activated {plan.name}"

    grant = plan.credits_granted
    transaction_type = TransactionType.CREDIT
    if plan.is_free:
        # Free allowances top up to credits_granted instead of stacking
        grant = plan.credits_granted - subscription.total_credits_remaining
        if subscription is current:
            transaction_type = TransactionType.RESET

    transaction = None
    if grant > 0:
        transaction = ledger_service.apply_credit(
            subscription, grant, description, db,
            transaction_type=transaction_type,
            reference_id=reference_id, reference_type=reference_type,
        )
    return subscription, transaction


def assign_default_free_plan(seller_id: str, db: Session) -> Subscription:
    """Auto-assign the configured free plan to a seller with no subscription"""
    plan = get_plan(settings.DEFAULT_FREE_PLAN_ID, db)

    with seller_lock(seller_id):
        existing = find_current(seller_id, db)
        if existing:
            return existing
        try:
            subscription, _ = activate_subscription(
                seller_id, plan, db, reference_type="auto_assignment", is_auto_assigned=True
            )
            db.commit()
        except IntegrityError:
            # Another worker assigned first
            db.rollback()
            logger.info(f"Free plan already assigned to seller {seller_id} by another worker")
            existing = find_current(seller_id, db)
            if existing is None:
                raise
            return existing

    invalidate_subscription_cache(seller_id, "auto_assigned")
    logger.info(f"Auto-assigned free plan {plan.id} to seller {seller_id} (subscription {subscription.id})")
    return subscription


def cancel_subscription(seller_id: str, db: Session) -> Dict[str, Any]:
    """Cancel the seller's current subscription; the ledger is left untouched

    Raises:
        SubscriptionNotFound: if the seller has no current subscription
    """
    current = find_current(seller_id, db)
    if current is None:
        raise SubscriptionNotFound("No subscription found", details={"seller_id": seller_id})

    def _cancel(subscription: Subscription) -> Subscription:
        if subscription.status == "active":
            subscription.status = "cancelled"
            subscription.renewal_date = None
        return subscription

    subscription = ledger_service.mutate_subscription(current.id, db, _cancel, reason="cancelled")
    logger.info(f"Cancelled subscription {subscription.id} for seller {seller_id}")
    return serialize_subscription(subscription)


def renew_or_expire(subscription_id: int, db: Session, now: Optional[datetime] = None) -> Optional[str]:
    """Settle one lapsed subscription.

    Free plans roll forward (when AUTO_RENEW_FREE_PLAN is on) and get a
    ``reset`` entry topping the balance back up to ``credits_granted``.
    Everything else expires. Returns 'renewed', 'expired', or None if the
    subscription no longer needs settling.
    """
    now = now or utcnow()

    def _settle(subscription: Subscription) -> Optional[str]:
        if (
            subscription is None
            or not subscription.is_current
            or subscription.status != "active"
            or ensure_utc(subscription.end_date) > now
        ):
            return None

        plan = build_plan(subscription.plan)
        if plan.is_free and settings.AUTO_RENEW_FREE_PLAN:
            duration = timedelta(days=plan.duration_days)
            end_date = ensure_utc(subscription.end_date)
            while end_date <= now:
                end_date += duration
            subscription.start_date = end_date - duration
            subscription.end_date = end_date
            subscription.renewal_date = end_date

            shortfall = plan.credits_granted - subscription.total_credits_remaining
            if shortfall > 0:
                ledger_service.apply_credit(
                    subscription, shortfall, f"Monthly reset for {plan.name}", db,
                    transaction_type=TransactionType.RESET, reference_type="renewal",
                )
            return "renewed"

        subscription.status = "expired"
        return "expired"

    return ledger_service.mutate_subscription(subscription_id, db, _settle, reason="sweep")
