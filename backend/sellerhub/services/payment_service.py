"""Payment & purchase flow - plan purchases and idempotent payment verification.

A purchase intent moves through its statuses only by conditional UPDATEs
(compare-and-set on the current status), so a confirmation delivered twice,
or by the client and the webhook at the same time, credits exactly once.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from sellerhub.core.config import settings
from sellerhub.core.errors import (
    ConcurrentBalanceConflict, InvalidPaymentPayload, PaymentFailed, PaymentGatewayUnavailable,
    PaymentSignatureInvalid, PurchaseNotFound
)
from sellerhub.core.logging import payment_logger
from sellerhub.core.metrics import ledger_conflicts_counter, payment_verifications_counter, purchases_initiated_counter
from sellerhub.db.redis import invalidate_subscription_cache
from sellerhub.models.purchase_intent import PurchaseIntent
from sellerhub.models.subscription import Subscription
from sellerhub.services import stripe_service
from sellerhub.services.ledger_service import seller_lock
from sellerhub.services.plan_catalog import get_plan
from sellerhub.services.subscription_service import activate_subscription, find_current, serialize_subscription
from sellerhub.utils.dates import ensure_utc, utcnow

logger = logging.getLogger(__name__)

CREATED = "created"
AUTHORIZED = "authorized"
VERIFIED = "verified"
FAILED = "failed"
FREE_PLAN_ASSIGNED = "free_plan_assigned"


@dataclass(frozen=True)
class VerificationResult:
    purchase_id: int
    order_id: Optional[str]
    plan_id: str
    status: str
    subscription_id: Optional[int] = None
    already_verified: bool = False
    event_type: Optional[str] = None
    failure_reason: Optional[str] = None
    subscription: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Response body; identical for the first and any repeated confirmation"""
        return {
            "purchase_id": self.purchase_id,
            "order_id": self.order_id,
            "plan_id": self.plan_id,
            "status": self.status,
            "failure_reason": self.failure_reason,
            **(self.subscription or {"subscription": None, "plan": None}),
        }


def _result(
    intent: PurchaseIntent,
    db: Session,
    already_verified: bool = False,
    event_type: Optional[str] = None,
) -> VerificationResult:
    subscription = None
    if intent.subscription_id is not None:
        subscription = serialize_subscription(db.get(Subscription, intent.subscription_id, populate_existing=True))
    return VerificationResult(
        purchase_id=intent.id,
        order_id=intent.gateway_order_id,
        plan_id=intent.plan_id,
        status=intent.status,
        subscription_id=intent.subscription_id,
        already_verified=already_verified,
        event_type=event_type,
        failure_reason=intent.failure_reason,
        subscription=subscription,
    )


def _transition(intent_id: int, from_states: Iterable[str], to_state: str, db: Session, **values) -> bool:
    """Compare-and-set an intent's status; True only for the caller that won"""
    result = db.execute(
        update(PurchaseIntent)
        .where(PurchaseIntent.id == intent_id, PurchaseIntent.status.in_(list(from_states)))
        .values(status=to_state, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _reload(intent_id: int, db: Session) -> PurchaseIntent:
    return db.get(PurchaseIntent, intent_id, populate_existing=True)


# ============================================================================
# INITIATE
# ============================================================================

def initiate_purchase(seller_id: str, plan_id: str, db: Session) -> Dict[str, Any]:
    """Start a plan purchase.

    Free plans are activated immediately without a gateway call. Paid plans
    get a Stripe PaymentIntent whose client secret the frontend uses to
    collect payment.

    Raises:
        PlanNotFound: if the plan does not exist
        PaymentGatewayUnavailable: if the PaymentIntent cannot be created
    """
    plan = get_plan(plan_id, db)

    if plan.is_free:
        return _assign_free_plan(seller_id, plan, db)

    intent = PurchaseIntent(
        seller_id=seller_id,
        plan_id=plan.id,
        gateway="stripe",
        amount=stripe_service.to_minor_units(plan.price),
        currency=plan.currency.lower(),
        status=CREATED,
    )
    db.add(intent)
    db.commit()
    db.refresh(intent)

    try:
        order = stripe_service.create_gateway_order(intent.id, seller_id, plan, intent.amount)
    except PaymentGatewayUnavailable as e:
        intent.status = FAILED
        intent.failure_reason = e.message
        db.commit()
        raise

    intent.gateway_order_id = order["order_id"]
    db.commit()

    purchases_initiated_counter.labels(kind="paid").inc()
    payment_logger.info(
        f"Purchase {intent.id} initiated by seller {seller_id} for plan {plan.id}: "
        f"order {intent.gateway_order_id}, {intent.amount} {intent.currency}"
    )
    return {
        "is_free_plan": False,
        "purchase_id": intent.id,
        "order_id": intent.gateway_order_id,
        "client_secret": order["client_secret"],
        "amount": intent.amount,
        "currency": intent.currency,
        "publishable_key": settings.STRIPE_PUBLISHABLE_KEY,
        "plan": plan.to_dict(),
    }


def _assign_free_plan(seller_id: str, plan, db: Session) -> Dict[str, Any]:
    now = utcnow()
    with seller_lock(seller_id):
        current = find_current(seller_id, db)
        if (
            current
            and current.plan_id == plan.id
            and current.status == "active"
            and ensure_utc(current.end_date) > now
        ):
            logger.info(f"Seller {seller_id} already active on free plan {plan.id}")
            purchases_initiated_counter.labels(kind="free").inc()
            return {"is_free_plan": True, "already_active": True, **serialize_subscription(current, plan)}

        try:
            intent = PurchaseIntent(
                seller_id=seller_id,
                plan_id=plan.id,
                gateway="none",
                amount=0,
                currency=plan.currency.lower(),
                status=FREE_PLAN_ASSIGNED,
                verified_at=now,
            )
            db.add(intent)
            db.flush()
            subscription, _ = activate_subscription(
                seller_id, plan, db, reference_id=str(intent.id), reference_type="purchase_intent", now=now
            )
            intent.subscription_id = subscription.id
            db.commit()
        except Exception:
            db.rollback()
            raise

    invalidate_subscription_cache(seller_id, "free_plan_assigned")
    purchases_initiated_counter.labels(kind="free").inc()
    payment_logger.info(f"Free plan {plan.id} assigned to seller {seller_id} (subscription {subscription.id})")
    return {"is_free_plan": True, "already_active": False, **serialize_subscription(subscription, plan)}


# ============================================================================
# VERIFY
# ============================================================================

def verify_purchase(
    plan_id: Optional[str],
    payload: bytes,
    sig_header: Optional[str],
    db: Session,
    seller_id: Optional[str] = None,
) -> VerificationResult:
    """Verify a signed payment confirmation, idempotently.

    ``plan_id`` is None for webhook deliveries, where the intent itself names
    the plan. When ``seller_id`` is given the intent must belong to that
    seller. Repeated confirmations of a verified intent return the stored
    result with ``already_verified=True`` and credit nothing.

    Raises:
        InvalidPaymentPayload: if the payload is not a PaymentIntent event
        PurchaseNotFound: if no intent matches the order (and plan and seller)
        PaymentSignatureInvalid: if the signature does not match; the intent is marked failed
        PaymentFailed: if the captured amount does not match the intent
    """
    event = stripe_service.parse_event(payload)
    order_id = stripe_service.event_object(event).get("id")
    if not order_id:
        raise InvalidPaymentPayload("Payment payload has no order id")

    intent = db.query(PurchaseIntent).filter(PurchaseIntent.gateway_order_id == order_id).first()
    if (
        intent is None
        or (plan_id is not None and intent.plan_id != plan_id)
        or (seller_id is not None and intent.seller_id != seller_id)
    ):
        raise PurchaseNotFound(
            f"No purchase found for order {order_id}",
            details={"order_id": order_id, "plan_id": plan_id},
        )

    if intent.status == VERIFIED:
        payment_verifications_counter.labels(status="already_verified").inc()
        logger.info(f"Order {order_id} already verified, returning stored result")
        return _result(intent, db, already_verified=True, event_type=event.get("type"))

    try:
        event = stripe_service.verify_event(payload, sig_header)
    except PaymentSignatureInvalid:
        if _transition(intent.id, (CREATED, AUTHORIZED), FAILED, db, failure_reason="invalid signature"):
            db.commit()
        payment_verifications_counter.labels(status="invalid_signature").inc()
        payment_logger.warning(f"Invalid signature for order {order_id} (purchase {intent.id}, seller {intent.seller_id})")
        raise

    event_type = event.get("type")
    obj = stripe_service.event_object(event)

    if event_type == stripe_service.SUCCEEDED:
        return _settle_success(intent.id, obj, event_type, db)

    if event_type == stripe_service.AUTHORIZED:
        if _transition(intent.id, (CREATED,), AUTHORIZED, db):
            db.commit()
            payment_logger.info(f"Order {order_id} authorized (purchase {intent.id})")
        payment_verifications_counter.labels(status="authorized").inc()
        return _result(_reload(intent.id, db), db, event_type=event_type)

    if event_type in (stripe_service.FAILED, stripe_service.CANCELED):
        reason = (
            (obj.get("last_payment_error") or {}).get("message")
            or obj.get("cancellation_reason")
            or event_type
        )
        if _transition(intent.id, (CREATED, AUTHORIZED), FAILED, db, failure_reason=reason):
            db.commit()
            payment_logger.info(f"Order {order_id} failed (purchase {intent.id}): {reason}")
        payment_verifications_counter.labels(status="failed").inc()
        return _result(_reload(intent.id, db), db, event_type=event_type)

    logger.info(f"Ignoring {event_type} for order {order_id}")
    payment_verifications_counter.labels(status="ignored").inc()
    return _result(intent, db, event_type=event_type)


def _settle_success(intent_id: int, obj: Dict[str, Any], event_type: str, db: Session) -> VerificationResult:
    intent = _reload(intent_id, db)
    seller_id = intent.seller_id

    with seller_lock(seller_id):
        for attempt in range(1, settings.LEDGER_MAX_RETRIES + 1):
            try:
                won = _transition(
                    intent_id, (CREATED, AUTHORIZED, FAILED), VERIFIED, db,
                    gateway_payment_id=obj.get("latest_charge"),
                    failure_reason=None,
                    verified_at=utcnow(),
                )
                if not won:
                    db.rollback()
                    intent = _reload(intent_id, db)
                    if intent.status == VERIFIED:
                        payment_verifications_counter.labels(status="already_verified").inc()
                        return _result(intent, db, already_verified=True, event_type=event_type)
                    raise PaymentFailed(
                        "Payment could not be verified, please contact support",
                        details={"purchase_id": intent_id, "status": intent.status},
                    )

                received = obj.get("amount_received", obj.get("amount"))
                currency = (obj.get("currency") or intent.currency).lower()
                if received != intent.amount or currency != intent.currency:
                    db.rollback()
                    reason = f"amount mismatch: expected {intent.amount} {intent.currency}, got {received} {currency}"
                    if _transition(intent_id, (CREATED, AUTHORIZED, FAILED), FAILED, db, failure_reason=reason):
                        db.commit()
                    payment_verifications_counter.labels(status="amount_mismatch").inc()
                    payment_logger.error(f"Purchase {intent_id} for seller {seller_id}: {reason}")
                    raise PaymentFailed(
                        "Payment amount does not match the plan price, please contact support",
                        details={"purchase_id": intent_id},
                    )

                plan = get_plan(intent.plan_id, db)
                subscription, _ = activate_subscription(
                    seller_id, plan, db, reference_id=str(intent_id), reference_type="purchase_intent"
                )
                db.execute(
                    update(PurchaseIntent)
                    .where(PurchaseIntent.id == intent_id)
                    .values(subscription_id=subscription.id)
                    .execution_options(synchronize_session=False)
                )
                db.commit()
                break
            except (StaleDataError, IntegrityError) as e:
                db.rollback()
                ledger_conflicts_counter.inc()
                logger.warning(
                    f"Conflict verifying purchase {intent_id} (attempt {attempt}/{settings.LEDGER_MAX_RETRIES}): {e}"
                )
        else:
            raise ConcurrentBalanceConflict(
                f"Could not verify purchase {intent_id} after {settings.LEDGER_MAX_RETRIES} attempts",
                details={"purchase_id": intent_id},
            )

    invalidate_subscription_cache(seller_id, "payment_verified")
    payment_verifications_counter.labels(status="verified").inc()
    intent = _reload(intent_id, db)
    payment_logger.info(
        f"Purchase {intent_id} verified for seller {seller_id}: plan {intent.plan_id}, "
        f"order {intent.gateway_order_id}, subscription {intent.subscription_id}"
    )
    return _result(intent, db, event_type=event_type)


# ============================================================================
# STATUS
# ============================================================================

def get_payment_status(seller_id: str, plan_id: str, db: Session) -> Dict[str, Any]:
    """Latest purchase attempt for a seller and plan

    Raises:
        PurchaseNotFound: if the seller never started a purchase of this plan
    """
    intent = db.query(PurchaseIntent).filter(
        PurchaseIntent.seller_id == seller_id,
        PurchaseIntent.plan_id == plan_id
    ).order_by(PurchaseIntent.created_at.desc(), PurchaseIntent.id.desc()).first()

    if intent is None:
        raise PurchaseNotFound(
            f"No purchase found for plan {plan_id}",
            details={"plan_id": plan_id},
        )

    verified_at = ensure_utc(intent.verified_at)
    return {
        "purchase_id": intent.id,
        "plan_id": intent.plan_id,
        "status": intent.status,
        "order_id": intent.gateway_order_id,
        "payment_id": intent.gateway_payment_id,
        "subscription_id": intent.subscription_id,
        "amount": intent.amount,
        "currency": intent.currency,
        "failure_reason": intent.failure_reason,
        "verified_at": verified_at.isoformat() if verified_at else None,
    }
