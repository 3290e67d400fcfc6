"""Subscriptions API routes"""
import logging

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.orm import Session

from sellerhub.core.errors import AppError, PaymentFailed, PurchaseNotFound
from sellerhub.core.security import require_auth
from sellerhub.db.session import get_db
from sellerhub.services.payment_service import get_payment_status, initiate_purchase, verify_purchase
from sellerhub.services.stripe_service import get_publishable_config
from sellerhub.services.subscription_service import (
    cancel_subscription, get_current_subscription_view, list_available_plans
)

router = APIRouter(prefix="/api/subscription", tags=["subscriptions"])
logger = logging.getLogger(__name__)


@router.get("/current")
def get_current_subscription(seller_id: str = Depends(require_auth), db: Session = Depends(get_db)):
    """Get the seller's current subscription and plan.

    Sellers without a subscription get the default free plan when
    auto-assignment is enabled, otherwise a 404.
    """
    return get_current_subscription_view(seller_id, db)


@router.get("/plans")
def get_subscription_plans(db: Session = Depends(get_db)):
    """Get available subscription plans"""
    return list_available_plans(db)


@router.post("/plans/{plan_id}/purchase")
def purchase_plan(plan_id: str, seller_id: str = Depends(require_auth), db: Session = Depends(get_db)):
    """Start a plan purchase.

    Free plans activate immediately. Paid plans return the PaymentIntent
    client secret for Stripe.js to confirm the payment.
    """
    return initiate_purchase(seller_id, plan_id, db)


@router.post("/plans/{plan_id}/verify")
async def verify_plan_payment(
    plan_id: str,
    request: Request,
    response: Response,
    seller_id: str = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Verify a signed payment confirmation for a plan purchase.

    The body must be the raw signed event so the signature can be checked.
    Repeated confirmations return the same body with ``X-Already-Verified: true``.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    result = verify_purchase(plan_id, payload, sig_header, db, seller_id=seller_id)
    if result.status == "failed":
        raise PaymentFailed(
            "Payment failed. If you were charged, please contact support.",
            details={"purchase_id": result.purchase_id, "reason": result.failure_reason},
        )
    response.headers["X-Already-Verified"] = "true" if result.already_verified else "false"
    return result.to_dict()


@router.get("/plans/{plan_id}/payment-status")
def payment_status(plan_id: str, seller_id: str = Depends(require_auth), db: Session = Depends(get_db)):
    """Get the status of the seller's latest purchase of a plan"""
    return get_payment_status(seller_id, plan_id, db)


@router.post("/webhook")
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    """Handle Stripe webhook events

    Note: This route must be excluded from any global JSON parsing middleware
    to ensure the request body remains as raw bytes for signature verification.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    try:
        result = verify_purchase(None, payload, sig_header, db)
    except PurchaseNotFound as e:
        # PaymentIntents created outside this service
        logger.info(f"Ignoring webhook for unknown order: {e.message}")
        return {"status": "ignored"}
    except AppError:
        raise
    except Exception as e:
        # Unexpected error - log but return 200 to prevent retries
        logger.error(f"Unexpected error processing webhook: {e}", exc_info=True)
        return {"status": "error", "message": "Webhook processing failed"}

    return {"status": "success", "already_verified": result.already_verified, "result": result.to_dict()}


@router.post("/cancel")
def cancel_current_subscription(seller_id: str = Depends(require_auth), db: Session = Depends(get_db)):
    """Cancel the seller's current subscription. Remaining credits stay on the ledger."""
    return cancel_subscription(seller_id, db)


# ============================================================================
# STRIPE CONFIG ROUTE (separate router for /api/stripe)
# ============================================================================

stripe_router = APIRouter(prefix="/api/stripe", tags=["stripe"])


@stripe_router.get("/config")
def get_stripe_config():
    """Get Stripe publishable key for frontend"""
    return get_publishable_config()
