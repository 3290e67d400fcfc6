"""Stripe gateway adapter - PaymentIntents as gateway orders, signed webhook events as confirmations"""
import json
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

import stripe

from sellerhub.core.config import settings
from sellerhub.core.errors import InvalidPaymentPayload, PaymentGatewayUnavailable, PaymentSignatureInvalid
from sellerhub.services.plan_catalog import PlanSpec

logger = logging.getLogger(__name__)

# Configure Stripe
stripe.api_key = settings.STRIPE_SECRET_KEY

SUCCEEDED = "payment_intent.succeeded"
AUTHORIZED = "payment_intent.amount_capturable_updated"
FAILED = "payment_intent.payment_failed"
CANCELED = "payment_intent.canceled"


def to_minor_units(price: Decimal) -> int:
    """Convert a major-unit price (e.g. 499.00 INR) to minor units (49900 paise)"""
    return int((Decimal(price) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def get_stripe_value(obj: Any, key: str, default=None):
    """Safely extract value from Stripe object (supports both dict and attribute access)."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    value = getattr(obj, key, default)
    return default if value is None else value


def create_gateway_order(purchase_intent_id: int, seller_id: str, plan: PlanSpec, amount: int) -> Dict[str, Any]:
    """Create a Stripe PaymentIntent for a purchase.

    The purchase intent id doubles as the idempotency key, so a retried
    request returns the same PaymentIntent instead of creating a second one.

    Raises:
        PaymentGatewayUnavailable: if Stripe is not configured or the call fails
    """
    if not settings.STRIPE_SECRET_KEY:
        logger.error("Stripe secret key not configured.")
        raise PaymentGatewayUnavailable("Payment gateway is not configured")

    try:
        payment_intent = stripe.PaymentIntent.create(
            amount=amount,
            currency=plan.currency.lower(),
            metadata={
                "seller_id": seller_id,
                "plan_id": plan.id,
                "purchase_intent_id": str(purchase_intent_id),
            },
            description=f"{plan.name} subscription",
            automatic_payment_methods={"enabled": True},
            idempotency_key=f"purchase-intent-{purchase_intent_id}",
        )
    except stripe.StripeError as e:
        logger.error(f"Failed to create PaymentIntent for purchase intent {purchase_intent_id}: {e}")
        raise PaymentGatewayUnavailable("Could not reach the payment gateway, please try again") from e

    order_id = get_stripe_value(payment_intent, "id")
    logger.info(f"Created PaymentIntent {order_id} for seller {seller_id}, plan {plan.id}")
    return {
        "order_id": order_id,
        "client_secret": get_stripe_value(payment_intent, "client_secret"),
        "amount": get_stripe_value(payment_intent, "amount", amount),
        "currency": get_stripe_value(payment_intent, "currency", plan.currency.lower()),
    }


def parse_event(payload: bytes) -> Dict[str, Any]:
    """Decode a webhook payload without checking its signature

    Raises:
        InvalidPaymentPayload: if the body is not a JSON event object
    """
    try:
        event = json.loads(payload)
    except (TypeError, ValueError) as e:
        raise InvalidPaymentPayload("Invalid payment payload") from e
    if not isinstance(event, dict) or not isinstance(event.get("data"), dict):
        raise InvalidPaymentPayload("Invalid payment payload")
    return event


def event_object(event: Dict[str, Any]) -> Dict[str, Any]:
    obj = event.get("data", {}).get("object")
    if not isinstance(obj, dict):
        raise InvalidPaymentPayload("Payment payload has no data object")
    return obj


def verify_event(payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
    """Verify a webhook signature and return the decoded event

    Raises:
        PaymentSignatureInvalid: if the header is missing or does not match
    """
    if not sig_header:
        raise PaymentSignatureInvalid("Missing stripe-signature header")
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("Stripe webhook secret not configured, rejecting payment confirmation")
        raise PaymentSignatureInvalid("Payment signature cannot be verified")

    payload_str = payload.decode("utf-8") if isinstance(payload, bytes) else payload
    try:
        stripe.WebhookSignature.verify_header(
            payload_str, sig_header, settings.STRIPE_WEBHOOK_SECRET, settings.STRIPE_WEBHOOK_TOLERANCE
        )
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Invalid webhook signature: {e}")
        raise PaymentSignatureInvalid("Invalid payment signature") from e

    return parse_event(payload_str)


def get_publishable_config() -> Dict[str, str]:
    """Publishable key for the frontend Stripe.js client"""
    if not settings.STRIPE_PUBLISHABLE_KEY:
        raise PaymentGatewayUnavailable("Payment gateway is not configured")
    return {
        "publishable_key": settings.STRIPE_PUBLISHABLE_KEY,
        "currency": settings.CURRENCY,
    }
