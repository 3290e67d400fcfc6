"""Engine error kinds.

Every error the entitlement engine surfaces to a caller is an ``AppError``
with a stable ``code``, an HTTP status and optional ``details``. The FastAPI
handler in ``sellerhub.main`` renders them as::

    {"error": {"code": "...", "message": "...", "details": {...}}}

``resolve`` never raises these; it encodes denials in the Decision instead.
"""
import logging
from typing import Any, Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base application error with consistent error shape."""

    code = "internal_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


class SubscriptionNotFound(AppError):
    code = "subscription_not_found"
    status_code = status.HTTP_404_NOT_FOUND


class NoActiveSubscription(AppError):
    code = "no_active_subscription"
    status_code = status.HTTP_403_FORBIDDEN


class SubscriptionExpired(AppError):
    code = "subscription_expired"
    status_code = status.HTTP_403_FORBIDDEN


class FeatureNotInPlan(AppError):
    code = "feature_not_in_plan"
    status_code = status.HTTP_403_FORBIDDEN


class InsufficientCredits(AppError):
    code = "insufficient_credits"
    status_code = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(self, required: int, available: int, message: Optional[str] = None):
        super().__init__(
            message or f"Insufficient credits: {required} required, {available} available",
            details={
                "required": required,
                "available": available,
                "shortfall": max(0, required - available),
            },
        )
        self.required = required
        self.available = available


class CreditCostChanged(AppError):
    code = "credit_cost_changed"
    status_code = status.HTTP_409_CONFLICT


class InvalidCreditAmount(AppError):
    code = "invalid_credit_amount"
    status_code = status.HTTP_400_BAD_REQUEST


class ConcurrentBalanceConflict(AppError):
    code = "concurrent_balance_conflict"
    status_code = status.HTTP_409_CONFLICT


class PlanNotFound(AppError):
    code = "plan_not_found"
    status_code = status.HTTP_404_NOT_FOUND


class PurchaseNotFound(AppError):
    code = "purchase_not_found"
    status_code = status.HTTP_404_NOT_FOUND


class InvalidPaymentPayload(AppError):
    code = "invalid_payment_payload"
    status_code = status.HTTP_400_BAD_REQUEST


class PaymentSignatureInvalid(AppError):
    code = "payment_signature_invalid"
    status_code = status.HTTP_400_BAD_REQUEST


class PaymentFailed(AppError):
    code = "payment_failed"
    status_code = status.HTTP_402_PAYMENT_REQUIRED


class PaymentGatewayUnavailable(AppError):
    code = "payment_gateway_unavailable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Render an AppError with its own status code"""
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.code} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
