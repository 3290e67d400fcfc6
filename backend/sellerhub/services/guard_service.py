"""Credit-gated action guard - confirmation state machine in front of ledger debits"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import NoReturn, Optional, Tuple

from sqlalchemy.orm import Session

from sellerhub.core.errors import (
    CreditCostChanged, FeatureNotInPlan, InsufficientCredits, NoActiveSubscription, SubscriptionExpired
)
from sellerhub.models.credit_transaction import CreditTransaction
from sellerhub.models.subscription import Subscription
from sellerhub.services import ledger_service
from sellerhub.services.entitlement_service import Decision, DenialReason, resolve_current
from sellerhub.utils.dates import utcnow

logger = logging.getLogger(__name__)


class GuardState(str, Enum):
    UNCONFIRMED = "unconfirmed"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CONFIRMED = "confirmed"
    DENIED = "denied"


class GuardOutcome(str, Enum):
    PROCEED = "proceed"
    CONFIRMATION_REQUIRED = "confirmation_required"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    UPGRADE_REQUIRED = "upgrade_required"
    FEATURE_NOT_AVAILABLE = "feature_not_available"


@dataclass(frozen=True)
class ConfirmationPrompt:
    page: str
    action: str
    credit_cost: int
    credits_remaining: int

    @property
    def credits_after(self) -> int:
        return self.credits_remaining - self.credit_cost


@dataclass(frozen=True)
class SpendResult:
    page: str
    action: str
    credits_spent: int
    credits_remaining: int
    transaction_id: Optional[int] = None
    is_module_access: bool = False


class CreditGuard:
    """Gate a (page, action) behind an explicit credit confirmation.

    One guard per user interaction. ``enter`` resolves and moves to
    AWAITING_CONFIRMATION only for paid actions; ``confirm`` re-resolves and
    debits exactly once. Entering a different (page, action) resets the state.
    """

    def __init__(self, db: Session, seller_id: str, role_id: Optional[str] = None):
        self.db = db
        self.seller_id = seller_id
        self.role_id = role_id
        self.state = GuardState.UNCONFIRMED
        self.outcome: Optional[GuardOutcome] = None
        self.decision: Optional[Decision] = None
        self.prompt: Optional[ConfirmationPrompt] = None
        self.subscription_id: Optional[int] = None
        self.transaction_id: Optional[int] = None
        self._context: Optional[Tuple[str, str]] = None

    def _reset(self) -> None:
        self.state = GuardState.UNCONFIRMED
        self.outcome = None
        self.decision = None
        self.prompt = None
        self.subscription_id = None
        self.transaction_id = None

    def _apply(self, subscription: Optional[Subscription], decision: Decision, page: str, action: str) -> GuardOutcome:
        self.decision = decision
        self.subscription_id = subscription.id if subscription else None
        self.prompt = None

        if decision.has_access and (decision.is_module_access or decision.credit_cost == 0):
            self.state = GuardState.CONFIRMED
            self.outcome = GuardOutcome.PROCEED
        elif decision.has_access and decision.can_afford:
            self.state = GuardState.AWAITING_CONFIRMATION
            self.outcome = GuardOutcome.CONFIRMATION_REQUIRED
            self.prompt = ConfirmationPrompt(
                page=page,
                action=action,
                credit_cost=decision.credit_cost,
                credits_remaining=decision.credits_remaining,
            )
        elif decision.reason in (DenialReason.NO_ACTIVE_SUBSCRIPTION, DenialReason.SUBSCRIPTION_EXPIRED):
            self.state = GuardState.DENIED
            self.outcome = GuardOutcome.UPGRADE_REQUIRED
        elif decision.reason in (DenialReason.INSUFFICIENT_CREDITS, DenialReason.CREDITS_EXHAUSTED):
            self.state = GuardState.DENIED
            self.outcome = GuardOutcome.INSUFFICIENT_CREDITS
        else:
            self.state = GuardState.DENIED
            self.outcome = GuardOutcome.FEATURE_NOT_AVAILABLE

        logger.debug(f"Guard {page}.{action} for seller {self.seller_id}: {self.state.value}/{self.outcome.value}")
        return self.outcome

    def enter(self, page: str, action: str) -> GuardOutcome:
        if self._context != (page, action):
            self._reset()
            self._context = (page, action)
        elif self.state == GuardState.CONFIRMED and self.transaction_id is None:
            # Free or module access stays confirmed for the same context
            return GuardOutcome.PROCEED

        subscription, decision = resolve_current(
            self.seller_id, page, action, self.db, role_id=self.role_id, now=utcnow()
        )
        return self._apply(subscription, decision, page, action)

    def confirm(self) -> SpendResult:
        """Re-resolve, then debit the prompted cost once and move to CONFIRMED.

        The debit only goes ahead on the same subscription, still active, at
        the prompted cost. Otherwise the guard moves to the new decision's
        state and raises.

        Raises:
            RuntimeError: if the guard is not awaiting confirmation
            NoActiveSubscription, SubscriptionExpired: if the subscription is no longer active
            CreditCostChanged: if the subscription or the cost changed; the guard awaits confirmation again
            FeatureNotInPlan: if the action left the plan
            InsufficientCredits: if a concurrent spend drained the balance first
        """
        if self.state != GuardState.AWAITING_CONFIRMATION or self.prompt is None:
            raise RuntimeError(f"Cannot confirm from state '{self.state.value}'")

        prompt = self.prompt
        prompted_subscription_id = self.subscription_id
        subscription, decision = resolve_current(
            self.seller_id, prompt.page, prompt.action, self.db, role_id=self.role_id, now=utcnow()
        )

        if (
            subscription is None
            or subscription.id != prompted_subscription_id
            or decision.credit_cost != prompt.credit_cost
            or not (decision.has_access and decision.can_afford)
        ):
            outcome = self._apply(subscription, decision, prompt.page, prompt.action)
            logger.info(
                f"Guard {prompt.page}.{prompt.action} for seller {self.seller_id} changed before confirmation: "
                f"{outcome.value}"
            )
            if outcome == GuardOutcome.CONFIRMATION_REQUIRED:
                raise CreditCostChanged(
                    f"'{prompt.page}.{prompt.action}' costs {decision.credit_cost} credits on your current plan, "
                    "confirm again",
                    details={"previous_cost": prompt.credit_cost, "credit_cost": decision.credit_cost},
                )
            if outcome == GuardOutcome.PROCEED:
                # Became free; nothing to debit
                return SpendResult(
                    page=prompt.page,
                    action=prompt.action,
                    credits_spent=0,
                    credits_remaining=decision.credits_remaining,
                    is_module_access=decision.is_module_access,
                )
            _raise_denial(self.seller_id, prompt.page, prompt.action, outcome, decision)

        def spend(locked: Optional[Subscription]) -> CreditTransaction:
            if locked is None or locked.status != "active" or not locked.is_current:
                raise NoActiveSubscription("No active subscription", details={"seller_id": self.seller_id})
            return ledger_service.apply_debit(
                locked,
                prompt.credit_cost,
                f"Used {prompt.page}.{prompt.action}",
                self.db,
                feature=f"{prompt.page}.{prompt.action}",
            )

        try:
            transaction = ledger_service.mutate_subscription(subscription.id, self.db, spend, reason="debit")
        except NoActiveSubscription:
            self.state = GuardState.DENIED
            self.outcome = GuardOutcome.UPGRADE_REQUIRED
            self.prompt = None
            raise
        except InsufficientCredits:
            self.state = GuardState.DENIED
            self.outcome = GuardOutcome.INSUFFICIENT_CREDITS
            self.prompt = None
            raise

        self.state = GuardState.CONFIRMED
        self.outcome = GuardOutcome.PROCEED
        self.transaction_id = transaction.id
        return SpendResult(
            page=prompt.page,
            action=prompt.action,
            credits_spent=prompt.credit_cost,
            credits_remaining=transaction.balance_after,
            transaction_id=transaction.id,
        )

    def cancel(self) -> None:
        """Dismiss a pending confirmation; nothing is written"""
        if self.state == GuardState.AWAITING_CONFIRMATION:
            self.state = GuardState.UNCONFIRMED
            self.outcome = None
            self.prompt = None


def _raise_denial(seller_id: str, page: str, action: str, outcome: GuardOutcome, decision: Decision) -> NoReturn:
    if outcome == GuardOutcome.UPGRADE_REQUIRED:
        if decision.reason == DenialReason.SUBSCRIPTION_EXPIRED:
            raise SubscriptionExpired("Subscription has expired", details={"seller_id": seller_id})
        raise NoActiveSubscription("No active subscription", details={"seller_id": seller_id})
    if outcome == GuardOutcome.INSUFFICIENT_CREDITS:
        raise InsufficientCredits(required=decision.credit_cost, available=decision.credits_remaining)
    raise FeatureNotInPlan(
        f"'{page}.{action}' is not available on your plan",
        details={"page": page, "action": action},
    )


def confirm_and_spend(seller_id: str, page: str, action: str, db: Session, role_id: Optional[str] = None) -> SpendResult:
    """Resolve and spend in one step; the explicit request is the confirmation.

    Raises:
        NoActiveSubscription, SubscriptionExpired, FeatureNotInPlan, InsufficientCredits
    """
    guard = CreditGuard(db, seller_id, role_id=role_id)
    outcome = guard.enter(page, action)
    decision = guard.decision

    if outcome == GuardOutcome.PROCEED:
        return SpendResult(
            page=page,
            action=action,
            credits_spent=0,
            credits_remaining=decision.credits_remaining,
            is_module_access=decision.is_module_access,
        )
    if outcome == GuardOutcome.CONFIRMATION_REQUIRED:
        return guard.confirm()
    _raise_denial(seller_id, page, action, outcome, decision)
