"""Entitlement resolver - decides access, credit cost and affordability for a (page, action)"""
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from sellerhub.core.metrics import entitlement_decisions_counter
from sellerhub.models.subscription import Subscription
from sellerhub.services.plan_catalog import FeatureGrant, PlanDataError, PlanSpec, RoleAccess, build_plan
from sellerhub.utils.dates import ensure_utc

logger = logging.getLogger(__name__)


class DenialReason(str, Enum):
    NONE = "none"
    NO_ACTIVE_SUBSCRIPTION = "no_active_subscription"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    FEATURE_NOT_IN_PLAN = "feature_not_in_plan"
    CREDITS_EXHAUSTED = "credits_exhausted"
    INSUFFICIENT_CREDITS = "insufficient_credits"


@dataclass(frozen=True)
class Decision:
    has_access: bool
    credit_cost: int
    can_afford: bool
    credits_remaining: int
    is_module_access: bool = False
    reason: DenialReason = DenialReason.NONE

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["reason"] = self.reason.value
        return data


def _applicable_roles(plan: PlanSpec, role_id: Optional[str]) -> List[RoleAccess]:
    if role_id is None:
        return list(plan.role_access.values())
    role = plan.role_access.get(role_id)
    return [role] if role else []


def _find_feature(plan: PlanSpec, roles: List[RoleAccess], page: str, action: str) -> Optional[FeatureGrant]:
    """First enabled match wins: direct grants, then roles in catalog order"""
    key = (page, action)
    grant = plan.features.get(key)
    if grant and grant.enabled:
        return grant
    for role in roles:
        grant = role.features.get(key)
        if grant and grant.enabled:
            return grant
    return None


def resolve(
    subscription: Optional[Subscription],
    plan: Optional[PlanSpec],
    page: str,
    action: str,
    role_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Decision:
    """Resolve what a seller may do on ``page`` with ``action``.

    Pure: reads only its arguments and never raises. Without ``role_id`` every
    role entry of the plan applies; with one, only that role's entry does.
    ``now`` turns on the validity-window check; without it only the stored
    status counts.
    """
    if subscription is None or plan is None or subscription.status != "active":
        swept = subscription is not None and subscription.status == "expired"
        return Decision(
            has_access=False,
            credit_cost=0,
            can_afford=False,
            credits_remaining=subscription.total_credits_remaining if subscription else 0,
            reason=DenialReason.SUBSCRIPTION_EXPIRED if swept else DenialReason.NO_ACTIVE_SUBSCRIPTION,
        )

    total = subscription.total_credits_remaining

    if now is not None and ensure_utc(subscription.end_date) <= ensure_utc(now):
        return Decision(
            has_access=False,
            credit_cost=0,
            can_afford=False,
            credits_remaining=total,
            reason=DenialReason.SUBSCRIPTION_EXPIRED,
        )

    roles = _applicable_roles(plan, role_id)

    # Module access is never credit-gated
    module = plan.modules.get(page)
    if (module and module.enabled) or any(
        role.modules.get(page) and role.modules[page].enabled for role in roles
    ):
        return Decision(
            has_access=True,
            credit_cost=0,
            can_afford=True,
            credits_remaining=total,
            is_module_access=True,
        )

    feature = _find_feature(plan, roles, page, action)
    if feature is None:
        return Decision(
            has_access=False,
            credit_cost=0,
            can_afford=False,
            credits_remaining=total,
            reason=DenialReason.FEATURE_NOT_IN_PLAN,
        )

    if feature.expires_on_credits_exhausted:
        has_access = total > 0
    else:
        has_access = subscription.status == "active"
    can_afford = total >= feature.credit_cost

    if not has_access:
        reason = DenialReason.CREDITS_EXHAUSTED
    elif not can_afford:
        reason = DenialReason.INSUFFICIENT_CREDITS
    else:
        reason = DenialReason.NONE

    return Decision(
        has_access=has_access,
        credit_cost=feature.credit_cost,
        can_afford=can_afford,
        credits_remaining=total,
        reason=reason,
    )


def load_current(seller_id: str, db: Session) -> Optional[Subscription]:
    """Current subscription row for a seller, with its plan loaded"""
    return db.query(Subscription).filter(
        Subscription.seller_id == seller_id,
        Subscription.is_current.is_(True)
    ).populate_existing().first()


def resolve_current(
    seller_id: str,
    page: str,
    action: str,
    db: Session,
    role_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[Optional[Subscription], Decision]:
    """Resolve against one snapshot of the seller's current subscription and plan.

    Returns the subscription the decision was made on alongside it. Stored
    plan data that no longer builds is a denial, never an error.
    """
    subscription = load_current(seller_id, db)
    plan = None
    if subscription is not None:
        try:
            plan = build_plan(subscription.plan)
        except (PlanDataError, KeyError, TypeError) as e:
            entitlement_decisions_counter.labels(outcome="invalid_plan").inc()
            logger.error(f"Plan {subscription.plan_id} for seller {seller_id} cannot be built: {e}")
            return subscription, Decision(
                has_access=False,
                credit_cost=0,
                can_afford=False,
                credits_remaining=subscription.total_credits_remaining,
                reason=DenialReason.FEATURE_NOT_IN_PLAN,
            )
    decision = resolve(subscription, plan, page, action, role_id=role_id, now=now)

    if decision.has_access and decision.can_afford:
        entitlement_decisions_counter.labels(outcome="allowed").inc()
    else:
        entitlement_decisions_counter.labels(outcome=decision.reason.value).inc()
    logger.debug(
        f"Resolved {page}.{action} for seller {seller_id} (role={role_id}): "
        f"access={decision.has_access}, cost={decision.credit_cost}, afford={decision.can_afford}"
    )
    return subscription, decision


def resolve_for_seller(
    seller_id: str,
    page: str,
    action: str,
    db: Session,
    role_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Decision:
    """Resolve against one snapshot of the seller's current subscription and plan"""
    return resolve_current(seller_id, page, action, db, role_id=role_id, now=now)[1]
