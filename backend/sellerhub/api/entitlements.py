"""Entitlements API routes"""
import logging
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from sellerhub.core.security import require_auth
from sellerhub.db.session import get_db
from sellerhub.schemas.entitlements import DecisionResponse, SpendRequest, SpendResponse
from sellerhub.services.entitlement_service import resolve_for_seller
from sellerhub.services.guard_service import confirm_and_spend
from sellerhub.utils.dates import utcnow

router = APIRouter(prefix="/api/entitlements", tags=["entitlements"])
logger = logging.getLogger(__name__)


@router.get("/resolve", response_model=DecisionResponse)
def resolve_entitlement(
    page: str = Query(..., min_length=1),
    action: str = Query(..., min_length=1),
    role_id: Optional[str] = Query(None),
    seller_id: str = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Resolve access, credit cost and affordability for a page action"""
    decision = resolve_for_seller(seller_id, page, action, db, role_id=role_id, now=utcnow())
    return decision.to_dict()


@router.post("/spend", response_model=SpendResponse)
def spend_credits(
    spend_request: SpendRequest,
    seller_id: str = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Confirm a credit-gated action and debit its cost once.

    The request itself is the seller's confirmation.
    """
    result = confirm_and_spend(
        seller_id, spend_request.page, spend_request.action, db, role_id=spend_request.role_id
    )
    return asdict(result)
