"""Credits API routes"""
import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from sellerhub.core.security import require_auth
from sellerhub.db.session import get_db
from sellerhub.services import ledger_service
from sellerhub.services.subscription_service import get_current_subscription

router = APIRouter(prefix="/api/credits", tags=["credits"])
logger = logging.getLogger(__name__)


@router.get("/history")
def get_credit_history(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    seller_id: str = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Get the seller's credit ledger, newest first"""
    return ledger_service.history(seller_id, db, page=page, limit=limit)


@router.get("/reconcile")
def reconcile_credits(seller_id: str = Depends(require_auth), db: Session = Depends(get_db)):
    """Audit the current subscription's balance against its ledger"""
    subscription = get_current_subscription(seller_id, db)
    return ledger_service.reconcile(subscription.id, db).to_dict()
