"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from sellerhub.models.base import Base
from sellerhub.models.plan import Plan
from sellerhub.models.subscription import Subscription
from sellerhub.models.credit_transaction import CreditTransaction
from sellerhub.models.purchase_intent import PurchaseIntent

# Export all for convenience
__all__ = [
    "Base", "Plan", "Subscription", "CreditTransaction", "PurchaseIntent"
]
