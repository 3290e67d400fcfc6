"""Plan model"""
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, Numeric, String, Text

from sellerhub.models.base import Base


class Plan(Base):
    """Subscription plan catalog entry.

    ``modules``, ``features`` and ``role_access`` hold the raw grant lists;
    ``sellerhub.services.plan_catalog`` turns them into keyed, validated maps.
    """
    __tablename__ = "plans"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    plan_type = Column(String(32), nullable=False)  # 'free', 'periodic-short', 'periodic-long'
    price = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="inr")
    credits_granted = Column(Integer, nullable=False, default=0)
    duration_days = Column(Integer, nullable=False, default=30)
    description = Column(Text, nullable=True)

    # [{"page": "dashboard", "enabled": true}]
    modules = Column(JSON, nullable=False, default=list)
    # [{"page": "promotion", "action": "create", "credit_cost": 20, "enabled": true, "expires_on_credits_exhausted": false}]
    features = Column(JSON, nullable=False, default=list)
    # [{"role_id": "manager", "modules": [...], "features": [...]}]
    role_access = Column(JSON, nullable=False, default=list)

    is_active = Column(Boolean, default=True, nullable=False)
    version = Column(Integer, default=1, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    def __repr__(self):
        return f"<Plan(id={self.id}, type={self.plan_type}, price={self.price}, credits={self.credits_granted})>"
