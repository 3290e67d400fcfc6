"""Subscription model"""
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, String, text
)
from sqlalchemy.orm import relationship

from sellerhub.models.base import Base


class Subscription(Base):
    """A seller's binding to a plan.

    Credit fields are cached projections of the credit ledger and are only
    written by ``sellerhub.services.ledger_service``.
    """
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    seller_id = Column(String(64), nullable=False, index=True)
    plan_id = Column(String(64), ForeignKey("plans.id"), nullable=False, index=True)
    status = Column(String(20), nullable=False)  # 'active', 'expired', 'cancelled', 'pending'
    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False)
    renewal_date = Column(DateTime(timezone=True), nullable=True)

    credits_allocated = Column(Integer, default=0, nullable=False)
    credits_used = Column(Integer, default=0, nullable=False)
    bonus_credits = Column(Integer, default=0, nullable=False)

    # Running ledger aggregates
    total_credited = Column(Integer, default=0, nullable=False)
    total_debited = Column(Integer, default=0, nullable=False)
    ledger_sequence = Column(Integer, default=0, nullable=False)

    is_auto_assigned = Column(Boolean, default=False, nullable=False)
    is_current = Column(Boolean, default=True, nullable=False)
    version = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    plan = relationship("Plan")
    transactions = relationship("CreditTransaction", back_populates="subscription")

    __table_args__ = (
        # One current subscription per seller; superseded rows stay for audit
        Index(
            "uq_subscriptions_current_seller", "seller_id",
            unique=True,
            postgresql_where=text("is_current"),
            sqlite_where=text("is_current = 1"),
        ),
        CheckConstraint(
            "credits_allocated - credits_used + bonus_credits >= 0",
            name="ck_subscriptions_balance_non_negative"
        ),
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def credits_remaining(self) -> int:
        return (self.credits_allocated or 0) - (self.credits_used or 0)

    @property
    def total_credits_remaining(self) -> int:
        return self.credits_remaining + (self.bonus_credits or 0)

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def __repr__(self):
        return (
            f"<Subscription(id={self.id}, seller_id={self.seller_id}, plan_id={self.plan_id}, "
            f"status={self.status}, total_remaining={self.total_credits_remaining})>"
        )
