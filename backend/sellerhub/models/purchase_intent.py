"""PurchaseIntent model"""
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship

from sellerhub.models.base import Base


class PurchaseIntent(Base):
    """Correlates a plan purchase with a payment gateway order.

    Status moves created -> authorized -> verified (or failed) and is only
    changed through conditional UPDATEs in ``payment_service``.
    """
    __tablename__ = "purchase_intents"

    id = Column(Integer, primary_key=True, index=True)
    seller_id = Column(String(64), nullable=False)
    plan_id = Column(String(64), ForeignKey("plans.id"), nullable=False)
    gateway = Column(String(20), nullable=False, default="stripe")
    gateway_order_id = Column(String(255), unique=True, nullable=True, index=True)  # Stripe PaymentIntent ID
    gateway_payment_id = Column(String(255), nullable=True, index=True)  # Stripe Charge ID
    amount = Column(Integer, nullable=False, default=0)  # Minor units (paise/cents)
    currency = Column(String(3), nullable=False)
    status = Column(String(30), nullable=False)  # 'created', 'authorized', 'verified', 'failed', 'free_plan_assigned'
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=True)
    failure_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)
    verified_at = Column(DateTime(timezone=True), nullable=True)

    plan = relationship("Plan")
    subscription = relationship("Subscription")

    __table_args__ = (
        Index("ix_purchase_intents_seller_plan", "seller_id", "plan_id", "created_at"),
    )

    def __repr__(self):
        return f"<PurchaseIntent(id={self.id}, order={self.gateway_order_id}, status={self.status})>"
