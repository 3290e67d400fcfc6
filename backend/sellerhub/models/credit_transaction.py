"""CreditTransaction model"""
from datetime import datetime, timezone

from sqlalchemy import (
    CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, event
)
from sqlalchemy.orm import relationship

from sellerhub.models.base import Base


class CreditTransaction(Base):
    """Credit ledger entry (append-only)"""
    __tablename__ = "credit_transactions"

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id", ondelete="RESTRICT"), nullable=False, index=True)
    seller_id = Column(String(64), nullable=False)
    sequence = Column(Integer, nullable=False)  # 1, 2, 3... per subscription
    transaction_type = Column(String(20), nullable=False)  # 'credit', 'debit', 'bonus', 'reset', 'refund'
    amount = Column(Integer, nullable=False)  # Always positive; sign comes from transaction_type
    balance_before = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    description = Column(Text, nullable=False, default="")
    feature = Column(String(255), nullable=True)  # 'page.action'
    reference_id = Column(String(255), nullable=True)
    reference_type = Column(String(50), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    subscription = relationship("Subscription", back_populates="transactions")

    __table_args__ = (
        UniqueConstraint("subscription_id", "sequence", name="uq_credit_transactions_subscription_sequence"),
        Index("ix_credit_transactions_seller_created", "seller_id", "created_at"),
        Index("ix_credit_transactions_reference", "reference_type", "reference_id"),
        CheckConstraint("amount > 0", name="ck_credit_transactions_amount_positive"),
    )

    @property
    def signed_amount(self) -> int:
        return -self.amount if self.transaction_type == "debit" else self.amount

    def __repr__(self):
        return (
            f"<CreditTransaction(subscription_id={self.subscription_id}, seq={self.sequence}, "
            f"type={self.transaction_type}, amount={self.amount}, "
            f"balance={self.balance_before}->{self.balance_after})>"
        )


@event.listens_for(CreditTransaction, "before_update")
def _reject_ledger_update(mapper, connection, target):
    raise ValueError(f"Credit transaction {target.id} is immutable")
