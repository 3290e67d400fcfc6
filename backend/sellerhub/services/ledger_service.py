"""Credit ledger - the only writer of subscription credit balances.

Every balance change appends one immutable ``CreditTransaction`` and updates
the cached projections on ``Subscription`` in the same database transaction.
Writers are serialized per seller by an in-process lock, a row lock
(``SELECT ... FOR UPDATE``) and the subscription's optimistic version column.
"""
import logging
import threading
import weakref
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, TypeVar

from sqlalchemy import case, func
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from sellerhub.core.config import settings
from sellerhub.core.errors import (
    ConcurrentBalanceConflict, InsufficientCredits, InvalidCreditAmount, SubscriptionNotFound
)
from sellerhub.core.logging import ledger_logger
from sellerhub.core.metrics import (
    credits_credited_counter, credits_debited_counter, insufficient_credits_counter, ledger_conflicts_counter
)
from sellerhub.db.redis import invalidate_subscription_cache
from sellerhub.models.credit_transaction import CreditTransaction
from sellerhub.models.subscription import Subscription

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TransactionType(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"
    BONUS = "bonus"
    RESET = "reset"
    REFUND = "refund"


CREDIT_TYPES = {TransactionType.CREDIT, TransactionType.BONUS, TransactionType.RESET, TransactionType.REFUND}

# ============================================================================
# LOCKING
# ============================================================================

# Entries live only while some caller holds the lock
_seller_locks: "weakref.WeakValueDictionary[str, threading.RLock]" = weakref.WeakValueDictionary()
_seller_locks_guard = threading.Lock()


def seller_lock(seller_id: str) -> threading.RLock:
    """In-process lock serializing balance writers for one seller"""
    with _seller_locks_guard:
        lock = _seller_locks.get(seller_id)
        if lock is None:
            lock = threading.RLock()
            _seller_locks[seller_id] = lock
        return lock


def lock_subscription(subscription_id: int, db: Session) -> Optional[Subscription]:
    """Load a subscription with a row lock, discarding any stale identity-map copy"""
    return (
        db.query(Subscription)
        .filter(Subscription.id == subscription_id)
        .with_for_update()
        .execution_options(populate_existing=True)
        .first()
    )


def mutate_subscription(
    subscription_id: int,
    db: Session,
    mutate: Callable[[Subscription], T],
    reason: str,
) -> T:
    """Run ``mutate`` on a locked subscription and commit.

    Lost updates surface as ``StaleDataError`` on commit; the whole step is
    retried (re-reading and re-checking the balance) up to
    ``LEDGER_MAX_RETRIES`` times before ``ConcurrentBalanceConflict``.
    """
    seller_id = db.query(Subscription.seller_id).filter(Subscription.id == subscription_id).scalar()
    if seller_id is None:
        raise SubscriptionNotFound(
            f"Subscription {subscription_id} not found", details={"subscription_id": subscription_id}
        )

    with seller_lock(seller_id):
        for attempt in range(1, settings.LEDGER_MAX_RETRIES + 1):
            try:
                subscription = lock_subscription(subscription_id, db)
                result = mutate(subscription)
                db.commit()
                break
            except StaleDataError:
                db.rollback()
                ledger_conflicts_counter.inc()
                logger.warning(
                    f"Concurrent update on subscription {subscription_id} "
                    f"(attempt {attempt}/{settings.LEDGER_MAX_RETRIES}), retrying"
                )
            except Exception:
                db.rollback()
                raise
        else:
            raise ConcurrentBalanceConflict(
                f"Could not update subscription {subscription_id} after {settings.LEDGER_MAX_RETRIES} attempts",
                details={"subscription_id": subscription_id},
            )

    invalidate_subscription_cache(seller_id, reason)
    return result


# ============================================================================
# MUTATIONS (no commit)
# ============================================================================

def _append(
    subscription: Subscription,
    transaction_type: TransactionType,
    amount: int,
    balance_before: int,
    description: str,
    db: Session,
    feature: Optional[str] = None,
    reference_id: Optional[str] = None,
    reference_type: Optional[str] = None,
) -> CreditTransaction:
    subscription.ledger_sequence = (subscription.ledger_sequence or 0) + 1
    transaction = CreditTransaction(
        subscription_id=subscription.id,
        seller_id=subscription.seller_id,
        sequence=subscription.ledger_sequence,
        transaction_type=transaction_type.value,
        amount=amount,
        balance_before=balance_before,
        balance_after=subscription.total_credits_remaining,
        description=description,
        feature=feature,
        reference_id=reference_id,
        reference_type=reference_type,
    )
    db.add(transaction)
    db.flush()
    return transaction


def apply_debit(
    subscription: Subscription,
    amount: int,
    description: str,
    db: Session,
    feature: Optional[str] = None,
    reference_id: Optional[str] = None,
    reference_type: Optional[str] = None,
) -> CreditTransaction:
    """Debit a locked subscription without committing

    Raises:
        InvalidCreditAmount: if amount is not positive
        InsufficientCredits: if amount exceeds total_credits_remaining
    """
    if amount <= 0:
        raise InvalidCreditAmount(f"Debit amount must be positive, got {amount}", details={"amount": amount})

    balance_before = subscription.total_credits_remaining
    if amount > balance_before:
        insufficient_credits_counter.inc()
        raise InsufficientCredits(required=amount, available=balance_before)

    subscription.credits_used = (subscription.credits_used or 0) + amount
    subscription.total_debited = (subscription.total_debited or 0) + amount
    transaction = _append(
        subscription, TransactionType.DEBIT, amount, balance_before, description, db,
        feature=feature, reference_id=reference_id, reference_type=reference_type,
    )

    credits_debited_counter.inc(amount)
    ledger_logger.info(
        f"Debited {amount} credits from subscription {subscription.id} (seller {subscription.seller_id}): "
        f"{balance_before} -> {transaction.balance_after}, feature={feature}"
    )
    return transaction


def apply_credit(
    subscription: Subscription,
    amount: int,
    description: str,
    db: Session,
    transaction_type: TransactionType = TransactionType.CREDIT,
    reference_id: Optional[str] = None,
    reference_type: Optional[str] = None,
) -> CreditTransaction:
    """Credit a locked subscription without committing.

    ``credit``, ``reset`` and ``refund`` add to the allocation; ``bonus`` adds
    to bonus credits.
    """
    transaction_type = TransactionType(transaction_type)
    if transaction_type not in CREDIT_TYPES:
        raise InvalidCreditAmount(
            f"'{transaction_type.value}' is not a credit transaction type",
            details={"transaction_type": transaction_type.value},
        )
    if amount <= 0:
        raise InvalidCreditAmount(f"Credit amount must be positive, got {amount}", details={"amount": amount})

    balance_before = subscription.total_credits_remaining
    if transaction_type == TransactionType.BONUS:
        subscription.bonus_credits = (subscription.bonus_credits or 0) + amount
    else:
        subscription.credits_allocated = (subscription.credits_allocated or 0) + amount
    subscription.total_credited = (subscription.total_credited or 0) + amount
    transaction = _append(
        subscription, transaction_type, amount, balance_before, description, db,
        reference_id=reference_id, reference_type=reference_type,
    )

    credits_credited_counter.labels(transaction_type=transaction_type.value).inc(amount)
    ledger_logger.info(
        f"Credited {amount} credits ({transaction_type.value}) to subscription {subscription.id} "
        f"(seller {subscription.seller_id}): {balance_before} -> {transaction.balance_after}"
    )
    return transaction


def apply_revoke_bonus(
    subscription: Subscription,
    amount: int,
    description: str,
    db: Session,
) -> Optional[CreditTransaction]:
    """Revoke up to ``amount`` bonus credits without committing.

    Never takes bonus credits below zero, nor the total balance below zero.
    Returns None when there is nothing to revoke.
    """
    if amount <= 0:
        raise InvalidCreditAmount(f"Revocation amount must be positive, got {amount}", details={"amount": amount})

    balance_before = subscription.total_credits_remaining
    revoked = min(amount, subscription.bonus_credits or 0, balance_before)
    if revoked <= 0:
        logger.info(f"No bonus credits to revoke on subscription {subscription.id}")
        return None

    subscription.bonus_credits -= revoked
    subscription.total_debited = (subscription.total_debited or 0) + revoked
    transaction = _append(
        subscription, TransactionType.DEBIT, revoked, balance_before, description, db,
        reference_type="bonus_revocation",
    )
    ledger_logger.info(
        f"Revoked {revoked} bonus credits from subscription {subscription.id} "
        f"(seller {subscription.seller_id}): {balance_before} -> {transaction.balance_after}"
    )
    return transaction


# ============================================================================
# PUBLIC OPERATIONS (commit)
# ============================================================================

def _require(subscription: Optional[Subscription], subscription_id: int) -> Subscription:
    if subscription is None:
        raise SubscriptionNotFound(
            f"Subscription {subscription_id} not found", details={"subscription_id": subscription_id}
        )
    return subscription


def debit(
    subscription_id: int,
    amount: int,
    description: str,
    db: Session,
    feature: Optional[str] = None,
    reference_id: Optional[str] = None,
    reference_type: Optional[str] = None,
) -> CreditTransaction:
    """Atomically check the balance and debit ``amount`` credits

    Raises:
        InsufficientCredits: if amount exceeds total_credits_remaining
        ConcurrentBalanceConflict: if retries are exhausted
    """
    return mutate_subscription(
        subscription_id, db,
        lambda sub: apply_debit(
            _require(sub, subscription_id), amount, description, db,
            feature=feature, reference_id=reference_id, reference_type=reference_type,
        ),
        reason="debit",
    )


def credit(
    subscription_id: int,
    amount: int,
    description: str,
    db: Session,
    transaction_type: TransactionType = TransactionType.CREDIT,
    reference_id: Optional[str] = None,
    reference_type: Optional[str] = None,
) -> CreditTransaction:
    """Add credits to a subscription (credit, bonus, reset or refund)"""
    return mutate_subscription(
        subscription_id, db,
        lambda sub: apply_credit(
            _require(sub, subscription_id), amount, description, db,
            transaction_type=transaction_type, reference_id=reference_id, reference_type=reference_type,
        ),
        reason=TransactionType(transaction_type).value,
    )


def revoke_bonus(subscription_id: int, amount: int, description: str, db: Session) -> Optional[CreditTransaction]:
    """Explicitly revoke bonus credits"""
    return mutate_subscription(
        subscription_id, db,
        lambda sub: apply_revoke_bonus(_require(sub, subscription_id), amount, description, db),
        reason="bonus_revocation",
    )


# ============================================================================
# READS
# ============================================================================

def serialize_transaction(transaction: CreditTransaction) -> Dict[str, Any]:
    return {
        "id": transaction.id,
        "subscription_id": transaction.subscription_id,
        "sequence": transaction.sequence,
        "transaction_type": transaction.transaction_type,
        "amount": transaction.amount,
        "signed_amount": transaction.signed_amount,
        "balance_before": transaction.balance_before,
        "balance_after": transaction.balance_after,
        "description": transaction.description,
        "feature": transaction.feature,
        "reference_id": transaction.reference_id,
        "reference_type": transaction.reference_type,
        "created_at": transaction.created_at.isoformat() if transaction.created_at else None,
    }


def history(seller_id: str, db: Session, page: int = 1, limit: int = 20) -> Dict[str, Any]:
    """Paginated ledger for a seller, newest first, across all their subscriptions.

    ``total_credited`` and ``total_debited`` come from the running aggregates
    on the subscriptions, so they do not depend on the page requested.
    """
    page = max(1, page)
    limit = max(1, min(limit, 100))

    query = db.query(CreditTransaction).filter(CreditTransaction.seller_id == seller_id)
    total = query.count()
    transactions = (
        query.order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )

    total_credited, total_debited = db.query(
        func.coalesce(func.sum(Subscription.total_credited), 0),
        func.coalesce(func.sum(Subscription.total_debited), 0),
    ).filter(Subscription.seller_id == seller_id).one()

    return {
        "transactions": [serialize_transaction(t) for t in transactions],
        "total": total,
        "total_credited": int(total_credited),
        "total_debited": int(total_debited),
        "page": page,
        "limit": limit,
    }


@dataclass(frozen=True)
class ReconciliationReport:
    subscription_id: int
    entries: int
    ledger_credited: int
    ledger_debited: int
    last_balance_after: int
    last_sequence: int
    balance: int
    total_credited: int
    total_debited: int
    ledger_sequence: int

    @property
    def consistent(self) -> bool:
        return (
            self.ledger_credited - self.ledger_debited == self.balance
            and self.last_balance_after == self.balance
            and self.ledger_credited == self.total_credited
            and self.ledger_debited == self.total_debited
            and self.entries == self.ledger_sequence == self.last_sequence
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subscription_id": self.subscription_id,
            "entries": self.entries,
            "ledger_credited": self.ledger_credited,
            "ledger_debited": self.ledger_debited,
            "last_balance_after": self.last_balance_after,
            "balance": self.balance,
            "total_credited": self.total_credited,
            "total_debited": self.total_debited,
            "ledger_sequence": self.ledger_sequence,
            "consistent": self.consistent,
        }


def reconcile(subscription_id: int, db: Session) -> ReconciliationReport:
    """Compare the ledger's own sums against the subscription's cached projections"""
    subscription = _require(db.get(Subscription, subscription_id), subscription_id)

    is_debit = CreditTransaction.transaction_type == TransactionType.DEBIT.value
    entries, credited, debited, last_sequence = db.query(
        func.count(CreditTransaction.id),
        func.coalesce(func.sum(case((is_debit, 0), else_=CreditTransaction.amount)), 0),
        func.coalesce(func.sum(case((is_debit, CreditTransaction.amount), else_=0)), 0),
        func.coalesce(func.max(CreditTransaction.sequence), 0),
    ).filter(CreditTransaction.subscription_id == subscription_id).one()

    last = db.query(CreditTransaction.balance_after).filter(
        CreditTransaction.subscription_id == subscription_id
    ).order_by(CreditTransaction.sequence.desc()).first()

    report = ReconciliationReport(
        subscription_id=subscription_id,
        entries=int(entries),
        ledger_credited=int(credited),
        ledger_debited=int(debited),
        last_balance_after=last[0] if last else 0,
        last_sequence=int(last_sequence),
        balance=subscription.total_credits_remaining,
        total_credited=subscription.total_credited or 0,
        total_debited=subscription.total_debited or 0,
        ledger_sequence=subscription.ledger_sequence or 0,
    )
    if not report.consistent:
        logger.error(f"Ledger mismatch on subscription {subscription_id}: {report.to_dict()}")
    return report
