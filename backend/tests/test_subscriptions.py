"""Subscription lifecycle tests"""
from datetime import datetime, timedelta, timezone

import pytest

from sellerhub.core.config import settings
from sellerhub.core.errors import PlanNotFound, SubscriptionNotFound
from sellerhub.models.credit_transaction import CreditTransaction
from sellerhub.models.subscription import Subscription
from sellerhub.services import ledger_service
from sellerhub.services.ledger_service import seller_lock
from sellerhub.services.plan_catalog import build_plan
from sellerhub.services.subscription_service import (
    activate_subscription, cancel_subscription, get_current_subscription, get_current_subscription_view,
    list_available_plans, renew_or_expire
)

from conftest import TEST_SELLER_ID, make_plan, make_subscription


def activate(db, plan, seller_id=TEST_SELLER_ID, **kwargs):
    with seller_lock(seller_id):
        subscription, transaction = activate_subscription(seller_id, build_plan(plan), db, **kwargs)
        db.commit()
    return subscription, transaction


@pytest.mark.critical
class TestActivateSubscription:
    """Test activation, renewal and plan changes"""

    def test_first_activation_grants_credits(self, db_session, paid_plan):
        subscription, transaction = activate(db_session, paid_plan, reference_id="42", reference_type="purchase_intent")

        assert subscription.status == "active"
        assert subscription.is_current is True
        assert subscription.total_credits_remaining == 100
        assert transaction.amount == 100
        assert transaction.reference_id == "42"
        assert transaction.description == "Activated Growth"

    def test_same_plan_extends_from_end_date(self, db_session, paid_plan):
        now = datetime(2026, 10, 18, tzinfo=timezone.utc)
        first, _ = activate(db_session, paid_plan, now=now)

        renewed, transaction = activate(db_session, paid_plan, now=now + timedelta(days=10))

        assert renewed.id == first.id
        db_session.refresh(renewed)
        assert renewed.end_date.replace(tzinfo=timezone.utc) == now + timedelta(days=60)
        assert renewed.total_credits_remaining == 200
        assert transaction.description == "Renewed Growth"

    def test_lapsed_same_plan_extends_from_now(self, db_session, paid_plan):
        now = datetime(2026, 10, 18, tzinfo=timezone.utc)
        activate(db_session, paid_plan, now=now)
        later = now + timedelta(days=45)

        renewed, _ = activate(db_session, paid_plan, now=later)

        db_session.refresh(renewed)
        assert renewed.end_date.replace(tzinfo=timezone.utc) == later + timedelta(days=30)

    def test_plan_change_supersedes_with_carry_over(self, db_session, paid_plan):
        old = make_subscription(db_session, paid_plan, credits=100, bonus=10)
        ledger_service.debit(old.id, 30, "Use", db_session)
        pro = make_plan(db_session, "pro", credits_granted=500, price=999)

        new, _ = activate(db_session, pro)

        db_session.refresh(old)
        assert old.is_current is False
        assert old.status == "cancelled"
        assert old.total_credits_remaining == 0
        assert new.total_credits_remaining == 580

        carry_entries = db_session.query(CreditTransaction).filter(
            CreditTransaction.reference_type == "subscription"
        ).all()
        assert {(t.subscription_id, t.transaction_type, t.amount) for t in carry_entries} == {
            (old.id, "debit", 80), (new.id, "credit", 80),
        }
        assert ledger_service.reconcile(old.id, db_session).consistent
        assert ledger_service.reconcile(new.id, db_session).consistent

    def test_plan_change_without_carry_over(self, db_session, paid_plan, monkeypatch):
        monkeypatch.setattr(settings, "CARRY_OVER_CREDITS", False)
        old = make_subscription(db_session, paid_plan)
        pro = make_plan(db_session, "pro", credits_granted=500)

        new, _ = activate(db_session, pro)

        db_session.refresh(old)
        assert old.total_credits_remaining == 100
        assert new.total_credits_remaining == 500

    def test_expired_row_is_superseded(self, db_session, paid_plan):
        old = make_subscription(db_session, paid_plan, credits=0, status="expired")

        new, _ = activate(db_session, paid_plan)

        db_session.refresh(old)
        assert new.id != old.id
        assert old.is_current is False
        assert old.status == "expired"

    def test_plan_without_credits(self, db_session):
        plan = make_plan(db_session, "viewer", credits_granted=0)

        subscription, transaction = activate(db_session, plan)

        assert transaction is None
        assert subscription.total_credits_remaining == 0


@pytest.mark.high
class TestCurrentSubscription:
    """Test current subscription lookup"""

    def test_returns_current(self, db_session, subscription):
        assert get_current_subscription(TEST_SELLER_ID, db_session).id == subscription.id

    def test_missing_raises(self, db_session):
        with pytest.raises(SubscriptionNotFound) as exc_info:
            get_current_subscription("nobody", db_session)
        assert exc_info.value.status_code == 404

    def test_auto_assigns_free_plan(self, db_session, free_plan, monkeypatch):
        monkeypatch.setattr(settings, "AUTO_ASSIGN_FREE_PLAN", True)
        monkeypatch.setattr(settings, "DEFAULT_FREE_PLAN_ID", "free")

        subscription = get_current_subscription("new_seller", db_session)

        assert subscription.plan_id == "free"
        assert subscription.is_auto_assigned is True
        assert subscription.total_credits_remaining == 20
        # Second lookup reuses the row
        assert get_current_subscription("new_seller", db_session).id == subscription.id

    def test_auto_assign_with_missing_plan(self, db_session, monkeypatch):
        monkeypatch.setattr(settings, "AUTO_ASSIGN_FREE_PLAN", True)
        monkeypatch.setattr(settings, "DEFAULT_FREE_PLAN_ID", "free")

        with pytest.raises(PlanNotFound):
            get_current_subscription("new_seller", db_session)

    def test_view_is_cached_and_invalidated(self, db_session, subscription, mock_redis):
        view = get_current_subscription_view(TEST_SELLER_ID, db_session)

        assert view["subscription"]["total_credits_remaining"] == 100
        assert view["plan"]["id"] == "growth"
        assert mock_redis.get(f"subscription:{TEST_SELLER_ID}") is not None

        ledger_service.debit(subscription.id, 20, "Use", db_session)

        assert mock_redis.get(f"subscription:{TEST_SELLER_ID}") is None
        assert get_current_subscription_view(TEST_SELLER_ID, db_session)["subscription"]["total_credits_remaining"] == 80

    def test_list_available_plans(self, db_session, paid_plan, free_plan):
        plans = list_available_plans(db_session)["plans"]

        assert [p["id"] for p in plans] == ["free", "growth"]


@pytest.mark.high
class TestCancelSubscription:
    """Test cancellation"""

    def test_cancel_leaves_ledger_untouched(self, db_session, subscription):
        entries_before = db_session.query(CreditTransaction).count()

        view = cancel_subscription(TEST_SELLER_ID, db_session)

        assert view["subscription"]["status"] == "cancelled"
        assert view["subscription"]["renewal_date"] is None
        assert view["subscription"]["total_credits_remaining"] == 100
        assert db_session.query(CreditTransaction).count() == entries_before

    def test_cancel_without_subscription(self, db_session):
        with pytest.raises(SubscriptionNotFound):
            cancel_subscription("nobody", db_session)


@pytest.mark.high
class TestRenewOrExpire:
    """Test settling lapsed subscriptions"""

    def test_paid_plan_expires(self, db_session, paid_plan):
        past = datetime.now(timezone.utc) - timedelta(days=1)
        subscription = make_subscription(db_session, paid_plan, end_date=past)

        assert renew_or_expire(subscription.id, db_session) == "expired"

        db_session.refresh(subscription)
        assert subscription.status == "expired"
        assert subscription.total_credits_remaining == 100

    def test_free_plan_rolls_forward_and_tops_up(self, db_session, free_plan):
        now = datetime(2026, 10, 18, tzinfo=timezone.utc)
        subscription = make_subscription(db_session, free_plan, end_date=now - timedelta(days=1))
        ledger_service.debit(subscription.id, 15, "Use", db_session)

        assert renew_or_expire(subscription.id, db_session, now=now) == "renewed"

        db_session.refresh(subscription)
        assert subscription.status == "active"
        assert subscription.end_date.replace(tzinfo=timezone.utc) == now + timedelta(days=29)
        assert subscription.total_credits_remaining == 20
        reset = db_session.query(CreditTransaction).filter(CreditTransaction.transaction_type == "reset").one()
        assert reset.amount == 15
        assert reset.reference_type == "renewal"

    def test_free_plan_with_full_balance_gets_no_reset(self, db_session, free_plan):
        now = datetime(2026, 10, 18, tzinfo=timezone.utc)
        subscription = make_subscription(db_session, free_plan, end_date=now - timedelta(hours=1))

        assert renew_or_expire(subscription.id, db_session, now=now) == "renewed"
        assert db_session.query(CreditTransaction).filter(CreditTransaction.transaction_type == "reset").count() == 0

    def test_free_plan_expires_when_auto_renew_off(self, db_session, free_plan, monkeypatch):
        monkeypatch.setattr(settings, "AUTO_RENEW_FREE_PLAN", False)
        subscription = make_subscription(db_session, free_plan, end_date=datetime.now(timezone.utc) - timedelta(days=1))

        assert renew_or_expire(subscription.id, db_session) == "expired"

    def test_active_window_is_left_alone(self, db_session, subscription):
        assert renew_or_expire(subscription.id, db_session) is None

        db_session.refresh(subscription)
        assert subscription.status == "active"
