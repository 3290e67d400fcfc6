"""Purchase and payment verification tests"""
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
import stripe

from sellerhub.core.config import settings
from sellerhub.core.errors import (
    InvalidPaymentPayload, PaymentFailed, PaymentGatewayUnavailable, PaymentSignatureInvalid,
    PlanNotFound, PurchaseNotFound
)
from sellerhub.models.credit_transaction import CreditTransaction
from sellerhub.models.purchase_intent import PurchaseIntent
from sellerhub.models.subscription import Subscription
from sellerhub.services import ledger_service, payment_service
from sellerhub.services.payment_service import get_payment_status, initiate_purchase, verify_purchase
from sellerhub.utils.dates import ensure_utc

from conftest import TEST_SELLER_ID, make_plan, make_subscription, payment_event, sign_payload

PAYMENT_INTENT_CREATE = "sellerhub.services.stripe_service.stripe.PaymentIntent.create"


def fake_payment_intent(order_id="pi_test_1", amount=49900, currency="inr"):
    return {
        "id": order_id,
        "object": "payment_intent",
        "client_secret": f"{order_id}_secret_abc",
        "amount": amount,
        "currency": currency,
    }


def start_purchase(db, plan_id="growth", order_id="pi_test_1", seller_id=TEST_SELLER_ID):
    with patch(PAYMENT_INTENT_CREATE, return_value=fake_payment_intent(order_id)) as mock_create:
        result = initiate_purchase(seller_id, plan_id, db)
    return result, mock_create


def confirm(db, order_id="pi_test_1", plan_id="growth", seller_id=None, **event_kwargs):
    payload = payment_event(order_id, **event_kwargs)
    return verify_purchase(plan_id, payload.encode("utf-8"), sign_payload(payload), db, seller_id=seller_id)


def current_subscriptions(db, seller_id=TEST_SELLER_ID):
    return db.query(Subscription).filter(
        Subscription.seller_id == seller_id, Subscription.is_current.is_(True)
    ).all()


@pytest.mark.critical
class TestInitiatePurchase:
    """Test starting plan purchases"""

    def test_paid_plan_creates_gateway_order(self, db_session, paid_plan):
        result, mock_create = start_purchase(db_session)

        assert result["is_free_plan"] is False
        assert result["order_id"] == "pi_test_1"
        assert result["client_secret"] == "pi_test_1_secret_abc"
        assert result["amount"] == 49900
        assert result["currency"] == "inr"
        assert result["publishable_key"] == "pk_test_123"

        call_kwargs = mock_create.call_args.kwargs
        assert call_kwargs["amount"] == 49900
        assert call_kwargs["metadata"]["seller_id"] == TEST_SELLER_ID
        assert call_kwargs["metadata"]["plan_id"] == "growth"
        assert call_kwargs["idempotency_key"] == f"purchase-intent-{result['purchase_id']}"

        intent = db_session.get(PurchaseIntent, result["purchase_id"])
        assert intent.status == "created"
        assert intent.gateway_order_id == "pi_test_1"
        # Nothing is granted before confirmation
        assert current_subscriptions(db_session) == []

    def test_unknown_plan(self, db_session):
        with pytest.raises(PlanNotFound):
            initiate_purchase(TEST_SELLER_ID, "nope", db_session)

    def test_gateway_error_marks_intent_failed(self, db_session, paid_plan):
        with patch(PAYMENT_INTENT_CREATE, side_effect=stripe.APIConnectionError("connection refused")):
            with pytest.raises(PaymentGatewayUnavailable):
                initiate_purchase(TEST_SELLER_ID, "growth", db_session)

        intent = db_session.query(PurchaseIntent).one()
        assert intent.status == "failed"
        assert intent.gateway_order_id is None

    def test_gateway_not_configured(self, db_session, paid_plan, monkeypatch):
        monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "")

        with patch(PAYMENT_INTENT_CREATE) as mock_create:
            with pytest.raises(PaymentGatewayUnavailable):
                initiate_purchase(TEST_SELLER_ID, "growth", db_session)
        mock_create.assert_not_called()

    def test_free_plan_activates_immediately(self, db_session, free_plan):
        with patch(PAYMENT_INTENT_CREATE) as mock_create:
            result = initiate_purchase(TEST_SELLER_ID, "free", db_session)

        mock_create.assert_not_called()
        assert result["is_free_plan"] is True
        assert result["already_active"] is False
        assert result["subscription"]["plan_id"] == "free"
        assert result["subscription"]["total_credits_remaining"] == 20

        intent = db_session.query(PurchaseIntent).one()
        assert intent.status == "free_plan_assigned"
        assert intent.gateway == "none"
        assert intent.subscription_id == result["subscription"]["id"]

    def test_free_plan_is_idempotent(self, db_session, free_plan):
        initiate_purchase(TEST_SELLER_ID, "free", db_session)

        result = initiate_purchase(TEST_SELLER_ID, "free", db_session)

        assert result["already_active"] is True
        assert len(current_subscriptions(db_session)) == 1
        assert db_session.query(CreditTransaction).count() == 1

    def test_lapsed_free_plan_tops_up_instead_of_stacking(self, db_session, free_plan):
        """A free window that lapsed before the sweep ran is re-purchased"""
        lapsed = make_subscription(db_session, free_plan, end_date=datetime.now(timezone.utc) - timedelta(days=1))
        ledger_service.debit(lapsed.id, 5, "Use", db_session)

        result = initiate_purchase(TEST_SELLER_ID, "free", db_session)

        assert result["already_active"] is False
        assert result["subscription"]["id"] == lapsed.id
        assert result["subscription"]["total_credits_remaining"] == 20
        top_up = db_session.query(CreditTransaction).filter(CreditTransaction.reference_type == "purchase_intent").one()
        assert top_up.transaction_type == "reset"
        assert top_up.amount == 5
        assert ensure_utc(db_session.get(Subscription, lapsed.id).end_date) > datetime.now(timezone.utc)

    def test_lapsed_free_plan_with_full_balance_grants_nothing(self, db_session, free_plan):
        make_subscription(db_session, free_plan, end_date=datetime.now(timezone.utc) - timedelta(days=1))

        result = initiate_purchase(TEST_SELLER_ID, "free", db_session)

        assert result["subscription"]["total_credits_remaining"] == 20
        assert db_session.query(CreditTransaction).count() == 1


@pytest.mark.critical
class TestVerifyPurchase:
    """Test payment confirmation"""

    def test_successful_payment_activates_plan(self, db_session, paid_plan):
        """Scenario: order for a paid plan verified once"""
        start_purchase(db_session)

        result = confirm(db_session)

        assert result.status == "verified"
        assert result.already_verified is False
        assert result.subscription_id is not None

        subscription = db_session.get(Subscription, result.subscription_id)
        assert subscription.plan_id == "growth"
        assert subscription.status == "active"
        assert subscription.total_credits_remaining == 100

        grant = db_session.query(CreditTransaction).one()
        assert grant.transaction_type == "credit"
        assert grant.reference_type == "purchase_intent"
        assert grant.reference_id == str(result.purchase_id)

        intent = db_session.get(PurchaseIntent, result.purchase_id)
        assert intent.gateway_payment_id == "ch_pi_test_1"
        assert intent.verified_at is not None

    def test_repeated_confirmation_credits_once(self, db_session, paid_plan):
        start_purchase(db_session)
        first = confirm(db_session)

        second = confirm(db_session)

        assert second.already_verified is True
        assert second.subscription_id == first.subscription_id
        assert second.to_dict() == first.to_dict()
        assert db_session.query(CreditTransaction).count() == 1
        assert db_session.get(Subscription, first.subscription_id).total_credits_remaining == 100

    def test_invalid_signature_marks_failed_and_writes_nothing_else(self, db_session, paid_plan):
        result, _ = start_purchase(db_session)
        payload = payment_event("pi_test_1")

        with pytest.raises(PaymentSignatureInvalid):
            verify_purchase("growth", payload.encode("utf-8"), sign_payload(payload, secret="whsec_wrong"), db_session)

        intent = db_session.get(PurchaseIntent, result["purchase_id"])
        db_session.refresh(intent)
        assert intent.status == "failed"
        assert intent.failure_reason == "invalid signature"
        assert current_subscriptions(db_session) == []
        assert db_session.query(CreditTransaction).count() == 0

    def test_missing_signature(self, db_session, paid_plan):
        start_purchase(db_session)
        payload = payment_event("pi_test_1")

        with pytest.raises(PaymentSignatureInvalid):
            verify_purchase("growth", payload.encode("utf-8"), None, db_session)

    def test_valid_confirmation_recovers_failed_intent(self, db_session, paid_plan):
        start_purchase(db_session)
        payload = payment_event("pi_test_1")
        with pytest.raises(PaymentSignatureInvalid):
            verify_purchase("growth", payload.encode("utf-8"), sign_payload(payload, secret="whsec_wrong"), db_session)

        result = confirm(db_session)

        assert result.status == "verified"
        assert result.failure_reason is None

    def test_other_sellers_order_is_not_found(self, db_session, paid_plan):
        result, _ = start_purchase(db_session)
        payload = payment_event("pi_test_1")

        with pytest.raises(PurchaseNotFound):
            verify_purchase(
                "growth", payload.encode("utf-8"), sign_payload(payload, secret="whsec_wrong"), db_session,
                seller_id="seller_other",
            )
        with pytest.raises(PurchaseNotFound):
            confirm(db_session, seller_id="seller_other")

        intent = db_session.get(PurchaseIntent, result["purchase_id"])
        db_session.refresh(intent)
        assert intent.status == "created"
        assert intent.failure_reason is None
        assert confirm(db_session, seller_id=TEST_SELLER_ID).status == "verified"

    def test_other_seller_cannot_read_verified_result(self, db_session, paid_plan):
        start_purchase(db_session)
        confirm(db_session)

        with pytest.raises(PurchaseNotFound):
            confirm(db_session, seller_id="seller_other")

    def test_plan_mismatch(self, db_session, paid_plan):
        make_plan(db_session, "pro", price=999)
        start_purchase(db_session)

        with pytest.raises(PurchaseNotFound):
            confirm(db_session, plan_id="pro")

    def test_unknown_order(self, db_session, paid_plan):
        with pytest.raises(PurchaseNotFound):
            confirm(db_session, order_id="pi_unknown")

    def test_malformed_payload(self, db_session):
        with pytest.raises(InvalidPaymentPayload):
            verify_purchase("growth", b"not json", "t=1,v1=abc", db_session)

    def test_amount_mismatch(self, db_session, paid_plan):
        result, _ = start_purchase(db_session)

        with pytest.raises(PaymentFailed):
            confirm(db_session, amount=100)

        intent = db_session.get(PurchaseIntent, result["purchase_id"])
        db_session.refresh(intent)
        assert intent.status == "failed"
        assert intent.failure_reason.startswith("amount mismatch")
        assert current_subscriptions(db_session) == []

    def test_authorized_then_succeeded(self, db_session, paid_plan):
        start_purchase(db_session)

        authorized = confirm(db_session, event_type="payment_intent.amount_capturable_updated")
        assert authorized.status == "authorized"
        assert current_subscriptions(db_session) == []

        verified = confirm(db_session)
        assert verified.status == "verified"

    def test_payment_failed_event(self, db_session, paid_plan):
        start_purchase(db_session)

        result = confirm(
            db_session,
            event_type="payment_intent.payment_failed",
            last_payment_error={"message": "Your card was declined."},
        )

        assert result.status == "failed"
        assert result.failure_reason == "Your card was declined."
        assert current_subscriptions(db_session) == []

    def test_unhandled_event_changes_nothing(self, db_session, paid_plan):
        start_purchase(db_session)

        result = confirm(db_session, event_type="payment_intent.processing")

        assert result.status == "created"
        assert result.event_type == "payment_intent.processing"

    def test_webhook_delivery_without_plan_id(self, db_session, paid_plan):
        start_purchase(db_session)
        payload = payment_event("pi_test_1")

        result = verify_purchase(None, payload.encode("utf-8"), sign_payload(payload), db_session)

        assert result.status == "verified"
        assert result.plan_id == "growth"

    def test_upgrade_carries_over_balance(self, db_session, free_plan, paid_plan):
        old = make_subscription(db_session, free_plan, credits=20)
        start_purchase(db_session)

        result = confirm(db_session)

        db_session.refresh(old)
        new = db_session.get(Subscription, result.subscription_id)
        assert old.is_current is False
        assert old.status == "cancelled"
        assert old.total_credits_remaining == 0
        assert new.total_credits_remaining == 120
        assert len(current_subscriptions(db_session)) == 1

    def test_renewal_extends_window(self, db_session, paid_plan):
        start_purchase(db_session, order_id="pi_first")
        first = confirm(db_session, order_id="pi_first")
        first_end = db_session.get(Subscription, first.subscription_id).end_date

        start_purchase(db_session, order_id="pi_second")
        second = confirm(db_session, order_id="pi_second")

        subscription = db_session.get(Subscription, second.subscription_id)
        db_session.refresh(subscription)
        assert second.subscription_id == first.subscription_id
        assert (subscription.end_date - first_end).days == 30
        assert subscription.total_credits_remaining == 200


@pytest.mark.critical
class TestConcurrentVerification:
    """Client confirmation racing the webhook"""

    def test_simultaneous_confirmations_credit_once(self, file_session_factory):
        setup = file_session_factory()
        make_plan(setup)
        start_purchase(setup)
        setup.close()

        payload = payment_event("pi_test_1")
        signature = sign_payload(payload)
        barrier = threading.Barrier(2)
        results = []

        def deliver(plan_id):
            db = file_session_factory()
            try:
                barrier.wait()
                results.append(verify_purchase(plan_id, payload.encode("utf-8"), signature, db))
            finally:
                db.close()

        threads = [threading.Thread(target=deliver, args=(p,)) for p in ("growth", None)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 2
        assert sorted(r.already_verified for r in results) == [False, True]
        assert results[0].to_dict() == results[1].to_dict()
        check = file_session_factory()
        try:
            assert check.query(CreditTransaction).count() == 1
            assert check.query(Subscription).one().total_credits_remaining == 100
        finally:
            check.close()


@pytest.mark.high
class TestPaymentStatus:
    """Test purchase status lookup"""

    def test_latest_attempt(self, db_session, paid_plan):
        start_purchase(db_session, order_id="pi_first")
        start_purchase(db_session, order_id="pi_second")
        confirm(db_session, order_id="pi_second")

        status = get_payment_status(TEST_SELLER_ID, "growth", db_session)

        assert status["order_id"] == "pi_second"
        assert status["status"] == "verified"
        assert status["payment_id"] == "ch_pi_second"
        assert status["verified_at"] is not None

    def test_no_purchase(self, db_session, paid_plan):
        with pytest.raises(PurchaseNotFound):
            get_payment_status(TEST_SELLER_ID, "growth", db_session)

    def test_result_to_dict(self, db_session, paid_plan):
        start_purchase(db_session)

        data = confirm(db_session).to_dict()

        assert data["status"] == payment_service.VERIFIED
        assert data["order_id"] == "pi_test_1"
        assert data["subscription"]["plan_id"] == "growth"
        assert data["subscription"]["total_credits_remaining"] == 100
        assert data["plan"]["id"] == "growth"
        assert "already_verified" not in data

    def test_failed_result_has_no_subscription(self, db_session, paid_plan):
        start_purchase(db_session)

        data = confirm(db_session, event_type="payment_intent.payment_failed").to_dict()

        assert data["status"] == "failed"
        assert data["subscription"] is None
        assert data["plan"] is None
