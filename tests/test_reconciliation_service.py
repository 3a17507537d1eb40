"""
Tests for payment reconciliation.

Tests cover:
- Checkout completion via webhook and via session verification
- Idempotency across both entry points, including the write race
- User resolution and customer id backfill
- Subscription lifecycle webhooks (update, delete, invoices)
- Signature and payload failures
"""

from datetime import timedelta

import pytest

from edu_billing.application.services.reconciliation_service import ReconciliationOutcome
from edu_billing.domain.errors import (
    AuthenticationFailure,
    CheckoutSessionNotFoundError,
    PaymentIncompleteError,
    UpstreamUnavailableError,
)
from edu_billing.domain.models import BillingStatus, PlanType

from .factories import T0, make_event, make_session, make_subscription, sign


def deliver(reconciler, event_type, obj, created=T0, event_id="evt_1"):
    payload = make_event(event_type, obj, created=created, event_id=event_id)
    return reconciler.handle_webhook(payload.encode("utf-8"), sign(payload))


@pytest.fixture
def student(make_user):
    return make_user()


class TestCheckoutWebhook:
    def test_creates_record_and_backfills_customer(self, reconciler, gateway, billing_records, users, student):
        gateway.subscriptions["sub_1"] = make_subscription(
            status="trialing", trial_end=T0 + timedelta(days=7)
        )

        outcome = deliver(
            reconciler,
            "checkout.session.completed",
            make_session(user_id=student.id, plan_id="free-trial", subscription="sub_1"),
        )

        assert outcome.status == "processed"
        assert outcome.message == ReconciliationOutcome.CREATED.value
        record = billing_records.get_by_stripe_subscription_id("sub_1")
        assert record.user_id == student.id
        assert record.plan_type is PlanType.FREE_TRIAL
        assert record.status is BillingStatus.TRIALING
        assert record.trial_ends_at == T0 + timedelta(days=7)
        assert users.get_by_id(student.id).stripe_customer_id == "cus_1"

    def test_redelivery_is_idempotent(self, reconciler, billing_records, student):
        session = make_session(user_id=student.id, subscription=make_subscription())

        first = deliver(reconciler, "checkout.session.completed", session)
        second = deliver(reconciler, "checkout.session.completed", session, event_id="evt_2")

        assert first.message == "created"
        assert second.message == "already_reconciled"
        assert len(billing_records.list_by_user_id(student.id)) == 1

    def test_second_subscription_while_first_is_live(self, reconciler, billing_records, student):
        deliver(
            reconciler,
            "checkout.session.completed",
            make_session(user_id=student.id, subscription=make_subscription()),
        )

        outcome = deliver(
            reconciler,
            "checkout.session.completed",
            make_session(session_id="cs_2", user_id=student.id, subscription=make_subscription(sub_id="sub_2")),
            event_id="evt_2",
        )

        assert outcome.message == ReconciliationOutcome.ALREADY_RECONCILED.value
        assert outcome.record.stripe_subscription_id == "sub_1"
        assert billing_records.get_by_stripe_subscription_id("sub_2") is None

    def test_lapsed_trial_does_not_block_paid_subscription(self, reconciler, billing_records, clock, student):
        trial = make_subscription(sub_id="sub_trial", status="trialing", trial_end=T0 + timedelta(days=7))
        deliver(
            reconciler,
            "checkout.session.completed",
            make_session(user_id=student.id, plan_id="free-trial", subscription=trial),
        )
        # The trial ended but no webhook moved it off trialing
        clock.advance(days=10)
        paid = make_subscription(sub_id="sub_paid", start=T0 + timedelta(days=10))

        outcome = deliver(
            reconciler,
            "checkout.session.completed",
            make_session(session_id="cs_2", user_id=student.id, subscription=paid),
            created=T0 + timedelta(days=10),
            event_id="evt_2",
        )

        assert outcome.message == ReconciliationOutcome.CREATED.value
        assert billing_records.get_by_stripe_subscription_id("sub_paid").status is BillingStatus.ACTIVE

    def test_user_resolved_by_customer_then_email(self, reconciler, billing_records, make_user):
        by_customer = make_user(email="a@example.com", stripe_customer_id="cus_a")
        by_email = make_user(email="b@example.com")

        deliver(
            reconciler,
            "checkout.session.completed",
            make_session(customer="cus_a", subscription=make_subscription(sub_id="sub_a", customer="cus_a")),
        )
        deliver(
            reconciler,
            "checkout.session.completed",
            make_session(
                customer="cus_b",
                email="B@example.com",
                subscription=make_subscription(sub_id="sub_b", customer="cus_b"),
            ),
        )

        assert billing_records.get_by_stripe_subscription_id("sub_a").user_id == by_customer.id
        assert billing_records.get_by_stripe_subscription_id("sub_b").user_id == by_email.id

    def test_missing_user_is_acknowledged_without_writes(self, reconciler, billing_records, caplog):
        outcome = deliver(
            reconciler,
            "checkout.session.completed",
            make_session(user_id=999, customer="cus_unknown", subscription=make_subscription()),
        )

        assert outcome.status == "ignored"
        assert billing_records.get_by_stripe_subscription_id("sub_1") is None
        assert "unknown data" in caplog.text

    def test_checkout_without_subscription(self, reconciler, billing_records, student):
        outcome = deliver(
            reconciler, "checkout.session.completed", make_session(user_id=student.id, subscription=None)
        )

        assert outcome.message == ReconciliationOutcome.NO_SUBSCRIPTION.value
        assert billing_records.list_by_user_id(student.id) == []

    def test_upstream_failure_propagates_for_retry(self, reconciler, gateway, billing_records, student):
        gateway.unavailable = True

        with pytest.raises(UpstreamUnavailableError):
            deliver(
                reconciler,
                "checkout.session.completed",
                make_session(user_id=student.id, subscription="sub_1"),
            )

        assert billing_records.list_by_user_id(student.id) == []


class TestVerifyCheckoutSession:
    def test_creates_record(self, reconciler, gateway, student):
        gateway.sessions["cs_1"] = make_session(user_id=student.id, subscription=make_subscription())

        result = reconciler.verify_checkout_session("cs_1", student)

        assert result.outcome is ReconciliationOutcome.CREATED
        assert result.record.stripe_subscription_id == "sub_1"

    def test_webhook_then_verify(self, reconciler, gateway, billing_records, student):
        session = make_session(user_id=student.id, subscription=make_subscription())
        gateway.sessions["cs_1"] = session
        deliver(reconciler, "checkout.session.completed", session)

        result = reconciler.verify_checkout_session("cs_1", student)

        assert result.outcome is ReconciliationOutcome.ALREADY_RECONCILED
        assert len(billing_records.list_by_user_id(student.id)) == 1

    def test_verify_then_webhook(self, reconciler, gateway, billing_records, student):
        session = make_session(user_id=student.id, subscription=make_subscription())
        gateway.sessions["cs_1"] = session
        reconciler.verify_checkout_session("cs_1", student)

        outcome = deliver(reconciler, "checkout.session.completed", session)

        assert outcome.message == "already_reconciled"
        assert len(billing_records.list_by_user_id(student.id)) == 1

    def test_concurrent_write_loses_race_gracefully(self, reconciler, gateway, billing_records, student, monkeypatch):
        session = make_session(user_id=student.id, subscription=make_subscription())
        gateway.sessions["cs_1"] = session
        deliver(reconciler, "checkout.session.completed", session)
        # Both paths passed the existence check before either wrote
        monkeypatch.setattr(billing_records, "find_reconciled", lambda user_id, sub_id: None)

        result = reconciler.verify_checkout_session("cs_1", student)

        assert result.outcome is ReconciliationOutcome.ALREADY_RECONCILED
        assert result.record.stripe_subscription_id == "sub_1"
        assert len(billing_records.list_by_user_id(student.id)) == 1

    def test_subscription_expanded_by_id(self, reconciler, gateway, student):
        gateway.sessions["cs_1"] = make_session(user_id=student.id, plan_id="family", subscription="sub_f")
        gateway.subscriptions["sub_f"] = make_subscription(sub_id="sub_f")

        result = reconciler.verify_checkout_session("cs_1", student)

        assert result.record.plan_type is PlanType.FAMILY

    def test_unpaid_session(self, reconciler, gateway, billing_records, student):
        gateway.sessions["cs_1"] = make_session(
            user_id=student.id, subscription=make_subscription(), payment_status="unpaid"
        )

        with pytest.raises(PaymentIncompleteError):
            reconciler.verify_checkout_session("cs_1", student)

        assert billing_records.list_by_user_id(student.id) == []

    def test_no_payment_required_counts_as_paid(self, reconciler, gateway, student):
        gateway.sessions["cs_1"] = make_session(
            user_id=student.id,
            plan_id="free-trial",
            subscription=make_subscription(status="trialing", trial_end=T0 + timedelta(days=7)),
            payment_status="no_payment_required",
        )

        assert reconciler.verify_checkout_session("cs_1", student).outcome is ReconciliationOutcome.CREATED

    def test_session_of_another_user(self, reconciler, gateway, make_user):
        owner = make_user(email="owner@example.com")
        intruder = make_user(email="intruder@example.com")
        gateway.sessions["cs_1"] = make_session(user_id=owner.id, subscription=make_subscription())

        with pytest.raises(CheckoutSessionNotFoundError):
            reconciler.verify_checkout_session("cs_1", intruder)

    def test_unknown_session(self, reconciler, student):
        with pytest.raises(CheckoutSessionNotFoundError):
            reconciler.verify_checkout_session("cs_missing", student)

    def test_session_without_user_reference_uses_caller(self, reconciler, gateway, student):
        gateway.sessions["cs_1"] = make_session(
            user_id=None, customer="cus_new", subscription=make_subscription(customer="cus_new")
        )

        result = reconciler.verify_checkout_session("cs_1", student)

        assert result.user.id == student.id
        assert result.outcome is ReconciliationOutcome.CREATED

    def test_upstream_failure(self, reconciler, gateway, student):
        gateway.unavailable = True

        with pytest.raises(UpstreamUnavailableError):
            reconciler.verify_checkout_session("cs_1", student)


class TestSubscriptionLifecycle:
    @pytest.fixture
    def subscribed(self, reconciler, billing_records, student):
        deliver(
            reconciler,
            "checkout.session.completed",
            make_session(user_id=student.id, subscription=make_subscription()),
        )
        return billing_records.get_by_stripe_subscription_id("sub_1")

    def test_renewal_update(self, subscribed, reconciler, billing_records):
        renewed = make_subscription(start=T0 + timedelta(days=30), end=T0 + timedelta(days=60))

        outcome = deliver(reconciler, "customer.subscription.updated", renewed, created=T0 + timedelta(days=30))

        assert outcome.status == "processed"
        stored = billing_records.get_by_stripe_subscription_id("sub_1")
        assert stored.current_period_end == T0 + timedelta(days=60)
        assert stored.last_event_at == T0 + timedelta(days=30)

    def test_stale_update_is_skipped(self, subscribed, reconciler, billing_records):
        deliver(
            reconciler,
            "customer.subscription.updated",
            make_subscription(start=T0 + timedelta(days=30), end=T0 + timedelta(days=60)),
            created=T0 + timedelta(days=30),
        )

        deliver(
            reconciler,
            "customer.subscription.updated",
            make_subscription(status="past_due"),
            created=T0 + timedelta(days=1),
        )

        stored = billing_records.get_by_stripe_subscription_id("sub_1")
        assert stored.status is BillingStatus.ACTIVE
        assert stored.current_period_end == T0 + timedelta(days=60)

    def test_update_older_than_creating_checkout_is_skipped(self, reconciler, billing_records, student):
        deliver(
            reconciler,
            "checkout.session.completed",
            make_session(user_id=student.id, subscription=make_subscription(sub_id="sub_2")),
            created=T0 + timedelta(minutes=5),
        )
        assert billing_records.get_by_stripe_subscription_id("sub_2").last_event_at == T0 + timedelta(minutes=5)

        deliver(
            reconciler,
            "customer.subscription.updated",
            make_subscription(sub_id="sub_2", status="past_due"),
            created=T0,
            event_id="evt_2",
        )

        assert billing_records.get_by_stripe_subscription_id("sub_2").status is BillingStatus.ACTIVE

    def test_deleted_marks_canceled(self, subscribed, reconciler, billing_records):
        outcome = deliver(reconciler, "customer.subscription.deleted", make_subscription(status="canceled"))

        assert outcome.status == "processed"
        stored = billing_records.get_by_stripe_subscription_id("sub_1")
        assert stored.status is BillingStatus.CANCELED
        assert stored.canceled_at == T0

    def test_canceled_is_terminal(self, subscribed, reconciler, billing_records):
        deliver(reconciler, "customer.subscription.deleted", make_subscription(status="canceled"))

        deliver(
            reconciler,
            "customer.subscription.updated",
            make_subscription(status="active"),
            created=T0 + timedelta(days=2),
        )

        assert billing_records.get_by_stripe_subscription_id("sub_1").status is BillingStatus.CANCELED

    def test_deleted_unknown_subscription_is_ignored(self, reconciler):
        outcome = deliver(reconciler, "customer.subscription.deleted", make_subscription(sub_id="sub_x"))

        assert outcome.status == "ignored"

    def test_update_for_unseen_subscription_creates_record(self, reconciler, billing_records, student):
        outcome = deliver(
            reconciler,
            "customer.subscription.created",
            make_subscription(sub_id="sub_new", metadata={"userId": str(student.id), "planId": "annual"}),
        )

        assert outcome.status == "processed"
        stored = billing_records.get_by_stripe_subscription_id("sub_new")
        assert stored.user_id == student.id
        assert stored.plan_type is PlanType.ANNUAL

    def test_invoice_failed_marks_past_due(self, subscribed, reconciler, billing_records):
        outcome = deliver(
            reconciler,
            "invoice.payment_failed",
            {"id": "in_1", "subscription": "sub_1"},
            created=T0 + timedelta(days=30),
        )

        assert outcome.status == "processed"
        assert billing_records.get_by_stripe_subscription_id("sub_1").status is BillingStatus.PAST_DUE

    def test_invoice_failed_nested_subscription_reference(self, subscribed, reconciler, billing_records):
        invoice = {"id": "in_1", "parent": {"subscription_details": {"subscription": "sub_1"}}}

        deliver(reconciler, "invoice.payment_failed", invoice, created=T0 + timedelta(days=30))

        assert billing_records.get_by_stripe_subscription_id("sub_1").status is BillingStatus.PAST_DUE

    def test_invoice_paid_refreshes_from_stripe(self, subscribed, reconciler, gateway, billing_records):
        deliver(reconciler, "invoice.payment_failed", {"id": "in_1", "subscription": "sub_1"}, created=T0 + timedelta(days=30))
        gateway.subscriptions["sub_1"] = make_subscription(
            start=T0 + timedelta(days=30), end=T0 + timedelta(days=60)
        )

        outcome = deliver(
            reconciler,
            "invoice.payment_succeeded",
            {"id": "in_2", "subscription": "sub_1"},
            created=T0 + timedelta(days=31),
        )

        assert outcome.message == "Subscription renewed"
        stored = billing_records.get_by_stripe_subscription_id("sub_1")
        assert stored.status is BillingStatus.ACTIVE
        assert stored.current_period_end == T0 + timedelta(days=60)

    def test_invoice_without_subscription(self, reconciler):
        outcome = deliver(reconciler, "invoice.payment_succeeded", {"id": "in_1"})

        assert outcome.status == "ignored"


class TestDeliveryFailures:
    def test_invalid_signature_changes_nothing(self, reconciler, billing_records, student):
        payload = make_event(
            "checkout.session.completed", make_session(user_id=student.id, subscription=make_subscription())
        )
        header = sign(payload)
        # Flip one bit of the signed body
        tampered = bytearray(payload.encode("utf-8"))
        tampered[10] ^= 0x01

        with pytest.raises(AuthenticationFailure):
            reconciler.handle_webhook(bytes(tampered), header)

        assert billing_records.list_by_user_id(student.id) == []

    def test_missing_signature(self, reconciler):
        with pytest.raises(AuthenticationFailure):
            reconciler.handle_webhook(b"{}", None)

    def test_wrong_secret(self, reconciler):
        payload = make_event("invoice.payment_failed", {"id": "in_1"})

        with pytest.raises(AuthenticationFailure):
            reconciler.handle_webhook(payload.encode("utf-8"), sign(payload, secret="whsec_other"))

    def test_malformed_event_is_acknowledged(self, reconciler, student, caplog):
        bad_subscription = make_subscription(metadata={"userId": str(student.id)})
        bad_subscription["current_period_end"] = "not-a-timestamp"

        outcome = deliver(reconciler, "customer.subscription.updated", bad_subscription)

        assert outcome.status == "error"
        assert "Malformed webhook event evt_1" in caplog.text

    def test_unhandled_event_type(self, reconciler):
        outcome = deliver(reconciler, "customer.created", {"id": "cus_1"})

        assert outcome.status == "ignored"
        assert outcome.event_type == "customer.created"
