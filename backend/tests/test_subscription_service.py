"""Tier gates and the webhook-driven subscription state machine."""

from datetime import datetime

import pytest

from paypulse.services.subscription_service import (
    apply_webhook_event, can_access_advanced_reminders, can_access_ai, can_access_analytics, can_export,
    get_bills_limit, has_reached_bills_limit,
)


def event(event_type, obj):
    return {"id": "evt_1", "type": event_type, "data": {"object": obj}}


@pytest.fixture
def pro_prefs(prefs, db_session):
    prefs.subscription_tier = "pro"
    prefs.subscription_status = "active"
    prefs.stripe_customer_id = "cus_123"
    prefs.stripe_subscription_id = "sub_123"
    prefs.bills_limit = None
    db_session.commit()
    return prefs


def test_tier_table():
    assert get_bills_limit("free") == 10
    assert get_bills_limit("pro") is None
    assert can_access_ai("free") is False
    assert can_access_ai("pro") is True
    assert can_export("unknown-tier") is False
    assert can_access_analytics("pro") is True
    assert can_access_advanced_reminders("free") is False


def test_limit_check():
    assert has_reached_bills_limit(10, 10) is True
    assert has_reached_bills_limit(9, 10) is False
    assert has_reached_bills_limit(500, None) is False


def test_checkout_completed_upgrades_by_metadata_user(service_store, prefs, user):
    applied = apply_webhook_event(service_store, event("checkout.session.completed", {
        "customer": "cus_new", "subscription": "sub_new", "metadata": {"user_id": str(user.id), "plan": "monthly"},
    }))

    assert applied is True
    assert prefs.subscription_tier == "pro"
    assert prefs.subscription_status == "active"
    assert prefs.bills_limit is None
    assert prefs.stripe_subscription_id == "sub_new"
    assert prefs.stripe_customer_id == "cus_new"


def test_checkout_completed_falls_back_to_customer(service_store, prefs, db_session):
    prefs.stripe_customer_id = "cus_123"
    db_session.commit()

    apply_webhook_event(service_store, event("checkout.session.completed",
                                             {"customer": "cus_123", "subscription": "sub_9"}))

    assert prefs.subscription_tier == "pro"


def test_subscription_deleted_downgrades(service_store, pro_prefs):
    apply_webhook_event(service_store, event("customer.subscription.deleted", {"customer": "cus_123"}))

    assert pro_prefs.subscription_tier == "free"
    assert pro_prefs.subscription_status == "canceled"
    assert pro_prefs.bills_limit == 10
    assert pro_prefs.stripe_subscription_id is None


def test_subscription_updated_copies_status_and_period(service_store, pro_prefs):
    apply_webhook_event(service_store, event("customer.subscription.updated", {
        "customer": "cus_123", "status": "trialing", "current_period_end": 1735689600,
    }))

    assert pro_prefs.subscription_status == "trialing"
    assert pro_prefs.subscription_current_period_end == datetime(2025, 1, 1)
    assert pro_prefs.subscription_tier == "pro"


def test_payment_failed_keeps_tier_then_recovers(service_store, pro_prefs):
    apply_webhook_event(service_store, event("invoice.payment_failed", {"customer": "cus_123"}))
    assert (pro_prefs.subscription_tier, pro_prefs.subscription_status) == ("pro", "past_due")

    apply_webhook_event(service_store, event("invoice.payment_succeeded", {"customer": "cus_123"}))
    assert pro_prefs.subscription_status == "active"


def test_payment_succeeded_leaves_other_statuses(service_store, pro_prefs, db_session):
    pro_prefs.subscription_status = "trialing"
    db_session.commit()
    apply_webhook_event(service_store, event("invoice.payment_succeeded", {"customer": "cus_123"}))
    assert pro_prefs.subscription_status == "trialing"


def test_replayed_event_is_idempotent(service_store, pro_prefs):
    deleted = event("customer.subscription.deleted", {"customer": "cus_123"})
    apply_webhook_event(service_store, deleted)
    apply_webhook_event(service_store, deleted)
    assert (pro_prefs.subscription_tier, pro_prefs.bills_limit) == ("free", 10)


def test_unknown_customer_and_event_type_are_ignored(service_store, pro_prefs):
    assert apply_webhook_event(service_store, event("customer.subscription.deleted", {"customer": "cus_other"}))
    assert pro_prefs.subscription_tier == "pro"
    assert apply_webhook_event(service_store, event("charge.refunded", {"customer": "cus_123"})) is False
