"""Bill Creation Gate and the payment ledger."""

from datetime import datetime
from decimal import Decimal

import pytest

from conftest import add_bills
from paypulse import models
from paypulse.models import utcnow
from paypulse.services.bill_service import (
    BillCreated, BillDraft, BillLimitReached, InvalidBill, create_bill, deactivate_bill, is_paid_this_period,
    mark_paid, period_end, period_start, undo_payment,
)
from paypulse.store import UserStore


def draft(**overrides):
    fields = dict(name="Comcast", amount=79.99, due_day=12, category="Utilities")
    fields.update(overrides)
    return BillDraft(**fields)


class TestValidation:
    @pytest.mark.parametrize("overrides, error", [
        ({"name": "  "}, "Missing required fields"),
        ({"amount": None}, "Missing required fields"),
        ({"amount": 0}, "Invalid amount"),
        ({"amount": -3}, "Invalid amount"),
        ({"amount": "abc"}, "Invalid amount"),
        ({"due_day": 0}, "Invalid due day"),
        ({"due_day": 32}, "Invalid due day"),
        ({"category": "Groceries"}, "Invalid category"),
        ({"recurrence": "daily"}, "Invalid recurrence"),
    ])
    def test_invalid_drafts_insert_nothing(self, store, overrides, error):
        outcome = create_bill(store, draft(**overrides))
        assert isinstance(outcome, InvalidBill)
        assert outcome.error == error
        assert store.count_active_bills() == 0

    def test_amount_is_rounded_to_cents(self, store):
        outcome = create_bill(store, draft(amount="12.345"))
        assert isinstance(outcome, BillCreated)
        assert outcome.bill.amount == Decimal("12.35")


class TestQuota:
    def test_free_tier_at_limit_is_refused(self, store, prefs):
        add_bills(store, 10)
        outcome = create_bill(store, draft())

        assert isinstance(outcome, BillLimitReached)
        assert (outcome.current_count, outcome.limit, outcome.tier) == (10, 10, "free")
        assert "Upgrade to Pro" in outcome.message
        assert store.count_active_bills() == 10

    def test_missing_preferences_default_to_free_limit(self, store):
        add_bills(store, 10)
        outcome = create_bill(store, draft())
        assert isinstance(outcome, BillLimitReached)
        assert outcome.limit == 10

    def test_unlimited_when_limit_is_null(self, store, prefs, db_session):
        prefs.subscription_tier = "pro"
        prefs.bills_limit = None
        db_session.commit()
        add_bills(store, 25)

        assert isinstance(create_bill(store, draft()), BillCreated)
        assert store.count_active_bills() == 26

    def test_inactive_bills_do_not_count(self, store, prefs):
        add_bills(store, 10, is_active=False)
        assert isinstance(create_bill(store, draft()), BillCreated)

    def test_limit_is_per_owner(self, db_session, store, prefs, other_user):
        add_bills(UserStore(db_session, other_user.id), 10)
        assert isinstance(create_bill(store, draft()), BillCreated)


class TestPeriods:
    def test_monthly(self):
        today = datetime(2024, 2, 17, 15, 30)
        assert period_start("monthly", today) == datetime(2024, 2, 1)
        assert period_end("monthly", today) == datetime(2024, 3, 1)

    def test_weekly_starts_monday(self):
        today = datetime(2024, 2, 17)  # Saturday
        assert period_start("weekly", today) == datetime(2024, 2, 12)
        assert period_end("weekly", today) == datetime(2024, 2, 19)

    def test_yearly_and_once(self):
        today = datetime(2024, 7, 4)
        assert period_start("yearly", today) == datetime(2024, 1, 1)
        assert period_end("yearly", today) == datetime(2025, 1, 1)
        assert period_start("once", today) is None


class TestPayments:
    def test_mark_paid_then_undo_round_trip(self, store, db_session):
        bill = add_bills(store, 1, amount=Decimal("45.00"))[0]
        today = utcnow()
        assert is_paid_this_period(store, bill, today) is False

        payment = mark_paid(store, bill)
        assert payment.amount_paid == Decimal("45.00")
        assert is_paid_this_period(store, bill, today) is True

        assert undo_payment(store, bill, today).id == payment.id
        assert is_paid_this_period(store, bill, today) is False
        assert db_session.query(models.Payment).count() == 0

    def test_undo_only_touches_current_period(self, store, db_session):
        bill = add_bills(store, 1)[0]
        mark_paid(store, bill, paid_at=datetime(2024, 1, 10))

        assert undo_payment(store, bill, datetime(2024, 2, 10)) is None
        assert db_session.query(models.Payment).count() == 1

    def test_undo_removes_most_recent(self, store):
        bill = add_bills(store, 1)[0]
        older = mark_paid(store, bill, amount=10, paid_at=datetime(2024, 3, 2))
        newer = mark_paid(store, bill, amount=20, paid_at=datetime(2024, 3, 9))

        assert undo_payment(store, bill, datetime(2024, 3, 20)).id == newer.id
        assert [p.id for p in store.payments_for(bill)] == [older.id]

    def test_payments_of_another_owner_are_refused(self, db_session, store, other_user):
        foreign = add_bills(UserStore(db_session, other_user.id), 1)[0]
        with pytest.raises(PermissionError):
            store.payments_for(foreign)

    def test_deactivate_keeps_history(self, store, db_session):
        bill = add_bills(store, 1)[0]
        mark_paid(store, bill)
        deactivate_bill(store, bill)

        assert store.count_active_bills() == 0
        assert db_session.query(models.Payment).count() == 1
