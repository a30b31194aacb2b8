"""Ingestion Reconciler and sync orchestration."""

import json
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import MagicMock

from conftest import FakeGmail, add_bills, fake_llm, make_email
from paypulse import models
from paypulse.services.openai_service import ParsedBill
from paypulse.services.sync_service import (
    GoogleNotConnected, SyncResult, _mark_synced, compute_fetch_after, prepare_resync, reconcile_candidates,
    rejection_reason, run_gmail_sync,
)

NOW = datetime(2024, 6, 1, 12, 0, 0)


def bill_json(name="TXU Energy", amount=162.0, due_day=7, confidence=90, category="Utilities"):
    return json.dumps({"isBill": True, "name": name, "amount": amount, "dueDay": due_day,
                       "category": category, "confidence": confidence, "amountText": f"${amount}"})


def parsed(**overrides):
    fields = dict(is_bill=True, name="TXU Energy", amount=162.0, due_day=7, category="Utilities", confidence=90)
    fields.update(overrides)
    return ParsedBill(**fields)


def sync(store, emails, llm, now=NOW):
    gmail = FakeGmail(emails)
    result = run_gmail_sync(store, MagicMock(), lambda token: gmail, llm, "gpt-test", now=now)
    return result, gmail


class TestFetchWindow:
    def test_first_sync_uses_full_lookback(self):
        assert compute_fetch_after(None, NOW) == NOW - timedelta(days=365)

    def test_recent_sync_is_treated_as_retry(self):
        assert compute_fetch_after(NOW - timedelta(minutes=20), NOW) == NOW - timedelta(days=365)

    def test_older_sync_resumes_from_last_sync(self):
        last = NOW - timedelta(days=2)
        assert compute_fetch_after(last, NOW) == last


class TestRejectionReason:
    def test_reasons_in_order(self):
        assert rejection_reason(None) == "Parse failed - no response from AI"
        assert rejection_reason(parsed(is_bill=False, confidence=10)) == "Not recognized as bill (isBill: false)"
        assert rejection_reason(parsed(confidence=55, name=None)) == "Low confidence (55/100 - threshold is 70)"
        assert rejection_reason(parsed(name=None, amount=None)) == "No company name found"
        assert rejection_reason(parsed(amount=None)) == "No amount found in email"
        assert rejection_reason(parsed(amount=-5.0)) == "Invalid amount: $-5.0"
        assert rejection_reason(parsed(amount=0.0)) == "Invalid amount: $0.0"

    def test_acceptable_candidate(self):
        assert rejection_reason(parsed(confidence=70)) is None


class TestReconcile:
    def test_creates_bill_and_marks_email(self, store, prefs, db_session):
        email = make_email("e1", subject="TXU Energy bill")
        result = reconcile_candidates(store, [email], {"e1": parsed(amount_text="$162.00", due_date_text="Jan 7")})

        assert result.bills_created == 1
        bill = store.active_bills().one()
        assert (bill.name, bill.amount, bill.due_day, bill.recurrence) == ("TXU Energy", Decimal("162.00"), 7, "monthly")
        assert bill.notes == 'Auto-detected from: "TXU Energy bill" | Amount found: "$162.00" | Due date found: "Jan 7"'
        synced = db_session.query(models.SyncedEmail).one()
        assert (synced.email_id, synced.bill_id) == ("e1", bill.id)

    def test_missing_due_day_defaults_to_first(self, store, prefs):
        reconcile_candidates(store, [make_email("e1")], {"e1": parsed(due_day=None)})
        assert store.active_bills().one().due_day == 1

    def test_low_confidence_is_rejected_and_marked(self, store, prefs, db_session):
        result = reconcile_candidates(store, [make_email("e1", subject="Maybe a bill")], {"e1": parsed(confidence=40)})

        assert result.rejected == 1
        assert store.count_active_bills() == 0
        rejected = store.rejected_bills()[0]
        assert rejected.rejection_reason.startswith("Low confidence (40/100")
        assert rejected.parsed_name == "TXU Energy"
        assert rejected.email_subject == "Maybe a bill"
        synced = db_session.query(models.SyncedEmail).one()
        assert synced.bill_id is None

    def test_missing_parse_result_is_rejected(self, store, prefs):
        result = reconcile_candidates(store, [make_email("e1")], {})
        assert result.rejected == 1
        assert store.rejected_bills()[0].rejection_reason == "Parse failed - no response from AI"

    def test_invalid_amount_never_creates_bill(self, store, prefs):
        reconcile_candidates(store, [make_email("e1"), make_email("e2")],
                             {"e1": parsed(amount=-5.0, confidence=99), "e2": parsed(amount=None, confidence=99)})
        assert store.count_active_bills() == 0
        reasons = {row.email_id: row.rejection_reason for row in store.rejected_bills()}
        assert reasons == {"e1": "Invalid amount: $-5.0", "e2": "No amount found in email"}

    def test_near_duplicate_attaches_to_existing_bill(self, store, prefs, db_session):
        reconcile_candidates(store, [make_email("e1"), make_email("e2")], {
            "e1": parsed(name="TXU Energy", amount=162.00),
            "e2": parsed(name="txu energy", amount=162.40),
        })

        bill = store.active_bills().one()
        bill_ids = {row.email_id: row.bill_id for row in db_session.query(models.SyncedEmail)}
        assert bill_ids == {"e1": bill.id, "e2": bill.id}

    def test_amount_outside_tolerance_is_a_new_bill(self, store, prefs):
        result = reconcile_candidates(store, [make_email("e1"), make_email("e2")], {
            "e1": parsed(amount=162.00),
            "e2": parsed(amount=162.51),
        })
        assert result.bills_created == 2

    def test_quota_skip_leaves_email_unmarked(self, store, prefs, db_session):
        add_bills(store, 10)
        result = reconcile_candidates(store, [make_email("e1")], {"e1": parsed()})

        assert result.skipped_for_limit == 1
        assert store.count_active_bills() == 10
        assert db_session.query(models.SyncedEmail).count() == 0
        assert store.rejected_bills() == []

    def test_one_failing_candidate_does_not_stop_the_rest(self, store, prefs, monkeypatch):
        from paypulse.services import sync_service

        original = sync_service.find_matching_bill

        def flaky(store, candidate):
            if candidate.name == "Broken Co":
                raise RuntimeError("database hiccup")
            return original(store, candidate)

        monkeypatch.setattr(sync_service, "find_matching_bill", flaky)
        result = reconcile_candidates(store, [make_email("e1"), make_email("e2")], {
            "e1": parsed(name="Broken Co"),
            "e2": parsed(name="Comcast", amount=80.0),
        })

        assert result.failed == 1
        assert result.bills_created == 1
        assert store.synced_email_ids() == {"e2"}


class TestOverlappingSyncs:
    def test_losing_sync_rolls_back_its_bill(self, engine, store, prefs, db_session, monkeypatch):
        from sqlalchemy.orm import sessionmaker
        from paypulse.services import sync_service
        from paypulse.store import UserStore

        other_session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
        other_store = UserStore(other_session, store.user_id)
        email = make_email("e1", subject="TXU Energy bill")
        original = sync_service.find_matching_bill
        concurrent = []

        def lookup_then_race(current, candidate):
            found = original(current, candidate)
            if current is store and not concurrent:
                # The other sync finishes the same email after this lookup saw nothing
                concurrent.append(reconcile_candidates(other_store, [email], {"e1": parsed()}))
            return found

        monkeypatch.setattr(sync_service, "find_matching_bill", lookup_then_race)
        try:
            result = reconcile_candidates(store, [email], {"e1": parsed()})
        finally:
            other_session.close()

        assert concurrent[0].bills_created == 1
        assert result.bills_created == 0
        assert result.failed == 0
        bills = db_session.query(models.Bill).all()
        assert len(bills) == 1
        synced = db_session.query(models.SyncedEmail).one()
        assert (synced.email_id, synced.bill_id) == ("e1", bills[0].id)

    def test_losing_rejection_is_not_recorded_twice(self, store, prefs, db_session):
        email = make_email("e1")
        store.add_synced_email("e1", email.subject, email.sender, None)
        store.commit()

        result = reconcile_candidates(store, [email], {"e1": parsed(confidence=10)})

        assert result.rejected == 0
        assert store.rejected_bills() == []
        assert db_session.query(models.SyncedEmail).count() == 1

    def test_infinite_amount_is_rejected_not_failed(self, store, prefs):
        from paypulse.services.openai_service import validate_parsed_bill

        candidate = validate_parsed_bill(json.loads('{"isBill": true, "name": "TXU Energy", '
                                                    '"amount": Infinity, "confidence": 95}'))
        result = reconcile_candidates(store, [make_email("e1")], {"e1": candidate})

        assert (result.rejected, result.failed) == (1, 0)
        assert store.rejected_bills()[0].rejection_reason == "No amount found in email"
        assert store.synced_email_ids() == {"e1"}


def test_duplicate_synced_email_is_rolled_back(store, prefs):
    email = make_email("e1")
    assert _mark_synced(store, email, None) is True
    assert _mark_synced(store, email, None) is False
    assert store.synced_email_ids() == {"e1"}


class TestRunGmailSync:
    def test_not_connected(self, store, user):
        result, _ = sync(store, [], fake_llm())
        assert isinstance(result, GoogleNotConnected)

    def test_sync_twice_is_idempotent(self, store, prefs, db_session):
        emails = [
            make_email("e1", subject="TXU Energy bill"),
            make_email("e2", subject="Weekly newsletter"),
        ]
        llm = fake_llm({"TXU Energy bill": bill_json()})

        first, _ = sync(store, emails, llm)
        assert (first.bills_created, first.rejected) == (1, 1)
        bills_before = db_session.query(models.Bill).count()
        synced_before = db_session.query(models.SyncedEmail).count()

        second, _ = sync(store, emails, llm, now=NOW + timedelta(days=1))

        assert second.emails_found == 2
        assert second.emails_scanned == 0
        assert second.message == "No new bill emails found"
        assert db_session.query(models.Bill).count() == bills_before
        assert db_session.query(models.SyncedEmail).count() == synced_before
        assert llm.chat.completions.create.call_count == 2

    def test_last_sync_recorded_even_without_new_mail(self, store, prefs):
        result, gmail = sync(store, [], fake_llm())

        assert isinstance(result, SyncResult)
        assert result.emails_found == 0
        assert store.preferences().last_gmail_sync == NOW
        assert gmail.searches == [NOW - timedelta(days=365)]

    def test_free_tier_uses_keyword_category(self, store, prefs):
        llm = fake_llm({"Netflix": bill_json(name="Netflix", amount=15.49, category="Entertainment")})
        sync(store, [make_email("e1", subject="Netflix")], llm)
        assert store.active_bills().one().category == "Subscriptions"

    def test_pro_tier_keeps_model_category(self, store, prefs, db_session):
        prefs.subscription_tier = "pro"
        prefs.bills_limit = None
        db_session.commit()
        llm = fake_llm({"Netflix": bill_json(name="Netflix", amount=15.49, category="Entertainment")})

        sync(store, [make_email("e1", subject="Netflix")], llm)

        assert store.active_bills().one().category == "Entertainment"

    def test_expired_token_is_refreshed_first(self, store, prefs, db_session):
        prefs.google_token_expiry = NOW - timedelta(minutes=5)
        db_session.commit()
        oauth = MagicMock()
        oauth.refresh.return_value = {"access_token": "fresh", "expires_in": 3600}
        tokens = []

        def factory(token):
            tokens.append(token)
            return FakeGmail([])

        run_gmail_sync(store, oauth, factory, fake_llm(), "gpt-test", now=NOW)

        assert tokens == ["fresh"]
        assert store.preferences().google_token_expiry == NOW + timedelta(seconds=3600)


def test_prepare_resync(store, prefs, db_session):
    add_bills(store, 1, name="Manual")
    add_bills(store, 1, name="Auto", notes='Auto-detected from: "Your bill"')
    store.add_synced_email("e1", "s", "f", None)
    prefs.last_gmail_sync = NOW
    db_session.commit()

    counts = prepare_resync(store, deactivate_auto_detected=True)

    assert counts == {"emails_cleared": 1, "bills_removed": 1}
    assert [bill.name for bill in store.active_bills()] == ["Manual"]
    assert store.synced_email_ids() == set()
    assert store.preferences().last_gmail_sync is None
