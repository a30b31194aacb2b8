"""
Gmail bill ingestion.

One sync run: pick the fetch window, pull bill-like emails, drop the ones
already recorded in ``synced_emails``, extract bill data, then reconcile each
candidate. Every email that reaches a decision (rejected, matched to an
existing bill, or created) gets exactly one ``SyncedEmail`` row so it is never
processed again. Candidates that fail on the quota or on an unexpected error
are left unmarked and retried on the next sync.

A new bill is committed in the same transaction as its ``SyncedEmail`` row.
The unique constraint on ``synced_emails (user_id, email_id)`` then
guarantees one bill per email when two syncs for the same user overlap: the
losing sync rolls back its bill along with the duplicate marker.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Optional
from loguru import logger
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from paypulse import models
from paypulse.models import utcnow
from paypulse.services.bill_service import BillCreated, BillDraft, BillLimitReached, create_bill
from paypulse.services.gmail_service import GmailMessage
from paypulse.services.google_service import GoogleOAuthClient, ensure_valid_token
from paypulse.services.openai_service import BillExtractor, ParsedBill
from paypulse.services.subscription_service import can_access_ai, tier_of
from paypulse.store import UserStore

CONFIDENCE_THRESHOLD = 70
AMOUNT_TOLERANCE = Decimal("0.50")
DEFAULT_DUE_DAY = 1
LOOKBACK_DAYS = 365
RETRY_WINDOW = timedelta(hours=1)
AUTO_DETECTED_PREFIX = "Auto-detected from:"


@dataclass
class GoogleNotConnected:
    message: str = "Google account not connected"


@dataclass
class SyncResult:
    emails_found: int = 0
    emails_scanned: int = 0
    bills_created: int = 0
    bills_matched: int = 0
    rejected: int = 0
    skipped_for_limit: int = 0
    failed: int = 0

    @property
    def message(self) -> str:
        if self.emails_scanned == 0:
            return "No new bill emails found"
        return "Gmail sync completed"


def compute_fetch_after(last_sync: Optional[datetime], now: datetime) -> datetime:
    """
    Start of the Gmail search window.

    A sync less than an hour after the previous one is treated as a retry
    after a fix and rescans the full lookback, as does a first sync.
    """
    lookback = now - timedelta(days=LOOKBACK_DAYS)
    if last_sync is None or last_sync > now - RETRY_WINDOW:
        return lookback
    return last_sync


def rejection_reason(parsed: Optional[ParsedBill]) -> Optional[str]:
    """Why a candidate cannot become a bill, checked in a fixed order; None if acceptable."""
    if parsed is None:
        return "Parse failed - no response from AI"
    if not parsed.is_bill:
        return "Not recognized as bill (isBill: false)"
    if parsed.confidence < CONFIDENCE_THRESHOLD:
        return f"Low confidence ({parsed.confidence}/100 - threshold is {CONFIDENCE_THRESHOLD})"
    if not parsed.name:
        return "No company name found"
    if parsed.amount is None:
        return "No amount found in email"
    if parsed.amount <= 0:
        return f"Invalid amount: ${parsed.amount}"
    return None


def build_notes(email: GmailMessage, parsed: ParsedBill) -> str:
    parts = [f'{AUTO_DETECTED_PREFIX} "{email.subject}"']
    if parsed.amount_text:
        parts.append(f'Amount found: "{parsed.amount_text}"')
    if parsed.due_date_text:
        parts.append(f'Due date found: "{parsed.due_date_text}"')
    return " | ".join(parts)


def find_matching_bill(store: UserStore, parsed: ParsedBill) -> Optional[models.Bill]:
    """Active bill with the same name (any case), amount within tolerance and same due day."""
    amount = Decimal(str(parsed.amount)).quantize(Decimal("0.01"))
    return store.active_bills().filter(
        func.lower(models.Bill.name) == parsed.name.lower(),
        models.Bill.amount >= amount - AMOUNT_TOLERANCE,
        models.Bill.amount <= amount + AMOUNT_TOLERANCE,
        models.Bill.due_day == (parsed.due_day or DEFAULT_DUE_DAY),
    ).order_by(models.Bill.created_at.asc(), models.Bill.id.asc()).first()


def _mark_synced(store: UserStore, email: GmailMessage, bill_id: Optional[int]) -> bool:
    store.add_synced_email(email.id, email.subject, email.sender, bill_id)
    try:
        store.commit()
        return True
    except IntegrityError:
        # Another sync for this user already recorded the email
        store.rollback()
        logger.warning(f"Email {email.id} was already marked as synced for user {store.user_id}")
        return False


def record_rejection(store: UserStore, email: GmailMessage, parsed: Optional[ParsedBill], reason: str) -> bool:
    store.add_rejected_bill(
        email_id=email.id,
        email_subject=email.subject,
        email_from=email.sender,
        parsed_name=parsed.name if parsed else None,
        parsed_amount=Decimal(str(parsed.amount)).quantize(Decimal("0.01")) if parsed and parsed.amount is not None else None,
        parsed_due_day=parsed.due_day if parsed else None,
        parsed_category=parsed.category if parsed else "Other",
        confidence=parsed.confidence if parsed else 0,
        rejection_reason=reason,
    )
    return _mark_synced(store, email, None)


def reconcile_candidates(store: UserStore, emails: List[GmailMessage],
                         parsed_bills: Dict[str, ParsedBill], result: Optional[SyncResult] = None) -> SyncResult:
    """Decide the fate of each new email; one failing candidate never stops the rest."""
    result = result or SyncResult()
    for email in emails:
        parsed = parsed_bills.get(email.id)
        if parsed is not None:
            logger.debug(f'Parsed email "{email.subject}" from {email.sender}: {parsed}')

        reason = rejection_reason(parsed)
        if reason:
            logger.info(f'Bill rejected from "{email.subject}": {reason}')
            try:
                if record_rejection(store, email, parsed, reason):
                    result.rejected += 1
            except Exception as e:
                store.rollback()
                result.failed += 1
                logger.exception(f"Failed to record rejection for email {email.id}: {e}")
            continue

        try:
            existing = find_matching_bill(store, parsed)
            if existing is not None:
                logger.info(f'Duplicate prevented: Bill "{parsed.name}" already exists (ID: {existing.id})')
                if _mark_synced(store, email, existing.id):
                    result.bills_matched += 1
                continue

            outcome = create_bill(store, BillDraft(
                name=parsed.name,
                amount=parsed.amount,
                due_day=parsed.due_day or DEFAULT_DUE_DAY,
                category=parsed.category,
                recurrence="monthly",
                notes=build_notes(email, parsed),
            ), commit=False)
            if isinstance(outcome, BillLimitReached):
                # Left unmarked so the email is picked up again after an upgrade
                logger.warning(f'Bill limit reached - skipping "{parsed.name}" '
                               f'({outcome.tier} tier: {outcome.limit} bills)')
                result.skipped_for_limit += 1
                continue
            if not isinstance(outcome, BillCreated):
                logger.error(f'Failed to create bill for "{parsed.name}": {outcome.error} - {outcome.message}')
                result.failed += 1
                continue

            # Bill and marker commit together; a lost race rolls back both
            if _mark_synced(store, email, outcome.bill.id):
                result.bills_created += 1
                logger.info(f'Bill created: "{parsed.name}" - ${parsed.amount} due day {parsed.due_day} '
                            f'(confidence: {parsed.confidence})')
        except Exception as e:
            store.rollback()
            result.failed += 1
            logger.exception(f'Failed to create bill for "{parsed.name}": {e}')
    return result


def run_gmail_sync(store: UserStore, oauth: GoogleOAuthClient, gmail_factory: Callable,
                   llm_client, model: str, now: Optional[datetime] = None):
    """
    Full sync for one user. Returns ``GoogleNotConnected`` or a ``SyncResult``.
    Gmail, token refresh and database errors propagate to the caller.
    """
    now = now or utcnow()
    prefs = store.preferences()
    if prefs is None or not prefs.google_access_token:
        return GoogleNotConnected()

    access_token = ensure_valid_token(prefs, oauth, now)
    store.commit()

    synced_ids = store.synced_email_ids()
    after = compute_fetch_after(prefs.last_gmail_sync, now)
    logger.info(f"Gmail sync: searching for emails after {after.isoformat()}")

    emails = list(gmail_factory(access_token).search_bill_emails(after))
    logger.info(f"Gmail sync: found {len(emails)} emails matching bill keywords")
    new_emails = [email for email in emails if email.id not in synced_ids]

    result = SyncResult(emails_found=len(emails), emails_scanned=len(new_emails))
    if new_emails:
        extractor = BillExtractor(llm_client, model, ai_categorization=can_access_ai(tier_of(prefs)))
        parsed_bills = extractor.parse_bills_from_emails(new_emails)
        reconcile_candidates(store, new_emails, parsed_bills, result)

    prefs = store.preferences()
    prefs.last_gmail_sync = now
    store.commit()
    logger.info(f"Gmail sync finished for user {store.user_id}: {result}")
    return result


def prepare_resync(store: UserStore, deactivate_auto_detected: bool = False) -> dict:
    """Forget every processed email so the next sync rescans the full lookback."""
    bills_removed = 0
    if deactivate_auto_detected:
        auto_bills = store.active_bills().filter(models.Bill.notes.like(f"{AUTO_DETECTED_PREFIX}%")).all()
        for bill in auto_bills:
            bill.is_active = False
        bills_removed = len(auto_bills)

    emails_cleared = store.clear_synced_emails()
    prefs = store.preferences()
    if prefs is not None:
        prefs.last_gmail_sync = None
    store.commit()
    return {"emails_cleared": emails_cleared, "bills_removed": bills_removed}
