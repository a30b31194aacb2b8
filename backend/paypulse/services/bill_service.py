"""
Bill Creation Gate and the payment ledger.

``create_bill`` is the only code path that inserts bills, so manual entry and
Gmail sync share the same validation and the same tier quota.
"""
from calendar import monthrange
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional, Union
from loguru import logger
from paypulse import models
from paypulse.models import RECURRENCES, utcnow
from paypulse.services.categories import BILL_CATEGORIES
from paypulse.services.subscription_service import FREE_BILLS_LIMIT, has_reached_bills_limit, tier_of
from paypulse.store import UserStore


@dataclass
class BillDraft:
    name: str
    amount: object
    due_day: object
    category: str = "Other"
    recurrence: str = "monthly"
    notes: Optional[str] = None
    google_event_id: Optional[str] = None


@dataclass
class BillCreated:
    bill: models.Bill


@dataclass
class BillLimitReached:
    current_count: int
    limit: int
    tier: str

    @property
    def message(self) -> str:
        return (f"Your {self.tier} plan allows up to {self.limit} active bills. "
                f"You currently have {self.current_count}. Upgrade to Pro for unlimited bills!")


@dataclass
class InvalidBill:
    error: str
    message: str


CreateBillOutcome = Union[BillCreated, BillLimitReached, InvalidBill]


def _validate(draft: BillDraft):
    name = (draft.name or "").strip() if isinstance(draft.name, str) else ""
    if not name or draft.amount in (None, "") or draft.due_day in (None, ""):
        return InvalidBill("Missing required fields", "Bill must have: name, amount, and due_day")

    try:
        amount = Decimal(str(draft.amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        return InvalidBill("Invalid amount", "Amount must be greater than 0")
    if not amount.is_finite() or amount <= 0:
        return InvalidBill("Invalid amount", "Amount must be greater than 0")

    try:
        due_day = int(draft.due_day)
    except (TypeError, ValueError):
        return InvalidBill("Invalid due day", "Due day must be between 1 and 31")
    if due_day < 1 or due_day > 31:
        return InvalidBill("Invalid due day", "Due day must be between 1 and 31")

    category = draft.category or "Other"
    if category not in BILL_CATEGORIES:
        return InvalidBill("Invalid category", f"Category must be one of: {', '.join(BILL_CATEGORIES)}")

    recurrence = draft.recurrence or "monthly"
    if recurrence not in RECURRENCES:
        return InvalidBill("Invalid recurrence", f"Recurrence must be one of: {', '.join(RECURRENCES)}")

    return dict(name=name, amount=amount, due_day=due_day, category=category, recurrence=recurrence)


def create_bill(store: UserStore, draft: BillDraft, commit: bool = True) -> CreateBillOutcome:
    """
    Validate, enforce the tier quota, then insert one bill.

    With ``commit=False`` the row is only flushed and the caller owns the
    transaction, so it can commit the bill together with related rows.
    """
    fields = _validate(draft)
    if isinstance(fields, InvalidBill):
        return fields

    prefs = store.preferences()
    limit = prefs.bills_limit if prefs is not None else FREE_BILLS_LIMIT
    current_count = store.count_active_bills()
    if has_reached_bills_limit(current_count, limit):
        tier = tier_of(prefs)
        logger.info(f"Bill limit reached for user {store.user_id}: {current_count}/{limit} ({tier})")
        return BillLimitReached(current_count=current_count, limit=limit, tier=tier)

    bill = store.add_bill(
        notes=draft.notes or None,
        is_active=True,
        google_event_id=draft.google_event_id,
        **fields,
    )
    if commit:
        store.commit()
    return BillCreated(bill=bill)


def deactivate_bill(store: UserStore, bill: models.Bill):
    """Soft delete; payment history stays attached to the row."""
    bill.is_active = False
    store.commit()


# --- payments --------------------------------------------------------------

def period_start(recurrence: str, today: datetime) -> Optional[datetime]:
    """Start of the period a payment counts toward; None means all time."""
    day = today.replace(hour=0, minute=0, second=0, microsecond=0)
    if recurrence == "weekly":
        return day - timedelta(days=day.weekday())
    if recurrence == "yearly":
        return day.replace(month=1, day=1)
    if recurrence == "once":
        return None
    return day.replace(day=1)


def period_end(recurrence: str, today: datetime) -> Optional[datetime]:
    start = period_start(recurrence, today)
    if start is None:
        return None
    if recurrence == "weekly":
        return start + timedelta(days=7)
    if recurrence == "yearly":
        return start.replace(year=start.year + 1)
    return start + timedelta(days=monthrange(start.year, start.month)[1])


def _period_payments(store: UserStore, bill: models.Bill, today: datetime):
    query = store.payments_for(bill)
    start = period_start(bill.recurrence, today)
    if start is not None:
        query = query.filter(models.Payment.paid_at >= start,
                             models.Payment.paid_at < period_end(bill.recurrence, today))
    return query


def is_paid_this_period(store: UserStore, bill: models.Bill, today: Optional[datetime] = None) -> bool:
    return _period_payments(store, bill, today or utcnow()).first() is not None


def mark_paid(store: UserStore, bill: models.Bill, amount=None, notes: Optional[str] = None,
              paid_at: Optional[datetime] = None) -> models.Payment:
    payment = models.Payment(
        bill_id=bill.id,
        paid_at=paid_at or utcnow(),
        amount_paid=Decimal(str(amount)) if amount is not None else bill.amount,
        notes=notes,
    )
    store.db.add(payment)
    store.commit()
    return payment


def undo_payment(store: UserStore, bill: models.Bill, today: Optional[datetime] = None) -> Optional[models.Payment]:
    """Delete the most recent payment in the active period; None if there is none."""
    payment = _period_payments(store, bill, today or utcnow()).order_by(
        models.Payment.paid_at.desc(), models.Payment.id.desc()
    ).first()
    if payment is None:
        return None
    store.db.delete(payment)
    store.commit()
    return payment
