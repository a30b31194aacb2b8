"""
Data access capabilities.

Every request made on behalf of a signed-in user goes through ``UserStore``,
which filters each query by the owner id. ``ServiceStore`` is the privileged
capability for system callers that must reach arbitrary users' rows (payment
webhooks matched by Stripe customer id, the reminder cron, the Gmail
diagnostic script). Nothing outside those callers should construct a
``ServiceStore``.
"""
from typing import List, Optional, Set
from sqlalchemy.orm import Session
from paypulse import models


class UserStore:
    """Owner-scoped access to bills, payments, sync markers and preferences."""

    def __init__(self, db: Session, user_id: int):
        self.db = db
        self.user_id = user_id

    # --- preferences -----------------------------------------------------
    def preferences(self) -> Optional[models.UserPreferences]:
        return self.db.query(models.UserPreferences).filter(
            models.UserPreferences.user_id == self.user_id
        ).first()

    def get_or_create_preferences(self) -> models.UserPreferences:
        prefs = self.preferences()
        if prefs is None:
            prefs = models.UserPreferences(user_id=self.user_id)
            self.db.add(prefs)
            self.db.flush()
        return prefs

    # --- bills -----------------------------------------------------------
    def bills(self):
        return self.db.query(models.Bill).filter(models.Bill.user_id == self.user_id)

    def active_bills(self):
        return self.bills().filter(models.Bill.is_active.is_(True))

    def count_active_bills(self) -> int:
        return self.active_bills().count()

    def get_bill(self, bill_id: int) -> Optional[models.Bill]:
        return self.bills().filter(models.Bill.id == bill_id).first()

    def add_bill(self, **fields) -> models.Bill:
        bill = models.Bill(user_id=self.user_id, **fields)
        self.db.add(bill)
        self.db.flush()
        return bill

    # --- payments --------------------------------------------------------
    def payments_for(self, bill: models.Bill):
        if bill.user_id != self.user_id:
            raise PermissionError("Bill belongs to another user")
        return self.db.query(models.Payment).filter(models.Payment.bill_id == bill.id)

    # --- sync bookkeeping ------------------------------------------------
    def synced_email_ids(self) -> Set[str]:
        rows = self.db.query(models.SyncedEmail.email_id).filter(
            models.SyncedEmail.user_id == self.user_id
        ).all()
        return {row[0] for row in rows}

    def add_synced_email(self, email_id: str, subject: str, sender: str,
                         bill_id: Optional[int]) -> models.SyncedEmail:
        row = models.SyncedEmail(
            user_id=self.user_id,
            email_id=email_id,
            email_subject=subject,
            email_from=sender,
            bill_id=bill_id,
        )
        self.db.add(row)
        return row

    def clear_synced_emails(self) -> int:
        return self.db.query(models.SyncedEmail).filter(
            models.SyncedEmail.user_id == self.user_id
        ).delete(synchronize_session=False)

    def add_rejected_bill(self, **fields) -> models.RejectedBill:
        row = models.RejectedBill(user_id=self.user_id, **fields)
        self.db.add(row)
        return row

    def rejected_bills(self) -> List[models.RejectedBill]:
        return self.db.query(models.RejectedBill).filter(
            models.RejectedBill.user_id == self.user_id
        ).order_by(models.RejectedBill.created_at.desc(), models.RejectedBill.id.desc()).all()

    def commit(self):
        self.db.commit()

    def rollback(self):
        self.db.rollback()


class ServiceStore:
    """Privileged access that bypasses owner filtering."""

    def __init__(self, db: Session):
        self.db = db

    def preferences_for_user(self, user_id: int) -> Optional[models.UserPreferences]:
        return self.db.query(models.UserPreferences).filter(
            models.UserPreferences.user_id == user_id
        ).first()

    def preferences_by_customer(self, customer_id: str) -> Optional[models.UserPreferences]:
        if not customer_id:
            return None
        return self.db.query(models.UserPreferences).filter(
            models.UserPreferences.stripe_customer_id == customer_id
        ).first()

    def preferences_with_reminders(self) -> List[models.UserPreferences]:
        return self.db.query(models.UserPreferences).filter(
            models.UserPreferences.reminder_enabled.is_(True)
        ).all()

    def connected_preferences(self) -> List[models.UserPreferences]:
        return self.db.query(models.UserPreferences).filter(
            models.UserPreferences.google_access_token.isnot(None)
        ).all()

    def user_store(self, user_id: int) -> UserStore:
        return UserStore(self.db, user_id)

    def commit(self):
        self.db.commit()

    def rollback(self):
        self.db.rollback()
