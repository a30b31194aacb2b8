from datetime import datetime, timezone
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import (
    JSON, Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer,
    Numeric, String, Text, UniqueConstraint,
)

Base = declarative_base()

RECURRENCES = ("monthly", "weekly", "yearly", "once")

def utcnow() -> datetime:
    """Naive UTC timestamp; all DateTime columns store UTC without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    bills = relationship("Bill", back_populates="user", cascade="all, delete-orphan")
    preferences = relationship("UserPreferences", back_populates="user", uselist=False,
                               cascade="all, delete-orphan")

class Bill(Base):
    __tablename__ = "bills"
    __table_args__ = (
        CheckConstraint("due_day >= 1 AND due_day <= 31", name="ck_bills_due_day"),
        CheckConstraint("amount >= 0", name="ck_bills_amount"),
    )
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    name = Column(String, nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    due_day = Column(Integer, nullable=False)
    recurrence = Column(String(10), nullable=False, default="monthly")
    category = Column(String, nullable=False, default="Other")
    notes = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    google_event_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    user = relationship("User", back_populates="bills")
    payments = relationship("Payment", back_populates="bill", cascade="all, delete-orphan",
                            passive_deletes=True)

class Payment(Base):
    __tablename__ = "payments"
    id = Column(Integer, primary_key=True, index=True)
    bill_id = Column(Integer, ForeignKey("bills.id", ondelete="CASCADE"), index=True, nullable=False)
    paid_at = Column(DateTime, default=utcnow, nullable=False)
    amount_paid = Column(Numeric(10, 2), nullable=False)
    notes = Column(Text, nullable=True)

    bill = relationship("Bill", back_populates="payments")

class SyncedEmail(Base):
    """Idempotence marker: one row per (user, Gmail message id), ever."""
    __tablename__ = "synced_emails"
    __table_args__ = (UniqueConstraint("user_id", "email_id", name="uq_synced_emails_user_email"),)
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    email_id = Column(String, index=True, nullable=False)
    email_subject = Column(Text, nullable=True)
    email_from = Column(Text, nullable=True)
    # NULL means the email was processed and rejected
    bill_id = Column(Integer, ForeignKey("bills.id", ondelete="SET NULL"), nullable=True)
    processed_at = Column(DateTime, default=utcnow, nullable=False)

class RejectedBill(Base):
    __tablename__ = "rejected_bills"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    email_id = Column(String, index=True, nullable=False)
    email_subject = Column(Text, nullable=True)
    email_from = Column(Text, nullable=True)
    parsed_name = Column(Text, nullable=True)
    parsed_amount = Column(Numeric(10, 2), nullable=True)
    parsed_due_day = Column(Integer, nullable=True)
    parsed_category = Column(String, nullable=True)
    confidence = Column(Integer, nullable=True)
    rejection_reason = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

class UserPreferences(Base):
    __tablename__ = "user_preferences"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    reminder_enabled = Column(Boolean, default=True, nullable=False)
    reminder_days = Column(JSON, default=lambda: [1, 3, 7], nullable=False)
    gmail_sync_enabled = Column(Boolean, default=False, nullable=False)
    google_access_token = Column(Text, nullable=True)
    google_refresh_token = Column(Text, nullable=True)
    google_token_expiry = Column(DateTime, nullable=True)
    google_calendar_id = Column(String, default="primary", nullable=False)
    last_gmail_sync = Column(DateTime, nullable=True)
    email = Column(String, nullable=True)
    subscription_tier = Column(String(20), default="free", nullable=False)
    subscription_status = Column(String(20), nullable=True)
    stripe_customer_id = Column(String(255), unique=True, nullable=True)
    stripe_subscription_id = Column(String(255), unique=True, nullable=True)
    subscription_current_period_end = Column(DateTime, nullable=True)
    # NULL means unlimited (pro tier)
    bills_limit = Column(Integer, default=10, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    user = relationship("User", back_populates="preferences")
