from datetime import datetime
from pydantic import BaseModel, Field, field_validator

class BillCreate(BaseModel):
    name: str | None = None
    amount: float | None = None
    due_day: int | None = None
    category: str | None = "Other"
    recurrence: str | None = "monthly"
    notes: str | None = None

class BillOut(BaseModel):
    id: int
    user_id: int
    name: str
    amount: float
    due_day: int
    recurrence: str
    category: str
    notes: str | None = None
    is_active: bool
    google_event_id: str | None = None
    created_at: datetime
    is_paid_this_period: bool = False

    class Config:
        from_attributes = True

class PaymentCreate(BaseModel):
    amount: float | None = Field(default=None, allow_inf_nan=False)
    notes: str | None = None

class PaymentOut(BaseModel):
    id: int
    bill_id: int
    paid_at: datetime
    amount_paid: float
    notes: str | None = None

    class Config:
        from_attributes = True

class RejectedBillOut(BaseModel):
    id: int
    email_id: str
    email_subject: str | None = None
    email_from: str | None = None
    parsed_name: str | None = None
    parsed_amount: float | None = None
    parsed_due_day: int | None = None
    parsed_category: str | None = None
    confidence: int | None = None
    rejection_reason: str
    created_at: datetime

    class Config:
        from_attributes = True

class PreferencesOut(BaseModel):
    reminder_enabled: bool = True
    reminder_days: list[int] = [1, 3, 7]
    gmail_sync_enabled: bool = False
    google_calendar_id: str = "primary"
    email: str | None = None
    last_gmail_sync: datetime | None = None
    google_connected: bool = False
    subscription_tier: str = "free"
    subscription_status: str | None = None
    subscription_current_period_end: datetime | None = None
    bills_limit: int | None = 10

    class Config:
        from_attributes = True

class PreferencesUpdate(BaseModel):
    reminder_enabled: bool = True
    reminder_days: list[int] = [1, 3, 7]
    gmail_sync_enabled: bool = False
    google_calendar_id: str = "primary"
    email: str | None = None

    @field_validator("reminder_days")
    @classmethod
    def reminder_days_in_range(cls, value: list[int]) -> list[int]:
        # Out of range days are dropped, not rejected
        return sorted({day for day in value if 0 <= day <= 30})

class ResyncRequest(BaseModel):
    delete_auto_detected_bills: bool = False

class CategorizeRequest(BaseModel):
    bill_name: str

class CalendarSyncRequest(BaseModel):
    bill_id: int
    action: str

class CheckoutRequest(BaseModel):
    price_id: str | None = None
    plan: str | None = None
