from calendar import monthrange
from datetime import date, timedelta
from typing import List, Optional
from urllib.parse import quote
import requests
from loguru import logger
from paypulse import models

CALENDAR_API_BASE = "https://www.googleapis.com/calendar/v3"

# Google Calendar event colour ids per bill category
CATEGORY_COLORS = {
    "Utilities": "9",
    "Subscriptions": "3",
    "Insurance": "10",
    "Housing": "5",
    "Transportation": "6",
    "Healthcare": "11",
    "Credit Cards": "2",
    "Food & Dining": "4",
    "Entertainment": "7",
    "Other": "8",
}
WEEKDAYS = ["SU", "MO", "TU", "WE", "TH", "FR", "SA"]


def _month_day(year: int, month: int, day: int) -> date:
    return date(year, month, min(day, monthrange(year, month)[1]))


def next_due_date(due_day: int, recurrence: str, today: Optional[date] = None) -> date:
    """
    Next occurrence on or after today.

    Weekly bills read ``due_day`` modulo 7 as a weekday (0 = Sunday) and always
    land in the future. Other recurrences use it as a day of month, clamped to
    the month length.
    """
    today = today or date.today()
    if recurrence == "weekly":
        target = due_day % 7
        current = (today.weekday() + 1) % 7
        days_until = (target - current + 7) % 7 or 7
        return today + timedelta(days=days_until)

    if today.day <= due_day:
        candidate = _month_day(today.year, today.month, due_day)
        if candidate >= today:
            return candidate
    year, month = (today.year + 1, 1) if today.month == 12 else (today.year, today.month + 1)
    return _month_day(year, month, due_day)


def recurrence_rule(recurrence: str, due_day: int) -> Optional[List[str]]:
    if recurrence == "monthly":
        return [f"RRULE:FREQ=MONTHLY;BYMONTHDAY={due_day}"]
    if recurrence == "weekly":
        return [f"RRULE:FREQ=WEEKLY;BYDAY={WEEKDAYS[due_day % 7]}"]
    if recurrence == "yearly":
        return ["RRULE:FREQ=YEARLY"]
    return None


def category_color(category: str) -> str:
    return CATEGORY_COLORS.get(category, "8")


def build_event(bill: models.Bill, today: Optional[date] = None, with_reminders: bool = True) -> dict:
    due = next_due_date(bill.due_day, bill.recurrence, today).isoformat()
    description = f"Amount: ${float(bill.amount):.2f}\nCategory: {bill.category}"
    if bill.notes:
        description += f"\nNotes: {bill.notes}"

    event = {
        "summary": f"Bill Due: {bill.name}",
        "description": description,
        "start": {"date": due},
        "end": {"date": due},
        "colorId": category_color(bill.category),
    }
    rule = recurrence_rule(bill.recurrence, bill.due_day)
    if rule:
        event["recurrence"] = rule
    if with_reminders:
        event["reminders"] = {
            "useDefault": False,
            "overrides": [
                {"method": "email", "minutes": 24 * 60 * 3},
                {"method": "popup", "minutes": 24 * 60},
            ],
        }
    return event


class CalendarClient:
    """Google Calendar events REST calls for one access token and calendar."""

    def __init__(self, access_token: str, calendar_id: str = "primary",
                 session: Optional[requests.Session] = None, timeout: float = 30):
        self.access_token = access_token
        self.calendar_id = calendar_id or "primary"
        self.session = session or requests.Session()
        self.timeout = timeout

    @property
    def headers(self) -> dict:
        return {"Authorization": f"Bearer {self.access_token}"}

    @property
    def events_url(self) -> str:
        return f"{CALENDAR_API_BASE}/calendars/{quote(self.calendar_id, safe='')}/events"

    def _check(self, resp, action: str):
        if not resp.ok:
            logger.error(f"Calendar {action} failed: {resp.status_code} - {resp.text}")
        resp.raise_for_status()

    def create_event(self, bill: models.Bill) -> Optional[str]:
        resp = self.session.post(self.events_url, json=build_event(bill), headers=self.headers,
                                 timeout=self.timeout)
        self._check(resp, "create")
        return resp.json().get("id")

    def update_event(self, bill: models.Bill, event_id: str):
        resp = self.session.put(f"{self.events_url}/{event_id}", json=build_event(bill, with_reminders=False),
                                headers=self.headers, timeout=self.timeout)
        self._check(resp, "update")

    def delete_event(self, event_id: str):
        resp = self.session.delete(f"{self.events_url}/{event_id}", headers=self.headers, timeout=self.timeout)
        self._check(resp, "delete")


def sync_all_bills(calendar: CalendarClient, bills: List[models.Bill]) -> int:
    """Create events for bills that have none; one failing bill does not stop the rest."""
    synced = 0
    for bill in bills:
        try:
            event_id = calendar.create_event(bill)
        except requests.RequestException as e:
            logger.error(f"Failed to sync bill {bill.id}: {e}")
            continue
        if event_id:
            bill.google_event_id = event_id
            synced += 1
    return synced
