"""
Bill reminder emails.

Selection is by days until the next due day, wrapping into next month when
the day has already passed. The cron path walks every owner with reminders
enabled through the privileged store and counts failures instead of raising.
"""
import os
from calendar import monthrange
from dataclasses import dataclass
from datetime import date, timedelta
from typing import List, Optional
import requests
from jinja2 import Environment, FileSystemLoader, select_autoescape
from loguru import logger
from paypulse.store import ServiceStore, UserStore

RESEND_API_URL = "https://api.resend.com/emails"
DEFAULT_REMINDER_DAYS = [1, 3, 7]
TEST_WINDOW_DAYS = 7
TEMPLATES_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), "templates")

templates = Environment(loader=FileSystemLoader(TEMPLATES_DIR), autoescape=select_autoescape(["html"]))


@dataclass
class BillReminder:
    bill_name: str
    amount: float
    due_date: str
    days_until_due: int
    category: str


@dataclass
class ReminderResult:
    success: bool
    error: Optional[str] = None


def days_until_due(due_day: int, today: date) -> int:
    if due_day >= today.day:
        return due_day - today.day
    days_in_month = monthrange(today.year, today.month)[1]
    return days_in_month - today.day + due_day


def format_due_date(value: date) -> str:
    return f"{value:%B} {value.day}, {value.year}"


def collect_reminders(bills, today: date, reminder_days=None, within_days: Optional[int] = None) -> List[BillReminder]:
    """Bills due exactly ``reminder_days`` away, or anywhere inside ``within_days`` when given."""
    days = reminder_days or DEFAULT_REMINDER_DAYS
    reminders = []
    for bill in bills:
        until = days_until_due(bill.due_day, today)
        wanted = until <= within_days if within_days is not None else until in days
        if wanted:
            reminders.append(BillReminder(
                bill_name=bill.name,
                amount=float(bill.amount),
                due_date=format_due_date(today + timedelta(days=until)),
                days_until_due=until,
                category=bill.category,
            ))
    return reminders


def _plural(count: int) -> str:
    return "s" if count > 1 else ""


def render_text(bills: List[BillReminder], total: float) -> str:
    lines = [
        "Bill Reminder",
        "",
        f"You have {len(bills)} bill{_plural(len(bills))} coming up totaling ${total:.2f}",
        "",
    ]
    for bill in bills:
        lines.append(f"- {bill.bill_name}: ${bill.amount:.2f} (due {bill.due_date}, "
                     f"{bill.days_until_due} days left)")
    lines += ["", "---", "Sent by Bill Calendar"]
    return "\n".join(lines)


class ReminderSender:
    """Sends reminder emails through the Resend HTTP API."""

    def __init__(self, api_key: str, from_email: str, app_url: str = "",
                 session: Optional[requests.Session] = None, timeout: float = 30):
        self.api_key = api_key
        self.from_email = from_email
        self.app_url = app_url
        self.session = session or requests.Session()
        self.timeout = timeout

    def send(self, to: str, bills: List[BillReminder]) -> ReminderResult:
        if not self.api_key:
            logger.error("RESEND_API_KEY not configured")
            return ReminderResult(False, "Email service not configured")

        total = sum(bill.amount for bill in bills)
        html = templates.get_template("reminder_email.html").render(
            bills=bills, total=total, settings_url=f"{self.app_url}/settings"
        )
        payload = {
            "from": self.from_email,
            "to": [to],
            "subject": f"Bill Reminder: {len(bills)} bill{_plural(len(bills))} due soon (${total:.2f})",
            "html": html,
            "text": render_text(bills, total),
        }
        try:
            resp = self.session.post(RESEND_API_URL, json=payload, timeout=self.timeout,
                                     headers={"Authorization": f"Bearer {self.api_key}"})
        except requests.RequestException as e:
            logger.error(f"Error sending email: {e}")
            return ReminderResult(False, str(e))

        if not resp.ok:
            try:
                message = resp.json().get("message") or resp.text
            except ValueError:
                message = resp.text
            logger.error(f"Resend error: {resp.status_code} - {message}")
            return ReminderResult(False, message)
        return ReminderResult(True)


def send_due_reminders(store: ServiceStore, sender: ReminderSender, today: Optional[date] = None) -> dict:
    """One email per owner whose bills fall on one of their reminder days."""
    today = today or date.today()
    preferences = store.preferences_with_reminders()
    if not preferences:
        return {"message": "No users with reminders enabled", "sent": 0, "users_checked": 0}

    sent = 0
    failed = 0
    for prefs in preferences:
        if not prefs.email:
            continue
        bills = store.user_store(prefs.user_id).active_bills().all()
        reminders = collect_reminders(bills, today, prefs.reminder_days)
        if not reminders:
            continue
        result = sender.send(prefs.email, reminders)
        if result.success:
            sent += 1
        else:
            failed += 1
            logger.error(f"Failed to send reminder to {prefs.email}: {result.error}")

    logger.info(f"Reminders sent: {sent}, failed: {failed}, users checked: {len(preferences)}")
    return {"message": "Reminders sent", "sent": sent, "failed": failed, "users_checked": len(preferences)}


def send_test_reminder(store: UserStore, sender: ReminderSender, today: Optional[date] = None) -> dict:
    """Send the current owner everything due in the next week."""
    today = today or date.today()
    prefs = store.preferences()
    bills = store.active_bills().all()
    if not bills:
        return {"message": "No active bills"}
    reminders = collect_reminders(bills, today, within_days=TEST_WINDOW_DAYS)
    if not reminders:
        return {"message": f"No bills due in the next {TEST_WINDOW_DAYS} days"}
    result = sender.send(prefs.email, reminders)
    return {"success": result.success, "error": result.error, "bills_included": len(reminders)}
