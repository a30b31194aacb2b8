"""
External clients handed to routes and tasks.

Each provider builds its client from ``settings``; tests replace them through
``app.dependency_overrides``.
"""
from typing import Callable
from paypulse.config import settings
from paypulse.services.calendar_service import CalendarClient
from paypulse.services.gmail_service import GmailClient
from paypulse.services.google_service import GoogleOAuthClient
from paypulse.services.openai_service import build_openai_client
from paypulse.services.reminder_service import ReminderSender
from paypulse.services.stripe_service import StripeGateway


def get_google_oauth() -> GoogleOAuthClient:
    return GoogleOAuthClient(
        client_id=settings.GOOGLE_CLIENT_ID,
        client_secret=settings.GOOGLE_CLIENT_SECRET,
        redirect_uri=settings.GOOGLE_REDIRECT_URI,
    )


def get_gmail_factory() -> Callable[[str], GmailClient]:
    return GmailClient


def get_calendar_factory() -> Callable[..., CalendarClient]:
    return CalendarClient


def get_llm_client():
    """AzureOpenAI client, or None when the model is not configured."""
    return build_openai_client(settings)


def get_llm_model() -> str:
    return settings.AZURE_OPENAI_ENGINE


def get_stripe_gateway() -> StripeGateway:
    return StripeGateway(api_key=settings.STRIPE_SECRET_KEY, webhook_secret=settings.STRIPE_WEBHOOK_SECRET)


def get_reminder_sender() -> ReminderSender:
    return ReminderSender(
        api_key=settings.RESEND_API_KEY,
        from_email=settings.REMINDER_FROM_EMAIL,
        app_url=settings.APP_URL,
    )
