"""
Subscription tiers, feature gates and the Stripe-driven state machine.

Tier and status are orthogonal: ``free``/``pro`` decides limits and features,
``subscription_status`` mirrors what Stripe reports. Only verified webhook
events move a user between tiers.
"""
from datetime import datetime, timezone
from typing import Callable, Dict, Optional
from loguru import logger
from paypulse import models
from paypulse.store import ServiceStore

FREE_BILLS_LIMIT = 10

SUBSCRIPTION_TIERS = {
    "free": {
        "name": "Free",
        "price": 0,
        "bills_limit": FREE_BILLS_LIMIT,
        "gmail_sync_limit": 50,
        "ai_categorization": False,
        "analytics": False,
        "advanced_reminders": False,
        "export": False,
    },
    "pro": {
        "name": "Pro",
        "price_monthly": 4.99,
        "price_yearly": 49,
        "bills_limit": None,
        "gmail_sync_limit": None,
        "ai_categorization": True,
        "analytics": True,
        "advanced_reminders": True,
        "export": True,
    },
}


def _tier(tier: Optional[str]) -> dict:
    return SUBSCRIPTION_TIERS.get(tier or "free", SUBSCRIPTION_TIERS["free"])


def get_bills_limit(tier: str) -> Optional[int]:
    return _tier(tier)["bills_limit"]


def can_access_ai(tier: str) -> bool:
    return _tier(tier)["ai_categorization"]


def can_access_analytics(tier: str) -> bool:
    return _tier(tier)["analytics"]


def can_access_advanced_reminders(tier: str) -> bool:
    return _tier(tier)["advanced_reminders"]


def can_export(tier: str) -> bool:
    return _tier(tier)["export"]


def has_reached_bills_limit(current_count: int, limit: Optional[int]) -> bool:
    if limit is None:
        return False
    return current_count >= limit


def tier_of(prefs: Optional[models.UserPreferences]) -> str:
    return prefs.subscription_tier if prefs and prefs.subscription_tier else "free"


# --- webhook state machine -----------------------------------------------

def _from_epoch(value) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def _current_period_end(subscription: dict) -> Optional[datetime]:
    # Newer API versions report the period on subscription items
    period_end = subscription.get("current_period_end")
    if not period_end:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            period_end = items[0].get("current_period_end")
    return _from_epoch(period_end)


def handle_checkout_completed(store: ServiceStore, session: dict):
    metadata = session.get("metadata") or {}
    customer_id = session.get("customer")
    prefs = None
    if metadata.get("user_id"):
        prefs = store.preferences_for_user(int(metadata["user_id"]))
    if prefs is None:
        prefs = store.preferences_by_customer(customer_id)
    if prefs is None:
        logger.warning(f"Checkout completed but no matching user (customer {customer_id})")
        return

    prefs.subscription_tier = "pro"
    prefs.subscription_status = "active"
    prefs.stripe_subscription_id = session.get("subscription")
    prefs.bills_limit = None
    if customer_id and not prefs.stripe_customer_id:
        prefs.stripe_customer_id = customer_id
    store.commit()
    logger.info(f"User {prefs.user_id} upgraded to Pro")


def handle_subscription_updated(store: ServiceStore, subscription: dict):
    customer_id = subscription.get("customer")
    prefs = store.preferences_by_customer(customer_id)
    if prefs is None:
        logger.warning(f"Subscription updated but customer not found: {customer_id}")
        return

    prefs.subscription_status = subscription.get("status")
    prefs.subscription_current_period_end = _current_period_end(subscription)
    store.commit()
    logger.info(f"Subscription updated for user {prefs.user_id}: {prefs.subscription_status}")


def handle_subscription_deleted(store: ServiceStore, subscription: dict):
    customer_id = subscription.get("customer")
    prefs = store.preferences_by_customer(customer_id)
    if prefs is None:
        logger.warning(f"Subscription deleted but customer not found: {customer_id}")
        return

    prefs.subscription_tier = "free"
    prefs.subscription_status = "canceled"
    prefs.bills_limit = FREE_BILLS_LIMIT
    prefs.stripe_subscription_id = None
    store.commit()
    logger.info(f"User {prefs.user_id} downgraded to Free tier")


def handle_payment_failed(store: ServiceStore, invoice: dict):
    customer_id = invoice.get("customer")
    prefs = store.preferences_by_customer(customer_id)
    if prefs is None:
        logger.warning(f"Payment failed but customer not found: {customer_id}")
        return

    # Tier is untouched: Pro features stay until Stripe cancels the subscription
    prefs.subscription_status = "past_due"
    store.commit()
    logger.warning(f"Payment failed for user {prefs.user_id}")


def handle_payment_succeeded(store: ServiceStore, invoice: dict):
    customer_id = invoice.get("customer")
    prefs = store.preferences_by_customer(customer_id)
    if prefs is None:
        logger.warning(f"Payment succeeded but customer not found: {customer_id}")
        return

    if prefs.subscription_status == "past_due":
        prefs.subscription_status = "active"
        store.commit()
        logger.info(f"Payment succeeded, subscription reactivated for user {prefs.user_id}")


EVENT_HANDLERS: Dict[str, Callable[[ServiceStore, dict], None]] = {
    "checkout.session.completed": handle_checkout_completed,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
    "invoice.payment_failed": handle_payment_failed,
    "invoice.payment_succeeded": handle_payment_succeeded,
}


def apply_webhook_event(store: ServiceStore, event: dict) -> bool:
    """
    Apply a verified Stripe event. Returns False for event types we ignore.
    Handlers are idempotent: replaying an event leaves the same state.
    """
    event_type = event.get("type")
    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.info(f"Unhandled event type: {event_type}")
        return False
    obj = (event.get("data") or {}).get("object") or {}
    handler(store, obj)
    return True
