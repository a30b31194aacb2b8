from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session
import stripe
from loguru import logger
from paypulse.auth import get_current_user, get_user_store
from paypulse.config import settings
from paypulse.database import get_db
from paypulse.dependencies import get_stripe_gateway
from paypulse.services.stripe_service import StripeGateway, WebhookVerificationError
from paypulse.services.subscription_service import apply_webhook_event
from paypulse.store import ServiceStore, UserStore
from paypulse import models, schemas

router = APIRouter()

PLANS = ("monthly", "yearly")

@router.post("/create-checkout")
def create_checkout(body: schemas.CheckoutRequest, current_user: models.User = Depends(get_current_user),
                    store: UserStore = Depends(get_user_store),
                    gateway: StripeGateway = Depends(get_stripe_gateway)):
    """Start a subscription checkout, creating the Stripe customer on first use."""
    if not body.price_id or body.plan not in PLANS:
        raise HTTPException(status_code=400,
                            detail="Invalid parameters. Expected price_id and plan (monthly or yearly)")
    if not settings.APP_URL:
        logger.error("APP_URL is not configured")
        raise HTTPException(status_code=500, detail="Server configuration error")

    prefs = store.get_or_create_preferences()
    try:
        if not prefs.stripe_customer_id:
            prefs.stripe_customer_id = gateway.create_customer(prefs.email or current_user.email, current_user.id)
            store.commit()
        return gateway.create_checkout_session(
            customer_id=prefs.stripe_customer_id,
            price_id=body.price_id,
            plan=body.plan,
            user_id=current_user.id,
            app_url=settings.APP_URL,
        )
    except stripe.StripeError as e:
        logger.error(f"Checkout session creation error: {e}")
        raise HTTPException(status_code=500, detail="Failed to create checkout session")

@router.post("/create-portal")
def create_portal(store: UserStore = Depends(get_user_store),
                  gateway: StripeGateway = Depends(get_stripe_gateway)):
    prefs = store.preferences()
    if prefs is None or not prefs.stripe_customer_id:
        raise HTTPException(status_code=400, detail={
            "error": "No active subscription",
            "message": "You need to subscribe before accessing the customer portal.",
        })
    try:
        url = gateway.create_portal_session(prefs.stripe_customer_id, f"{settings.APP_URL}/settings")
    except stripe.StripeError as e:
        logger.error(f"Portal session creation error for customer {prefs.stripe_customer_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to create portal session")
    return {"url": url}

@router.post("/webhook")
async def stripe_webhook(request: Request, stripe_signature: str = Header(None),
                         db: Session = Depends(get_db),
                         gateway: StripeGateway = Depends(get_stripe_gateway)):
    """
    Verify and apply a Stripe event. Verification failures are the only
    rejection; once the signature is trusted the event is always acknowledged
    so Stripe does not keep retrying it.
    """
    payload = await request.body()
    try:
        event = gateway.verify_event(payload, stripe_signature)
    except WebhookVerificationError as e:
        logger.error(f"Webhook signature verification failed: {e}")
        raise HTTPException(status_code=400, detail="Invalid signature")

    logger.info(f"Received Stripe webhook event: {event.get('type')}")
    store = ServiceStore(db)
    try:
        apply_webhook_event(store, event)
    except Exception as e:
        store.rollback()
        logger.exception(f"Error processing webhook {event.get('id')}: {e}")
    return {"received": True}
