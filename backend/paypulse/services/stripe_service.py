import json
from typing import Optional, Union
import stripe
from loguru import logger

# Tolerance for the signed timestamp in the Stripe-Signature header
WEBHOOK_TOLERANCE_SECONDS = 300


class WebhookVerificationError(Exception):
    """The webhook payload is unsigned, badly signed or not valid JSON."""


class StripeGateway:
    """Customer, checkout and portal calls plus webhook verification, bound to one account."""

    def __init__(self, api_key: str, webhook_secret: str):
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    def create_customer(self, email: Optional[str], user_id: int) -> str:
        customer = stripe.Customer.create(
            api_key=self.api_key,
            email=email,
            metadata={"user_id": str(user_id)},
        )
        logger.info(f"Created Stripe customer {customer.id} for user {user_id}")
        return customer.id

    def create_checkout_session(self, customer_id: str, price_id: str, plan: str,
                                user_id: int, app_url: str) -> dict:
        session = stripe.checkout.Session.create(
            api_key=self.api_key,
            customer=customer_id,
            payment_method_types=["card"],
            line_items=[{"price": price_id, "quantity": 1}],
            mode="subscription",
            success_url=f"{app_url}/settings?success=true&session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{app_url}/pricing?canceled=true",
            metadata={"user_id": str(user_id), "plan": plan},
            allow_promotion_codes=True,
            billing_address_collection="auto",
        )
        return {"session_id": session.id, "url": session.url}

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        logger.info(f"Creating portal session for customer {customer_id}")
        session = stripe.billing_portal.Session.create(
            api_key=self.api_key,
            customer=customer_id,
            return_url=return_url,
        )
        return session.url

    def verify_event(self, payload: Union[bytes, str], sig_header: Optional[str]) -> dict:
        """Check the signature against the raw body and return the decoded event."""
        if not sig_header:
            raise WebhookVerificationError("Missing signature")
        if not self.webhook_secret:
            raise WebhookVerificationError("Webhook secret not configured")
        if isinstance(payload, bytes):
            try:
                payload = payload.decode("utf-8")
            except UnicodeDecodeError as e:
                raise WebhookVerificationError("Invalid payload") from e
        try:
            stripe.WebhookSignature.verify_header(payload, sig_header, self.webhook_secret,
                                                  WEBHOOK_TOLERANCE_SECONDS)
        except stripe.SignatureVerificationError as e:
            raise WebhookVerificationError(f"Invalid signature: {e}") from e
        try:
            event = json.loads(payload)
        except json.JSONDecodeError as e:
            raise WebhookVerificationError("Invalid payload") from e
        if not isinstance(event, dict):
            raise WebhookVerificationError("Invalid payload")
        return event
