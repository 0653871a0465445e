"""
Thin wrapper over the Stripe SDK for the calls billing makes.

Views and services never touch `stripe` directly for API calls; they go
through here so the secret key is applied in one place.
"""
import logging

import stripe
from django.conf import settings

logger = logging.getLogger(__name__)


def is_configured() -> bool:
    """A missing or blank STRIPE_SECRET_KEY disables every outbound Stripe call."""
    return bool((getattr(settings, "STRIPE_SECRET_KEY", None) or "").strip())


def get_client():
    """Stripe SDK module with api_key applied. Raises RuntimeError when unconfigured."""
    if not is_configured():
        raise RuntimeError("Stripe is not configured: STRIPE_SECRET_KEY is missing or empty.")
    stripe.api_key = settings.STRIPE_SECRET_KEY
    return stripe


def check_api_ok() -> bool:
    """Cheap authenticated call used by the staff status endpoint."""
    if not is_configured():
        return False
    try:
        get_client().Balance.retrieve()
    except stripe.StripeError as e:
        logger.warning("check_api_ok: Stripe API check failed: %s", e)
        return False
    return True


def set_cancel_at_period_end(subscription_id: str, cancel: bool):
    """Flip Stripe's cancel_at_period_end flag. Raises stripe.StripeError on API failure."""
    return get_client().Subscription.modify(subscription_id, cancel_at_period_end=cancel)


def construct_webhook_event(payload: bytes, sig_header: str):
    """Verify the Stripe-Signature header and return the event. Raises ValueError or SignatureVerificationError."""
    return stripe.Webhook.construct_event(payload, sig_header, settings.STRIPE_WEBHOOK_SECRET)
