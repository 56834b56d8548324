"""
Stripe service: client configuration, webhook verification and the
customer portal.
"""
import json
import logging
from typing import Any, Optional

import stripe

from examprep.core import config
from examprep.core.exceptions import CheckoutError, NotConfigured, SignatureError

logger = logging.getLogger(__name__)

if not config.STRIPE_SECRET_KEY:
    logger.warning("STRIPE_SECRET_KEY not configured - Stripe features disabled")


def is_configured() -> bool:
    """Whether billing is enabled. No side effects."""
    return bool(config.STRIPE_SECRET_KEY)


def require_configured() -> None:
    """Point the Stripe client at the configured key, or raise NotConfigured."""
    if not is_configured():
        raise NotConfigured("STRIPE_SECRET_KEY not configured")
    stripe.api_key = config.STRIPE_SECRET_KEY


def stripe_value(obj: Any, key: str, default: Any = None) -> Any:
    """Read a key from a Stripe object or plain dict, treating missing and null alike."""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, IndexError, TypeError):
        return default
    return default if value is None else value


def stripe_id(value: Any) -> Optional[str]:
    """Return the id of a reference that may be a bare id or an expanded object."""
    if value is None or isinstance(value, str):
        return value
    return stripe_value(value, "id")


def verify_webhook(request_body: bytes, signature: Optional[str]) -> dict:
    """
    Verify and parse a Stripe webhook event.
    
    Args:
        request_body: Raw request body bytes
        signature: Stripe-Signature header value
    
    Returns:
        Parsed event dictionary
    
    Raises:
        NotConfigured: Billing or the webhook secret is not configured
        SignatureError: Missing or invalid signature, or undecodable body
    """
    require_configured()
    if not config.STRIPE_WEBHOOK_SECRET:
        raise NotConfigured("STRIPE_WEBHOOK_SECRET not configured")
    
    if not signature:
        logger.warning("Webhook rejected: missing Stripe-Signature header")
        raise SignatureError("Missing signature")
    
    try:
        payload = request_body.decode("utf-8")
    except UnicodeDecodeError as e:
        logger.warning("Webhook rejected: body is not valid UTF-8")
        raise SignatureError("Invalid payload encoding") from e
    
    try:
        stripe.WebhookSignature.verify_header(
            payload, signature, config.STRIPE_WEBHOOK_SECRET, config.STRIPE_WEBHOOK_TOLERANCE
        )
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        raise SignatureError("Invalid signature") from e
    
    try:
        event = json.loads(payload)
    except ValueError as e:
        logger.warning(f"Invalid webhook payload: {e}")
        raise SignatureError("Invalid webhook payload") from e
    
    if not isinstance(event, dict):
        raise SignatureError("Invalid webhook payload")
    
    logger.info(f"Verified webhook event: {event.get('type')}, id={event.get('id')}")
    return event


def create_billing_portal_session(customer_id: str, return_url: str) -> str:
    """
    Create Stripe Billing Portal session for managing subscription.
    
    Returns:
        Portal session URL
    """
    require_configured()
    
    try:
        session = stripe.billing_portal.Session.create(
            customer=customer_id,
            return_url=return_url,
        )
    except stripe.StripeError as e:
        logger.error(f"Stripe error creating portal session: {e}")
        raise CheckoutError("Failed to create portal session") from e
    
    url = stripe_value(session, "url")
    if not url:
        raise CheckoutError("Portal session has no URL")
    
    logger.info(f"Created billing portal session for customer_id={customer_id}")
    return url
