"""
Billing service for Stripe integration.

Handles checkout sessions and the customer portal for authenticated users.
"""
import logging
from typing import Optional

import stripe

from examprep.core import config
from examprep.core.exceptions import CheckoutError, InvalidPlanError, NoCustomerError
from examprep.db.models.user import User
from examprep.services.plans import is_paid_plan
from examprep.services.stripe_catalog import CatalogProvisioner, catalog as default_catalog
from examprep.services.stripe_service import (
    create_billing_portal_session,
    require_configured,
    stripe_value,
)
from examprep.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)


def _origin_or_default(origin: Optional[str]) -> str:
    return (origin or config.APP_URL).rstrip("/")


def get_or_create_customer(store: SubscriptionStore, user: User) -> str:
    """
    Return the user's Stripe customer id, creating and persisting one if needed.
    
    The link is committed before this returns, so a checkout session is never
    opened against a customer id the database does not know about.
    """
    if user.stripe_customer_id:
        return user.stripe_customer_id
    
    try:
        customer = stripe.Customer.create(
            email=user.email,
            name=user.full_name,
            metadata={"user_id": str(user.id)},
        )
    except stripe.StripeError as e:
        logger.error(f"Stripe error creating customer for user_id={user.id}: {e}")
        raise CheckoutError("Failed to create customer") from e
    
    customer_id = store.link_customer(user.id, customer["id"])
    if customer_id != customer["id"]:
        logger.info(
            f"Customer already linked by a concurrent request: user_id={user.id}, "
            f"kept={customer_id}, unused={customer['id']}"
        )
    return customer_id


def create_checkout_session(
    store: SubscriptionStore,
    user: User,
    plan_id: Optional[str],
    origin: Optional[str] = None,
    catalog: CatalogProvisioner = default_catalog,
) -> str:
    """
    Create a Stripe checkout session for a paid plan.
    
    Args:
        store: Subscription state store bound to the request's session
        user: Authenticated user
        plan_id: 'monthly' or 'annual'
        origin: Frontend origin used for the redirect URLs
        catalog: Catalog provisioner holding the price ids
        
    Returns:
        Hosted checkout URL
        
    Raises:
        NotConfigured: Billing is disabled
        InvalidPlanError: plan_id is not a paid plan
        ProvisioningError: The Stripe catalog could not be prepared
        CheckoutError: Any other Stripe failure
    """
    require_configured()
    
    if not is_paid_plan(plan_id):
        raise InvalidPlanError(f"Invalid plan: {plan_id!r}")
    
    price_id = catalog.price_id_for(plan_id)
    customer_id = get_or_create_customer(store, user)
    base_url = _origin_or_default(origin)
    metadata = {
        "user_id": str(user.id),
        "plan_id": plan_id,
    }
    
    try:
        session = stripe.checkout.Session.create(
            customer=customer_id,
            mode="subscription",
            payment_method_types=["card"],
            line_items=[{
                "price": price_id,
                "quantity": 1,
            }],
            success_url=f"{base_url}/subscription?success=true",
            cancel_url=f"{base_url}/subscription?canceled=true",
            metadata=metadata,
            subscription_data={"metadata": metadata},
        )
    except stripe.StripeError as e:
        logger.error(f"Stripe error creating checkout session for user_id={user.id}: {e}")
        raise CheckoutError("Failed to create checkout session") from e
    
    url = stripe_value(session, "url")
    if not url:
        raise CheckoutError("Checkout session has no URL")
    
    logger.info(f"Created checkout session: session_id={session['id']}, user_id={user.id}, plan={plan_id}")
    return url


def create_portal_session(user: User, origin: Optional[str] = None) -> str:
    """Open the Stripe customer portal for a user who already has a customer link."""
    require_configured()
    
    if not user.stripe_customer_id:
        raise NoCustomerError(f"User {user.id} has no Stripe customer")
    
    url = create_billing_portal_session(
        user.stripe_customer_id,
        return_url=f"{_origin_or_default(origin)}/subscription",
    )
    logger.info(f"Created portal session: user_id={user.id}")
    return url
