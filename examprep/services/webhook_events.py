"""
Typed Stripe webhook events.

A verified event body is narrowed once, here, into one variant per event
type the subscription lifecycle reacts to, or UnknownEvent for the rest.
Handlers only ever see these variants.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Union

from examprep.core.exceptions import InvalidEventError
from examprep.services.stripe_service import stripe_id, stripe_value

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


def from_timestamp(value: Any) -> Optional[datetime]:
    """Unix seconds -> naive UTC datetime (the storage convention)."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def subscription_period_end(subscription: Any) -> Optional[datetime]:
    """Period end of a subscription; newer API versions only set it per item."""
    value = stripe_value(subscription, "current_period_end")
    if value is None:
        items = stripe_value(stripe_value(subscription, "items"), "data", [])
        if items:
            value = stripe_value(items[0], "current_period_end")
    return from_timestamp(value)


def subscription_interval(subscription: Any) -> Optional[str]:
    """Recurring interval of the subscription's first price."""
    items = stripe_value(stripe_value(subscription, "items"), "data", [])
    if not items:
        return None
    price = stripe_value(items[0], "price")
    return stripe_value(stripe_value(price, "recurring"), "interval")


@dataclass(frozen=True)
class CheckoutCompleted:
    event_id: str
    event_type: str
    created: Optional[datetime]
    user_id: Optional[str]
    plan_id: Optional[str]
    customer_id: Optional[str]
    subscription_id: Optional[str]


@dataclass(frozen=True)
class SubscriptionUpdated:
    event_id: str
    event_type: str
    created: Optional[datetime]
    customer_id: Optional[str]
    subscription_id: Optional[str]
    status: Optional[str]
    current_period_end: Optional[datetime]


@dataclass(frozen=True)
class SubscriptionDeleted:
    event_id: str
    event_type: str
    created: Optional[datetime]
    customer_id: Optional[str]
    subscription_id: Optional[str]


@dataclass(frozen=True)
class InvoicePaymentFailed:
    event_id: str
    event_type: str
    created: Optional[datetime]
    customer_id: Optional[str]
    subscription_id: Optional[str]


@dataclass(frozen=True)
class UnknownEvent:
    event_id: str
    event_type: str
    created: Optional[datetime]


BillingEvent = Union[
    CheckoutCompleted,
    SubscriptionUpdated,
    SubscriptionDeleted,
    InvoicePaymentFailed,
    UnknownEvent,
]


def _invoice_subscription(invoice: dict) -> Optional[str]:
    subscription = stripe_id(stripe_value(invoice, "subscription"))
    if subscription:
        return subscription
    details = stripe_value(stripe_value(invoice, "parent"), "subscription_details")
    return stripe_id(stripe_value(details, "subscription"))


def parse_event(event: dict) -> BillingEvent:
    """
    Narrow a verified Stripe event body into a BillingEvent.
    
    Raises:
        InvalidEventError: id, type or data.object is missing
    """
    event_id = stripe_value(event, "id")
    event_type = stripe_value(event, "type")
    if not isinstance(event_id, str) or not event_id or not isinstance(event_type, str):
        raise InvalidEventError("Event is missing id or type")
    
    created = from_timestamp(stripe_value(event, "created"))
    obj = stripe_value(stripe_value(event, "data"), "object")
    
    if event_type not in (CHECKOUT_COMPLETED, SUBSCRIPTION_UPDATED,
                          SUBSCRIPTION_DELETED, INVOICE_PAYMENT_FAILED):
        return UnknownEvent(event_id=event_id, event_type=event_type, created=created)
    
    if not isinstance(obj, dict):
        raise InvalidEventError(f"Event {event_id} has no data.object")
    
    customer_id = stripe_id(stripe_value(obj, "customer"))
    
    if event_type == CHECKOUT_COMPLETED:
        metadata = stripe_value(obj, "metadata", {})
        return CheckoutCompleted(
            event_id=event_id,
            event_type=event_type,
            created=created,
            user_id=stripe_value(metadata, "user_id"),
            plan_id=stripe_value(metadata, "plan_id"),
            customer_id=customer_id,
            subscription_id=stripe_id(stripe_value(obj, "subscription")),
        )
    
    if event_type == SUBSCRIPTION_UPDATED:
        return SubscriptionUpdated(
            event_id=event_id,
            event_type=event_type,
            created=created,
            customer_id=customer_id,
            subscription_id=stripe_value(obj, "id"),
            status=stripe_value(obj, "status"),
            current_period_end=subscription_period_end(obj),
        )
    
    if event_type == SUBSCRIPTION_DELETED:
        return SubscriptionDeleted(
            event_id=event_id,
            event_type=event_type,
            created=created,
            customer_id=customer_id,
            subscription_id=stripe_value(obj, "id"),
        )
    
    return InvoicePaymentFailed(
        event_id=event_id,
        event_type=event_type,
        created=created,
        customer_id=customer_id,
        subscription_id=_invoice_subscription(obj),
    )
