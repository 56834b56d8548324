"""
Stripe webhook processing for the subscription lifecycle.

Every transition writes absolute values, so applying the same event twice
converges to the same record. On top of that:

- a ledger of processed event ids makes redeliveries no-ops;
- an event older than the last one applied to the user is skipped;
- subscription and invoice events that name a subscription other than the
  one stored for the user are skipped.

The guards are checked once on the loaded user for logging and again by the
store inside the UPDATE itself, so a delivery that loses a race with a newer
one for the same user is acknowledged as stale instead of overwriting it.

Any failure after verification raises TransitionError so the route answers
500 and Stripe redelivers. Nothing (state or ledger) is committed in that case.
"""
import logging
from enum import Enum
from typing import Optional

import stripe

from examprep.core.exceptions import (
    StaleTransition,
    TransitionError,
    UnresolvedCorrelation,
    WriteConflict,
)
from examprep.db.models.user import User
from examprep.services.plans import (
    STATUS_ACTIVE,
    STATUS_INACTIVE,
    STATUS_PAST_DUE,
    is_paid_plan,
    plan_for_interval,
)
from examprep.services.stripe_service import stripe_value, verify_webhook
from examprep.services.subscription_store import SubscriptionStore
from examprep.services.webhook_events import (
    BillingEvent,
    CheckoutCompleted,
    InvoicePaymentFailed,
    SubscriptionDeleted,
    SubscriptionUpdated,
    UnknownEvent,
    parse_event,
    subscription_interval,
    subscription_period_end,
)

logger = logging.getLogger(__name__)


class WebhookOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    IGNORED = "ignored"
    UNRESOLVED = "unresolved"


class WebhookProcessor:
    def __init__(self, store: SubscriptionStore):
        self.store = store
        self._handlers = {
            CheckoutCompleted: self._checkout_completed,
            SubscriptionUpdated: self._subscription_updated,
            SubscriptionDeleted: self._subscription_deleted,
            InvoicePaymentFailed: self._invoice_payment_failed,
            UnknownEvent: self._unknown_event,
        }

    def process(self, payload: bytes, signature: Optional[str]) -> WebhookOutcome:
        """
        Verify a raw webhook delivery and apply it.
        
        Raises:
            NotConfigured: Billing or webhook secret missing
            SignatureError: Verification failed; nothing was read or written
            InvalidEventError: Verified body is not a usable event
            TransitionError: The transition could not be committed
        """
        event = parse_event(verify_webhook(payload, signature))
        return self.apply(event)

    def apply(self, event: BillingEvent) -> WebhookOutcome:
        try:
            if self.store.has_processed(event.event_id):
                logger.info(f"Duplicate webhook event skipped: {event.event_type}, id={event.event_id}")
                return WebhookOutcome.DUPLICATE
            
            try:
                outcome = self._handlers[type(event)](event)
            except UnresolvedCorrelation as e:
                self.store.rollback()
                logger.warning(f"Unresolved webhook event: {event.event_type}, id={event.event_id}: {e}")
                outcome = WebhookOutcome.UNRESOLVED
            except StaleTransition as e:
                self.store.rollback()
                logger.info(f"Stale webhook event skipped at write: {event.event_type}, id={event.event_id}: {e}")
                outcome = WebhookOutcome.STALE

            self.store.record_event(event.event_id, event.event_type, outcome.value)
            self.store.commit()
        except WriteConflict:
            if self.store.has_processed(event.event_id):
                logger.info(f"Webhook event committed concurrently: id={event.event_id}")
                return WebhookOutcome.DUPLICATE
            logger.exception(f"Webhook transition conflicted: {event.event_type}, id={event.event_id}")
            raise
        except TransitionError:
            self.store.rollback()
            logger.exception(f"Webhook transition failed: {event.event_type}, id={event.event_id}")
            raise
        except Exception as e:
            self.store.rollback()
            logger.exception(f"Webhook handler error: {event.event_type}, id={event.event_id}")
            raise TransitionError(f"Failed to apply event {event.event_id}") from e
        
        return outcome

    def _is_stale(self, user: User, event: BillingEvent) -> bool:
        last = user.subscription_event_at
        if event.created is not None and last is not None and event.created < last:
            logger.info(
                f"Stale webhook event skipped: {event.event_type}, id={event.event_id}, "
                f"user_id={user.id}, created={event.created.isoformat()}, last={last.isoformat()}"
            )
            return True
        return False

    def _names_other_subscription(self, user: User, subscription_id: Optional[str]) -> bool:
        if subscription_id and subscription_id != user.stripe_subscription_id:
            logger.info(
                f"Webhook event for another subscription skipped: user_id={user.id}, "
                f"event_subscription={subscription_id}, stored={user.stripe_subscription_id}"
            )
            return True
        return False

    @staticmethod
    def _expected_subscription(user: User, subscription_id: Optional[str]):
        return [subscription_id or user.stripe_subscription_id]

    def _user_for_customer(self, customer_id: Optional[str]) -> User:
        if not customer_id:
            raise UnresolvedCorrelation("Event has no customer id")
        user = self.store.get_by_external_customer_id(customer_id)
        if user is None:
            raise UnresolvedCorrelation(f"No user for customer_id={customer_id}")
        return user

    def _checkout_completed(self, event: CheckoutCompleted) -> WebhookOutcome:
        if not event.subscription_id:
            logger.info(f"Checkout completed without subscription, ignored: id={event.event_id}")
            return WebhookOutcome.IGNORED
        if not event.user_id:
            raise UnresolvedCorrelation("Checkout session has no user_id metadata")
        
        user = self.store.get_by_user_id(event.user_id)
        if user is None:
            raise UnresolvedCorrelation(f"No user for user_id={event.user_id}")
        if self._is_stale(user, event):
            return WebhookOutcome.STALE
        
        try:
            subscription = stripe.Subscription.retrieve(event.subscription_id)
        except stripe.StripeError as e:
            raise TransitionError(f"Failed to retrieve subscription {event.subscription_id}") from e
        
        plan_id = event.plan_id if is_paid_plan(event.plan_id) else plan_for_interval(
            subscription_interval(subscription)
        )
        if plan_id is None:
            raise UnresolvedCorrelation(f"Cannot determine plan for subscription {event.subscription_id}")
        
        fields = {
            "tier": plan_id,
            "status": STATUS_ACTIVE,
            "external_subscription_id": stripe_value(subscription, "id", event.subscription_id),
            "current_period_end": subscription_period_end(subscription),
        }
        if event.created:
            fields["event_at"] = event.created
        if event.customer_id and not user.stripe_customer_id:
            fields["external_customer_id"] = event.customer_id
        
        self.store.upsert_tier_and_status(user.id, fields)
        logger.info(
            f"Subscription activated: user_id={user.id}, plan={plan_id}, "
            f"subscription_id={fields['external_subscription_id']}"
        )
        return WebhookOutcome.APPLIED

    def _subscription_updated(self, event: SubscriptionUpdated) -> WebhookOutcome:
        user = self._user_for_customer(event.customer_id)
        if self._is_stale(user, event) or self._names_other_subscription(user, event.subscription_id):
            return WebhookOutcome.STALE
        
        status = STATUS_ACTIVE if event.status == "active" else STATUS_INACTIVE
        fields = {"status": status, "current_period_end": event.current_period_end}
        if event.created:
            fields["event_at"] = event.created
        self.store.upsert_tier_and_status(
            user.id, fields, subscription_ids=self._expected_subscription(user, event.subscription_id)
        )
        logger.info(f"Subscription updated: user_id={user.id}, upstream_status={event.status}, status={status}")
        return WebhookOutcome.APPLIED

    def _subscription_deleted(self, event: SubscriptionDeleted) -> WebhookOutcome:
        user = self._user_for_customer(event.customer_id)
        if self._is_stale(user, event):
            return WebhookOutcome.STALE
        if user.stripe_subscription_id and self._names_other_subscription(user, event.subscription_id):
            return WebhookOutcome.STALE
        
        # Already cleared is fine; any other subscription stored by then is not
        subscription_ids = [event.subscription_id, None] if event.subscription_id else None
        self.store.clear_subscription(user.id, event_at=event.created, subscription_ids=subscription_ids)
        logger.info(f"Subscription canceled: user_id={user.id}, subscription_id={event.subscription_id}")
        return WebhookOutcome.APPLIED

    def _invoice_payment_failed(self, event: InvoicePaymentFailed) -> WebhookOutcome:
        user = self._user_for_customer(event.customer_id)
        if not event.subscription_id and not user.stripe_subscription_id:
            logger.info(
                f"Payment failure outside any subscription ignored: user_id={user.id}, id={event.event_id}"
            )
            return WebhookOutcome.IGNORED
        if self._is_stale(user, event) or self._names_other_subscription(user, event.subscription_id):
            return WebhookOutcome.STALE
        
        # Tier is kept during the grace period
        fields = {"status": STATUS_PAST_DUE}
        if event.created:
            fields["event_at"] = event.created
        self.store.upsert_tier_and_status(
            user.id, fields, subscription_ids=self._expected_subscription(user, event.subscription_id)
        )
        logger.warning(f"Invoice payment failed: user_id={user.id}, subscription_id={event.subscription_id}")
        return WebhookOutcome.APPLIED

    def _unknown_event(self, event: UnknownEvent) -> WebhookOutcome:
        logger.info(f"Unhandled webhook event type ignored: {event.event_type}, id={event.event_id}")
        return WebhookOutcome.IGNORED
