"""
Subscription state store.

Narrow persistence contract used by checkout and webhook processing. Writes
made by the webhook processor are staged on the session and committed once
per event together with the ledger row, so a failed transition leaves no
trace and can be redelivered.

Webhook writes are conditional UPDATEs: the ordering and subscription guards
are evaluated by the database against the current row, not against the copy
loaded earlier in the request. Two deliveries racing for the same user can
therefore never apply an older event on top of a newer one.
"""
import logging
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from examprep.core.exceptions import (
    InconsistentStateError,
    StaleTransition,
    TransitionError,
    UnresolvedCorrelation,
    WriteConflict,
)
from examprep.db.models.user import User
from examprep.db.models.webhook_event import WebhookEvent
from examprep.services.plans import FREE, STATUS_INACTIVE

logger = logging.getLogger(__name__)

# Field names accepted by upsert_tier_and_status -> User columns
SUBSCRIPTION_FIELDS = {
    "tier": "subscription_tier",
    "status": "subscription_status",
    "external_customer_id": "stripe_customer_id",
    "external_subscription_id": "stripe_subscription_id",
    "current_period_end": "subscription_current_period_end",
    "event_at": "subscription_event_at",
}


def _subscription_clause(subscription_ids: Iterable[Optional[str]]):
    ids = list(subscription_ids)
    clauses = []
    named = [s for s in ids if s is not None]
    if named:
        clauses.append(User.stripe_subscription_id.in_(named))
    if None in ids:
        clauses.append(User.stripe_subscription_id.is_(None))
    return or_(*clauses)


class SubscriptionStore:
    def __init__(self, db: Session):
        self.db = db

    def get_by_user_id(self, user_id: str) -> Optional[User]:
        try:
            return self.db.query(User).filter(User.id == user_id).first()
        except SQLAlchemyError as e:
            raise TransitionError(f"Failed to load user {user_id}") from e

    def get_by_external_customer_id(self, customer_id: str) -> Optional[User]:
        try:
            return self.db.query(User).filter(User.stripe_customer_id == customer_id).first()
        except SQLAlchemyError as e:
            raise TransitionError(f"Failed to load user for customer {customer_id}") from e

    def upsert_tier_and_status(
        self,
        user_id: str,
        fields: Dict[str, Any],
        subscription_ids: Optional[Iterable[Optional[str]]] = None,
    ) -> User:
        """
        Overwrite the given subscription fields on the user's record.
        
        The write only lands if, at the time it runs, the stored event time is
        not newer than fields["event_at"] (when given) and the stored
        subscription id is one of subscription_ids (when given; None in the
        list stands for "no subscription").
        
        Args:
            user_id: Local user id
            fields: Subset of SUBSCRIPTION_FIELDS keys with their absolute values
            subscription_ids: Stored subscription ids the write is allowed to replace
            
        Returns:
            The updated (uncommitted) user
            
        Raises:
            UnresolvedCorrelation: No such user
            InconsistentStateError: The write would overwrite a customer link or
                leave a paid tier without a subscription id
            StaleTransition: A newer event or another subscription is stored
        """
        unknown = set(fields) - set(SUBSCRIPTION_FIELDS)
        if unknown:
            raise ValueError(f"Unknown subscription fields: {sorted(unknown)}")
        
        user = self.get_by_user_id(user_id)
        if user is None:
            raise UnresolvedCorrelation(f"User not found: user_id={user_id}")
        
        customer_id = fields.get("external_customer_id")
        if customer_id and user.stripe_customer_id and user.stripe_customer_id != customer_id:
            raise InconsistentStateError(
                f"Refusing to replace customer link for user_id={user_id}"
            )
        
        tier = fields.get("tier", user.subscription_tier)
        subscription_id = fields.get("external_subscription_id", user.stripe_subscription_id)
        if tier != FREE and not subscription_id:
            raise InconsistentStateError(
                f"Tier {tier} without subscription id for user_id={user_id}"
            )

        stmt = update(User).where(User.id == user_id)
        event_at = fields.get("event_at")
        if event_at is not None:
            stmt = stmt.where(or_(
                User.subscription_event_at.is_(None),
                User.subscription_event_at <= event_at,
            ))
        if subscription_ids is not None:
            stmt = stmt.where(_subscription_clause(subscription_ids))
        if customer_id:
            stmt = stmt.where(or_(
                User.stripe_customer_id.is_(None),
                User.stripe_customer_id == customer_id,
            ))
        values = {SUBSCRIPTION_FIELDS[key]: value for key, value in fields.items()}

        try:
            result = self.db.execute(
                stmt.values(**values).execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            raise TransitionError("Failed to write subscription state") from e
        
        if not result.rowcount:
            raise StaleTransition(
                f"Subscription write superseded for user_id={user_id}"
            )
        
        self.db.expire(user)
        return user

    def clear_subscription(
        self,
        user_id: str,
        event_at=None,
        subscription_ids: Optional[Iterable[Optional[str]]] = None,
    ) -> User:
        """Reset the user to the free tier. The customer link is kept."""
        fields = {
            "tier": FREE,
            "status": STATUS_INACTIVE,
            "external_subscription_id": None,
            "current_period_end": None,
        }
        if event_at is not None:
            fields["event_at"] = event_at
        return self.upsert_tier_and_status(user_id, fields, subscription_ids=subscription_ids)

    def link_customer(self, user_id: str, customer_id: str) -> str:
        """
        Persist the user's Stripe customer id if none is stored yet.
        
        Commits immediately. Returns the customer id that is linked after the
        call, which is the previously stored one if another request won.
        """
        try:
            result = self.db.execute(
                update(User)
                .where(User.id == user_id, User.stripe_customer_id.is_(None))
                .values(stripe_customer_id=customer_id)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise TransitionError(f"Failed to link customer for user_id={user_id}") from e
        
        if result.rowcount:
            logger.info(f"Linked Stripe customer: user_id={user_id}, customer_id={customer_id}")
            return customer_id
        
        user = self.get_by_user_id(user_id)
        if user is None or not user.stripe_customer_id:
            raise TransitionError(f"User not found while linking customer: user_id={user_id}")
        return user.stripe_customer_id

    def has_processed(self, event_id: str) -> bool:
        try:
            return self.db.query(WebhookEvent.id).filter(
                WebhookEvent.stripe_event_id == event_id
            ).first() is not None
        except SQLAlchemyError as e:
            raise TransitionError(f"Failed to read webhook ledger for {event_id}") from e

    def record_event(self, event_id: str, event_type: str, outcome: str) -> None:
        self.db.add(WebhookEvent(
            stripe_event_id=event_id,
            event_type=event_type,
            outcome=outcome,
        ))

    def commit(self) -> None:
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise WriteConflict("Unique constraint violated on commit") from e
        except SQLAlchemyError as e:
            self.db.rollback()
            raise TransitionError("Failed to commit subscription state") from e

    def rollback(self) -> None:
        self.db.rollback()
