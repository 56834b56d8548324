from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.sql import func
from examprep.db.base import Base


class WebhookEvent(Base):
    """Ledger of processed Stripe events, one row per event id."""
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    stripe_event_id = Column(String, unique=True, index=True, nullable=False)  # evt_...
    event_type = Column(String, nullable=False)
    outcome = Column(String, nullable=False)  # applied | stale | ignored | unresolved
    processed_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return f"<WebhookEvent {self.stripe_event_id} ({self.event_type}: {self.outcome})>"
