from sqlalchemy import Column, String, DateTime
from sqlalchemy.sql import func
from examprep.db.base import Base


class User(Base):
    __tablename__ = "users"

    # Identifier assigned by the identity provider
    id = Column(String, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    full_name = Column(String, nullable=True)

    subscription_tier = Column(String, nullable=False, default="free")  # free | monthly | annual
    subscription_status = Column(String, nullable=False, default="inactive")  # active | inactive | past_due
    stripe_customer_id = Column(String, unique=True, index=True, nullable=True)
    stripe_subscription_id = Column(String, nullable=True)
    subscription_current_period_end = Column(DateTime, nullable=True)
    # created timestamp of the last webhook event applied to this record
    subscription_event_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
