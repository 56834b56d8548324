"""
Database models module.

This module imports all database models to ensure they are registered with SQLAlchemy's Base.metadata
before table creation.
"""
from examprep.db.models.user import User
from examprep.db.models.webhook_event import WebhookEvent

__all__ = [
    "User",
    "WebhookEvent",
]
