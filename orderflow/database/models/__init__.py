"""
Database models package initialization.

Models are imported here so they are registered with the Base metadata
before ``create_tables`` runs.
"""

from orderflow.database.base import Base, TimestampMixin, UUIDMixin
from orderflow.database.models.order import FulfillmentAttemptRecord, OrderRecord

__all__ = [
    "Base",
    "TimestampMixin",
    "UUIDMixin",
    "OrderRecord",
    "FulfillmentAttemptRecord",
]
