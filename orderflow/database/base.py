"""
SQLAlchemy declarative base and shared column mixins.
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, declared_attr, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models, with async attribute loading."""

    def __repr__(self) -> str:
        pk_values = [
            f"{column.name}={getattr(self, column.name, None)!r}"
            for column in self.__table__.primary_key.columns
        ]
        return f"<{self.__class__.__name__}({', '.join(pk_values)})>"


class TimestampMixin:
    """
    Adds created_at / updated_at columns.

    Both default to the database clock; the domain layer overwrites them
    with its own timestamps so stored values match what callers observed.
    """

    @declared_attr
    def created_at(cls) -> Mapped[datetime]:
        return mapped_column(
            DateTime(timezone=True),
            nullable=False,
            server_default=func.now(),
            comment="Timestamp when record was created",
        )

    @declared_attr
    def updated_at(cls) -> Mapped[datetime]:
        return mapped_column(
            DateTime(timezone=True),
            nullable=False,
            server_default=func.now(),
            onupdate=func.now(),
            comment="Timestamp when record was last updated",
        )


class UUIDMixin:
    """UUID primary key generated client side."""

    @declared_attr
    def id(cls) -> Mapped[uuid.UUID]:
        return mapped_column(
            UUID(as_uuid=True),
            primary_key=True,
            default=uuid.uuid4,
            nullable=False,
            comment="Unique identifier for the record",
        )
