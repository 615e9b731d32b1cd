"""
Database Models

SQLAlchemy ORM models for records kept beyond Redis retention. Only the
appointment change history lives here; everything else is ephemeral.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Float, Index, String, Text, text
from sqlalchemy.dialects.postgresql import UUID, JSON
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class TimestampMixin:
    """Mixin that adds a created_at timestamp column."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False
    )


class AppointmentChange(Base, TimestampMixin):
    """
    Immutable audit record of a reschedule, cancellation or type change.

    Rows are only ever inserted. previous_details/new_details hold the
    appointment snapshot before and after the change.
    """

    __tablename__ = "appointment_changes"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    appointment_id: Mapped[str] = mapped_column(String(64), nullable=False)
    patient_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    change_type: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        doc="rescheduled, cancelled or type_changed"
    )
    previous_details: Mapped[dict] = mapped_column(JSON, default=dict)
    new_details: Mapped[dict] = mapped_column(JSON, default=dict)
    changed_by: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancellation_fee: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_appointment_changes_appointment", "appointment_id"),
        Index("ix_appointment_changes_patient", "patient_id"),
        Index("ix_appointment_changes_changed_at", "changed_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<AppointmentChange(appointment={self.appointment_id}, "
            f"type={self.change_type}, at={self.changed_at})>"
        )
