"""Reservation and recurring group models.

A reservation holds a resource for a client over the half-open interval
[start_time, end_time). It is the core transactional entity in the system.
Cancellation is a status, never a row deletion.
"""

import enum
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DDL, Boolean, Enum, ForeignKey, Index, Integer, String, event
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, TimestampMixin, UTCDateTime

if TYPE_CHECKING:
    from app.models.resource import Client, Resource


class ReservationStatus(enum.StrEnum):
    CONFIRMED = "CONFIRMED"
    PENDING = "PENDING"
    CANCELLED = "CANCELLED"  # terminal


class RecurrenceFrequency(enum.StrEnum):
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


class RecurringGroup(TimestampMixin, Base):
    """Metadata for one recurring booking request; owns its occurrences."""

    __tablename__ = "recurring_groups"

    id: Mapped[int] = mapped_column(primary_key=True)
    frequency: Mapped[RecurrenceFrequency] = mapped_column(
        Enum(RecurrenceFrequency, name="recurrence_frequency", values_callable=lambda e: [x.value for x in e]),
        nullable=False,
    )
    day_of_week: Mapped[int | None] = mapped_column(Integer)  # 0=Mon..6=Sun, weekly only
    start_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    reservations: Mapped[list["Reservation"]] = relationship(back_populates="recurring_group", lazy="raise")

    def __repr__(self) -> str:
        return f"<RecurringGroup {self.id} {self.frequency.value}>"


class Reservation(TimestampMixin, Base):
    __tablename__ = "reservations"

    id: Mapped[int] = mapped_column(primary_key=True)
    resource_id: Mapped[int] = mapped_column(ForeignKey("resources.id"), nullable=False)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id"), nullable=False)

    # When
    start_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    # Status
    status: Mapped[ReservationStatus] = mapped_column(
        Enum(ReservationStatus, name="reservation_status", values_callable=lambda e: [x.value for x in e]),
        default=ReservationStatus.CONFIRMED,
        nullable=False,
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime)

    # Recurrence
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    recurring_group_id: Mapped[int | None] = mapped_column(ForeignKey("recurring_groups.id"))

    # Set once the reservation has been mirrored to Google Calendar
    external_event_id: Mapped[str | None] = mapped_column(String(1024))

    # Relationships
    resource: Mapped["Resource"] = relationship(lazy="raise")
    client: Mapped["Client"] = relationship(lazy="raise")
    recurring_group: Mapped["RecurringGroup | None"] = relationship(back_populates="reservations", lazy="raise")

    __table_args__ = (
        # Conflict checks scan one resource's timeline
        Index("ix_reservations_resource_start", "resource_id", "start_time"),
        Index("ix_reservations_group", "recurring_group_id"),
        Index("ix_reservations_external_event", "external_event_id"),
    )

    @property
    def duration_hours(self) -> float:
        return (self.end_time - self.start_time).total_seconds() / 3600

    def __repr__(self) -> str:
        return f"<Reservation {self.start_time}-{self.end_time} resource={self.resource_id} {self.status.value}>"


# No two live reservations on one resource may overlap. The application checks
# this under a row lock; on PostgreSQL the database enforces it as well.
event.listen(
    Reservation.__table__,
    "after_create",
    DDL("CREATE EXTENSION IF NOT EXISTS btree_gist").execute_if(dialect="postgresql"),
)
event.listen(
    Reservation.__table__,
    "after_create",
    DDL(
        "ALTER TABLE reservations ADD CONSTRAINT ex_reservations_no_overlap "
        "EXCLUDE USING gist (resource_id WITH =, tstzrange(start_time, end_time, '[)') WITH &&) "
        "WHERE (status <> 'CANCELLED')"
    ).execute_if(dialect="postgresql"),
)
