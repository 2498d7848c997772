"""Pydantic schemas for API serialisation."""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from app.models.reservation import RecurrenceFrequency, ReservationStatus
from app.models.resource import ResourceStatus
from app.services.intervals import as_utc

# --- Resource ---


class ResourceCreate(BaseModel):
    name: str = Field(min_length=3, max_length=100)
    description: str | None = None
    price_per_hour: Decimal = Field(ge=0, max_digits=10, decimal_places=2)
    status: ResourceStatus = ResourceStatus.AVAILABLE


class ResourceUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=3, max_length=100)
    description: str | None = None
    price_per_hour: Decimal | None = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    status: ResourceStatus | None = None


class ResourceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: str | None
    price_per_hour: Decimal
    status: ResourceStatus
    created_at: datetime


class ResourceSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    price_per_hour: Decimal


# --- Client ---


class ClientCreate(BaseModel):
    full_name: str = Field(min_length=1, max_length=200)
    phone: str = Field(min_length=1, max_length=50)
    email: EmailStr | None = None
    tax_id: str | None = Field(default=None, max_length=20)


class ClientUpdate(BaseModel):
    full_name: str | None = Field(default=None, min_length=1, max_length=200)
    phone: str | None = Field(default=None, min_length=1, max_length=50)
    email: EmailStr | None = None
    tax_id: str | None = Field(default=None, max_length=20)


class ClientOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    full_name: str
    phone: str
    email: str | None
    tax_id: str | None
    created_at: datetime


class ClientSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    full_name: str
    phone: str


# --- Reservation ---


def _not_bool(v):
    # JSON true/false would otherwise coerce to 1.0/0.0
    if isinstance(v, bool):
        raise ValueError("duration_hours must be a number of hours")
    return v


def _utc_or_error(v: datetime) -> datetime:
    try:
        return as_utc(v)
    except OverflowError:
        raise ValueError("start_time is out of range") from None


class ReservationCreate(BaseModel):
    resource_id: int
    client_id: int
    start_time: datetime
    duration_hours: float
    is_recurring: bool = False
    frequency: RecurrenceFrequency | None = None
    end_date: date | None = None

    @field_validator("duration_hours", mode="before")
    @classmethod
    def hours_not_bool(cls, v):
        return _not_bool(v)

    @field_validator("start_time")
    @classmethod
    def start_in_utc(cls, v: datetime) -> datetime:
        return _utc_or_error(v)


class ReservationUpdate(BaseModel):
    start_time: datetime | None = None
    duration_hours: float | None = None
    status: ReservationStatus | None = None

    @field_validator("duration_hours", mode="before")
    @classmethod
    def hours_not_bool(cls, v):
        return _not_bool(v)

    @field_validator("start_time")
    @classmethod
    def start_in_utc(cls, v: datetime | None) -> datetime | None:
        return _utc_or_error(v) if v is not None else None


class ReservationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    resource_id: int
    client_id: int
    start_time: datetime
    end_time: datetime
    duration_hours: float
    status: ReservationStatus
    is_recurring: bool
    recurring_group_id: int | None
    external_event_id: str | None
    cancelled_at: datetime | None
    created_at: datetime
    resource: ResourceSummary
    client: ClientSummary


class SkippedOccurrence(BaseModel):
    start_time: datetime
    end_time: datetime
    conflicting_reservation_id: int


class RecurringCreateOut(BaseModel):
    message: str
    recurring_group_id: int
    count: int
    skipped: list[SkippedOccurrence]


class CancelOut(BaseModel):
    message: str
    reservation_id: int
    status: ReservationStatus


class CancelMultipleRequest(BaseModel):
    reservation_ids: list[int] = Field(min_length=1, max_length=500)


class CancelCountOut(BaseModel):
    message: str
    count: int


# --- Google Calendar ---


class AuthUrlOut(BaseModel):
    auth_url: str


class CalendarStatusOut(BaseModel):
    status: str  # integrated | not_integrated
    expires_at: datetime | None = None
    watching: bool = False


class CalendarHealthOut(BaseModel):
    status: str  # connected | disconnected | error
    detail: str | None = None


class CalendarWatchOut(BaseModel):
    channel_id: str
    expires_at: datetime | None


class MessageOut(BaseModel):
    message: str
