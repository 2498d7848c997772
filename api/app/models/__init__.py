"""All models imported here for metadata discovery."""

from app.models.base import Base
from app.models.calendar import CalendarChannel, CalendarLink
from app.models.complex import Complex, User, UserRole
from app.models.reservation import RecurrenceFrequency, RecurringGroup, Reservation, ReservationStatus
from app.models.resource import Client, Resource, ResourceStatus
from app.models.tab import Tab, TabItem, TabStatus

__all__ = [
    "Base",
    "Complex",
    "User",
    "UserRole",
    "Resource",
    "ResourceStatus",
    "Client",
    "Reservation",
    "ReservationStatus",
    "RecurringGroup",
    "RecurrenceFrequency",
    "Tab",
    "TabItem",
    "TabStatus",
    "CalendarLink",
    "CalendarChannel",
]
