"""Reservation lifecycle: create, edit and cancel, single and in batches.

All scheduling decisions live here, separate from the route handlers. Every
mutating operation commits its local transaction first and only then hands
work to the Google Calendar mirror through ``schedule`` (a
``BackgroundTasks.add_task``-compatible callable). A sync failure can
therefore never undo or fail a booking.

State machine: CONFIRMED/PENDING --edit--> CONFIRMED/PENDING --cancel--> CANCELLED.
Nothing leaves CANCELLED.
"""

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.config import settings
from app.core.errors import Conflict, Forbidden, NotFound, PreconditionFailed, ValidationFailed
from app.models.reservation import RecurrenceFrequency, RecurringGroup, Reservation, ReservationStatus
from app.models.resource import Client, Resource
from app.models.tab import Tab, TabStatus
from app.services import google_calendar
from app.services.conflicts import describe_conflict, find_conflict
from app.services.intervals import TimeInterval, as_utc, validate_duration
from app.services.recurrence import expand

logger = logging.getLogger(__name__)

SyncScheduler = Callable[..., object]

OVERLAP_CONSTRAINT = "ex_reservations_no_overlap"


def _no_sync(func, *args, **kwargs) -> None:
    """Scheduler used when the caller does not want calendar mirroring."""


@dataclass
class RecurringBookingResult:
    group: RecurringGroup
    reservations: list[Reservation]
    skipped: list[dict] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.reservations)


# ---------------------------------------------------------------------------
# Lookups (all tenant-scoped through the resource relation)
# ---------------------------------------------------------------------------


def _scoped_query(complex_id: int):
    return (
        select(Reservation)
        .join(Resource, Resource.id == Reservation.resource_id)
        .options(selectinload(Reservation.resource), selectinload(Reservation.client))
        .where(Resource.complex_id == complex_id)
    )


async def get_reservation(db: AsyncSession, complex_id: int, reservation_id: int) -> Reservation:
    result = await db.execute(_scoped_query(complex_id).where(Reservation.id == reservation_id))
    reservation = result.scalar_one_or_none()
    if reservation is None:
        raise NotFound("Reservation not found", code="reservation_not_found")
    return reservation


async def list_reservations(
    db: AsyncSession,
    complex_id: int,
    *,
    resource_id: int | None = None,
    client_id: int | None = None,
    status: ReservationStatus | None = None,
    recurring_group_id: int | None = None,
    start_from: datetime | None = None,
    start_to: datetime | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[Reservation]:
    query = _scoped_query(complex_id)
    if resource_id is not None:
        query = query.where(Reservation.resource_id == resource_id)
    if client_id is not None:
        query = query.where(Reservation.client_id == client_id)
    if status is not None:
        query = query.where(Reservation.status == status)
    if recurring_group_id is not None:
        query = query.where(Reservation.recurring_group_id == recurring_group_id)
    if start_from is not None:
        query = query.where(Reservation.start_time >= as_utc(start_from))
    if start_to is not None:
        query = query.where(Reservation.start_time < as_utc(start_to))

    result = await db.execute(
        query.order_by(Reservation.start_time.desc(), Reservation.id.desc()).limit(limit).offset(offset)
    )
    return list(result.scalars().all())


async def _lock_resource(db: AsyncSession, complex_id: int, resource_id: int) -> Resource:
    """Load the resource under a row lock so bookings on it are serialised."""
    result = await db.execute(
        select(Resource).where(Resource.id == resource_id, Resource.complex_id == complex_id).with_for_update()
    )
    resource = result.scalar_one_or_none()
    if resource is None:
        raise NotFound("Resource not found", code="resource_not_found")
    return resource


async def _get_client(db: AsyncSession, complex_id: int, client_id: int) -> Client:
    result = await db.execute(select(Client).where(Client.id == client_id, Client.complex_id == complex_id))
    client = result.scalar_one_or_none()
    if client is None:
        raise NotFound("Client not found", code="client_not_found")
    return client


async def open_tab_counts(db: AsyncSession, reservation_ids: Iterable[int]) -> dict[int, int]:
    """Map reservation id -> number of OPEN tabs, for reservations that have any."""
    ids = list(reservation_ids)
    if not ids:
        return {}
    result = await db.execute(
        select(Tab.reservation_id, func.count(Tab.id))
        .where(Tab.reservation_id.in_(ids), Tab.status == TabStatus.OPEN)
        .group_by(Tab.reservation_id)
    )
    return {reservation_id: count for reservation_id, count in result.all()}


async def _flush_guarding_overlap(db: AsyncSession) -> None:
    """Flush, turning the database's overlap constraint into a Conflict."""
    try:
        await db.flush()
    except IntegrityError as exc:
        if OVERLAP_CONSTRAINT in str(exc.orig):
            raise Conflict("Time slot already reserved", code="time_conflict") from exc
        raise


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


async def create_reservation(
    db: AsyncSession,
    complex_id: int,
    *,
    resource_id: int,
    client_id: int,
    start_time: datetime,
    duration_hours: float,
    schedule: SyncScheduler = _no_sync,
) -> Reservation:
    """Book a single slot. Raises NotFound, ValidationFailed or Conflict."""
    await _lock_resource(db, complex_id, resource_id)
    await _get_client(db, complex_id, client_id)
    interval = TimeInterval.from_duration(as_utc(start_time), duration_hours)

    conflict = await find_conflict(db, resource_id, interval)
    if conflict is not None:
        raise Conflict("Time slot already reserved", code="time_conflict", conflict_with=describe_conflict(conflict))

    reservation = Reservation(
        resource_id=resource_id,
        client_id=client_id,
        start_time=interval.start,
        end_time=interval.end,
        status=ReservationStatus.CONFIRMED,
        is_recurring=False,
    )
    db.add(reservation)
    await _flush_guarding_overlap(db)
    await db.commit()

    logger.info("Reservation %s created on resource %s", reservation.id, resource_id)
    schedule(google_calendar.mirror_created, complex_id, reservation.id)
    return await get_reservation(db, complex_id, reservation.id)


def _end_of_day(day: date) -> datetime:
    return datetime.combine(day, time.max, tzinfo=UTC)


async def create_recurring_reservations(
    db: AsyncSession,
    complex_id: int,
    *,
    resource_id: int,
    client_id: int,
    start_time: datetime,
    duration_hours: float,
    frequency: RecurrenceFrequency,
    end_date: date,
) -> RecurringBookingResult:
    """Book every free occurrence of a series; conflicted occurrences are skipped and reported.

    Each occurrence is checked against reservations that already exist, not
    against its siblings in this request (siblings never overlap). If nothing
    survives the group is removed and Conflict is raised. Recurring bookings
    are not mirrored to Google Calendar.
    """
    await _lock_resource(db, complex_id, resource_id)
    await _get_client(db, complex_id, client_id)
    start = as_utc(start_time)
    first = TimeInterval.from_duration(start, duration_hours)

    if end_date < start.date():
        raise ValidationFailed("End date must not be before the start date", code="invalid_end_date")
    if (end_date - start.date()).days > settings.max_series_days:
        raise ValidationFailed(
            f"A recurring series may span at most {settings.max_series_days} days",
            code="series_too_long",
            max_series_days=settings.max_series_days,
        )

    until = _end_of_day(end_date)
    group = RecurringGroup(
        frequency=frequency,
        day_of_week=start.weekday() if frequency == RecurrenceFrequency.WEEKLY else None,
        start_date=start,
        end_date=until,
    )
    db.add(group)
    await db.flush()

    accepted: list[TimeInterval] = []
    skipped: list[dict] = []
    for candidate in expand(start, frequency, until, first.duration):
        conflict = await find_conflict(db, resource_id, candidate)
        if conflict is None:
            accepted.append(candidate)
        else:
            skipped.append(
                {
                    "start_time": candidate.start.isoformat(),
                    "end_time": candidate.end.isoformat(),
                    "conflicting_reservation_id": conflict.id,
                }
            )

    if not accepted:
        await db.execute(delete(RecurringGroup).where(RecurringGroup.id == group.id))
        raise Conflict("All slots are occupied", code="all_slots_occupied", occupied=len(skipped), conflicts=skipped)

    reservations = [
        Reservation(
            resource_id=resource_id,
            client_id=client_id,
            start_time=interval.start,
            end_time=interval.end,
            status=ReservationStatus.CONFIRMED,
            is_recurring=True,
            recurring_group_id=group.id,
        )
        for interval in accepted
    ]
    db.add_all(reservations)
    await _flush_guarding_overlap(db)
    await db.commit()

    logger.info(
        "Recurring group %s created on resource %s: %d booked, %d skipped",
        group.id,
        resource_id,
        len(reservations),
        len(skipped),
    )
    return RecurringBookingResult(group=group, reservations=reservations, skipped=skipped)


# ---------------------------------------------------------------------------
# Edit
# ---------------------------------------------------------------------------


async def _ensure_no_open_tabs(db: AsyncSession, reservation: Reservation, action: str) -> None:
    counts = await open_tab_counts(db, [reservation.id])
    if counts:
        raise PreconditionFailed(
            f"Cannot {action} a reservation with an open tab. Close the tab first.",
            code="open_tab",
            open_tabs=counts[reservation.id],
        )


async def update_reservation(
    db: AsyncSession,
    complex_id: int,
    reservation_id: int,
    *,
    start_time: datetime | None = None,
    duration_hours: float | None = None,
    status: ReservationStatus | None = None,
    schedule: SyncScheduler = _no_sync,
) -> Reservation:
    """Move, resize or re-status a reservation that has not started yet.

    Omitted fields keep their current value. A new interval is conflict-checked
    against every other live reservation on the resource.
    """
    reservation = await get_reservation(db, complex_id, reservation_id)

    if reservation.status == ReservationStatus.CANCELLED:
        raise PreconditionFailed("Cannot edit a cancelled reservation", code="reservation_cancelled")
    if reservation.start_time <= datetime.now(UTC):
        raise PreconditionFailed("Cannot edit a reservation that has already started", code="already_started")
    await _ensure_no_open_tabs(db, reservation, "edit")

    if status == ReservationStatus.CANCELLED:
        return await _cancel_loaded(db, complex_id, reservation, schedule)

    current = TimeInterval(reservation.start_time, reservation.end_time)
    new_start = as_utc(start_time) if start_time is not None else current.start
    if duration_hours is not None:
        interval = TimeInterval.from_duration(new_start, duration_hours)
    else:
        interval = current.shifted_to(new_start)

    if interval != current:
        await _lock_resource(db, complex_id, reservation.resource_id)
        conflict = await find_conflict(db, reservation.resource_id, interval, exclude_reservation_id=reservation.id)
        if conflict is not None:
            raise Conflict(
                "Time slot already reserved", code="time_conflict", conflict_with=describe_conflict(conflict)
            )
        reservation.start_time = interval.start
        reservation.end_time = interval.end

    if status is not None:
        reservation.status = status

    await _flush_guarding_overlap(db)
    await db.commit()

    logger.info("Reservation %s updated", reservation.id)
    if reservation.external_event_id:
        schedule(google_calendar.mirror_updated, complex_id, reservation.id)
    return reservation


# ---------------------------------------------------------------------------
# Cancel
# ---------------------------------------------------------------------------


async def _cancel_loaded(
    db: AsyncSession, complex_id: int, reservation: Reservation, schedule: SyncScheduler
) -> Reservation:
    reservation.status = ReservationStatus.CANCELLED
    reservation.cancelled_at = datetime.now(UTC)
    await db.commit()

    logger.info("Reservation %s cancelled", reservation.id)
    if reservation.external_event_id:
        schedule(google_calendar.mirror_deleted, complex_id, reservation.external_event_id)
    return reservation


async def cancel_reservation(
    db: AsyncSession,
    complex_id: int,
    reservation_id: int,
    *,
    schedule: SyncScheduler = _no_sync,
) -> Reservation:
    """Soft-cancel one reservation. Cancelling twice is a precondition error."""
    reservation = await get_reservation(db, complex_id, reservation_id)
    if reservation.status == ReservationStatus.CANCELLED:
        raise PreconditionFailed("Reservation is already cancelled", code="already_cancelled")
    await _ensure_no_open_tabs(db, reservation, "cancel")
    return await _cancel_loaded(db, complex_id, reservation, schedule)


async def cancel_reservations(
    db: AsyncSession,
    complex_id: int,
    reservation_ids: list[int],
    *,
    schedule: SyncScheduler = _no_sync,
) -> int:
    """Cancel a list of reservations all-or-nothing.

    Every id must resolve within the tenant and none may have an open tab,
    otherwise nothing changes. Members already cancelled are left as they are
    and not counted. Returns the number of reservations cancelled.
    """
    requested = list(dict.fromkeys(reservation_ids))
    if not requested:
        raise ValidationFailed("Invalid list of reservation ids", code="invalid_id_list")

    result = await db.execute(_scoped_query(complex_id).where(Reservation.id.in_(requested)))
    reservations = list(result.scalars().all())

    if len(reservations) != len(requested):
        found = {r.id for r in reservations}
        raise NotFound(
            "Some reservations were not found",
            code="reservations_not_found",
            missing_ids=[rid for rid in requested if rid not in found],
        )

    tabs = await open_tab_counts(db, requested)
    if tabs:
        raise PreconditionFailed(
            "Cannot cancel reservations with open tabs",
            code="open_tab",
            reservations_with_open_tabs=sorted(tabs),
            open_tabs=tabs,
        )

    to_cancel = [r for r in reservations if r.status != ReservationStatus.CANCELLED]
    if to_cancel:
        await db.execute(
            update(Reservation)
            .where(Reservation.id.in_([r.id for r in to_cancel]))
            .values(status=ReservationStatus.CANCELLED, cancelled_at=datetime.now(UTC))
            .execution_options(synchronize_session="fetch")
        )
    await db.commit()

    logger.info("Cancelled %d of %d requested reservations", len(to_cancel), len(requested))
    for reservation in to_cancel:
        if reservation.external_event_id:
            schedule(google_calendar.mirror_deleted, complex_id, reservation.external_event_id)
    return len(to_cancel)


async def cancel_recurring_group(
    db: AsyncSession,
    complex_id: int,
    group_id: int,
    *,
    schedule: SyncScheduler = _no_sync,
) -> int:
    """Cancel the live, not-yet-started occurrences of a recurring group.

    Raises NotFound for an unknown group and Forbidden when none of its
    occurrences belong to the caller's complex. Past occurrences are untouched.
    """
    group = await db.get(RecurringGroup, group_id)
    if group is None:
        raise NotFound("Recurring group not found", code="recurring_group_not_found")

    owned = await db.execute(
        select(func.count(Reservation.id))
        .join(Resource, Resource.id == Reservation.resource_id)
        .where(Reservation.recurring_group_id == group_id, Resource.complex_id == complex_id)
    )
    if owned.scalar_one() == 0:
        raise Forbidden("Not allowed to cancel this recurring group", code="forbidden")

    now = datetime.now(UTC)
    result = await db.execute(
        _scoped_query(complex_id).where(
            Reservation.recurring_group_id == group_id,
            Reservation.status != ReservationStatus.CANCELLED,
            Reservation.start_time >= now,
        )
    )
    targets = list(result.scalars().all())

    tabs = await open_tab_counts(db, [r.id for r in targets])
    if tabs:
        raise PreconditionFailed(
            "Cannot cancel reservations with open tabs",
            code="open_tab",
            reservations_with_open_tabs=sorted(tabs),
            open_tabs=tabs,
        )

    if targets:
        await db.execute(
            update(Reservation)
            .where(Reservation.id.in_([r.id for r in targets]))
            .values(status=ReservationStatus.CANCELLED, cancelled_at=now)
            .execution_options(synchronize_session="fetch")
        )
    await db.commit()

    logger.info("Recurring group %s: cancelled %d upcoming occurrences", group_id, len(targets))
    for reservation in targets:
        if reservation.external_event_id:
            schedule(google_calendar.mirror_deleted, complex_id, reservation.external_event_id)
    return len(targets)


# ---------------------------------------------------------------------------
# Changes coming back from Google Calendar
# ---------------------------------------------------------------------------


async def apply_external_cancellation(db: AsyncSession, reservation: Reservation) -> bool:
    """Cancel a reservation whose mirrored event was deleted. False if nothing changed."""
    if reservation.status == ReservationStatus.CANCELLED:
        return False
    counts = await open_tab_counts(db, [reservation.id])
    if counts:
        logger.warning("Ignoring external cancellation of reservation %s: it has an open tab", reservation.id)
        return False

    reservation.status = ReservationStatus.CANCELLED
    reservation.cancelled_at = datetime.now(UTC)
    # The event is gone on Google's side, nothing left to mirror
    reservation.external_event_id = None
    await db.commit()
    logger.info("Reservation %s cancelled from Google Calendar", reservation.id)
    return True


async def apply_external_reschedule(db: AsyncSession, complex_id: int, reservation: Reservation, interval: TimeInterval) -> bool:
    """Move a reservation to the times of its mirrored event.

    Returns True when applied, False when the local state must win (the
    reservation is cancelled, has an open tab, or the new times collide).
    Client and resource are never changed from outside.
    """
    if reservation.status == ReservationStatus.CANCELLED:
        return False
    if interval == TimeInterval(reservation.start_time, reservation.end_time):
        return True
    if await open_tab_counts(db, [reservation.id]):
        logger.warning("Rejecting external reschedule of reservation %s: it has an open tab", reservation.id)
        return False

    await _lock_resource(db, complex_id, reservation.resource_id)
    conflict = await find_conflict(db, reservation.resource_id, interval, exclude_reservation_id=reservation.id)
    if conflict is not None:
        logger.warning(
            "Rejecting external reschedule of reservation %s: overlaps reservation %s",
            reservation.id,
            conflict.id,
        )
        return False

    reservation.start_time = interval.start
    reservation.end_time = interval.end
    await _flush_guarding_overlap(db)
    await db.commit()
    logger.info("Reservation %s rescheduled from Google Calendar", reservation.id)
    return True
