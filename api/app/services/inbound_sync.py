"""Google Calendar sync adapter, inbound half.

Push notifications only say "something changed on this calendar". The
complex is resolved from the stored channel, never from the request, and
the actual changes are pulled with the channel's incremental sync token.
Each changed event is reconciled against the reservation it mirrors:

- deleted externally -> the reservation is cancelled
- moved externally   -> the reservation takes the new times, unless that
  would break a local rule, in which case the local version is pushed back
- not ours           -> ignored; events created in Google never become reservations
"""

import enum
import logging
import secrets
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.database import async_session_factory
from app.core.errors import ValidationFailed
from app.models.calendar import CalendarChannel
from app.models.reservation import Reservation, ReservationStatus
from app.models.resource import Resource
from app.services import google_calendar
from app.services import reservations as lifecycle
from app.services.intervals import TimeInterval, as_utc, validate_duration

logger = logging.getLogger(__name__)


class Outcome(enum.StrEnum):
    IGNORED = "ignored"
    CANCELLED = "cancelled"
    RESCHEDULED = "rescheduled"
    UNCHANGED = "unchanged"
    REJECTED = "rejected"  # local version pushed back


def reservation_tag(event: dict) -> int | None:
    raw = event.get("extendedProperties", {}).get("private", {}).get(google_calendar.RESERVATION_TAG)
    try:
        return int(raw) if raw is not None else None
    except ValueError:
        return None


def event_interval(event: dict) -> TimeInterval | None:
    """The event's times, or None for all-day or malformed events."""
    try:
        start = as_utc(datetime.fromisoformat(event["start"]["dateTime"]))
        end = as_utc(datetime.fromisoformat(event["end"]["dateTime"]))
        return TimeInterval(start, end)
    except (KeyError, TypeError, ValueError):
        return None


async def find_mirrored_reservation(db: AsyncSession, complex_id: int, event: dict) -> Reservation | None:
    """Resolve the reservation behind an event, within the complex.

    Uses the private tag when present. Cancelled events in incremental feeds
    come without properties, so fall back to the stored event id.
    """
    query = (
        select(Reservation)
        .join(Resource, Resource.id == Reservation.resource_id)
        .options(selectinload(Reservation.resource), selectinload(Reservation.client))
        .where(Resource.complex_id == complex_id)
    )
    tag = reservation_tag(event)
    if tag is not None:
        query = query.where(Reservation.id == tag)
    elif event.get("id"):
        query = query.where(Reservation.external_event_id == event["id"])
    else:
        return None
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def _push_back(db: AsyncSession, complex_id: int, reservation: Reservation, event_id: str) -> None:
    if reservation.status == ReservationStatus.CANCELLED:
        await google_calendar.delete_event(db, complex_id, event_id)
        return
    if reservation.external_event_id != event_id:
        return
    await google_calendar.update_event(db, complex_id, reservation)


async def reconcile_event(db: AsyncSession, complex_id: int, event: dict) -> Outcome:
    """Apply one changed event to the local reservation it mirrors."""
    reservation = await find_mirrored_reservation(db, complex_id, event)
    if reservation is None:
        return Outcome.IGNORED

    event_id = event.get("id")
    if event.get("status") == "cancelled":
        if await lifecycle.apply_external_cancellation(db, reservation):
            return Outcome.CANCELLED
        return Outcome.UNCHANGED

    interval = event_interval(event)
    if interval is None:
        logger.info("Event %s has no usable times, leaving reservation %s as is", event_id, reservation.id)
        return Outcome.IGNORED

    unchanged = interval == TimeInterval(reservation.start_time, reservation.end_time)
    if unchanged and reservation.status != ReservationStatus.CANCELLED:
        return Outcome.UNCHANGED

    try:
        validate_duration(interval.duration.total_seconds() / 3600)
        applied = await lifecycle.apply_external_reschedule(db, complex_id, reservation, interval)
    except ValidationFailed:
        applied = False

    if applied:
        return Outcome.RESCHEDULED

    logger.info("Keeping local version of reservation %s over event %s", reservation.id, event_id)
    await _push_back(db, complex_id, reservation, event_id)
    return Outcome.REJECTED


async def reconcile_inbound(db: AsyncSession, complex_id: int, external_event_id: str) -> Outcome:
    """Fetch one event and reconcile it. A purged event counts as cancelled."""
    client = await google_calendar.get_client(db, complex_id)
    if client is None:
        return Outcome.IGNORED
    try:
        event = await client.get_event(external_event_id)
    except google_calendar.CalendarAuthError:
        await google_calendar.invalidate_credentials(db, complex_id)
        return Outcome.IGNORED
    except google_calendar.CalendarSyncError as exc:
        if exc.status_code not in (404, 410):
            return Outcome.IGNORED
        event = {"id": external_event_id, "status": "cancelled"}
    return await reconcile_event(db, complex_id, event)


async def sync_changes(
    db: AsyncSession, channel: CalendarChannel, client: google_calendar.GoogleCalendarClient
) -> dict[Outcome, int]:
    """Pull changes since the channel's sync token and reconcile each of them.

    Without a usable token (never primed, or expired with a 410) only a fresh
    baseline token is taken; the full listing is not replayed.
    """
    counts: dict[Outcome, int] = {}
    items: list[dict] = []
    if channel.sync_token:
        try:
            items, next_token = await client.list_changes(channel.sync_token)
        except google_calendar.SyncTokenExpired:
            logger.info("Sync token of channel %s expired, taking a new baseline", channel.channel_id)
            _, next_token = await client.list_changes(None)
    else:
        _, next_token = await client.list_changes(None)

    for event in items:
        outcome = await reconcile_event(db, channel.complex_id, event)
        counts[outcome] = counts.get(outcome, 0) + 1

    channel.sync_token = next_token
    await db.commit()
    return counts


async def process_notification(channel_id: str, channel_token: str | None, resource_state: str | None) -> None:
    """Handle one push delivery. Runs in the background and only ever logs failures."""
    if resource_state == "sync":
        return
    try:
        async with async_session_factory() as db:
            result = await db.execute(select(CalendarChannel).where(CalendarChannel.channel_id == channel_id))
            channel = result.scalar_one_or_none()
            if channel is None:
                logger.warning("Notification for unknown channel %s ignored", channel_id)
                return
            if not secrets.compare_digest(channel.channel_token, channel_token or ""):
                logger.warning("Notification for channel %s with a bad token ignored", channel_id)
                return

            complex_id = channel.complex_id
            client = await google_calendar.get_client(db, complex_id)
            if client is None:
                return
            try:
                counts = await sync_changes(db, channel, client)
            except google_calendar.CalendarAuthError:
                await google_calendar.invalidate_credentials(db, complex_id)
                return
            except google_calendar.CalendarSyncError:
                return
            logger.info("Channel %s synced: %s", channel_id, {k.value: v for k, v in counts.items()})
    except Exception:
        logger.exception("Processing notification for channel %s failed", channel_id)
