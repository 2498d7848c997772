"""Conflict checker: does a candidate interval collide with a live reservation?"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.models.reservation import Reservation, ReservationStatus
from app.services.intervals import TimeInterval, overlap_clause


async def find_conflict(
    db: AsyncSession,
    resource_id: int,
    candidate: TimeInterval,
    exclude_reservation_id: int | None = None,
) -> Reservation | None:
    """Return the first non-cancelled reservation on the resource overlapping ``candidate``, else None.

    The returned row has its client loaded so callers can describe the collision.
    """
    query = (
        select(Reservation)
        .options(selectinload(Reservation.client))
        .where(
            Reservation.resource_id == resource_id,
            Reservation.status != ReservationStatus.CANCELLED,
            overlap_clause(Reservation.start_time, Reservation.end_time, candidate),
        )
        .order_by(Reservation.start_time)
        .limit(1)
    )
    if exclude_reservation_id is not None:
        query = query.where(Reservation.id != exclude_reservation_id)

    result = await db.execute(query)
    return result.scalar_one_or_none()


def describe_conflict(conflict: Reservation) -> dict:
    """Details attached to a Conflict error so the caller can pick another slot."""
    return {
        "reservation_id": conflict.id,
        "client": conflict.client.full_name,
        "start_time": conflict.start_time.isoformat(),
        "end_time": conflict.end_time.isoformat(),
    }
