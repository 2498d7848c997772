"""Hard deletion of resources and clients together with their dependents.

Tab items, tabs and reservations go first, then recurring groups left with no
reservations, then the owner row. Nothing is committed here: the caller's
transaction (``get_db``) covers the whole cascade, so a failure part way
leaves no orphans.
"""

import logging
from datetime import UTC, datetime

from sqlalchemy import ColumnElement, delete, exists, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import Conflict, PreconditionFailed
from app.models.reservation import RecurringGroup, Reservation, ReservationStatus
from app.models.resource import Client, Resource
from app.models.tab import Tab, TabItem, TabStatus

logger = logging.getLogger(__name__)


async def _delete_tabs(db: AsyncSession, where: ColumnElement[bool]) -> None:
    tab_ids = select(Tab.id).where(where).scalar_subquery()
    await db.execute(delete(TabItem).where(TabItem.tab_id.in_(tab_ids)))
    await db.execute(delete(Tab).where(where))


async def _delete_reservations(db: AsyncSession, where: ColumnElement[bool]) -> None:
    """Delete reservations, then any recurring group left without members."""
    group_ids = (
        await db.execute(
            select(Reservation.recurring_group_id).where(where, Reservation.recurring_group_id.is_not(None)).distinct()
        )
    ).scalars().all()
    await db.execute(delete(Reservation).where(where))
    if group_ids:
        await db.execute(
            delete(RecurringGroup).where(
                RecurringGroup.id.in_(group_ids),
                ~exists().where(Reservation.recurring_group_id == RecurringGroup.id),
            )
        )


async def delete_resource(db: AsyncSession, resource: Resource) -> None:
    """Refused while a live reservation starts now or later."""
    upcoming = await db.execute(
        select(func.count(Reservation.id)).where(
            Reservation.resource_id == resource.id,
            Reservation.status != ReservationStatus.CANCELLED,
            Reservation.start_time >= datetime.now(UTC),
        )
    )
    count = upcoming.scalar_one()
    if count:
        raise Conflict(
            "Cannot delete a resource with upcoming reservations",
            code="resource_has_reservations",
            active_reservations=count,
        )

    reservation_ids = select(Reservation.id).where(Reservation.resource_id == resource.id).scalar_subquery()
    await _delete_tabs(db, Tab.reservation_id.in_(reservation_ids))
    await _delete_reservations(db, Reservation.resource_id == resource.id)
    await db.delete(resource)
    await db.flush()
    logger.info("Resource %s deleted with its reservations", resource.id)


async def delete_client(db: AsyncSession, client: Client) -> None:
    """Refused while the client has a live reservation not yet over, or an open tab."""
    active = await db.execute(
        select(func.count(Reservation.id)).where(
            Reservation.client_id == client.id,
            Reservation.status != ReservationStatus.CANCELLED,
            Reservation.end_time >= datetime.now(UTC),
        )
    )
    active_count = active.scalar_one()
    if active_count:
        raise PreconditionFailed(
            "Cannot delete a client with active reservations",
            code="client_has_reservations",
            active_reservations=active_count,
        )

    open_tabs = await db.execute(
        select(func.count(Tab.id)).where(Tab.client_id == client.id, Tab.status == TabStatus.OPEN)
    )
    open_count = open_tabs.scalar_one()
    if open_count:
        raise PreconditionFailed("Cannot delete a client with open tabs", code="open_tab", open_tabs=open_count)

    reservation_ids = select(Reservation.id).where(Reservation.client_id == client.id).scalar_subquery()
    await _delete_tabs(db, or_(Tab.client_id == client.id, Tab.reservation_id.in_(reservation_ids)))
    await _delete_reservations(db, Reservation.client_id == client.id)
    await db.delete(client)
    await db.flush()
    logger.info("Client %s deleted with its reservations", client.id)
