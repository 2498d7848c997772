"""Reservation routes: list, create (single and recurring), edit, cancel."""

from datetime import datetime

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.dependencies import require_permission
from app.core.errors import ValidationFailed
from app.models.complex import User
from app.models.reservation import ReservationStatus
from app.schemas import (
    CancelCountOut,
    CancelMultipleRequest,
    CancelOut,
    RecurringCreateOut,
    ReservationCreate,
    ReservationOut,
    ReservationUpdate,
    SkippedOccurrence,
)
from app.services import reservations as lifecycle

router = APIRouter(prefix="/reservations", tags=["reservations"])


@router.get("", response_model=list[ReservationOut])
async def list_reservations(
    resource_id: int | None = None,
    client_id: int | None = None,
    reservation_status: ReservationStatus | None = Query(None, alias="status"),
    recurring_group_id: int | None = None,
    start_from: datetime | None = None,
    start_to: datetime | None = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user: User = Depends(require_permission("reservations", "view")),
    db: AsyncSession = Depends(get_db),
):
    return await lifecycle.list_reservations(
        db,
        user.complex_id,
        resource_id=resource_id,
        client_id=client_id,
        status=reservation_status,
        recurring_group_id=recurring_group_id,
        start_from=start_from,
        start_to=start_to,
        limit=limit,
        offset=offset,
    )


@router.get("/{reservation_id}", response_model=ReservationOut)
async def get_reservation(
    reservation_id: int,
    user: User = Depends(require_permission("reservations", "view")),
    db: AsyncSession = Depends(get_db),
):
    return await lifecycle.get_reservation(db, user.complex_id, reservation_id)


@router.post(
    "",
    response_model=ReservationOut | RecurringCreateOut,
    status_code=status.HTTP_201_CREATED,
)
async def create_reservation(
    body: ReservationCreate,
    background_tasks: BackgroundTasks,
    user: User = Depends(require_permission("reservations", "create")),
    db: AsyncSession = Depends(get_db),
):
    """Book one slot, or a weekly/monthly series when ``is_recurring`` is set.

    A series skips occurrences that collide with existing reservations and
    reports them; it fails with 409 only when every occurrence collides.
    """
    if not body.is_recurring:
        return await lifecycle.create_reservation(
            db,
            user.complex_id,
            resource_id=body.resource_id,
            client_id=body.client_id,
            start_time=body.start_time,
            duration_hours=body.duration_hours,
            schedule=background_tasks.add_task,
        )

    if body.frequency is None or body.end_date is None:
        raise ValidationFailed(
            "Frequency and end date are required for recurring reservations",
            code="missing_recurrence_fields",
        )

    result = await lifecycle.create_recurring_reservations(
        db,
        user.complex_id,
        resource_id=body.resource_id,
        client_id=body.client_id,
        start_time=body.start_time,
        duration_hours=body.duration_hours,
        frequency=body.frequency,
        end_date=body.end_date,
    )
    return RecurringCreateOut(
        message=f"{result.count} recurring reservations created",
        recurring_group_id=result.group.id,
        count=result.count,
        skipped=[SkippedOccurrence(**s) for s in result.skipped],
    )


@router.put("/{reservation_id}", response_model=ReservationOut)
async def update_reservation(
    reservation_id: int,
    body: ReservationUpdate,
    background_tasks: BackgroundTasks,
    user: User = Depends(require_permission("reservations", "edit")),
    db: AsyncSession = Depends(get_db),
):
    return await lifecycle.update_reservation(
        db,
        user.complex_id,
        reservation_id,
        start_time=body.start_time,
        duration_hours=body.duration_hours,
        status=body.status,
        schedule=background_tasks.add_task,
    )


@router.delete("/{reservation_id}", response_model=CancelOut)
async def cancel_reservation(
    reservation_id: int,
    background_tasks: BackgroundTasks,
    user: User = Depends(require_permission("reservations", "cancel")),
    db: AsyncSession = Depends(get_db),
):
    reservation = await lifecycle.cancel_reservation(
        db, user.complex_id, reservation_id, schedule=background_tasks.add_task
    )
    return CancelOut(message="Reservation cancelled", reservation_id=reservation.id, status=reservation.status)


@router.post("/cancel-multiple", response_model=CancelCountOut)
async def cancel_multiple(
    body: CancelMultipleRequest,
    background_tasks: BackgroundTasks,
    user: User = Depends(require_permission("reservations", "cancel")),
    db: AsyncSession = Depends(get_db),
):
    """All-or-nothing: one unknown id or one open tab and nothing is cancelled."""
    count = await lifecycle.cancel_reservations(
        db, user.complex_id, body.reservation_ids, schedule=background_tasks.add_task
    )
    return CancelCountOut(message=f"{count} reservations cancelled", count=count)


@router.delete("/recurring-group/{group_id}", response_model=CancelCountOut)
async def cancel_recurring_group(
    group_id: int,
    background_tasks: BackgroundTasks,
    user: User = Depends(require_permission("reservations", "cancel")),
    db: AsyncSession = Depends(get_db),
):
    count = await lifecycle.cancel_recurring_group(db, user.complex_id, group_id, schedule=background_tasks.add_task)
    return CancelCountOut(message=f"{count} upcoming reservations of the group cancelled", count=count)
