"""Resource (court/room) routes, scoped to the caller's complex."""

from fastapi import APIRouter, Depends, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.dependencies import require_permission
from app.core.errors import NotFound
from app.models.complex import User
from app.models.resource import Resource
from app.schemas import MessageOut, ResourceCreate, ResourceOut, ResourceUpdate
from app.services.cascade import delete_resource

router = APIRouter(prefix="/resources", tags=["resources"])


async def _get_resource(db: AsyncSession, complex_id: int, resource_id: int) -> Resource:
    result = await db.execute(select(Resource).where(Resource.id == resource_id, Resource.complex_id == complex_id))
    resource = result.scalar_one_or_none()
    if resource is None:
        raise NotFound("Resource not found", code="resource_not_found")
    return resource


@router.get("", response_model=list[ResourceOut])
async def list_resources(
    user: User = Depends(require_permission("resources", "view")),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(select(Resource).where(Resource.complex_id == user.complex_id).order_by(Resource.name))
    return result.scalars().all()


@router.post("", response_model=ResourceOut, status_code=status.HTTP_201_CREATED)
async def create_resource(
    body: ResourceCreate,
    user: User = Depends(require_permission("resources", "create")),
    db: AsyncSession = Depends(get_db),
):
    resource = Resource(complex_id=user.complex_id, **body.model_dump())
    db.add(resource)
    await db.flush()
    await db.refresh(resource)
    return resource


@router.get("/{resource_id}", response_model=ResourceOut)
async def get_resource(
    resource_id: int,
    user: User = Depends(require_permission("resources", "view")),
    db: AsyncSession = Depends(get_db),
):
    return await _get_resource(db, user.complex_id, resource_id)


@router.put("/{resource_id}", response_model=ResourceOut)
async def update_resource(
    resource_id: int,
    body: ResourceUpdate,
    user: User = Depends(require_permission("resources", "edit")),
    db: AsyncSession = Depends(get_db),
):
    resource = await _get_resource(db, user.complex_id, resource_id)
    for field, value in body.model_dump(exclude_unset=True).items():
        setattr(resource, field, value)
    await db.flush()
    await db.refresh(resource)
    return resource


@router.delete("/{resource_id}", response_model=MessageOut)
async def remove_resource(
    resource_id: int,
    user: User = Depends(require_permission("resources", "delete")),
    db: AsyncSession = Depends(get_db),
):
    """Delete a resource with its past reservations and their tabs. 409 while upcoming bookings exist."""
    resource = await _get_resource(db, user.complex_id, resource_id)
    await delete_resource(db, resource)
    return MessageOut(message="Resource deleted")
