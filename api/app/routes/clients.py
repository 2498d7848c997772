"""Client routes, scoped to the caller's complex."""

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.dependencies import require_permission
from app.core.errors import NotFound
from app.models.complex import User
from app.models.resource import Client
from app.schemas import ClientCreate, ClientOut, ClientUpdate, MessageOut
from app.services.cascade import delete_client

router = APIRouter(prefix="/clients", tags=["clients"])


async def _get_client(db: AsyncSession, complex_id: int, client_id: int) -> Client:
    result = await db.execute(select(Client).where(Client.id == client_id, Client.complex_id == complex_id))
    client = result.scalar_one_or_none()
    if client is None:
        raise NotFound("Client not found", code="client_not_found")
    return client


@router.get("", response_model=list[ClientOut])
async def list_clients(
    search: str | None = Query(None, max_length=100),
    user: User = Depends(require_permission("clients", "view")),
    db: AsyncSession = Depends(get_db),
):
    query = select(Client).where(Client.complex_id == user.complex_id)
    if search:
        pattern = f"%{search}%"
        query = query.where(or_(Client.full_name.ilike(pattern), Client.phone.ilike(pattern)))
    result = await db.execute(query.order_by(Client.full_name))
    return result.scalars().all()


@router.post("", response_model=ClientOut, status_code=status.HTTP_201_CREATED)
async def create_client(
    body: ClientCreate,
    user: User = Depends(require_permission("clients", "create")),
    db: AsyncSession = Depends(get_db),
):
    client = Client(complex_id=user.complex_id, **body.model_dump())
    db.add(client)
    await db.flush()
    await db.refresh(client)
    return client


@router.get("/{client_id}", response_model=ClientOut)
async def get_client(
    client_id: int,
    user: User = Depends(require_permission("clients", "view")),
    db: AsyncSession = Depends(get_db),
):
    return await _get_client(db, user.complex_id, client_id)


@router.put("/{client_id}", response_model=ClientOut)
async def update_client(
    client_id: int,
    body: ClientUpdate,
    user: User = Depends(require_permission("clients", "edit")),
    db: AsyncSession = Depends(get_db),
):
    client = await _get_client(db, user.complex_id, client_id)
    for field, value in body.model_dump(exclude_unset=True).items():
        setattr(client, field, value)
    await db.flush()
    await db.refresh(client)
    return client


@router.delete("/{client_id}", response_model=MessageOut)
async def remove_client(
    client_id: int,
    user: User = Depends(require_permission("clients", "delete")),
    db: AsyncSession = Depends(get_db),
):
    client = await _get_client(db, user.complex_id, client_id)
    await delete_client(db, client)
    return MessageOut(message="Client deleted")
