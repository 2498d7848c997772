"""Shared test fixtures.

The suite runs against a throwaway SQLite file. The environment has to be set
before ``app`` is imported because the engine is created at import time.
"""

import os
import tempfile
from datetime import UTC, datetime, timedelta
from pathlib import Path
from types import SimpleNamespace

_DB_PATH = Path(tempfile.gettempdir()) / f"agendacerta-test-{os.getpid()}.db"
os.environ["AC_DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_PATH}"
os.environ["AC_SECRET_KEY"] = "test-secret"
os.environ["AC_SYNC_BASE_DELAY_SECONDS"] = "0"
os.environ["AC_SYNC_MAX_DELAY_SECONDS"] = "0"

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from app.core.auth import create_access_token  # noqa: E402
from app.core.database import async_session_factory, engine  # noqa: E402
from app.main import app  # noqa: E402
from app.models import (  # noqa: E402
    Base,
    Client,
    Complex,
    Reservation,
    ReservationStatus,
    Resource,
    Tab,
    TabStatus,
    User,
    UserRole,
)


@pytest.fixture
async def database():
    """Recreate the schema before each test.

    The global engine is created at import time. When pytest-asyncio creates a new
    event loop for tests, any existing pooled connections are bound to the old loop
    and will fail with 'Future attached to a different loop'. Disposing before each
    test forces fresh connections in the current loop.
    """
    await engine.dispose()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest.fixture
async def client(database):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
async def db(database):
    async with async_session_factory() as session:
        yield session


def bearer(user_id: int) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(str(user_id))}"}


def future(days: int = 7, hour: int = 10) -> datetime:
    """A whole hour ``days`` from now, in UTC."""
    return (datetime.now(UTC) + timedelta(days=days)).replace(hour=hour, minute=0, second=0, microsecond=0)


async def _create_tenant(slug: str) -> SimpleNamespace:
    async with async_session_factory() as session:
        complex_ = Complex(name=slug.title(), slug=slug)
        session.add(complex_)
        await session.flush()

        users = {
            role: User(complex_id=complex_.id, email=f"{role.value}@{slug}.test", name=role.value, role=role)
            for role in UserRole
        }
        court = Resource(complex_id=complex_.id, name="Court 1", price_per_hour=50)
        court2 = Resource(complex_id=complex_.id, name="Court 2", price_per_hour=60)
        jane = Client(complex_id=complex_.id, full_name="Jane", phone="555-0101")
        session.add_all([*users.values(), court, court2, jane])
        await session.commit()

        return SimpleNamespace(
            complex_id=complex_.id,
            court_id=court.id,
            court2_id=court2.id,
            client_id=jane.id,
            admin_id=users[UserRole.ADMIN].id,
            headers=bearer(users[UserRole.ADMIN].id),
            manager_headers=bearer(users[UserRole.MANAGER].id),
            staff_headers=bearer(users[UserRole.STAFF].id),
        )


@pytest.fixture
async def tenant(database):
    """A complex with one user per role, two courts and a client called Jane."""
    return await _create_tenant("arena")


@pytest.fixture
async def other_tenant(database):
    return await _create_tenant("rival")


@pytest.fixture
def make_reservation():
    """Insert a reservation directly, bypassing the lifecycle checks (for past or pre-existing rows)."""

    async def _make(
        resource_id: int,
        client_id: int,
        start: datetime,
        hours: float = 1,
        status: ReservationStatus = ReservationStatus.CONFIRMED,
        **extra,
    ) -> int:
        async with async_session_factory() as session:
            reservation = Reservation(
                resource_id=resource_id,
                client_id=client_id,
                start_time=start,
                end_time=start + timedelta(hours=hours),
                status=status,
                **extra,
            )
            session.add(reservation)
            await session.commit()
            return reservation.id

    return _make


@pytest.fixture
def open_tab():
    async def _open(client_id: int, reservation_id: int | None) -> int:
        async with async_session_factory() as session:
            tab = Tab(client_id=client_id, reservation_id=reservation_id, status=TabStatus.OPEN)
            session.add(tab)
            await session.commit()
            return tab.id

    return _open
