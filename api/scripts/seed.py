"""Seed the database with a demo sports complex.

Run with: python -m scripts.seed
Creates the complex, its courts, a few clients and one user per role, and
prints a bearer token for each user (tokens are normally minted by the
identity service).
"""

import asyncio
from decimal import Decimal

from sqlalchemy import select

from app.core.auth import create_access_token
from app.core.database import async_session_factory, engine
from app.models import Base, Client, Complex, Resource, ResourceStatus, User, UserRole

COURTS = [
    {"name": "Court 1", "description": "Beach tennis, sand", "price_per_hour": Decimal("50.00")},
    {"name": "Court 2", "description": "Beach tennis, sand", "price_per_hour": Decimal("50.00")},
    {"name": "Court 3", "description": "Futevolei, floodlit", "price_per_hour": Decimal("70.00")},
    {
        "name": "Court 4",
        "description": "Volleyball, resurfacing",
        "price_per_hour": Decimal("60.00"),
        "status": ResourceStatus.MAINTENANCE,
    },
]

CLIENTS = [
    {"full_name": "Jane Souza", "phone": "+55 11 91234-0001", "email": "jane@example.com"},
    {"full_name": "Carlos Lima", "phone": "+55 11 91234-0002"},
    {"full_name": "Ana Pereira", "phone": "+55 11 91234-0003", "tax_id": "123.456.789-09"},
]

USERS = [
    {"email": "admin@agendacerta.dev", "name": "Demo Admin", "role": UserRole.ADMIN},
    {"email": "manager@agendacerta.dev", "name": "Demo Manager", "role": UserRole.MANAGER},
    {"email": "staff@agendacerta.dev", "name": "Demo Staff", "role": UserRole.STAFF},
]


async def seed():
    # Create tables (in dev; production uses migrations)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with async_session_factory() as db:
        # Check if already seeded
        result = await db.execute(select(Complex).where(Complex.slug == "arena-demo"))
        if result.scalar_one_or_none():
            print("Database already seeded - skipping.")
            return

        complex_ = Complex(name="Arena Demo", slug="arena-demo")
        db.add(complex_)
        await db.flush()

        for court_data in COURTS:
            db.add(Resource(complex_id=complex_.id, **court_data))
        for client_data in CLIENTS:
            db.add(Client(complex_id=complex_.id, **client_data))

        users = [User(complex_id=complex_.id, **user_data) for user_data in USERS]
        db.add_all(users)
        await db.commit()

        print(f"Seeded: {complex_.name}")
        print(f"  {len(COURTS)} courts")
        print(f"  {len(CLIENTS)} clients")
        print(f"  {len(users)} users:")
        for user in users:
            token = create_access_token(str(user.id))
            print(f"    {user.email} ({user.role.value})")
            print(f"      Authorization: Bearer {token}")


if __name__ == "__main__":
    asyncio.run(seed())
