"""Tenant and staff models.

Complex = a sports complex, the tenant. Everything bookable belongs to one.
User = a staff account working for exactly one complex.
"""

import enum
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, Enum, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from app.models.resource import Resource


class UserRole(enum.StrEnum):
    ADMIN = "admin"
    MANAGER = "manager"
    STAFF = "staff"


class Complex(TimestampMixin, Base):
    __tablename__ = "complexes"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    resources: Mapped[list["Resource"]] = relationship(back_populates="complex", lazy="raise")

    def __repr__(self) -> str:
        return f"<Complex {self.slug}>"


class User(TimestampMixin, Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    complex_id: Mapped[int] = mapped_column(ForeignKey("complexes.id"), nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(254), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole, name="user_role", values_callable=lambda e: [x.value for x in e]),
        default=UserRole.STAFF,
        nullable=False,
    )

    complex: Mapped["Complex"] = relationship(lazy="raise")

    def __repr__(self) -> str:
        return f"<User {self.email} complex={self.complex_id}>"
