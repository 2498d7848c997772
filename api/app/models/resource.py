"""Bookable resources and the complex's clients.

Resource = a court or room with an hourly price.
Client = a customer of the complex. Clients do not log in; staff book for them.
"""

import enum
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import Enum, ForeignKey, Index, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from app.models.complex import Complex


class ResourceStatus(enum.StrEnum):
    AVAILABLE = "AVAILABLE"
    OCCUPIED = "OCCUPIED"
    MAINTENANCE = "MAINTENANCE"


class Resource(TimestampMixin, Base):
    __tablename__ = "resources"

    id: Mapped[int] = mapped_column(primary_key=True)
    complex_id: Mapped[int] = mapped_column(ForeignKey("complexes.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    price_per_hour: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"), nullable=False)
    status: Mapped[ResourceStatus] = mapped_column(
        Enum(ResourceStatus, name="resource_status", values_callable=lambda e: [x.value for x in e]),
        default=ResourceStatus.AVAILABLE,
        nullable=False,
    )

    complex: Mapped["Complex"] = relationship(back_populates="resources", lazy="raise")

    __table_args__ = (Index("ix_resources_complex_name", "complex_id", "name"),)

    def __repr__(self) -> str:
        return f"<Resource {self.name} complex={self.complex_id}>"


class Client(TimestampMixin, Base):
    __tablename__ = "clients"

    id: Mapped[int] = mapped_column(primary_key=True)
    complex_id: Mapped[int] = mapped_column(ForeignKey("complexes.id"), nullable=False)
    full_name: Mapped[str] = mapped_column(String(200), nullable=False)
    phone: Mapped[str] = mapped_column(String(50), nullable=False)
    email: Mapped[str | None] = mapped_column(String(254))
    tax_id: Mapped[str | None] = mapped_column(String(20))

    __table_args__ = (Index("ix_clients_complex_name", "complex_id", "full_name"),)

    def __repr__(self) -> str:
        return f"<Client {self.full_name} complex={self.complex_id}>"
