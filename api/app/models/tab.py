"""Tab (bar/shop bill) models.

Billing lives elsewhere; the scheduling core only needs to know whether a
reservation still has an OPEN tab, and cascades need to remove tab rows.
"""

import enum
from decimal import Decimal

from sqlalchemy import Enum, ForeignKey, Index, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, TimestampMixin


class TabStatus(enum.StrEnum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class Tab(TimestampMixin, Base):
    __tablename__ = "tabs"

    id: Mapped[int] = mapped_column(primary_key=True)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id"), nullable=False)
    reservation_id: Mapped[int | None] = mapped_column(ForeignKey("reservations.id"))
    status: Mapped[TabStatus] = mapped_column(
        Enum(TabStatus, name="tab_status", values_callable=lambda e: [x.value for x in e]),
        default=TabStatus.OPEN,
        nullable=False,
    )

    __table_args__ = (
        Index("ix_tabs_reservation_status", "reservation_id", "status"),
        Index("ix_tabs_client", "client_id"),
    )

    def __repr__(self) -> str:
        return f"<Tab {self.id} {self.status.value} reservation={self.reservation_id}>"


class TabItem(TimestampMixin, Base):
    __tablename__ = "tab_items"

    id: Mapped[int] = mapped_column(primary_key=True)
    tab_id: Mapped[int] = mapped_column(ForeignKey("tabs.id"), nullable=False, index=True)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
