from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import Date, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.rental.models import Base
from app.rental.modules.customers.models import Customer, CustomerSite
from app.rental.modules.equipment.models import Equipment

BOOKING_STATUSES = ("PENDING", "CONFIRMED", "COMPLETED", "CANCELLED")
BOOKING_STATUS_LABELS = {
    "PENDING": "Pendente",
    "CONFIRMED": "Confirmada",
    "COMPLETED": "Concluída",
    "CANCELLED": "Cancelada",
}
PAYMENT_METHODS = ("PIX", "CASH", "CREDIT_CARD", "DEBIT_CARD", "BOLETO", "TRANSFER")


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        UniqueConstraint("tenant_id", "booking_number", name="uq_bookings_tenant_number"),
        Index("idx_bookings_tenant_status", "tenant_id", "status"),
        Index("idx_bookings_period", "start_date", "end_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    booking_number: Mapped[str] = mapped_column(String(32), nullable=False)  # RES-0001
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id", ondelete="RESTRICT"), nullable=False)

    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    start_time: Mapped[str | None] = mapped_column(String(5), nullable=True)  # HH:MM
    end_time: Mapped[str | None] = mapped_column(String(5), nullable=True)
    total_price: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")
    # Set once the units leave stock (RENTAL_OUT). Confirmed bookings only hold their period until then.
    dispatched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(32), nullable=True)
    customer_site_id: Mapped[int | None] = mapped_column(
        ForeignKey("customer_sites.id", ondelete="SET NULL"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    customer: Mapped[Customer] = relationship(lazy="selectin")
    customer_site: Mapped[CustomerSite | None] = relationship(lazy="selectin")
    items: Mapped[list["BookingItem"]] = relationship(
        back_populates="booking",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="BookingItem.id.asc()",
    )


class BookingItem(Base):
    __tablename__ = "booking_items"
    __table_args__ = (Index("idx_booking_items_equipment", "equipment_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False)
    equipment_id: Mapped[int] = mapped_column(ForeignKey("equipments.id", ondelete="RESTRICT"), nullable=False)

    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_price: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    total_price: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    returned_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    damaged_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    damage_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    booking: Mapped[Booking] = relationship(back_populates="items", lazy="selectin")
    equipment: Mapped[Equipment] = relationship(lazy="selectin")

    @property
    def pending_quantity(self) -> int:
        return self.quantity - (self.returned_quantity or 0) - (self.damaged_quantity or 0)
