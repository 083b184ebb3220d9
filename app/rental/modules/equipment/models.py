from __future__ import annotations

from datetime import date as date_type, datetime

from sqlalchemy import JSON, Date, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.rental.models import Base

EQUIPMENT_STATUSES = ("AVAILABLE", "RENTED", "MAINTENANCE", "INACTIVE")
COST_TYPES = ("PURCHASE", "MAINTENANCE", "REPAIR", "INSURANCE", "FUEL", "TRANSPORT", "OTHER")


class Equipment(Base):
    __tablename__ = "equipments"
    __table_args__ = (
        Index("idx_equipments_tenant_status", "tenant_id", "status"),
        Index("idx_equipments_tenant_category", "tenant_id", "category"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String(128), nullable=False)
    price_per_day: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    price_per_hour: Mapped[float | None] = mapped_column(Float, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="AVAILABLE")
    images: Mapped[list | None] = mapped_column(JSON, nullable=True, default=list)  # storage keys

    # Stock counters: total = available + reserved + maintenance + damaged
    total_stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    available_stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reserved_stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    maintenance_stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    damaged_stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    min_stock_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unit_cost: Mapped[float | None] = mapped_column(Float, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    costs: Mapped[list["EquipmentCost"]] = relationship(
        back_populates="equipment",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="EquipmentCost.date.desc()",
    )
    rental_periods: Mapped[list["RentalPeriod"]] = relationship(
        back_populates="equipment",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="RentalPeriod.days.asc()",
    )


class EquipmentCost(Base):
    __tablename__ = "equipment_costs"
    __table_args__ = (Index("idx_equipment_costs_equipment", "equipment_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    equipment_id: Mapped[int] = mapped_column(ForeignKey("equipments.id", ondelete="CASCADE"), nullable=False)
    booking_id: Mapped[int | None] = mapped_column(ForeignKey("bookings.id", ondelete="SET NULL"), nullable=True)

    type: Mapped[str] = mapped_column(String(16), nullable=False)  # see COST_TYPES
    description: Mapped[str] = mapped_column(String(512), nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    date: Mapped[date_type] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    equipment: Mapped[Equipment] = relationship(back_populates="costs", lazy="selectin")


class RentalPeriod(Base):
    __tablename__ = "rental_periods"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    equipment_id: Mapped[int] = mapped_column(ForeignKey("equipments.id", ondelete="CASCADE"), nullable=False)
    days: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[float] = mapped_column(Float, nullable=False)
    label: Mapped[str | None] = mapped_column(String(64), nullable=True)  # e.g. "Semanal"

    equipment: Mapped[Equipment] = relationship(back_populates="rental_periods", lazy="selectin")
