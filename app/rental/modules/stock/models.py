from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.rental.models import Base, User

MOVEMENT_TYPES = (
    "PURCHASE",
    "RENTAL_OUT",
    "RENTAL_RETURN",
    "ADJUSTMENT",
    "DAMAGE",
    "LOSS",
    "MAINTENANCE_OUT",
    "MAINTENANCE_IN",
)

MOVEMENT_LABELS = {
    "PURCHASE": "Compra/Entrada",
    "RENTAL_OUT": "Saída para Locação",
    "RENTAL_RETURN": "Retorno de Locação",
    "ADJUSTMENT": "Ajuste Manual",
    "DAMAGE": "Avaria",
    "LOSS": "Perda/Extravio",
    "MAINTENANCE_OUT": "Enviado para Manutenção",
    "MAINTENANCE_IN": "Retorno de Manutenção",
}


class StockMovement(Base):
    """Append-only ledger of stock changes for one equipment."""

    __tablename__ = "stock_movements"
    __table_args__ = (
        Index("idx_stock_movements_equipment_created", "equipment_id", "created_at"),
        Index("idx_stock_movements_tenant", "tenant_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    equipment_id: Mapped[int] = mapped_column(ForeignKey("equipments.id", ondelete="CASCADE"), nullable=False)
    booking_id: Mapped[int | None] = mapped_column(ForeignKey("bookings.id", ondelete="SET NULL"), nullable=True)

    type: Mapped[str] = mapped_column(String(32), nullable=False)  # see MOVEMENT_TYPES
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str | None] = mapped_column(String(512), nullable=True)
    previous_stock: Mapped[int] = mapped_column(Integer, nullable=False)  # available before
    new_stock: Mapped[int] = mapped_column(Integer, nullable=False)  # available after

    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    user: Mapped[User | None] = relationship(lazy="selectin")
