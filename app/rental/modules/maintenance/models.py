from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import Date, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.rental.models import Base
from app.rental.modules.equipment.models import Equipment

MAINTENANCE_TYPES = ("PREVENTIVE", "CORRECTIVE", "INSPECTION")
MAINTENANCE_TYPE_LABELS = {
    "PREVENTIVE": "Preventiva",
    "CORRECTIVE": "Corretiva",
    "INSPECTION": "Inspeção",
}
MAINTENANCE_STATUSES = ("SCHEDULED", "IN_PROGRESS", "COMPLETED", "CANCELLED")
MAINTENANCE_STATUS_LABELS = {
    "SCHEDULED": "Agendada",
    "IN_PROGRESS": "Em andamento",
    "COMPLETED": "Concluída",
    "CANCELLED": "Cancelada",
}


class MaintenanceRecord(Base):
    __tablename__ = "maintenance_records"
    __table_args__ = (
        Index("idx_maintenance_tenant_status", "tenant_id", "status"),
        Index("idx_maintenance_equipment", "equipment_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    equipment_id: Mapped[int] = mapped_column(ForeignKey("equipments.id", ondelete="CASCADE"), nullable=False)

    # Units held in the maintenance counter while IN_PROGRESS.
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    description: Mapped[str] = mapped_column(String(512), nullable=False)
    scheduled_date: Mapped[date] = mapped_column(Date, nullable=False)
    completed_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    cost: Mapped[float | None] = mapped_column(Float, nullable=True)
    vendor: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="SCHEDULED")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    equipment: Mapped[Equipment] = relationship(lazy="selectin")
