from __future__ import annotations

from datetime import date as date_type, datetime

from sqlalchemy import Boolean, Date, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.rental.models import Base

TRANSACTION_TYPES = ("INCOME", "EXPENSE")
TRANSACTION_STATUSES = ("PENDING", "PAID", "OVERDUE", "CANCELLED")
RECURRING_STATUSES = ("ACTIVE", "PAUSED", "COMPLETED")

TYPE_LABELS = {"INCOME": "Receita", "EXPENSE": "Despesa"}
STATUS_LABELS = {
    "PENDING": "Pendente",
    "PAID": "Pago",
    "OVERDUE": "Vencido",
    "CANCELLED": "Cancelado",
    "ACTIVE": "Ativa",
    "PAUSED": "Pausada",
    "COMPLETED": "Concluída",
}


class TransactionCategory(Base):
    __tablename__ = "transaction_categories"
    __table_args__ = (UniqueConstraint("tenant_id", "name", "type", name="uq_transaction_categories_tenant_name_type"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False)  # INCOME | EXPENSE
    color: Mapped[str | None] = mapped_column(String(16), nullable=True)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class FinancialTransaction(Base):
    __tablename__ = "financial_transactions"
    __table_args__ = (
        Index("idx_financial_transactions_tenant_date", "tenant_id", "date"),
        Index("idx_financial_transactions_tenant_status", "tenant_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")
    description: Mapped[str] = mapped_column(String(512), nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    date: Mapped[date_type] = mapped_column(Date, nullable=False)
    due_date: Mapped[date_type | None] = mapped_column(Date, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    category_id: Mapped[int] = mapped_column(
        ForeignKey("transaction_categories.id", ondelete="RESTRICT"), nullable=False
    )
    booking_id: Mapped[int | None] = mapped_column(ForeignKey("bookings.id", ondelete="SET NULL"), nullable=True)
    equipment_id: Mapped[int | None] = mapped_column(ForeignKey("equipments.id", ondelete="SET NULL"), nullable=True)
    recurring_id: Mapped[int | None] = mapped_column(
        ForeignKey("recurring_transactions.id", ondelete="SET NULL"), nullable=True
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    category: Mapped[TransactionCategory] = relationship(lazy="selectin")


class RecurringTransaction(Base):
    __tablename__ = "recurring_transactions"
    __table_args__ = (Index("idx_recurring_transactions_tenant_status", "tenant_id", "status"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    description: Mapped[str] = mapped_column(String(512), nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("transaction_categories.id", ondelete="RESTRICT"), nullable=False
    )
    interval_days: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    start_date: Mapped[date_type] = mapped_column(Date, nullable=False)
    end_date: Mapped[date_type | None] = mapped_column(Date, nullable=True)
    next_due_date: Mapped[date_type] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="ACTIVE")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    category: Mapped[TransactionCategory] = relationship(lazy="selectin")
