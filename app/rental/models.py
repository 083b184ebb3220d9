from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class Tenant(Base):
    """A rental company. Every business row hangs off a tenant."""

    __tablename__ = "tenants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    slug: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)  # subdomain, e.g. "locadora-xyz"
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    domain: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)  # optional custom domain
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Fiscal identity (prestador on NFS-e)
    cnpj: Mapped[str | None] = mapped_column(String(18), nullable=True)
    inscricao_municipal: Mapped[str | None] = mapped_column(String(32), nullable=True)
    codigo_municipio: Mapped[str | None] = mapped_column(String(16), nullable=True)  # IBGE code
    nfse_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    asaas_customer_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    users: Mapped[list["User"]] = relationship(back_populates="tenant", lazy="selectin")


class User(Base):
    __tablename__ = "users"
    __table_args__ = (Index("idx_users_tenant", "tenant_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(32), nullable=False, default="VIEWER")  # see rbac.ROLES
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    tenant: Mapped[Tenant] = relationship(back_populates="users", lazy="selectin")


class PasswordResetToken(Base):
    __tablename__ = "password_reset_tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    token: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    user: Mapped[User] = relationship(lazy="selectin")


class ActivityLog(Base):
    """
    Append-only, tenant-scoped activity trail.
    Module-specific code writes here through activity.record_activity().
    """

    __tablename__ = "activity_logs"
    __table_args__ = (
        Index("idx_activity_logs_tenant_created", "tenant_id", "created_at"),
        Index("idx_activity_logs_entity", "entity", "entity_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    action: Mapped[str] = mapped_column(String(32), nullable=False)  # e.g. "CREATE"
    entity: Mapped[str] = mapped_column(String(32), nullable=False)  # e.g. "BOOKING"
    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    description: Mapped[str | None] = mapped_column(String(512), nullable=True)
    metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True)  # small JSON string

    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    user: Mapped[User | None] = relationship(lazy="selectin")


# Ensure module models are imported so Base.metadata includes their tables.
# (Kept at bottom to avoid circular imports.)
from app.rental.modules.billing.models import Plan, Subscription, SubscriptionPayment  # noqa: E402,F401
from app.rental.modules.equipment.models import Equipment, EquipmentCost, RentalPeriod  # noqa: E402,F401
from app.rental.modules.customers.models import Customer, CustomerSite  # noqa: E402,F401
from app.rental.modules.bookings.models import Booking, BookingItem  # noqa: E402,F401
from app.rental.modules.stock.models import StockMovement  # noqa: E402,F401
from app.rental.modules.financial.models import (  # noqa: E402,F401
    FinancialTransaction,
    RecurringTransaction,
    TransactionCategory,
)
from app.rental.modules.fiscal.models import Invoice, TenantFiscalConfig  # noqa: E402,F401
from app.rental.modules.integrations.models import ApiKey  # noqa: E402,F401
from app.rental.modules.leads.models import Lead, LeadActivity  # noqa: E402,F401
from app.rental.modules.maintenance.models import MaintenanceRecord  # noqa: E402,F401
