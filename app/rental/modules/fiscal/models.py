from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.rental.models import Base

if TYPE_CHECKING:
    from app.rental.modules.bookings.models import Booking

FOCUS_ENVIRONMENTS = ("HOMOLOGACAO", "PRODUCAO")
INVOICE_STATUSES = ("PENDING", "PROCESSING", "AUTHORIZED", "REJECTED", "CANCELLED", "ERROR")
FINAL_INVOICE_STATUSES = ("AUTHORIZED", "CANCELLED", "REJECTED")
# A booking may get a new invoice only when its previous ones ended in one of these.
RETRYABLE_INVOICE_STATUSES = ("CANCELLED", "REJECTED", "ERROR")
INVOICE_STATUS_LABELS = {
    "PENDING": "Pendente",
    "PROCESSING": "Processando",
    "AUTHORIZED": "Autorizada",
    "REJECTED": "Rejeitada",
    "CANCELLED": "Cancelada",
    "ERROR": "Erro",
}


class TenantFiscalConfig(Base):
    __tablename__ = "tenant_fiscal_configs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, unique=True)

    focus_nfe_token: Mapped[str | None] = mapped_column(Text, nullable=True)  # "<iv hex>:<ciphertext hex>"
    focus_nfe_environment: Mapped[str] = mapped_column(String(16), nullable=False, default="HOMOLOGACAO")

    regime_tributario: Mapped[int | None] = mapped_column(Integer, nullable=True)  # 1 Simples, 2 SN excesso, 3 Normal
    aliquota_iss: Mapped[float] = mapped_column(Float, nullable=False, default=5.0)  # percent
    iss_retido: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    codigo_servico: Mapped[str | None] = mapped_column(String(32), nullable=True)
    descricao_template: Mapped[str | None] = mapped_column(Text, nullable=True)
    auto_emit_on_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class Invoice(Base):
    __tablename__ = "invoices"
    __table_args__ = (
        Index("idx_invoices_tenant_status", "tenant_id", "status"),
        Index("idx_invoices_booking", "booking_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id", ondelete="RESTRICT"), nullable=False)
    internal_ref: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)  # nfse-<12 chars>
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")

    numero: Mapped[str | None] = mapped_column(String(32), nullable=True)
    codigo_verificacao: Mapped[str | None] = mapped_column(String(64), nullable=True)
    url_pdf: Mapped[str | None] = mapped_column(Text, nullable=True)
    url_xml: Mapped[str | None] = mapped_column(Text, nullable=True)

    valor_servicos: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    valor_total: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    aliquota_iss: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    valor_iss: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    iss_retido: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    descricao_servico: Mapped[str | None] = mapped_column(Text, nullable=True)
    codigo_servico: Mapped[str | None] = mapped_column(String(32), nullable=True)

    tomador_nome: Mapped[str] = mapped_column(String(255), nullable=False)
    tomador_cpf_cnpj: Mapped[str | None] = mapped_column(String(18), nullable=True)
    tomador_email: Mapped[str | None] = mapped_column(String(320), nullable=True)

    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    focus_errors: Mapped[list | None] = mapped_column(JSON, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    authorized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    booking: Mapped["Booking"] = relationship(lazy="selectin")
