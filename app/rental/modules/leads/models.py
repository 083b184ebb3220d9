from __future__ import annotations

from datetime import date as date_type
from datetime import datetime

from sqlalchemy import JSON, Date, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.rental.models import Base, User

LEAD_STATUSES = ("NEW", "CONTACTED", "QUALIFIED", "PROPOSAL", "WON", "LOST")
LEAD_SOURCES = ("DIRECT", "REFERRAL", "WEBSITE", "SOCIAL_MEDIA", "COLD_CALL", "EVENT", "OTHER")
CONTACT_TYPES = ("PRESENCIAL", "ONLINE", "POST")
ACTIVITY_TYPES = ("CALL", "VISIT", "EMAIL", "WHATSAPP", "MEETING", "PROPOSAL", "OTHER")

LEAD_STATUS_LABELS = {
    "NEW": "Novo",
    "CONTACTED": "Contatado",
    "QUALIFIED": "Qualificado",
    "PROPOSAL": "Proposta",
    "WON": "Ganho",
    "LOST": "Perdido",
}
LEAD_SOURCE_LABELS = {
    "DIRECT": "Direto",
    "REFERRAL": "Indicação",
    "WEBSITE": "Site",
    "SOCIAL_MEDIA": "Redes sociais",
    "COLD_CALL": "Prospecção ativa",
    "EVENT": "Evento",
    "OTHER": "Outro",
}


class Lead(Base):
    __tablename__ = "leads"
    __table_args__ = (
        Index("idx_leads_tenant_status", "tenant_id", "status"),
        Index("idx_leads_assigned", "assigned_to_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    company: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    whatsapp: Mapped[str | None] = mapped_column(String(32), nullable=True)
    address: Mapped[str | None] = mapped_column(String(255), nullable=True)
    city: Mapped[str | None] = mapped_column(String(128), nullable=True)
    state: Mapped[str | None] = mapped_column(String(2), nullable=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="NEW")
    source: Mapped[str] = mapped_column(String(16), nullable=False, default="DIRECT")
    contact_type: Mapped[str] = mapped_column(String(16), nullable=False, default="PRESENCIAL")

    expected_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    interest_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    equipment_ids: Mapped[list | None] = mapped_column(JSON, nullable=True, default=list)

    next_action: Mapped[str | None] = mapped_column(String(255), nullable=True)
    next_action_date: Mapped[date_type | None] = mapped_column(Date, nullable=True)
    lost_reason: Mapped[str | None] = mapped_column(String(512), nullable=True)
    won_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    lost_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    assigned_to_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    converted_customer_id: Mapped[int | None] = mapped_column(
        ForeignKey("customers.id", ondelete="SET NULL"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    assigned_to: Mapped[User | None] = relationship(lazy="selectin")
    activities: Mapped[list["LeadActivity"]] = relationship(
        back_populates="lead",
        cascade="all, delete-orphan",
        order_by="LeadActivity.created_at.desc()",
    )


class LeadActivity(Base):
    __tablename__ = "lead_activities"
    __table_args__ = (Index("idx_lead_activities_lead", "lead_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    lead_id: Mapped[int] = mapped_column(ForeignKey("leads.id", ondelete="CASCADE"), nullable=False)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    type: Mapped[str] = mapped_column(String(16), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    lead: Mapped[Lead] = relationship(back_populates="activities")
    user: Mapped[User | None] = relationship(lazy="selectin")
