from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from app.rental.activity import record_activity
from app.rental.errors import NotFoundError, ValidationError, require_fields
from app.rental.modules.leads.models import (
    ACTIVITY_TYPES,
    CONTACT_TYPES,
    LEAD_SOURCES,
    LEAD_STATUSES,
    Lead,
    LeadActivity,
)
from app.rental.utils import clean_str, iso, parse_date, parse_datetime, parse_float, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.rental.models import User
    from app.rental.modules.customers.models import Customer

_TEXT_FIELDS = (
    "name",
    "company",
    "email",
    "phone",
    "whatsapp",
    "address",
    "city",
    "interest_notes",
    "next_action",
    "lost_reason",
)


def get_lead_or_404(s: "Session", tenant_id: int, lead_id: int) -> Lead:
    lead = s.get(Lead, lead_id)
    if not lead or lead.tenant_id != tenant_id:
        raise NotFoundError("Lead não encontrado")
    return lead


def _enum(value: Any, allowed: tuple[str, ...], label: str) -> str:
    parsed = str(value or "").strip().upper()
    if parsed not in allowed:
        raise ValidationError(f"{label} inválido: {value}. Use: {', '.join(allowed)}")
    return parsed


def _equipment_ids(s: "Session", tenant_id: int, raw: Any) -> list[int]:
    from app.rental.modules.equipment.models import Equipment

    if raw in (None, ""):
        return []
    if not isinstance(raw, list):
        raise ValidationError("equipment_ids deve ser uma lista")
    ids = []
    for item in raw:
        equipment_id = parse_int(item, "equipment_ids")
        if equipment_id and equipment_id not in ids:
            ids.append(equipment_id)
    if ids:
        found = {
            row.id
            for row in s.query(Equipment.id).filter(Equipment.tenant_id == tenant_id, Equipment.id.in_(ids)).all()
        }
        missing = [i for i in ids if i not in found]
        if missing:
            raise ValidationError(f"Equipamento(s) não encontrado(s): {', '.join(str(i) for i in missing)}")
    return ids


def _assignee_id(s: "Session", tenant_id: int, raw: Any) -> int | None:
    from app.rental.models import User

    user_id = parse_int(raw, "assigned_to_id")
    if user_id is None:
        return None
    user = s.get(User, user_id)
    if not user or user.tenant_id != tenant_id:
        raise ValidationError("Responsável não encontrado")
    return user_id


def normalize_lead_fields(s: "Session", tenant_id: int, payload: dict) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for field in _TEXT_FIELDS:
        if field in payload:
            out[field] = clean_str(payload.get(field))
    if "state" in payload:
        state = clean_str(payload.get("state"))
        out["state"] = state.upper()[:2] if state else None
    if "status" in payload:
        out["status"] = _enum(payload.get("status"), LEAD_STATUSES, "Status")
    if "source" in payload:
        out["source"] = _enum(payload.get("source"), LEAD_SOURCES, "Origem")
    if "contact_type" in payload:
        out["contact_type"] = _enum(payload.get("contact_type"), CONTACT_TYPES, "Tipo de contato")
    if "expected_value" in payload:
        value = parse_float(payload.get("expected_value"), "expected_value")
        if value is not None and value < 0:
            raise ValidationError("'expected_value' não pode ser negativo")
        out["expected_value"] = value
    if "next_action_date" in payload:
        out["next_action_date"] = parse_date(payload.get("next_action_date"), "next_action_date")
    if "equipment_ids" in payload:
        out["equipment_ids"] = _equipment_ids(s, tenant_id, payload.get("equipment_ids"))
    if "assigned_to_id" in payload:
        out["assigned_to_id"] = _assignee_id(s, tenant_id, payload.get("assigned_to_id"))
    return out


def _apply_status(lead: Lead, new_status: str) -> None:
    """WON/LOST stamp their date; leaving a closed status clears both."""
    if new_status == lead.status:
        return
    now = datetime.utcnow()
    if new_status == "WON":
        lead.won_at, lead.lost_at = now, None
    elif new_status == "LOST":
        lead.won_at, lead.lost_at = None, now
    else:
        lead.won_at = lead.lost_at = None
    lead.status = new_status


def create_lead(s: "Session", tenant_id: int, payload: dict, actor: "User | None") -> Lead:
    require_fields(payload, ("name",))
    fields = normalize_lead_fields(s, tenant_id, payload)
    status = fields.pop("status", "NEW")
    fields.setdefault("source", "DIRECT")
    fields.setdefault("contact_type", "PRESENCIAL")
    if fields.get("assigned_to_id") is None and actor is not None:
        fields["assigned_to_id"] = actor.id

    now = datetime.utcnow()
    lead = Lead(tenant_id=tenant_id, status="NEW", created_at=now, updated_at=now, **fields)
    _apply_status(lead, status)
    s.add(lead)
    s.flush()
    record_activity(
        s,
        tenant_id=tenant_id,
        actor=actor,
        action="CREATE",
        entity="LEAD",
        entity_id=lead.id,
        description=f"Lead \"{lead.name}\" criado",
    )
    return lead


def update_lead(s: "Session", lead: Lead, payload: dict, actor: "User | None") -> Lead:
    fields = normalize_lead_fields(s, lead.tenant_id, payload)
    if "name" in fields and not fields["name"]:
        raise ValidationError("Campos obrigatórios: name", payload={"missing_fields": ["name"]})

    old_status = lead.status
    if "status" in fields:
        _apply_status(lead, fields.pop("status"))

    changes: dict[str, Any] = {}
    if lead.status != old_status:
        changes["status"] = {"old": old_status, "new": lead.status}
    for key, value in fields.items():
        if getattr(lead, key) != value:
            changes[key] = {"old": getattr(lead, key), "new": value}
            setattr(lead, key, value)

    if changes:
        lead.updated_at = datetime.utcnow()
        record_activity(
            s,
            tenant_id=lead.tenant_id,
            actor=actor,
            action="UPDATE",
            entity="LEAD",
            entity_id=lead.id,
            description=f"Lead \"{lead.name}\" atualizado",
            metadata={"changes": changes},
        )
    return lead


def delete_lead(s: "Session", lead: Lead, actor: "User | None") -> None:
    if lead.converted_customer_id:
        raise ValidationError("Não é possível excluir um lead convertido em cliente")
    record_activity(
        s,
        tenant_id=lead.tenant_id,
        actor=actor,
        action="DELETE",
        entity="LEAD",
        entity_id=lead.id,
        description=f"Lead \"{lead.name}\" excluído",
    )
    s.delete(lead)


def add_activity(s: "Session", lead: Lead, payload: dict, actor: "User | None") -> LeadActivity:
    """Log a sales touchpoint; may also move the lead's status or next action."""
    require_fields(payload, ("type", "description"))
    activity_type = _enum(payload.get("type"), ACTIVITY_TYPES, "Tipo de atividade")
    lead_changes = normalize_lead_fields(
        s,
        lead.tenant_id,
        {k: payload[k] for k in ("next_action", "next_action_date") if k in payload},
    )
    new_status = payload.get("update_lead_status")
    if new_status:
        new_status = _enum(new_status, LEAD_STATUSES, "Status")

    now = datetime.utcnow()
    activity = LeadActivity(
        lead_id=lead.id,
        tenant_id=lead.tenant_id,
        user_id=actor.id if actor else None,
        type=activity_type,
        description=str(payload.get("description")).strip(),
        scheduled_at=parse_datetime(payload.get("scheduled_at"), "scheduled_at"),
        completed_at=parse_datetime(payload.get("completed_at"), "completed_at") or now,
        created_at=now,
    )
    s.add(activity)

    if new_status:
        _apply_status(lead, new_status)
    for key, value in lead_changes.items():
        setattr(lead, key, value)
    lead.updated_at = now
    s.flush()
    return activity


def convert_lead(s: "Session", lead: Lead, actor: "User | None") -> "Customer":
    from app.rental.modules.customers.service import create_customer

    if lead.converted_customer_id:
        raise ValidationError("Lead já foi convertido em cliente")
    if lead.status != "WON":
        raise ValidationError("Apenas leads ganhos podem ser convertidos em clientes")

    customer = create_customer(
        s,
        lead.tenant_id,
        {
            "person_type": "PJ",
            "name": lead.name,
            "trade_name": lead.company,
            "email": lead.email,
            "phone": lead.phone or lead.whatsapp,
            "whatsapp": lead.whatsapp,
            "address": lead.address,
            "city": lead.city,
            "state": lead.state,
            "notes": lead.interest_notes,
        },
        actor,
    )
    now = datetime.utcnow()
    lead.converted_customer_id = customer.id
    lead.updated_at = now
    s.add(
        LeadActivity(
            lead_id=lead.id,
            tenant_id=lead.tenant_id,
            user_id=actor.id if actor else None,
            type="OTHER",
            description=f"Lead convertido em cliente: {customer.name}",
            completed_at=now,
            created_at=now,
        )
    )
    record_activity(
        s,
        tenant_id=lead.tenant_id,
        actor=actor,
        action="OTHER",
        entity="LEAD",
        entity_id=lead.id,
        description=f"Lead \"{lead.name}\" convertido em cliente",
        metadata={"customer_id": customer.id},
    )
    s.flush()
    return customer


def leads_by_status(leads: list[Lead]) -> dict[str, list[Lead]]:
    grouped: dict[str, list[Lead]] = {status: [] for status in LEAD_STATUSES}
    for lead in leads:
        grouped.setdefault(lead.status, []).append(lead)
    return grouped


def serialize_activity_entry(a: LeadActivity) -> dict[str, Any]:
    return {
        "id": a.id,
        "lead_id": a.lead_id,
        "type": a.type,
        "description": a.description,
        "scheduled_at": iso(a.scheduled_at),
        "completed_at": iso(a.completed_at),
        "created_at": iso(a.created_at),
        "user": {"id": a.user.id, "name": a.user.name, "email": a.user.email} if a.user else None,
    }


def serialize_lead(lead: Lead, *, detail: bool = False) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": lead.id,
        "name": lead.name,
        "company": lead.company,
        "email": lead.email,
        "phone": lead.phone,
        "whatsapp": lead.whatsapp,
        "address": lead.address,
        "city": lead.city,
        "state": lead.state,
        "status": lead.status,
        "source": lead.source,
        "contact_type": lead.contact_type,
        "expected_value": lead.expected_value,
        "interest_notes": lead.interest_notes,
        "equipment_ids": lead.equipment_ids or [],
        "next_action": lead.next_action,
        "next_action_date": iso(lead.next_action_date),
        "lost_reason": lead.lost_reason,
        "won_at": iso(lead.won_at),
        "lost_at": iso(lead.lost_at),
        "converted_customer_id": lead.converted_customer_id,
        "assigned_to": (
            {"id": lead.assigned_to.id, "name": lead.assigned_to.name, "email": lead.assigned_to.email}
            if lead.assigned_to
            else None
        ),
        "created_at": iso(lead.created_at),
        "updated_at": iso(lead.updated_at),
    }
    if detail:
        data["activities"] = [serialize_activity_entry(a) for a in lead.activities]
    else:
        data["activity_count"] = len(lead.activities)
    return data
