from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from app.rental.activity import record_activity
from app.rental.errors import NotFoundError, ValidationError, require_fields
from app.rental.modules.maintenance.models import (
    MAINTENANCE_STATUS_LABELS,
    MAINTENANCE_STATUSES,
    MAINTENANCE_TYPE_LABELS,
    MAINTENANCE_TYPES,
)
from app.rental.utils import clean_str, iso, parse_date, parse_float, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.rental.models import User
    from app.rental.modules.maintenance.models import MaintenanceRecord

FINISHED = ("COMPLETED", "CANCELLED")
# old status -> statuses it may move to
TRANSITIONS = {
    "SCHEDULED": ("IN_PROGRESS", "COMPLETED", "CANCELLED"),
    "IN_PROGRESS": ("COMPLETED", "CANCELLED"),
}


def get_maintenance_or_404(s: "Session", tenant_id: int, record_id: int) -> "MaintenanceRecord":
    from app.rental.modules.maintenance.models import MaintenanceRecord

    record = s.get(MaintenanceRecord, record_id)
    if not record or record.tenant_id != tenant_id:
        raise NotFoundError("Manutenção não encontrada")
    return record


def _parse_choice(value: Any, choices: tuple[str, ...], label: str) -> str:
    raw = (clean_str(value) or "").upper()
    if raw not in choices:
        raise ValidationError(f"{label} inválido. Use: {', '.join(choices)}")
    return raw


def _parse_quantity(value: Any) -> int:
    quantity = parse_int(value, "quantity")
    if quantity is None:
        return 1
    if quantity < 1:
        raise ValidationError("Quantidade deve ser maior que zero")
    return quantity


def _parse_cost(value: Any) -> float | None:
    cost = parse_float(value, "cost")
    if cost is not None and cost < 0:
        raise ValidationError("Custo inválido")
    return cost


def _start(s: "Session", record: "MaintenanceRecord", actor: "User | None") -> None:
    from app.rental.modules.stock.service import record_movement

    record_movement(
        s, record.equipment, "MAINTENANCE_OUT", record.quantity, actor=actor,
        reason=f"Manutenção #{record.id}: {record.description}",
    )


def _finish(s: "Session", record: "MaintenanceRecord", status: str, actor: "User | None") -> None:
    """Units held by an IN_PROGRESS record go back to available; a COMPLETED cost becomes an equipment cost."""
    from app.rental.modules.equipment.models import EquipmentCost
    from app.rental.modules.stock.service import record_movement

    if record.status == "IN_PROGRESS":
        record_movement(
            s, record.equipment, "MAINTENANCE_IN", record.quantity, actor=actor,
            reason=f"Manutenção #{record.id} {MAINTENANCE_STATUS_LABELS[status].lower()}",
        )
    if status == "COMPLETED":
        record.completed_date = record.completed_date or date.today()
        if record.cost:
            record.equipment.costs.append(
                EquipmentCost(
                    tenant_id=record.tenant_id,
                    type="MAINTENANCE",
                    description=f"Manutenção: {record.description}"[:512],
                    amount=record.cost,
                    date=record.completed_date,
                    created_at=datetime.utcnow(),
                )
            )


def _move(s: "Session", record: "MaintenanceRecord", new_status: str, actor: "User | None") -> None:
    old_status = record.status
    if new_status == old_status:
        return
    if new_status not in TRANSITIONS.get(old_status, ()):
        raise ValidationError(
            f"Manutenção {MAINTENANCE_STATUS_LABELS[old_status].lower()} não pode passar para "
            f"{MAINTENANCE_STATUS_LABELS[new_status].lower()}"
        )
    if new_status == "IN_PROGRESS":
        _start(s, record, actor)
    else:
        _finish(s, record, new_status, actor)
    record.status = new_status


def create_maintenance(s: "Session", tenant_id: int, payload: dict, actor: "User | None") -> "MaintenanceRecord":
    from app.rental.modules.equipment.service import get_equipment_or_404
    from app.rental.modules.maintenance.models import MaintenanceRecord

    require_fields(payload, ("equipment_id", "type", "description", "scheduled_date"))
    equipment = get_equipment_or_404(s, tenant_id, parse_int(payload.get("equipment_id"), "equipment_id"))
    status = _parse_choice(payload.get("status") or "SCHEDULED", ("SCHEDULED", "IN_PROGRESS"), "Status")

    now = datetime.utcnow()
    record = MaintenanceRecord(
        tenant_id=tenant_id,
        equipment=equipment,
        quantity=_parse_quantity(payload.get("quantity")),
        type=_parse_choice(payload.get("type"), MAINTENANCE_TYPES, "Tipo"),
        description=clean_str(payload.get("description")),
        scheduled_date=parse_date(payload.get("scheduled_date"), "scheduled_date"),
        cost=_parse_cost(payload.get("cost")),
        vendor=clean_str(payload.get("vendor")),
        notes=clean_str(payload.get("notes")),
        status="SCHEDULED",
        created_at=now,
        updated_at=now,
    )
    s.add(record)
    s.flush()
    if status == "IN_PROGRESS":
        _move(s, record, status, actor)

    record_activity(
        s,
        tenant_id=tenant_id,
        actor=actor,
        action="CREATE",
        entity="MAINTENANCE",
        entity_id=record.id,
        description=f"Manutenção {MAINTENANCE_TYPE_LABELS[record.type].lower()} agendada para \"{equipment.name}\"",
        metadata={"equipment_id": equipment.id, "quantity": record.quantity, "status": record.status},
    )
    return record


def update_maintenance(
    s: "Session", record: "MaintenanceRecord", payload: dict, actor: "User | None"
) -> "MaintenanceRecord":
    if record.status in FINISHED and set(payload) - {"notes"}:
        raise ValidationError("Manutenção finalizada não pode ser alterada")

    changes: dict[str, Any] = {}

    def _set(field: str, value: Any) -> None:
        if getattr(record, field) != value:
            changes[field] = {"old": getattr(record, field), "new": value}
            setattr(record, field, value)

    if "type" in payload:
        _set("type", _parse_choice(payload.get("type"), MAINTENANCE_TYPES, "Tipo"))
    if "description" in payload:
        description = clean_str(payload.get("description"))
        if not description:
            raise ValidationError("Campos obrigatórios: description", payload={"missing_fields": ["description"]})
        _set("description", description)
    if "scheduled_date" in payload:
        scheduled = parse_date(payload.get("scheduled_date"), "scheduled_date")
        if scheduled is None:
            raise ValidationError("Campos obrigatórios: scheduled_date", payload={"missing_fields": ["scheduled_date"]})
        _set("scheduled_date", scheduled)
    if "quantity" in payload:
        quantity = _parse_quantity(payload.get("quantity"))
        if quantity != record.quantity and record.status != "SCHEDULED":
            raise ValidationError("Quantidade só pode ser alterada em manutenções agendadas")
        _set("quantity", quantity)
    if "cost" in payload:
        _set("cost", _parse_cost(payload.get("cost")))
    if "completed_date" in payload:
        _set("completed_date", parse_date(payload.get("completed_date"), "completed_date"))
    for field in ("vendor", "notes"):
        if field in payload:
            _set(field, clean_str(payload.get(field)))

    if payload.get("status"):
        new_status = _parse_choice(payload.get("status"), MAINTENANCE_STATUSES, "Status")
        old_status = record.status
        _move(s, record, new_status, actor)
        if new_status != old_status:
            changes["status"] = {"old": old_status, "new": new_status}

    if changes:
        record.updated_at = datetime.utcnow()
        record_activity(
            s,
            tenant_id=record.tenant_id,
            actor=actor,
            action="UPDATE",
            entity="MAINTENANCE",
            entity_id=record.id,
            description=f"Manutenção #{record.id} de \"{record.equipment.name}\" atualizada",
            metadata={"changes": changes},
        )
    return record


def delete_maintenance(s: "Session", record: "MaintenanceRecord", actor: "User | None") -> None:
    if record.status == "IN_PROGRESS":
        raise ValidationError("Não é possível excluir uma manutenção em andamento")
    record_activity(
        s,
        tenant_id=record.tenant_id,
        actor=actor,
        action="DELETE",
        entity="MAINTENANCE",
        entity_id=record.id,
        description=f"Manutenção #{record.id} de \"{record.equipment.name}\" excluída",
    )
    s.delete(record)


def list_maintenance(s: "Session", tenant_id: int, filters: dict[str, Any]) -> list["MaintenanceRecord"]:
    from app.rental.modules.maintenance.models import MaintenanceRecord

    q = s.query(MaintenanceRecord).filter(MaintenanceRecord.tenant_id == tenant_id)
    if filters.get("equipment_id"):
        q = q.filter(MaintenanceRecord.equipment_id == filters["equipment_id"])
    if filters.get("status"):
        q = q.filter(MaintenanceRecord.status == _parse_choice(filters["status"], MAINTENANCE_STATUSES, "Status"))
    if filters.get("type"):
        q = q.filter(MaintenanceRecord.type == _parse_choice(filters["type"], MAINTENANCE_TYPES, "Tipo"))
    if filters.get("start_date"):
        q = q.filter(MaintenanceRecord.scheduled_date >= filters["start_date"])
    if filters.get("end_date"):
        q = q.filter(MaintenanceRecord.scheduled_date <= filters["end_date"])
    return q.order_by(MaintenanceRecord.scheduled_date.desc(), MaintenanceRecord.id.desc()).all()


def maintenance_stats(records: list["MaintenanceRecord"]) -> dict[str, Any]:
    stats: dict[str, Any] = {"total": len(records)}
    for status in MAINTENANCE_STATUSES:
        stats[status.lower()] = sum(1 for r in records if r.status == status)
    stats["total_cost"] = round(sum(r.cost or 0.0 for r in records if r.status == "COMPLETED"), 2)
    return stats


def serialize_maintenance(r: "MaintenanceRecord") -> dict[str, Any]:
    return {
        "id": r.id,
        "equipment": {"id": r.equipment.id, "name": r.equipment.name} if r.equipment else None,
        "quantity": r.quantity,
        "type": r.type,
        "type_label": MAINTENANCE_TYPE_LABELS.get(r.type, r.type),
        "description": r.description,
        "scheduled_date": iso(r.scheduled_date),
        "completed_date": iso(r.completed_date),
        "cost": r.cost,
        "vendor": r.vendor,
        "notes": r.notes,
        "status": r.status,
        "status_label": MAINTENANCE_STATUS_LABELS.get(r.status, r.status),
        "created_at": iso(r.created_at),
        "updated_at": iso(r.updated_at),
    }
