from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func

from app.rental.activity import record_activity
from app.rental.errors import ValidationError
from app.rental.modules.stock.models import MOVEMENT_LABELS, MOVEMENT_TYPES

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.rental.models import User
    from app.rental.modules.equipment.models import Equipment
    from app.rental.modules.stock.models import StockMovement

ACTIVE_BOOKING_STATUSES = ("PENDING", "CONFIRMED")
SEVERITY_ORDER = {"critical": 0, "warning": 1, "info": 2}


class StockError(ValidationError):
    default_code = "stock_error"
    default_message = "Movimentação de estoque inválida"


@dataclass(frozen=True)
class StockCounters:
    total: int = 0
    available: int = 0
    reserved: int = 0
    maintenance: int = 0
    damaged: int = 0

    @classmethod
    def of(cls, equipment: "Equipment") -> "StockCounters":
        return cls(
            total=equipment.total_stock or 0,
            available=equipment.available_stock or 0,
            reserved=equipment.reserved_stock or 0,
            maintenance=equipment.maintenance_stock or 0,
            damaged=equipment.damaged_stock or 0,
        )

    def write_to(self, equipment: "Equipment") -> None:
        equipment.total_stock = self.total
        equipment.available_stock = self.available
        equipment.reserved_stock = self.reserved
        equipment.maintenance_stock = self.maintenance
        equipment.damaged_stock = self.damaged


def validate_quantity(quantity: Any) -> int:
    if isinstance(quantity, bool):
        raise StockError("Quantidade deve ser um número inteiro")
    try:
        q = int(quantity)
    except (TypeError, ValueError):
        raise StockError("Quantidade deve ser um número inteiro")
    if isinstance(quantity, float) and quantity != q:
        raise StockError("Quantidade deve ser um número inteiro")
    if q <= 0:
        raise StockError("Quantidade deve ser maior que zero")
    return q


def apply_movement(counters: StockCounters, movement_type: str, quantity: int) -> StockCounters:
    """
    Pure stock rule: returns the counters after the movement or raises StockError.
    Counters never go negative and total == available + reserved + maintenance + damaged.
    """
    if movement_type not in MOVEMENT_TYPES:
        raise StockError(f"Tipo de movimentação inválido: {movement_type}")
    q = validate_quantity(quantity)
    c = counters

    if movement_type == "PURCHASE":
        return replace(c, total=c.total + q, available=c.available + q)

    if movement_type == "RENTAL_OUT":
        if c.available < q:
            raise StockError(f"Estoque insuficiente. Disponível: {c.available}")
        return replace(c, available=c.available - q, reserved=c.reserved + q)

    if movement_type == "RENTAL_RETURN":
        if c.reserved < q:
            raise StockError(f"Quantidade inválida. Reservado: {c.reserved}")
        return replace(c, available=c.available + q, reserved=c.reserved - q)

    if movement_type == "ADJUSTMENT":
        return replace(c, total=c.total + q, available=c.available + q)

    if movement_type == "DAMAGE":
        if c.available >= q:
            return replace(c, available=c.available - q, damaged=c.damaged + q)
        if c.reserved >= q:
            return replace(c, reserved=c.reserved - q, damaged=c.damaged + q)
        raise StockError("Estoque insuficiente para registrar avaria")

    if movement_type == "LOSS":
        if c.available < q:
            raise StockError(f"Estoque insuficiente. Disponível: {c.available}")
        return replace(c, total=c.total - q, available=c.available - q)

    if movement_type == "MAINTENANCE_OUT":
        if c.available < q:
            raise StockError(f"Estoque insuficiente. Disponível: {c.available}")
        return replace(c, available=c.available - q, maintenance=c.maintenance + q)

    # MAINTENANCE_IN
    if c.maintenance < q:
        raise StockError(f"Quantidade inválida. Em manutenção: {c.maintenance}")
    return replace(c, available=c.available + q, maintenance=c.maintenance - q)


def derive_status(current_status: str, counters: StockCounters) -> str:
    if current_status == "INACTIVE":
        return current_status
    if counters.available == 0 and counters.reserved > 0:
        return "RENTED"
    if counters.maintenance > 0 and counters.available == 0:
        return "MAINTENANCE"
    return "AVAILABLE"


def _write_movement(
    s: "Session",
    equipment: "Equipment",
    movement_type: str,
    quantity: int,
    before: StockCounters,
    after: StockCounters,
    *,
    actor: "User | None",
    reason: str | None,
    booking_id: int | None,
) -> "StockMovement":
    from app.rental.modules.stock.models import StockMovement

    after.write_to(equipment)
    equipment.status = derive_status(equipment.status, after)
    equipment.updated_at = datetime.utcnow()

    movement = StockMovement(
        tenant_id=equipment.tenant_id,
        equipment_id=equipment.id,
        booking_id=booking_id,
        type=movement_type,
        quantity=quantity,
        reason=(reason or "").strip()[:512] or None,
        previous_stock=before.available,
        new_stock=after.available,
        user_id=actor.id if actor else None,
        created_at=datetime.utcnow(),
    )
    s.add(movement)
    s.flush()

    record_activity(
        s,
        tenant_id=equipment.tenant_id,
        actor=actor,
        action="STOCK_MOVEMENT",
        entity="STOCK",
        entity_id=movement.id,
        description=(
            f"Movimentação de estoque: {MOVEMENT_LABELS[movement_type]} - "
            f"{quantity} unidade(s) de \"{equipment.name}\""
        ),
        metadata={
            "equipment_id": equipment.id,
            "movement_type": movement_type,
            "quantity": quantity,
            "previous_stock": before.available,
            "new_stock": after.available,
            "reason": movement.reason,
            "booking_id": booking_id,
        },
    )
    return movement


def record_movement(
    s: "Session",
    equipment: "Equipment",
    movement_type: str,
    quantity: Any,
    *,
    actor: "User | None" = None,
    reason: str | None = None,
    booking_id: int | None = None,
) -> "StockMovement":
    movement_type = (movement_type or "").strip().upper()
    q = validate_quantity(quantity)
    before = StockCounters.of(equipment)
    after = apply_movement(before, movement_type, q)
    return _write_movement(
        s, equipment, movement_type, q, before, after, actor=actor, reason=reason, booking_id=booking_id
    )


def record_returned_damage(
    s: "Session",
    equipment: "Equipment",
    quantity: Any,
    *,
    actor: "User | None" = None,
    reason: str | None = None,
    booking_id: int | None = None,
) -> "StockMovement":
    """DAMAGE for units coming back from a rental: they leave the reserved counter."""
    q = validate_quantity(quantity)
    before = StockCounters.of(equipment)
    if before.reserved < q:
        raise StockError(f"Quantidade inválida. Reservado: {before.reserved}")
    after = replace(before, reserved=before.reserved - q, damaged=before.damaged + q)
    return _write_movement(s, equipment, "DAMAGE", q, before, after, actor=actor, reason=reason, booking_id=booking_id)


def adjust_stock(
    s: "Session", equipment: "Equipment", new_total: Any, reason: str | None, *, actor: "User | None" = None
) -> "StockMovement":
    """Set the total stock; the difference is absorbed by the available counter."""
    try:
        new_total = int(new_total)
    except (TypeError, ValueError):
        raise StockError("new_total_stock deve ser um número inteiro")
    if new_total < 0:
        raise StockError("Estoque não pode ser negativo")
    reason = (reason or "").strip()
    if not reason:
        raise StockError("Motivo do ajuste é obrigatório")

    before = StockCounters.of(equipment)
    committed = before.reserved + before.maintenance + before.damaged
    if new_total < committed:
        raise StockError(
            f"Não é possível reduzir o estoque para {new_total}. Mínimo necessário: {committed} "
            f"({before.reserved} reservados + {before.maintenance} em manutenção + {before.damaged} avariados)"
        )
    diff = new_total - before.total
    if diff == 0:
        raise StockError("O estoque total informado é igual ao atual")

    after = replace(before, total=new_total, available=new_total - committed)
    direction = "aumentado" if diff > 0 else "reduzido"
    return _write_movement(
        s,
        equipment,
        "ADJUSTMENT",
        abs(diff),
        before,
        after,
        actor=actor,
        reason=f"Ajuste manual: {reason}. Estoque total {direction} de {before.total} para {new_total}",
        booking_id=None,
    )


def overlapping_items_query(s: "Session", equipment_id: int, start: date, end: date, exclude_booking_id: int | None = None):
    """BookingItems of PENDING/CONFIRMED bookings whose period intersects [start, end]."""
    from app.rental.modules.bookings.models import Booking, BookingItem

    q = (
        s.query(BookingItem)
        .join(Booking, Booking.id == BookingItem.booking_id)
        .filter(
            BookingItem.equipment_id == equipment_id,
            Booking.status.in_(ACTIVE_BOOKING_STATUSES),
            Booking.start_date <= end,
            Booking.end_date >= start,
        )
    )
    if exclude_booking_id:
        q = q.filter(Booking.id != exclude_booking_id)
    return q


def check_availability(
    s: "Session",
    equipment: "Equipment",
    start: date,
    end: date,
    quantity: int = 1,
    exclude_booking_id: int | None = None,
) -> dict[str, Any]:
    if end < start:
        raise ValidationError("Data final deve ser posterior à data inicial")
    quantity = validate_quantity(quantity)
    items = overlapping_items_query(s, equipment.id, start, end, exclude_booking_id).all()
    reserved_in_period = sum(item.quantity for item in items)
    available_for_period = max(
        0, (equipment.total_stock or 0) - (equipment.maintenance_stock or 0) - (equipment.damaged_stock or 0) - reserved_in_period
    )
    is_available = available_for_period >= quantity and equipment.status != "INACTIVE"

    seen: set[int] = set()
    conflicts = []
    for item in items:
        booking = item.booking
        if booking.id in seen:
            continue
        seen.add(booking.id)
        conflicts.append(
            {
                "id": booking.id,
                "booking_number": booking.booking_number,
                "start_date": booking.start_date.isoformat(),
                "end_date": booking.end_date.isoformat(),
                "status": booking.status,
                "customer": {"id": booking.customer.id, "name": booking.customer.name} if booking.customer else None,
            }
        )

    return {
        "equipment_id": equipment.id,
        "equipment_name": equipment.name,
        "requested_quantity": quantity,
        "total_stock": equipment.total_stock,
        "maintenance_stock": equipment.maintenance_stock,
        "damaged_stock": equipment.damaged_stock,
        "reserved_in_period": reserved_in_period,
        "available_for_period": available_for_period,
        "is_available": is_available,
        "conflicting_bookings": conflicts,
    }


def stock_metrics(equipment: "Equipment") -> dict[str, Any]:
    total = equipment.total_stock or 0
    reserved = equipment.reserved_stock or 0
    utilization = round(reserved / total * 100, 2) if total > 0 else 0.0
    return {
        "utilization_rate": utilization,
        "is_low_stock": (equipment.available_stock or 0) <= (equipment.min_stock_level or 0),
        "total_value": total * float(equipment.unit_cost or 0),
    }


def serialize_counters(equipment: "Equipment") -> dict[str, Any]:
    return {
        "id": equipment.id,
        "name": equipment.name,
        "category": equipment.category,
        "status": equipment.status,
        "total_stock": equipment.total_stock,
        "available_stock": equipment.available_stock,
        "reserved_stock": equipment.reserved_stock,
        "maintenance_stock": equipment.maintenance_stock,
        "damaged_stock": equipment.damaged_stock,
        "min_stock_level": equipment.min_stock_level,
        "unit_cost": equipment.unit_cost,
    }


def serialize_movement(m: "StockMovement") -> dict[str, Any]:
    return {
        "id": m.id,
        "type": m.type,
        "type_label": MOVEMENT_LABELS.get(m.type, m.type),
        "quantity": m.quantity,
        "reason": m.reason,
        "previous_stock": m.previous_stock,
        "new_stock": m.new_stock,
        "booking_id": m.booking_id,
        "user": {"id": m.user.id, "name": m.user.name} if m.user else None,
        "created_at": m.created_at.isoformat() if m.created_at else None,
    }


def stock_overview(s: "Session", tenant_id: int) -> dict[str, Any]:
    from app.rental.modules.equipment.models import Equipment

    rows = (
        s.query(Equipment)
        .filter(Equipment.tenant_id == tenant_id, Equipment.status != "INACTIVE")
        .order_by(Equipment.name.asc())
        .all()
    )
    totals = {"total": 0, "available": 0, "reserved": 0, "maintenance": 0, "damaged": 0, "low_stock_items": 0}
    for e in rows:
        totals["total"] += e.total_stock or 0
        totals["available"] += e.available_stock or 0
        totals["reserved"] += e.reserved_stock or 0
        totals["maintenance"] += e.maintenance_stock or 0
        totals["damaged"] += e.damaged_stock or 0
        if (e.available_stock or 0) <= (e.min_stock_level or 0):
            totals["low_stock_items"] += 1
    return {"equipments": [serialize_counters(e) for e in rows], "totals": totals}


def movement_summary(s: "Session", equipment_id: int) -> dict[str, dict[str, int]]:
    from app.rental.modules.stock.models import StockMovement

    rows = (
        s.query(StockMovement.type, func.count(StockMovement.id), func.coalesce(func.sum(StockMovement.quantity), 0))
        .filter(StockMovement.equipment_id == equipment_id)
        .group_by(StockMovement.type)
        .all()
    )
    return {t: {"count": int(count), "quantity": int(qty)} for t, count, qty in rows}


def _alert(equipment: "Equipment", kind: str, severity: str, message: str, details: dict[str, Any]) -> dict[str, Any]:
    images = equipment.images or []
    return {
        "id": f"{kind.lower()}-{equipment.id}",
        "type": kind,
        "severity": severity,
        "equipment": {
            "id": equipment.id,
            "name": equipment.name,
            "category": equipment.category,
            "image": images[0] if images else None,
        },
        "message": message,
        "details": details,
    }


def build_alerts(equipments: list["Equipment"]) -> list[dict[str, Any]]:
    alerts: list[dict[str, Any]] = []
    for e in equipments:
        if e.status == "INACTIVE":
            continue
        available = e.available_stock or 0
        if available == 0:
            alerts.append(
                _alert(e, "OUT_OF_STOCK", "critical", f"{e.name} está sem estoque disponível",
                       {"available": available, "total": e.total_stock, "reserved": e.reserved_stock})
            )
        elif available <= (e.min_stock_level or 0):
            alerts.append(
                _alert(e, "LOW_STOCK", "warning",
                       f"{e.name} com estoque baixo ({available}/{e.min_stock_level} mínimo)",
                       {"available": available, "min_level": e.min_stock_level, "total": e.total_stock})
            )
        if (e.damaged_stock or 0) > 0:
            alerts.append(
                _alert(e, "DAMAGED", "warning", f"{e.name} tem {e.damaged_stock} unidade(s) avariada(s)",
                       {"damaged": e.damaged_stock, "total": e.total_stock})
            )
        if (e.maintenance_stock or 0) > 0:
            alerts.append(
                _alert(e, "IN_MAINTENANCE", "info", f"{e.name} tem {e.maintenance_stock} unidade(s) em manutenção",
                       {"maintenance": e.maintenance_stock, "total": e.total_stock})
            )
    alerts.sort(key=lambda a: SEVERITY_ORDER[a["severity"]])
    return alerts


def stock_alerts(s: "Session", tenant_id: int) -> dict[str, Any]:
    from app.rental.modules.equipment.models import Equipment

    equipments = s.query(Equipment).filter(Equipment.tenant_id == tenant_id, Equipment.status != "INACTIVE").all()
    alerts = build_alerts(equipments)
    counts = {kind: sum(1 for a in alerts if a["type"] == kind) for kind in ("LOW_STOCK", "OUT_OF_STOCK", "DAMAGED", "IN_MAINTENANCE")}
    return {
        "alerts": alerts,
        "summary": {
            "total_alerts": len(alerts),
            "low_stock_count": counts["LOW_STOCK"],
            "out_of_stock_count": counts["OUT_OF_STOCK"],
            "damaged_count": counts["DAMAGED"],
            "in_maintenance_count": counts["IN_MAINTENANCE"],
        },
    }


def low_stock_status(available: int, min_level: int) -> str:
    if available == 0:
        return "OUT_OF_STOCK"
    if available <= min_level / 2:
        return "CRITICAL"
    return "LOW"


def low_stock(s: "Session", tenant_id: int) -> list[dict[str, Any]]:
    from app.rental.modules.equipment.models import Equipment

    rows = (
        s.query(Equipment)
        .filter(
            Equipment.tenant_id == tenant_id,
            Equipment.status != "INACTIVE",
            Equipment.available_stock <= Equipment.min_stock_level,
        )
        .order_by(Equipment.available_stock.asc(), Equipment.name.asc())
        .all()
    )
    out = []
    for e in rows:
        item = serialize_counters(e)
        item["stock_status"] = low_stock_status(e.available_stock or 0, e.min_stock_level or 0)
        item["deficit"] = max(0, (e.min_stock_level or 0) - (e.available_stock or 0))
        out.append(item)
    return out
