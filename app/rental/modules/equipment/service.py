from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from app.rental.activity import record_activity
from app.rental.errors import ConflictError, NotFoundError, ValidationError, require_fields
from app.rental.modules.equipment.models import COST_TYPES, EQUIPMENT_STATUSES
from app.rental.storage import media_key, tenant_owns_key
from app.rental.utils import clean_str, iso, parse_date, parse_float, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.rental.models import User
    from app.rental.modules.equipment.models import Equipment, EquipmentCost, RentalPeriod
    from app.rental.storage import Storage

ALLOWED_IMAGE_TYPES = ("image/jpeg", "image/png", "image/webp", "image/gif")


def get_equipment_or_404(s: "Session", tenant_id: int, equipment_id: int) -> "Equipment":
    from app.rental.modules.equipment.models import Equipment

    equipment = s.get(Equipment, equipment_id)
    if not equipment or equipment.tenant_id != tenant_id:
        raise NotFoundError("Equipamento não encontrado")
    return equipment


def _non_negative(value: Any, field: str) -> float | None:
    parsed = parse_float(value, field)
    if parsed is not None and parsed < 0:
        raise ValidationError(f"'{field}' não pode ser negativo")
    return parsed


def _non_negative_int(value: Any, field: str) -> int | None:
    parsed = parse_int(value, field)
    if parsed is not None and parsed < 0:
        raise ValidationError(f"'{field}' não pode ser negativo")
    return parsed


def parse_rental_periods(raw: Any) -> list[dict[str, Any]]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError("rental_periods deve ser uma lista")
    periods = []
    seen_days: set[int] = set()
    for idx, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ValidationError(f"Período de locação #{idx + 1} inválido")
        days = parse_int(item.get("days"), "days")
        price = parse_float(item.get("price"), "price")
        if not days or days < 1:
            raise ValidationError(f"Período de locação #{idx + 1}: dias deve ser maior que zero")
        if price is None or price < 0:
            raise ValidationError(f"Período de locação #{idx + 1}: preço inválido")
        if days in seen_days:
            raise ValidationError(f"Período de {days} dia(s) duplicado")
        seen_days.add(days)
        periods.append({"days": days, "price": price, "label": clean_str(item.get("label"))})
    return periods


def replace_rental_periods(equipment: "Equipment", periods: list[dict[str, Any]]) -> None:
    from app.rental.modules.equipment.models import RentalPeriod

    equipment.rental_periods.clear()
    for p in periods:
        equipment.rental_periods.append(RentalPeriod(days=p["days"], price=p["price"], label=p["label"]))


def calculate_rental_price(
    periods: list[tuple[int, float, str | None]], price_per_day: float, days: int, quantity: int = 1
) -> dict[str, Any]:
    """
    Price a rental of `days` days for `quantity` units.

    Greedy: the longest periods are used first; leftover days are charged by the
    1-day period when one exists, otherwise at price_per_day.
    """
    if days < 1:
        raise ValidationError("Quantidade de dias deve ser maior que zero")
    if quantity < 1:
        raise ValidationError("Quantidade deve ser maior que zero")

    if not periods:
        total = price_per_day * days * quantity
        return {
            "unit_price": price_per_day,
            "total_price": round(total, 2),
            "period_label": "Diária",
            "price_per_day": price_per_day,
        }

    ordered = sorted(periods, key=lambda p: p[0], reverse=True)
    remaining = days
    unit_total = 0.0
    used: list[tuple[int, str | None, int]] = []
    for period_days, price, label in ordered:
        if remaining >= period_days:
            count = remaining // period_days
            unit_total += price * count
            remaining -= period_days * count
            used.append((period_days, label, count))

    if remaining > 0:
        daily = next((p for p in ordered if p[0] == 1), None)
        if daily is not None:
            unit_total += daily[1] * remaining
            used.append((1, daily[2], remaining))
        else:
            unit_total += price_per_day * remaining
            used.append((1, "Diária", remaining))

    def _name(period_days: int, label: str | None) -> str:
        return label or f"{period_days} dia(s)"

    if len(used) == 1:
        period_days, label, count = used[0]
        period_label = _name(period_days, label) if count == 1 else f"{count}x {_name(period_days, label)}"
    else:
        period_label = " + ".join(f"{count}x {label or f'{period_days}d'}" for period_days, label, count in used)

    return {
        "unit_price": round(unit_total / days, 2),
        "total_price": round(unit_total * quantity, 2),
        "period_label": period_label,
        "price_per_day": price_per_day,
    }


def quote_equipment(equipment: "Equipment", days: int, quantity: int = 1) -> dict[str, Any]:
    periods = [(p.days, p.price, p.label) for p in equipment.rental_periods]
    result = calculate_rental_price(periods, float(equipment.price_per_day or 0), days, quantity)
    result.update({"equipment_id": equipment.id, "days": days, "quantity": quantity})
    return result


def create_equipment(s: "Session", tenant_id: int, payload: dict, actor: "User | None") -> "Equipment":
    from app.rental.modules.billing.limits import check_equipment_limit, enforce_limit
    from app.rental.modules.equipment.models import Equipment
    from app.rental.modules.stock.service import record_movement

    require_fields(payload, ("name", "category", "price_per_day"))
    enforce_limit(check_equipment_limit(s, tenant_id))

    price_per_day = _non_negative(payload.get("price_per_day"), "price_per_day")
    quantity = parse_int(payload.get("quantity"), "quantity")
    if quantity is None:
        quantity = 1
    if quantity < 1:
        raise ValidationError("Quantidade deve ser maior que zero")
    periods = parse_rental_periods(payload.get("rental_periods"))

    now = datetime.utcnow()
    equipment = Equipment(
        tenant_id=tenant_id,
        name=clean_str(payload.get("name")),
        description=clean_str(payload.get("description")),
        category=clean_str(payload.get("category")),
        price_per_day=price_per_day,
        price_per_hour=_non_negative(payload.get("price_per_hour"), "price_per_hour"),
        status="AVAILABLE",
        images=[],
        total_stock=0,
        available_stock=0,
        reserved_stock=0,
        maintenance_stock=0,
        damaged_stock=0,
        min_stock_level=_non_negative_int(payload.get("min_stock_level"), "min_stock_level") or 0,
        unit_cost=_non_negative(payload.get("unit_cost"), "unit_cost"),
        created_at=now,
        updated_at=now,
    )
    s.add(equipment)
    s.flush()
    replace_rental_periods(equipment, periods)

    record_activity(
        s,
        tenant_id=tenant_id,
        actor=actor,
        action="CREATE",
        entity="EQUIPMENT",
        entity_id=equipment.id,
        description=f"Equipamento \"{equipment.name}\" criado",
        metadata={"category": equipment.category, "quantity": quantity},
    )
    record_movement(s, equipment, "PURCHASE", quantity, actor=actor, reason="Cadastro inicial do equipamento")
    return equipment


_UPDATABLE_TEXT = ("name", "description", "category")


def update_equipment(s: "Session", equipment: "Equipment", payload: dict, actor: "User | None") -> "Equipment":
    changes: dict[str, dict[str, Any]] = {}

    for field in _UPDATABLE_TEXT:
        if field not in payload:
            continue
        new_value = clean_str(payload.get(field))
        if field in ("name", "category") and not new_value:
            raise ValidationError(f"Campos obrigatórios: {field}", payload={"missing_fields": [field]})
        if new_value != getattr(equipment, field):
            changes[field] = {"old": getattr(equipment, field), "new": new_value}
            setattr(equipment, field, new_value)

    for field in ("price_per_day", "price_per_hour", "unit_cost"):
        if field not in payload:
            continue
        new_value = _non_negative(payload.get(field), field)
        if field == "price_per_day" and new_value is None:
            raise ValidationError("Campos obrigatórios: price_per_day", payload={"missing_fields": ["price_per_day"]})
        if new_value != getattr(equipment, field):
            changes[field] = {"old": getattr(equipment, field), "new": new_value}
            setattr(equipment, field, new_value)

    if "min_stock_level" in payload:
        new_min = _non_negative_int(payload.get("min_stock_level"), "min_stock_level") or 0
        if new_min != equipment.min_stock_level:
            changes["min_stock_level"] = {"old": equipment.min_stock_level, "new": new_min}
            equipment.min_stock_level = new_min

    if "status" in payload:
        new_status = (payload.get("status") or "").strip().upper()
        if new_status not in EQUIPMENT_STATUSES:
            raise ValidationError(f"Status inválido. Use: {', '.join(EQUIPMENT_STATUSES)}")
        if new_status != equipment.status:
            changes["status"] = {"old": equipment.status, "new": new_status}
            equipment.status = new_status

    if "rental_periods" in payload:
        replace_rental_periods(equipment, parse_rental_periods(payload.get("rental_periods")))
        changes["rental_periods"] = {"new": len(equipment.rental_periods)}

    if changes:
        equipment.updated_at = datetime.utcnow()
        record_activity(
            s,
            tenant_id=equipment.tenant_id,
            actor=actor,
            action="UPDATE",
            entity="EQUIPMENT",
            entity_id=equipment.id,
            description=f"Equipamento \"{equipment.name}\" atualizado",
            metadata={"changes": changes},
        )
    return equipment


def active_booking_count(s: "Session", equipment_id: int) -> int:
    from app.rental.modules.bookings.models import Booking, BookingItem

    return (
        s.query(Booking.id)
        .join(BookingItem, BookingItem.booking_id == Booking.id)
        .filter(BookingItem.equipment_id == equipment_id, Booking.status.in_(("PENDING", "CONFIRMED")))
        .distinct()
        .count()
    )


def delete_equipment(s: "Session", equipment: "Equipment", actor: "User | None") -> None:
    """Soft delete (status INACTIVE); refused while the equipment is on active bookings."""
    if active_booking_count(s, equipment.id):
        raise ConflictError("Equipamento possui reservas ativas e não pode ser excluído")
    equipment.status = "INACTIVE"
    equipment.updated_at = datetime.utcnow()
    record_activity(
        s,
        tenant_id=equipment.tenant_id,
        actor=actor,
        action="DELETE",
        entity="EQUIPMENT",
        entity_id=equipment.id,
        description=f"Equipamento \"{equipment.name}\" desativado",
    )


def add_cost(s: "Session", equipment: "Equipment", payload: dict, actor: "User | None") -> "EquipmentCost":
    from app.rental.modules.equipment.models import EquipmentCost

    require_fields(payload, ("type", "description", "amount"))
    cost_type = str(payload.get("type")).strip().upper()
    if cost_type not in COST_TYPES:
        raise ValidationError(f"Tipo de custo inválido. Use: {', '.join(COST_TYPES)}")
    amount = parse_float(payload.get("amount"), "amount")
    if amount is None or amount <= 0:
        raise ValidationError("Valor deve ser maior que zero")

    cost = EquipmentCost(
        tenant_id=equipment.tenant_id,
        equipment_id=equipment.id,
        booking_id=parse_int(payload.get("booking_id"), "booking_id"),
        type=cost_type,
        description=clean_str(payload.get("description")),
        amount=amount,
        date=parse_date(payload.get("date"), "date") or date.today(),
        created_at=datetime.utcnow(),
    )
    equipment.costs.append(cost)
    s.flush()
    record_activity(
        s,
        tenant_id=equipment.tenant_id,
        actor=actor,
        action="CREATE",
        entity="EQUIPMENT",
        entity_id=equipment.id,
        description=f"Custo de R$ {amount:.2f} ({cost_type}) registrado em \"{equipment.name}\"",
        metadata={"cost_id": cost.id, "type": cost_type, "amount": amount},
    )
    return cost


def delete_cost(s: "Session", equipment: "Equipment", cost_id: int, actor: "User | None") -> None:
    cost = next((c for c in equipment.costs if c.id == cost_id), None)
    if cost is None:
        raise NotFoundError("Custo não encontrado")
    equipment.costs.remove(cost)
    record_activity(
        s,
        tenant_id=equipment.tenant_id,
        actor=actor,
        action="DELETE",
        entity="EQUIPMENT",
        entity_id=equipment.id,
        description=f"Custo de R$ {cost.amount:.2f} removido de \"{equipment.name}\"",
        metadata={"cost_id": cost_id},
    )


def upload_image(
    s: "Session",
    storage: "Storage",
    equipment: "Equipment",
    file_bytes: bytes,
    filename: str,
    content_type: str | None,
    actor: "User | None",
) -> str:
    if not file_bytes:
        raise ValidationError("Arquivo vazio")
    if (content_type or "").lower() not in ALLOWED_IMAGE_TYPES:
        raise ValidationError(f"Tipo de imagem não suportado. Use: {', '.join(ALLOWED_IMAGE_TYPES)}")

    key = media_key(equipment.tenant_id, "equipment", equipment.id, filename, file_bytes)
    storage.put_bytes(key, file_bytes, content_type=content_type)
    current = list(equipment.images or [])
    if key not in current:
        # Reassign so the JSON column is flagged dirty.
        equipment.images = [*current, key]
    equipment.updated_at = datetime.utcnow()
    record_activity(
        s,
        tenant_id=equipment.tenant_id,
        actor=actor,
        action="UPDATE",
        entity="EQUIPMENT",
        entity_id=equipment.id,
        description=f"Imagem adicionada a \"{equipment.name}\"",
        metadata={"storage_key": key},
    )
    return key


def image_key_or_404(equipment: "Equipment", key: str) -> str:
    if not tenant_owns_key(equipment.tenant_id, key) or key not in (equipment.images or []):
        raise NotFoundError("Imagem não encontrada")
    return key


def remove_image(
    s: "Session",
    storage: "Storage",
    equipment: "Equipment",
    key: str,
    actor: "User | None",
) -> None:
    image_key_or_404(equipment, key)
    storage.delete(key)
    equipment.images = [k for k in (equipment.images or []) if k != key]
    equipment.updated_at = datetime.utcnow()
    record_activity(
        s,
        tenant_id=equipment.tenant_id,
        actor=actor,
        action="UPDATE",
        entity="EQUIPMENT",
        entity_id=equipment.id,
        description=f"Imagem removida de \"{equipment.name}\"",
        metadata={"storage_key": key},
    )


def serialize_cost(c: "EquipmentCost") -> dict[str, Any]:
    return {
        "id": c.id,
        "type": c.type,
        "description": c.description,
        "amount": c.amount,
        "date": iso(c.date),
        "booking_id": c.booking_id,
    }


def serialize_period(p: "RentalPeriod") -> dict[str, Any]:
    return {"id": p.id, "days": p.days, "price": p.price, "label": p.label}


def serialize_equipment(e: "Equipment", *, detail: bool = False) -> dict[str, Any]:
    data = {
        "id": e.id,
        "name": e.name,
        "description": e.description,
        "category": e.category,
        "price_per_day": e.price_per_day,
        "price_per_hour": e.price_per_hour,
        "status": e.status,
        "images": e.images or [],
        "total_stock": e.total_stock,
        "available_stock": e.available_stock,
        "reserved_stock": e.reserved_stock,
        "maintenance_stock": e.maintenance_stock,
        "damaged_stock": e.damaged_stock,
        "min_stock_level": e.min_stock_level,
        "unit_cost": e.unit_cost,
        "rental_periods": [serialize_period(p) for p in e.rental_periods],
        "created_at": iso(e.created_at),
        "updated_at": iso(e.updated_at),
    }
    if detail:
        data["costs"] = [serialize_cost(c) for c in e.costs]
        data["total_costs"] = round(sum(c.amount for c in e.costs), 2)
    return data
