from __future__ import annotations

import re
from collections import OrderedDict
from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from app.rental.activity import record_activity
from app.rental.errors import ConflictError, NotFoundError, ValidationError, require_fields
from app.rental.modules.bookings.models import BOOKING_STATUS_LABELS, BOOKING_STATUSES
from app.rental.utils import clean_str, iso, parse_date, parse_float, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.rental.models import User
    from app.rental.modules.bookings.models import Booking, BookingItem

UNAVAILABLE_MESSAGE = "Equipamento não disponível para este período"
_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
_NUMBER_RE = re.compile(r"^RES-(\d+)$")


def get_booking_or_404(s: "Session", tenant_id: int, booking_id: int) -> "Booking":
    from app.rental.modules.bookings.models import Booking

    booking = s.get(Booking, booking_id)
    if not booking or booking.tenant_id != tenant_id:
        raise NotFoundError("Reserva não encontrada")
    return booking


def format_booking_number(seq: int) -> str:
    return f"RES-{seq:04d}"


def next_booking_number(s: "Session", tenant_id: int) -> str:
    from app.rental.modules.bookings.models import Booking

    highest = 0
    for (number,) in s.query(Booking.booking_number).filter(Booking.tenant_id == tenant_id):
        m = _NUMBER_RE.match(number or "")
        if m:
            highest = max(highest, int(m.group(1)))
    return format_booking_number(highest + 1)


def _parse_time(value: Any, field: str) -> str | None:
    raw = clean_str(value)
    if raw is None:
        return None
    if not _TIME_RE.match(raw):
        raise ValidationError(f"Horário inválido em '{field}' (use HH:MM)")
    return raw


def parse_items(payload: dict) -> list[dict[str, Any]]:
    """items[] or the single equipment_id + quantity form."""
    raw_items = payload.get("items")
    if raw_items is None and payload.get("equipment_id") is not None:
        raw_items = [{"equipment_id": payload.get("equipment_id"), "quantity": payload.get("quantity") or 1}]
    if not raw_items or not isinstance(raw_items, list):
        raise ValidationError("Informe ao menos um equipamento (items ou equipment_id)")

    items = []
    for idx, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise ValidationError(f"Item #{idx + 1} inválido")
        equipment_id = parse_int(raw.get("equipment_id"), "equipment_id")
        if not equipment_id:
            raise ValidationError(f"Item #{idx + 1}: equipment_id é obrigatório")
        quantity = parse_int(raw.get("quantity"), "quantity")
        if quantity is None:
            quantity = 1
        if quantity < 1:
            raise ValidationError(f"Item #{idx + 1}: quantidade deve ser maior que zero")
        unit_price = parse_float(raw.get("unit_price"), "unit_price")
        if unit_price is not None and unit_price < 0:
            raise ValidationError(f"Item #{idx + 1}: preço unitário inválido")
        items.append({"equipment_id": equipment_id, "quantity": quantity, "unit_price": unit_price})
    return items


def _rental_days(start: date, end: date) -> int:
    return (end - start).days + 1


def _ensure_available(
    s: "Session",
    equipments: dict[int, Any],
    quantities: dict[int, int],
    start: date,
    end: date,
    exclude_booking_id: int | None = None,
) -> None:
    from app.rental.modules.stock.service import check_availability

    for equipment_id, qty in quantities.items():
        result = check_availability(s, equipments[equipment_id], start, end, qty, exclude_booking_id)
        if not result["is_available"]:
            raise ConflictError(
                UNAVAILABLE_MESSAGE,
                payload={
                    "equipment_id": equipment_id,
                    "available_for_period": result["available_for_period"],
                    "requested_quantity": qty,
                    "conflicting_bookings": result["conflicting_bookings"],
                },
            )


def _resolve_site(s: "Session", customer: Any, raw_site_id: Any) -> Any:
    from app.rental.modules.customers.service import get_site_or_404

    site_id = parse_int(raw_site_id, "customer_site_id")
    if not site_id:
        return None
    site = get_site_or_404(s, customer, site_id)
    if not site.is_active:
        raise ValidationError(f"Local \"{site.name}\" está desativado")
    return site


def create_booking(s: "Session", tenant_id: int, payload: dict, actor: "User | None") -> "Booking":
    from app.rental.modules.billing.limits import check_booking_limit, enforce_limit
    from app.rental.modules.bookings.models import Booking, BookingItem
    from app.rental.modules.customers.service import get_customer_or_404
    from app.rental.modules.equipment.service import get_equipment_or_404, quote_equipment

    require_fields(payload, ("customer_id", "start_date", "end_date", "total_price"))
    items = parse_items(payload)

    customer = get_customer_or_404(s, tenant_id, parse_int(payload.get("customer_id"), "customer_id"))
    site = _resolve_site(s, customer, payload.get("customer_site_id"))
    start = parse_date(payload.get("start_date"), "start_date")
    end = parse_date(payload.get("end_date"), "end_date")
    if end < start:
        raise ValidationError("Data final deve ser posterior à data inicial")
    total_price = parse_float(payload.get("total_price"), "total_price")
    if total_price < 0:
        raise ValidationError("Valor total inválido")

    equipments: dict[int, Any] = {}
    quantities: dict[int, int] = OrderedDict()
    for item in items:
        eid = item["equipment_id"]
        if eid not in equipments:
            equipments[eid] = get_equipment_or_404(s, tenant_id, eid)
        if equipments[eid].status == "INACTIVE":
            raise ValidationError(f"Equipamento \"{equipments[eid].name}\" está inativo")
        quantities[eid] = quantities.get(eid, 0) + item["quantity"]

    enforce_limit(check_booking_limit(s, tenant_id))
    _ensure_available(s, equipments, quantities, start, end)

    now = datetime.utcnow()
    booking = Booking(
        tenant_id=tenant_id,
        booking_number=next_booking_number(s, tenant_id),
        customer=customer,
        customer_site=site,
        start_date=start,
        end_date=end,
        start_time=_parse_time(payload.get("start_time"), "start_time"),
        end_time=_parse_time(payload.get("end_time"), "end_time"),
        total_price=total_price,
        notes=clean_str(payload.get("notes")),
        status="PENDING",
        created_at=now,
        updated_at=now,
    )
    s.add(booking)

    days = _rental_days(start, end)
    for item in items:
        equipment = equipments[item["equipment_id"]]
        if item["unit_price"] is not None:
            unit_price = item["unit_price"]
            line_total = round(unit_price * item["quantity"], 2)
        else:
            quote = quote_equipment(equipment, days, item["quantity"])
            line_total = quote["total_price"]
            unit_price = round(line_total / item["quantity"], 2)
        booking.items.append(
            BookingItem(
                equipment=equipment,
                quantity=item["quantity"],
                unit_price=unit_price,
                total_price=line_total,
                returned_quantity=0,
                damaged_quantity=0,
            )
        )
    s.flush()

    record_activity(
        s,
        tenant_id=tenant_id,
        actor=actor,
        action="CREATE",
        entity="BOOKING",
        entity_id=booking.id,
        description=f"Reserva {booking.booking_number} criada para {customer.name}",
        metadata={"items": [{"equipment_id": i.equipment_id, "quantity": i.quantity} for i in booking.items]},
    )
    return booking


def _rental_out(s: "Session", booking: "Booking", actor: "User | None") -> None:
    from app.rental.modules.stock.service import record_movement

    for item in booking.items:
        record_movement(
            s,
            item.equipment,
            "RENTAL_OUT",
            item.quantity,
            actor=actor,
            reason=f"Retirada da reserva {booking.booking_number}",
            booking_id=booking.id,
        )
    booking.dispatched_at = datetime.utcnow()


def _release_stock(s: "Session", booking: "Booking", actor: "User | None") -> None:
    from app.rental.modules.stock.service import record_movement

    for item in booking.items:
        outstanding = item.pending_quantity
        if outstanding > 0:
            record_movement(
                s,
                item.equipment,
                "RENTAL_RETURN",
                outstanding,
                actor=actor,
                reason=f"Reserva {booking.booking_number} cancelada",
                booking_id=booking.id,
            )


def _booking_quantities(booking: "Booking") -> tuple[dict[int, Any], dict[int, int]]:
    equipments = {i.equipment_id: i.equipment for i in booking.items}
    quantities: dict[int, int] = {}
    for i in booking.items:
        quantities[i.equipment_id] = quantities.get(i.equipment_id, 0) + i.quantity
    return equipments, quantities


def change_status(
    s: "Session", booking: "Booking", new_status: str, actor: "User | None", *, today: date | None = None
) -> None:
    """
    PENDING -> CONFIRMED re-checks the period and holds it. Units leave stock
    (available -> reserved) right away only when the rental has already started,
    otherwise at dispatch_booking.
    CONFIRMED -> CANCELLED returns outstanding units of a dispatched booking.
    COMPLETED is only reachable through the return flow.
    """
    new_status = (new_status or "").strip().upper()
    old_status = booking.status
    if new_status not in BOOKING_STATUSES:
        raise ValidationError(f"Status inválido. Use: {', '.join(BOOKING_STATUSES)}")
    if new_status == old_status:
        return
    if new_status == "COMPLETED":
        raise ValidationError("Use a devolução para concluir a reserva")
    if old_status in ("COMPLETED", "CANCELLED"):
        raise ValidationError(f"Reserva {BOOKING_STATUS_LABELS[old_status].lower()} não pode ser alterada")
    if old_status == "CONFIRMED" and new_status == "PENDING":
        raise ValidationError("Reserva confirmada não pode voltar para pendente")

    if old_status == "PENDING" and new_status == "CONFIRMED":
        equipments, quantities = _booking_quantities(booking)
        _ensure_available(s, equipments, quantities, booking.start_date, booking.end_date, exclude_booking_id=booking.id)
        if booking.start_date <= (today or date.today()):
            _rental_out(s, booking, actor)
    elif old_status == "CONFIRMED" and new_status == "CANCELLED" and booking.dispatched_at:
        _release_stock(s, booking, actor)

    booking.status = new_status
    booking.updated_at = datetime.utcnow()
    record_activity(
        s,
        tenant_id=booking.tenant_id,
        actor=actor,
        action="UPDATE",
        entity="BOOKING",
        entity_id=booking.id,
        description=(
            f"Reserva {booking.booking_number}: {BOOKING_STATUS_LABELS[old_status]} → "
            f"{BOOKING_STATUS_LABELS[new_status]}"
        ),
        metadata={"old_status": old_status, "new_status": new_status},
    )


def dispatch_booking(s: "Session", booking: "Booking", actor: "User | None") -> "Booking":
    """Hand the units of a CONFIRMED booking to the customer (available -> reserved)."""
    if booking.status != "CONFIRMED":
        raise ValidationError("Apenas reservas confirmadas podem ser retiradas")
    if booking.dispatched_at:
        raise ValidationError("Reserva já foi retirada")

    _rental_out(s, booking, actor)
    booking.updated_at = datetime.utcnow()
    record_activity(
        s,
        tenant_id=booking.tenant_id,
        actor=actor,
        action="UPDATE",
        entity="BOOKING",
        entity_id=booking.id,
        description=f"Reserva {booking.booking_number} retirada",
        metadata={"items": [{"equipment_id": i.equipment_id, "quantity": i.quantity} for i in booking.items]},
    )
    return booking


def dispatch_due_bookings(s: "Session", today: date | None = None, tenant_id: int | None = None) -> list[dict[str, Any]]:
    """
    Dispatch every CONFIRMED booking whose rental has started. Each booking runs in
    its own savepoint; a booking whose units are not back yet is reported, not raised.
    """
    from app.rental.modules.bookings.models import Booking

    today = today or date.today()
    q = s.query(Booking).filter(
        Booking.status == "CONFIRMED",
        Booking.dispatched_at.is_(None),
        Booking.start_date <= today,
    )
    if tenant_id is not None:
        q = q.filter(Booking.tenant_id == tenant_id)

    results = []
    for booking in q.order_by(Booking.start_date.asc(), Booking.id.asc()).all():
        try:
            with s.begin_nested():
                dispatch_booking(s, booking, None)
            results.append({"booking_id": booking.id, "booking_number": booking.booking_number, "dispatched": True})
        except ValidationError as exc:
            s.refresh(booking)
            results.append(
                {
                    "booking_id": booking.id,
                    "booking_number": booking.booking_number,
                    "dispatched": False,
                    "error": exc.message,
                }
            )
    return results


def register_payment(s: "Session", booking: "Booking", payload: dict, actor: "User | None") -> "Booking":
    """Mark the booking paid; a PENDING booking is confirmed along with it."""
    from app.rental.modules.bookings.models import PAYMENT_METHODS

    if booking.paid_at:
        raise ValidationError("Esta reserva já foi paga")
    if booking.status == "CANCELLED":
        raise ValidationError("Reserva cancelada não aceita pagamento")
    method = (clean_str(payload.get("payment_method")) or "").upper()
    if method not in PAYMENT_METHODS:
        raise ValidationError(f"Forma de pagamento inválida. Use: {', '.join(PAYMENT_METHODS)}")

    if booking.status == "PENDING":
        change_status(s, booking, "CONFIRMED", actor)
    booking.paid_at = datetime.utcnow()
    booking.payment_method = method
    booking.updated_at = booking.paid_at
    record_activity(
        s,
        tenant_id=booking.tenant_id,
        actor=actor,
        action="UPDATE",
        entity="BOOKING",
        entity_id=booking.id,
        description=f"Pagamento de R$ {booking.total_price:.2f} registrado na reserva {booking.booking_number}",
        metadata={"event": "PAYMENT_RECEIVED", "payment_method": method, "amount": booking.total_price},
    )
    return booking


def reverse_payment(s: "Session", booking: "Booking", actor: "User | None") -> "Booking":
    if not booking.paid_at:
        raise ValidationError("Esta reserva não possui pagamento registrado")
    method = booking.payment_method
    booking.paid_at = None
    booking.payment_method = None
    booking.updated_at = datetime.utcnow()
    record_activity(
        s,
        tenant_id=booking.tenant_id,
        actor=actor,
        action="UPDATE",
        entity="BOOKING",
        entity_id=booking.id,
        description=f"Pagamento estornado na reserva {booking.booking_number}",
        metadata={"event": "PAYMENT_REVERSED", "payment_method": method, "amount": booking.total_price},
    )
    return booking


def update_booking(s: "Session", booking: "Booking", payload: dict, actor: "User | None") -> "Booking":
    if booking.status in ("COMPLETED", "CANCELLED") and set(payload) - {"notes", "status"}:
        raise ValidationError("Reserva finalizada não pode ser alterada")

    changes: dict[str, Any] = {}
    start = parse_date(payload.get("start_date"), "start_date") if "start_date" in payload else booking.start_date
    end = parse_date(payload.get("end_date"), "end_date") if "end_date" in payload else booking.end_date
    if start is None or end is None:
        raise ValidationError("Datas de início e fim são obrigatórias")
    if end < start:
        raise ValidationError("Data final deve ser posterior à data inicial")

    if (start, end) != (booking.start_date, booking.end_date):
        equipments, quantities = _booking_quantities(booking)
        _ensure_available(s, equipments, quantities, start, end, exclude_booking_id=booking.id)
        changes["period"] = {
            "old": [iso(booking.start_date), iso(booking.end_date)],
            "new": [iso(start), iso(end)],
        }
        booking.start_date, booking.end_date = start, end

    for field in ("start_time", "end_time"):
        if field in payload:
            value = _parse_time(payload.get(field), field)
            if value != getattr(booking, field):
                changes[field] = {"old": getattr(booking, field), "new": value}
                setattr(booking, field, value)

    if "total_price" in payload:
        total = parse_float(payload.get("total_price"), "total_price")
        if total is None or total < 0:
            raise ValidationError("Valor total inválido")
        if total != booking.total_price:
            changes["total_price"] = {"old": booking.total_price, "new": total}
            booking.total_price = total

    if "customer_site_id" in payload:
        site = _resolve_site(s, booking.customer, payload.get("customer_site_id"))
        if site is not booking.customer_site:
            changes["customer_site_id"] = {"old": booking.customer_site_id, "new": site.id if site else None}
            booking.customer_site = site

    if "notes" in payload:
        notes = clean_str(payload.get("notes"))
        if notes != booking.notes:
            changes["notes"] = {"old": booking.notes, "new": notes}
            booking.notes = notes

    if changes:
        booking.updated_at = datetime.utcnow()
        record_activity(
            s,
            tenant_id=booking.tenant_id,
            actor=actor,
            action="UPDATE",
            entity="BOOKING",
            entity_id=booking.id,
            description=f"Reserva {booking.booking_number} atualizada",
            metadata={"changes": changes},
        )

    if payload.get("status"):
        change_status(s, booking, str(payload.get("status")), actor)
    return booking


def cancel_booking(s: "Session", booking: "Booking", actor: "User | None") -> "Booking":
    if booking.status == "CANCELLED":
        raise ValidationError("Reserva já está cancelada")
    change_status(s, booking, "CANCELLED", actor)
    return booking


def process_return(s: "Session", booking: "Booking", payload: dict, actor: "User | None") -> dict[str, Any]:
    """
    Register returned and damaged units of a CONFIRMED booking, dispatching it first if needed.
    Returned units go reserved -> available, damaged units reserved -> damaged.
    The booking completes once every unit is accounted for.
    """
    from app.rental.modules.equipment.models import EquipmentCost
    from app.rental.modules.stock.service import record_movement, record_returned_damage

    if booking.status in ("COMPLETED", "CANCELLED"):
        raise ValidationError(f"Reserva {BOOKING_STATUS_LABELS[booking.status].lower()} não aceita devolução")
    if booking.status != "CONFIRMED":
        raise ValidationError("Apenas reservas confirmadas podem registrar devolução")
    raw_items = payload.get("items")
    if not raw_items or not isinstance(raw_items, list):
        raise ValidationError("Informe os itens da devolução")

    by_id = {item.id: item for item in booking.items}
    parsed = []
    for idx, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise ValidationError(f"Item #{idx + 1} inválido")
        item_id = parse_int(raw.get("item_id"), "item_id")
        item = by_id.get(item_id)
        if item is None:
            raise NotFoundError(f"Item {item_id} não pertence a esta reserva")
        returned = parse_int(raw.get("returned_quantity"), "returned_quantity") or 0
        damaged = parse_int(raw.get("damaged_quantity"), "damaged_quantity") or 0
        if returned < 0 or damaged < 0:
            raise ValidationError("Quantidades não podem ser negativas")
        if returned + damaged > item.pending_quantity:
            raise ValidationError(
                f"Quantidade excede o pendente de \"{item.equipment.name}\" "
                f"(pendente: {item.pending_quantity}, informado: {returned + damaged})"
            )
        repair_cost = parse_float(raw.get("repair_cost"), "repair_cost") or 0.0
        if repair_cost < 0:
            raise ValidationError("Custo de reparo inválido")
        parsed.append((item, returned, damaged, clean_str(raw.get("damage_notes")), repair_cost))

    if not booking.dispatched_at:
        _rental_out(s, booking, actor)

    summary = []
    for item, returned, damaged, damage_notes, repair_cost in parsed:
        equipment = item.equipment
        if returned:
            record_movement(
                s, equipment, "RENTAL_RETURN", returned, actor=actor,
                reason=f"Devolução da reserva {booking.booking_number}", booking_id=booking.id,
            )
        if damaged:
            record_returned_damage(
                s, equipment, damaged, actor=actor,
                reason=damage_notes or f"Avaria na devolução da reserva {booking.booking_number}",
                booking_id=booking.id,
            )
            item.damage_notes = damage_notes or item.damage_notes
        if repair_cost > 0:
            equipment.costs.append(
                EquipmentCost(
                    tenant_id=booking.tenant_id,
                    booking_id=booking.id,
                    type="REPAIR",
                    description=damage_notes or f"Reparo após reserva {booking.booking_number}",
                    amount=repair_cost,
                    date=date.today(),
                    created_at=datetime.utcnow(),
                )
            )
        item.returned_quantity = (item.returned_quantity or 0) + returned
        item.damaged_quantity = (item.damaged_quantity or 0) + damaged
        summary.append(
            {"item_id": item.id, "returned": returned, "damaged": damaged, "pending": item.pending_quantity}
        )

    completed = all(i.pending_quantity == 0 for i in booking.items)
    if completed:
        booking.status = "COMPLETED"
    notes = clean_str(payload.get("notes"))
    if notes:
        booking.notes = f"{booking.notes}\n{notes}" if booking.notes else notes
    booking.updated_at = datetime.utcnow()

    record_activity(
        s,
        tenant_id=booking.tenant_id,
        actor=actor,
        action="UPDATE",
        entity="BOOKING",
        entity_id=booking.id,
        description=(
            f"Devolução registrada na reserva {booking.booking_number}"
            + (" (concluída)" if completed else " (parcial)")
        ),
        metadata={"items": summary},
    )
    return {"completed": completed, "items": summary}


def calendar_bookings(s: "Session", tenant_id: int, start: date, end: date) -> list["Booking"]:
    from app.rental.modules.bookings.models import Booking

    return (
        s.query(Booking)
        .filter(Booking.tenant_id == tenant_id, Booking.start_date <= end, Booking.end_date >= start)
        .order_by(Booking.start_date.asc(), Booking.id.asc())
        .all()
    )


def serialize_item(item: "BookingItem") -> dict[str, Any]:
    return {
        "id": item.id,
        "equipment_id": item.equipment_id,
        "equipment_name": item.equipment.name if item.equipment else None,
        "quantity": item.quantity,
        "unit_price": item.unit_price,
        "total_price": item.total_price,
        "returned_quantity": item.returned_quantity,
        "damaged_quantity": item.damaged_quantity,
        "pending_quantity": item.pending_quantity,
        "damage_notes": item.damage_notes,
    }


def serialize_booking(b: "Booking") -> dict[str, Any]:
    return {
        "id": b.id,
        "booking_number": b.booking_number,
        "status": b.status,
        "status_label": BOOKING_STATUS_LABELS.get(b.status, b.status),
        "customer": {"id": b.customer.id, "name": b.customer.name, "phone": b.customer.phone} if b.customer else None,
        "start_date": iso(b.start_date),
        "end_date": iso(b.end_date),
        "start_time": b.start_time,
        "end_time": b.end_time,
        "total_price": b.total_price,
        "notes": b.notes,
        "customer_site": {"id": b.customer_site.id, "name": b.customer_site.name} if b.customer_site else None,
        "dispatched_at": iso(b.dispatched_at),
        "paid_at": iso(b.paid_at),
        "payment_method": b.payment_method,
        "items": [serialize_item(i) for i in b.items],
        "created_at": iso(b.created_at),
        "updated_at": iso(b.updated_at),
    }
