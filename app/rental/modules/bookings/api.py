from __future__ import annotations

from datetime import date, timedelta

from flask import Blueprint, current_app, jsonify, request

from app.rental.api import current_actor, json_body
from app.rental.db import db_session
from app.rental.errors import ValidationError
from app.rental.modules.bookings.models import BOOKING_STATUSES, Booking
from app.rental.modules.bookings.service import (
    calendar_bookings,
    cancel_booking,
    create_booking,
    dispatch_booking,
    get_booking_or_404,
    process_return,
    register_payment,
    reverse_payment,
    serialize_booking,
    update_booking,
)
from app.rental.modules.fiscal.service import auto_emit_for_completed
from app.rental.rbac import api_auth
from app.rental.tenancy import require_tenant_id
from app.rental.utils import parse_date

bp = Blueprint("bookings_api", __name__)


@bp.get("/bookings")
@api_auth()
def list_bookings():
    s = db_session()
    q = s.query(Booking).filter(Booking.tenant_id == require_tenant_id())

    status = (request.args.get("status") or "").strip().upper()
    if status:
        if status not in BOOKING_STATUSES:
            raise ValidationError(f"Status inválido: {status}")
        q = q.filter(Booking.status == status)
    customer_id = request.args.get("customer_id", type=int)
    if customer_id:
        q = q.filter(Booking.customer_id == customer_id)

    rows = q.order_by(Booking.start_date.desc(), Booking.id.desc()).all()
    return jsonify([serialize_booking(b) for b in rows])


@bp.post("/bookings")
@api_auth("CREATE_BOOKING")
def create():
    s = db_session()
    booking = create_booking(s, require_tenant_id(), json_body(), current_actor())
    s.commit()
    return jsonify(serialize_booking(booking)), 201


@bp.get("/bookings/calendar")
@api_auth()
def calendar():
    today = date.today()
    start = parse_date(request.args.get("start"), "start") or today.replace(day=1)
    end = parse_date(request.args.get("end"), "end") or (start + timedelta(days=41))
    if end < start:
        raise ValidationError("Data final deve ser posterior à data inicial")
    rows = calendar_bookings(db_session(), require_tenant_id(), start, end)
    return jsonify(
        {
            "start": start.isoformat(),
            "end": end.isoformat(),
            "bookings": [serialize_booking(b) for b in rows],
        }
    )


@bp.get("/bookings/<int:booking_id>")
@api_auth()
def detail(booking_id: int):
    booking = get_booking_or_404(db_session(), require_tenant_id(), booking_id)
    return jsonify(serialize_booking(booking))


@bp.put("/bookings/<int:booking_id>")
@api_auth("EDIT_BOOKING")
def update(booking_id: int):
    s = db_session()
    booking = get_booking_or_404(s, require_tenant_id(), booking_id)
    update_booking(s, booking, json_body(), current_actor())
    s.commit()
    return jsonify(serialize_booking(booking))


@bp.delete("/bookings/<int:booking_id>")
@api_auth("DELETE_BOOKING")
def delete(booking_id: int):
    s = db_session()
    booking = get_booking_or_404(s, require_tenant_id(), booking_id)
    cancel_booking(s, booking, current_actor())
    s.commit()
    return jsonify({"success": True, "booking": serialize_booking(booking)})


@bp.post("/bookings/<int:booking_id>/dispatch")
@api_auth("EDIT_BOOKING")
def dispatch(booking_id: int):
    s = db_session()
    booking = get_booking_or_404(s, require_tenant_id(), booking_id)
    dispatch_booking(s, booking, current_actor())
    s.commit()
    return jsonify(serialize_booking(booking))


@bp.post("/bookings/<int:booking_id>/payment")
@api_auth("EDIT_BOOKING")
def pay(booking_id: int):
    s = db_session()
    booking = get_booking_or_404(s, require_tenant_id(), booking_id)
    register_payment(s, booking, json_body(), current_actor())
    s.commit()
    message = f"Pagamento de R$ {booking.total_price:.2f} registrado com sucesso"
    return jsonify({"message": message, "booking": serialize_booking(booking)})


@bp.delete("/bookings/<int:booking_id>/payment")
@api_auth("EDIT_BOOKING")
def unpay(booking_id: int):
    s = db_session()
    booking = get_booking_or_404(s, require_tenant_id(), booking_id)
    reverse_payment(s, booking, current_actor())
    s.commit()
    return jsonify({"message": "Pagamento estornado com sucesso", "booking": serialize_booking(booking)})


@bp.post("/bookings/<int:booking_id>/return")
@api_auth("EDIT_BOOKING")
def register_return(booking_id: int):
    s = db_session()
    booking = get_booking_or_404(s, require_tenant_id(), booking_id)
    result = process_return(s, booking, json_body(), current_actor())
    s.commit()
    if result["completed"]:
        invoice = auto_emit_for_completed(s, booking, config=current_app.config, actor=current_actor())
        if invoice is not None:
            s.commit()
            result["invoice_id"] = invoice.id
    return jsonify({**result, "booking": serialize_booking(booking)})
