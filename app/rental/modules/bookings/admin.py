from __future__ import annotations

from flask import Blueprint, abort, current_app, flash, g, redirect, render_template, request, url_for

from app.rental.db import db_session
from app.rental.errors import ApiError
from app.rental.modules.bookings.models import BOOKING_STATUS_LABELS, BOOKING_STATUSES, PAYMENT_METHODS, Booking
from app.rental.modules.bookings.service import (
    change_status,
    create_booking,
    dispatch_booking,
    process_return,
    register_payment,
    reverse_payment,
)
from app.rental.modules.customers.models import Customer
from app.rental.modules.equipment.models import Equipment
from app.rental.modules.fiscal.service import auto_emit_for_completed
from app.rental.rbac import require_permission

bp = Blueprint("bookings", __name__)


def _tenant_booking(s, booking_id: int) -> Booking:
    booking = s.get(Booking, booking_id)
    if not booking or booking.tenant_id != g.current_user.tenant_id:
        abort(404)
    return booking


@bp.get("/bookings")
@require_permission("VIEW_REPORTS")
def bookings_list():
    s = db_session()
    status_filter = (request.args.get("status") or "").strip().upper()
    page = request.args.get("page", 1, type=int) or 1
    per_page = 50

    q = s.query(Booking).filter(Booking.tenant_id == g.current_user.tenant_id)
    if status_filter:
        q = q.filter(Booking.status == status_filter)
    total = q.count()
    bookings = (
        q.order_by(Booking.start_date.desc(), Booking.id.desc()).offset((page - 1) * per_page).limit(per_page).all()
    )

    def build_url(p):
        args = dict(request.args)
        args["page"] = p
        return url_for("bookings.bookings_list", **args)

    return render_template(
        "admin/bookings/list.html",
        bookings=bookings,
        status_filter=status_filter,
        statuses=BOOKING_STATUSES,
        status_labels=BOOKING_STATUS_LABELS,
        page=page,
        total=total,
        total_pages=(total + per_page - 1) // per_page,
        build_url=build_url,
    )


@bp.get("/bookings/new")
@require_permission("CREATE_BOOKING")
def bookings_new_get():
    s = db_session()
    tenant_id = g.current_user.tenant_id
    customers = (
        s.query(Customer)
        .filter(Customer.tenant_id == tenant_id, Customer.is_active.is_(True))
        .order_by(Customer.name.asc())
        .all()
    )
    equipment = (
        s.query(Equipment)
        .filter(Equipment.tenant_id == tenant_id, Equipment.status != "INACTIVE")
        .order_by(Equipment.name.asc())
        .all()
    )
    return render_template("admin/bookings/new.html", customers=customers, equipment=equipment)


@bp.post("/bookings/new")
@require_permission("CREATE_BOOKING")
def bookings_new_post():
    s = db_session()
    form = request.form
    equipment_ids = form.getlist("equipment_id")
    quantities = form.getlist("quantity")
    items = []
    for idx, eid in enumerate(equipment_ids):
        if not (eid or "").strip():
            continue
        qty = quantities[idx] if idx < len(quantities) else "1"
        items.append({"equipment_id": eid, "quantity": qty or "1"})
    payload = {
        "customer_id": form.get("customer_id"),
        "start_date": form.get("start_date"),
        "end_date": form.get("end_date"),
        "start_time": form.get("start_time"),
        "end_time": form.get("end_time"),
        "total_price": form.get("total_price"),
        "notes": form.get("notes"),
        "items": items,
    }
    try:
        booking = create_booking(s, g.current_user.tenant_id, payload, g.current_user)
    except ApiError as e:
        s.rollback()
        flash(e.message, "danger")
        return redirect(url_for("bookings.bookings_new_get"))
    s.commit()
    flash(f"Reserva {booking.booking_number} criada.", "success")
    return redirect(url_for("bookings.bookings_detail", booking_id=booking.id))


@bp.get("/bookings/<int:booking_id>")
@require_permission("VIEW_REPORTS")
def bookings_detail(booking_id: int):
    s = db_session()
    booking = _tenant_booking(s, booking_id)
    return render_template(
        "admin/bookings/detail.html",
        booking=booking,
        status_labels=BOOKING_STATUS_LABELS,
        payment_methods=PAYMENT_METHODS,
    )


@bp.post("/bookings/<int:booking_id>/status")
@require_permission("EDIT_BOOKING")
def bookings_status_post(booking_id: int):
    s = db_session()
    booking = _tenant_booking(s, booking_id)
    try:
        change_status(s, booking, request.form.get("status") or "", g.current_user)
    except ApiError as e:
        s.rollback()
        flash(e.message, "danger")
        return redirect(url_for("bookings.bookings_detail", booking_id=booking_id))
    s.commit()
    flash("Status atualizado.", "success")
    return redirect(url_for("bookings.bookings_detail", booking_id=booking_id))


@bp.post("/bookings/<int:booking_id>/dispatch")
@require_permission("EDIT_BOOKING")
def bookings_dispatch_post(booking_id: int):
    s = db_session()
    booking = _tenant_booking(s, booking_id)
    try:
        dispatch_booking(s, booking, g.current_user)
    except ApiError as e:
        s.rollback()
        flash(e.message, "danger")
        return redirect(url_for("bookings.bookings_detail", booking_id=booking_id))
    s.commit()
    flash("Retirada registrada.", "success")
    return redirect(url_for("bookings.bookings_detail", booking_id=booking_id))


@bp.post("/bookings/<int:booking_id>/payment")
@require_permission("EDIT_BOOKING")
def bookings_payment_post(booking_id: int):
    s = db_session()
    booking = _tenant_booking(s, booking_id)
    try:
        if request.form.get("action") == "reverse":
            reverse_payment(s, booking, g.current_user)
            message = "Pagamento estornado."
        else:
            register_payment(s, booking, {"payment_method": request.form.get("payment_method")}, g.current_user)
            message = "Pagamento registrado."
    except ApiError as e:
        s.rollback()
        flash(e.message, "danger")
        return redirect(url_for("bookings.bookings_detail", booking_id=booking_id))
    s.commit()
    flash(message, "success")
    return redirect(url_for("bookings.bookings_detail", booking_id=booking_id))

@bp.post("/bookings/<int:booking_id>/return")
@require_permission("EDIT_BOOKING")
def bookings_return_post(booking_id: int):
    s = db_session()
    booking = _tenant_booking(s, booking_id)
    items = []
    for item in booking.items:
        prefix = f"item_{item.id}_"
        returned = request.form.get(prefix + "returned") or "0"
        damaged = request.form.get(prefix + "damaged") or "0"
        if returned == "0" and damaged == "0":
            continue
        items.append(
            {
                "item_id": item.id,
                "returned_quantity": returned,
                "damaged_quantity": damaged,
                "damage_notes": request.form.get(prefix + "notes"),
                "repair_cost": request.form.get(prefix + "repair_cost"),
            }
        )
    try:
        result = process_return(s, booking, {"items": items}, g.current_user)
    except ApiError as e:
        s.rollback()
        flash(e.message, "danger")
        return redirect(url_for("bookings.bookings_detail", booking_id=booking_id))
    s.commit()
    if result["completed"]:
        invoice = auto_emit_for_completed(s, booking, config=current_app.config, actor=g.current_user)
        if invoice is not None:
            s.commit()
            flash(f"NFS-e {invoice.internal_ref} enviada para emissão.", "info")
    flash("Reserva concluída." if result["completed"] else "Devolução parcial registrada.", "success")
    return redirect(url_for("bookings.bookings_detail", booking_id=booking_id))
