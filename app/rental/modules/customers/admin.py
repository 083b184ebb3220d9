from __future__ import annotations

from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for

from app.rental.db import db_session
from app.rental.errors import ApiError
from app.rental.modules.customers.models import Customer
from app.rental.modules.customers.service import booking_counts, create_customer
from app.rental.modules.fiscal.validators import UF_LIST, format_cpf_cnpj
from app.rental.rbac import require_permission

bp = Blueprint("customers", __name__)

_FORM_FIELDS = (
    "person_type",
    "name",
    "trade_name",
    "cpf_cnpj",
    "email",
    "phone",
    "whatsapp",
    "address",
    "number",
    "complement",
    "neighborhood",
    "city",
    "state",
    "zip_code",
    "notes",
)


@bp.get("/customers")
@require_permission("VIEW_REPORTS")
def customers_list():
    s = db_session()
    search = (request.args.get("q") or "").strip()
    q = s.query(Customer).filter(Customer.tenant_id == g.current_user.tenant_id)
    if search:
        like = f"%{search}%"
        q = q.filter((Customer.name.ilike(like)) | (Customer.email.ilike(like)) | (Customer.phone.ilike(like)))
    customers = q.order_by(Customer.name.asc()).limit(200).all()
    return render_template(
        "admin/customers/list.html",
        customers=customers,
        counts=booking_counts(s, [c.id for c in customers]),
        search=search,
        format_cpf_cnpj=format_cpf_cnpj,
    )


@bp.get("/customers/new")
@require_permission("CREATE_CUSTOMER")
def customers_new_get():
    return render_template("admin/customers/new.html", ufs=UF_LIST)


@bp.post("/customers/new")
@require_permission("CREATE_CUSTOMER")
def customers_new_post():
    s = db_session()
    payload = {k: request.form.get(k) for k in _FORM_FIELDS if k in request.form}
    try:
        customer = create_customer(s, g.current_user.tenant_id, payload, g.current_user)
    except ApiError as e:
        s.rollback()
        flash(e.message, "danger")
        return redirect(url_for("customers.customers_new_get"))
    s.commit()
    flash("Cliente criado.", "success")
    return redirect(url_for("customers.customers_detail", customer_id=customer.id))


@bp.get("/customers/<int:customer_id>")
@require_permission("VIEW_REPORTS")
def customers_detail(customer_id: int):
    from app.rental.modules.bookings.models import Booking

    s = db_session()
    customer = s.get(Customer, customer_id)
    if not customer or customer.tenant_id != g.current_user.tenant_id:
        abort(404)
    bookings = (
        s.query(Booking)
        .filter(Booking.customer_id == customer.id)
        .order_by(Booking.start_date.desc())
        .all()
    )
    return render_template(
        "admin/customers/detail.html",
        customer=customer,
        bookings=bookings,
        format_cpf_cnpj=format_cpf_cnpj,
    )
