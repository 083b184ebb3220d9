from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.rental.api import current_actor, json_body
from app.rental.db import db_session
from app.rental.modules.customers.models import Customer
from app.rental.modules.customers.service import (
    booking_counts,
    create_customer,
    create_site,
    delete_customer,
    delete_site,
    get_customer_or_404,
    get_site_or_404,
    list_sites,
    serialize_customer,
    serialize_site,
    update_customer,
    update_site,
)
from app.rental.modules.fiscal.validators import only_numbers
from app.rental.rbac import api_auth
from app.rental.tenancy import require_tenant_id

bp = Blueprint("customers_api", __name__)


@bp.get("/customers")
@api_auth()
def list_customers():
    s = db_session()
    q = s.query(Customer).filter(Customer.tenant_id == require_tenant_id())
    search = (request.args.get("q") or "").strip()
    if search:
        like = f"%{search}%"
        clauses = Customer.name.ilike(like) | Customer.email.ilike(like) | Customer.phone.ilike(like)
        digits = only_numbers(search)
        if digits:
            clauses = clauses | Customer.cpf_cnpj.ilike(f"%{digits}%")
        q = q.filter(clauses)
    if (request.args.get("active") or "").strip() == "1":
        q = q.filter(Customer.is_active.is_(True))

    rows = q.order_by(Customer.created_at.desc(), Customer.id.desc()).all()
    counts = booking_counts(s, [c.id for c in rows])
    return jsonify([serialize_customer(c, booking_count=counts.get(c.id, 0)) for c in rows])


@bp.post("/customers")
@api_auth("CREATE_CUSTOMER")
def create():
    s = db_session()
    customer = create_customer(s, require_tenant_id(), json_body(), current_actor())
    s.commit()
    return jsonify({"customer": serialize_customer(customer)}), 201


@bp.get("/customers/<int:customer_id>")
@api_auth()
def detail(customer_id: int):
    from app.rental.modules.bookings.models import Booking
    from app.rental.modules.bookings.service import serialize_booking

    s = db_session()
    customer = get_customer_or_404(s, require_tenant_id(), customer_id)
    bookings = (
        s.query(Booking)
        .filter(Booking.customer_id == customer.id)
        .order_by(Booking.start_date.desc(), Booking.id.desc())
        .all()
    )
    data = serialize_customer(customer, booking_count=len(bookings))
    data["bookings"] = [serialize_booking(b) for b in bookings]
    data["sites"] = [serialize_site(site) for site in list_sites(s, customer)]
    return jsonify(data)


@bp.put("/customers/<int:customer_id>")
@api_auth("EDIT_CUSTOMER")
def update(customer_id: int):
    s = db_session()
    customer = get_customer_or_404(s, require_tenant_id(), customer_id)
    update_customer(s, customer, json_body(), current_actor())
    s.commit()
    return jsonify({"customer": serialize_customer(customer)})


@bp.delete("/customers/<int:customer_id>")
@api_auth("DELETE_CUSTOMER")
def delete(customer_id: int):
    s = db_session()
    customer = get_customer_or_404(s, require_tenant_id(), customer_id)
    delete_customer(s, customer, current_actor())
    s.commit()
    return jsonify({"success": True})


@bp.get("/customers/<int:customer_id>/sites")
@api_auth()
def sites(customer_id: int):
    s = db_session()
    customer = get_customer_or_404(s, require_tenant_id(), customer_id)
    active_only = (request.args.get("active_only") or "true").strip().lower() not in ("false", "0")
    return jsonify([serialize_site(site) for site in list_sites(s, customer, active_only=active_only)])


@bp.post("/customers/<int:customer_id>/sites")
@api_auth("EDIT_CUSTOMER")
def create_customer_site(customer_id: int):
    s = db_session()
    customer = get_customer_or_404(s, require_tenant_id(), customer_id)
    site = create_site(s, customer, json_body(), current_actor())
    s.commit()
    return jsonify(serialize_site(site)), 201


@bp.get("/customers/<int:customer_id>/sites/<int:site_id>")
@api_auth()
def site_detail(customer_id: int, site_id: int):
    s = db_session()
    customer = get_customer_or_404(s, require_tenant_id(), customer_id)
    return jsonify(serialize_site(get_site_or_404(s, customer, site_id)))


@bp.put("/customers/<int:customer_id>/sites/<int:site_id>")
@api_auth("EDIT_CUSTOMER")
def update_customer_site(customer_id: int, site_id: int):
    s = db_session()
    customer = get_customer_or_404(s, require_tenant_id(), customer_id)
    site = update_site(s, get_site_or_404(s, customer, site_id), json_body(), current_actor())
    s.commit()
    return jsonify(serialize_site(site))


@bp.delete("/customers/<int:customer_id>/sites/<int:site_id>")
@api_auth("EDIT_CUSTOMER")
def delete_customer_site(customer_id: int, site_id: int):
    s = db_session()
    customer = get_customer_or_404(s, require_tenant_id(), customer_id)
    message = delete_site(s, get_site_or_404(s, customer, site_id), current_actor())
    s.commit()
    return jsonify({"success": True, "message": message})
