from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.rental.api import current_actor, json_body
from app.rental.db import db_session
from app.rental.errors import ValidationError
from app.rental.modules.leads.models import LEAD_SOURCES, LEAD_STATUSES, Lead, LeadActivity
from app.rental.modules.leads.service import (
    add_activity,
    convert_lead,
    create_lead,
    delete_lead,
    get_lead_or_404,
    serialize_activity_entry,
    serialize_lead,
    update_lead,
)
from app.rental.rbac import api_auth
from app.rental.tenancy import require_tenant_id
from app.rental.utils import parse_int

bp = Blueprint("leads_api", __name__)


@bp.get("/leads")
@api_auth()
def list_leads():
    s = db_session()
    q = s.query(Lead).filter(Lead.tenant_id == require_tenant_id())

    status = (request.args.get("status") or "").strip().upper()
    if status:
        if status not in LEAD_STATUSES:
            raise ValidationError(f"Status inválido: {status}")
        q = q.filter(Lead.status == status)
    source = (request.args.get("source") or "").strip().upper()
    if source:
        if source not in LEAD_SOURCES:
            raise ValidationError(f"Origem inválida: {source}")
        q = q.filter(Lead.source == source)
    assigned_to_id = parse_int(request.args.get("assigned_to_id"), "assigned_to_id")
    if assigned_to_id:
        q = q.filter(Lead.assigned_to_id == assigned_to_id)
    search = (request.args.get("q") or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(
            Lead.name.ilike(like) | Lead.company.ilike(like) | Lead.phone.ilike(like) | Lead.email.ilike(like)
        )

    rows = q.order_by(Lead.updated_at.desc(), Lead.id.desc()).all()
    return jsonify([serialize_lead(lead) for lead in rows])


@bp.post("/leads")
@api_auth("CREATE_CUSTOMER")
def create():
    s = db_session()
    lead = create_lead(s, require_tenant_id(), json_body(), current_actor())
    s.commit()
    return jsonify({"lead": serialize_lead(lead, detail=True)}), 201


@bp.get("/leads/<int:lead_id>")
@api_auth()
def detail(lead_id: int):
    return jsonify(serialize_lead(get_lead_or_404(db_session(), require_tenant_id(), lead_id), detail=True))


@bp.put("/leads/<int:lead_id>")
@api_auth("EDIT_CUSTOMER")
def update(lead_id: int):
    s = db_session()
    lead = get_lead_or_404(s, require_tenant_id(), lead_id)
    update_lead(s, lead, json_body(), current_actor())
    s.commit()
    return jsonify({"lead": serialize_lead(lead, detail=True)})


@bp.delete("/leads/<int:lead_id>")
@api_auth("DELETE_CUSTOMER")
def delete(lead_id: int):
    s = db_session()
    delete_lead(s, get_lead_or_404(s, require_tenant_id(), lead_id), current_actor())
    s.commit()
    return jsonify({"success": True})


@bp.get("/leads/<int:lead_id>/activities")
@api_auth()
def list_activities(lead_id: int):
    s = db_session()
    lead = get_lead_or_404(s, require_tenant_id(), lead_id)
    rows = (
        s.query(LeadActivity)
        .filter(LeadActivity.lead_id == lead.id)
        .order_by(LeadActivity.created_at.desc(), LeadActivity.id.desc())
        .all()
    )
    return jsonify([serialize_activity_entry(a) for a in rows])


@bp.post("/leads/<int:lead_id>/activities")
@api_auth("EDIT_CUSTOMER")
def create_activity(lead_id: int):
    s = db_session()
    lead = get_lead_or_404(s, require_tenant_id(), lead_id)
    activity = add_activity(s, lead, json_body(), current_actor())
    s.commit()
    return jsonify({"activity": serialize_activity_entry(activity)}), 201


@bp.post("/leads/<int:lead_id>/convert")
@api_auth("CREATE_CUSTOMER")
def convert(lead_id: int):
    from app.rental.modules.customers.service import serialize_customer

    s = db_session()
    lead = get_lead_or_404(s, require_tenant_id(), lead_id)
    customer = convert_lead(s, lead, current_actor())
    s.commit()
    return (
        jsonify(
            {
                "success": True,
                "customer": serialize_customer(customer),
                "message": "Lead convertido em cliente com sucesso",
            }
        ),
        201,
    )
