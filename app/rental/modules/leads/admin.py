from __future__ import annotations

from flask import Blueprint, flash, g, redirect, render_template, request, url_for

from app.rental.db import db_session
from app.rental.errors import ApiError
from app.rental.modules.leads.models import LEAD_SOURCE_LABELS, LEAD_SOURCES, LEAD_STATUS_LABELS, LEAD_STATUSES, Lead
from app.rental.modules.leads.service import convert_lead, create_lead, get_lead_or_404, leads_by_status, update_lead
from app.rental.rbac import require_permission

bp = Blueprint("leads", __name__)


@bp.get("/leads")
@require_permission("VIEW_REPORTS")
def leads_list():
    s = db_session()
    leads = (
        s.query(Lead)
        .filter(Lead.tenant_id == g.current_user.tenant_id)
        .order_by(Lead.updated_at.desc(), Lead.id.desc())
        .all()
    )
    grouped = leads_by_status(leads)
    pipeline_value = sum(
        (lead.expected_value or 0) for lead in leads if lead.status not in ("WON", "LOST")
    )
    return render_template(
        "admin/leads/list.html",
        grouped=grouped,
        statuses=LEAD_STATUSES,
        status_labels=LEAD_STATUS_LABELS,
        sources=LEAD_SOURCES,
        source_labels=LEAD_SOURCE_LABELS,
        pipeline_value=pipeline_value,
    )


@bp.post("/leads/new")
@require_permission("CREATE_CUSTOMER")
def leads_new_post():
    s = db_session()
    payload = {
        k: request.form.get(k)
        for k in ("name", "company", "email", "phone", "source", "expected_value", "next_action", "next_action_date")
        if request.form.get(k)
    }
    try:
        create_lead(s, g.current_user.tenant_id, payload, g.current_user)
    except ApiError as e:
        s.rollback()
        flash(e.message, "danger")
        return redirect(url_for("leads.leads_list"))
    s.commit()
    flash("Lead criado.", "success")
    return redirect(url_for("leads.leads_list"))


@bp.post("/leads/<int:lead_id>/status")
@require_permission("EDIT_CUSTOMER")
def leads_status_post(lead_id: int):
    s = db_session()
    try:
        lead = get_lead_or_404(s, g.current_user.tenant_id, lead_id)
        update_lead(s, lead, {"status": request.form.get("status")}, g.current_user)
    except ApiError as e:
        s.rollback()
        flash(e.message, "danger")
        return redirect(url_for("leads.leads_list"))
    s.commit()
    return redirect(url_for("leads.leads_list"))


@bp.post("/leads/<int:lead_id>/convert")
@require_permission("CREATE_CUSTOMER")
def leads_convert_post(lead_id: int):
    s = db_session()
    try:
        customer = convert_lead(s, get_lead_or_404(s, g.current_user.tenant_id, lead_id), g.current_user)
    except ApiError as e:
        s.rollback()
        flash(e.message, "danger")
        return redirect(url_for("leads.leads_list"))
    s.commit()
    flash("Lead convertido em cliente.", "success")
    return redirect(url_for("customers.customers_detail", customer_id=customer.id))
