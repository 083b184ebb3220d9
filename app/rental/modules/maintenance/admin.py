from __future__ import annotations

from flask import Blueprint, flash, g, redirect, render_template, request, url_for

from app.rental.db import db_session
from app.rental.errors import ApiError
from app.rental.modules.equipment.models import Equipment
from app.rental.modules.maintenance.models import (
    MAINTENANCE_STATUS_LABELS,
    MAINTENANCE_STATUSES,
    MAINTENANCE_TYPE_LABELS,
    MAINTENANCE_TYPES,
)
from app.rental.modules.maintenance.service import (
    TRANSITIONS,
    create_maintenance,
    get_maintenance_or_404,
    list_maintenance,
    maintenance_stats,
    update_maintenance,
)
from app.rental.rbac import require_permission

bp = Blueprint("maintenance", __name__)


@bp.get("/maintenance")
@require_permission("VIEW_REPORTS")
def maintenance_list():
    s = db_session()
    tenant_id = g.current_user.tenant_id
    status_filter = (request.args.get("status") or "").strip().upper()
    if status_filter not in MAINTENANCE_STATUSES:
        status_filter = ""
    records = list_maintenance(s, tenant_id, {"status": status_filter})
    equipments = (
        s.query(Equipment)
        .filter(Equipment.tenant_id == tenant_id, Equipment.status != "INACTIVE")
        .order_by(Equipment.name.asc())
        .all()
    )
    return render_template(
        "admin/maintenance/list.html",
        records=records,
        stats=maintenance_stats(records),
        equipments=equipments,
        status_filter=status_filter,
        statuses=MAINTENANCE_STATUSES,
        status_labels=MAINTENANCE_STATUS_LABELS,
        types=MAINTENANCE_TYPES,
        type_labels=MAINTENANCE_TYPE_LABELS,
        transitions=TRANSITIONS,
    )


@bp.post("/maintenance/new")
@require_permission("EDIT_EQUIPMENT")
def maintenance_new_post():
    s = db_session()
    payload = {
        k: request.form.get(k)
        for k in ("equipment_id", "quantity", "type", "description", "scheduled_date", "cost", "vendor", "notes")
        if request.form.get(k)
    }
    try:
        create_maintenance(s, g.current_user.tenant_id, payload, g.current_user)
    except ApiError as e:
        s.rollback()
        flash(e.message, "danger")
        return redirect(url_for("maintenance.maintenance_list"))
    s.commit()
    flash("Manutenção agendada.", "success")
    return redirect(url_for("maintenance.maintenance_list"))


@bp.post("/maintenance/<int:record_id>/status")
@require_permission("EDIT_EQUIPMENT")
def maintenance_status_post(record_id: int):
    s = db_session()
    try:
        record = get_maintenance_or_404(s, g.current_user.tenant_id, record_id)
        payload = {"status": request.form.get("status") or ""}
        if request.form.get("cost"):
            payload["cost"] = request.form.get("cost")
        update_maintenance(s, record, payload, g.current_user)
    except ApiError as e:
        s.rollback()
        flash(e.message, "danger")
        return redirect(url_for("maintenance.maintenance_list"))
    s.commit()
    flash("Manutenção atualizada.", "success")
    return redirect(url_for("maintenance.maintenance_list"))
