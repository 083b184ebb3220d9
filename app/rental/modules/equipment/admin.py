from __future__ import annotations

from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for

from app.rental.db import db_session
from app.rental.errors import ApiError
from app.rental.modules.equipment.models import EQUIPMENT_STATUSES, Equipment
from app.rental.modules.equipment.service import create_equipment, update_equipment
from app.rental.modules.stock.models import MOVEMENT_LABELS, StockMovement
from app.rental.rbac import require_permission

bp = Blueprint("equipment", __name__)

_FORM_FIELDS = (
    "name",
    "description",
    "category",
    "price_per_day",
    "price_per_hour",
    "min_stock_level",
    "unit_cost",
)


def _tenant_equipment(s, equipment_id: int) -> Equipment:
    equipment = s.get(Equipment, equipment_id)
    if not equipment or equipment.tenant_id != g.current_user.tenant_id:
        abort(404)
    return equipment


def _form_payload() -> dict:
    return {k: request.form.get(k) for k in _FORM_FIELDS if k in request.form}


# ---------- List ----------
@bp.get("/equipment")
@require_permission("VIEW_REPORTS")
def equipment_list():
    s = db_session()

    search = (request.args.get("q") or "").strip()
    status_filter = (request.args.get("status") or "").strip().upper()
    page = request.args.get("page", 1, type=int) or 1
    per_page = 50

    q = s.query(Equipment).filter(Equipment.tenant_id == g.current_user.tenant_id)
    if search:
        like = f"%{search}%"
        q = q.filter((Equipment.name.ilike(like)) | (Equipment.category.ilike(like)))
    if status_filter:
        q = q.filter(Equipment.status == status_filter)

    total = q.count()
    equipment = q.order_by(Equipment.name.asc()).offset((page - 1) * per_page).limit(per_page).all()
    total_pages = (total + per_page - 1) // per_page

    def build_url(p):
        args = dict(request.args)
        args["page"] = p
        return url_for("equipment.equipment_list", **args)

    return render_template(
        "admin/equipment/list.html",
        equipment=equipment,
        search=search,
        status_filter=status_filter,
        statuses=EQUIPMENT_STATUSES,
        page=page,
        total=total,
        total_pages=total_pages,
        build_url=build_url,
    )


# ---------- New ----------
@bp.get("/equipment/new")
@require_permission("CREATE_EQUIPMENT")
def equipment_new_get():
    return render_template("admin/equipment/new.html")


@bp.post("/equipment/new")
@require_permission("CREATE_EQUIPMENT")
def equipment_new_post():
    s = db_session()
    payload = _form_payload()
    payload["quantity"] = request.form.get("quantity") or 1
    try:
        equipment = create_equipment(s, g.current_user.tenant_id, payload, g.current_user)
    except ApiError as e:
        s.rollback()
        flash(e.message, "danger")
        return redirect(url_for("equipment.equipment_new_get"))
    s.commit()
    flash("Equipamento criado.", "success")
    return redirect(url_for("equipment.equipment_detail", equipment_id=equipment.id))


# ---------- Detail ----------
@bp.get("/equipment/<int:equipment_id>")
@require_permission("VIEW_REPORTS")
def equipment_detail(equipment_id: int):
    s = db_session()
    equipment = _tenant_equipment(s, equipment_id)
    movements = (
        s.query(StockMovement)
        .filter(StockMovement.equipment_id == equipment.id)
        .order_by(StockMovement.created_at.desc(), StockMovement.id.desc())
        .limit(10)
        .all()
    )
    return render_template(
        "admin/equipment/detail.html",
        equipment=equipment,
        movements=movements,
        movement_labels=MOVEMENT_LABELS,
    )


# ---------- Edit ----------
@bp.get("/equipment/<int:equipment_id>/edit")
@require_permission("EDIT_EQUIPMENT")
def equipment_edit_get(equipment_id: int):
    s = db_session()
    equipment = _tenant_equipment(s, equipment_id)
    return render_template("admin/equipment/edit.html", equipment=equipment, statuses=EQUIPMENT_STATUSES)


@bp.post("/equipment/<int:equipment_id>/edit")
@require_permission("EDIT_EQUIPMENT")
def equipment_edit_post(equipment_id: int):
    s = db_session()
    equipment = _tenant_equipment(s, equipment_id)
    payload = _form_payload()
    if request.form.get("status"):
        payload["status"] = request.form.get("status")
    try:
        update_equipment(s, equipment, payload, g.current_user)
    except ApiError as e:
        s.rollback()
        flash(e.message, "danger")
        return redirect(url_for("equipment.equipment_edit_get", equipment_id=equipment_id))
    s.commit()
    flash("Equipamento atualizado.", "success")
    return redirect(url_for("equipment.equipment_detail", equipment_id=equipment_id))
