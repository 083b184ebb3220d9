from __future__ import annotations

from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for

from app.rental.db import db_session
from app.rental.errors import ApiError
from app.rental.modules.equipment.models import Equipment
from app.rental.modules.stock.models import MOVEMENT_LABELS, StockMovement
from app.rental.modules.stock.service import (
    adjust_stock,
    record_movement,
    stock_alerts,
    stock_metrics,
    stock_overview,
)
from app.rental.rbac import require_permission

bp = Blueprint("stock", __name__)


def _tenant_equipment(s, equipment_id: int) -> Equipment:
    equipment = s.get(Equipment, equipment_id)
    if not equipment or equipment.tenant_id != g.current_user.tenant_id:
        abort(404)
    return equipment


@bp.get("/stock")
@require_permission("VIEW_REPORTS")
def stock_index():
    s = db_session()
    tenant_id = g.current_user.tenant_id
    return render_template(
        "admin/stock/index.html",
        overview=stock_overview(s, tenant_id),
        alerts=stock_alerts(s, tenant_id),
    )


@bp.get("/stock/<int:equipment_id>")
@require_permission("VIEW_REPORTS")
def stock_detail(equipment_id: int):
    s = db_session()
    equipment = _tenant_equipment(s, equipment_id)
    movements = (
        s.query(StockMovement)
        .filter(StockMovement.equipment_id == equipment.id)
        .order_by(StockMovement.created_at.desc(), StockMovement.id.desc())
        .limit(50)
        .all()
    )
    return render_template(
        "admin/stock/detail.html",
        equipment=equipment,
        metrics=stock_metrics(equipment),
        movements=movements,
        movement_labels=MOVEMENT_LABELS,
    )


@bp.post("/stock/<int:equipment_id>/movement")
@require_permission("EDIT_EQUIPMENT")
def stock_movement_post(equipment_id: int):
    s = db_session()
    equipment = _tenant_equipment(s, equipment_id)
    try:
        if request.form.get("new_total_stock"):
            adjust_stock(s, equipment, request.form.get("new_total_stock"), request.form.get("reason"), actor=g.current_user)
        else:
            record_movement(
                s,
                equipment,
                request.form.get("type") or "",
                request.form.get("quantity"),
                actor=g.current_user,
                reason=request.form.get("reason"),
            )
    except ApiError as e:
        s.rollback()
        flash(e.message, "danger")
        return redirect(url_for("stock.stock_detail", equipment_id=equipment_id))
    s.commit()
    flash("Movimentação registrada.", "success")
    return redirect(url_for("stock.stock_detail", equipment_id=equipment_id))
