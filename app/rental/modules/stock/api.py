from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.rental.api import current_actor, json_body, page_args, pagination
from app.rental.db import db_session
from app.rental.errors import ValidationError
from app.rental.modules.equipment.service import get_equipment_or_404
from app.rental.modules.stock.models import MOVEMENT_TYPES, StockMovement
from app.rental.modules.stock.service import (
    adjust_stock,
    check_availability,
    low_stock,
    movement_summary,
    record_movement,
    serialize_counters,
    serialize_movement,
    stock_alerts,
    stock_metrics,
    stock_overview,
)
from app.rental.rbac import api_auth
from app.rental.tenancy import require_tenant_id
from app.rental.utils import clean_str, parse_date, parse_int

bp = Blueprint("stock_api", __name__)


@bp.get("/stock")
@api_auth()
def overview():
    return jsonify(stock_overview(db_session(), require_tenant_id()))


@bp.get("/stock/alerts")
@api_auth()
def alerts():
    return jsonify(stock_alerts(db_session(), require_tenant_id()))


@bp.get("/stock/low-stock")
@api_auth()
def low_stock_list():
    items = low_stock(db_session(), require_tenant_id())
    return jsonify({"items": items, "total": len(items)})


@bp.get("/stock/<int:equipment_id>")
@api_auth()
def detail(equipment_id: int):
    s = db_session()
    equipment = get_equipment_or_404(s, require_tenant_id(), equipment_id)
    recent = (
        s.query(StockMovement)
        .filter(StockMovement.equipment_id == equipment.id)
        .order_by(StockMovement.created_at.desc(), StockMovement.id.desc())
        .limit(10)
        .all()
    )
    return jsonify(
        {
            "equipment": serialize_counters(equipment),
            "metrics": stock_metrics(equipment),
            "recent_movements": [serialize_movement(m) for m in recent],
        }
    )


@bp.post("/stock/<int:equipment_id>/movement")
@api_auth("EDIT_EQUIPMENT")
def create_movement(equipment_id: int):
    s = db_session()
    payload = json_body()
    equipment = get_equipment_or_404(s, require_tenant_id(), equipment_id)
    if not payload.get("type"):
        raise ValidationError("Tipo de movimentação é obrigatório")
    movement = record_movement(
        s,
        equipment,
        str(payload.get("type")),
        payload.get("quantity"),
        actor=current_actor(),
        reason=clean_str(payload.get("reason")),
        booking_id=parse_int(payload.get("booking_id"), "booking_id"),
    )
    s.commit()
    return jsonify({"success": True, "movement": serialize_movement(movement), "equipment": serialize_counters(equipment)}), 201


@bp.get("/stock/<int:equipment_id>/movements")
@api_auth()
def list_movements(equipment_id: int):
    s = db_session()
    equipment = get_equipment_or_404(s, require_tenant_id(), equipment_id)
    page, limit = page_args(default_limit=20)
    movement_type = (request.args.get("type") or "").strip().upper()

    q = s.query(StockMovement).filter(StockMovement.equipment_id == equipment.id)
    if movement_type:
        if movement_type not in MOVEMENT_TYPES:
            raise ValidationError(f"Tipo de movimentação inválido: {movement_type}")
        q = q.filter(StockMovement.type == movement_type)

    total = q.count()
    rows = (
        q.order_by(StockMovement.created_at.desc(), StockMovement.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return jsonify(
        {
            "movements": [serialize_movement(m) for m in rows],
            "pagination": pagination(page, limit, total),
            "summary": movement_summary(s, equipment.id),
        }
    )


@bp.post("/stock/<int:equipment_id>/adjust")
@api_auth("EDIT_EQUIPMENT")
def adjust(equipment_id: int):
    s = db_session()
    payload = json_body()
    equipment = get_equipment_or_404(s, require_tenant_id(), equipment_id)
    previous_total = equipment.total_stock
    if payload.get("new_total_stock") is None:
        raise ValidationError("new_total_stock é obrigatório")
    movement = adjust_stock(s, equipment, payload.get("new_total_stock"), payload.get("reason"), actor=current_actor())
    s.commit()
    return jsonify(
        {
            "success": True,
            "message": f"Estoque ajustado de {previous_total} para {equipment.total_stock} unidades",
            "movement": serialize_movement(movement),
            "equipment": serialize_counters(equipment),
        }
    )


@bp.get("/stock/<int:equipment_id>/availability")
@api_auth()
def availability(equipment_id: int):
    s = db_session()
    equipment = get_equipment_or_404(s, require_tenant_id(), equipment_id)
    start = parse_date(request.args.get("start_date"), "start_date")
    end = parse_date(request.args.get("end_date"), "end_date")
    if not start or not end:
        raise ValidationError("start_date e end_date são obrigatórios")
    quantity = parse_int(request.args.get("quantity"), "quantity") or 1
    exclude = parse_int(request.args.get("exclude_booking_id"), "exclude_booking_id")
    return jsonify(check_availability(s, equipment, start, end, quantity, exclude))
