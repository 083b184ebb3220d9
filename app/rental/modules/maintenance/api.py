from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.rental.api import current_actor, json_body
from app.rental.db import db_session
from app.rental.modules.maintenance.service import (
    create_maintenance,
    delete_maintenance,
    get_maintenance_or_404,
    list_maintenance,
    maintenance_stats,
    serialize_maintenance,
    update_maintenance,
)
from app.rental.rbac import api_auth
from app.rental.tenancy import require_tenant_id
from app.rental.utils import parse_date

bp = Blueprint("maintenance_api", __name__)


@bp.get("/maintenance")
@api_auth()
def list_records():
    filters = {
        "equipment_id": request.args.get("equipment_id", type=int),
        "status": request.args.get("status"),
        "type": request.args.get("type"),
        "start_date": parse_date(request.args.get("start_date"), "start_date"),
        "end_date": parse_date(request.args.get("end_date"), "end_date"),
    }
    records = list_maintenance(db_session(), require_tenant_id(), filters)
    return jsonify({"maintenances": [serialize_maintenance(r) for r in records], "stats": maintenance_stats(records)})


@bp.post("/maintenance")
@api_auth("EDIT_EQUIPMENT")
def create():
    s = db_session()
    record = create_maintenance(s, require_tenant_id(), json_body(), current_actor())
    s.commit()
    return jsonify(serialize_maintenance(record)), 201


@bp.get("/maintenance/<int:record_id>")
@api_auth()
def detail(record_id: int):
    return jsonify(serialize_maintenance(get_maintenance_or_404(db_session(), require_tenant_id(), record_id)))


@bp.put("/maintenance/<int:record_id>")
@api_auth("EDIT_EQUIPMENT")
def update(record_id: int):
    s = db_session()
    record = get_maintenance_or_404(s, require_tenant_id(), record_id)
    update_maintenance(s, record, json_body(), current_actor())
    s.commit()
    return jsonify(serialize_maintenance(record))


@bp.delete("/maintenance/<int:record_id>")
@api_auth("EDIT_EQUIPMENT")
def delete(record_id: int):
    s = db_session()
    record = get_maintenance_or_404(s, require_tenant_id(), record_id)
    delete_maintenance(s, record, current_actor())
    s.commit()
    return jsonify({"success": True})
