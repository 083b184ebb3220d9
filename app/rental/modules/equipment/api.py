from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request, send_file

from app.rental.api import current_actor, json_body
from app.rental.db import db_session
from app.rental.errors import ValidationError
from app.rental.modules.equipment.models import Equipment
from app.rental.modules.equipment.service import (
    add_cost,
    create_equipment,
    delete_cost,
    delete_equipment,
    get_equipment_or_404,
    image_key_or_404,
    quote_equipment,
    remove_image,
    serialize_cost,
    serialize_equipment,
    update_equipment,
    upload_image,
)
from app.rental.rbac import api_auth
from app.rental.storage import guess_content_type, storage_from_config
from app.rental.tenancy import require_tenant_id
from app.rental.utils import parse_int

bp = Blueprint("equipment_api", __name__)


@bp.get("/equipment")
@api_auth()
def list_equipment():
    s = db_session()
    q = s.query(Equipment).filter(Equipment.tenant_id == require_tenant_id())

    status = (request.args.get("status") or "").strip().upper()
    category = (request.args.get("category") or "").strip()
    search = (request.args.get("q") or "").strip()
    if status:
        q = q.filter(Equipment.status == status)
    if category:
        q = q.filter(Equipment.category == category)
    if search:
        like = f"%{search}%"
        q = q.filter((Equipment.name.ilike(like)) | (Equipment.description.ilike(like)) | (Equipment.category.ilike(like)))

    rows = q.order_by(Equipment.created_at.desc(), Equipment.id.desc()).all()
    return jsonify([serialize_equipment(e) for e in rows])


@bp.post("/equipment")
@api_auth("CREATE_EQUIPMENT")
def create():
    s = db_session()
    equipment = create_equipment(s, require_tenant_id(), json_body(), current_actor())
    s.commit()
    return jsonify(serialize_equipment(equipment, detail=True)), 201


@bp.get("/equipment/<int:equipment_id>")
@api_auth()
def detail(equipment_id: int):
    s = db_session()
    equipment = get_equipment_or_404(s, require_tenant_id(), equipment_id)
    return jsonify(serialize_equipment(equipment, detail=True))


@bp.put("/equipment/<int:equipment_id>")
@api_auth("EDIT_EQUIPMENT")
def update(equipment_id: int):
    s = db_session()
    equipment = get_equipment_or_404(s, require_tenant_id(), equipment_id)
    update_equipment(s, equipment, json_body(), current_actor())
    s.commit()
    return jsonify(serialize_equipment(equipment, detail=True))


@bp.delete("/equipment/<int:equipment_id>")
@api_auth("DELETE_EQUIPMENT")
def delete(equipment_id: int):
    s = db_session()
    equipment = get_equipment_or_404(s, require_tenant_id(), equipment_id)
    delete_equipment(s, equipment, current_actor())
    s.commit()
    return jsonify({"success": True})


@bp.get("/equipment/<int:equipment_id>/costs")
@api_auth()
def list_costs(equipment_id: int):
    s = db_session()
    equipment = get_equipment_or_404(s, require_tenant_id(), equipment_id)
    costs = [serialize_cost(c) for c in equipment.costs]
    return jsonify({"costs": costs, "total": round(sum(c["amount"] for c in costs), 2)})


@bp.post("/equipment/<int:equipment_id>/costs")
@api_auth("EDIT_EQUIPMENT")
def create_cost(equipment_id: int):
    s = db_session()
    equipment = get_equipment_or_404(s, require_tenant_id(), equipment_id)
    cost = add_cost(s, equipment, json_body(), current_actor())
    s.commit()
    return jsonify(serialize_cost(cost)), 201


@bp.delete("/equipment/<int:equipment_id>/costs/<int:cost_id>")
@api_auth("EDIT_EQUIPMENT")
def remove_cost(equipment_id: int, cost_id: int):
    s = db_session()
    equipment = get_equipment_or_404(s, require_tenant_id(), equipment_id)
    delete_cost(s, equipment, cost_id, current_actor())
    s.commit()
    return jsonify({"success": True})


@bp.get("/equipment/<int:equipment_id>/quote")
@api_auth()
def quote(equipment_id: int):
    s = db_session()
    equipment = get_equipment_or_404(s, require_tenant_id(), equipment_id)
    days = parse_int(request.args.get("days"), "days")
    if days is None:
        raise ValidationError("Parâmetro 'days' é obrigatório")
    quantity = parse_int(request.args.get("quantity"), "quantity") or 1
    return jsonify(quote_equipment(equipment, days, quantity))


@bp.post("/equipment/<int:equipment_id>/images")
@api_auth("EDIT_EQUIPMENT")
def upload(equipment_id: int):
    s = db_session()
    equipment = get_equipment_or_404(s, require_tenant_id(), equipment_id)
    f = request.files.get("file")
    if not f or not f.filename:
        raise ValidationError("Arquivo é obrigatório (campo 'file')")
    key = upload_image(
        s,
        storage_from_config(current_app.config),
        equipment,
        f.read(),
        f.filename,
        f.mimetype,
        current_actor(),
    )
    s.commit()
    return jsonify({"key": key, "images": equipment.images}), 201


@bp.get("/equipment/<int:equipment_id>/images/<path:key>")
@api_auth()
def download_image(equipment_id: int, key: str):
    s = db_session()
    equipment = get_equipment_or_404(s, require_tenant_id(), equipment_id)
    image_key_or_404(equipment, key)
    fobj = storage_from_config(current_app.config).open(key)
    return send_file(fobj, mimetype=guess_content_type(key), download_name=key.rsplit("/", 1)[-1], max_age=3600)


@bp.delete("/equipment/<int:equipment_id>/images/<path:key>")
@api_auth("EDIT_EQUIPMENT")
def delete_image(equipment_id: int, key: str):
    s = db_session()
    equipment = get_equipment_or_404(s, require_tenant_id(), equipment_id)
    remove_image(s, storage_from_config(current_app.config), equipment, key, current_actor())
    s.commit()
    return jsonify({"images": equipment.images})
