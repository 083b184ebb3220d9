from __future__ import annotations

from flask import Blueprint, jsonify

from app.rental.api import current_actor, json_body
from app.rental.db import db_session
from app.rental.models import Tenant, User
from app.rental.modules.accounts.service import (
    create_user,
    deactivate_user,
    get_user_or_404,
    serialize_tenant,
    serialize_user,
    update_tenant_settings,
    update_user,
)
from app.rental.modules.billing.limits import get_tenant_usage
from app.rental.rbac import api_auth
from app.rental.tenancy import require_tenant_id

bp = Blueprint("accounts_api", __name__)


@bp.get("/users")
@api_auth()
def list_users():
    rows = (
        db_session()
        .query(User)
        .filter(User.tenant_id == require_tenant_id())
        .order_by(User.name.asc(), User.id.asc())
        .all()
    )
    return jsonify([serialize_user(u) for u in rows])


@bp.post("/users")
@api_auth("CREATE_USER")
def create():
    s = db_session()
    user = create_user(s, require_tenant_id(), json_body(), current_actor())
    s.commit()
    return jsonify({"user": serialize_user(user)}), 201


@bp.get("/users/<int:user_id>")
@api_auth()
def detail(user_id: int):
    return jsonify(serialize_user(get_user_or_404(db_session(), require_tenant_id(), user_id)))


@bp.put("/users/<int:user_id>")
@api_auth("EDIT_USER")
def update(user_id: int):
    s = db_session()
    user = get_user_or_404(s, require_tenant_id(), user_id)
    update_user(s, user, json_body(), current_actor())
    s.commit()
    return jsonify({"user": serialize_user(user)})


@bp.delete("/users/<int:user_id>")
@api_auth("DELETE_USER")
def delete(user_id: int):
    s = db_session()
    deactivate_user(s, get_user_or_404(s, require_tenant_id(), user_id), current_actor())
    s.commit()
    return jsonify({"success": True})


@bp.get("/tenant/settings")
@api_auth()
def get_settings():
    return jsonify(serialize_tenant(db_session().get(Tenant, require_tenant_id())))


@bp.put("/tenant/settings")
@api_auth("MANAGE_SETTINGS")
def put_settings():
    s = db_session()
    tenant = s.get(Tenant, require_tenant_id())
    update_tenant_settings(s, tenant, json_body(), current_actor())
    s.commit()
    return jsonify(serialize_tenant(tenant))


@bp.get("/tenant/usage")
@api_auth()
def usage():
    return jsonify(get_tenant_usage(db_session(), require_tenant_id()))
