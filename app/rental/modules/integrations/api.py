from __future__ import annotations

from flask import Blueprint, current_app, jsonify

from app.rental.api import current_actor, json_body
from app.rental.db import db_session
from app.rental.modules.integrations.cep import lookup_cep
from app.rental.modules.integrations.cnpj import lookup_cnpj, situacao_color
from app.rental.modules.integrations.models import ApiKey
from app.rental.modules.integrations.service import (
    create_api_key,
    get_api_key_or_404,
    revoke_api_key,
    serialize_api_key,
    set_api_key_active,
)
from app.rental.rbac import api_auth, principal_permissions
from app.rental.tenancy import require_tenant_id

bp = Blueprint("integrations_api", __name__)


@bp.get("/integrations/api-keys")
@api_auth("MANAGE_INTEGRATIONS")
def list_api_keys():
    rows = (
        db_session()
        .query(ApiKey)
        .filter(ApiKey.tenant_id == require_tenant_id())
        .order_by(ApiKey.created_at.desc(), ApiKey.id.desc())
        .all()
    )
    return jsonify([serialize_api_key(k) for k in rows])


@bp.post("/integrations/api-keys")
@api_auth("MANAGE_INTEGRATIONS")
def create():
    s = db_session()
    actor = current_actor()
    api_key, key = create_api_key(
        s,
        require_tenant_id(),
        json_body(),
        actor,
        grantor_permissions=principal_permissions(),
        grantor_is_key=actor is None,
    )
    s.commit()
    return (
        jsonify(
            {
                **serialize_api_key(api_key),
                "key": key,
                "message": "Guarde esta chave em local seguro. Ela não será exibida novamente.",
            }
        ),
        201,
    )


@bp.patch("/integrations/api-keys/<int:key_id>")
@api_auth("MANAGE_INTEGRATIONS")
def toggle(key_id: int):
    s = db_session()
    api_key = get_api_key_or_404(s, require_tenant_id(), key_id)
    set_api_key_active(
        s, api_key, json_body().get("active"), current_actor(), grantor_permissions=principal_permissions()
    )
    s.commit()
    return jsonify(serialize_api_key(api_key))


@bp.delete("/integrations/api-keys/<int:key_id>")
@api_auth("MANAGE_INTEGRATIONS")
def revoke(key_id: int):
    s = db_session()
    revoke_api_key(s, get_api_key_or_404(s, require_tenant_id(), key_id), current_actor())
    s.commit()
    return jsonify({"success": True})


@bp.get("/cep/<cep>")
@api_auth()
def cep(cep: str):
    return jsonify(lookup_cep(cep, timeout_seconds=current_app.config.get("LOOKUP_TIMEOUT_SECONDS", 10)))


@bp.get("/cnpj/<cnpj>")
@api_auth()
def cnpj(cnpj: str):
    data = lookup_cnpj(cnpj, timeout_seconds=current_app.config.get("LOOKUP_TIMEOUT_SECONDS", 10))
    data["situacao_color"] = situacao_color(data.get("situacao_cadastral"))
    return jsonify(data)
