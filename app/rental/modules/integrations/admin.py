from __future__ import annotations

from flask import Blueprint, flash, g, redirect, render_template, request, session, url_for

from app.rental.db import db_session
from app.rental.errors import ApiError
from app.rental.modules.integrations.models import ApiKey
from app.rental.modules.integrations.service import (
    create_api_key,
    get_api_key_or_404,
    revoke_api_key,
    set_api_key_active,
)
from app.rental.rbac import PERMISSIONS, principal_permissions, require_permission

bp = Blueprint("integrations", __name__)


@bp.get("/integrations")
@require_permission("MANAGE_INTEGRATIONS")
def integrations_index():
    s = db_session()
    keys = (
        s.query(ApiKey)
        .filter(ApiKey.tenant_id == g.current_user.tenant_id)
        .order_by(ApiKey.created_at.desc(), ApiKey.id.desc())
        .all()
    )
    # Full key is shown once, right after creation.
    new_key = session.pop("new_api_key", None)
    return render_template("admin/integrations/index.html", keys=keys, new_key=new_key, permissions=PERMISSIONS)


@bp.post("/integrations/api-keys")
@require_permission("MANAGE_INTEGRATIONS")
def api_keys_create_post():
    s = db_session()
    payload = {
        "name": request.form.get("name"),
        "permissions": request.form.getlist("permissions"),
        "expires_at": request.form.get("expires_at"),
    }
    try:
        _api_key, key = create_api_key(
            s, g.current_user.tenant_id, payload, g.current_user, grantor_permissions=principal_permissions()
        )
    except ApiError as e:
        s.rollback()
        flash(e.message, "danger")
        return redirect(url_for("integrations.integrations_index"))
    s.commit()
    session["new_api_key"] = key
    flash("Chave de API criada. Copie-a agora: ela não será exibida novamente.", "success")
    return redirect(url_for("integrations.integrations_index"))


@bp.post("/integrations/api-keys/<int:key_id>/toggle")
@require_permission("MANAGE_INTEGRATIONS")
def api_keys_toggle_post(key_id: int):
    s = db_session()
    try:
        api_key = get_api_key_or_404(s, g.current_user.tenant_id, key_id)
        set_api_key_active(
            s, api_key, not api_key.active, g.current_user, grantor_permissions=principal_permissions()
        )
    except ApiError as e:
        s.rollback()
        flash(e.message, "danger")
        return redirect(url_for("integrations.integrations_index"))
    s.commit()
    return redirect(url_for("integrations.integrations_index"))


@bp.post("/integrations/api-keys/<int:key_id>/delete")
@require_permission("MANAGE_INTEGRATIONS")
def api_keys_delete_post(key_id: int):
    s = db_session()
    try:
        revoke_api_key(s, get_api_key_or_404(s, g.current_user.tenant_id, key_id), g.current_user)
    except ApiError as e:
        s.rollback()
        flash(e.message, "danger")
        return redirect(url_for("integrations.integrations_index"))
    s.commit()
    flash("Chave de API revogada.", "success")
    return redirect(url_for("integrations.integrations_index"))
