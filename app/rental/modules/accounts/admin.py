from __future__ import annotations

from flask import Blueprint, flash, g, redirect, render_template, request, url_for

from app.rental.db import db_session
from app.rental.errors import ApiError
from app.rental.models import Tenant, User
from app.rental.modules.accounts.service import (
    create_user,
    deactivate_user,
    get_user_or_404,
    update_tenant_settings,
    update_user,
)
from app.rental.modules.billing.limits import get_tenant_usage
from app.rental.rbac import ROLE_LABELS, ROLES, require_permission

bp = Blueprint("accounts", __name__)

_SETTINGS_FIELDS = ("name", "email", "phone", "domain", "cnpj", "inscricao_municipal", "codigo_municipio")


@bp.get("/users")
@require_permission("CREATE_USER")
def users_list():
    s = db_session()
    users = s.query(User).filter(User.tenant_id == g.current_user.tenant_id).order_by(User.name.asc()).all()
    return render_template(
        "admin/users/list.html",
        users=users,
        roles=[r for r in ROLES if r != "SUPER_ADMIN"],
        role_labels=ROLE_LABELS,
        usage=get_tenant_usage(s, g.current_user.tenant_id),
    )


@bp.post("/users/new")
@require_permission("CREATE_USER")
def users_new_post():
    s = db_session()
    payload = {k: request.form.get(k) for k in ("name", "email", "password", "role")}
    if payload["password"] != (request.form.get("password_confirm") or ""):
        flash("As senhas não conferem.", "danger")
        return redirect(url_for("accounts.users_list"))
    try:
        user = create_user(s, g.current_user.tenant_id, payload, g.current_user)
    except ApiError as e:
        s.rollback()
        flash(e.message, "danger")
        return redirect(url_for("accounts.users_list"))
    s.commit()
    flash(f"Usuário {user.email} criado.", "success")
    return redirect(url_for("accounts.users_list"))


@bp.post("/users/<int:user_id>/update")
@require_permission("EDIT_USER")
def users_update_post(user_id: int):
    s = db_session()
    payload = {"role": request.form.get("role"), "is_active": request.form.get("is_active") == "1"}
    try:
        user = get_user_or_404(s, g.current_user.tenant_id, user_id)
        update_user(s, user, payload, g.current_user)
    except ApiError as e:
        s.rollback()
        flash(e.message, "danger")
        return redirect(url_for("accounts.users_list"))
    s.commit()
    flash(f"Usuário {user.email} atualizado.", "success")
    return redirect(url_for("accounts.users_list"))


@bp.post("/users/<int:user_id>/delete")
@require_permission("DELETE_USER")
def users_delete_post(user_id: int):
    s = db_session()
    try:
        deactivate_user(s, get_user_or_404(s, g.current_user.tenant_id, user_id), g.current_user)
    except ApiError as e:
        s.rollback()
        flash(e.message, "danger")
        return redirect(url_for("accounts.users_list"))
    s.commit()
    flash("Usuário desativado.", "success")
    return redirect(url_for("accounts.users_list"))


@bp.get("/settings")
@require_permission("MANAGE_SETTINGS")
def settings_get():
    s = db_session()
    tenant = s.get(Tenant, g.current_user.tenant_id)
    return render_template("admin/settings.html", tenant=tenant)


@bp.post("/settings")
@require_permission("MANAGE_SETTINGS")
def settings_post():
    s = db_session()
    tenant = s.get(Tenant, g.current_user.tenant_id)
    payload = {k: request.form.get(k) for k in _SETTINGS_FIELDS if k in request.form}
    try:
        update_tenant_settings(s, tenant, payload, g.current_user)
    except ApiError as e:
        s.rollback()
        flash(e.message, "danger")
        return redirect(url_for("accounts.settings_get"))
    s.commit()
    flash("Configurações salvas.", "success")
    return redirect(url_for("accounts.settings_get"))
