from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, flash, g, jsonify, redirect, render_template, request, session, url_for
from werkzeug.security import check_password_hash

from app.rental.activity import record_activity
from app.rental.api import json_body
from app.rental.db import db_session
from app.rental.errors import ValidationError
from app.rental.models import User
from app.rental.security import bearer_token, hash_api_key
from app.rental.tenancy import resolve_tenant_from_host, tenant_url

bp = Blueprint("auth", __name__)
api_bp = Blueprint("auth_api", __name__)

_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds

_PUBLIC_PREFIXES = ("/static/", "/health", "/healthz")


def _check_rate_limit(ip: str) -> bool:
    now = datetime.utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    _login_attempts[ip] = [t for t in _login_attempts[ip] if t > cutoff]
    return len(_login_attempts[ip]) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(datetime.utcnow())


def _load_api_key(token: str) -> None:
    from app.rental.modules.integrations.models import ApiKey

    s = db_session()
    api_key = s.query(ApiKey).filter(ApiKey.key_hash == hash_api_key(token)).one_or_none()
    if not api_key or not api_key.active:
        return
    if api_key.expires_at and api_key.expires_at < datetime.utcnow():
        return
    if not api_key.tenant or not api_key.tenant.active:
        return
    api_key.last_used_at = datetime.utcnow()
    s.commit()
    g.api_key = api_key


def load_current_user() -> None:
    """
    Loads the request principal: g.current_user from the signed session cookie,
    or g.api_key from an `Authorization: Bearer sk_live_...` header.
    Also assigns a per-request request_id (for activity/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    g.current_user = None
    g.api_key = None
    if request.path.startswith(_PUBLIC_PREFIXES):
        return

    token = bearer_token(request)
    if token:
        try:
            _load_api_key(token)
        except Exception as e:
            current_app.logger.error("API key lookup failed (request_id=%s): %s", g.request_id, e)
            raise
        return

    user_id = session.get("user_id")
    if not user_id:
        return

    s = db_session()
    user = s.get(User, int(user_id))
    if not user or not user.is_active:
        session.pop("user_id", None)
        return
    if user.role != "SUPER_ADMIN" and not user.tenant.active:
        session.pop("user_id", None)
        return
    g.current_user = user


def authenticate(s, email: str, password: str, host: str) -> User | None:
    """
    Credential check. When the request comes in through a tenant subdomain or
    custom domain, only that tenant's users (and super admins) may sign in.
    """
    user = s.query(User).filter(User.email == email).one_or_none()
    if not user or not user.is_active or not check_password_hash(user.password_hash, password):
        return None
    if user.role == "SUPER_ADMIN":
        return user
    if not user.tenant.active:
        return None
    host_tenant = resolve_tenant_from_host(s, host, current_app.config.get("ROOT_DOMAIN") or "")
    if host_tenant is not None and host_tenant.id != user.tenant_id:
        return None
    return user


@bp.get("/login")
def login_get():
    nxt = (request.args.get("next") or "").strip()
    return render_template("auth/login.html", next=nxt)


@bp.post("/login")
def login_post():
    email = (request.form.get("email") or "").strip().lower()
    password = request.form.get("password") or ""
    nxt = (request.form.get("next") or "").strip()
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        flash("Muitas tentativas de login. Aguarde 5 minutos.", "danger")
        return redirect(url_for("auth.login_get"))

    _record_attempt(ip)

    try:
        s = db_session()
        user = authenticate(s, email, password, request.host)
        if not user:
            known = s.query(User).filter(User.email == email).one_or_none()
            if known:
                record_activity(
                    s,
                    tenant_id=known.tenant_id,
                    actor=None,
                    action="LOGIN_FAILED",
                    entity="USER",
                    entity_id=known.id,
                    description=f"Falha de login para {email}",
                )
                s.commit()
            else:
                current_app.logger.warning("Login failed for unknown email=%s ip=%s", email, ip)
            flash("Credenciais inválidas.", "danger")
            return redirect(url_for("auth.login_get"))

        session["user_id"] = user.id
        _login_attempts[ip].clear()
        user.last_login_at = datetime.utcnow()
        record_activity(
            s,
            tenant_id=user.tenant_id,
            actor=user,
            action="LOGIN",
            entity="USER",
            entity_id=user.id,
            description=f"Usuário {user.name} entrou no sistema",
        )
        s.commit()
        # Optional "next" redirect (only allow local paths to avoid open redirects).
        if nxt.startswith("/") and not nxt.startswith("//"):
            return redirect(nxt)
        return redirect(url_for("admin.index"))
    except Exception:
        current_app.logger.exception("Login POST crashed (email=%s request_id=%s)", email, getattr(g, "request_id", None))
        raise


@bp.get("/logout")
def logout():
    s = db_session()
    user = getattr(g, "current_user", None)
    if user:
        record_activity(
            s,
            tenant_id=user.tenant_id,
            actor=user,
            action="LOGOUT",
            entity="USER",
            entity_id=user.id,
            description=f"Usuário {user.name} saiu do sistema",
        )
        s.commit()
    session.pop("user_id", None)
    return redirect(url_for("routes.index"))


# ---------- Public JSON endpoints (/api/auth) ----------
@api_bp.post("/register")
def register():
    from app.rental.modules.accounts.service import register_tenant

    s = db_session()
    tenant, user = register_tenant(s, json_body())
    s.commit()

    return (
        jsonify(
            {
                "success": True,
                "message": "Conta criada com sucesso!",
                "tenant": {"id": tenant.id, "slug": tenant.slug, "name": tenant.name},
                "user": {"id": user.id, "name": user.name, "email": user.email},
                "login_url": tenant_url(tenant, "/auth/login"),
            }
        ),
        201,
    )


_RESET_MESSAGE = "Se o email existir, você receberá instruções de reset"


@api_bp.post("/forgot-password")
def forgot_password():
    from app.rental.mailer import send_email
    from app.rental.modules.accounts.service import request_password_reset

    payload = json_body()
    email = (payload.get("email") or "").strip().lower()
    if not email:
        raise ValidationError("Email é obrigatório")

    s = db_session()
    result = request_password_reset(s, email)
    s.commit()
    if result is not None:
        user, token = result
        root = current_app.config.get("ROOT_DOMAIN") or "localhost:5000"
        scheme = "https" if (current_app.config.get("ENV") or "").lower() in ("prod", "production") else "http"
        reset_url = f"{scheme}://{root}/auth/reset-password?token={token}"
        send_email(
            current_app.config,
            to=user.email,
            subject="Redefinição de senha",
            body=(
                f"Olá {user.name},\n\n"
                f"Para redefinir sua senha acesse: {reset_url}\n"
                "O link expira em 1 hora.\n"
            ),
        )
    return jsonify({"success": True, "message": _RESET_MESSAGE})


@api_bp.get("/reset-password")
def reset_password_check():
    from app.rental.modules.accounts.service import find_valid_reset_token

    token = (request.args.get("token") or "").strip()
    if not token:
        return jsonify({"valid": False, "error": "Token não fornecido"}), 400
    reset = find_valid_reset_token(db_session(), token)
    if not reset:
        return jsonify({"valid": False, "error": "Link inválido ou expirado"})
    return jsonify({"valid": True, "user_name": reset.user.name, "user_email": reset.user.email})


@api_bp.post("/reset-password")
def reset_password():
    from app.rental.modules.accounts.service import reset_password as do_reset

    payload = json_body()
    s = db_session()
    user = do_reset(s, payload.get("token"), payload.get("password"))
    s.commit()
    return jsonify({"success": True, "message": "Senha alterada com sucesso!", "tenant_slug": user.tenant.slug})


# ---------- Password reset page (link target from the reset email) ----------
@bp.get("/reset-password")
def reset_password_page():
    token = (request.args.get("token") or "").strip()
    return render_template("auth/reset_password.html", token=token)


@bp.post("/reset-password")
def reset_password_page_post():
    from app.rental.errors import ApiError
    from app.rental.modules.accounts.service import reset_password as do_reset

    token = (request.form.get("token") or "").strip()
    s = db_session()
    try:
        do_reset(s, token, request.form.get("password"))
    except ApiError as e:
        s.rollback()
        flash(e.message, "danger")
        return redirect(url_for("auth.reset_password_page", token=token))
    s.commit()
    flash("Senha alterada com sucesso!", "success")
    return redirect(url_for("auth.login_get"))
