import logging
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, jsonify, render_template, request, session

from app.rental.config import load_config
from app.rental.db import init_db, teardown_db_session
from app.rental.errors import ApiError
from app.rental.error_tracking import init_error_tracking
from app.rental.routes import bp as routes_bp
from app.rental.auth import api_bp as auth_api_bp, bp as auth_bp, load_current_user
from app.rental.admin import bp as admin_bp
from app.rental.modules.accounts.admin import bp as accounts_bp
from app.rental.modules.accounts.api import bp as accounts_api_bp
from app.rental.modules.billing.admin import bp as billing_bp
from app.rental.modules.billing.api import bp as billing_api_bp
from app.rental.modules.bookings.admin import bp as bookings_bp
from app.rental.modules.bookings.api import bp as bookings_api_bp
from app.rental.modules.customers.admin import bp as customers_bp
from app.rental.modules.customers.api import bp as customers_api_bp
from app.rental.modules.dashboard.admin import bp as dashboard_bp
from app.rental.modules.dashboard.api import bp as dashboard_api_bp
from app.rental.modules.equipment.admin import bp as equipment_bp
from app.rental.modules.equipment.api import bp as equipment_api_bp
from app.rental.modules.financial.admin import bp as financial_bp
from app.rental.modules.financial.api import bp as financial_api_bp
from app.rental.modules.fiscal.admin import bp as fiscal_bp
from app.rental.modules.fiscal.api import bp as fiscal_api_bp
from app.rental.modules.integrations.admin import bp as integrations_bp
from app.rental.modules.integrations.api import bp as integrations_api_bp
from app.rental.modules.leads.admin import bp as leads_bp
from app.rental.modules.leads.api import bp as leads_api_bp
from app.rental.modules.maintenance.admin import bp as maintenance_bp
from app.rental.modules.maintenance.api import bp as maintenance_api_bp
from app.rental.modules.stock.admin import bp as stock_bp
from app.rental.modules.stock.api import bp as stock_api_bp

_PUBLIC_PREFIXES = ("/static/", "/health", "/healthz")
_CSRF_EXEMPT_ENDPOINTS = ("billing_api.asaas_webhook",)

_ADMIN_BLUEPRINTS = (
    accounts_bp,
    billing_bp,
    bookings_bp,
    customers_bp,
    dashboard_bp,
    equipment_bp,
    financial_bp,
    fiscal_bp,
    integrations_bp,
    leads_bp,
    maintenance_bp,
    stock_bp,
)
_API_BLUEPRINTS = (
    accounts_api_bp,
    billing_api_bp,
    bookings_api_bp,
    customers_api_bp,
    dashboard_api_bp,
    equipment_api_bp,
    financial_api_bp,
    fiscal_api_bp,
    integrations_api_bp,
    leads_api_bp,
    maintenance_api_bp,
    stock_api_bp,
)


def _is_api_request() -> bool:
    return request.path.startswith("/api/")


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__, template_folder="templates", static_folder="static")
    app.config.from_mapping(load_config())
    init_error_tracking(app)
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True
    app.json.ensure_ascii = False

    # CSRF protection (minimal)
    from app.rental.security import bearer_token, ensure_csrf_token, validate_csrf

    @app.context_processor
    def _inject_csrf() -> dict:
        return {"csrf_token": ensure_csrf_token()}

    @app.context_processor
    def _inject_permissions() -> dict:
        from app.rental.rbac import user_has_permission

        def has_perm(key: str) -> bool:
            return user_has_permission(getattr(g, "current_user", None), key)

        return {"has_perm": has_perm}

    @app.template_filter("dateformat")
    def _dateformat_filter(value, format: str = "%d/%m/%Y") -> str:
        if value is None:
            return "—"
        if hasattr(value, "strftime"):
            return value.strftime(format)
        return str(value)

    @app.template_filter("brl")
    def _brl_filter(value) -> str:
        from app.rental.modules.fiscal.template_engine import format_currency

        return format_currency(value or 0)

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(_PUBLIC_PREFIXES):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            endpoint = request.endpoint or ""
            # Public auth endpoints (login, register, password reset)
            if endpoint.startswith(("auth.", "auth_api.")):
                return None
            # Webhooks authenticate with their own token; API keys are not cookie-bound.
            if endpoint in _CSRF_EXEMPT_ENDPOINTS or bearer_token(request):
                return None
            if not validate_csrf(request):
                if _is_api_request():
                    return jsonify({"error": "Token CSRF ausente ou inválido"}), 400
                return render_template("errors/400.html", message="Token CSRF ausente ou inválido."), 400

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    # Storage health check (fail loudly on misconfiguration)
    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [
            key
            for key in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")
            if not app.config.get(key)
        ]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))
        else:
            from botocore.exceptions import BotoCoreError, ClientError

            from app.rental.storage import S3Storage, storage_from_config

            try:
                storage = storage_from_config(app.config)
                if isinstance(storage, S3Storage):
                    storage._client().head_bucket(Bucket=storage.bucket)
                    app.logger.info("Storage health check PASSED: S3 bucket '%s' accessible", storage.bucket)
            except (BotoCoreError, ClientError) as e:
                app.logger.error("STORAGE CONFIG ERROR: Cannot access S3 bucket: %s", e)

    if not app.config.get("FISCAL_ENCRYPTION_KEY"):
        app.logger.warning("FISCAL_ENCRYPTION_KEY not set; Focus NFe tokens cannot be stored")

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(auth_api_bp, url_prefix="/api/auth")
    app.register_blueprint(admin_bp, url_prefix="/admin")
    for bp in _ADMIN_BLUEPRINTS:
        app.register_blueprint(bp, url_prefix="/admin")
    for bp in _API_BLUEPRINTS:
        app.register_blueprint(bp, url_prefix="/api")

    def _load_user_wrapper():
        if request.path.startswith(_PUBLIC_PREFIXES):
            g.current_user = None
            g.api_key = None
            return None
        return load_current_user()

    app.before_request(_load_user_wrapper)
    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(ApiError)
    def _err_api(e: ApiError):
        if e.http_status >= 500:
            app.logger.warning(
                "API error %s code=%s (request_id=%s): %s",
                e.http_status,
                e.code,
                getattr(g, "request_id", None),
                e.message,
            )
        if _is_api_request():
            return jsonify(e.to_response_payload()), e.http_status
        return render_template("errors/400.html", message=e.message), e.http_status

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        rid = getattr(g, "request_id", None)
        app.logger.exception("Unhandled 500 (request_id=%s)", rid)
        if _is_api_request():
            return jsonify({"error": "Erro interno do servidor"}), 500
        return render_template("errors/500.html"), 500

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        if _is_api_request():
            return jsonify({"error": "Recurso não encontrado"}), 404
        return render_template("errors/404.html"), 404

    @app.errorhandler(405)
    def _err_405(e):  # type: ignore[no-redef]
        if _is_api_request():
            return jsonify({"error": "Método não permitido"}), 405
        return e

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        if _is_api_request():
            return jsonify({"error": "Sem permissão para esta operação"}), 403
        return render_template("errors/403.html", missing_permission=missing), 403

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        from flask import flash, redirect, url_for

        if _is_api_request():
            return jsonify({"error": "Arquivo muito grande. Tamanho máximo: 10MB."}), 413
        flash("Arquivo muito grande. Tamanho máximo: 10MB.", "danger")
        referrer = request.referrer
        if referrer and referrer.startswith(request.host_url):
            return redirect(referrer), 302
        return redirect(url_for("admin.index")), 302

    # Startup logging
    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
