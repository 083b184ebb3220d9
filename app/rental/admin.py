from flask import Blueprint, g, redirect, render_template, url_for

from app.rental.db import db_session
from app.rental.models import Tenant
from app.rental.modules.billing.limits import get_tenant_usage
from app.rental.modules.bookings.models import BOOKING_STATUS_LABELS
from app.rental.modules.dashboard.service import dashboard_stats
from app.rental.modules.stock.service import stock_alerts
from app.rental.rbac import require_permission

bp = Blueprint("admin", __name__)


@bp.get("/")
@require_permission("VIEW_REPORTS")
def index():
    s = db_session()
    tenant_id = g.current_user.tenant_id
    return render_template(
        "admin/index.html",
        tenant=s.get(Tenant, tenant_id),
        stats=dashboard_stats(s, tenant_id),
        alerts=stock_alerts(s, tenant_id),
        usage=get_tenant_usage(s, tenant_id),
        status_labels=BOOKING_STATUS_LABELS,
    )


@bp.get("/login")
def login_redirect():
    return redirect(url_for("auth.login_get"))
