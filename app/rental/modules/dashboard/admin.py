from __future__ import annotations

from flask import Blueprint, flash, g, render_template, request, url_for

from app.rental.activity import ACTIONS, ENTITIES
from app.rental.api import page_args, pagination
from app.rental.db import db_session
from app.rental.errors import ValidationError
from app.rental.models import User
from app.rental.modules.dashboard.service import parse_log_filters, query_activity_logs
from app.rental.rbac import require_permission

bp = Blueprint("dashboard", __name__)


@bp.get("/logs")
@require_permission("VIEW_REPORTS")
def logs_list():
    s = db_session()
    tenant_id = g.current_user.tenant_id
    try:
        filters = parse_log_filters(request.args)
    except ValidationError as e:
        flash(e.message, "danger")
        filters = parse_log_filters({})
    q = query_activity_logs(s, tenant_id, filters)
    page, limit = page_args()
    total = q.count()
    logs = q.offset((page - 1) * limit).limit(limit).all()
    users = s.query(User).filter(User.tenant_id == tenant_id).order_by(User.name.asc()).all()

    def build_url(p: int) -> str:
        args = {k: v for k, v in request.args.items() if k != "page" and v}
        return url_for("dashboard.logs_list", page=p, **args)

    return render_template(
        "admin/logs/list.html",
        logs=logs,
        users=users,
        filters=filters,
        entities=ENTITIES,
        actions=ACTIONS,
        pagination=pagination(page, limit, total),
        build_url=build_url,
    )
