from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.rental.activity import serialize_activity
from app.rental.api import page_args, pagination
from app.rental.db import db_session
from app.rental.modules.dashboard.service import dashboard_stats, global_search, parse_log_filters, query_activity_logs
from app.rental.rbac import api_auth
from app.rental.tenancy import require_tenant_id

bp = Blueprint("dashboard_api", __name__)


@bp.get("/dashboard/stats")
@api_auth()
def stats():
    return jsonify(dashboard_stats(db_session(), require_tenant_id()))


@bp.get("/search")
@api_auth()
def search():
    return jsonify({"results": global_search(db_session(), require_tenant_id(), request.args.get("q"))})


@bp.get("/activity-logs")
@api_auth("VIEW_REPORTS")
def activity_logs():
    s = db_session()
    q = query_activity_logs(s, require_tenant_id(), parse_log_filters(request.args))
    page, limit = page_args()
    total = q.count()
    rows = q.offset((page - 1) * limit).limit(limit).all()
    return jsonify({"logs": [serialize_activity(log) for log in rows], "pagination": pagination(page, limit, total)})
