from __future__ import annotations

from flask import Blueprint, current_app, flash, g, redirect, render_template, request, url_for

from app.rental.db import db_session
from app.rental.errors import ApiError
from app.rental.modules.billing.limits import get_tenant_usage
from app.rental.modules.billing.models import Plan
from app.rental.modules.billing.service import SubscriptionService, get_subscription
from app.rental.rbac import require_permission

bp = Blueprint("billing", __name__)


@bp.get("/billing")
@require_permission("MANAGE_SETTINGS")
def billing_index():
    s = db_session()
    tenant_id = g.current_user.tenant_id
    subscription = get_subscription(s, tenant_id)
    plans = s.query(Plan).filter(Plan.active.is_(True)).order_by(Plan.price_monthly.asc()).all()
    return render_template(
        "admin/billing/index.html",
        subscription=subscription,
        plans=plans,
        usage=get_tenant_usage(s, tenant_id),
    )


@bp.post("/billing/charge")
@require_permission("MANAGE_SETTINGS")
def billing_charge():
    s = db_session()
    subscription = get_subscription(s, g.current_user.tenant_id)
    if subscription is None:
        flash("Nenhuma assinatura encontrada.", "danger")
        return redirect(url_for("billing.billing_index"))
    try:
        SubscriptionService(s, config=current_app.config).create_monthly_charge(
            subscription, request.form.get("billing_type") or "BOLETO", actor=g.current_user
        )
    except ApiError as e:
        s.rollback()
        flash(e.message, "danger")
        return redirect(url_for("billing.billing_index"))
    s.commit()
    flash("Cobrança gerada.", "success")
    return redirect(url_for("billing.billing_index"))
