from __future__ import annotations

from flask import Blueprint, current_app, flash, g, redirect, render_template, request, url_for

from app.rental.db import db_session
from app.rental.errors import ApiError
from app.rental.models import Tenant
from app.rental.modules.fiscal.models import INVOICE_STATUS_LABELS, INVOICE_STATUSES, Invoice
from app.rental.modules.fiscal.service import NfseService, get_invoice_or_404
from app.rental.rbac import require_permission

bp = Blueprint("fiscal", __name__)


@bp.get("/invoices")
@require_permission("VIEW_REPORTS")
def invoices_list():
    s = db_session()
    status_filter = (request.args.get("status") or "").strip().upper()
    q = s.query(Invoice).filter(Invoice.tenant_id == g.current_user.tenant_id)
    if status_filter:
        q = q.filter(Invoice.status == status_filter)
    invoices = q.order_by(Invoice.created_at.desc(), Invoice.id.desc()).limit(200).all()
    tenant = s.get(Tenant, g.current_user.tenant_id)
    return render_template(
        "admin/fiscal/invoices.html",
        invoices=invoices,
        tenant=tenant,
        status_filter=status_filter,
        statuses=INVOICE_STATUSES,
        status_labels=INVOICE_STATUS_LABELS,
    )


@bp.post("/invoices/<int:invoice_id>/sync")
@require_permission("MANAGE_FINANCIAL")
def invoices_sync_post(invoice_id: int):
    s = db_session()
    try:
        invoice = get_invoice_or_404(s, g.current_user.tenant_id, invoice_id)
        status = NfseService(s, config=current_app.config).sync_status(invoice, actor=g.current_user)
    except ApiError as e:
        s.rollback()
        flash(e.message, "danger")
        return redirect(url_for("fiscal.invoices_list"))
    s.commit()
    flash(f"Status atualizado: {INVOICE_STATUS_LABELS.get(status, status)}.", "success")
    return redirect(url_for("fiscal.invoices_list"))
