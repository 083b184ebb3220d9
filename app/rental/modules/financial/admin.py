from __future__ import annotations

from flask import Blueprint, flash, g, redirect, render_template, request, url_for

from app.rental.db import db_session
from app.rental.errors import ApiError
from app.rental.modules.financial.models import (
    STATUS_LABELS,
    TYPE_LABELS,
    FinancialTransaction,
    RecurringTransaction,
    TransactionCategory,
)
from app.rental.modules.financial.service import (
    create_transaction,
    financial_overview,
    get_transaction_or_404,
    pay_transaction,
    transaction_summary,
    upcoming_recurring,
)
from app.rental.rbac import require_permission

bp = Blueprint("financial", __name__)


@bp.get("/financial")
@require_permission("VIEW_REPORTS")
def financial_index():
    s = db_session()
    tenant_id = g.current_user.tenant_id
    transactions = (
        s.query(FinancialTransaction)
        .filter(FinancialTransaction.tenant_id == tenant_id)
        .order_by(FinancialTransaction.date.desc(), FinancialTransaction.id.desc())
        .limit(50)
        .all()
    )
    recurring = (
        s.query(RecurringTransaction)
        .filter(RecurringTransaction.tenant_id == tenant_id)
        .order_by(RecurringTransaction.next_due_date.asc())
        .all()
    )
    categories = (
        s.query(TransactionCategory)
        .filter(TransactionCategory.tenant_id == tenant_id)
        .order_by(TransactionCategory.type.asc(), TransactionCategory.name.asc())
        .all()
    )
    return render_template(
        "admin/financial/index.html",
        overview=financial_overview(s, tenant_id),
        summary=transaction_summary(s, tenant_id, {}),
        transactions=transactions,
        recurring=recurring,
        upcoming=upcoming_recurring(s, tenant_id),
        categories=categories,
        type_labels=TYPE_LABELS,
        status_labels=STATUS_LABELS,
    )


@bp.post("/financial/transactions")
@require_permission("MANAGE_FINANCIAL")
def financial_transaction_post():
    s = db_session()
    payload = {
        k: request.form.get(k)
        for k in ("type", "description", "amount", "date", "due_date", "category_id", "notes")
        if request.form.get(k)
    }
    try:
        create_transaction(s, g.current_user.tenant_id, payload, g.current_user)
    except ApiError as e:
        s.rollback()
        flash(e.message, "danger")
        return redirect(url_for("financial.financial_index"))
    s.commit()
    flash("Transação registrada.", "success")
    return redirect(url_for("financial.financial_index"))


@bp.post("/financial/transactions/<int:transaction_id>/pay")
@require_permission("MANAGE_FINANCIAL")
def financial_transaction_pay(transaction_id: int):
    s = db_session()
    try:
        tx = get_transaction_or_404(s, g.current_user.tenant_id, transaction_id)
        pay_transaction(s, tx, g.current_user)
    except ApiError as e:
        s.rollback()
        flash(e.message, "danger")
        return redirect(url_for("financial.financial_index"))
    s.commit()
    flash("Transação marcada como paga.", "success")
    return redirect(url_for("financial.financial_index"))
