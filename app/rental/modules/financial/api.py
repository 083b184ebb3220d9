from __future__ import annotations

import io
from datetime import date

from flask import Blueprint, jsonify, request, send_file

from app.rental.api import current_actor, json_body, page_args, pagination
from app.rental.db import db_session
from app.rental.modules.financial.models import FinancialTransaction, RecurringTransaction, TransactionCategory
from app.rental.modules.financial.service import (
    confirm_recurring,
    create_category,
    create_recurring,
    create_transaction,
    delete_category,
    delete_recurring,
    delete_transaction,
    equipment_financials,
    equipment_profitability,
    export_transactions_csv,
    financial_overview,
    get_category_or_404,
    get_recurring_or_404,
    get_transaction_or_404,
    parse_transaction_filters,
    pause_recurring,
    pay_recurring,
    pay_transaction,
    query_transactions,
    resume_recurring,
    serialize_category,
    serialize_recurring,
    serialize_transaction,
    transaction_summary,
    update_category,
    update_recurring,
    update_transaction,
    upcoming_recurring,
)
from app.rental.rbac import api_auth
from app.rental.tenancy import require_tenant_id
from app.rental.utils import parse_date

bp = Blueprint("financial_api", __name__)


# ---------- Categories ----------
@bp.get("/financial/categories")
@api_auth()
def list_categories():
    q = db_session().query(TransactionCategory).filter(TransactionCategory.tenant_id == require_tenant_id())
    type_ = (request.args.get("type") or "").strip().upper()
    if type_:
        q = q.filter(TransactionCategory.type == type_)
    rows = q.order_by(TransactionCategory.type.asc(), TransactionCategory.name.asc()).all()
    return jsonify([serialize_category(c) for c in rows])


@bp.post("/financial/categories")
@api_auth("MANAGE_FINANCIAL")
def create_category_route():
    s = db_session()
    category = create_category(s, require_tenant_id(), json_body(), current_actor())
    s.commit()
    return jsonify(serialize_category(category)), 201


@bp.put("/financial/categories/<int:category_id>")
@api_auth("MANAGE_FINANCIAL")
def update_category_route(category_id: int):
    s = db_session()
    category = get_category_or_404(s, require_tenant_id(), category_id)
    update_category(s, category, json_body(), current_actor())
    s.commit()
    return jsonify(serialize_category(category))


@bp.delete("/financial/categories/<int:category_id>")
@api_auth("MANAGE_FINANCIAL")
def delete_category_route(category_id: int):
    s = db_session()
    category = get_category_or_404(s, require_tenant_id(), category_id)
    delete_category(s, category, current_actor())
    s.commit()
    return jsonify({"success": True})


# ---------- Transactions ----------
@bp.get("/financial/transactions")
@api_auth()
def list_transactions():
    s = db_session()
    tenant_id = require_tenant_id()
    filters = parse_transaction_filters(request.args)
    page, limit = page_args()

    q = query_transactions(s, tenant_id, filters)
    total = q.count()
    rows = (
        q.order_by(FinancialTransaction.date.desc(), FinancialTransaction.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return jsonify(
        {
            "transactions": [serialize_transaction(tx) for tx in rows],
            "pagination": pagination(page, limit, total),
            "summary": transaction_summary(s, tenant_id, filters),
        }
    )


@bp.post("/financial/transactions")
@api_auth("MANAGE_FINANCIAL")
def create_transaction_route():
    s = db_session()
    tx = create_transaction(s, require_tenant_id(), json_body(), current_actor())
    s.commit()
    return jsonify(serialize_transaction(tx)), 201


@bp.get("/financial/transactions/export")
@api_auth()
def export_transactions():
    s = db_session()
    filters = parse_transaction_filters(request.args)
    rows = (
        query_transactions(s, require_tenant_id(), filters)
        .order_by(FinancialTransaction.date.asc(), FinancialTransaction.id.asc())
        .all()
    )
    filename = f"transacoes_{date.today().strftime('%Y%m%d')}.csv"
    return send_file(
        io.BytesIO(export_transactions_csv(rows)),
        mimetype="text/csv",
        as_attachment=True,
        download_name=filename,
        max_age=0,
    )


@bp.get("/financial/transactions/<int:transaction_id>")
@api_auth()
def transaction_detail(transaction_id: int):
    tx = get_transaction_or_404(db_session(), require_tenant_id(), transaction_id)
    return jsonify(serialize_transaction(tx))


@bp.put("/financial/transactions/<int:transaction_id>")
@api_auth("MANAGE_FINANCIAL")
def update_transaction_route(transaction_id: int):
    s = db_session()
    tx = get_transaction_or_404(s, require_tenant_id(), transaction_id)
    update_transaction(s, tx, json_body(), current_actor())
    s.commit()
    return jsonify(serialize_transaction(tx))


@bp.delete("/financial/transactions/<int:transaction_id>")
@api_auth("MANAGE_FINANCIAL")
def delete_transaction_route(transaction_id: int):
    s = db_session()
    tx = get_transaction_or_404(s, require_tenant_id(), transaction_id)
    delete_transaction(s, tx, current_actor())
    s.commit()
    return jsonify({"success": True})


@bp.post("/financial/transactions/<int:transaction_id>/pay")
@api_auth("MANAGE_FINANCIAL")
def pay_transaction_route(transaction_id: int):
    s = db_session()
    tx = get_transaction_or_404(s, require_tenant_id(), transaction_id)
    pay_transaction(s, tx, current_actor())
    s.commit()
    return jsonify(serialize_transaction(tx))


# ---------- Recurring ----------
@bp.get("/financial/recurring")
@api_auth()
def list_recurring():
    s = db_session()
    tenant_id = require_tenant_id()
    q = s.query(RecurringTransaction).filter(RecurringTransaction.tenant_id == tenant_id)
    status = (request.args.get("status") or "").strip().upper()
    if status:
        q = q.filter(RecurringTransaction.status == status)
    rows = q.order_by(RecurringTransaction.next_due_date.asc(), RecurringTransaction.id.asc()).all()
    return jsonify(
        {
            "recurring": [serialize_recurring(r) for r in rows],
            "upcoming": [serialize_recurring(r) for r in upcoming_recurring(s, tenant_id)],
        }
    )


@bp.post("/financial/recurring")
@api_auth("MANAGE_FINANCIAL")
def create_recurring_route():
    s = db_session()
    rec, first = create_recurring(s, require_tenant_id(), json_body(), current_actor())
    s.commit()
    return jsonify({"recurring": serialize_recurring(rec), "transaction": serialize_transaction(first)}), 201


@bp.patch("/financial/recurring/<int:recurring_id>")
@api_auth("MANAGE_FINANCIAL")
def update_recurring_route(recurring_id: int):
    s = db_session()
    rec = get_recurring_or_404(s, require_tenant_id(), recurring_id)
    update_recurring(s, rec, json_body(), current_actor())
    s.commit()
    return jsonify(serialize_recurring(rec))


@bp.delete("/financial/recurring/<int:recurring_id>")
@api_auth("MANAGE_FINANCIAL")
def delete_recurring_route(recurring_id: int):
    s = db_session()
    rec = get_recurring_or_404(s, require_tenant_id(), recurring_id)
    delete_recurring(s, rec, current_actor())
    s.commit()
    return jsonify({"success": True})


def _recurring_action(recurring_id: int, action):
    s = db_session()
    rec = get_recurring_or_404(s, require_tenant_id(), recurring_id)
    tx = action(s, rec, current_actor())
    s.commit()
    body = {"recurring": serialize_recurring(rec)}
    if tx is not None:
        body["transaction"] = serialize_transaction(tx)
    return jsonify(body)


@bp.post("/financial/recurring/<int:recurring_id>/confirm")
@api_auth("MANAGE_FINANCIAL")
def confirm_recurring_route(recurring_id: int):
    return _recurring_action(recurring_id, confirm_recurring)


@bp.post("/financial/recurring/<int:recurring_id>/pay")
@api_auth("MANAGE_FINANCIAL")
def pay_recurring_route(recurring_id: int):
    return _recurring_action(recurring_id, pay_recurring)


@bp.post("/financial/recurring/<int:recurring_id>/pause")
@api_auth("MANAGE_FINANCIAL")
def pause_recurring_route(recurring_id: int):
    return _recurring_action(recurring_id, pause_recurring)


@bp.post("/financial/recurring/<int:recurring_id>/resume")
@api_auth("MANAGE_FINANCIAL")
def resume_recurring_route(recurring_id: int):
    return _recurring_action(recurring_id, resume_recurring)


# ---------- Overview ----------
@bp.get("/financial/overview")
@api_auth("VIEW_REPORTS")
def overview():
    start = parse_date(request.args.get("start_date"), "start_date")
    end = parse_date(request.args.get("end_date"), "end_date")
    return jsonify(financial_overview(db_session(), require_tenant_id(), start=start, end=end))


@bp.get("/financial/profitability")
@api_auth("VIEW_REPORTS")
def profitability():
    start = parse_date(request.args.get("start_date"), "start_date")
    end = parse_date(request.args.get("end_date"), "end_date")
    sort_by = request.args.get("sort_by") or "profit"
    return jsonify(equipment_profitability(db_session(), require_tenant_id(), start=start, end=end, sort_by=sort_by))


@bp.get("/financial/equipment/<int:equipment_id>")
@api_auth("VIEW_REPORTS")
def equipment_detail(equipment_id: int):
    from app.rental.modules.equipment.service import get_equipment_or_404

    s = db_session()
    equipment = get_equipment_or_404(s, require_tenant_id(), equipment_id)
    return jsonify(equipment_financials(s, equipment))
