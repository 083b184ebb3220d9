from __future__ import annotations

import csv
import io
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Any

from dateutil.relativedelta import relativedelta
from sqlalchemy import func

from app.rental.activity import record_activity
from app.rental.errors import ConflictError, NotFoundError, ValidationError, require_fields
from app.rental.modules.financial.models import (
    STATUS_LABELS,
    TRANSACTION_STATUSES,
    TRANSACTION_TYPES,
    TYPE_LABELS,
    FinancialTransaction,
    RecurringTransaction,
    TransactionCategory,
)
from app.rental.utils import clean_str, iso, parse_date, parse_float, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.rental.models import User

DEFAULT_CATEGORIES: dict[str, list[tuple[str, str]]] = {
    "INCOME": [
        ("Aluguéis", "#22c55e"),
        ("Serviços", "#3b82f6"),
        ("Vendas", "#8b5cf6"),
        ("Outros Ganhos", "#14b8a6"),
    ],
    "EXPENSE": [
        ("Aluguel/Imóvel", "#ef4444"),
        ("Salários", "#f97316"),
        ("Utilidades", "#eab308"),
        ("Marketing", "#ec4899"),
        ("Manutenção", "#f59e0b"),
        ("Seguros", "#6366f1"),
        ("Combustível", "#84cc16"),
        ("Impostos", "#dc2626"),
        ("Outras Despesas", "#64748b"),
    ],
}

UPCOMING_WINDOW_DAYS = 30


# ---------- Categories ----------
def ensure_default_categories(s: "Session", tenant_id: int) -> int:
    """Create any missing default category. Returns how many were created."""
    existing = {
        (c.name, c.type)
        for c in s.query(TransactionCategory).filter(TransactionCategory.tenant_id == tenant_id).all()
    }
    created = 0
    for type_, categories in DEFAULT_CATEGORIES.items():
        for name, color in categories:
            if (name, type_) in existing:
                continue
            s.add(TransactionCategory(tenant_id=tenant_id, name=name, type=type_, color=color, is_default=True))
            created += 1
    if created:
        s.flush()
    return created


def _parse_type(value: Any) -> str:
    type_ = (str(value or "")).strip().upper()
    if type_ not in TRANSACTION_TYPES:
        raise ValidationError("Tipo inválido (use INCOME ou EXPENSE)")
    return type_


def get_category_or_404(s: "Session", tenant_id: int, category_id: int) -> TransactionCategory:
    category = s.get(TransactionCategory, category_id)
    if not category or category.tenant_id != tenant_id:
        raise NotFoundError("Categoria não encontrada")
    return category


def _category_exists(s: "Session", tenant_id: int, name: str, type_: str, exclude_id: int | None = None) -> bool:
    q = s.query(TransactionCategory).filter(
        TransactionCategory.tenant_id == tenant_id,
        func.lower(TransactionCategory.name) == name.lower(),
        TransactionCategory.type == type_,
    )
    if exclude_id:
        q = q.filter(TransactionCategory.id != exclude_id)
    return s.query(q.exists()).scalar()


def create_category(s: "Session", tenant_id: int, payload: dict, actor: "User | None") -> TransactionCategory:
    require_fields(payload, ("name", "type"))
    name = clean_str(payload.get("name"))
    type_ = _parse_type(payload.get("type"))
    if _category_exists(s, tenant_id, name, type_):
        raise ConflictError("Já existe uma categoria com este nome")

    category = TransactionCategory(
        tenant_id=tenant_id,
        name=name,
        type=type_,
        color=clean_str(payload.get("color")),
        is_default=False,
    )
    s.add(category)
    s.flush()
    record_activity(
        s,
        tenant_id=tenant_id,
        actor=actor,
        action="CREATE",
        entity="CATEGORY",
        entity_id=category.id,
        description=f"Categoria \"{name}\" criada",
    )
    return category


def update_category(s: "Session", category: TransactionCategory, payload: dict, actor: "User | None") -> None:
    name = clean_str(payload.get("name")) if "name" in payload else category.name
    if not name:
        raise ValidationError("Nome é obrigatório")
    if name != category.name and _category_exists(s, category.tenant_id, name, category.type, exclude_id=category.id):
        raise ConflictError("Já existe uma categoria com este nome")
    category.name = name
    if "color" in payload:
        category.color = clean_str(payload.get("color"))
    record_activity(
        s,
        tenant_id=category.tenant_id,
        actor=actor,
        action="UPDATE",
        entity="CATEGORY",
        entity_id=category.id,
        description=f"Categoria \"{name}\" atualizada",
    )


def delete_category(s: "Session", category: TransactionCategory, actor: "User | None") -> None:
    used = (
        s.query(FinancialTransaction.id).filter(FinancialTransaction.category_id == category.id).first()
        or s.query(RecurringTransaction.id).filter(RecurringTransaction.category_id == category.id).first()
    )
    if used:
        raise ConflictError("Categoria em uso por transações")
    record_activity(
        s,
        tenant_id=category.tenant_id,
        actor=actor,
        action="DELETE",
        entity="CATEGORY",
        entity_id=category.id,
        description=f"Categoria \"{category.name}\" removida",
    )
    s.delete(category)


def _category_for(s: "Session", tenant_id: int, category_id: Any, type_: str) -> TransactionCategory:
    category = get_category_or_404(s, tenant_id, parse_int(category_id, "category_id"))
    if category.type != type_:
        raise ValidationError("Categoria não corresponde ao tipo da transação")
    return category


def _positive_amount(value: Any) -> float:
    amount = parse_float(value, "amount")
    if amount is None or amount <= 0:
        raise ValidationError("Valor deve ser maior que zero")
    return round(amount, 2)


# ---------- Transactions ----------
def get_transaction_or_404(s: "Session", tenant_id: int, transaction_id: int) -> FinancialTransaction:
    tx = s.get(FinancialTransaction, transaction_id)
    if not tx or tx.tenant_id != tenant_id:
        raise NotFoundError("Transação não encontrada")
    return tx


def parse_transaction_filters(args) -> dict[str, Any]:
    type_ = (args.get("type") or "").strip().upper() or None
    status = (args.get("status") or "").strip().upper() or None
    if type_ and type_ not in TRANSACTION_TYPES:
        raise ValidationError(f"Tipo inválido: {type_}")
    if status and status not in TRANSACTION_STATUSES:
        raise ValidationError(f"Status inválido: {status}")
    return {
        "type": type_,
        "status": status,
        "category_id": parse_int(args.get("category_id"), "category_id"),
        "start_date": parse_date(args.get("start_date"), "start_date"),
        "end_date": parse_date(args.get("end_date"), "end_date"),
    }


def query_transactions(s: "Session", tenant_id: int, filters: dict[str, Any]):
    q = s.query(FinancialTransaction).filter(FinancialTransaction.tenant_id == tenant_id)
    if filters.get("type"):
        q = q.filter(FinancialTransaction.type == filters["type"])
    if filters.get("status"):
        q = q.filter(FinancialTransaction.status == filters["status"])
    if filters.get("category_id"):
        q = q.filter(FinancialTransaction.category_id == filters["category_id"])
    if filters.get("start_date"):
        q = q.filter(FinancialTransaction.date >= filters["start_date"])
    if filters.get("end_date"):
        q = q.filter(FinancialTransaction.date <= filters["end_date"])
    return q


def transaction_summary(s: "Session", tenant_id: int, filters: dict[str, Any]) -> dict[str, Any]:
    """Totals per type/status over the filtered set (CANCELLED excluded)."""
    q = query_transactions(s, tenant_id, {**filters, "status": None})
    rows = (
        q.filter(FinancialTransaction.status != "CANCELLED")
        .with_entities(FinancialTransaction.type, FinancialTransaction.status, func.sum(FinancialTransaction.amount))
        .group_by(FinancialTransaction.type, FinancialTransaction.status)
        .all()
    )
    totals = {t: {"total": 0.0, "pending": 0.0, "paid": 0.0} for t in TRANSACTION_TYPES}
    for type_, status, amount in rows:
        amount = float(amount or 0)
        totals[type_]["total"] += amount
        if status == "PAID":
            totals[type_]["paid"] += amount
        else:
            totals[type_]["pending"] += amount
    income, expense = totals["INCOME"], totals["EXPENSE"]
    return {
        "income": {k: round(v, 2) for k, v in income.items()},
        "expense": {k: round(v, 2) for k, v in expense.items()},
        "balance": round(income["paid"] - expense["paid"], 2),
    }


def _initial_status(on: date) -> str:
    return "OVERDUE" if on < date.today() else "PENDING"


def create_transaction(s: "Session", tenant_id: int, payload: dict, actor: "User | None") -> FinancialTransaction:
    require_fields(payload, ("type", "description", "amount", "date", "category_id"))
    type_ = _parse_type(payload.get("type"))
    category = _category_for(s, tenant_id, payload.get("category_id"), type_)
    amount = _positive_amount(payload.get("amount"))
    tx_date = parse_date(payload.get("date"), "date")

    status = (str(payload.get("status") or "PENDING")).strip().upper()
    if status not in TRANSACTION_STATUSES:
        raise ValidationError(f"Status inválido: {status}")

    now = datetime.utcnow()
    tx = FinancialTransaction(
        tenant_id=tenant_id,
        type=type_,
        status=status,
        description=clean_str(payload.get("description")),
        amount=amount,
        date=tx_date,
        due_date=parse_date(payload.get("due_date"), "due_date"),
        paid_at=now if status == "PAID" else None,
        category=category,
        category_id=category.id,
        booking_id=parse_int(payload.get("booking_id"), "booking_id"),
        equipment_id=parse_int(payload.get("equipment_id"), "equipment_id"),
        notes=clean_str(payload.get("notes")),
        created_at=now,
        updated_at=now,
    )
    s.add(tx)
    s.flush()
    record_activity(
        s,
        tenant_id=tenant_id,
        actor=actor,
        action="CREATE",
        entity="TRANSACTION",
        entity_id=tx.id,
        description=f"{TYPE_LABELS[type_]} \"{tx.description}\" de R$ {amount:.2f} registrada",
    )
    return tx


def update_transaction(s: "Session", tx: FinancialTransaction, payload: dict, actor: "User | None") -> None:
    changes: dict[str, Any] = {}

    type_ = _parse_type(payload.get("type")) if "type" in payload else tx.type
    if "category_id" in payload or type_ != tx.type:
        category = _category_for(s, tx.tenant_id, payload.get("category_id", tx.category_id), type_)
        if category.id != tx.category_id:
            changes["category_id"] = {"old": tx.category_id, "new": category.id}
        tx.category = category
        tx.category_id = category.id
    if type_ != tx.type:
        changes["type"] = {"old": tx.type, "new": type_}
        tx.type = type_

    if "description" in payload:
        description = clean_str(payload.get("description"))
        if not description:
            raise ValidationError("Descrição é obrigatória")
        if description != tx.description:
            changes["description"] = {"old": tx.description, "new": description}
            tx.description = description
    if "amount" in payload:
        amount = _positive_amount(payload.get("amount"))
        if amount != tx.amount:
            changes["amount"] = {"old": tx.amount, "new": amount}
            tx.amount = amount
    for field in ("date", "due_date"):
        if field in payload:
            value = parse_date(payload.get(field), field)
            if field == "date" and value is None:
                raise ValidationError("Data é obrigatória")
            if value != getattr(tx, field):
                changes[field] = {"old": iso(getattr(tx, field)), "new": iso(value)}
                setattr(tx, field, value)
    if "status" in payload:
        status = (str(payload.get("status") or "")).strip().upper()
        if status not in TRANSACTION_STATUSES:
            raise ValidationError(f"Status inválido: {status}")
        if status != tx.status:
            changes["status"] = {"old": tx.status, "new": status}
            tx.status = status
            tx.paid_at = datetime.utcnow() if status == "PAID" else None
    if "notes" in payload:
        tx.notes = clean_str(payload.get("notes"))

    if changes:
        tx.updated_at = datetime.utcnow()
        record_activity(
            s,
            tenant_id=tx.tenant_id,
            actor=actor,
            action="UPDATE",
            entity="TRANSACTION",
            entity_id=tx.id,
            description=f"Transação \"{tx.description}\" atualizada",
            metadata={"changes": changes},
        )


def delete_transaction(s: "Session", tx: FinancialTransaction, actor: "User | None") -> None:
    record_activity(
        s,
        tenant_id=tx.tenant_id,
        actor=actor,
        action="DELETE",
        entity="TRANSACTION",
        entity_id=tx.id,
        description=f"Transação \"{tx.description}\" removida",
    )
    s.delete(tx)


def pay_transaction(s: "Session", tx: FinancialTransaction, actor: "User | None") -> None:
    if tx.status == "PAID":
        raise ValidationError("Transação já está paga")
    if tx.status == "CANCELLED":
        raise ValidationError("Transação cancelada não pode ser paga")
    now = datetime.utcnow()
    tx.status = "PAID"
    tx.paid_at = now
    tx.updated_at = now
    record_activity(
        s,
        tenant_id=tx.tenant_id,
        actor=actor,
        action="UPDATE",
        entity="TRANSACTION",
        entity_id=tx.id,
        description=f"Transação \"{tx.description}\" marcada como paga",
    )


def export_transactions_csv(rows: list[FinancialTransaction]) -> bytes:
    out = io.StringIO()
    w = csv.writer(out)
    w.writerow(["Data", "Tipo", "Descrição", "Categoria", "Valor", "Status", "Vencimento", "Pago em"])
    for tx in rows:
        w.writerow(
            [
                iso(tx.date),
                TYPE_LABELS.get(tx.type, tx.type),
                tx.description,
                tx.category.name if tx.category else "",
                f"{tx.amount:.2f}",
                STATUS_LABELS.get(tx.status, tx.status),
                iso(tx.due_date) or "",
                iso(tx.paid_at) or "",
            ]
        )
    return out.getvalue().encode("utf-8")


# ---------- Recurring ----------
def get_recurring_or_404(s: "Session", tenant_id: int, recurring_id: int) -> RecurringTransaction:
    rec = s.get(RecurringTransaction, recurring_id)
    if not rec or rec.tenant_id != tenant_id:
        raise NotFoundError("Transação recorrente não encontrada")
    return rec


def _interval(value: Any) -> int:
    interval = parse_int(value, "interval_days")
    if interval is None or interval < 1:
        raise ValidationError("Intervalo deve ser de pelo menos 1 dia")
    return interval


def _generate(
    s: "Session", rec: RecurringTransaction, *, on: date, status: str, paid: bool = False
) -> FinancialTransaction:
    now = datetime.utcnow()
    tx = FinancialTransaction(
        tenant_id=rec.tenant_id,
        type=rec.type,
        status=status,
        description=rec.description,
        amount=rec.amount,
        date=on,
        due_date=on,
        paid_at=now if paid else None,
        category_id=rec.category_id,
        recurring_id=rec.id,
        created_at=now,
        updated_at=now,
    )
    s.add(tx)
    return tx


def create_recurring(
    s: "Session", tenant_id: int, payload: dict, actor: "User | None"
) -> tuple[RecurringTransaction, FinancialTransaction]:
    require_fields(payload, ("type", "description", "amount", "category_id", "interval_days", "start_date"))
    type_ = _parse_type(payload.get("type"))
    category = _category_for(s, tenant_id, payload.get("category_id"), type_)
    amount = _positive_amount(payload.get("amount"))
    interval = _interval(payload.get("interval_days"))
    start = parse_date(payload.get("start_date"), "start_date")
    end = parse_date(payload.get("end_date"), "end_date")
    if end and end < start:
        raise ValidationError("Data final deve ser posterior à data inicial")

    now = datetime.utcnow()
    rec = RecurringTransaction(
        tenant_id=tenant_id,
        type=type_,
        description=clean_str(payload.get("description")),
        amount=amount,
        category=category,
        category_id=category.id,
        interval_days=interval,
        start_date=start,
        end_date=end,
        next_due_date=start + timedelta(days=interval),
        status="ACTIVE",
        notes=clean_str(payload.get("notes")),
        created_at=now,
        updated_at=now,
    )
    s.add(rec)
    s.flush()
    if end and rec.next_due_date > end:
        rec.status = "COMPLETED"

    first = _generate(s, rec, on=start, status=_initial_status(start))
    s.flush()
    record_activity(
        s,
        tenant_id=tenant_id,
        actor=actor,
        action="CREATE",
        entity="RECURRING_TRANSACTION",
        entity_id=rec.id,
        description=f"Recorrência \"{rec.description}\" criada (a cada {interval} dias)",
        metadata={"first_transaction_id": first.id},
    )
    return rec, first


def update_recurring(s: "Session", rec: RecurringTransaction, payload: dict, actor: "User | None") -> None:
    if "description" in payload:
        description = clean_str(payload.get("description"))
        if not description:
            raise ValidationError("Descrição é obrigatória")
        rec.description = description
    if "amount" in payload:
        rec.amount = _positive_amount(payload.get("amount"))
    if "category_id" in payload:
        category = _category_for(s, rec.tenant_id, payload.get("category_id"), rec.type)
        rec.category = category
        rec.category_id = category.id
    if "interval_days" in payload:
        interval = _interval(payload.get("interval_days"))
        # next_due_date counts from the last generated occurrence
        rec.next_due_date = rec.next_due_date - timedelta(days=rec.interval_days) + timedelta(days=interval)
        rec.interval_days = interval
    if "end_date" in payload:
        end = parse_date(payload.get("end_date"), "end_date")
        if end and end < rec.start_date:
            raise ValidationError("Data final deve ser posterior à data inicial")
        rec.end_date = end
    if "notes" in payload:
        rec.notes = clean_str(payload.get("notes"))
    if rec.status in ("ACTIVE", "COMPLETED"):
        rec.status = "COMPLETED" if rec.end_date and rec.next_due_date > rec.end_date else "ACTIVE"
    rec.updated_at = datetime.utcnow()
    record_activity(
        s,
        tenant_id=rec.tenant_id,
        actor=actor,
        action="UPDATE",
        entity="RECURRING_TRANSACTION",
        entity_id=rec.id,
        description=f"Recorrência \"{rec.description}\" atualizada",
        metadata={"fields": sorted(payload)},
    )


def delete_recurring(s: "Session", rec: RecurringTransaction, actor: "User | None") -> None:
    """Generated transactions are kept and lose their link."""
    s.query(FinancialTransaction).filter(FinancialTransaction.recurring_id == rec.id).update(
        {FinancialTransaction.recurring_id: None}, synchronize_session=False
    )
    record_activity(
        s,
        tenant_id=rec.tenant_id,
        actor=actor,
        action="DELETE",
        entity="RECURRING_TRANSACTION",
        entity_id=rec.id,
        description=f"Recorrência \"{rec.description}\" removida",
    )
    s.delete(rec)


def _advance(rec: RecurringTransaction) -> None:
    rec.next_due_date = rec.next_due_date + timedelta(days=rec.interval_days)
    if rec.end_date and rec.next_due_date > rec.end_date:
        rec.status = "COMPLETED"
    rec.updated_at = datetime.utcnow()


def _require_active(rec: RecurringTransaction) -> None:
    if rec.status != "ACTIVE":
        raise ValidationError("Recorrência não está ativa")


def confirm_recurring(s: "Session", rec: RecurringTransaction, actor: "User | None") -> FinancialTransaction:
    """Generate the PENDING transaction for the current due date and move to the next one."""
    _require_active(rec)
    tx = _generate(s, rec, on=rec.next_due_date, status="PENDING")
    _advance(rec)
    s.flush()
    record_activity(
        s,
        tenant_id=rec.tenant_id,
        actor=actor,
        action="CREATE",
        entity="TRANSACTION",
        entity_id=tx.id,
        description=f"Lançamento da recorrência \"{rec.description}\" confirmado",
        metadata={"recurring_id": rec.id},
    )
    return tx


def pay_recurring(s: "Session", rec: RecurringTransaction, actor: "User | None") -> FinancialTransaction:
    _require_active(rec)
    tx = _generate(s, rec, on=date.today(), status="PAID", paid=True)
    _advance(rec)
    s.flush()
    record_activity(
        s,
        tenant_id=rec.tenant_id,
        actor=actor,
        action="CREATE",
        entity="TRANSACTION",
        entity_id=tx.id,
        description=f"Lançamento da recorrência \"{rec.description}\" pago",
        metadata={"recurring_id": rec.id},
    )
    return tx


def pause_recurring(s: "Session", rec: RecurringTransaction, actor: "User | None") -> None:
    if rec.status != "ACTIVE":
        raise ValidationError("Apenas recorrências ativas podem ser pausadas")
    rec.status = "PAUSED"
    rec.updated_at = datetime.utcnow()
    record_activity(
        s,
        tenant_id=rec.tenant_id,
        actor=actor,
        action="UPDATE",
        entity="RECURRING_TRANSACTION",
        entity_id=rec.id,
        description=f"Recorrência \"{rec.description}\" pausada",
    )


def resume_recurring(s: "Session", rec: RecurringTransaction, actor: "User | None") -> None:
    if rec.status != "PAUSED":
        raise ValidationError("Apenas recorrências pausadas podem ser retomadas")
    today = date.today()
    while rec.next_due_date < today:
        rec.next_due_date = rec.next_due_date + timedelta(days=rec.interval_days)
    rec.status = "COMPLETED" if rec.end_date and rec.next_due_date > rec.end_date else "ACTIVE"
    rec.updated_at = datetime.utcnow()
    record_activity(
        s,
        tenant_id=rec.tenant_id,
        actor=actor,
        action="UPDATE",
        entity="RECURRING_TRANSACTION",
        entity_id=rec.id,
        description=f"Recorrência \"{rec.description}\" retomada",
        metadata={"next_due_date": iso(rec.next_due_date)},
    )


def upcoming_recurring(s: "Session", tenant_id: int, *, days: int = UPCOMING_WINDOW_DAYS) -> list[RecurringTransaction]:
    limit = date.today() + timedelta(days=days)
    return (
        s.query(RecurringTransaction)
        .filter(
            RecurringTransaction.tenant_id == tenant_id,
            RecurringTransaction.status == "ACTIVE",
            RecurringTransaction.next_due_date <= limit,
        )
        .order_by(RecurringTransaction.next_due_date.asc())
        .all()
    )


# ---------- Overview ----------
def _month_key(value: date | datetime) -> str:
    return f"{value.year}-{value.month:02d}"


def financial_overview(
    s: "Session", tenant_id: int, *, start: date | None = None, end: date | None = None
) -> dict[str, Any]:
    """Revenue from bookings against equipment costs, plus a 12-month series."""
    from app.rental.modules.bookings.models import Booking
    from app.rental.modules.equipment.models import EquipmentCost

    def booking_window(q):
        if start:
            q = q.filter(Booking.created_at >= datetime.combine(start, datetime.min.time()))
        if end:
            q = q.filter(Booking.created_at < datetime.combine(end + timedelta(days=1), datetime.min.time()))
        return q

    def cost_window(q):
        if start:
            q = q.filter(EquipmentCost.date >= start)
        if end:
            q = q.filter(EquipmentCost.date <= end)
        return q

    revenue_sum, completed_count = booking_window(
        s.query(func.sum(Booking.total_price), func.count(Booking.id)).filter(
            Booking.tenant_id == tenant_id, Booking.status == "COMPLETED"
        )
    ).one()
    pending_sum, pending_count = booking_window(
        s.query(func.sum(Booking.total_price), func.count(Booking.id)).filter(
            Booking.tenant_id == tenant_id, Booking.status.in_(("PENDING", "CONFIRMED"))
        )
    ).one()
    costs_by_type = cost_window(
        s.query(EquipmentCost.type, func.sum(EquipmentCost.amount)).filter(EquipmentCost.tenant_id == tenant_id)
    ).group_by(EquipmentCost.type).all()

    revenue = float(revenue_sum or 0)
    costs = float(sum(float(total or 0) for _, total in costs_by_type))
    profit = revenue - costs
    margin = round(profit / revenue * 100, 2) if revenue > 0 else 0

    today = date.today()
    first_month = today.replace(day=1) - relativedelta(months=11)
    monthly: dict[str, dict[str, float]] = {}
    for i in range(12):
        monthly[_month_key(first_month + relativedelta(months=i))] = {"revenue": 0.0, "costs": 0.0}

    completed_rows = (
        s.query(Booking.created_at, Booking.total_price)
        .filter(
            Booking.tenant_id == tenant_id,
            Booking.status == "COMPLETED",
            Booking.created_at >= datetime.combine(first_month, datetime.min.time()),
        )
        .all()
    )
    for created_at, total in completed_rows:
        bucket = monthly.get(_month_key(created_at))
        if bucket is not None:
            bucket["revenue"] += float(total or 0)
    cost_rows = (
        s.query(EquipmentCost.date, EquipmentCost.amount)
        .filter(EquipmentCost.tenant_id == tenant_id, EquipmentCost.date >= first_month)
        .all()
    )
    for on, amount in cost_rows:
        bucket = monthly.get(_month_key(on))
        if bucket is not None:
            bucket["costs"] += float(amount or 0)

    return {
        "summary": {
            "total_revenue": round(revenue, 2),
            "total_pending_revenue": round(float(pending_sum or 0), 2),
            "total_costs": round(costs, 2),
            "profit": round(profit, 2),
            "profit_margin": margin,
            "completed_bookings": completed_count or 0,
            "pending_bookings": pending_count or 0,
        },
        "costs_by_type": [{"type": t, "total": round(float(total or 0), 2)} for t, total in costs_by_type],
        "monthly_data": [
            {
                "month": month,
                "revenue": round(data["revenue"], 2),
                "costs": round(data["costs"], 2),
                "profit": round(data["revenue"] - data["costs"], 2),
            }
            for month, data in monthly.items()
        ],
        "transactions": transaction_summary(
            s, tenant_id, {"type": None, "category_id": None, "start_date": start, "end_date": end}
        ),
    }


# ---------- Profitability ----------
PROFITABILITY_SORTS = ("profit", "revenue", "roi", "margin", "bookings")
_SORT_KEYS = {"profit": "profit", "revenue": "revenue", "roi": "roi", "margin": "profit_margin", "bookings": "bookings_count"}


def _pct(part: float, whole: float) -> float:
    return round(part / whole * 100, 2) if whole > 0 else 0


def _investment(equipment) -> float:
    return float(equipment.unit_cost or 0) * (equipment.total_stock or 0)


def equipment_profitability(
    s: "Session",
    tenant_id: int,
    *,
    start: date | None = None,
    end: date | None = None,
    sort_by: str = "profit",
) -> dict[str, Any]:
    """
    Revenue of COMPLETED booking items against EquipmentCost per equipment.
    ROI is measured against unit_cost * total_stock.
    """
    from app.rental.modules.bookings.models import Booking, BookingItem
    from app.rental.modules.equipment.models import Equipment, EquipmentCost

    sort_by = (sort_by or "profit").strip().lower()
    if sort_by not in PROFITABILITY_SORTS:
        raise ValidationError(f"Ordenação inválida. Use: {', '.join(PROFITABILITY_SORTS)}")

    revenue_q = (
        s.query(BookingItem.equipment_id, func.sum(BookingItem.total_price), func.count(func.distinct(Booking.id)))
        .join(Booking, Booking.id == BookingItem.booking_id)
        .filter(Booking.tenant_id == tenant_id, Booking.status == "COMPLETED")
    )
    if start:
        revenue_q = revenue_q.filter(Booking.created_at >= datetime.combine(start, datetime.min.time()))
    if end:
        revenue_q = revenue_q.filter(Booking.created_at < datetime.combine(end + timedelta(days=1), datetime.min.time()))
    revenue = {eid: (float(total or 0), int(count)) for eid, total, count in revenue_q.group_by(BookingItem.equipment_id)}

    cost_q = s.query(EquipmentCost.equipment_id, func.sum(EquipmentCost.amount)).filter(
        EquipmentCost.tenant_id == tenant_id
    )
    if start:
        cost_q = cost_q.filter(EquipmentCost.date >= start)
    if end:
        cost_q = cost_q.filter(EquipmentCost.date <= end)
    costs = {eid: float(total or 0) for eid, total in cost_q.group_by(EquipmentCost.equipment_id)}

    rows = []
    for equipment in s.query(Equipment).filter(Equipment.tenant_id == tenant_id).all():
        income, count = revenue.get(equipment.id, (0.0, 0))
        spent = costs.get(equipment.id, 0.0)
        profit = income - spent
        investment = _investment(equipment)
        rows.append(
            {
                "id": equipment.id,
                "name": equipment.name,
                "category": equipment.category,
                "investment": round(investment, 2),
                "revenue": round(income, 2),
                "costs": round(spent, 2),
                "profit": round(profit, 2),
                "profit_margin": _pct(profit, income),
                "roi": _pct(profit, investment),
                "bookings_count": count,
            }
        )
    key = _SORT_KEYS[sort_by]
    rows.sort(key=lambda r: (r[key], -r["id"]), reverse=True)

    total_revenue = sum(r["revenue"] for r in rows)
    total_costs = sum(r["costs"] for r in rows)
    total_profit = total_revenue - total_costs
    return {
        "equipments": rows,
        "totals": {
            "revenue": round(total_revenue, 2),
            "costs": round(total_costs, 2),
            "profit": round(total_profit, 2),
            "profit_margin": _pct(total_profit, total_revenue),
            "bookings_count": sum(r["bookings_count"] for r in rows),
        },
        "top_performers": rows[:5],
        "bottom_performers": list(reversed(rows[-5:])),
    }


def equipment_financials(s: "Session", equipment) -> dict[str, Any]:
    """Lifetime figures of one equipment with a 12-month revenue/cost series."""
    from app.rental.modules.bookings.models import Booking, BookingItem
    from app.rental.modules.equipment.models import EquipmentCost

    items = (
        s.query(BookingItem)
        .join(Booking, Booking.id == BookingItem.booking_id)
        .filter(BookingItem.equipment_id == equipment.id)
        .order_by(Booking.created_at.desc(), Booking.id.desc())
        .all()
    )
    completed = [i for i in items if i.booking.status == "COMPLETED"]
    revenue = sum(float(i.total_price or 0) for i in completed)
    cost_rows = (
        s.query(EquipmentCost)
        .filter(EquipmentCost.equipment_id == equipment.id)
        .order_by(EquipmentCost.date.desc(), EquipmentCost.id.desc())
        .all()
    )
    total_costs = sum(float(c.amount or 0) for c in cost_rows)
    by_type: dict[str, float] = {}
    for c in cost_rows:
        by_type[c.type] = by_type.get(c.type, 0.0) + float(c.amount or 0)

    first_month = date.today().replace(day=1) - relativedelta(months=11)
    monthly = {_month_key(first_month + relativedelta(months=i)): {"revenue": 0.0, "costs": 0.0} for i in range(12)}
    for item in completed:
        bucket = monthly.get(_month_key(item.booking.created_at))
        if bucket is not None:
            bucket["revenue"] += float(item.total_price or 0)
    for c in cost_rows:
        bucket = monthly.get(_month_key(c.date))
        if bucket is not None:
            bucket["costs"] += float(c.amount or 0)

    profit = revenue - total_costs
    investment = _investment(equipment)
    return {
        "equipment": {"id": equipment.id, "name": equipment.name, "category": equipment.category},
        "summary": {
            "investment": round(investment, 2),
            "revenue": round(revenue, 2),
            "costs": round(total_costs, 2),
            "profit": round(profit, 2),
            "profit_margin": _pct(profit, revenue),
            "roi": _pct(profit, investment),
            "bookings_count": len({i.booking_id for i in items}),
            "completed_bookings": len({i.booking_id for i in completed}),
        },
        "costs_by_type": [{"type": t, "total": round(v, 2)} for t, v in sorted(by_type.items())],
        "recent_costs": [
            {"id": c.id, "type": c.type, "description": c.description, "amount": c.amount, "date": iso(c.date)}
            for c in cost_rows[:10]
        ],
        "recent_bookings": [
            {
                "id": i.booking.id,
                "booking_number": i.booking.booking_number,
                "status": i.booking.status,
                "start_date": iso(i.booking.start_date),
                "end_date": iso(i.booking.end_date),
                "quantity": i.quantity,
                "total_price": i.total_price,
            }
            for i in items[:10]
        ],
        "monthly_data": [
            {
                "month": month,
                "revenue": round(data["revenue"], 2),
                "costs": round(data["costs"], 2),
                "profit": round(data["revenue"] - data["costs"], 2),
            }
            for month, data in monthly.items()
        ],
    }


# ---------- Serialization ----------
def serialize_category(c: TransactionCategory) -> dict[str, Any]:
    return {
        "id": c.id,
        "name": c.name,
        "type": c.type,
        "color": c.color,
        "is_default": bool(c.is_default),
    }


def serialize_transaction(tx: FinancialTransaction) -> dict[str, Any]:
    return {
        "id": tx.id,
        "type": tx.type,
        "status": tx.status,
        "description": tx.description,
        "amount": tx.amount,
        "date": iso(tx.date),
        "due_date": iso(tx.due_date),
        "paid_at": iso(tx.paid_at),
        "category": serialize_category(tx.category) if tx.category else None,
        "category_id": tx.category_id,
        "booking_id": tx.booking_id,
        "equipment_id": tx.equipment_id,
        "recurring_id": tx.recurring_id,
        "notes": tx.notes,
        "created_at": iso(tx.created_at),
        "updated_at": iso(tx.updated_at),
    }


def serialize_recurring(rec: RecurringTransaction) -> dict[str, Any]:
    return {
        "id": rec.id,
        "type": rec.type,
        "description": rec.description,
        "amount": rec.amount,
        "category": serialize_category(rec.category) if rec.category else None,
        "category_id": rec.category_id,
        "interval_days": rec.interval_days,
        "start_date": iso(rec.start_date),
        "end_date": iso(rec.end_date),
        "next_due_date": iso(rec.next_due_date),
        "status": rec.status,
        "notes": rec.notes,
        "created_at": iso(rec.created_at),
    }

