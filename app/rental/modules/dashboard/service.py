from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func

from app.rental.errors import ValidationError
from app.rental.models import ActivityLog
from app.rental.utils import iso, month_bounds, parse_date, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

MIN_SEARCH_LENGTH = 2
SEARCH_LIMIT = 5


def _sum_booking_totals(s: "Session", tenant_id: int, *criteria) -> float:
    from app.rental.modules.bookings.models import Booking

    total = s.query(func.coalesce(func.sum(Booking.total_price), 0.0)).filter(Booking.tenant_id == tenant_id, *criteria)
    return float(total.scalar() or 0.0)


def dashboard_stats(s: "Session", tenant_id: int) -> dict[str, Any]:
    from app.rental.modules.bookings.models import Booking
    from app.rental.modules.customers.models import Customer
    from app.rental.modules.equipment.models import Equipment

    customers_total = s.query(func.count(Customer.id)).filter(Customer.tenant_id == tenant_id).scalar() or 0
    equipment_total = s.query(func.count(Equipment.id)).filter(Equipment.tenant_id == tenant_id).scalar() or 0
    equipment_available = (
        s.query(func.count(Equipment.id))
        .filter(Equipment.tenant_id == tenant_id, Equipment.status == "AVAILABLE")
        .scalar()
        or 0
    )

    by_status = dict(
        s.query(Booking.status, func.count(Booking.id))
        .filter(Booking.tenant_id == tenant_id)
        .group_by(Booking.status)
        .all()
    )
    by_category = (
        s.query(Equipment.category, func.count(Equipment.id))
        .filter(Equipment.tenant_id == tenant_id)
        .group_by(Equipment.category)
        .order_by(func.count(Equipment.id).desc(), Equipment.category.asc())
        .all()
    )

    month_start, month_end = month_bounds()
    recent = (
        s.query(Booking)
        .filter(Booking.tenant_id == tenant_id)
        .order_by(Booking.created_at.desc(), Booking.id.desc())
        .limit(5)
        .all()
    )

    return {
        "customers": {"total": customers_total},
        "equipment": {"total": equipment_total, "available": equipment_available},
        "bookings": {
            "total": sum(by_status.values()),
            "active": by_status.get("CONFIRMED", 0),
            "pending": by_status.get("PENDING", 0),
        },
        "revenue": {
            "total": _sum_booking_totals(s, tenant_id, Booking.status == "COMPLETED"),
            "this_month": _sum_booking_totals(
                s,
                tenant_id,
                Booking.status == "COMPLETED",
                Booking.created_at >= month_start,
                Booking.created_at < month_end,
            ),
            "pending": _sum_booking_totals(s, tenant_id, Booking.status.in_(("PENDING", "CONFIRMED"))),
        },
        "equipment_by_category": [{"category": category, "count": count} for category, count in by_category],
        "recent_bookings": [
            {
                "id": b.id,
                "booking_number": b.booking_number,
                "start_date": iso(b.start_date),
                "end_date": iso(b.end_date),
                "total_price": b.total_price,
                "status": b.status,
                "customer": {"id": b.customer.id, "name": b.customer.name} if b.customer else None,
                "equipment": [item.equipment.name for item in b.items if item.equipment],
            }
            for b in recent
        ],
    }


def global_search(s: "Session", tenant_id: int, query: str | None) -> list[dict[str, Any]]:
    """Up to five hits each from equipment, customers and bookings."""
    from app.rental.modules.bookings.models import Booking
    from app.rental.modules.customers.models import Customer
    from app.rental.modules.equipment.models import Equipment

    query = (query or "").strip()
    if len(query) < MIN_SEARCH_LENGTH:
        return []
    like = f"%{query}%"

    equipments = (
        s.query(Equipment)
        .filter(
            Equipment.tenant_id == tenant_id,
            Equipment.name.ilike(like) | Equipment.category.ilike(like) | Equipment.description.ilike(like),
        )
        .order_by(Equipment.name.asc())
        .limit(SEARCH_LIMIT)
        .all()
    )
    customers = (
        s.query(Customer)
        .filter(
            Customer.tenant_id == tenant_id,
            Customer.name.ilike(like)
            | Customer.email.ilike(like)
            | Customer.phone.ilike(like)
            | Customer.cpf_cnpj.ilike(like),
        )
        .order_by(Customer.name.asc())
        .limit(SEARCH_LIMIT)
        .all()
    )
    bookings = (
        s.query(Booking)
        .join(Customer, Customer.id == Booking.customer_id)
        .filter(Booking.tenant_id == tenant_id, Booking.booking_number.ilike(like) | Customer.name.ilike(like))
        .order_by(Booking.created_at.desc(), Booking.id.desc())
        .limit(SEARCH_LIMIT)
        .all()
    )

    results: list[dict[str, Any]] = []
    for e in equipments:
        results.append(
            {
                "type": "equipment",
                "id": e.id,
                "title": e.name,
                "subtitle": e.category,
                "status": e.status,
                "url": f"/admin/equipment/{e.id}",
            }
        )
    for c in customers:
        results.append(
            {
                "type": "customer",
                "id": c.id,
                "title": c.name,
                "subtitle": c.email or c.phone,
                "status": None,
                "url": f"/admin/customers/{c.id}",
            }
        )
    for b in bookings:
        results.append(
            {
                "type": "booking",
                "id": b.id,
                "title": b.booking_number,
                "subtitle": b.customer.name if b.customer else None,
                "status": b.status,
                "url": f"/admin/bookings/{b.id}",
            }
        )
    return results


def parse_log_filters(args) -> dict[str, Any]:
    start_date = parse_date(args.get("start_date"), "start_date")
    end_date = parse_date(args.get("end_date"), "end_date")
    if start_date and end_date and end_date < start_date:
        raise ValidationError("Data final deve ser posterior à data inicial")
    return {
        "entity": (args.get("entity") or "").strip().upper() or None,
        "action": (args.get("action") or "").strip().upper() or None,
        "user_id": parse_int(args.get("user_id"), "user_id"),
        "entity_id": (args.get("entity_id") or "").strip() or None,
        "start_date": start_date,
        "end_date": end_date,
    }


def query_activity_logs(s: "Session", tenant_id: int, filters: dict[str, Any]):
    q = s.query(ActivityLog).filter(ActivityLog.tenant_id == tenant_id)
    if filters.get("entity"):
        q = q.filter(ActivityLog.entity == filters["entity"])
    if filters.get("action"):
        q = q.filter(ActivityLog.action == filters["action"])
    if filters.get("user_id"):
        q = q.filter(ActivityLog.user_id == filters["user_id"])
    if filters.get("entity_id"):
        q = q.filter(ActivityLog.entity_id == filters["entity_id"])
    if filters.get("start_date"):
        q = q.filter(ActivityLog.created_at >= datetime.combine(filters["start_date"], datetime.min.time()))
    if filters.get("end_date"):
        q = q.filter(ActivityLog.created_at <= datetime.combine(filters["end_date"], datetime.max.time()))
    return q.order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())
