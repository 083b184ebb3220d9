from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

from sqlalchemy import func

from app.rental.errors import PlanLimitError
from app.rental.utils import month_bounds

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.rental.modules.billing.models import Plan

NEAR_LIMIT_PERCENT = 80
NO_PLAN_MESSAGE = "Nenhum plano ativo encontrado"


@dataclass(frozen=True)
class LimitCheck:
    allowed: bool
    current: int
    max: int
    percentage: int
    is_unlimited: bool
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def evaluate_limit(current: int, maximum: int, noun: str) -> LimitCheck:
    """Pure limit rule: -1 is unlimited, reaching the max blocks further creation."""
    if maximum == -1:
        return LimitCheck(allowed=True, current=current, max=-1, percentage=0, is_unlimited=True)
    percentage = round(current / maximum * 100) if maximum > 0 else 100
    if current >= maximum:
        return LimitCheck(
            allowed=False,
            current=current,
            max=maximum,
            percentage=percentage,
            is_unlimited=False,
            message=f"Limite de {maximum} {noun} atingido. Faça upgrade para adicionar mais.",
        )
    return LimitCheck(allowed=True, current=current, max=maximum, percentage=percentage, is_unlimited=False)


def _no_plan() -> LimitCheck:
    return LimitCheck(allowed=False, current=0, max=0, percentage=100, is_unlimited=False, message=NO_PLAN_MESSAGE)


def tenant_plan(s: "Session", tenant_id: int) -> "Plan | None":
    from app.rental.modules.billing.models import Subscription

    sub = s.query(Subscription).filter(Subscription.tenant_id == tenant_id).one_or_none()
    if not sub or sub.status == "CANCELED":
        return None
    return sub.plan


def count_users(s: "Session", tenant_id: int) -> int:
    from app.rental.models import User

    return s.query(func.count(User.id)).filter(User.tenant_id == tenant_id, User.is_active.is_(True)).scalar() or 0


def count_equipments(s: "Session", tenant_id: int) -> int:
    from app.rental.modules.equipment.models import Equipment

    return (
        s.query(func.count(Equipment.id))
        .filter(Equipment.tenant_id == tenant_id, Equipment.status != "INACTIVE")
        .scalar()
        or 0
    )


def count_bookings_this_month(s: "Session", tenant_id: int) -> int:
    from app.rental.modules.bookings.models import Booking

    start, end = month_bounds()
    return (
        s.query(func.count(Booking.id))
        .filter(Booking.tenant_id == tenant_id, Booking.created_at >= start, Booking.created_at < end)
        .scalar()
        or 0
    )


def check_user_limit(s: "Session", tenant_id: int) -> LimitCheck:
    plan = tenant_plan(s, tenant_id)
    if plan is None:
        return _no_plan()
    return evaluate_limit(count_users(s, tenant_id), plan.max_users, "usuários")


def check_equipment_limit(s: "Session", tenant_id: int) -> LimitCheck:
    plan = tenant_plan(s, tenant_id)
    if plan is None:
        return _no_plan()
    return evaluate_limit(count_equipments(s, tenant_id), plan.max_equipments, "equipamentos")


def check_booking_limit(s: "Session", tenant_id: int) -> LimitCheck:
    plan = tenant_plan(s, tenant_id)
    if plan is None:
        return _no_plan()
    return evaluate_limit(count_bookings_this_month(s, tenant_id), plan.max_bookings_per_month, "reservas neste mês")


def enforce_limit(check: LimitCheck) -> None:
    if not check.allowed:
        raise PlanLimitError(check.message, payload={"current": check.current, "max": check.max})


def _usage_entry(current: int, maximum: int) -> dict[str, Any]:
    if maximum == -1:
        return {"current": current, "max": -1, "percentage": 0, "is_unlimited": True}
    percentage = round(current / maximum * 100) if maximum > 0 else 100
    return {"current": current, "max": maximum, "percentage": percentage, "is_unlimited": False}


def get_tenant_usage(s: "Session", tenant_id: int) -> dict[str, Any]:
    plan = tenant_plan(s, tenant_id)
    users = count_users(s, tenant_id)
    equipments = count_equipments(s, tenant_id)
    bookings = count_bookings_this_month(s, tenant_id)

    if plan is None:
        entries = {
            "users": _usage_entry(users, 0),
            "equipments": _usage_entry(equipments, 0),
            "bookings_this_month": _usage_entry(bookings, 0),
        }
    else:
        entries = {
            "users": _usage_entry(users, plan.max_users),
            "equipments": _usage_entry(equipments, plan.max_equipments),
            "bookings_this_month": _usage_entry(bookings, plan.max_bookings_per_month),
        }

    limited = [e for e in entries.values() if not e["is_unlimited"]]
    return {
        **entries,
        "plan_name": plan.name if plan else None,
        "is_over_any_limit": any(e["percentage"] >= 100 for e in limited),
        "is_near_any_limit": any(e["percentage"] >= NEAR_LIMIT_PERCENT for e in limited),
    }
