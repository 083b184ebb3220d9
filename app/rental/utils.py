from __future__ import annotations

from datetime import date, datetime
from typing import Any

from app.rental.errors import ValidationError


def clean_str(value: Any) -> str | None:
    """Strip strings; blank becomes None."""
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def parse_date(value: Any, field: str = "date") -> date | None:
    """Parse YYYY-MM-DD (or an ISO datetime) into a date."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = str(value).strip()
    if not raw:
        return None
    try:
        if len(raw) > 10:
            return datetime.fromisoformat(raw.replace("Z", "+00:00")).date()
        return date.fromisoformat(raw)
    except ValueError:
        raise ValidationError(f"Data inválida em '{field}': {raw}")


def parse_datetime(value: Any, field: str = "datetime") -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, datetime.min.time())
    raw = str(value).strip()
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"Data/hora inválida em '{field}': {raw}")
    return parsed.replace(tzinfo=None)


def parse_int(value: Any, field: str = "value") -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"Número inteiro inválido em '{field}'")
    try:
        return int(str(value).strip())
    except ValueError:
        raise ValidationError(f"Número inteiro inválido em '{field}': {value}")


def parse_float(value: Any, field: str = "value") -> float | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"Valor numérico inválido em '{field}'")
    try:
        return float(str(value).strip().replace(",", "."))
    except ValueError:
        raise ValidationError(f"Valor numérico inválido em '{field}': {value}")


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in ("1", "true", "yes", "on", "sim")


def iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def month_bounds(today: date | None = None) -> tuple[datetime, datetime]:
    """[first instant of the month, first instant of next month)."""
    today = today or date.today()
    start = datetime(today.year, today.month, 1)
    if today.month == 12:
        end = datetime(today.year + 1, 1, 1)
    else:
        end = datetime(today.year, today.month + 1, 1)
    return start, end
