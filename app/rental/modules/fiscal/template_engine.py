"""Service description (discriminacao) templates for NFS-e."""

from __future__ import annotations

import re
from datetime import date
from typing import Any, Iterable

DEFAULT_DESCRIPTION_TEMPLATE = (
    "Locação de equipamentos conforme reserva #{bookingNumber}.\n"
    "Período: {startDate} a {endDate} ({totalDays} dias).\n"
    "\n"
    "Itens:\n"
    "{itemsList}\n"
    "\n"
    "Valor total: R$ {totalPrice}"
)

TEMPLATE_VARIABLES = (
    {"key": "bookingNumber", "label": "Número da Reserva", "example": "RES-0001"},
    {"key": "startDate", "label": "Data de Início", "example": "01/12/2025"},
    {"key": "endDate", "label": "Data de Fim", "example": "05/12/2025"},
    {"key": "totalDays", "label": "Total de Dias", "example": "5"},
    {"key": "customerName", "label": "Nome do Cliente", "example": "João da Silva"},
    {
        "key": "itemsList",
        "label": "Lista de Itens",
        "example": "- Gerador 50kVA (2x) - R$ 500,00\n- Compressor (1x) - R$ 200,00",
    },
    {"key": "totalPrice", "label": "Valor Total", "example": "1.200,00"},
)

_VARIABLE_RE = re.compile(r"#?\{(\w+)\}")


def process_template(template: str, variables: dict[str, Any]) -> str:
    """Substitute both {var} and #{var}. Unknown placeholders are left as-is."""

    def replace(match: re.Match) -> str:
        key = match.group(1)
        if key in variables:
            return str(variables[key])
        return match.group(0)

    return _VARIABLE_RE.sub(replace, template or "")


def validate_template(template: str) -> list[str]:
    """Return the variable names in `template` that are not known."""
    valid = {v["key"] for v in TEMPLATE_VARIABLES}
    return [name for name in _VARIABLE_RE.findall(template or "") if name not in valid]


def preview_template(template: str) -> str:
    return process_template(template, {v["key"]: v["example"] for v in TEMPLATE_VARIABLES})


def format_currency(value: float | int | None) -> str:
    """pt-BR money without symbol: 1234.5 -> '1.234,50'."""
    text = f"{float(value or 0):,.2f}"
    return text.replace(",", "_").replace(".", ",").replace("_", ".")


def format_date(value: date | None) -> str:
    if value is None:
        return ""
    return value.strftime("%d/%m/%Y")


def calculate_days(start: date, end: date) -> int:
    """Inclusive day count."""
    return abs((end - start).days) + 1


def format_items_list(items: Iterable[dict[str, Any]]) -> str:
    return "\n".join(
        f"- {item['equipment_name']} ({item['quantity']}x) - R$ {format_currency(item['total_price'])}"
        for item in items
    )


def booking_variables(booking) -> dict[str, Any]:
    return {
        "bookingNumber": booking.booking_number,
        "startDate": format_date(booking.start_date),
        "endDate": format_date(booking.end_date),
        "totalDays": calculate_days(booking.start_date, booking.end_date),
        "customerName": booking.customer.name if booking.customer else "",
        "itemsList": format_items_list(
            {
                "equipment_name": item.equipment.name if item.equipment else f"Equipamento {item.equipment_id}",
                "quantity": item.quantity,
                "total_price": item.total_price,
            }
            for item in booking.items
        ),
        "totalPrice": format_currency(booking.total_price),
    }
