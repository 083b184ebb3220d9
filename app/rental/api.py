from __future__ import annotations

from typing import Any

from flask import g, request

from app.rental.errors import ValidationError
from app.rental.models import User

DEFAULT_PER_PAGE = 50
MAX_PER_PAGE = 100


def json_body() -> dict[str, Any]:
    """Request JSON object (form data is accepted too, for admin page posts)."""
    if request.is_json:
        data = request.get_json(silent=True)
        if data is None:
            raise ValidationError("JSON inválido")
        if not isinstance(data, dict):
            raise ValidationError("O corpo da requisição deve ser um objeto JSON")
        return data
    return request.form.to_dict()


def current_actor() -> User | None:
    """Session user, if any. API-key calls have no user actor."""
    return getattr(g, "current_user", None)


def page_args(default_limit: int = DEFAULT_PER_PAGE) -> tuple[int, int]:
    page = request.args.get("page", 1, type=int) or 1
    limit = request.args.get("limit", default_limit, type=int) or default_limit
    return max(page, 1), max(1, min(limit, MAX_PER_PAGE))


def pagination(page: int, limit: int, total: int) -> dict[str, int]:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": (total + limit - 1) // limit if limit else 0,
    }
