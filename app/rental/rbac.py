from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, g, redirect, request, url_for

from app.rental.errors import ForbiddenError, UnauthorizedError
from app.rental.models import User
from app.rental.tenancy import current_tenant_id

ROLES = ("SUPER_ADMIN", "ADMIN", "MANAGER", "OPERATOR", "VIEWER")

PERMISSIONS = (
    "CREATE_USER",
    "EDIT_USER",
    "DELETE_USER",
    "CREATE_EQUIPMENT",
    "EDIT_EQUIPMENT",
    "DELETE_EQUIPMENT",
    "CREATE_BOOKING",
    "EDIT_BOOKING",
    "DELETE_BOOKING",
    "CREATE_CUSTOMER",
    "EDIT_CUSTOMER",
    "DELETE_CUSTOMER",
    "VIEW_REPORTS",
    "MANAGE_FINANCIAL",
    "MANAGE_INTEGRATIONS",
    "MANAGE_SETTINGS",
)

ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    "SUPER_ADMIN": frozenset(PERMISSIONS),
    "ADMIN": frozenset(PERMISSIONS),
    "MANAGER": frozenset(
        {
            "CREATE_EQUIPMENT",
            "EDIT_EQUIPMENT",
            "CREATE_BOOKING",
            "EDIT_BOOKING",
            "CREATE_CUSTOMER",
            "EDIT_CUSTOMER",
            "VIEW_REPORTS",
            "MANAGE_FINANCIAL",
        }
    ),
    "OPERATOR": frozenset({"CREATE_BOOKING", "EDIT_BOOKING", "CREATE_CUSTOMER", "VIEW_REPORTS"}),
    "VIEWER": frozenset({"VIEW_REPORTS"}),
}

ROLE_LABELS = {
    "SUPER_ADMIN": "Super Administrador",
    "ADMIN": "Administrador",
    "MANAGER": "Gerente",
    "OPERATOR": "Operador",
    "VIEWER": "Visualizador",
}


def role_permissions(role: str | None) -> frozenset[str]:
    return ROLE_PERMISSIONS.get((role or "").upper(), frozenset())


def has_permission(role: str | None, permission_key: str) -> bool:
    return permission_key in role_permissions(role)


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active:
        return False
    return has_permission(user.role, permission_key)


def granted_permissions(permissions: list[str] | None) -> frozenset[str]:
    """Grants of a key's permission list. An unscoped key carries the ADMIN set."""
    if not permissions:
        return role_permissions("ADMIN")
    return frozenset(permissions)


def api_key_permissions(api_key: Any) -> frozenset[str]:
    if api_key is None or not api_key.active:
        return frozenset()
    return granted_permissions(api_key.permissions)


def api_key_has_permission(api_key: Any, permission_key: str) -> bool:
    return permission_key in api_key_permissions(api_key)


def principal_permissions() -> frozenset[str]:
    user: User | None = getattr(g, "current_user", None)
    if user is not None:
        return role_permissions(user.role) if user.is_active else frozenset()
    return api_key_permissions(getattr(g, "api_key", None))


def principal_has_permission(permission_key: str) -> bool:
    user: User | None = getattr(g, "current_user", None)
    if user is not None:
        return user_has_permission(user, permission_key)
    return api_key_has_permission(getattr(g, "api_key", None), permission_key)


def require_permission(permission_key: str | None = None) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Guard for server-rendered admin pages."""

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            # Unauthenticated → redirect to login.
            if not user or not user.is_active:
                nxt = request.full_path or request.path
                # Avoid trailing '?' from full_path when there is no query string.
                if nxt.endswith("?"):
                    nxt = nxt[:-1]
                return redirect(url_for("auth.login_get", next=nxt))
            # Authenticated but unauthorized → 403
            if permission_key and not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator


def api_auth(permission_key: str | None = None) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Guard for JSON endpoints. Accepts a session user or an API key principal.
    Raises ApiError subclasses so the response is always `{"error": ...}`.
    """

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            if current_tenant_id() is None:
                raise UnauthorizedError()
            if permission_key and not principal_has_permission(permission_key):
                g.missing_permission = permission_key
                raise ForbiddenError("Sem permissão para esta operação", payload={"missing_permission": permission_key})
            return fn(*args, **kwargs)

        return wrapped

    return decorator
