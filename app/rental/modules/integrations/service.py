from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from app.rental.activity import record_activity
from app.rental.errors import ForbiddenError, NotFoundError, ValidationError, require_fields
from app.rental.modules.integrations.models import ApiKey
from app.rental.rbac import PERMISSIONS, granted_permissions
from app.rental.security import generate_api_key
from app.rental.utils import clean_str, iso, parse_bool, parse_datetime

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.rental.models import User


def get_api_key_or_404(s: "Session", tenant_id: int, key_id: int) -> ApiKey:
    api_key = s.get(ApiKey, key_id)
    if not api_key or api_key.tenant_id != tenant_id:
        raise NotFoundError("Chave de API não encontrada")
    return api_key


def parse_permissions(raw: Any) -> list[str] | None:
    if raw in (None, "", []):
        return None
    if isinstance(raw, str):
        raw = raw.split(",")
    if not isinstance(raw, list):
        raise ValidationError("permissions deve ser uma lista")
    perms = []
    for item in raw:
        name = str(item or "").strip().upper()
        if not name:
            continue
        if name not in PERMISSIONS:
            raise ValidationError(f"Permissão desconhecida: {name}")
        if name not in perms:
            perms.append(name)
    return perms or None


def ensure_grantable(
    permissions: list[str] | None,
    grantor_permissions: frozenset[str],
    *,
    grantor_is_key: bool = False,
) -> None:
    """
    A principal may only hand out what it holds itself. Keys minted by another
    key must be scoped explicitly, since an unscoped key acts with the ADMIN set.
    """
    if permissions is None:
        if grantor_is_key:
            raise ValidationError(
                "Chaves criadas via API precisam de permissões explícitas",
                payload={"missing_fields": ["permissions"]},
            )
    excess = sorted(granted_permissions(permissions) - grantor_permissions)
    if excess:
        raise ForbiddenError(
            "Não é possível conceder permissões que você não possui",
            payload={"forbidden_permissions": excess},
        )


def create_api_key(
    s: "Session",
    tenant_id: int,
    payload: dict,
    actor: "User | None",
    *,
    grantor_permissions: frozenset[str] | None = None,
    grantor_is_key: bool = False,
) -> tuple[ApiKey, str]:
    """Returns (row, full key). The full key is never retrievable again."""
    require_fields(payload, ("name",))
    permissions = parse_permissions(payload.get("permissions"))
    if grantor_permissions is not None:
        ensure_grantable(permissions, grantor_permissions, grantor_is_key=grantor_is_key)
    expires_at = parse_datetime(payload.get("expires_at"), "expires_at")
    if expires_at and expires_at <= datetime.utcnow():
        raise ValidationError("A data de expiração deve estar no futuro")

    key, key_hash, prefix = generate_api_key()
    api_key = ApiKey(
        tenant_id=tenant_id,
        name=clean_str(payload.get("name")),
        key_hash=key_hash,
        prefix=prefix,
        permissions=permissions,
        expires_at=expires_at,
        active=True,
        created_at=datetime.utcnow(),
    )
    s.add(api_key)
    s.flush()
    record_activity(
        s,
        tenant_id=tenant_id,
        actor=actor,
        action="CREATE",
        entity="API_KEY",
        entity_id=api_key.id,
        description=f"Chave de API \"{api_key.name}\" criada",
        metadata={"prefix": prefix, "permissions": permissions},
    )
    return api_key, key


def set_api_key_active(
    s: "Session",
    api_key: ApiKey,
    active: Any,
    actor: "User | None",
    *,
    grantor_permissions: frozenset[str] | None = None,
) -> None:
    if active is None:
        raise ValidationError("Campos obrigatórios: active", payload={"missing_fields": ["active"]})
    enable = parse_bool(active)
    if enable and not api_key.active and grantor_permissions is not None:
        # Re-enabling a broader key is a grant as well.
        ensure_grantable(api_key.permissions, grantor_permissions)
    api_key.active = enable
    record_activity(
        s,
        tenant_id=api_key.tenant_id,
        actor=actor,
        action="UPDATE",
        entity="API_KEY",
        entity_id=api_key.id,
        description=f"Chave de API \"{api_key.name}\" {'ativada' if api_key.active else 'desativada'}",
    )


def revoke_api_key(s: "Session", api_key: ApiKey, actor: "User | None") -> None:
    record_activity(
        s,
        tenant_id=api_key.tenant_id,
        actor=actor,
        action="DELETE",
        entity="API_KEY",
        entity_id=api_key.id,
        description=f"Chave de API \"{api_key.name}\" revogada",
        metadata={"prefix": api_key.prefix},
    )
    s.delete(api_key)


def serialize_api_key(k: ApiKey) -> dict[str, Any]:
    return {
        "id": k.id,
        "name": k.name,
        "prefix": k.prefix,
        "permissions": k.permissions or [],
        "active": k.active,
        "last_used_at": iso(k.last_used_at),
        "expires_at": iso(k.expires_at),
        "created_at": iso(k.created_at),
    }
