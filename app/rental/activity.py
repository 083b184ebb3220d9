import json
from typing import Any

from flask import g, has_request_context, request
from sqlalchemy.orm import Session

from app.rental.models import ActivityLog, User

ACTIONS = ("CREATE", "UPDATE", "DELETE", "LOGIN", "LOGIN_FAILED", "LOGOUT", "STOCK_MOVEMENT", "OTHER")
ENTITIES = (
    "USER",
    "EQUIPMENT",
    "CUSTOMER",
    "BOOKING",
    "STOCK",
    "TRANSACTION",
    "RECURRING_TRANSACTION",
    "CATEGORY",
    "INVOICE",
    "SUBSCRIPTION",
    "API_KEY",
    "LEAD",
    "TENANT",
    "FISCAL_CONFIG",
    "MAINTENANCE",
)


def record_activity(
    s: Session,
    *,
    tenant_id: int,
    actor: User | None,
    action: str,
    entity: str,
    entity_id: str | int | None = None,
    description: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> ActivityLog:
    """
    Append-only activity log helper.
    """
    in_request = has_request_context()
    rid = request_id or (getattr(g, "request_id", None) if in_request else None)
    log = ActivityLog(
        tenant_id=tenant_id,
        user_id=actor.id if actor else None,
        action=action,
        entity=entity,
        entity_id=str(entity_id) if entity_id is not None else None,
        description=(description or "")[:512] or None,
        metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
        request_id=rid,
        ip_address=request.remote_addr if in_request else None,
    )
    s.add(log)
    return log


def serialize_activity(log: ActivityLog) -> dict[str, Any]:
    return {
        "id": log.id,
        "action": log.action,
        "entity": log.entity,
        "entity_id": log.entity_id,
        "description": log.description,
        "metadata": json.loads(log.metadata_json) if log.metadata_json else None,
        "request_id": log.request_id,
        "ip_address": log.ip_address,
        "created_at": log.created_at.isoformat() if log.created_at else None,
        "user": (
            {"id": log.user.id, "name": log.user.name, "email": log.user.email, "role": log.user.role}
            if log.user
            else None
        ),
    }
