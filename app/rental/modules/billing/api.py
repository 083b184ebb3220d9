from __future__ import annotations

import secrets

from flask import Blueprint, current_app, jsonify, request

from app.rental.api import current_actor, json_body
from app.rental.db import db_session
from app.rental.errors import NotFoundError, UnauthorizedError, ValidationError
from app.rental.models import Tenant
from app.rental.modules.billing.limits import get_tenant_usage
from app.rental.modules.billing.models import Plan, Subscription, SubscriptionPayment
from app.rental.modules.billing.service import (
    SubscriptionService,
    get_subscription,
    serialize_payment,
    serialize_plan,
    serialize_subscription,
)
from app.rental.rbac import api_auth
from app.rental.tenancy import require_tenant_id
from app.rental.utils import parse_int

bp = Blueprint("billing_api", __name__)


def _service(s) -> SubscriptionService:
    return SubscriptionService(s, config=current_app.config)


def _tenant_subscription(s) -> Subscription:
    sub = get_subscription(s, require_tenant_id())
    if sub is None:
        raise NotFoundError("Assinatura não encontrada")
    return sub


@bp.get("/plans")
def list_plans():
    s = db_session()
    plans = s.query(Plan).filter(Plan.active.is_(True)).order_by(Plan.price_monthly.asc()).all()
    return jsonify([serialize_plan(p) for p in plans])


@bp.get("/tenant/subscription")
@api_auth()
def tenant_subscription():
    s = db_session()
    tenant_id = require_tenant_id()
    sub = get_subscription(s, tenant_id)
    return jsonify(
        {
            "subscription": serialize_subscription(sub) if sub else None,
            "usage": get_tenant_usage(s, tenant_id),
        }
    )


@bp.post("/subscription")
@api_auth("MANAGE_SETTINGS")
def subscribe():
    s = db_session()
    payload = json_body()
    plan_id = parse_int(payload.get("plan_id"), "plan_id")
    if not plan_id:
        raise ValidationError("plan_id é obrigatório")
    plan = s.get(Plan, plan_id)
    if not plan or not plan.active:
        raise NotFoundError("Plano não encontrado")

    tenant = s.get(Tenant, require_tenant_id())
    service = _service(s)
    existing = get_subscription(s, tenant.id)
    if existing is not None and existing.status != "CANCELED":
        sub = service.change_plan(existing, plan, actor=current_actor())
        status = 200
    else:
        sub = service.create_subscription(tenant, plan, actor=current_actor())
        status = 201
    s.commit()
    return jsonify(serialize_subscription(sub)), status


@bp.post("/subscription/charge")
@api_auth("MANAGE_SETTINGS")
def charge():
    s = db_session()
    payload = json_body()
    sub = _tenant_subscription(s)
    payment = _service(s).create_monthly_charge(sub, payload.get("billing_type") or "BOLETO", actor=current_actor())
    s.commit()
    return jsonify(serialize_payment(payment)), 201


@bp.post("/subscription/cancel")
@api_auth("MANAGE_SETTINGS")
def cancel():
    s = db_session()
    sub = _tenant_subscription(s)
    _service(s).cancel_subscription(sub, actor=current_actor())
    s.commit()
    return jsonify(serialize_subscription(sub))


@bp.get("/subscription/payments/<int:payment_id>/pix")
@api_auth()
def payment_pix(payment_id: int):
    s = db_session()
    sub = _tenant_subscription(s)
    payment = s.get(SubscriptionPayment, payment_id)
    if not payment or payment.subscription_id != sub.id:
        raise NotFoundError("Pagamento não encontrado")
    return jsonify(_service(s).pix_qr_code(payment))


@bp.post("/webhooks/asaas")
def asaas_webhook():
    expected = (current_app.config.get("ASAAS_WEBHOOK_TOKEN") or "").strip()
    if expected:
        received = (request.headers.get("asaas-access-token") or "").strip()
        if not secrets.compare_digest(received.encode("utf-8"), expected.encode("utf-8")):
            current_app.logger.warning("Asaas webhook rejected: invalid access token")
            raise UnauthorizedError("Token de webhook inválido")

    event = request.get_json(silent=True)
    if not isinstance(event, dict):
        raise ValidationError("Payload de webhook inválido")

    s = db_session()
    _service(s).process_payment_webhook(event)
    s.commit()
    return jsonify({"received": True})
