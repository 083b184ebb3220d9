from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from app.rental.api import current_actor, json_body, page_args, pagination
from app.rental.db import db_session
from app.rental.errors import ValidationError
from app.rental.models import Tenant
from app.rental.modules.fiscal.models import INVOICE_STATUSES, Invoice
from app.rental.modules.fiscal.service import (
    NfseService,
    get_fiscal_config,
    get_invoice_or_404,
    serialize_fiscal_config,
    serialize_invoice,
    update_fiscal_config,
)
from app.rental.rbac import api_auth
from app.rental.tenancy import require_tenant_id
from app.rental.utils import parse_int

bp = Blueprint("fiscal_api", __name__)


def _service(s) -> NfseService:
    return NfseService(s, config=current_app.config)


@bp.get("/fiscal/config")
@api_auth()
def get_config():
    s = db_session()
    tenant = s.get(Tenant, require_tenant_id())
    return jsonify(
        serialize_fiscal_config(
            tenant, get_fiscal_config(s, tenant.id), encryption_key=current_app.config.get("FISCAL_ENCRYPTION_KEY")
        )
    )


@bp.put("/fiscal/config")
@api_auth("MANAGE_INTEGRATIONS")
def put_config():
    s = db_session()
    tenant = s.get(Tenant, require_tenant_id())
    key = current_app.config.get("FISCAL_ENCRYPTION_KEY")
    config = update_fiscal_config(s, tenant, json_body(), encryption_key=key, actor=current_actor())
    s.commit()
    return jsonify(serialize_fiscal_config(tenant, config, encryption_key=key))


@bp.post("/fiscal/test-connection")
@api_auth("MANAGE_INTEGRATIONS")
def test_connection():
    ok = _service(db_session()).test_connection(require_tenant_id())
    return jsonify({"success": ok, "message": "Conexão OK" if ok else "Credenciais do Focus NFe inválidas"})


@bp.get("/invoices")
@api_auth()
def list_invoices():
    s = db_session()
    q = s.query(Invoice).filter(Invoice.tenant_id == require_tenant_id())
    status = (request.args.get("status") or "").strip().upper()
    if status:
        if status not in INVOICE_STATUSES:
            raise ValidationError(f"Status inválido: {status}")
        q = q.filter(Invoice.status == status)
    booking_id = parse_int(request.args.get("booking_id"), "booking_id")
    if booking_id:
        q = q.filter(Invoice.booking_id == booking_id)

    page, limit = page_args()
    total = q.count()
    rows = q.order_by(Invoice.created_at.desc(), Invoice.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return jsonify({"invoices": [serialize_invoice(i) for i in rows], "pagination": pagination(page, limit, total)})


@bp.post("/invoices")
@api_auth("MANAGE_FINANCIAL")
def create_invoice():
    from app.rental.modules.bookings.service import get_booking_or_404

    s = db_session()
    payload = json_body()
    booking_id = parse_int(payload.get("booking_id"), "booking_id")
    if not booking_id:
        raise ValidationError("booking_id é obrigatório")
    booking = get_booking_or_404(s, require_tenant_id(), booking_id)
    invoice = _service(s).create_from_booking(booking, actor=current_actor())
    s.commit()
    if invoice.status == "ERROR":
        return jsonify({"error": invoice.error_message or "Falha na emissão", "invoice": serialize_invoice(invoice)}), 502
    return jsonify(serialize_invoice(invoice)), 201


@bp.get("/invoices/<int:invoice_id>")
@api_auth()
def invoice_detail(invoice_id: int):
    return jsonify(serialize_invoice(get_invoice_or_404(db_session(), require_tenant_id(), invoice_id)))


@bp.delete("/invoices/<int:invoice_id>")
@api_auth("MANAGE_FINANCIAL")
def cancel_invoice(invoice_id: int):
    s = db_session()
    invoice = get_invoice_or_404(s, require_tenant_id(), invoice_id)
    _service(s).cancel(invoice, str(json_body().get("justificativa") or ""), actor=current_actor())
    s.commit()
    return jsonify(serialize_invoice(invoice))


@bp.post("/invoices/<int:invoice_id>/sync")
@api_auth("MANAGE_FINANCIAL")
def sync_invoice(invoice_id: int):
    s = db_session()
    invoice = get_invoice_or_404(s, require_tenant_id(), invoice_id)
    _service(s).sync_status(invoice, actor=current_actor())
    s.commit()
    return jsonify(serialize_invoice(invoice))


@bp.post("/invoices/<int:invoice_id>/resend")
@api_auth("MANAGE_FINANCIAL")
def resend_invoice(invoice_id: int):
    s = db_session()
    invoice = get_invoice_or_404(s, require_tenant_id(), invoice_id)
    emails = json_body().get("emails") or []
    if isinstance(emails, str):
        emails = [e.strip() for e in emails.split(",")]
    sent_to = _service(s).send_email(invoice, emails, actor=current_actor())
    s.commit()
    return jsonify({"success": True, "emails": sent_to})
