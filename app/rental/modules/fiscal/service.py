from __future__ import annotations

import logging
import secrets
import string
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable

from app.rental.activity import record_activity
from app.rental.errors import ApiError, ConflictError, NotFoundError, ValidationError
from app.rental.modules.fiscal.crypto import decrypt_token, encrypt_token, mask_token
from app.rental.modules.fiscal.errors import (
    FiscalConfigurationError,
    FiscalFeatureDisabledError,
    FocusNfeApiError,
    InvoiceStatusError,
    TomadorDataError,
)
from app.rental.modules.fiscal.focus_client import FocusNfeClient
from app.rental.modules.fiscal.models import (
    FINAL_INVOICE_STATUSES,
    FOCUS_ENVIRONMENTS,
    INVOICE_STATUS_LABELS,
    RETRYABLE_INVOICE_STATUSES,
    Invoice,
    TenantFiscalConfig,
)
from app.rental.modules.fiscal.template_engine import (
    DEFAULT_DESCRIPTION_TEMPLATE,
    booking_variables,
    preview_template,
    process_template,
    validate_template,
)
from app.rental.modules.fiscal.validators import (
    only_numbers,
    validate_cnpj,
    validate_cpf_cnpj,
    validate_inscricao_municipal,
)
from app.rental.utils import clean_str, iso, parse_bool, parse_float, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.rental.models import Tenant, User
    from app.rental.modules.bookings.models import Booking

logger = logging.getLogger(__name__)

FOCUS_STATUS_MAP = {
    "autorizado": "AUTHORIZED",
    "processando_autorizacao": "PROCESSING",
    "erro_autorizacao": "REJECTED",
    "cancelado": "CANCELLED",
}
_REF_ALPHABET = string.ascii_letters + string.digits + "_-"


def map_focus_status(focus_status: str | None) -> str:
    return FOCUS_STATUS_MAP.get((focus_status or "").strip(), "PENDING")


def generate_internal_ref() -> str:
    return "nfse-" + "".join(secrets.choice(_REF_ALPHABET) for _ in range(12))


# ---------- Fiscal config ----------
def get_fiscal_config(s: "Session", tenant_id: int) -> TenantFiscalConfig | None:
    return s.query(TenantFiscalConfig).filter(TenantFiscalConfig.tenant_id == tenant_id).one_or_none()


def missing_fiscal_fields(tenant: "Tenant", config: TenantFiscalConfig | None) -> list[str]:
    missing = []
    if not tenant.cnpj:
        missing.append("cnpj")
    if not tenant.inscricao_municipal:
        missing.append("inscricao_municipal")
    if not tenant.codigo_municipio:
        missing.append("codigo_municipio")
    if not config or not config.focus_nfe_token:
        missing.append("focus_nfe_token")
    return missing


def update_fiscal_config(
    s: "Session", tenant: "Tenant", payload: dict, *, encryption_key: str | None, actor: "User | None"
) -> TenantFiscalConfig:
    config = get_fiscal_config(s, tenant.id)
    if config is None:
        config = TenantFiscalConfig(tenant_id=tenant.id, focus_nfe_environment="HOMOLOGACAO", aliquota_iss=5.0)
        s.add(config)

    changed: list[str] = []

    # Tenant fiscal identity (prestador).
    if "cnpj" in payload:
        cnpj = only_numbers(payload.get("cnpj"))
        if cnpj and not validate_cnpj(cnpj):
            raise ValidationError("CNPJ inválido")
        tenant.cnpj = cnpj or None
        changed.append("cnpj")
    if "inscricao_municipal" in payload:
        im = only_numbers(payload.get("inscricao_municipal"))
        if im and not validate_inscricao_municipal(im):
            raise ValidationError("Inscrição municipal inválida")
        tenant.inscricao_municipal = im or None
        changed.append("inscricao_municipal")
    if "codigo_municipio" in payload:
        code = only_numbers(payload.get("codigo_municipio"))
        if code and len(code) != 7:
            raise ValidationError("Código do município (IBGE) deve ter 7 dígitos")
        tenant.codigo_municipio = code or None
        changed.append("codigo_municipio")

    token = clean_str(payload.get("focus_nfe_token"))
    if token:
        config.focus_nfe_token = encrypt_token(token, encryption_key)
        changed.append("focus_nfe_token")
    if "focus_nfe_environment" in payload:
        environment = (str(payload.get("focus_nfe_environment") or "")).strip().upper()
        if environment not in FOCUS_ENVIRONMENTS:
            raise ValidationError("Ambiente inválido (use HOMOLOGACAO ou PRODUCAO)")
        config.focus_nfe_environment = environment
        changed.append("focus_nfe_environment")
    if "regime_tributario" in payload:
        config.regime_tributario = parse_int(payload.get("regime_tributario"), "regime_tributario")
        changed.append("regime_tributario")
    if "aliquota_iss" in payload:
        aliquota = parse_float(payload.get("aliquota_iss"), "aliquota_iss")
        if aliquota is None or aliquota < 0 or aliquota > 100:
            raise ValidationError("Alíquota de ISS deve estar entre 0 e 100")
        config.aliquota_iss = aliquota
        changed.append("aliquota_iss")
    if "iss_retido" in payload:
        config.iss_retido = parse_bool(payload.get("iss_retido"))
        changed.append("iss_retido")
    if "codigo_servico" in payload:
        config.codigo_servico = clean_str(payload.get("codigo_servico"))
        changed.append("codigo_servico")
    if "descricao_template" in payload:
        template = clean_str(payload.get("descricao_template"))
        invalid = validate_template(template or "")
        if invalid:
            raise ValidationError(
                f"Variáveis inválidas no template: {', '.join(invalid)}", payload={"invalid_variables": invalid}
            )
        config.descricao_template = template
        changed.append("descricao_template")
    if "auto_emit_on_complete" in payload:
        config.auto_emit_on_complete = parse_bool(payload.get("auto_emit_on_complete"))
        changed.append("auto_emit_on_complete")

    now = datetime.utcnow()
    config.updated_at = now
    tenant.updated_at = now
    s.flush()
    record_activity(
        s,
        tenant_id=tenant.id,
        actor=actor,
        action="UPDATE",
        entity="FISCAL_CONFIG",
        entity_id=config.id,
        description="Configuração fiscal atualizada",
        metadata={"fields": changed},
    )
    return config


def serialize_fiscal_config(
    tenant: "Tenant", config: TenantFiscalConfig | None, *, encryption_key: str | None
) -> dict[str, Any]:
    masked = None
    if config and config.focus_nfe_token:
        try:
            masked = mask_token(decrypt_token(config.focus_nfe_token, encryption_key))
        except FiscalConfigurationError:
            masked = "****"
    template = (config.descricao_template if config else None) or DEFAULT_DESCRIPTION_TEMPLATE
    return {
        "nfse_enabled": bool(tenant.nfse_enabled),
        "cnpj": tenant.cnpj,
        "inscricao_municipal": tenant.inscricao_municipal,
        "codigo_municipio": tenant.codigo_municipio,
        "focus_nfe_token": masked,
        "has_token": bool(config and config.focus_nfe_token),
        "focus_nfe_environment": config.focus_nfe_environment if config else "HOMOLOGACAO",
        "regime_tributario": config.regime_tributario if config else None,
        "aliquota_iss": config.aliquota_iss if config else 5.0,
        "iss_retido": bool(config.iss_retido) if config else False,
        "codigo_servico": config.codigo_servico if config else None,
        "descricao_template": template,
        "descricao_preview": preview_template(template),
        "auto_emit_on_complete": bool(config.auto_emit_on_complete) if config else False,
        "missing_fields": missing_fiscal_fields(tenant, config),
    }


# ---------- Invoices ----------
def get_invoice_or_404(s: "Session", tenant_id: int, invoice_id: int) -> Invoice:
    invoice = s.get(Invoice, invoice_id)
    if not invoice or invoice.tenant_id != tenant_id:
        raise NotFoundError("NFS-e não encontrada")
    return invoice


def active_invoice_for(s: "Session", booking_id: int) -> Invoice | None:
    return (
        s.query(Invoice)
        .filter(Invoice.booking_id == booking_id, Invoice.status.notin_(RETRYABLE_INVOICE_STATUSES))
        .order_by(Invoice.id.desc())
        .first()
    )


class NfseService:
    """
    NFS-e issuance for bookings through Focus NFe.

    `client_factory(token, environment)` builds the HTTP client; tests pass a
    fake one.
    """

    def __init__(
        self,
        s: "Session",
        *,
        config: dict | None = None,
        client_factory: Callable[[str, str], Any] | None = None,
    ) -> None:
        self.s = s
        self.config = config or {}
        self.client_factory = client_factory or self._default_client

    def _default_client(self, token: str, environment: str) -> FocusNfeClient:
        return FocusNfeClient(
            token=token,
            environment=environment,
            timeout_seconds=int(self.config.get("FOCUS_NFE_TIMEOUT_SECONDS") or 30),
        )

    def client_for(self, fiscal_config: TenantFiscalConfig | None):
        if not fiscal_config or not fiscal_config.focus_nfe_token:
            raise FiscalConfigurationError("Token do Focus NFe não configurado", ["focus_nfe_token"])
        token = decrypt_token(fiscal_config.focus_nfe_token, self.config.get("FISCAL_ENCRYPTION_KEY"))
        return self.client_factory(token, fiscal_config.focus_nfe_environment or "HOMOLOGACAO")

    # ----- checks -----
    def require_ready(self, tenant: "Tenant") -> TenantFiscalConfig:
        if not tenant.nfse_enabled:
            raise FiscalFeatureDisabledError()
        fiscal_config = get_fiscal_config(self.s, tenant.id)
        missing = missing_fiscal_fields(tenant, fiscal_config)
        if missing:
            raise FiscalConfigurationError(
                f"Configuração fiscal incompleta: {', '.join(missing)}", missing_fields=missing
            )
        return fiscal_config

    @staticmethod
    def validate_tomador(customer) -> None:
        if customer is None or not (customer.name or "").strip():
            raise TomadorDataError("Nome do cliente é obrigatório", ["name"])
        if customer.cpf_cnpj and not validate_cpf_cnpj(customer.cpf_cnpj):
            raise TomadorDataError("CPF/CNPJ do cliente é inválido", ["cpf_cnpj"])

    # ----- payload -----
    def build_payload(self, booking: "Booking", tenant: "Tenant", fiscal_config: TenantFiscalConfig) -> dict[str, Any]:
        customer = booking.customer
        template = fiscal_config.descricao_template or DEFAULT_DESCRIPTION_TEMPLATE
        tomador: dict[str, Any] = {"razao_social": customer.name}
        if customer.email:
            tomador["email"] = customer.email
        if customer.phone:
            tomador["telefone"] = only_numbers(customer.phone)
        doc = only_numbers(customer.cpf_cnpj)
        if len(doc) == 11:
            tomador["cpf"] = doc
        elif len(doc) == 14:
            tomador["cnpj"] = doc
        if customer.address and customer.city and customer.state:
            tomador["endereco"] = {
                "logradouro": customer.address,
                "numero": customer.number or "S/N",
                "complemento": customer.complement,
                "bairro": customer.neighborhood or "Centro",
                "codigo_municipio": tenant.codigo_municipio,
                "uf": customer.state,
                "cep": only_numbers(customer.zip_code),
            }

        servico: dict[str, Any] = {
            "valor_servicos": booking.total_price,
            "discriminacao": process_template(template, booking_variables(booking)),
            "aliquota": fiscal_config.aliquota_iss or 0,
            "iss_retido": bool(fiscal_config.iss_retido),
        }
        if fiscal_config.codigo_servico:
            servico["codigo_tributario_municipio"] = fiscal_config.codigo_servico

        payload: dict[str, Any] = {
            "data_emissao": datetime.utcnow().replace(microsecond=0).isoformat(),
            "prestador": {
                "cnpj": only_numbers(tenant.cnpj),
                "inscricao_municipal": only_numbers(tenant.inscricao_municipal),
                "codigo_municipio": tenant.codigo_municipio,
            },
            "tomador": tomador,
            "servico": servico,
        }
        if fiscal_config.regime_tributario:
            payload["optante_simples_nacional"] = fiscal_config.regime_tributario in (1, 2)
        return payload

    def _apply_response(self, invoice: Invoice, response: dict[str, Any]) -> None:
        invoice.status = map_focus_status(response.get("status"))
        invoice.numero = response.get("numero") or invoice.numero
        invoice.codigo_verificacao = response.get("codigo_verificacao") or invoice.codigo_verificacao
        invoice.url_xml = response.get("caminho_xml_nota_fiscal") or response.get("url") or invoice.url_xml
        invoice.url_pdf = response.get("url_danfse") or invoice.url_pdf
        errors = response.get("erros")
        if isinstance(errors, list) and errors:
            invoice.focus_errors = errors
            invoice.error_message = "; ".join(str(e.get("mensagem") or e) for e in errors if e)
        elif invoice.status in ("AUTHORIZED", "PROCESSING"):
            invoice.error_message = None
        if invoice.status == "AUTHORIZED" and not invoice.authorized_at:
            invoice.authorized_at = datetime.utcnow()
        invoice.updated_at = datetime.utcnow()

    # ----- operations -----
    def create_from_booking(self, booking: "Booking", *, actor: "User | None" = None) -> Invoice:
        from app.rental.models import Tenant

        tenant = self.s.get(Tenant, booking.tenant_id)
        fiscal_config = self.require_ready(tenant)
        self.validate_tomador(booking.customer)
        if active_invoice_for(self.s, booking.id):
            raise ConflictError("Esta reserva já possui uma NFS-e ativa")

        payload = self.build_payload(booking, tenant, fiscal_config)
        aliquota = fiscal_config.aliquota_iss or 0
        now = datetime.utcnow()
        invoice = Invoice(
            tenant_id=tenant.id,
            booking_id=booking.id,
            internal_ref=generate_internal_ref(),
            status="PENDING",
            valor_servicos=booking.total_price,
            valor_total=booking.total_price,
            aliquota_iss=aliquota,
            valor_iss=round(booking.total_price * aliquota / 100, 2),
            iss_retido=bool(fiscal_config.iss_retido),
            descricao_servico=payload["servico"]["discriminacao"],
            codigo_servico=fiscal_config.codigo_servico,
            tomador_nome=booking.customer.name,
            tomador_cpf_cnpj=booking.customer.cpf_cnpj,
            tomador_email=booking.customer.email,
            retry_count=0,
            created_at=now,
            updated_at=now,
        )
        self.s.add(invoice)
        self.s.flush()

        try:
            response = self.client_for(fiscal_config).emit_nfse(invoice.internal_ref, payload)
        except ApiError as e:
            invoice.status = "ERROR"
            invoice.error_message = e.message
            invoice.focus_errors = e.focus_errors if isinstance(e, FocusNfeApiError) else None
            invoice.retry_count = (invoice.retry_count or 0) + 1
            invoice.updated_at = datetime.utcnow()
            logger.warning("NFS-e emission failed ref=%s booking_id=%s: %s", invoice.internal_ref, booking.id, e.message)
        else:
            self._apply_response(invoice, response)
            logger.info("NFS-e emitted ref=%s status=%s", invoice.internal_ref, invoice.status)

        record_activity(
            self.s,
            tenant_id=tenant.id,
            actor=actor,
            action="CREATE",
            entity="INVOICE",
            entity_id=invoice.id,
            description=(
                f"NFS-e {invoice.internal_ref} da reserva {booking.booking_number}: "
                f"{INVOICE_STATUS_LABELS[invoice.status]}"
            ),
            metadata={"booking_id": booking.id, "status": invoice.status},
        )
        return invoice

    def sync_status(self, invoice: Invoice, *, actor: "User | None" = None) -> str:
        if invoice.status in FINAL_INVOICE_STATUSES:
            return invoice.status
        old_status = invoice.status
        response = self.client_for(get_fiscal_config(self.s, invoice.tenant_id)).consult_nfse(invoice.internal_ref)
        self._apply_response(invoice, response)
        if invoice.status != old_status:
            record_activity(
                self.s,
                tenant_id=invoice.tenant_id,
                actor=actor,
                action="UPDATE",
                entity="INVOICE",
                entity_id=invoice.id,
                description=f"NFS-e {invoice.internal_ref}: {INVOICE_STATUS_LABELS[invoice.status]}",
                metadata={"old_status": old_status, "new_status": invoice.status},
            )
        return invoice.status

    def cancel(self, invoice: Invoice, justificativa: str, *, actor: "User | None" = None) -> None:
        if invoice.status != "AUTHORIZED":
            raise InvoiceStatusError(invoice.status, "cancelar")
        justificativa = (justificativa or "").strip()
        self.client_for(get_fiscal_config(self.s, invoice.tenant_id)).cancel_nfse(invoice.internal_ref, justificativa)
        now = datetime.utcnow()
        invoice.status = "CANCELLED"
        invoice.cancelled_at = now
        invoice.cancel_reason = justificativa
        invoice.updated_at = now
        record_activity(
            self.s,
            tenant_id=invoice.tenant_id,
            actor=actor,
            action="UPDATE",
            entity="INVOICE",
            entity_id=invoice.id,
            description=f"NFS-e {invoice.internal_ref} cancelada",
            metadata={"justificativa": justificativa},
        )

    def send_email(self, invoice: Invoice, emails: list[str] | None = None, *, actor: "User | None" = None) -> list[str]:
        if invoice.status != "AUTHORIZED":
            raise InvoiceStatusError(invoice.status, "enviar email")
        targets = [e for e in (emails or []) if e] or ([invoice.tomador_email] if invoice.tomador_email else [])
        if not targets:
            raise TomadorDataError("Nenhum email disponível para envio", ["email"])
        self.client_for(get_fiscal_config(self.s, invoice.tenant_id)).resend_email(invoice.internal_ref, targets)
        record_activity(
            self.s,
            tenant_id=invoice.tenant_id,
            actor=actor,
            action="OTHER",
            entity="INVOICE",
            entity_id=invoice.id,
            description=f"NFS-e {invoice.internal_ref} reenviada para {', '.join(targets)}",
        )
        return targets

    def test_connection(self, tenant_id: int) -> bool:
        return self.client_for(get_fiscal_config(self.s, tenant_id)).test_connection()


def auto_emit_for_completed(s: "Session", booking: "Booking", *, config: dict, actor: "User | None") -> Invoice | None:
    """Emit on booking completion when the tenant opted in. Fiscal errors are logged, never raised."""
    from app.rental.models import Tenant

    if booking.status != "COMPLETED":
        return None
    tenant = s.get(Tenant, booking.tenant_id)
    fiscal_config = get_fiscal_config(s, booking.tenant_id)
    if not tenant or not tenant.nfse_enabled or not fiscal_config or not fiscal_config.auto_emit_on_complete:
        return None
    try:
        return NfseService(s, config=config).create_from_booking(booking, actor=actor)
    except ApiError as e:
        logger.warning("Auto NFS-e skipped for booking_id=%s: %s", booking.id, e.message)
        return None


def serialize_invoice(invoice: Invoice) -> dict[str, Any]:
    booking = invoice.booking
    return {
        "id": invoice.id,
        "internal_ref": invoice.internal_ref,
        "booking_id": invoice.booking_id,
        "booking_number": booking.booking_number if booking else None,
        "status": invoice.status,
        "status_label": INVOICE_STATUS_LABELS.get(invoice.status, invoice.status),
        "numero": invoice.numero,
        "codigo_verificacao": invoice.codigo_verificacao,
        "url_pdf": invoice.url_pdf,
        "url_xml": invoice.url_xml,
        "valor_servicos": invoice.valor_servicos,
        "valor_total": invoice.valor_total,
        "aliquota_iss": invoice.aliquota_iss,
        "valor_iss": invoice.valor_iss,
        "iss_retido": bool(invoice.iss_retido),
        "descricao_servico": invoice.descricao_servico,
        "codigo_servico": invoice.codigo_servico,
        "tomador_nome": invoice.tomador_nome,
        "tomador_cpf_cnpj": invoice.tomador_cpf_cnpj,
        "tomador_email": invoice.tomador_email,
        "error_message": invoice.error_message,
        "focus_errors": invoice.focus_errors,
        "retry_count": invoice.retry_count,
        "authorized_at": iso(invoice.authorized_at),
        "cancelled_at": iso(invoice.cancelled_at),
        "cancel_reason": invoice.cancel_reason,
        "created_at": iso(invoice.created_at),
        "updated_at": iso(invoice.updated_at),
    }
