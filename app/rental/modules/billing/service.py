from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from app.rental.activity import record_activity
from app.rental.errors import ConflictError, NotFoundError, ValidationError
from app.rental.modules.billing.asaas_client import AsaasClient, client_from_config
from app.rental.utils import iso, parse_datetime

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.rental.models import Tenant, User
    from app.rental.modules.billing.models import Plan, Subscription, SubscriptionPayment

logger = logging.getLogger(__name__)

TRIAL_DAYS = 14
PERIOD_DAYS = 30
DUE_AFTER_DAYS = 5

PAID_EVENTS = ("PAYMENT_RECEIVED", "PAYMENT_CONFIRMED")
OVERDUE_EVENTS = ("PAYMENT_OVERDUE",)


def default_plan(s: "Session") -> "Plan | None":
    from app.rental.modules.billing.models import Plan

    return s.query(Plan).filter(Plan.is_default.is_(True), Plan.active.is_(True)).order_by(Plan.id.asc()).first()


def get_subscription(s: "Session", tenant_id: int) -> "Subscription | None":
    from app.rental.modules.billing.models import Subscription

    return s.query(Subscription).filter(Subscription.tenant_id == tenant_id).one_or_none()


class SubscriptionService:
    """
    Tenant subscription lifecycle against the Asaas gateway.

    The Asaas client is resolved lazily so trial creation (at signup) works
    without gateway credentials.
    """

    def __init__(self, s: "Session", *, config: dict | None = None, client: AsaasClient | None = None) -> None:
        self.s = s
        self.config = config or {}
        self._client = client

    @property
    def client(self) -> AsaasClient:
        if self._client is None:
            self._client = client_from_config(self.config)
        return self._client

    def sync_customer(self, tenant: "Tenant") -> str:
        if tenant.asaas_customer_id:
            return tenant.asaas_customer_id
        data = {
            "name": tenant.name,
            "email": tenant.email,
            "phone": tenant.phone,
            "cpfCnpj": re.sub(r"\D", "", tenant.cnpj or ""),
            "externalReference": str(tenant.id),
        }
        customer = self.client.create_customer(data)
        customer_id = customer.get("id")
        if not customer_id:
            raise ValidationError("Asaas não retornou o ID do cliente")
        tenant.asaas_customer_id = customer_id
        tenant.updated_at = datetime.utcnow()
        logger.info("Asaas customer created tenant_id=%s customer_id=%s", tenant.id, customer_id)
        return customer_id

    def create_subscription(self, tenant: "Tenant", plan: "Plan", *, actor: "User | None" = None) -> "Subscription":
        from app.rental.modules.billing.models import Subscription

        existing = get_subscription(self.s, tenant.id)
        if existing is not None and existing.status != "CANCELED":
            raise ConflictError("Tenant já possui uma assinatura ativa")

        now = datetime.utcnow()
        trial_ends_at = now + timedelta(days=TRIAL_DAYS)
        if existing is not None:
            # One row per tenant: a canceled subscription is restarted in place.
            sub = existing
            sub.plan_id = plan.id
            sub.plan = plan
            sub.canceled_at = None
        else:
            sub = Subscription(tenant_id=tenant.id, plan_id=plan.id, created_at=now)
            self.s.add(sub)
        sub.status = "TRIAL"
        sub.trial_ends_at = trial_ends_at
        sub.current_period_start = trial_ends_at
        sub.current_period_end = trial_ends_at + timedelta(days=PERIOD_DAYS)
        sub.asaas_customer_id = tenant.asaas_customer_id
        sub.updated_at = now
        self.s.flush()

        record_activity(
            self.s,
            tenant_id=tenant.id,
            actor=actor,
            action="CREATE",
            entity="SUBSCRIPTION",
            entity_id=sub.id,
            description=f"Assinatura do plano {plan.name} iniciada (trial de {TRIAL_DAYS} dias)",
            metadata={"plan_id": plan.id},
        )
        return sub

    def change_plan(self, sub: "Subscription", plan: "Plan", *, actor: "User | None" = None) -> "Subscription":
        old_plan = sub.plan.name if sub.plan else None
        sub.plan_id = plan.id
        sub.plan = plan
        sub.updated_at = datetime.utcnow()
        record_activity(
            self.s,
            tenant_id=sub.tenant_id,
            actor=actor,
            action="UPDATE",
            entity="SUBSCRIPTION",
            entity_id=sub.id,
            description=f"Plano alterado para {plan.name}",
            metadata={"old_plan": old_plan, "new_plan": plan.name},
        )
        return sub

    def create_monthly_charge(
        self, sub: "Subscription", billing_type: str = "BOLETO", *, actor: "User | None" = None
    ) -> "SubscriptionPayment":
        from app.rental.models import Tenant
        from app.rental.modules.billing.models import BILLING_TYPES, SubscriptionPayment

        billing_type = (billing_type or "BOLETO").strip().upper()
        if billing_type not in BILLING_TYPES:
            raise ValidationError(f"Forma de pagamento inválida. Use: {', '.join(BILLING_TYPES)}")
        if sub.status == "CANCELED":
            raise ValidationError("Assinatura cancelada")

        tenant = self.s.get(Tenant, sub.tenant_id)
        customer_id = self.sync_customer(tenant)
        sub.asaas_customer_id = customer_id

        period_start = sub.current_period_end or datetime.utcnow()
        period_end = period_start + timedelta(days=PERIOD_DAYS)
        due_date = (period_start + timedelta(days=DUE_AFTER_DAYS)).date()
        amount = float(sub.plan.price_monthly or 0)

        asaas_payment = self.client.create_payment(
            {
                "customer": customer_id,
                "billingType": billing_type,
                "value": amount,
                "dueDate": due_date.isoformat(),
                "description": (
                    f"{sub.plan.name} - {period_start.strftime('%d/%m/%Y')} a {period_end.strftime('%d/%m/%Y')}"
                ),
                "externalReference": str(sub.id),
            }
        )

        payment = SubscriptionPayment(
            subscription_id=sub.id,
            asaas_payment_id=asaas_payment.get("id"),
            amount=amount,
            status="PENDING",
            billing_type=billing_type,
            due_date=due_date,
            invoice_url=asaas_payment.get("invoiceUrl") or asaas_payment.get("bankSlipUrl"),
            period_start=period_start,
            period_end=period_end,
            created_at=datetime.utcnow(),
        )
        self.s.add(payment)
        sub.updated_at = datetime.utcnow()
        self.s.flush()

        record_activity(
            self.s,
            tenant_id=sub.tenant_id,
            actor=actor,
            action="CREATE",
            entity="SUBSCRIPTION",
            entity_id=sub.id,
            description=f"Cobrança de R$ {amount:.2f} gerada ({billing_type})",
            metadata={"payment_id": payment.id, "asaas_payment_id": payment.asaas_payment_id},
        )
        return payment

    def pix_qr_code(self, payment: "SubscriptionPayment") -> dict[str, Any]:
        if not payment.asaas_payment_id:
            raise NotFoundError("Pagamento sem cobrança no Asaas")
        data = self.client.get_pix_qr_code(payment.asaas_payment_id)
        return {
            "encoded_image": data.get("encodedImage"),
            "payload": data.get("payload"),
            "expiration_date": data.get("expirationDate"),
        }

    def process_payment_webhook(self, event: dict[str, Any]) -> "SubscriptionPayment | None":
        from app.rental.modules.billing.models import SubscriptionPayment

        event_name = (event.get("event") or "").strip().upper()
        data = event.get("payment") or {}
        asaas_payment_id = data.get("id") if isinstance(data, dict) else None
        if not asaas_payment_id:
            logger.warning("Asaas webhook without payment id (event=%s)", event_name)
            return None

        payment = (
            self.s.query(SubscriptionPayment)
            .filter(SubscriptionPayment.asaas_payment_id == asaas_payment_id)
            .one_or_none()
        )
        if payment is None:
            logger.info("Asaas webhook for unknown payment ignored: %s (event=%s)", asaas_payment_id, event_name)
            return None

        sub = payment.subscription
        now = datetime.utcnow()
        if event_name in PAID_EVENTS:
            payment.status = "PAID"
            payment.paid_at = parse_datetime(data.get("paymentDate") or data.get("clientPaymentDate")) or now
            sub.status = "ACTIVE"
            sub.current_period_start = payment.period_start
            sub.current_period_end = payment.period_end
        elif event_name in OVERDUE_EVENTS:
            payment.status = "OVERDUE"
            sub.status = "PAST_DUE"
        elif event_name in ("PAYMENT_DELETED", "PAYMENT_REFUNDED"):
            payment.status = "CANCELED"
        else:
            logger.info("Asaas webhook event ignored: %s (payment=%s)", event_name, asaas_payment_id)
            return payment
        sub.updated_at = now

        record_activity(
            self.s,
            tenant_id=sub.tenant_id,
            actor=None,
            action="UPDATE",
            entity="SUBSCRIPTION",
            entity_id=sub.id,
            description=f"Pagamento {asaas_payment_id}: {payment.status}",
            metadata={"event": event_name},
        )
        return payment

    def cancel_subscription(self, sub: "Subscription", *, actor: "User | None" = None) -> "Subscription":
        if sub.status == "CANCELED":
            raise ValidationError("Assinatura já está cancelada")
        now = datetime.utcnow()
        sub.status = "CANCELED"
        sub.canceled_at = now
        sub.updated_at = now
        record_activity(
            self.s,
            tenant_id=sub.tenant_id,
            actor=actor,
            action="UPDATE",
            entity="SUBSCRIPTION",
            entity_id=sub.id,
            description="Assinatura cancelada",
        )
        return sub


def serialize_plan(plan: "Plan") -> dict[str, Any]:
    return {
        "id": plan.id,
        "name": plan.name,
        "slug": plan.slug,
        "description": plan.description,
        "price_monthly": plan.price_monthly,
        "max_users": plan.max_users,
        "max_equipments": plan.max_equipments,
        "max_bookings_per_month": plan.max_bookings_per_month,
        "features": plan.features or [],
        "is_default": plan.is_default,
    }


def serialize_payment(payment: "SubscriptionPayment") -> dict[str, Any]:
    return {
        "id": payment.id,
        "asaas_payment_id": payment.asaas_payment_id,
        "amount": payment.amount,
        "status": payment.status,
        "billing_type": payment.billing_type,
        "due_date": iso(payment.due_date),
        "paid_at": iso(payment.paid_at),
        "invoice_url": payment.invoice_url,
        "period_start": iso(payment.period_start),
        "period_end": iso(payment.period_end),
    }


def serialize_subscription(sub: "Subscription") -> dict[str, Any]:
    return {
        "id": sub.id,
        "status": sub.status,
        "plan": serialize_plan(sub.plan) if sub.plan else None,
        "trial_ends_at": iso(sub.trial_ends_at),
        "current_period_start": iso(sub.current_period_start),
        "current_period_end": iso(sub.current_period_end),
        "canceled_at": iso(sub.canceled_at),
        "payments": [serialize_payment(p) for p in sub.payments],
    }
