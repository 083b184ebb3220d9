"""Plan limits, subscription lifecycle and the Asaas webhook."""
import pytest

from app.rental.db import session_scope
from app.rental.errors import ValidationError
from app.rental.models import Tenant
from app.rental.modules.billing.asaas_client import _error_message, base_url_for
from app.rental.modules.billing.limits import evaluate_limit
from app.rental.modules.billing.models import Plan, Subscription, SubscriptionPayment
from app.rental.modules.billing.service import SubscriptionService
from conftest import HEADERS, create_customer, create_equipment, login


class FakeAsaas:
    def __init__(self):
        self.calls = []

    def create_customer(self, data):
        self.calls.append(("create_customer", data))
        return {"id": "cus_000001"}

    def create_payment(self, data):
        self.calls.append(("create_payment", data))
        return {"id": "pay_000001", "invoiceUrl": "https://sandbox.asaas.com/i/pay_000001"}

    def get_pix_qr_code(self, payment_id):
        return {"encodedImage": "iVBOR", "payload": "000201", "expirationDate": "2030-01-01 23:59:59"}


def _set_plan(app, **limits):
    with session_scope(app) as s:
        plan = Plan(name="Básico", slug="basico", price_monthly=99.0, **limits)
        s.add(plan)
        s.flush()
        tenant = s.query(Tenant).filter(Tenant.slug == "acme").one()
        sub = s.query(Subscription).filter(Subscription.tenant_id == tenant.id).one()
        sub.plan_id = plan.id


def _charge(app, billing_type="PIX"):
    fake = FakeAsaas()
    with session_scope(app) as s:
        tenant = s.query(Tenant).filter(Tenant.slug == "acme").one()
        sub = s.query(Subscription).filter(Subscription.tenant_id == tenant.id).one()
        payment = SubscriptionService(s, client=fake).create_monthly_charge(sub, billing_type)
        payment_id = payment.id
    return fake, payment_id


def test_evaluate_limit():
    assert evaluate_limit(100, -1, "x").allowed is True
    check = evaluate_limit(2, 3, "usuários")
    assert check.allowed is True
    assert check.percentage == 67
    blocked = evaluate_limit(3, 3, "usuários")
    assert blocked.allowed is False
    assert "Limite de 3 usuários" in blocked.message


def test_equipment_limit_enforced(client, app):
    _set_plan(app, max_users=5, max_equipments=1, max_bookings_per_month=10)
    login(client)
    create_equipment(client)
    r = client.post(
        "/api/equipment",
        json={"name": "Outro", "category": "X", "price_per_day": 10},
        headers=HEADERS,
    )
    assert r.status_code == 403
    assert r.json["code"] == "plan_limit_reached"
    assert r.json["max"] == 1


def test_booking_limit_enforced(client, app):
    _set_plan(app, max_users=5, max_equipments=5, max_bookings_per_month=1)
    login(client)
    e = create_equipment(client, quantity=5)
    c = create_customer(client)
    payload = {
        "customer_id": c["id"],
        "equipment_id": e["id"],
        "start_date": "2030-04-01",
        "end_date": "2030-04-02",
        "total_price": 10,
    }
    assert client.post("/api/bookings", json=payload, headers=HEADERS).status_code == 201
    r = client.post("/api/bookings", json=payload, headers=HEADERS)
    assert r.status_code == 403


def test_user_limit_and_usage(client, app):
    _set_plan(app, max_users=1, max_equipments=5, max_bookings_per_month=5)
    login(client)
    r = client.post(
        "/api/users",
        json={"name": "Extra", "email": "extra@example.com", "password": "123456"},
        headers=HEADERS,
    )
    assert r.status_code == 403

    usage = client.get("/api/tenant/usage").json
    assert usage["users"] == {"current": 1, "max": 1, "percentage": 100, "is_unlimited": False}
    assert usage["is_over_any_limit"] is True


def test_canceled_subscription_blocks_creation(client, app):
    login(client)
    r = client.post("/api/subscription/cancel", headers=HEADERS)
    assert r.status_code == 200
    assert r.json["status"] == "CANCELED"
    r = client.post(
        "/api/equipment",
        json={"name": "Outro", "category": "X", "price_per_day": 10},
        headers=HEADERS,
    )
    assert r.status_code == 403

    # subscribing again restarts the trial
    plan_id = client.get("/api/plans").json[0]["id"]
    r = client.post("/api/subscription", json={"plan_id": plan_id}, headers=HEADERS)
    assert r.status_code == 201
    assert r.json["status"] == "TRIAL"


def test_change_plan(client, app):
    _set_plan(app, max_users=5, max_equipments=5, max_bookings_per_month=5)
    login(client)
    plans = {p["slug"]: p for p in client.get("/api/plans").json}
    r = client.post("/api/subscription", json={"plan_id": plans["ilimitado"]["id"]}, headers=HEADERS)
    assert r.status_code == 200
    assert r.json["plan"]["slug"] == "ilimitado"

    r = client.post("/api/subscription", json={"plan_id": 999}, headers=HEADERS)
    assert r.status_code == 404


def test_charge_without_gateway_configured(client):
    login(client)
    r = client.post("/api/subscription/charge", json={"billing_type": "PIX"}, headers=HEADERS)
    assert r.status_code == 502
    assert "ASAAS_API_KEY" in r.json["error"]


def test_monthly_charge_creates_customer_and_payment(app):
    fake, payment_id = _charge(app)
    assert [c[0] for c in fake.calls] == ["create_customer", "create_payment"]
    payment_data = fake.calls[1][1]
    assert payment_data["customer"] == "cus_000001"
    assert payment_data["billingType"] == "PIX"
    with session_scope(app) as s:
        payment = s.get(SubscriptionPayment, payment_id)
        assert payment.status == "PENDING"
        assert payment.asaas_payment_id == "pay_000001"
        assert s.query(Tenant).filter(Tenant.slug == "acme").one().asaas_customer_id == "cus_000001"


def test_monthly_charge_rejects_unknown_billing_type(app):
    with session_scope(app) as s:
        sub = s.query(Subscription).first()
        with pytest.raises(ValidationError) as exc:
            SubscriptionService(s, client=FakeAsaas()).create_monthly_charge(sub, "CHEQUE")
        assert "Forma de pagamento" in str(exc.value)


def test_webhook_marks_payment_paid(client, app):
    _, payment_id = _charge(app)
    r = client.post(
        "/api/webhooks/asaas",
        json={"event": "PAYMENT_RECEIVED", "payment": {"id": "pay_000001", "paymentDate": "2030-01-05"}},
    )
    assert r.status_code == 200
    assert r.json["received"] is True
    with session_scope(app) as s:
        payment = s.get(SubscriptionPayment, payment_id)
        assert payment.status == "PAID"
        assert payment.subscription.status == "ACTIVE"
        assert payment.subscription.current_period_end == payment.period_end


def test_webhook_overdue_and_unknown_payment(client, app):
    _, payment_id = _charge(app)
    r = client.post("/api/webhooks/asaas", json={"event": "PAYMENT_OVERDUE", "payment": {"id": "pay_000001"}})
    assert r.status_code == 200
    with session_scope(app) as s:
        payment = s.get(SubscriptionPayment, payment_id)
        assert payment.status == "OVERDUE"
        assert payment.subscription.status == "PAST_DUE"

    r = client.post("/api/webhooks/asaas", json={"event": "PAYMENT_RECEIVED", "payment": {"id": "pay_unknown"}})
    assert r.status_code == 200

    r = client.post("/api/webhooks/asaas", data="not json", content_type="text/plain")
    assert r.status_code == 400


def test_webhook_token(client, app):
    app.config["ASAAS_WEBHOOK_TOKEN"] = "whsec"
    event = {"event": "PAYMENT_RECEIVED", "payment": {"id": "pay_x"}}
    assert client.post("/api/webhooks/asaas", json=event).status_code == 401
    r = client.post("/api/webhooks/asaas", json=event, headers={"asaas-access-token": "whsec"})
    assert r.status_code == 200


def test_webhook_token_with_non_ascii_header(client, app):
    app.config["ASAAS_WEBHOOK_TOKEN"] = "whsec"
    event = {"event": "PAYMENT_RECEIVED", "payment": {"id": "pay_x"}}
    r = client.post("/api/webhooks/asaas", json=event, headers={"asaas-access-token": "whséc"})
    assert r.status_code == 401
    assert r.json["error"] == "Token de webhook inválido"


def test_pix_qr_code(client, app, monkeypatch):
    _, payment_id = _charge(app)
    monkeypatch.setattr(
        "app.rental.modules.billing.api._service",
        lambda s: SubscriptionService(s, client=FakeAsaas()),
    )
    login(client)
    r = client.get(f"/api/subscription/payments/{payment_id}/pix")
    assert r.status_code == 200
    assert r.json["payload"] == "000201"


def test_subscription_endpoint(client):
    login(client)
    r = client.get("/api/tenant/subscription")
    assert r.status_code == 200
    assert r.json["subscription"]["status"] == "ACTIVE"
    assert r.json["usage"]["plan_name"] == "Ilimitado"


def test_asaas_helpers():
    assert base_url_for("production") == "https://api.asaas.com/v3"
    assert base_url_for("sandbox") == "https://sandbox.asaas.com/api/v3"
    assert _error_message('{"errors": [{"description": "CPF inválido"}]}'.encode("utf-8"), 400) == "CPF inválido"
    assert _error_message(b"<html>", 500) == "Asaas API error: 500"
