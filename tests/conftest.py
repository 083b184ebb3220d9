from datetime import datetime, timedelta

import pytest
from werkzeug.security import generate_password_hash

from app.rental import create_app
from app.rental.db import session_scope
from app.rental.models import Base, Tenant, User
from app.rental.modules.billing.models import Plan, Subscription
from app.rental.modules.financial.service import ensure_default_categories

CSRF = "test-csrf-token"
HEADERS = {"X-CSRF-Token": CSRF}


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_LOCAL_ROOT", str(tmp_path / "storage"))
    monkeypatch.setenv("ROOT_DOMAIN", "example.com")
    for k in (
        "S3_ENDPOINT",
        "S3_REGION",
        "S3_BUCKET",
        "S3_ACCESS_KEY_ID",
        "S3_SECRET_ACCESS_KEY",
        "FISCAL_ENCRYPTION_KEY",
        "ASAAS_API_KEY",
        "ASAAS_WEBHOOK_TOKEN",
        "SMTP_SERVER",
        "SENTRY_DSN",
    ):
        monkeypatch.delenv(k, raising=False)

    from app.rental import auth

    auth._login_attempts.clear()

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        plan = Plan(
            name="Ilimitado",
            slug="ilimitado",
            price_monthly=0.0,
            max_users=-1,
            max_equipments=-1,
            max_bookings_per_month=-1,
            is_default=True,
        )
        tenant = Tenant(slug="acme", name="Acme Locações", email="contato@acme.com.br")
        s.add_all([plan, tenant])
        s.flush()
        now = datetime.utcnow()
        s.add(
            Subscription(
                tenant_id=tenant.id,
                plan_id=plan.id,
                status="ACTIVE",
                current_period_start=now,
                current_period_end=now + timedelta(days=30),
            )
        )
        s.add(
            User(
                tenant_id=tenant.id,
                name="Admin",
                email="admin@example.com",
                password_hash=generate_password_hash("pw"),
                role="ADMIN",
            )
        )
        ensure_default_categories(s, tenant.id)

    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def add_user(app, email: str, role: str, *, tenant_slug: str = "acme", password: str = "pw") -> int:
    with session_scope(app) as s:
        tenant = s.query(Tenant).filter(Tenant.slug == tenant_slug).one()
        user = User(
            tenant_id=tenant.id,
            name=email.split("@")[0],
            email=email,
            password_hash=generate_password_hash(password),
            role=role,
        )
        s.add(user)
        s.flush()
        return user.id


def add_tenant(app, slug: str, *, admin_email: str | None = None) -> int:
    with session_scope(app) as s:
        plan = s.query(Plan).filter(Plan.slug == "ilimitado").one()
        tenant = Tenant(slug=slug, name=slug.title())
        s.add(tenant)
        s.flush()
        s.add(Subscription(tenant_id=tenant.id, plan_id=plan.id, status="ACTIVE"))
        ensure_default_categories(s, tenant.id)
        tenant_id = tenant.id
    if admin_email:
        add_user(app, admin_email, "ADMIN", tenant_slug=slug)
    return tenant_id


def login(client, email: str = "admin@example.com", password: str = "pw"):
    r = client.post("/auth/login", data={"email": email, "password": password})
    with client.session_transaction() as sess:
        sess["csrf_token"] = CSRF
    return r


def create_equipment(client, **overrides) -> dict:
    payload = {"name": "Betoneira 400L", "category": "Construção", "price_per_day": 50.0, "quantity": 3}
    payload.update(overrides)
    r = client.post("/api/equipment", json=payload, headers=HEADERS)
    assert r.status_code == 201, r.json
    return r.json


def create_customer(client, **overrides) -> dict:
    payload = {"name": "João da Silva", "phone": "11999990000", "person_type": "PF"}
    payload.update(overrides)
    r = client.post("/api/customers", json=payload, headers=HEADERS)
    assert r.status_code == 201, r.json
    return r.json["customer"]
