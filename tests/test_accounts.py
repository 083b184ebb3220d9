"""Signup, password reset, users and tenant settings."""
from datetime import datetime, timedelta

from app.rental.db import session_scope
from app.rental.models import PasswordResetToken, Tenant, User
from app.rental.modules.billing.models import Subscription
from app.rental.modules.financial.models import TransactionCategory
from conftest import HEADERS, add_user, login

SIGNUP = {
    "name": "Rita Souza",
    "email": "rita@locanova.com.br",
    "password": "segredo1",
    "tenant_name": "LocaNova",
    "tenant_slug": "locanova",
    "phone": "11912345678",
}


def test_register_creates_tenant_admin_and_trial(client, app):
    r = client.post("/api/auth/register", json=SIGNUP)
    assert r.status_code == 201
    assert r.json["tenant"]["slug"] == "locanova"
    assert r.json["login_url"] == "http://locanova.example.com/auth/login"

    with session_scope(app) as s:
        tenant = s.query(Tenant).filter(Tenant.slug == "locanova").one()
        user = s.query(User).filter(User.email == "rita@locanova.com.br").one()
        assert user.role == "ADMIN"
        assert user.tenant_id == tenant.id
        sub = s.query(Subscription).filter(Subscription.tenant_id == tenant.id).one()
        assert sub.status == "TRIAL"
        assert s.query(TransactionCategory).filter(TransactionCategory.tenant_id == tenant.id).count() > 0

    r = client.post("/auth/login", data={"email": "rita@locanova.com.br", "password": "segredo1"})
    assert r.status_code == 302
    assert client.get("/admin/").status_code == 200


def test_register_validations(client):
    r = client.post("/api/auth/register", json={**SIGNUP, "phone": ""})
    assert r.status_code == 400
    assert r.json["missing_fields"] == ["phone"]

    r = client.post("/api/auth/register", json={**SIGNUP, "tenant_slug": "Loca Nova"})
    assert r.status_code == 400

    r = client.post("/api/auth/register", json={**SIGNUP, "password": "123"})
    assert r.status_code == 400

    r = client.post("/api/auth/register", json={**SIGNUP, "email": "admin@example.com"})
    assert r.status_code == 400
    assert "email" in r.json["error"]

    r = client.post("/api/auth/register", json={**SIGNUP, "tenant_slug": "acme"})
    assert r.status_code == 400
    assert "em uso" in r.json["error"]


def test_forgot_password_never_reveals_accounts(client, app):
    r = client.post("/api/auth/forgot-password", json={"email": "ghost@example.com"})
    assert r.status_code == 200
    unknown_message = r.json["message"]

    r = client.post("/api/auth/forgot-password", json={"email": "admin@example.com"})
    assert r.status_code == 200
    assert r.json["message"] == unknown_message

    with session_scope(app) as s:
        assert s.query(PasswordResetToken).count() == 1

    r = client.post("/api/auth/forgot-password", json={})
    assert r.status_code == 400


def test_reset_password_flow(client, app):
    client.post("/api/auth/forgot-password", json={"email": "admin@example.com"})
    client.post("/api/auth/forgot-password", json={"email": "admin@example.com"})
    with session_scope(app) as s:
        tokens = s.query(PasswordResetToken).order_by(PasswordResetToken.id.asc()).all()
        # a new request invalidates the previous token
        assert [t.used for t in tokens] == [True, False]
        old_token, token = tokens[0].token, tokens[1].token

    assert client.get(f"/api/auth/reset-password?token={old_token}").json["valid"] is False
    r = client.get(f"/api/auth/reset-password?token={token}")
    assert r.json["valid"] is True
    assert r.json["user_email"] == "admin@example.com"

    r = client.post("/api/auth/reset-password", json={"token": token, "password": "nova-senha"})
    assert r.status_code == 200
    assert r.json["tenant_slug"] == "acme"

    r = client.post("/api/auth/reset-password", json={"token": token, "password": "outra-senha"})
    assert r.status_code == 400

    r = client.post("/auth/login", data={"email": "admin@example.com", "password": "nova-senha"})
    assert client.get("/admin/").status_code == 200


def test_expired_reset_token(client, app):
    with session_scope(app) as s:
        user = s.query(User).filter(User.email == "admin@example.com").one()
        s.add(
            PasswordResetToken(
                user_id=user.id,
                token="expired-token",
                used=False,
                expires_at=datetime.utcnow() - timedelta(minutes=1),
                created_at=datetime.utcnow() - timedelta(hours=2),
            )
        )
    assert client.get("/api/auth/reset-password?token=expired-token").json["valid"] is False
    assert client.get("/api/auth/reset-password").status_code == 400


def test_reset_password_page(client, app):
    client.post("/api/auth/forgot-password", json={"email": "admin@example.com"})
    with session_scope(app) as s:
        token = s.query(PasswordResetToken).one().token
    assert client.get(f"/auth/reset-password?token={token}").status_code == 200
    r = client.post("/auth/reset-password", data={"token": token, "password": "abc"})
    assert r.status_code == 302
    assert "reset-password" in r.headers["Location"]
    r = client.post("/auth/reset-password", data={"token": token, "password": "abcdef"})
    assert r.status_code == 302
    assert "/auth/login" in r.headers["Location"]


def test_user_management(client):
    login(client)
    r = client.post(
        "/api/users",
        json={"name": "Otávio", "email": "Otavio@Example.com", "password": "123456", "role": "operator"},
        headers=HEADERS,
    )
    assert r.status_code == 201
    user = r.json["user"]
    assert user["email"] == "otavio@example.com"
    assert user["role"] == "OPERATOR"

    r = client.post(
        "/api/users",
        json={"name": "Dup", "email": "otavio@example.com", "password": "123456"},
        headers=HEADERS,
    )
    assert r.status_code == 400

    r = client.post(
        "/api/users",
        json={"name": "Root", "email": "root@example.com", "password": "123456", "role": "SUPER_ADMIN"},
        headers=HEADERS,
    )
    assert r.status_code == 403

    r = client.put(f"/api/users/{user['id']}", json={"role": "MANAGER"}, headers=HEADERS)
    assert r.json["user"]["role"] == "MANAGER"

    r = client.delete(f"/api/users/{user['id']}", headers=HEADERS)
    assert r.status_code == 200
    assert client.get(f"/api/users/{user['id']}").json["is_active"] is False


def test_user_cannot_demote_or_remove_self(client):
    login(client)
    me = next(u for u in client.get("/api/users").json if u["email"] == "admin@example.com")
    assert client.put(f"/api/users/{me['id']}", json={"role": "VIEWER"}, headers=HEADERS).status_code == 400
    assert client.put(f"/api/users/{me['id']}", json={"is_active": False}, headers=HEADERS).status_code == 400
    assert client.delete(f"/api/users/{me['id']}", headers=HEADERS).status_code == 400


def test_deactivated_user_is_logged_out(client, app):
    uid = add_user(app, "temp@example.com", "OPERATOR")
    login(client, "temp@example.com")
    assert client.get("/admin/bookings").status_code == 200
    with session_scope(app) as s:
        s.get(User, uid).is_active = False
    assert client.get("/admin/bookings").status_code == 302


def test_tenant_settings(client):
    login(client)
    r = client.put(
        "/api/tenant/settings",
        json={"name": "Acme Equipamentos", "cnpj": "11.222.333/0001-81", "codigo_municipio": "3550308"},
        headers=HEADERS,
    )
    assert r.status_code == 200
    assert r.json["name"] == "Acme Equipamentos"
    assert r.json["cnpj"] == "11222333000181"

    assert client.put("/api/tenant/settings", json={"cnpj": "123"}, headers=HEADERS).status_code == 400
    assert client.put("/api/tenant/settings", json={"codigo_municipio": "35"}, headers=HEADERS).status_code == 400
    # feature flag reserved to platform staff
    assert client.put("/api/tenant/settings", json={"nfse_enabled": True}, headers=HEADERS).status_code == 403


def test_tenant_usage(client):
    login(client)
    r = client.get("/api/tenant/usage")
    assert r.status_code == 200
    assert r.json["users"]["is_unlimited"] is True
    assert r.json["plan_name"] == "Ilimitado"


def test_admin_users_page_actions(client):
    login(client)
    r = client.post(
        "/admin/users/new",
        data={
            "csrf_token": "test-csrf-token",
            "name": "Vera",
            "email": "vera@example.com",
            "password": "123456",
            "password_confirm": "123456",
            "role": "VIEWER",
        },
    )
    assert r.status_code == 302
    assert any(u["email"] == "vera@example.com" for u in client.get("/api/users").json)

    r = client.post(
        "/admin/users/new",
        data={
            "csrf_token": "test-csrf-token",
            "name": "Zeca",
            "email": "zeca@example.com",
            "password": "123456",
            "password_confirm": "654321",
        },
    )
    assert r.status_code == 302
    assert not any(u["email"] == "zeca@example.com" for u in client.get("/api/users").json)


def test_admin_settings_form(client):
    login(client)
    r = client.post(
        "/admin/settings",
        data={"csrf_token": "test-csrf-token", "name": "Acme Nova", "email": "", "phone": "1130001000"},
    )
    assert r.status_code == 302
    assert client.get("/api/tenant/settings").json["name"] == "Acme Nova"
