"""Tenant resolution, data isolation between tenants and role permissions."""
from types import SimpleNamespace

import pytest

from app.rental.rbac import has_permission, role_permissions
from app.rental.tenancy import get_subdomain, tenant_url
from conftest import HEADERS, add_tenant, add_user, create_customer, create_equipment, login


@pytest.mark.parametrize(
    "host,expected",
    [
        ("locadora-xyz.example.com", "locadora-xyz"),
        ("ACME.example.com:443", "acme"),
        ("www.example.com", None),
        ("example.com", None),
        ("localhost:5000", None),
        ("127.0.0.1", None),
        ("acme.other.com", None),
        ("", None),
    ],
)
def test_get_subdomain(host, expected):
    assert get_subdomain(host, "example.com") == expected


def test_tenant_url():
    tenant = SimpleNamespace(slug="acme", domain=None)
    assert tenant_url(tenant, "/auth/login", root_domain="example.com", production=True) == "https://acme.example.com/auth/login"
    assert tenant_url(tenant, "admin", root_domain="example.com", production=False) == "http://acme.example.com/admin"
    custom = SimpleNamespace(slug="acme", domain="locacoes.acme.com.br")
    assert tenant_url(custom, root_domain="example.com", production=True) == "https://locacoes.acme.com.br/"


def test_tenants_cannot_see_each_other(app, client):
    login(client)
    e = create_equipment(client)
    c = create_customer(client)

    add_tenant(app, "beta", admin_email="admin@beta.com")
    other = app.test_client()
    login(other, "admin@beta.com")

    assert other.get(f"/api/equipment/{e['id']}").status_code == 404
    assert other.get(f"/api/customers/{c['id']}").status_code == 404
    assert other.put(f"/api/equipment/{e['id']}", json={"name": "Roubado"}, headers=HEADERS).status_code == 404
    assert other.delete(f"/api/customers/{c['id']}", headers=HEADERS).status_code == 404
    assert other.get("/api/customers").json == []
    assert other.get(f"/admin/equipment/{e['id']}").status_code == 404

    # booking numbers are sequential per tenant
    e2 = create_equipment(other)
    c2 = create_customer(other)
    r = other.post(
        "/api/bookings",
        json={
            "customer_id": c2["id"],
            "equipment_id": e2["id"],
            "start_date": "2030-01-01",
            "end_date": "2030-01-02",
            "total_price": 10,
        },
        headers=HEADERS,
    )
    assert r.json["booking_number"] == "RES-0001"

    # a tenant cannot book another tenant's customer
    r = other.post(
        "/api/bookings",
        json={
            "customer_id": c["id"],
            "equipment_id": e2["id"],
            "start_date": "2030-01-05",
            "end_date": "2030-01-06",
            "total_price": 10,
        },
        headers=HEADERS,
    )
    assert r.status_code == 404


def test_login_restricted_to_host_tenant(app, client):
    add_tenant(app, "beta", admin_email="admin@beta.com")

    r = client.post(
        "/auth/login",
        data={"email": "admin@beta.com", "password": "pw"},
        base_url="http://acme.example.com",
    )
    assert r.status_code == 302
    assert "/auth/login" in r.headers["Location"]

    r = client.post(
        "/auth/login",
        data={"email": "admin@beta.com", "password": "pw"},
        base_url="http://beta.example.com",
    )
    assert r.status_code == 302
    assert "/admin" in r.headers["Location"]


def test_super_admin_may_sign_in_anywhere(app, client):
    add_user(app, "root@example.com", "SUPER_ADMIN")
    r = client.post(
        "/auth/login",
        data={"email": "root@example.com", "password": "pw"},
        base_url="http://beta-inexistente.example.com",
    )
    assert "/admin" in r.headers["Location"]


def test_inactive_tenant_locks_users_out(app, client):
    from app.rental.db import session_scope
    from app.rental.models import Tenant

    login(client)
    assert client.get("/api/equipment").status_code == 200
    with session_scope(app) as s:
        s.query(Tenant).filter(Tenant.slug == "acme").one().active = False
    assert client.get("/api/equipment").status_code == 401


def test_viewer_is_read_only(app, client):
    add_user(app, "viewer@example.com", "VIEWER")
    login(client, "viewer@example.com")

    assert client.get("/api/equipment").status_code == 200
    r = client.post(
        "/api/equipment",
        json={"name": "X", "category": "Y", "price_per_day": 1},
        headers=HEADERS,
    )
    assert r.status_code == 403
    assert r.json["missing_permission"] == "CREATE_EQUIPMENT"

    assert client.get("/admin/equipment").status_code == 200
    assert client.get("/admin/equipment/new").status_code == 403
    assert client.get("/admin/users").status_code == 403
    assert client.get("/api/integrations/api-keys").status_code == 403


def test_operator_can_book_but_not_delete(app, client):
    login(client)
    e = create_equipment(client)
    c = create_customer(client)

    add_user(app, "op@example.com", "OPERATOR")
    op = app.test_client()
    login(op, "op@example.com")
    r = op.post(
        "/api/bookings",
        json={
            "customer_id": c["id"],
            "equipment_id": e["id"],
            "start_date": "2030-03-01",
            "end_date": "2030-03-02",
            "total_price": 100,
        },
        headers=HEADERS,
    )
    assert r.status_code == 201
    assert op.delete(f"/api/bookings/{r.json['id']}", headers=HEADERS).status_code == 403
    assert op.delete(f"/api/customers/{c['id']}", headers=HEADERS).status_code == 403
    assert op.put(f"/api/equipment/{e['id']}", json={"name": "Z"}, headers=HEADERS).status_code == 403


def test_role_permissions():
    assert role_permissions("admin") == role_permissions("SUPER_ADMIN")
    assert "MANAGE_FINANCIAL" in role_permissions("MANAGER")
    assert "DELETE_BOOKING" not in role_permissions("MANAGER")
    assert role_permissions("VIEWER") == frozenset({"VIEW_REPORTS"})
    assert role_permissions(None) == frozenset()
    assert has_permission("OPERATOR", "CREATE_BOOKING")
    assert not has_permission("OPERATOR", "MANAGE_SETTINGS")
