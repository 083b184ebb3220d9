import pytest

from conftest import HEADERS, create_customer, create_equipment, login


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True


def test_healthz_plain(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.data == b"ok"


def test_public_index_renders(client):
    r = client.get("/")
    assert r.status_code == 200


def test_login_and_admin_access(client):
    # Anonymous is sent to the login page
    r = client.get("/admin/")
    assert r.status_code == 302
    assert "/auth/login" in r.headers["Location"]

    r = client.post("/auth/login", data={"email": "admin@example.com", "password": "pw"}, follow_redirects=False)
    assert r.status_code == 302

    r = client.get("/admin/")
    assert r.status_code == 200
    assert "Acme Locações".encode() in r.data


def test_login_wrong_password(client):
    r = client.post("/auth/login", data={"email": "admin@example.com", "password": "nope"})
    assert r.status_code == 302
    assert "/auth/login" in r.headers["Location"]
    r = client.get("/admin/")
    assert r.status_code == 302


def test_login_next_only_local_paths(client):
    r = client.post(
        "/auth/login",
        data={"email": "admin@example.com", "password": "pw", "next": "//evil.example.org/x"},
    )
    assert r.status_code == 302
    assert "evil" not in r.headers["Location"]


def test_login_rate_limited(client):
    for _ in range(5):
        client.post("/auth/login", data={"email": "admin@example.com", "password": "bad"})
    r = client.post("/auth/login", data={"email": "admin@example.com", "password": "pw"})
    assert r.status_code == 302
    r = client.get("/admin/")
    assert r.status_code == 302


def test_logout(client):
    login(client)
    r = client.get("/auth/logout")
    assert r.status_code == 302
    r = client.get("/admin/")
    assert r.status_code == 302


def test_api_requires_auth(client):
    r = client.get("/api/equipment")
    assert r.status_code == 401
    assert r.json["error"]


def test_api_write_requires_csrf(client):
    login(client)
    r = client.post("/api/equipment", json={"name": "X", "category": "Y", "price_per_day": 1})
    assert r.status_code == 400
    assert "CSRF" in r.json["error"]


def test_unknown_api_route_is_json_404(client):
    login(client)
    r = client.get("/api/does-not-exist")
    assert r.status_code == 404
    assert r.json["error"]


@pytest.mark.parametrize(
    "path",
    [
        "/admin/",
        "/admin/equipment",
        "/admin/equipment/new",
        "/admin/customers",
        "/admin/customers/new",
        "/admin/bookings",
        "/admin/bookings/new",
        "/admin/stock",
        "/admin/financial",
        "/admin/invoices",
        "/admin/billing",
        "/admin/integrations",
        "/admin/leads",
        "/admin/logs",
        "/admin/users",
        "/admin/settings",
    ],
)
def test_admin_pages_render(client, path):
    login(client)
    r = client.get(path)
    assert r.status_code == 200, path


def test_admin_detail_pages_render(client):
    login(client)
    equipment = create_equipment(client)
    customer = create_customer(client)
    r = client.post(
        "/api/bookings",
        json={
            "customer_id": customer["id"],
            "equipment_id": equipment["id"],
            "quantity": 1,
            "start_date": "2030-01-10",
            "end_date": "2030-01-12",
            "total_price": 150.0,
        },
        headers=HEADERS,
    )
    assert r.status_code == 201
    booking_id = r.json["id"]

    for path in (
        f"/admin/equipment/{equipment['id']}",
        f"/admin/equipment/{equipment['id']}/edit",
        f"/admin/customers/{customer['id']}",
        f"/admin/bookings/{booking_id}",
        f"/admin/stock/{equipment['id']}",
    ):
        r = client.get(path)
        assert r.status_code == 200, path


def test_sentry_starts_only_with_dsn(app, monkeypatch):
    import sentry_sdk

    from app.rental import create_app

    calls = []
    monkeypatch.setattr(sentry_sdk, "init", lambda **kwargs: calls.append(kwargs))
    monkeypatch.setattr(sentry_sdk, "set_tag", lambda *args: None)

    monkeypatch.delenv("SENTRY_DSN", raising=False)
    create_app()
    assert calls == []

    monkeypatch.setenv("SENTRY_DSN", "https://abc@o1.ingest.sentry.io/1")
    create_app()
    assert len(calls) == 1
    assert calls[0]["dsn"] == "https://abc@o1.ingest.sentry.io/1"
    assert calls[0]["environment"] == "test"
    assert calls[0]["traces_sample_rate"] == 1.0
    assert calls[0]["send_default_pii"] is False


def test_sentry_event_scrubbing():
    from app.rental.error_tracking import scrub_event

    event = {
        "request": {
            "cookies": {"session": "abc"},
            "headers": {"Authorization": "Bearer sk_live_x", "Cookie": "session=abc", "User-Agent": "curl"},
            "env": {"SECRET_KEY": "s3cr3t", "SERVER_NAME": "acme.example.com"},
        }
    }
    scrubbed = scrub_event(event, {})
    assert "cookies" not in scrubbed["request"]
    assert scrubbed["request"]["headers"] == {"User-Agent": "curl"}
    assert scrubbed["request"]["env"] == {"SECRET_KEY": "[Filtered]", "SERVER_NAME": "acme.example.com"}
    assert scrub_event({"message": "boom"}) == {"message": "boom"}
