"""Dashboard stats, global search and the activity log."""
from conftest import HEADERS, add_tenant, add_user, create_customer, create_equipment, login


def _book(client, customer_id, equipment_id, total, start="2030-09-01", end="2030-09-02"):
    r = client.post(
        "/api/bookings",
        json={
            "customer_id": customer_id,
            "equipment_id": equipment_id,
            "start_date": start,
            "end_date": end,
            "total_price": total,
        },
        headers=HEADERS,
    )
    assert r.status_code == 201, r.json
    return r.json


def test_dashboard_stats(client):
    login(client)
    betoneira = create_equipment(client, quantity=5)
    create_equipment(client, name="Andaime", category="Acesso")
    create_equipment(client, name="Escora", category="Construção")
    c = create_customer(client, name="Ana")

    done = _book(client, c["id"], betoneira["id"], 400)
    client.put(f"/api/bookings/{done['id']}", json={"status": "CONFIRMED"}, headers=HEADERS)
    client.post(
        f"/api/bookings/{done['id']}/return",
        json={"items": [{"item_id": done["items"][0]["id"], "returned_quantity": 1}]},
        headers=HEADERS,
    )
    confirmed = _book(client, c["id"], betoneira["id"], 250)
    client.put(f"/api/bookings/{confirmed['id']}", json={"status": "CONFIRMED"}, headers=HEADERS)
    _book(client, c["id"], betoneira["id"], 100)
    cancelled = _book(client, c["id"], betoneira["id"], 999)
    client.delete(f"/api/bookings/{cancelled['id']}", headers=HEADERS)

    data = client.get("/api/dashboard/stats").json
    assert data["customers"] == {"total": 1}
    assert data["equipment"]["total"] == 3
    assert data["bookings"] == {"total": 4, "active": 1, "pending": 1}
    assert data["revenue"]["total"] == 400.0
    assert data["revenue"]["this_month"] == 400.0
    assert data["revenue"]["pending"] == 350.0
    assert data["equipment_by_category"][0] == {"category": "Construção", "count": 2}
    recent = data["recent_bookings"]
    assert len(recent) == 4
    assert recent[0]["booking_number"] == "RES-0004"
    assert recent[0]["equipment"] == ["Betoneira 400L"]


def test_dashboard_empty_tenant(client):
    login(client)
    data = client.get("/api/dashboard/stats").json
    assert data["bookings"]["total"] == 0
    assert data["revenue"]["total"] == 0
    assert data["recent_bookings"] == []


def test_global_search(app, client):
    login(client)
    e = create_equipment(client, name="Martelete Bosch", category="Demolição")
    c = create_customer(client, name="Marta Ribeiro", email="marta@obra.com")
    b = _book(client, c["id"], e["id"], 120)

    results = client.get("/api/search?q=mar").json["results"]
    assert [(r["type"], r["title"]) for r in results] == [
        ("equipment", "Martelete Bosch"),
        ("customer", "Marta Ribeiro"),
        ("booking", "RES-0001"),
    ]
    assert results[0]["url"] == f"/admin/equipment/{e['id']}"
    assert results[1]["subtitle"] == "marta@obra.com"
    assert results[2]["url"] == f"/admin/bookings/{b['id']}"

    assert client.get("/api/search?q=RES-0001").json["results"][0]["type"] == "booking"
    assert client.get("/api/search?q=m").json["results"] == []
    assert client.get("/api/search").json["results"] == []

    add_tenant(app, "beta", admin_email="admin@beta.com")
    other = app.test_client()
    login(other, "admin@beta.com")
    assert other.get("/api/search?q=mar").json["results"] == []


def test_activity_logs(client):
    login(client)
    e = create_equipment(client)
    client.put(f"/api/equipment/{e['id']}", json={"price_per_day": 75}, headers=HEADERS)

    body = client.get("/api/activity-logs").json
    actions = [(log["action"], log["entity"]) for log in body["logs"]]
    assert ("LOGIN", "USER") in actions
    assert ("CREATE", "EQUIPMENT") in actions
    assert body["pagination"]["total"] == len(body["logs"])

    logs = client.get(f"/api/activity-logs?entity=equipment&entity_id={e['id']}").json["logs"]
    assert [log["action"] for log in logs][:2] == ["UPDATE", "CREATE"]
    update = logs[0]
    assert update["user"]["email"] == "admin@example.com"
    assert update["request_id"]
    assert update["metadata"]["changes"]["price_per_day"] == {"old": 50.0, "new": 75.0}

    assert client.get("/api/activity-logs?action=DELETE").json["logs"] == []
    assert client.get("/api/activity-logs?start_date=2030-01-02&end_date=2030-01-01").status_code == 400
    assert client.get("/api/activity-logs?start_date=2000-01-01&end_date=2000-01-02").json["logs"] == []


def test_failed_login_is_logged(client):
    client.post("/auth/login", data={"email": "admin@example.com", "password": "errada"})
    login(client)
    logs = client.get("/api/activity-logs?action=LOGIN_FAILED").json["logs"]
    assert len(logs) == 1
    assert logs[0]["user"] is None


def test_logs_require_view_reports(app, client):
    login(client)
    key = client.post(
        "/api/integrations/api-keys",
        json={"name": "Importador", "permissions": ["CREATE_EQUIPMENT"]},
        headers=HEADERS,
    ).json["key"]
    r = app.test_client().get("/api/activity-logs", headers={"Authorization": f"Bearer {key}"})
    assert r.status_code == 403
    assert r.json["missing_permission"] == "VIEW_REPORTS"

    add_user(app, "viewer@example.com", "VIEWER")
    viewer = app.test_client()
    login(viewer, "viewer@example.com")
    assert viewer.get("/admin/logs").status_code == 200


def test_admin_dashboard_and_logs_pages(client):
    login(client)
    create_equipment(client)
    assert client.get("/admin/").status_code == 200
    assert client.get("/admin/logs").status_code == 200
    assert client.get("/admin/logs?entity=EQUIPMENT").status_code == 200
