"""Maintenance records: stock hold while in progress, costs on completion, filters and stats."""
from conftest import HEADERS, add_user, create_equipment, login


def _schedule(client, equipment_id, **payload):
    body = {
        "equipment_id": equipment_id,
        "type": "PREVENTIVE",
        "description": "Troca de óleo",
        "scheduled_date": "2030-03-10",
    }
    body.update(payload)
    return client.post("/api/maintenance", json=body, headers=HEADERS)


def _stock(client, equipment_id):
    return client.get(f"/api/stock/{equipment_id}").json["equipment"]


def test_schedule_validations(client):
    login(client)
    e = create_equipment(client, quantity=2)
    r = client.post("/api/maintenance", json={"equipment_id": e["id"]}, headers=HEADERS)
    assert r.status_code == 400
    assert set(r.json["missing_fields"]) == {"type", "description", "scheduled_date"}
    assert _schedule(client, e["id"], type="WASH").status_code == 400
    assert _schedule(client, e["id"], quantity=0).status_code == 400
    assert _schedule(client, e["id"], cost=-1).status_code == 400
    assert _schedule(client, e["id"], status="COMPLETED").status_code == 400
    assert _schedule(client, 9999).status_code == 404


def test_maintenance_lifecycle_moves_stock_and_books_cost(client):
    login(client)
    e = create_equipment(client, quantity=3)
    r = _schedule(client, e["id"], quantity=2, cost=180, vendor="Oficina do Zé")
    assert r.status_code == 201
    record = r.json
    assert record["status"] == "SCHEDULED"
    assert record["type_label"] == "Preventiva"
    # scheduling alone keeps the units available
    assert _stock(client, e["id"])["available_stock"] == 3

    r = client.put(f"/api/maintenance/{record['id']}", json={"status": "IN_PROGRESS"}, headers=HEADERS)
    assert r.status_code == 200
    stock = _stock(client, e["id"])
    assert stock["available_stock"] == 1
    assert stock["maintenance_stock"] == 2

    r = client.put(f"/api/maintenance/{record['id']}", json={"quantity": 1}, headers=HEADERS)
    assert r.status_code == 400
    r = client.delete(f"/api/maintenance/{record['id']}", headers=HEADERS)
    assert r.status_code == 400
    assert r.json["error"] == "Não é possível excluir uma manutenção em andamento"
    r = client.put(f"/api/maintenance/{record['id']}", json={"status": "SCHEDULED"}, headers=HEADERS)
    assert r.status_code == 400

    r = client.put(f"/api/maintenance/{record['id']}", json={"status": "COMPLETED"}, headers=HEADERS)
    assert r.status_code == 200
    assert r.json["completed_date"] is not None
    stock = _stock(client, e["id"])
    assert stock["available_stock"] == 3
    assert stock["maintenance_stock"] == 0

    costs = client.get(f"/api/equipment/{e['id']}/costs").json
    assert costs["total"] == 180
    assert costs["costs"][0]["type"] == "MAINTENANCE"

    movements = client.get(f"/api/stock/{e['id']}/movements").json["movements"]
    assert [m["type"] for m in movements[:2]] == ["MAINTENANCE_IN", "MAINTENANCE_OUT"]

    r = client.put(f"/api/maintenance/{record['id']}", json={"status": "CANCELLED"}, headers=HEADERS)
    assert r.status_code == 400
    r = client.put(f"/api/maintenance/{record['id']}", json={"notes": "Próxima em 6 meses"}, headers=HEADERS)
    assert r.status_code == 200
    assert client.delete(f"/api/maintenance/{record['id']}", headers=HEADERS).status_code == 200


def test_start_immediately_and_cancel_releases_units(client):
    login(client)
    e = create_equipment(client, quantity=1)
    r = _schedule(client, e["id"], type="CORRECTIVE", status="IN_PROGRESS", cost=90)
    assert r.status_code == 201
    record = r.json
    assert record["status"] == "IN_PROGRESS"
    assert _stock(client, e["id"])["maintenance_stock"] == 1

    # nothing left on the shelf for a second job
    assert _schedule(client, e["id"], status="IN_PROGRESS").status_code == 400

    r = client.put(f"/api/maintenance/{record['id']}", json={"status": "CANCELLED"}, headers=HEADERS)
    assert r.status_code == 200
    assert _stock(client, e["id"])["available_stock"] == 1
    # cancelled work books no cost
    assert client.get(f"/api/equipment/{e['id']}/costs").json["total"] == 0


def test_list_filters_and_stats(client):
    login(client)
    e1 = create_equipment(client, quantity=2)
    e2 = create_equipment(client, name="Andaime", quantity=2)
    done = _schedule(client, e1["id"], cost=100, scheduled_date="2030-01-05").json
    client.put(f"/api/maintenance/{done['id']}", json={"status": "COMPLETED"}, headers=HEADERS)
    _schedule(client, e1["id"], type="INSPECTION", scheduled_date="2030-02-01", status="IN_PROGRESS")
    _schedule(client, e2["id"], scheduled_date="2030-03-01", cost=999)

    body = client.get("/api/maintenance").json
    assert [m["scheduled_date"] for m in body["maintenances"]] == ["2030-03-01", "2030-02-01", "2030-01-05"]
    assert body["stats"] == {
        "total": 3,
        "scheduled": 1,
        "in_progress": 1,
        "completed": 1,
        "cancelled": 0,
        "total_cost": 100.0,
    }

    assert len(client.get(f"/api/maintenance?equipment_id={e2['id']}").json["maintenances"]) == 1
    assert len(client.get("/api/maintenance?status=in_progress").json["maintenances"]) == 1
    assert len(client.get("/api/maintenance?type=INSPECTION").json["maintenances"]) == 1
    ranged = client.get("/api/maintenance?start_date=2030-01-10&end_date=2030-02-28").json
    assert [m["type"] for m in ranged["maintenances"]] == ["INSPECTION"]
    assert client.get("/api/maintenance?status=DONE").status_code == 400


def test_maintenance_scoped_to_tenant_and_permissions(app, client):
    login(client)
    e = create_equipment(client)
    record = _schedule(client, e["id"]).json

    from conftest import add_tenant

    add_tenant(app, "beta", admin_email="admin@beta.com")
    other = app.test_client()
    login(other, "admin@beta.com")
    assert other.get(f"/api/maintenance/{record['id']}").status_code == 404
    assert other.get("/api/maintenance").json["maintenances"] == []

    add_user(app, "op@example.com", "OPERATOR")
    operator = app.test_client()
    login(operator, "op@example.com")
    assert operator.get("/api/maintenance").status_code == 200
    assert _schedule(operator, e["id"]).status_code == 403


def test_admin_maintenance_page(client):
    login(client)
    e = create_equipment(client)
    r = client.post(
        "/admin/maintenance/new",
        data={
            "csrf_token": "test-csrf-token",
            "equipment_id": str(e["id"]),
            "type": "PREVENTIVE",
            "description": "Revisão geral",
            "scheduled_date": "2030-05-01",
        },
    )
    assert r.status_code == 302
    record = client.get("/api/maintenance").json["maintenances"][0]

    r = client.post(
        f"/admin/maintenance/{record['id']}/status",
        data={"csrf_token": "test-csrf-token", "status": "IN_PROGRESS"},
    )
    assert r.status_code == 302
    assert _stock(client, e["id"])["maintenance_stock"] == 1

    page = client.get("/admin/maintenance").get_data(as_text=True)
    assert "Revisão geral" in page
    assert "Em andamento" in page
