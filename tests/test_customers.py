from conftest import HEADERS, create_customer, create_equipment, login

VALID_CPF = "529.982.247-25"
VALID_CNPJ = "11.222.333/0001-81"


def test_create_customer_normalizes_documents(client):
    login(client)
    r = client.post(
        "/api/customers",
        json={"name": "Obra Certa Ltda", "phone": "1133334444", "cpf_cnpj": VALID_CNPJ, "state": "sp", "zip_code": "01310-100"},
        headers=HEADERS,
    )
    assert r.status_code == 201
    c = r.json["customer"]
    assert c["cpf_cnpj"] == "11222333000181"
    assert c["cpf_cnpj_formatted"] == VALID_CNPJ
    assert c["person_type"] == "PJ"
    assert c["state"] == "SP"
    assert c["zip_code"] == "01310100"
    assert c["is_active"] is True


def test_create_customer_requires_name_and_phone(client):
    login(client)
    r = client.post("/api/customers", json={"name": "Maria"}, headers=HEADERS)
    assert r.status_code == 400
    assert r.json["missing_fields"] == ["phone"]


def test_create_customer_rejects_invalid_data(client):
    login(client)
    base = {"name": "Maria", "phone": "11988887777"}
    for extra in ({"cpf_cnpj": "111.111.111-11"}, {"state": "XX"}, {"zip_code": "123"}, {"person_type": "ONG"}):
        r = client.post("/api/customers", json={**base, **extra}, headers=HEADERS)
        assert r.status_code == 400, extra


def test_search_customers(client):
    login(client)
    create_customer(client, name="Ana Paula", cpf_cnpj=VALID_CPF)
    create_customer(client, name="Carlos", email="carlos@obra.com.br")

    r = client.get("/api/customers?q=ana")
    assert [c["name"] for c in r.json] == ["Ana Paula"]

    r = client.get("/api/customers?q=529.982")
    assert [c["name"] for c in r.json] == ["Ana Paula"]

    r = client.get("/api/customers?q=obra.com")
    assert [c["name"] for c in r.json] == ["Carlos"]
    assert r.json[0]["booking_count"] == 0


def test_update_customer(client):
    login(client)
    c = create_customer(client)
    r = client.put(f"/api/customers/{c['id']}", json={"city": "Campinas", "is_active": "false"}, headers=HEADERS)
    assert r.status_code == 200
    assert r.json["customer"]["city"] == "Campinas"
    assert r.json["customer"]["is_active"] is False

    r = client.put(f"/api/customers/{c['id']}", json={"phone": ""}, headers=HEADERS)
    assert r.status_code == 400


def test_delete_customer_without_history(client):
    login(client)
    c = create_customer(client)
    r = client.delete(f"/api/customers/{c['id']}", headers=HEADERS)
    assert r.status_code == 200
    assert client.get(f"/api/customers/{c['id']}").status_code == 404


def test_delete_customer_rules(client):
    login(client)
    e = create_equipment(client)
    c = create_customer(client)
    b = client.post(
        "/api/bookings",
        json={
            "customer_id": c["id"],
            "equipment_id": e["id"],
            "start_date": "2030-02-01",
            "end_date": "2030-02-02",
            "total_price": 100,
        },
        headers=HEADERS,
    ).json

    r = client.delete(f"/api/customers/{c['id']}", headers=HEADERS)
    assert r.status_code == 409

    client.delete(f"/api/bookings/{b['id']}", headers=HEADERS)
    r = client.delete(f"/api/customers/{c['id']}", headers=HEADERS)
    assert r.status_code == 200
    # history keeps the row, deactivated
    r = client.get(f"/api/customers/{c['id']}")
    assert r.status_code == 200
    assert r.json["is_active"] is False


def test_admin_new_customer_form(client):
    login(client)
    r = client.post(
        "/admin/customers/new",
        data={"csrf_token": "test-csrf-token", "name": "Obra Certa Ltda", "phone": "1133334444", "cpf_cnpj": VALID_CNPJ},
    )
    assert r.status_code == 302
    r = client.get("/api/customers?q=Obra")
    assert r.json[0]["person_type"] == "PJ"


def test_admin_new_customer_form_invalid(client):
    login(client)
    r = client.post(
        "/admin/customers/new",
        data={"csrf_token": "test-csrf-token", "name": "Sem Telefone"},
    )
    assert r.status_code == 302
    assert client.get("/api/customers").json == []


def _site(client, customer_id, **payload):
    body = {"name": "Obra Centro"}
    body.update(payload)
    return client.post(f"/api/customers/{customer_id}/sites", json=body, headers=HEADERS)


def test_customer_sites_crud(client):
    login(client)
    c = create_customer(client)

    r = client.post(f"/api/customers/{c['id']}/sites", json={"city": "Campinas"}, headers=HEADERS)
    assert r.status_code == 400
    assert r.json["missing_fields"] == ["name"]
    assert _site(client, c["id"], state="XX").status_code == 400
    assert _site(client, c["id"], ibge_code="123").status_code == 400

    first = _site(client, c["id"], name="Obra Norte", is_default=True, zip_code="13010-000", ibge_code="3509502").json
    assert first["is_default"] is True
    assert first["zip_code"] == "13010000"
    second = _site(client, c["id"], name="Almoxarifado", is_default=True).json

    sites = client.get(f"/api/customers/{c['id']}/sites").json
    # only one default; defaults first, then by name
    assert [(s["name"], s["is_default"]) for s in sites] == [("Almoxarifado", True), ("Obra Norte", False)]

    r = client.put(
        f"/api/customers/{c['id']}/sites/{first['id']}",
        json={"contact_name": "Carlos", "is_active": False},
        headers=HEADERS,
    )
    assert r.status_code == 200
    assert r.json["contact_name"] == "Carlos"
    assert [s["id"] for s in client.get(f"/api/customers/{c['id']}/sites").json] == [second["id"]]
    assert len(client.get(f"/api/customers/{c['id']}/sites?active_only=false").json) == 2

    r = client.delete(f"/api/customers/{c['id']}/sites/{second['id']}", headers=HEADERS)
    assert r.json["message"] == "Local excluído com sucesso"
    assert client.get(f"/api/customers/{c['id']}/sites/{second['id']}").status_code == 404

    other = create_customer(client, name="Outro")
    r = client.get(f"/api/customers/{other['id']}/sites/{first['id']}")
    assert r.status_code == 404
    assert r.json["error"] == "Local não encontrado"


def test_site_linked_to_booking_is_deactivated(client):
    login(client)
    e = create_equipment(client)
    c = create_customer(client)
    site = _site(client, c["id"]).json
    r = client.post(
        "/api/bookings",
        json={
            "customer_id": c["id"],
            "customer_site_id": site["id"],
            "equipment_id": e["id"],
            "start_date": "2030-06-01",
            "end_date": "2030-06-02",
            "total_price": 100,
        },
        headers=HEADERS,
    )
    assert r.status_code == 201
    assert r.json["customer_site"] == {"id": site["id"], "name": "Obra Centro"}

    r = client.delete(f"/api/customers/{c['id']}/sites/{site['id']}", headers=HEADERS)
    assert r.json["message"] == "Local desativado (possui reservas vinculadas)"
    detail = client.get(f"/api/customers/{c['id']}/sites/{site['id']}").json
    assert detail["is_active"] is False

    # inactive sites and sites of other customers cannot be booked
    other = create_customer(client, name="Outro")
    payload = {
        "customer_id": other["id"],
        "customer_site_id": site["id"],
        "equipment_id": e["id"],
        "start_date": "2030-07-01",
        "end_date": "2030-07-02",
        "total_price": 100,
    }
    assert client.post("/api/bookings", json=payload, headers=HEADERS).status_code == 404
    payload["customer_id"] = c["id"]
    assert client.post("/api/bookings", json=payload, headers=HEADERS).status_code == 400
