"""Tests for the equipment module (catalog, pricing, costs, images)."""
import io

import pytest

from app.rental.errors import ValidationError
from app.rental.modules.equipment.service import calculate_rental_price, parse_rental_periods
from app.rental.storage import media_key, tenant_owns_key
from conftest import HEADERS, create_customer, create_equipment, login


def test_equipment_list_requires_login(client):
    r = client.get("/admin/equipment")
    assert r.status_code == 302


def test_create_equipment_records_initial_stock(client):
    login(client)
    e = create_equipment(client, quantity=4, min_stock_level=1)
    assert e["status"] == "AVAILABLE"
    assert e["total_stock"] == 4
    assert e["available_stock"] == 4

    r = client.get(f"/api/stock/{e['id']}/movements")
    assert r.status_code == 200
    movements = r.json["movements"]
    assert len(movements) == 1
    assert movements[0]["type"] == "PURCHASE"
    assert movements[0]["quantity"] == 4


def test_create_equipment_missing_fields(client):
    login(client)
    r = client.post("/api/equipment", json={"name": "Andaime"}, headers=HEADERS)
    assert r.status_code == 400
    assert set(r.json["missing_fields"]) == {"category", "price_per_day"}


def test_create_equipment_negative_price(client):
    login(client)
    r = client.post(
        "/api/equipment",
        json={"name": "Andaime", "category": "Construção", "price_per_day": -5},
        headers=HEADERS,
    )
    assert r.status_code == 400


def test_list_and_filter_equipment(client):
    login(client)
    create_equipment(client, name="Betoneira", category="Construção")
    create_equipment(client, name="Gerador 5kVA", category="Energia")

    r = client.get("/api/equipment")
    assert r.status_code == 200
    assert len(r.json) == 2

    r = client.get("/api/equipment?category=Energia")
    assert [e["name"] for e in r.json] == ["Gerador 5kVA"]

    r = client.get("/api/equipment?q=beto")
    assert [e["name"] for e in r.json] == ["Betoneira"]


def test_update_equipment(client):
    login(client)
    e = create_equipment(client)
    r = client.put(
        f"/api/equipment/{e['id']}",
        json={"price_per_day": 75, "rental_periods": [{"days": 7, "price": 300, "label": "Semanal"}]},
        headers=HEADERS,
    )
    assert r.status_code == 200
    assert r.json["price_per_day"] == 75
    assert [p["days"] for p in r.json["rental_periods"]] == [7]


def test_update_equipment_rejects_blank_name(client):
    login(client)
    e = create_equipment(client)
    r = client.put(f"/api/equipment/{e['id']}", json={"name": "  "}, headers=HEADERS)
    assert r.status_code == 400


def test_delete_equipment_soft_deletes(client):
    login(client)
    e = create_equipment(client)
    r = client.delete(f"/api/equipment/{e['id']}", headers=HEADERS)
    assert r.status_code == 200
    assert r.json["success"] is True
    r = client.get(f"/api/equipment/{e['id']}")
    assert r.json["status"] == "INACTIVE"


def test_delete_equipment_with_active_booking_conflicts(client):
    login(client)
    e = create_equipment(client)
    c = create_customer(client)
    r = client.post(
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
    r = client.delete(f"/api/equipment/{e['id']}", headers=HEADERS)
    assert r.status_code == 409


def test_equipment_costs(client):
    login(client)
    e = create_equipment(client)
    r = client.post(
        f"/api/equipment/{e['id']}/costs",
        json={"type": "maintenance", "description": "Troca de óleo", "amount": "120,50"},
        headers=HEADERS,
    )
    assert r.status_code == 201
    assert r.json["type"] == "MAINTENANCE"
    cost_id = r.json["id"]
    client.post(
        f"/api/equipment/{e['id']}/costs",
        json={"type": "FUEL", "description": "Diesel", "amount": 80},
        headers=HEADERS,
    )

    r = client.get(f"/api/equipment/{e['id']}/costs")
    assert r.json["total"] == 200.5
    assert len(r.json["costs"]) == 2

    r = client.delete(f"/api/equipment/{e['id']}/costs/{cost_id}", headers=HEADERS)
    assert r.status_code == 200
    r = client.get(f"/api/equipment/{e['id']}/costs")
    assert r.json["total"] == 80


def test_equipment_cost_invalid_type(client):
    login(client)
    e = create_equipment(client)
    r = client.post(
        f"/api/equipment/{e['id']}/costs",
        json={"type": "PARTY", "description": "x", "amount": 10},
        headers=HEADERS,
    )
    assert r.status_code == 400


def test_quote_uses_rental_periods(client):
    login(client)
    e = create_equipment(
        client,
        price_per_day=50,
        rental_periods=[{"days": 1, "price": 40}, {"days": 7, "price": 250, "label": "Semanal"}],
    )
    r = client.get(f"/api/equipment/{e['id']}/quote?days=9&quantity=2")
    assert r.status_code == 200
    # 1 week + 2 daily periods, for two units
    assert r.json["total_price"] == (250 + 2 * 40) * 2
    assert r.json["days"] == 9


def test_quote_requires_days(client):
    login(client)
    e = create_equipment(client)
    r = client.get(f"/api/equipment/{e['id']}/quote")
    assert r.status_code == 400


def test_calculate_rental_price_without_periods():
    result = calculate_rental_price([], 30.0, 3, 2)
    assert result["total_price"] == 180.0
    assert result["period_label"] == "Diária"


def test_calculate_rental_price_falls_back_to_price_per_day():
    result = calculate_rental_price([(7, 200.0, "Semanal")], 35.0, 8)
    assert result["total_price"] == 235.0
    assert "Semanal" in result["period_label"]


def test_calculate_rental_price_single_period_label():
    result = calculate_rental_price([(7, 200.0, "Semanal")], 35.0, 7)
    assert result["period_label"] == "Semanal"
    assert result["unit_price"] == round(200 / 7, 2)


def test_calculate_rental_price_rejects_zero_days():
    with pytest.raises(ValidationError):
        calculate_rental_price([], 10.0, 0)


def test_parse_rental_periods_rejects_duplicates():
    with pytest.raises(ValidationError):
        parse_rental_periods([{"days": 7, "price": 100}, {"days": 7, "price": 90}])


def test_upload_image(client):
    login(client)
    e = create_equipment(client)
    data = {"file": (io.BytesIO(b"\x89PNG\r\n\x1a\nfake"), "foto.png", "image/png")}
    r = client.post(
        f"/api/equipment/{e['id']}/images",
        data=data,
        headers=HEADERS,
        content_type="multipart/form-data",
    )
    assert r.status_code == 201
    assert r.json["key"].startswith("tenants/")
    assert r.json["images"] == [r.json["key"]]


def _upload_png(client, equipment_id: int, payload: bytes = b"\x89PNG\r\n\x1a\nfake"):
    return client.post(
        f"/api/equipment/{equipment_id}/images",
        data={"file": (io.BytesIO(payload), "foto.png", "image/png")},
        headers=HEADERS,
        content_type="multipart/form-data",
    )


def test_reupload_same_image_is_not_duplicated(client):
    login(client)
    e = create_equipment(client)
    first = _upload_png(client, e["id"])
    second = _upload_png(client, e["id"])
    assert first.json["key"] == second.json["key"]
    assert second.json["images"] == [first.json["key"]]


def test_download_and_delete_image(client):
    login(client)
    e = create_equipment(client)
    key = _upload_png(client, e["id"]).json["key"]

    r = client.get(f"/api/equipment/{e['id']}/images/{key}")
    assert r.status_code == 200
    assert r.mimetype == "image/png"
    assert r.data.startswith(b"\x89PNG")
    r.close()

    r = client.delete(f"/api/equipment/{e['id']}/images/{key}", headers=HEADERS)
    assert r.status_code == 200
    assert r.json["images"] == []

    r = client.get(f"/api/equipment/{e['id']}/images/{key}")
    assert r.status_code == 404


def test_image_key_must_belong_to_equipment(client):
    login(client)
    e = create_equipment(client)
    r = client.get(f"/api/equipment/{e['id']}/images/tenants/999/equipment/1/abc-foto.png")
    assert r.status_code == 404


def test_storage_keys_are_tenant_scoped():
    key = media_key(7, "equipment", 3, "minha foto.png", b"data")
    assert key.startswith("tenants/7/equipment/3/")
    assert key.endswith("-minha_foto.png")
    assert tenant_owns_key(7, key)
    assert not tenant_owns_key(8, key)
    assert not tenant_owns_key(7, "tenants/7/../8/x.png")


def test_upload_image_rejects_non_images(client):
    login(client)
    e = create_equipment(client)
    data = {"file": (io.BytesIO(b"%PDF-1.4"), "manual.pdf", "application/pdf")}
    r = client.post(
        f"/api/equipment/{e['id']}/images",
        data=data,
        headers=HEADERS,
        content_type="multipart/form-data",
    )
    assert r.status_code == 400


def test_admin_create_equipment_form(client):
    login(client)
    r = client.post(
        "/admin/equipment/new",
        data={
            "csrf_token": "test-csrf-token",
            "name": "Compactador",
            "category": "Construção",
            "price_per_day": "80",
            "quantity": "2",
        },
        follow_redirects=False,
    )
    assert r.status_code == 302
    r = client.get("/api/equipment?q=Compactador")
    assert r.json[0]["total_stock"] == 2
