"""Booking lifecycle: availability, confirmation, dispatch, payment, returns and cancellation."""
from datetime import date, timedelta

from app.rental.db import session_scope
from app.rental.modules.bookings.service import dispatch_due_bookings
from conftest import HEADERS, create_customer, create_equipment, login


def _book(client, customer_id, equipment_id, *, quantity=1, start="2030-06-01", end="2030-06-03", **extra):
    payload = {
        "customer_id": customer_id,
        "items": [{"equipment_id": equipment_id, "quantity": quantity}],
        "start_date": start,
        "end_date": end,
        "total_price": 300.0,
    }
    payload.update(extra)
    return client.post("/api/bookings", json=payload, headers=HEADERS)


def _stock(client, equipment_id):
    return client.get(f"/api/stock/{equipment_id}").json["equipment"]


def test_create_booking(client):
    login(client)
    e = create_equipment(client, price_per_day=50, quantity=2)
    c = create_customer(client)
    r = _book(client, c["id"], e["id"], quantity=2)
    assert r.status_code == 201
    b = r.json
    assert b["booking_number"] == "RES-0001"
    assert b["status"] == "PENDING"
    assert b["customer"]["id"] == c["id"]
    item = b["items"][0]
    # 3 days at the daily price, two units
    assert item["total_price"] == 300.0
    assert item["unit_price"] == 150.0
    # PENDING bookings do not move stock
    assert _stock(client, e["id"])["available_stock"] == 2

    r = _book(client, c["id"], e["id"], start="2030-07-01", end="2030-07-01")
    assert r.json["booking_number"] == "RES-0002"


def test_create_booking_validations(client):
    login(client)
    e = create_equipment(client)
    c = create_customer(client)

    r = client.post("/api/bookings", json={"customer_id": c["id"]}, headers=HEADERS)
    assert r.status_code == 400
    assert "start_date" in r.json["missing_fields"]

    r = _book(client, c["id"], e["id"], start="2030-06-05", end="2030-06-01")
    assert r.status_code == 400

    r = _book(client, c["id"], e["id"], start_time="25:00")
    assert r.status_code == 400

    r = _book(client, 9999, e["id"])
    assert r.status_code == 404

    r = client.post(
        "/api/bookings",
        json={"customer_id": c["id"], "start_date": "2030-06-01", "end_date": "2030-06-02", "total_price": 1},
        headers=HEADERS,
    )
    assert r.status_code == 400


def test_overlapping_booking_conflicts(client):
    login(client)
    e = create_equipment(client, quantity=1)
    c = create_customer(client)
    assert _book(client, c["id"], e["id"], start="2030-06-01", end="2030-06-05").status_code == 201

    r = _book(client, c["id"], e["id"], start="2030-06-05", end="2030-06-08")
    assert r.status_code == 409
    assert r.json["equipment_id"] == e["id"]
    assert r.json["conflicting_bookings"][0]["booking_number"] == "RES-0001"

    # Adjacent period is fine
    assert _book(client, c["id"], e["id"], start="2030-06-06", end="2030-06-08").status_code == 201


def test_cancelled_booking_frees_period(client):
    login(client)
    e = create_equipment(client, quantity=1)
    c = create_customer(client)
    b = _book(client, c["id"], e["id"]).json
    r = client.delete(f"/api/bookings/{b['id']}", headers=HEADERS)
    assert r.status_code == 200
    assert r.json["booking"]["status"] == "CANCELLED"
    assert _book(client, c["id"], e["id"]).status_code == 201

    r = client.delete(f"/api/bookings/{b['id']}", headers=HEADERS)
    assert r.status_code == 400


def test_confirm_holds_period_and_dispatch_moves_stock(client):
    login(client)
    e = create_equipment(client, quantity=3)
    c = create_customer(client)
    b = _book(client, c["id"], e["id"], quantity=2).json

    r = client.put(f"/api/bookings/{b['id']}", json={"status": "CONFIRMED"}, headers=HEADERS)
    assert r.status_code == 200
    assert r.json["dispatched_at"] is None
    # a future rental keeps its units on the shelf until dispatch
    stock = _stock(client, e["id"])
    assert stock["available_stock"] == 3
    assert stock["reserved_stock"] == 0

    r = client.put(f"/api/bookings/{b['id']}", json={"status": "PENDING"}, headers=HEADERS)
    assert r.status_code == 400

    r = client.post(f"/api/bookings/{b['id']}/dispatch", headers=HEADERS)
    assert r.status_code == 200
    assert r.json["dispatched_at"] is not None
    stock = _stock(client, e["id"])
    assert stock["available_stock"] == 1
    assert stock["reserved_stock"] == 2

    r = client.post(f"/api/bookings/{b['id']}/dispatch", headers=HEADERS)
    assert r.status_code == 400
    assert r.json["error"] == "Reserva já foi retirada"

    r = client.delete(f"/api/bookings/{b['id']}", headers=HEADERS)
    assert r.status_code == 200
    stock = _stock(client, e["id"])
    assert stock["available_stock"] == 3
    assert stock["reserved_stock"] == 0


def test_cancel_confirmed_booking_before_dispatch(client):
    login(client)
    e = create_equipment(client, quantity=2)
    c = create_customer(client)
    b = _book(client, c["id"], e["id"], quantity=2).json
    client.put(f"/api/bookings/{b['id']}", json={"status": "CONFIRMED"}, headers=HEADERS)

    r = client.delete(f"/api/bookings/{b['id']}", headers=HEADERS)
    assert r.status_code == 200
    stock = _stock(client, e["id"])
    assert stock["available_stock"] == 2
    assert stock["reserved_stock"] == 0
    movements = client.get(f"/api/stock/{e['id']}/movements").json["movements"]
    assert [m["type"] for m in movements if m["type"].startswith("RENTAL")] == []

    # pending bookings cannot be dispatched
    other = _book(client, c["id"], e["id"]).json
    assert client.post(f"/api/bookings/{other['id']}/dispatch", headers=HEADERS).status_code == 400


def test_later_booking_confirms_while_earlier_rental_is_out(client):
    login(client)
    e = create_equipment(client, quantity=1)
    c = create_customer(client)
    today = date.today()
    first = _book(client, c["id"], e["id"], start=today.isoformat(), end=(today + timedelta(days=5)).isoformat()).json
    r = client.put(f"/api/bookings/{first['id']}", json={"status": "CONFIRMED"}, headers=HEADERS)
    assert r.status_code == 200
    # already started: units leave on confirmation
    assert r.json["dispatched_at"] is not None
    assert _stock(client, e["id"])["available_stock"] == 0

    start = (today + timedelta(days=30)).isoformat()
    end = (today + timedelta(days=32)).isoformat()
    second = _book(client, c["id"], e["id"], start=start, end=end).json
    check = client.get(f"/api/stock/{e['id']}/availability?start_date={start}&end_date={end}").json
    assert check["is_available"] is True

    r = client.put(f"/api/bookings/{second['id']}", json={"status": "CONFIRMED"}, headers=HEADERS)
    assert r.status_code == 200
    assert r.json["status"] == "CONFIRMED"

    # the unit is still with the first customer
    r = client.post(f"/api/bookings/{second['id']}/dispatch", headers=HEADERS)
    assert r.status_code == 400
    assert r.json["code"] == "stock_error"

    client.post(
        f"/api/bookings/{first['id']}/return",
        json={"items": [{"item_id": first["items"][0]["id"], "returned_quantity": 1}]},
        headers=HEADERS,
    )
    assert client.post(f"/api/bookings/{second['id']}/dispatch", headers=HEADERS).status_code == 200
    assert _stock(client, e["id"])["reserved_stock"] == 1


def test_confirm_rechecks_period_availability(client):
    login(client)
    e = create_equipment(client, quantity=2)
    c = create_customer(client)
    _book(client, c["id"], e["id"]).json
    second = _book(client, c["id"], e["id"]).json
    r = client.post(f"/api/stock/{e['id']}/movement", json={"type": "LOSS", "quantity": 1}, headers=HEADERS)
    assert r.status_code == 201

    r = client.put(f"/api/bookings/{second['id']}", json={"status": "CONFIRMED"}, headers=HEADERS)
    assert r.status_code == 409
    assert r.json["available_for_period"] == 0
    assert client.get(f"/api/bookings/{second['id']}").json["status"] == "PENDING"


def test_dispatch_due_bookings(app, client):
    login(client)
    e = create_equipment(client, quantity=1)
    c = create_customer(client)
    first = _book(client, c["id"], e["id"], start="2030-06-01", end="2030-06-03").json
    second = _book(client, c["id"], e["id"], start="2030-06-10", end="2030-06-12").json
    _book(client, c["id"], e["id"], start="2030-06-20", end="2030-06-21")
    for b in (first, second):
        client.put(f"/api/bookings/{b['id']}", json={"status": "CONFIRMED"}, headers=HEADERS)

    with session_scope(app) as s:
        results = dispatch_due_bookings(s, today=date(2030, 6, 11))
    assert [(r["booking_number"], r["dispatched"]) for r in results] == [("RES-0001", True), ("RES-0002", False)]
    assert "Estoque insuficiente" in results[1]["error"]

    assert client.get(f"/api/bookings/{first['id']}").json["dispatched_at"] is not None
    assert client.get(f"/api/bookings/{second['id']}").json["dispatched_at"] is None
    assert _stock(client, e["id"])["reserved_stock"] == 1


def test_dispatch_due_script(app, client):
    from app.rental.modules.bookings.models import Booking
    from scripts.dispatch_due import run

    login(client)
    e = create_equipment(client, quantity=2)
    c = create_customer(client)
    b = _book(client, c["id"], e["id"]).json
    client.put(f"/api/bookings/{b['id']}", json={"status": "CONFIRMED"}, headers=HEADERS)
    with session_scope(app) as s:
        s.get(Booking, b["id"]).start_date = date.today()

    assert run() == 0
    assert client.get(f"/api/bookings/{b['id']}").json["dispatched_at"] is not None
    assert _stock(client, e["id"])["reserved_stock"] == 1
    # nothing left to do on a second run
    assert run() == 0


def test_booking_payment(client):
    login(client)
    e = create_equipment(client)
    c = create_customer(client)
    b = _book(client, c["id"], e["id"]).json

    r = client.post(f"/api/bookings/{b['id']}/payment", json={"payment_method": "CHEQUE"}, headers=HEADERS)
    assert r.status_code == 400

    r = client.post(f"/api/bookings/{b['id']}/payment", json={"payment_method": "pix"}, headers=HEADERS)
    assert r.status_code == 200
    assert r.json["message"] == "Pagamento de R$ 300.00 registrado com sucesso"
    assert r.json["booking"]["status"] == "CONFIRMED"
    assert r.json["booking"]["payment_method"] == "PIX"
    assert r.json["booking"]["paid_at"] is not None

    r = client.post(f"/api/bookings/{b['id']}/payment", json={"payment_method": "PIX"}, headers=HEADERS)
    assert r.status_code == 400
    assert r.json["error"] == "Esta reserva já foi paga"

    r = client.delete(f"/api/bookings/{b['id']}/payment", headers=HEADERS)
    assert r.status_code == 200
    assert r.json["message"] == "Pagamento estornado com sucesso"
    assert r.json["booking"]["paid_at"] is None
    # reversal keeps the booking confirmed
    assert r.json["booking"]["status"] == "CONFIRMED"

    r = client.delete(f"/api/bookings/{b['id']}/payment", headers=HEADERS)
    assert r.status_code == 400
    assert r.json["error"] == "Esta reserva não possui pagamento registrado"

    client.delete(f"/api/bookings/{b['id']}", headers=HEADERS)
    r = client.post(f"/api/bookings/{b['id']}/payment", json={"payment_method": "PIX"}, headers=HEADERS)
    assert r.status_code == 400


def test_admin_dispatch_and_payment_forms(client):
    login(client)
    e = create_equipment(client, quantity=1)
    c = create_customer(client)
    b = _book(client, c["id"], e["id"]).json
    client.put(f"/api/bookings/{b['id']}", json={"status": "CONFIRMED"}, headers=HEADERS)

    page = client.get(f"/admin/bookings/{b['id']}")
    assert "Registrar retirada" in page.get_data(as_text=True)

    r = client.post(f"/admin/bookings/{b['id']}/dispatch", data={"csrf_token": "test-csrf-token"})
    assert r.status_code == 302
    assert _stock(client, e["id"])["reserved_stock"] == 1

    r = client.post(
        f"/admin/bookings/{b['id']}/payment",
        data={"csrf_token": "test-csrf-token", "payment_method": "CASH"},
    )
    assert r.status_code == 302
    assert client.get(f"/api/bookings/{b['id']}").json["payment_method"] == "CASH"


def test_completed_status_only_through_return(client):
    login(client)
    e = create_equipment(client)
    c = create_customer(client)
    b = _book(client, c["id"], e["id"]).json
    r = client.put(f"/api/bookings/{b['id']}", json={"status": "COMPLETED"}, headers=HEADERS)
    assert r.status_code == 400


def test_partial_then_full_return(client):
    login(client)
    e = create_equipment(client, quantity=3)
    c = create_customer(client)
    b = _book(client, c["id"], e["id"], quantity=3).json
    item_id = b["items"][0]["id"]

    # Return needs a confirmed booking
    r = client.post(
        f"/api/bookings/{b['id']}/return",
        json={"items": [{"item_id": item_id, "returned_quantity": 1}]},
        headers=HEADERS,
    )
    assert r.status_code == 400

    client.put(f"/api/bookings/{b['id']}", json={"status": "CONFIRMED"}, headers=HEADERS)

    r = client.post(
        f"/api/bookings/{b['id']}/return",
        json={"items": [{"item_id": item_id, "returned_quantity": 1}]},
        headers=HEADERS,
    )
    assert r.status_code == 200
    assert r.json["completed"] is False
    assert r.json["booking"]["status"] == "CONFIRMED"
    assert r.json["items"][0]["pending"] == 2

    r = client.post(
        f"/api/bookings/{b['id']}/return",
        json={"items": [{"item_id": item_id, "returned_quantity": 2, "damaged_quantity": 1}]},
        headers=HEADERS,
    )
    assert r.status_code == 400

    r = client.post(
        f"/api/bookings/{b['id']}/return",
        json={
            "items": [
                {
                    "item_id": item_id,
                    "returned_quantity": 1,
                    "damaged_quantity": 1,
                    "damage_notes": "Motor queimado",
                    "repair_cost": 250,
                }
            ]
        },
        headers=HEADERS,
    )
    assert r.status_code == 200
    assert r.json["completed"] is True
    assert r.json["booking"]["status"] == "COMPLETED"
    assert "invoice_id" not in r.json

    stock = _stock(client, e["id"])
    assert stock["available_stock"] == 2
    assert stock["reserved_stock"] == 0
    assert stock["damaged_stock"] == 1
    assert stock["total_stock"] == 3

    costs = client.get(f"/api/equipment/{e['id']}/costs").json
    assert costs["total"] == 250
    assert costs["costs"][0]["type"] == "REPAIR"


def test_return_unknown_item(client):
    login(client)
    e = create_equipment(client)
    c = create_customer(client)
    b = _book(client, c["id"], e["id"]).json
    client.put(f"/api/bookings/{b['id']}", json={"status": "CONFIRMED"}, headers=HEADERS)
    r = client.post(
        f"/api/bookings/{b['id']}/return",
        json={"items": [{"item_id": 12345, "returned_quantity": 1}]},
        headers=HEADERS,
    )
    assert r.status_code == 404


def test_reschedule_checks_availability(client):
    login(client)
    e = create_equipment(client, quantity=1)
    c = create_customer(client)
    first = _book(client, c["id"], e["id"], start="2030-06-01", end="2030-06-03").json
    second = _book(client, c["id"], e["id"], start="2030-06-10", end="2030-06-12").json

    r = client.put(
        f"/api/bookings/{second['id']}",
        json={"start_date": "2030-06-02", "end_date": "2030-06-04"},
        headers=HEADERS,
    )
    assert r.status_code == 409

    # Moving within its own period does not conflict with itself
    r = client.put(
        f"/api/bookings/{first['id']}",
        json={"end_date": "2030-06-04", "notes": "Entrega às 8h"},
        headers=HEADERS,
    )
    assert r.status_code == 200
    assert r.json["end_date"] == "2030-06-04"
    assert r.json["notes"] == "Entrega às 8h"


def test_list_filters_and_calendar(client):
    login(client)
    e = create_equipment(client, quantity=5)
    c1 = create_customer(client, name="Ana")
    c2 = create_customer(client, name="Bruno")
    _book(client, c1["id"], e["id"], start="2030-06-01", end="2030-06-02")
    b2 = _book(client, c2["id"], e["id"], start="2030-07-01", end="2030-07-02").json
    client.put(f"/api/bookings/{b2['id']}", json={"status": "CONFIRMED"}, headers=HEADERS)

    r = client.get("/api/bookings?status=confirmed")
    assert [b["id"] for b in r.json] == [b2["id"]]

    r = client.get(f"/api/bookings?customer_id={c1['id']}")
    assert len(r.json) == 1

    r = client.get("/api/bookings?status=LOST")
    assert r.status_code == 400

    r = client.get("/api/bookings/calendar?start=2030-06-01&end=2030-06-30")
    assert r.status_code == 200
    assert len(r.json["bookings"]) == 1

    r = client.get("/api/bookings/calendar?start=2030-06-30&end=2030-06-01")
    assert r.status_code == 400


def test_customer_detail_lists_bookings(client):
    login(client)
    e = create_equipment(client)
    c = create_customer(client)
    _book(client, c["id"], e["id"])
    r = client.get(f"/api/customers/{c['id']}")
    assert r.json["booking_count"] == 1
    assert r.json["bookings"][0]["booking_number"] == "RES-0001"


def test_admin_booking_flow(client):
    login(client)
    e = create_equipment(client, quantity=2)
    c = create_customer(client)
    r = client.post(
        "/admin/bookings/new",
        data={
            "csrf_token": "test-csrf-token",
            "customer_id": str(c["id"]),
            "start_date": "2030-08-01",
            "end_date": "2030-08-02",
            "total_price": "200",
            "equipment_id": [str(e["id"]), ""],
            "quantity": ["2", "1"],
        },
    )
    assert r.status_code == 302
    bookings = client.get("/api/bookings").json
    assert len(bookings) == 1
    booking = bookings[0]
    assert booking["items"][0]["quantity"] == 2

    r = client.post(
        f"/admin/bookings/{booking['id']}/status",
        data={"csrf_token": "test-csrf-token", "status": "CONFIRMED"},
    )
    assert r.status_code == 302
    item_id = booking["items"][0]["id"]
    r = client.post(
        f"/admin/bookings/{booking['id']}/return",
        data={
            "csrf_token": "test-csrf-token",
            f"item_{item_id}_returned": "2",
            f"item_{item_id}_damaged": "0",
        },
    )
    assert r.status_code == 302
    assert client.get(f"/api/bookings/{booking['id']}").json["status"] == "COMPLETED"
