"""NFS-e: token crypto, description templates, fiscal config and invoice lifecycle."""
from datetime import date

import pytest

from app.rental.db import session_scope
from app.rental.models import Tenant
from app.rental.modules.fiscal.crypto import (
    decrypt_token,
    encrypt_token,
    generate_encryption_key,
    is_encryption_configured,
    mask_token,
)
from app.rental.modules.fiscal.errors import (
    FiscalConfigurationError,
    FocusNfeApiError,
    FocusNfeAuthError,
    InvoiceNotFoundError,
)
from app.rental.modules.fiscal.focus_client import is_national_payload, map_http_error
from app.rental.modules.fiscal.service import generate_internal_ref, map_focus_status
from app.rental.modules.fiscal.template_engine import (
    calculate_days,
    format_currency,
    preview_template,
    process_template,
    validate_template,
)
from app.rental.modules.fiscal.validators import (
    format_cnpj,
    format_cpf,
    validate_cnpj,
    validate_cpf,
    validate_cpf_cnpj,
    validate_uf,
)
from conftest import HEADERS, create_customer, create_equipment, login

KEY = "ab" * 32
VALID_CPF = "529.982.247-25"

FISCAL_SETUP = {
    "cnpj": "11.222.333/0001-81",
    "inscricao_municipal": "123456",
    "codigo_municipio": "3550308",
    "focus_nfe_token": "tok_abcdef1234",
    "aliquota_iss": 2,
    "codigo_servico": "0701",
}


class FakeFocus:
    """Stands in for FocusNfeClient; records every call."""

    def __init__(self):
        self.calls = []
        self.error = None
        self.emit_result = {"status": "autorizado", "numero": "1001", "codigo_verificacao": "ABC123",
                            "url_danfse": "https://focus.example/danfse.pdf"}
        self.consult_result = {"status": "autorizado", "numero": "1001"}

    def __call__(self, token, environment, timeout_seconds=30):
        self.token = token
        self.environment = environment
        return self

    def emit_nfse(self, ref, payload):
        self.calls.append(("emit", ref, payload))
        if self.error:
            raise self.error
        return self.emit_result

    def consult_nfse(self, ref):
        self.calls.append(("consult", ref))
        return self.consult_result

    def cancel_nfse(self, ref, justificativa):
        self.calls.append(("cancel", ref, justificativa))
        return {"status": "cancelado"}

    def resend_email(self, ref, emails):
        self.calls.append(("email", ref, emails))

    def test_connection(self):
        return True


@pytest.fixture()
def focus(app, monkeypatch):
    fake = FakeFocus()
    monkeypatch.setattr("app.rental.modules.fiscal.service.FocusNfeClient", fake)
    app.config["FISCAL_ENCRYPTION_KEY"] = KEY
    with session_scope(app) as s:
        s.query(Tenant).filter(Tenant.slug == "acme").one().nfse_enabled = True
    return fake


def _configure(client, **extra):
    r = client.put("/api/fiscal/config", json={**FISCAL_SETUP, **extra}, headers=HEADERS)
    assert r.status_code == 200, r.json
    return r.json


def _booking(client, **customer):
    e = create_equipment(client)
    c = create_customer(client, cpf_cnpj=VALID_CPF, email="joao@cliente.com.br", **customer)
    r = client.post(
        "/api/bookings",
        json={
            "customer_id": c["id"],
            "equipment_id": e["id"],
            "start_date": "2030-06-01",
            "end_date": "2030-06-03",
            "total_price": 300,
        },
        headers=HEADERS,
    )
    return r.json


def _emit(client, booking_id):
    return client.post("/api/invoices", json={"booking_id": booking_id}, headers=HEADERS)


# ---------- helpers ----------
def test_token_encryption_round_trip():
    stored = encrypt_token("segredo-focus", KEY)
    iv, cipher = stored.split(":")
    assert len(iv) == 32
    assert decrypt_token(stored, KEY) == "segredo-focus"
    # a fresh IV every time
    assert encrypt_token("segredo-focus", KEY) != stored

    with pytest.raises(FiscalConfigurationError):
        decrypt_token(stored, "cd" * 32)
    with pytest.raises(FiscalConfigurationError) as exc:
        encrypt_token("x", "")
    assert exc.value.missing_fields == ["FISCAL_ENCRYPTION_KEY"]
    with pytest.raises(FiscalConfigurationError):
        decrypt_token("sem-separador", KEY)


def test_encryption_key_helpers():
    assert is_encryption_configured(generate_encryption_key())
    assert not is_encryption_configured("abc")
    assert not is_encryption_configured("zz" * 32)
    assert mask_token("tok_abcdef1234") == "**********1234"
    assert mask_token("abc") == "***"
    assert mask_token(None) is None


def test_template_processing():
    text = process_template("Reserva #{bookingNumber} de {customerName} {other}", {"bookingNumber": "RES-0007", "customerName": "Ana"})
    assert text == "Reserva RES-0007 de Ana {other}"
    assert validate_template("{bookingNumber} {foo} #{bar}") == ["foo", "bar"]
    assert "RES-0001" in preview_template("#{bookingNumber}")
    assert format_currency(1234.5) == "1.234,50"
    assert format_currency(None) == "0,00"
    assert calculate_days(date(2030, 6, 1), date(2030, 6, 3)) == 3


def test_document_validators():
    assert validate_cpf(VALID_CPF)
    assert not validate_cpf("111.111.111-11")
    assert not validate_cpf("529.982.247-24")
    assert validate_cnpj("11.222.333/0001-81")
    assert not validate_cnpj("11.222.333/0001-82")
    assert validate_cpf_cnpj("11222333000181")
    assert not validate_cpf_cnpj("123")
    assert format_cpf("52998224725") == VALID_CPF
    assert format_cnpj("11222333000181") == "11.222.333/0001-81"
    assert validate_uf("sp")
    assert not validate_uf("XX")


def test_focus_error_mapping():
    assert isinstance(map_http_error(401, {}), FocusNfeAuthError)
    err = map_http_error(422, {"erros": [{"codigo": "E01", "mensagem": "CNPJ do tomador inválido"}]})
    assert isinstance(err, FocusNfeApiError)
    assert err.message == "CNPJ do tomador inválido"
    assert err.focus_errors == [{"codigo": "E01", "mensagem": "CNPJ do tomador inválido"}]
    assert map_http_error(400, {"codigo": "nao_encontrado", "mensagem": "x"}).message == "nao_encontrado: x"
    assert isinstance(map_http_error(404, {}, ref="nfse-1"), InvoiceNotFoundError)
    assert map_http_error(429, {}).code == "focus_nfe_rate_limit"
    assert map_http_error(503, {}).code == "focus_nfe_server_error"


def test_national_payload_detection():
    assert is_national_payload({"codigo_tributacao_nacional_iss": "010101"})
    assert is_national_payload({"servico": {"codigo_tributario_municipio": "990101"}})
    assert not is_national_payload({"servico": {"codigo_tributario_municipio": "0701"}})


def test_status_mapping_and_refs():
    assert map_focus_status("autorizado") == "AUTHORIZED"
    assert map_focus_status("erro_autorizacao") == "REJECTED"
    assert map_focus_status("desconhecido") == "PENDING"
    ref = generate_internal_ref()
    assert ref.startswith("nfse-")
    assert len(ref) == 17


# ---------- config ----------
def test_fiscal_config_defaults(client):
    login(client)
    data = client.get("/api/fiscal/config").json
    assert data["nfse_enabled"] is False
    assert data["has_token"] is False
    assert data["missing_fields"] == ["cnpj", "inscricao_municipal", "codigo_municipio", "focus_nfe_token"]
    assert "RES-0001" in data["descricao_preview"]


def test_fiscal_config_update(client, focus):
    login(client)
    data = _configure(client)
    assert data["focus_nfe_token"] == "**********1234"
    assert data["has_token"] is True
    assert data["missing_fields"] == []
    assert data["cnpj"] == "11222333000181"
    assert data["aliquota_iss"] == 2

    r = client.put("/api/fiscal/config", json={"descricao_template": "NF {bookingNumber} {nope}"}, headers=HEADERS)
    assert r.status_code == 400
    assert r.json["invalid_variables"] == ["nope"]
    assert client.put("/api/fiscal/config", json={"focus_nfe_environment": "TESTE"}, headers=HEADERS).status_code == 400
    assert client.put("/api/fiscal/config", json={"aliquota_iss": 120}, headers=HEADERS).status_code == 400
    assert client.put("/api/fiscal/config", json={"cnpj": "11.222.333/0001-82"}, headers=HEADERS).status_code == 400


def test_token_needs_encryption_key(client):
    login(client)
    r = client.put("/api/fiscal/config", json={"focus_nfe_token": "tok"}, headers=HEADERS)
    assert r.status_code == 400
    assert r.json["code"] == "fiscal_configuration_error"
    assert r.json["missing_fields"] == ["FISCAL_ENCRYPTION_KEY"]


# ---------- invoices ----------
def test_emission_requires_feature_and_config(client, app):
    login(client)
    b = _booking(client)
    r = _emit(client, b["id"])
    assert r.status_code == 403
    assert r.json["code"] == "nfse_feature_disabled"

    with session_scope(app) as s:
        s.query(Tenant).filter(Tenant.slug == "acme").one().nfse_enabled = True
    r = _emit(client, b["id"])
    assert r.status_code == 400
    assert "focus_nfe_token" in r.json["missing_fields"]

    assert client.post("/api/invoices", json={}, headers=HEADERS).status_code == 400
    assert _emit(client, 9999).status_code == 404


def test_emit_invoice(client, focus):
    login(client)
    _configure(client)
    b = _booking(client)

    r = _emit(client, b["id"])
    assert r.status_code == 201
    inv = r.json
    assert inv["status"] == "AUTHORIZED"
    assert inv["numero"] == "1001"
    assert inv["url_pdf"] == "https://focus.example/danfse.pdf"
    assert inv["valor_servicos"] == 300
    assert inv["valor_iss"] == 6.0
    assert inv["booking_number"] == "RES-0001"
    assert inv["tomador_cpf_cnpj"] == "52998224725"
    assert inv["authorized_at"] is not None

    assert focus.token == "tok_abcdef1234"
    assert focus.environment == "HOMOLOGACAO"
    _, ref, payload = focus.calls[0]
    assert ref == inv["internal_ref"]
    assert payload["prestador"] == {"cnpj": "11222333000181", "inscricao_municipal": "123456", "codigo_municipio": "3550308"}
    assert payload["tomador"]["cpf"] == "52998224725"
    assert payload["tomador"]["email"] == "joao@cliente.com.br"
    assert "endereco" not in payload["tomador"]
    assert payload["servico"]["codigo_tributario_municipio"] == "0701"
    assert "Locação de equipamentos conforme reserva RES-0001" in payload["servico"]["discriminacao"]
    assert "01/06/2030 a 03/06/2030 (3 dias)" in payload["servico"]["discriminacao"]

    # one active invoice per booking
    assert _emit(client, b["id"]).status_code == 409

    listed = client.get(f"/api/invoices?booking_id={b['id']}").json
    assert listed["pagination"]["total"] == 1
    assert client.get("/api/invoices?status=AUTHORIZED").json["invoices"][0]["id"] == inv["id"]
    assert client.get("/api/invoices?status=OK").status_code == 400


def test_tomador_address_sent_when_complete(client, focus):
    login(client)
    _configure(client)
    b = _booking(client, address="Rua A", city="São Paulo", state="SP", zip_code="01310-100")
    _emit(client, b["id"])
    endereco = focus.calls[0][2]["tomador"]["endereco"]
    assert endereco["numero"] == "S/N"
    assert endereco["bairro"] == "Centro"
    assert endereco["cep"] == "01310100"


def test_emission_error_is_recorded_and_retryable(client, focus):
    login(client)
    _configure(client)
    b = _booking(client)
    focus.error = FocusNfeApiError(
        "Código de serviço inválido", [{"codigo": "E99", "mensagem": "Código de serviço inválido"}]
    )

    r = _emit(client, b["id"])
    assert r.status_code == 502
    assert r.json["error"] == "Código de serviço inválido"
    failed = r.json["invoice"]
    assert failed["status"] == "ERROR"
    assert failed["retry_count"] == 1
    assert failed["focus_errors"][0]["codigo"] == "E99"

    focus.error = None
    r = _emit(client, b["id"])
    assert r.status_code == 201
    assert r.json["id"] != failed["id"]


def test_sync_status(client, focus):
    login(client)
    _configure(client)
    b = _booking(client)
    focus.emit_result = {"status": "processando_autorizacao"}
    inv = _emit(client, b["id"]).json
    assert inv["status"] == "PROCESSING"

    r = client.post(f"/api/invoices/{inv['id']}/sync", headers=HEADERS)
    assert r.status_code == 200
    assert r.json["status"] == "AUTHORIZED"
    assert r.json["numero"] == "1001"

    # final statuses are not consulted again
    calls = len(focus.calls)
    client.post(f"/api/invoices/{inv['id']}/sync", headers=HEADERS)
    assert len(focus.calls) == calls


def test_cancel_and_reissue(client, focus):
    login(client)
    _configure(client)
    b = _booking(client)
    focus.emit_result = {"status": "processando_autorizacao"}
    inv = _emit(client, b["id"]).json

    r = client.delete(f"/api/invoices/{inv['id']}", json={"justificativa": "Emitida com valor incorreto"}, headers=HEADERS)
    assert r.status_code == 400
    assert r.json["code"] == "invoice_status_error"

    client.post(f"/api/invoices/{inv['id']}/sync", headers=HEADERS)
    r = client.delete(f"/api/invoices/{inv['id']}", json={"justificativa": "Emitida com valor incorreto"}, headers=HEADERS)
    assert r.status_code == 200
    assert r.json["status"] == "CANCELLED"
    assert r.json["cancel_reason"] == "Emitida com valor incorreto"

    focus.emit_result = {"status": "autorizado"}
    assert _emit(client, b["id"]).status_code == 201


def test_resend_email(client, focus):
    login(client)
    _configure(client)
    b = _booking(client)
    inv = _emit(client, b["id"]).json

    r = client.post(f"/api/invoices/{inv['id']}/resend", json={}, headers=HEADERS)
    assert r.json["emails"] == ["joao@cliente.com.br"]
    r = client.post(f"/api/invoices/{inv['id']}/resend", json={"emails": "a@x.com, b@x.com"}, headers=HEADERS)
    assert r.json["emails"] == ["a@x.com", "b@x.com"]
    assert focus.calls[-1] == ("email", inv["internal_ref"], ["a@x.com", "b@x.com"])


def test_test_connection(client, focus):
    login(client)
    _configure(client)
    r = client.post("/api/fiscal/test-connection", headers=HEADERS)
    assert r.json["success"] is True


def test_auto_emit_when_booking_completes(client, focus):
    login(client)
    _configure(client, auto_emit_on_complete=True)
    b = _booking(client)
    client.put(f"/api/bookings/{b['id']}", json={"status": "CONFIRMED"}, headers=HEADERS)
    r = client.post(
        f"/api/bookings/{b['id']}/return",
        json={"items": [{"item_id": b["items"][0]["id"], "returned_quantity": 1}]},
        headers=HEADERS,
    )
    assert r.status_code == 200
    assert r.json["completed"] is True
    invoice = client.get(f"/api/invoices/{r.json['invoice_id']}").json
    assert invoice["booking_id"] == b["id"]


def test_auto_emit_failure_does_not_block_return(client, focus):
    login(client)
    _configure(client, auto_emit_on_complete=True)
    b = _booking(client)
    client.put(f"/api/bookings/{b['id']}", json={"status": "CONFIRMED"}, headers=HEADERS)
    # turn the feature off after configuring: emission is skipped, the return still completes
    client.put("/api/fiscal/config", json={"auto_emit_on_complete": False}, headers=HEADERS)
    r = client.post(
        f"/api/bookings/{b['id']}/return",
        json={"items": [{"item_id": b["items"][0]["id"], "returned_quantity": 1}]},
        headers=HEADERS,
    )
    assert r.json["booking"]["status"] == "COMPLETED"
    assert "invoice_id" not in r.json
    assert focus.calls == []


def test_admin_invoices_page(client, focus):
    login(client)
    _configure(client)
    b = _booking(client)
    focus.emit_result = {"status": "processando_autorizacao"}
    inv = _emit(client, b["id"]).json
    assert client.get("/admin/invoices").status_code == 200
    r = client.post(f"/admin/invoices/{inv['id']}/sync", data={"csrf_token": "test-csrf-token"})
    assert r.status_code == 302
    assert client.get(f"/api/invoices/{inv['id']}").json["status"] == "AUTHORIZED"
