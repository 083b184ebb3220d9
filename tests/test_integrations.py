"""API keys (bearer auth) and the CEP/CNPJ lookups."""
import io
import json
import urllib.error
from datetime import datetime, timedelta

import pytest

from app.rental.db import session_scope
from app.rental.modules.integrations.cnpj import from_receitaws, situacao_color
from app.rental.modules.integrations.models import ApiKey
from conftest import HEADERS, create_equipment, login


class _Resp:
    def __init__(self, payload):
        self._body = json.dumps(payload).encode("utf-8")

    def read(self):
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def _http_error(url, code):
    return urllib.error.HTTPError(url, code, "error", {}, io.BytesIO(b""))


@pytest.fixture()
def fake_urlopen(monkeypatch):
    """Routes urlopen calls by URL substring to a payload, an exception or a status code."""
    routes = {}
    seen = []

    def _urlopen(req, timeout=None):
        url = req.full_url
        seen.append(url)
        for fragment, outcome in routes.items():
            if fragment in url:
                if isinstance(outcome, int):
                    raise _http_error(url, outcome)
                if isinstance(outcome, Exception):
                    raise outcome
                return _Resp(outcome)
        raise urllib.error.URLError("no route")

    monkeypatch.setattr("urllib.request.urlopen", _urlopen)
    return routes, seen


def _create_key(client, **payload):
    body = {"name": "ERP"}
    body.update(payload)
    r = client.post("/api/integrations/api-keys", json=body, headers=HEADERS)
    assert r.status_code == 201, r.json
    return r.json


def test_api_key_lifecycle(client):
    login(client)
    created = _create_key(client, permissions=["view_reports", "CREATE_EQUIPMENT"])
    assert created["key"].startswith("sk_live_")
    assert created["prefix"] == created["key"][:12] + "..."
    assert created["permissions"] == ["VIEW_REPORTS", "CREATE_EQUIPMENT"]

    listed = client.get("/api/integrations/api-keys").json
    assert len(listed) == 1
    assert "key" not in listed[0]

    r = client.patch(f"/api/integrations/api-keys/{created['id']}", json={"active": False}, headers=HEADERS)
    assert r.json["active"] is False

    r = client.delete(f"/api/integrations/api-keys/{created['id']}", headers=HEADERS)
    assert r.status_code == 200
    assert client.get("/api/integrations/api-keys").json == []


def test_api_key_validation(client):
    login(client)
    r = client.post("/api/integrations/api-keys", json={"name": "X", "permissions": ["FLY"]}, headers=HEADERS)
    assert r.status_code == 400
    past = (datetime.utcnow() - timedelta(days=1)).isoformat()
    r = client.post("/api/integrations/api-keys", json={"name": "X", "expires_at": past}, headers=HEADERS)
    assert r.status_code == 400
    r = client.post("/api/integrations/api-keys", json={}, headers=HEADERS)
    assert r.status_code == 400


def test_bearer_key_authenticates_without_csrf(app, client):
    login(client)
    key = _create_key(client, permissions=["VIEW_REPORTS", "CREATE_EQUIPMENT"])["key"]

    api = app.test_client()
    auth = {"Authorization": f"Bearer {key}"}
    r = api.post(
        "/api/equipment",
        json={"name": "Gerador", "category": "Energia", "price_per_day": 90},
        headers=auth,
    )
    assert r.status_code == 201
    assert api.get("/api/equipment", headers=auth).status_code == 200

    # outside the granted scope
    r = api.post("/api/customers", json={"name": "A", "phone": "1"}, headers=auth)
    assert r.status_code == 403
    assert r.json["missing_permission"] == "CREATE_CUSTOMER"

    with session_scope(app) as s:
        assert s.query(ApiKey).one().last_used_at is not None


def test_key_without_permissions_acts_as_admin(app, client):
    login(client)
    key = _create_key(client)["key"]
    api = app.test_client()
    r = api.post(
        "/api/customers",
        json={"name": "Cliente API", "phone": "11999990000"},
        headers={"Authorization": f"Bearer {key}"},
    )
    assert r.status_code == 201


def test_scoped_key_cannot_mint_broader_key(app, client):
    login(client)
    key = _create_key(client, permissions=["MANAGE_INTEGRATIONS"])["key"]
    api = app.test_client()
    auth = {"Authorization": f"Bearer {key}"}
    assert api.post("/api/customers", json={"name": "A", "phone": "1"}, headers=auth).status_code == 403

    # unscoped would mean the full ADMIN set
    r = api.post("/api/integrations/api-keys", json={"name": "sem escopo"}, headers=auth)
    assert r.status_code == 400
    assert r.json["missing_fields"] == ["permissions"]

    r = api.post(
        "/api/integrations/api-keys",
        json={"name": "mais amplo", "permissions": ["MANAGE_INTEGRATIONS", "CREATE_CUSTOMER"]},
        headers=auth,
    )
    assert r.status_code == 403
    assert r.json["forbidden_permissions"] == ["CREATE_CUSTOMER"]

    r = api.post(
        "/api/integrations/api-keys",
        json={"name": "mesmo escopo", "permissions": ["MANAGE_INTEGRATIONS"]},
        headers=auth,
    )
    assert r.status_code == 201
    with session_scope(app) as s:
        assert s.query(ApiKey).count() == 2


def test_scoped_key_cannot_reactivate_broader_key(app, client):
    login(client)
    broad = _create_key(client, permissions=["CREATE_CUSTOMER"])
    client.patch(f"/api/integrations/api-keys/{broad['id']}", json={"active": False}, headers=HEADERS)
    key = _create_key(client, permissions=["MANAGE_INTEGRATIONS"])["key"]

    r = app.test_client().patch(
        f"/api/integrations/api-keys/{broad['id']}",
        json={"active": True},
        headers={"Authorization": f"Bearer {key}"},
    )
    assert r.status_code == 403
    with session_scope(app) as s:
        assert s.get(ApiKey, broad["id"]).active is False


def test_unscoped_key_may_mint_scoped_keys(app, client):
    login(client)
    key = _create_key(client)["key"]
    r = app.test_client().post(
        "/api/integrations/api-keys",
        json={"name": "relatórios", "permissions": ["VIEW_REPORTS"]},
        headers={"Authorization": f"Bearer {key}"},
    )
    assert r.status_code == 201
    assert r.json["permissions"] == ["VIEW_REPORTS"]


def test_inactive_expired_and_unknown_keys_rejected(app, client):
    login(client)
    created = _create_key(client)
    auth = {"Authorization": f"Bearer {created['key']}"}
    api = app.test_client()

    client.patch(f"/api/integrations/api-keys/{created['id']}", json={"active": False}, headers=HEADERS)
    assert api.get("/api/equipment", headers=auth).status_code == 401

    client.patch(f"/api/integrations/api-keys/{created['id']}", json={"active": True}, headers=HEADERS)
    with session_scope(app) as s:
        s.get(ApiKey, created["id"]).expires_at = datetime.utcnow() - timedelta(minutes=1)
    assert api.get("/api/equipment", headers=auth).status_code == 401

    assert api.get("/api/equipment", headers={"Authorization": "Bearer sk_live_nope"}).status_code == 401


def test_api_keys_scoped_to_tenant(app, client):
    login(client)
    create_equipment(client, name="Só da Acme")
    key = _create_key(client)["key"]

    from conftest import add_tenant

    add_tenant(app, "beta", admin_email="admin@beta.com")
    other = app.test_client()
    login(other, "admin@beta.com")
    assert other.get("/api/equipment").json == []
    assert other.get("/api/integrations/api-keys").json == []

    api = app.test_client()
    names = [e["name"] for e in api.get("/api/equipment", headers={"Authorization": f"Bearer {key}"}).json]
    assert names == ["Só da Acme"]


def test_cep_lookup(client, fake_urlopen):
    routes, seen = fake_urlopen
    routes["viacep.com.br/ws/01310100"] = {
        "cep": "01310-100",
        "logradouro": "Avenida Paulista",
        "bairro": "Bela Vista",
        "localidade": "São Paulo",
        "uf": "SP",
        "ibge": "3550308",
    }
    routes["viacep.com.br/ws/99999999"] = {"erro": True}
    routes["viacep.com.br/ws/88888888"] = 500

    login(client)
    r = client.get("/api/cep/01310-100")
    assert r.status_code == 200
    assert r.json["cidade"] == "São Paulo"
    assert r.json["ibge"] == "3550308"
    assert seen == ["https://viacep.com.br/ws/01310100/json/"]

    r = client.get("/api/cep/99999999")
    assert r.status_code == 404
    assert r.json["code"] == "NOT_FOUND"

    r = client.get("/api/cep/88888888")
    assert r.status_code == 502
    assert r.json["code"] == "API_ERROR"

    r = client.get("/api/cep/77777777")
    assert r.status_code == 502
    assert r.json["code"] == "NETWORK_ERROR"

    r = client.get("/api/cep/123")
    assert r.status_code == 400
    assert r.json["code"] == "INVALID_FORMAT"


def test_cnpj_lookup_brasilapi(client, fake_urlopen):
    routes, seen = fake_urlopen
    routes["brasilapi.com.br"] = {
        "razao_social": "EMPRESA TESTE LTDA",
        "nome_fantasia": "TESTE",
        "descricao_situacao_cadastral": "ATIVA",
        "cnae_fiscal": 7732201,
        "cnae_fiscal_descricao": "Aluguel de máquinas e equipamentos",
        "descricao_tipo_de_logradouro": "RUA",
        "logradouro": "DAS FLORES",
        "municipio": "CAMPINAS",
        "uf": "SP",
        "codigo_municipio_ibge": 3509502,
        "ddd_telefone_1": "(19) 3333-4444",
        "qsa": [{"nome_socio": "FULANO", "qualificacao_socio": "Sócio-Administrador"}],
    }
    login(client)
    r = client.get("/api/cnpj/11.222.333000181")
    assert r.status_code == 200
    assert r.json["cnpj"] == "11222333000181"
    assert r.json["razao_social"] == "EMPRESA TESTE LTDA"
    assert r.json["endereco"]["logradouro"] == "RUA DAS FLORES"
    assert r.json["endereco"]["codigo_municipio"] == "3509502"
    assert r.json["cnae_principal"]["codigo"] == "7732201"
    assert r.json["telefones"] == ["1933334444"]
    assert r.json["situacao_color"] == "success"
    assert len(seen) == 1


def test_cnpj_lookup_falls_back_to_receitaws(client, fake_urlopen):
    routes, seen = fake_urlopen
    routes["brasilapi.com.br"] = 404
    routes["receitaws.com.br"] = {
        "nome": "OUTRA EMPRESA SA",
        "situacao": "BAIXADA",
        "atividade_principal": [{"code": "77.32-2-01", "text": "Aluguel"}],
        "cep": "13.010-000",
        "capital_social": "10000.00",
    }
    login(client)
    r = client.get("/api/cnpj/11222333000181")
    assert r.status_code == 200
    assert r.json["razao_social"] == "OUTRA EMPRESA SA"
    assert r.json["cnae_principal"]["codigo"] == "7732201"
    assert r.json["endereco"]["cep"] == "13010000"
    assert r.json["capital_social"] == 10000.0
    assert r.json["situacao_color"] == "destructive"
    assert len(seen) == 2


def test_cnpj_lookup_all_sources_fail(client, fake_urlopen):
    routes, _ = fake_urlopen
    routes["brasilapi.com.br"] = 500
    routes["receitaws.com.br"] = {"status": "ERROR", "message": "CNPJ inválido"}
    login(client)
    r = client.get("/api/cnpj/11222333000181")
    assert r.status_code == 502
    assert r.json["code"] == "ALL_APIS_FAILED"

    r = client.get("/api/cnpj/123")
    assert r.status_code == 400


def test_receitaws_mapper_error_status():
    assert from_receitaws("1", {"status": "ERROR"}) is None


def test_situacao_color():
    assert situacao_color("Suspensa") == "warning"
    assert situacao_color("INAPTA") == "destructive"
    assert situacao_color(None) == "secondary"
