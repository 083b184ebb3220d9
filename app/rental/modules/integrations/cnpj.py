"""
CNPJ lookup with fallback: BrasilAPI first, then ReceitaWS.
"""

from __future__ import annotations

import json
import logging
import re
import urllib.error
import urllib.request
from typing import Any, Callable

from app.rental.errors import ApiError
from app.rental.modules.fiscal.validators import only_numbers

logger = logging.getLogger(__name__)

BRASILAPI_URL = "https://brasilapi.com.br/api/cnpj/v1/{cnpj}"
RECEITAWS_URL = "https://receitaws.com.br/v1/cnpj/{cnpj}"
USER_AGENT = "Mozilla/5.0 (compatible; rental-backoffice)"


class CnpjLookupError(ApiError):
    default_code = "ALL_APIS_FAILED"
    default_message = "Não foi possível consultar o CNPJ. Todas as APIs estão indisponíveis."
    default_http_status = 502


def _fetch_json(url: str, timeout_seconds: int) -> Any | None:
    """JSON body on 2xx; None on any failure so the next source is tried."""
    req = urllib.request.Request(url, method="GET")
    req.add_header("Accept", "application/json")
    req.add_header("User-Agent", USER_AGENT)
    try:
        with urllib.request.urlopen(req, timeout=timeout_seconds) as resp:
            return json.loads(resp.read().decode("utf-8") or "null")
    except urllib.error.HTTPError as e:
        logger.info("CNPJ source failed url=%s status=%s", url, e.code)
    except (urllib.error.URLError, TimeoutError) as e:
        logger.info("CNPJ source unreachable url=%s: %s", url, e)
    except ValueError:
        logger.info("CNPJ source returned invalid JSON url=%s", url)
    return None


def _digits(value: Any) -> str:
    return re.sub(r"\D", "", str(value or ""))


def _parse_br_money(value: Any) -> float | None:
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        try:
            return float(str(value).replace(".", "").replace(",", "."))
        except ValueError:
            return None


def from_brasilapi(cnpj: str, data: dict[str, Any]) -> dict[str, Any]:
    logradouro = data.get("logradouro") or None
    if data.get("descricao_tipo_de_logradouro") and logradouro:
        logradouro = f"{data['descricao_tipo_de_logradouro']} {logradouro}"
    return {
        "cnpj": cnpj,
        "razao_social": data.get("razao_social") or "",
        "nome_fantasia": data.get("nome_fantasia") or None,
        "situacao_cadastral": data.get("descricao_situacao_cadastral") or "Desconhecida",
        "data_situacao_cadastral": data.get("data_situacao_cadastral") or None,
        "data_abertura": data.get("data_inicio_atividade") or None,
        "natureza_juridica": data.get("natureza_juridica") or None,
        "porte": data.get("porte") or None,
        "capital_social": _parse_br_money(data.get("capital_social")),
        "cnae_principal": (
            {"codigo": str(data["cnae_fiscal"]), "descricao": data.get("cnae_fiscal_descricao") or ""}
            if data.get("cnae_fiscal")
            else None
        ),
        "cnaes_secundarios": [
            {"codigo": str(c.get("codigo")), "descricao": c.get("descricao") or ""}
            for c in data.get("cnaes_secundarios") or []
            if isinstance(c, dict) and _digits(c.get("codigo")).strip("0")
        ],
        "endereco": {
            "logradouro": logradouro,
            "numero": data.get("numero") or None,
            "complemento": data.get("complemento") or None,
            "bairro": data.get("bairro") or None,
            "cidade": data.get("municipio") or None,
            "uf": data.get("uf") or None,
            "cep": data.get("cep") or None,
            "codigo_municipio": str(data["codigo_municipio_ibge"]) if data.get("codigo_municipio_ibge") else None,
        },
        "telefones": [_digits(t) for t in (data.get("ddd_telefone_1"), data.get("ddd_telefone_2")) if t],
        "email": data.get("email") or None,
        "socios": [
            {"nome": s.get("nome_socio"), "qualificacao": s.get("qualificacao_socio") or ""}
            for s in data.get("qsa") or []
            if isinstance(s, dict)
        ],
    }


def from_receitaws(cnpj: str, data: dict[str, Any]) -> dict[str, Any] | None:
    if data.get("status") == "ERROR":
        logger.info("ReceitaWS reported error for %s: %s", cnpj, data.get("message"))
        return None
    principal = (data.get("atividade_principal") or [None])[0]
    return {
        "cnpj": cnpj,
        "razao_social": data.get("nome") or "",
        "nome_fantasia": data.get("fantasia") or None,
        "situacao_cadastral": data.get("situacao") or "Desconhecida",
        "data_situacao_cadastral": data.get("data_situacao") or None,
        "data_abertura": data.get("abertura") or None,
        "natureza_juridica": data.get("natureza_juridica") or None,
        "porte": data.get("porte") or None,
        "capital_social": _parse_br_money(data.get("capital_social")),
        "cnae_principal": (
            {"codigo": _digits(principal.get("code")), "descricao": principal.get("text") or ""}
            if isinstance(principal, dict)
            else None
        ),
        "cnaes_secundarios": [
            {"codigo": _digits(c.get("code")), "descricao": c.get("text") or ""}
            for c in data.get("atividades_secundarias") or []
            if isinstance(c, dict)
        ],
        "endereco": {
            "logradouro": data.get("logradouro") or None,
            "numero": data.get("numero") or None,
            "complemento": data.get("complemento") or None,
            "bairro": data.get("bairro") or None,
            "cidade": data.get("municipio") or None,
            "uf": data.get("uf") or None,
            "cep": _digits(data.get("cep")) or None,
            "codigo_municipio": None,
        },
        "telefones": [_digits(data["telefone"])] if data.get("telefone") else [],
        "email": data.get("email") or None,
        "socios": [
            {"nome": s.get("nome"), "qualificacao": s.get("qual") or ""}
            for s in data.get("qsa") or []
            if isinstance(s, dict)
        ],
    }


SOURCES: list[tuple[str, str, Callable[[str, dict[str, Any]], dict[str, Any] | None]]] = [
    ("BrasilAPI", BRASILAPI_URL, from_brasilapi),
    ("ReceitaWS", RECEITAWS_URL, from_receitaws),
]


def lookup_cnpj(cnpj: str, *, timeout_seconds: int = 10) -> dict[str, Any]:
    cleaned = only_numbers(cnpj)
    if len(cleaned) != 14:
        raise CnpjLookupError("CNPJ deve ter 14 dígitos", code="INVALID_FORMAT", http_status=400)

    for name, url, mapper in SOURCES:
        data = _fetch_json(url.format(cnpj=cleaned), timeout_seconds)
        if not isinstance(data, dict):
            continue
        result = mapper(cleaned, data)
        if result is not None:
            logger.info("CNPJ %s resolved via %s", cleaned, name)
            return result

    logger.warning("CNPJ lookup failed on every source cnpj=%s", cleaned)
    raise CnpjLookupError()


def situacao_color(situacao: str | None) -> str:
    value = (situacao or "").lower()
    if "ativa" in value:
        return "success"
    if "suspensa" in value:
        return "warning"
    if "inapta" in value or "baixada" in value:
        return "destructive"
    return "secondary"
