"""CEP (postal code) lookup against ViaCEP."""

from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from typing import Any

from app.rental.errors import ApiError
from app.rental.modules.fiscal.validators import only_numbers

logger = logging.getLogger(__name__)

VIACEP_URL = "https://viacep.com.br/ws/{cep}/json/"

_STATUS_BY_CODE = {
    "INVALID_FORMAT": 400,
    "NOT_FOUND": 404,
    "API_ERROR": 502,
    "NETWORK_ERROR": 502,
}


class CepLookupError(ApiError):
    default_code = "API_ERROR"
    default_message = "Erro ao consultar CEP"
    default_http_status = 502

    def __init__(self, message: str, code: str) -> None:
        super().__init__(message, code=code, http_status=_STATUS_BY_CODE.get(code, 502))


def lookup_cep(cep: str, *, timeout_seconds: int = 10) -> dict[str, Any]:
    cleaned = only_numbers(cep)
    if len(cleaned) != 8:
        raise CepLookupError("CEP deve ter 8 dígitos", "INVALID_FORMAT")

    req = urllib.request.Request(VIACEP_URL.format(cep=cleaned), method="GET")
    req.add_header("Accept", "application/json")
    try:
        with urllib.request.urlopen(req, timeout=timeout_seconds) as resp:
            data = json.loads(resp.read().decode("utf-8") or "{}")
    except urllib.error.HTTPError as e:
        logger.warning("ViaCEP lookup failed cep=%s status=%s", cleaned, e.code)
        raise CepLookupError(f"Erro ao consultar CEP: HTTP {e.code}", "API_ERROR") from e
    except (urllib.error.URLError, TimeoutError) as e:
        logger.warning("ViaCEP unreachable cep=%s: %s", cleaned, e)
        raise CepLookupError("Erro de conexão ao consultar CEP", "NETWORK_ERROR") from e
    except ValueError as e:
        raise CepLookupError("Resposta inválida do serviço de CEP", "API_ERROR") from e

    if not isinstance(data, dict) or data.get("erro"):
        raise CepLookupError("CEP não encontrado", "NOT_FOUND")

    return {
        "cep": data.get("cep") or cleaned,
        "logradouro": data.get("logradouro") or "",
        "complemento": data.get("complemento") or "",
        "bairro": data.get("bairro") or "",
        "cidade": data.get("localidade") or "",
        "uf": data.get("uf") or "",
        "ibge": data.get("ibge") or "",
        "ddd": data.get("ddd") or "",
    }
