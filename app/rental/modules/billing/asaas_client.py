from __future__ import annotations

import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any

from app.rental.errors import IntegrationError

logger = logging.getLogger(__name__)

PRODUCTION_URL = "https://api.asaas.com/v3"
SANDBOX_URL = "https://sandbox.asaas.com/api/v3"


class AsaasError(IntegrationError):
    default_code = "asaas_error"
    default_message = "Erro na comunicação com o Asaas"


def base_url_for(environment: str) -> str:
    return PRODUCTION_URL if (environment or "").strip().upper() == "PRODUCTION" else SANDBOX_URL


def _error_message(body: bytes, status: int) -> str:
    try:
        data = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        data = {}
    if isinstance(data, dict):
        errors = data.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict) and errors[0].get("description"):
            return str(errors[0]["description"])
        if data.get("message"):
            return str(data["message"])
    return f"Asaas API error: {status}"


@dataclass(frozen=True)
class AsaasClient:
    api_key: str
    environment: str = "sandbox"
    timeout_seconds: int = 30

    @property
    def base_url(self) -> str:
        return base_url_for(self.environment)

    def request_json(self, method: str, path: str, *, body: dict[str, Any] | None = None) -> dict[str, Any]:
        url = self.base_url.rstrip("/") + path
        data = json.dumps(body).encode("utf-8") if body is not None else None
        req = urllib.request.Request(url, data=data, method=method)
        req.add_header("access_token", self.api_key)
        req.add_header("Content-Type", "application/json")
        req.add_header("Accept", "application/json")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                raw = resp.read()
                logger.info("Asaas %s %s -> %s", method, path, getattr(resp, "status", 200))
        except urllib.error.HTTPError as e:
            raw_err = e.read() or b""
            message = _error_message(raw_err, e.code)
            logger.warning("Asaas %s %s failed: HTTP %s %s", method, path, e.code, message)
            raise AsaasError(message, payload={"status": e.code}) from e
        except urllib.error.URLError as e:
            logger.error("Asaas %s %s unreachable: %s", method, path, e.reason)
            raise AsaasError(f"Falha de conexão com o Asaas: {e.reason}") from e

        if not raw:
            return {}
        try:
            parsed = json.loads(raw.decode("utf-8"))
        except ValueError as e:
            raise AsaasError(f"Resposta inválida do Asaas ({path})") from e
        return parsed if isinstance(parsed, dict) else {}

    def create_customer(self, data: dict[str, Any]) -> dict[str, Any]:
        return self.request_json("POST", "/customers", body=data)

    def get_customer(self, customer_id: str) -> dict[str, Any]:
        return self.request_json("GET", f"/customers/{urllib.parse.quote(str(customer_id))}")

    def create_payment(self, data: dict[str, Any]) -> dict[str, Any]:
        return self.request_json("POST", "/payments", body=data)

    def get_payment(self, payment_id: str) -> dict[str, Any]:
        return self.request_json("GET", f"/payments/{urllib.parse.quote(str(payment_id))}")

    def cancel_payment(self, payment_id: str) -> dict[str, Any]:
        return self.request_json("DELETE", f"/payments/{urllib.parse.quote(str(payment_id))}")

    def get_pix_qr_code(self, payment_id: str) -> dict[str, Any]:
        return self.request_json("GET", f"/payments/{urllib.parse.quote(str(payment_id))}/pixQrCode")


def client_from_config(config: dict) -> AsaasClient:
    api_key = (config.get("ASAAS_API_KEY") or "").strip()
    if not api_key:
        raise AsaasError("Integração com Asaas não configurada (ASAAS_API_KEY)")
    return AsaasClient(api_key=api_key, environment=config.get("ASAAS_ENVIRONMENT") or "sandbox")
