from __future__ import annotations

import base64
import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any

from app.rental.errors import ValidationError
from app.rental.modules.fiscal.errors import (
    FiscalError,
    FocusNfeApiError,
    FocusNfeAuthError,
    InvoiceNotFoundError,
)

logger = logging.getLogger(__name__)

BASE_URLS = {
    "HOMOLOGACAO": "https://homologacao.focusnfe.com.br/v2",
    "PRODUCAO": "https://api.focusnfe.com.br/v2",
}
MIN_JUSTIFICATIVA_LENGTH = 15


def _parse_body(raw: bytes) -> Any:
    if not raw:
        return {}
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return {"raw_response": raw.decode("utf-8", errors="replace")[:2000]}


def _validation_errors(body: Any) -> tuple[str, list[dict[str, Any]]]:
    errors: list[dict[str, Any]] = []
    if isinstance(body, dict) and isinstance(body.get("erros"), list):
        errors = [e for e in body["erros"] if isinstance(e, dict)]
    if errors:
        return "; ".join(str(e.get("mensagem") or e.get("codigo")) for e in errors), errors
    if isinstance(body, dict):
        if body.get("codigo") and body.get("mensagem"):
            error = {"codigo": body["codigo"], "mensagem": body["mensagem"]}
            if body.get("correcao"):
                error["correcao"] = body["correcao"]
            return f"{body['codigo']}: {body['mensagem']}", [error]
        for key in ("mensagem", "erro", "message"):
            if body.get(key):
                return f"Erro de validação: {body[key]}", []
    return "Dados inválidos para emissão", []


def map_http_error(status: int, body: Any, *, ref: str | None = None) -> FiscalError:
    if status in (401, 403):
        return FocusNfeAuthError()
    if status in (400, 422):
        message, errors = _validation_errors(body)
        return FocusNfeApiError(message, errors, http_status_from_api=status)
    if status == 404:
        return InvoiceNotFoundError(f"NFS-e não encontrada: {ref}" if ref else "Recurso não encontrado no Focus NFe")
    if status == 429:
        return FocusNfeApiError("Limite de requisições excedido", http_status_from_api=status, code="focus_nfe_rate_limit")
    if status >= 500:
        return FocusNfeApiError("Erro no servidor do Focus NFe", http_status_from_api=status, code="focus_nfe_server_error")
    return FocusNfeApiError(f"Erro inesperado: HTTP {status}", http_status_from_api=status)


def is_national_payload(payload: dict[str, Any]) -> bool:
    """National (Sistema Nacional NFS-e) vs municipal endpoint selection."""
    if payload.get("codigo_tributacao_nacional_iss"):
        return True
    servico = payload.get("servico") or {}
    code = str(servico.get("codigo_tributario_municipio") or "")
    return code.startswith("99") and not servico.get("item_lista_servico")


@dataclass(frozen=True)
class FocusNfeClient:
    token: str
    environment: str = "HOMOLOGACAO"
    timeout_seconds: int = 30

    def __post_init__(self) -> None:
        if not self.token:
            raise FocusNfeAuthError("Token do Focus NFe não configurado")

    @property
    def base_url(self) -> str:
        return BASE_URLS.get((self.environment or "").upper(), BASE_URLS["HOMOLOGACAO"])

    def _auth_header(self) -> str:
        return "Basic " + base64.b64encode(f"{self.token}:".encode("utf-8")).decode("ascii")

    def request_json(
        self, method: str, path: str, *, body: dict[str, Any] | None = None, ref: str | None = None
    ) -> dict[str, Any]:
        url = self.base_url.rstrip("/") + path
        data = json.dumps(body).encode("utf-8") if body is not None else None
        req = urllib.request.Request(url, data=data, method=method)
        req.add_header("Authorization", self._auth_header())
        req.add_header("Content-Type", "application/json")
        req.add_header("Accept", "application/json")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                raw = resp.read()
                logger.info("Focus NFe %s %s -> %s", method, path, getattr(resp, "status", 200))
        except urllib.error.HTTPError as e:
            parsed_err = _parse_body(e.read() or b"")
            logger.warning("Focus NFe %s %s failed: HTTP %s %s", method, path, e.code, parsed_err)
            raise map_http_error(e.code, parsed_err, ref=ref) from e
        except urllib.error.URLError as e:
            logger.error("Focus NFe %s %s unreachable: %s", method, path, e.reason)
            raise FocusNfeApiError(f"Falha de conexão com o Focus NFe: {e.reason}") from e

        parsed = _parse_body(raw)
        return parsed if isinstance(parsed, dict) else {}

    def emit_nfse(self, ref: str, payload: dict[str, Any]) -> dict[str, Any]:
        endpoint = "/nfsen" if is_national_payload(payload) else "/nfse"
        query = urllib.parse.urlencode({"ref": ref})
        return self.request_json("POST", f"{endpoint}?{query}", body=payload, ref=ref)

    def consult_nfse(self, ref: str) -> dict[str, Any]:
        quoted = urllib.parse.quote(ref)
        try:
            return self.request_json("GET", f"/nfse/{quoted}", ref=ref)
        except InvoiceNotFoundError:
            return self.request_json("GET", f"/nfsen/{quoted}", ref=ref)

    def cancel_nfse(self, ref: str, justificativa: str) -> dict[str, Any]:
        justificativa = (justificativa or "").strip()
        if len(justificativa) < MIN_JUSTIFICATIVA_LENGTH:
            raise ValidationError(
                f"Justificativa de cancelamento deve ter no mínimo {MIN_JUSTIFICATIVA_LENGTH} caracteres"
            )
        return self.request_json(
            "DELETE", f"/nfse/{urllib.parse.quote(ref)}", body={"justificativa": justificativa}, ref=ref
        )

    def resend_email(self, ref: str, emails: list[str]) -> None:
        emails = [e.strip() for e in emails or [] if e and e.strip()]
        if not emails:
            raise ValidationError("É necessário informar pelo menos um email")
        self.request_json("POST", f"/nfse/{urllib.parse.quote(ref)}/email", body={"emails": emails}, ref=ref)

    def test_connection(self) -> bool:
        """A 404 on a bogus ref proves the credentials work."""
        try:
            self.request_json("GET", "/nfse/test-connection-check")
        except InvoiceNotFoundError:
            return True
        except FocusNfeAuthError:
            return False
        return True
