from __future__ import annotations

from typing import Any


class ApiError(Exception):
    """
    Base for errors that surface to API clients as `{"error": message}`.
    Services raise these; the app-level handler turns them into JSON responses.
    """

    default_code = "api_error"
    default_message = "Não foi possível concluir a operação"
    default_http_status = 400

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        http_status: int | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        self.message = (message or self.default_message).strip()
        self.code = (code or self.default_code).strip()
        self.http_status = int(http_status or self.default_http_status)
        self.payload = dict(payload or {})
        super().__init__(self.message)

    def to_response_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message, "code": self.code}
        if self.payload:
            payload.update(self.payload)
        return payload


class ValidationError(ApiError):
    default_code = "validation_error"
    default_message = "Dados inválidos"
    default_http_status = 400


class UnauthorizedError(ApiError):
    default_code = "unauthorized"
    default_message = "Não autorizado"
    default_http_status = 401


class ForbiddenError(ApiError):
    default_code = "forbidden"
    default_message = "Sem permissão para esta operação"
    default_http_status = 403


class NotFoundError(ApiError):
    default_code = "not_found"
    default_message = "Registro não encontrado"
    default_http_status = 404


class ConflictError(ApiError):
    default_code = "conflict"
    default_message = "Conflito com o estado atual do registro"
    default_http_status = 409


class PlanLimitError(ForbiddenError):
    default_code = "plan_limit_reached"
    default_message = "Limite do plano atingido"


class IntegrationError(ApiError):
    default_code = "integration_error"
    default_message = "Serviço externo temporariamente indisponível"
    default_http_status = 502


def require_fields(payload: dict[str, Any], fields: tuple[str, ...] | list[str]) -> None:
    """Raise ValidationError listing every missing/blank field."""
    missing = []
    for name in fields:
        value = payload.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(name)
    if missing:
        raise ValidationError(f"Campos obrigatórios: {', '.join(missing)}", payload={"missing_fields": missing})
