from __future__ import annotations

from typing import Any

from app.rental.errors import ApiError


class FiscalError(ApiError):
    default_code = "fiscal_error"
    default_message = "Erro na operação fiscal"
    default_http_status = 400


class FiscalFeatureDisabledError(FiscalError):
    default_code = "nfse_feature_disabled"
    default_message = "NFS-e não está habilitada para esta conta"
    default_http_status = 403


class FiscalConfigurationError(FiscalError):
    default_code = "fiscal_configuration_error"
    default_message = "Configuração fiscal incompleta"

    def __init__(self, message: str | None = None, missing_fields: list[str] | None = None) -> None:
        self.missing_fields = list(missing_fields or [])
        payload = {"missing_fields": self.missing_fields} if self.missing_fields else None
        super().__init__(message, payload=payload)


class FocusNfeApiError(FiscalError):
    default_code = "focus_nfe_api_error"
    default_message = "Erro retornado pelo Focus NFe"
    default_http_status = 502

    def __init__(
        self,
        message: str | None = None,
        focus_errors: list[dict[str, Any]] | None = None,
        *,
        http_status_from_api: int | None = None,
        code: str | None = None,
    ) -> None:
        self.focus_errors = list(focus_errors or [])
        self.api_status = http_status_from_api
        super().__init__(message, code=code, payload={"focus_errors": self.focus_errors})


class FocusNfeAuthError(FiscalError):
    default_code = "focus_nfe_auth_error"
    default_message = "Credenciais do Focus NFe inválidas ou expiradas"
    default_http_status = 502


class InvoiceNotFoundError(FiscalError):
    default_code = "invoice_not_found"
    default_message = "NFS-e não encontrada"
    default_http_status = 404


class InvoiceStatusError(FiscalError):
    default_code = "invoice_status_error"

    def __init__(self, current_status: str, operation: str) -> None:
        self.current_status = current_status
        self.operation = operation
        super().__init__(f"Operação \"{operation}\" não permitida para NFS-e com status \"{current_status}\"")


class TomadorDataError(FiscalError):
    default_code = "tomador_data_error"
    default_message = "Dados do tomador inválidos"

    def __init__(self, message: str | None = None, missing_fields: list[str] | None = None) -> None:
        self.missing_fields = list(missing_fields or [])
        payload = {"missing_fields": self.missing_fields} if self.missing_fields else None
        super().__init__(message, payload=payload)
