import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    root_domain: str

    storage_backend: str
    storage_local_root: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str

    fiscal_encryption_key: str
    focus_nfe_timeout_seconds: int
    lookup_timeout_seconds: int

    asaas_api_key: str
    asaas_environment: str
    asaas_webhook_token: str

    smtp_server: str
    smtp_port: int
    smtp_username: str
    smtp_password: str
    smtp_use_tls: bool
    email_from: str

    sentry_dsn: str
    sentry_traces_sample_rate: float


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _getenv_float(name: str, default: float) -> float:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def load_settings() -> Settings:
    env = _getenv("ENV", "development")
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=env,
        database_url=_getenv("DATABASE_URL", "sqlite:///rental.db"),
        root_domain=_getenv("ROOT_DOMAIN", "localhost:5000"),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        storage_local_root=_getenv("STORAGE_LOCAL_ROOT", ""),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "nyc3"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        fiscal_encryption_key=_getenv("FISCAL_ENCRYPTION_KEY", ""),
        focus_nfe_timeout_seconds=_getenv_int("FOCUS_NFE_TIMEOUT_SECONDS", 30),
        lookup_timeout_seconds=_getenv_int("LOOKUP_TIMEOUT_SECONDS", 10),
        asaas_api_key=_getenv("ASAAS_API_KEY", ""),
        asaas_environment=_getenv("ASAAS_ENVIRONMENT", "sandbox"),
        asaas_webhook_token=_getenv("ASAAS_WEBHOOK_TOKEN", ""),
        smtp_server=_getenv("SMTP_SERVER", ""),
        smtp_port=_getenv_int("SMTP_PORT", 587),
        smtp_username=_getenv("SMTP_USERNAME", ""),
        smtp_password=_getenv("SMTP_PASSWORD", ""),
        smtp_use_tls=_getenv("SMTP_USE_TLS", "1").lower() not in ("0", "false", "no"),
        email_from=_getenv("EMAIL_FROM", ""),
        sentry_dsn=_getenv("SENTRY_DSN", ""),
        # full tracing outside production
        sentry_traces_sample_rate=_getenv_float(
            "SENTRY_TRACES_SAMPLE_RATE", 0.1 if env in ("prod", "production") else 1.0
        ),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "ROOT_DOMAIN": s.root_domain,
        "STORAGE_BACKEND": s.storage_backend,
        "STORAGE_LOCAL_ROOT": s.storage_local_root,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        "FISCAL_ENCRYPTION_KEY": s.fiscal_encryption_key,
        "FOCUS_NFE_TIMEOUT_SECONDS": s.focus_nfe_timeout_seconds,
        "LOOKUP_TIMEOUT_SECONDS": s.lookup_timeout_seconds,
        "ASAAS_API_KEY": s.asaas_api_key,
        "ASAAS_ENVIRONMENT": s.asaas_environment,
        "ASAAS_WEBHOOK_TOKEN": s.asaas_webhook_token,
        "SMTP_SERVER": s.smtp_server,
        "SMTP_PORT": s.smtp_port,
        "SMTP_USERNAME": s.smtp_username,
        "SMTP_PASSWORD": s.smtp_password,
        "SMTP_USE_TLS": s.smtp_use_tls,
        "EMAIL_FROM": s.email_from,
        "SENTRY_DSN": s.sentry_dsn,
        "SENTRY_TRACES_SAMPLE_RATE": s.sentry_traces_sample_rate,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        # image uploads (10MB)
        "MAX_CONTENT_LENGTH": 10 * 1024 * 1024,
    }
