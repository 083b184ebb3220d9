from __future__ import annotations

import logging
from typing import Any

import sentry_sdk
from sentry_sdk.integrations.flask import FlaskIntegration

logger = logging.getLogger(__name__)

_SENSITIVE_HEADERS = ("authorization", "cookie", "x-csrf-token", "asaas-access-token")
_SENSITIVE_ENV_MARKERS = ("PASSWORD", "SECRET", "KEY", "TOKEN")


def scrub_event(event: dict[str, Any], hint: dict[str, Any] | None = None) -> dict[str, Any]:
    """Drop cookies, credentials and secret-looking env values before an event leaves the process."""
    request = event.get("request")
    if isinstance(request, dict):
        request.pop("cookies", None)
        headers = request.get("headers")
        if isinstance(headers, dict):
            for name in list(headers):
                if name.lower() in _SENSITIVE_HEADERS:
                    del headers[name]
        env = request.get("env")
        if isinstance(env, dict):
            for name in env:
                if any(marker in name.upper() for marker in _SENSITIVE_ENV_MARKERS):
                    env[name] = "[Filtered]"
    return event


def init_error_tracking(app) -> bool:
    dsn = (app.config.get("SENTRY_DSN") or "").strip()
    if not dsn:
        return False
    sentry_sdk.init(
        dsn=dsn,
        integrations=[FlaskIntegration()],
        environment=app.config.get("ENV") or "development",
        traces_sample_rate=float(app.config.get("SENTRY_TRACES_SAMPLE_RATE") or 0.0),
        send_default_pii=False,
        before_send=scrub_event,
    )
    sentry_sdk.set_tag("app", "rental-backoffice")
    logger.info("Sentry error tracking enabled (environment=%s)", app.config.get("ENV"))
    return True
