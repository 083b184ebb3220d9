from __future__ import annotations

from typing import TYPE_CHECKING

from flask import current_app, g, has_request_context

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.rental.models import Tenant

_LOCAL_HOSTS = ("localhost", "127.0.0.1")


def get_subdomain(host: str, root_domain: str) -> str | None:
    """
    Extract the tenant slug from a Host header.

      locadora-xyz.example.com.br -> "locadora-xyz"
      www.example.com.br / example.com.br / localhost:5000 -> None
    """
    hostname = (host or "").split(":")[0].strip().lower()
    if not hostname or hostname in _LOCAL_HOSTS:
        return None

    root = (root_domain or "").split(":")[0].strip().lower()
    if not root or hostname in (root, f"www.{root}"):
        return None

    suffix = f".{root}"
    if not hostname.endswith(suffix):
        return None
    subdomain = hostname[: -len(suffix)]
    if not subdomain or subdomain == "www":
        return None
    return subdomain


def get_tenant_by_slug(s: "Session", slug: str) -> "Tenant | None":
    from app.rental.models import Tenant

    slug = (slug or "").strip().lower()
    if not slug:
        return None
    return s.query(Tenant).filter(Tenant.slug == slug, Tenant.active.is_(True)).one_or_none()


def get_tenant_by_domain(s: "Session", domain: str) -> "Tenant | None":
    from app.rental.models import Tenant

    domain = (domain or "").split(":")[0].strip().lower()
    if not domain:
        return None
    return s.query(Tenant).filter(Tenant.domain == domain, Tenant.active.is_(True)).one_or_none()


def resolve_tenant_from_host(s: "Session", host: str, root_domain: str) -> "Tenant | None":
    """Custom domain first, then subdomain slug."""
    tenant = get_tenant_by_domain(s, host)
    if tenant:
        return tenant
    slug = get_subdomain(host, root_domain)
    if slug:
        return get_tenant_by_slug(s, slug)
    return None


def tenant_url(tenant: "Tenant", path: str = "/", *, root_domain: str | None = None, production: bool | None = None) -> str:
    if root_domain is None:
        root_domain = current_app.config.get("ROOT_DOMAIN") or "localhost:5000"
    if production is None:
        production = (current_app.config.get("ENV") or "").lower() in ("prod", "production")
    scheme = "https" if production else "http"
    host = tenant.domain or f"{tenant.slug}.{root_domain}"
    if not path.startswith("/"):
        path = "/" + path
    return f"{scheme}://{host}{path}"


def current_tenant_id() -> int | None:
    """Tenant of the authenticated principal (session user or API key)."""
    if not has_request_context():
        return None
    user = getattr(g, "current_user", None)
    if user is not None:
        return user.tenant_id
    api_key = getattr(g, "api_key", None)
    if api_key is not None:
        return api_key.tenant_id
    return None


def require_tenant_id() -> int:
    tenant_id = current_tenant_id()
    if tenant_id is None:
        from app.rental.errors import UnauthorizedError

        raise UnauthorizedError()
    return tenant_id
