from __future__ import annotations

import logging
import re
import secrets
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from werkzeug.security import generate_password_hash

from app.rental.activity import record_activity
from app.rental.errors import ForbiddenError, NotFoundError, ValidationError, require_fields
from app.rental.models import PasswordResetToken, Tenant, User
from app.rental.rbac import ROLES
from app.rental.utils import clean_str, iso, parse_bool

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

SLUG_RE = re.compile(r"^[a-z0-9-]+$")
EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
MIN_PASSWORD_LENGTH = 6
RESET_TOKEN_TTL = timedelta(hours=1)


def _is_valid_email(email: str) -> bool:
    return bool(EMAIL_RE.match(email or ""))


def _check_password(password: Any) -> str:
    password = password or ""
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"A senha deve ter pelo menos {MIN_PASSWORD_LENGTH} caracteres")
    return password


def _email_taken(s: "Session", email: str, exclude_id: int | None = None) -> bool:
    q = s.query(User.id).filter(User.email == email)
    if exclude_id is not None:
        q = q.filter(User.id != exclude_id)
    return q.first() is not None


# ---------- Signup ----------
def register_tenant(s: "Session", payload: dict) -> tuple[Tenant, User]:
    """
    Self-service signup: tenant + ADMIN user + default financial categories +
    TRIAL subscription on the default plan (when one is seeded). The caller
    commits, so a failure anywhere leaves nothing behind.
    """
    from app.rental.modules.billing.service import SubscriptionService, default_plan
    from app.rental.modules.financial.service import ensure_default_categories

    fields = ("name", "email", "password", "tenant_name", "tenant_slug", "phone")
    missing = [f for f in fields if not str(payload.get(f) or "").strip()]
    if missing:
        raise ValidationError("Todos os campos são obrigatórios", payload={"missing_fields": missing})

    slug = str(payload["tenant_slug"]).strip()
    if not SLUG_RE.match(slug):
        raise ValidationError("Slug deve conter apenas letras minúsculas, números e hífens")
    email = str(payload["email"]).strip().lower()
    if not _is_valid_email(email):
        raise ValidationError("Email inválido")
    password = _check_password(payload.get("password"))

    if _email_taken(s, email):
        raise ValidationError("Este email já está cadastrado")
    if s.query(Tenant.id).filter(Tenant.slug == slug).first() is not None:
        raise ValidationError("Este endereço já está em uso. Tente outro.")

    now = datetime.utcnow()
    tenant = Tenant(
        slug=slug,
        name=str(payload["tenant_name"]).strip(),
        email=email,
        phone=str(payload["phone"]).strip(),
        active=True,
        created_at=now,
        updated_at=now,
    )
    s.add(tenant)
    s.flush()

    user = User(
        tenant_id=tenant.id,
        name=str(payload["name"]).strip(),
        email=email,
        password_hash=generate_password_hash(password),
        role="ADMIN",
        is_active=True,
        created_at=now,
    )
    s.add(user)
    s.flush()

    ensure_default_categories(s, tenant.id)
    plan = default_plan(s)
    if plan is not None:
        SubscriptionService(s).create_subscription(tenant, plan, actor=user)
    else:
        logger.warning("No default plan seeded; tenant %s created without subscription", slug)

    record_activity(
        s,
        tenant_id=tenant.id,
        actor=user,
        action="CREATE",
        entity="USER",
        entity_id=user.id,
        description=f"Usuário {user.name} criou conta no sistema",
    )
    return tenant, user


# ---------- Password reset ----------
def request_password_reset(s: "Session", email: str) -> tuple[User, str] | None:
    """New 1h token for an eligible user; None when nothing should be sent."""
    user = s.query(User).filter(User.email == (email or "").strip().lower()).one_or_none()
    if not user or not user.is_active:
        return None
    if user.role != "SUPER_ADMIN" and not user.tenant.active:
        return None

    now = datetime.utcnow()
    s.query(PasswordResetToken).filter(
        PasswordResetToken.user_id == user.id, PasswordResetToken.used.is_(False)
    ).update({PasswordResetToken.used: True}, synchronize_session=False)

    token = secrets.token_hex(32)
    s.add(PasswordResetToken(user_id=user.id, token=token, used=False, expires_at=now + RESET_TOKEN_TTL, created_at=now))
    return user, token


def find_valid_reset_token(s: "Session", token: str | None) -> PasswordResetToken | None:
    if not token:
        return None
    reset = s.query(PasswordResetToken).filter(PasswordResetToken.token == token).one_or_none()
    if not reset or reset.used or reset.expires_at < datetime.utcnow():
        return None
    return reset


def reset_password(s: "Session", token: Any, password: Any) -> User:
    if not token or not password:
        raise ValidationError("Token e senha são obrigatórios")
    password = _check_password(password)
    reset = find_valid_reset_token(s, str(token))
    if reset is None:
        raise ValidationError("Link inválido ou expirado")

    user = reset.user
    user.password_hash = generate_password_hash(password)
    reset.used = True
    record_activity(
        s,
        tenant_id=user.tenant_id,
        actor=user,
        action="UPDATE",
        entity="USER",
        entity_id=user.id,
        description=f"Senha redefinida para {user.email}",
    )
    return user


# ---------- Users ----------
def get_user_or_404(s: "Session", tenant_id: int, user_id: int) -> User:
    user = s.get(User, user_id)
    if not user or user.tenant_id != tenant_id:
        raise NotFoundError("Usuário não encontrado")
    return user


def _parse_role(value: Any, actor: User | None) -> str:
    role = str(value or "").strip().upper()
    if role not in ROLES:
        raise ValidationError(f"Perfil inválido: {value}")
    if role == "SUPER_ADMIN" and (actor is None or actor.role != "SUPER_ADMIN"):
        raise ForbiddenError("Não é possível atribuir o perfil SUPER_ADMIN")
    return role


def create_user(s: "Session", tenant_id: int, payload: dict, actor: User | None) -> User:
    from app.rental.modules.billing.limits import check_user_limit, enforce_limit

    require_fields(payload, ("name", "email", "password"))
    enforce_limit(check_user_limit(s, tenant_id))

    email = str(payload["email"]).strip().lower()
    if not _is_valid_email(email):
        raise ValidationError("Email inválido")
    if _email_taken(s, email):
        raise ValidationError("Este email já está cadastrado")
    password = _check_password(payload.get("password"))
    role = _parse_role(payload.get("role") or "VIEWER", actor)

    user = User(
        tenant_id=tenant_id,
        name=str(payload["name"]).strip(),
        email=email,
        password_hash=generate_password_hash(password),
        role=role,
        is_active=True,
        created_at=datetime.utcnow(),
    )
    s.add(user)
    s.flush()
    record_activity(
        s,
        tenant_id=tenant_id,
        actor=actor,
        action="CREATE",
        entity="USER",
        entity_id=user.id,
        description=f"Usuário {user.name} criado",
        metadata={"email": email, "role": role},
    )
    return user


def update_user(s: "Session", user: User, payload: dict, actor: User | None) -> User:
    changes: dict[str, Any] = {}
    if "name" in payload:
        name = clean_str(payload.get("name"))
        if not name:
            raise ValidationError("Campos obrigatórios: name", payload={"missing_fields": ["name"]})
        if name != user.name:
            changes["name"] = {"old": user.name, "new": name}
            user.name = name
    if "email" in payload:
        email = str(payload.get("email") or "").strip().lower()
        if not _is_valid_email(email):
            raise ValidationError("Email inválido")
        if email != user.email:
            if _email_taken(s, email, exclude_id=user.id):
                raise ValidationError("Este email já está cadastrado")
            changes["email"] = {"old": user.email, "new": email}
            user.email = email
    if "role" in payload:
        role = _parse_role(payload.get("role"), actor)
        if actor is not None and user.id == actor.id and role != user.role:
            raise ValidationError("Você não pode alterar o seu próprio perfil")
        if role != user.role:
            changes["role"] = {"old": user.role, "new": role}
            user.role = role
    if "is_active" in payload:
        is_active = parse_bool(payload.get("is_active"))
        if actor is not None and user.id == actor.id and not is_active:
            raise ValidationError("Você não pode desativar a sua própria conta")
        if is_active != user.is_active:
            changes["is_active"] = {"old": user.is_active, "new": is_active}
            user.is_active = is_active
    if payload.get("password"):
        user.password_hash = generate_password_hash(_check_password(payload.get("password")))
        changes["password"] = {"old": "***", "new": "***"}

    if changes:
        record_activity(
            s,
            tenant_id=user.tenant_id,
            actor=actor,
            action="UPDATE",
            entity="USER",
            entity_id=user.id,
            description=f"Usuário {user.name} atualizado",
            metadata={"changes": changes},
        )
    return user


def deactivate_user(s: "Session", user: User, actor: User | None) -> None:
    if actor is not None and user.id == actor.id:
        raise ValidationError("Você não pode excluir a sua própria conta")
    user.is_active = False
    record_activity(
        s,
        tenant_id=user.tenant_id,
        actor=actor,
        action="DELETE",
        entity="USER",
        entity_id=user.id,
        description=f"Usuário {user.name} desativado",
    )


def serialize_user(u: User) -> dict[str, Any]:
    return {
        "id": u.id,
        "name": u.name,
        "email": u.email,
        "role": u.role,
        "is_active": u.is_active,
        "last_login_at": iso(u.last_login_at),
        "created_at": iso(u.created_at),
    }


# ---------- Tenant settings ----------
def update_tenant_settings(s: "Session", tenant: Tenant, payload: dict, actor: User | None) -> Tenant:
    from app.rental.modules.fiscal.validators import only_numbers, validate_cnpj

    changes: dict[str, Any] = {}

    def _set(field: str, value: Any) -> None:
        if getattr(tenant, field) != value:
            changes[field] = {"old": getattr(tenant, field), "new": value}
            setattr(tenant, field, value)

    if "name" in payload:
        name = clean_str(payload.get("name"))
        if not name:
            raise ValidationError("Campos obrigatórios: name", payload={"missing_fields": ["name"]})
        _set("name", name)
    if "email" in payload:
        email = clean_str(payload.get("email"))
        if email and not _is_valid_email(email):
            raise ValidationError("Email inválido")
        _set("email", email.lower() if email else None)
    if "phone" in payload:
        _set("phone", clean_str(payload.get("phone")))
    if "domain" in payload:
        domain = clean_str(payload.get("domain"))
        domain = domain.lower() if domain else None
        if domain:
            taken = s.query(Tenant.id).filter(Tenant.domain == domain, Tenant.id != tenant.id).first()
            if taken is not None:
                raise ValidationError("Este domínio já está em uso")
        _set("domain", domain)
    if "cnpj" in payload:
        cnpj = clean_str(payload.get("cnpj"))
        if cnpj and not validate_cnpj(cnpj):
            raise ValidationError("CNPJ inválido")
        _set("cnpj", only_numbers(cnpj) if cnpj else None)
    if "inscricao_municipal" in payload:
        _set("inscricao_municipal", clean_str(payload.get("inscricao_municipal")))
    if "codigo_municipio" in payload:
        codigo = clean_str(payload.get("codigo_municipio"))
        if codigo and not re.fullmatch(r"\d{7}", codigo):
            raise ValidationError("Código do município deve ter 7 dígitos (IBGE)")
        _set("codigo_municipio", codigo)
    if "nfse_enabled" in payload:
        # Feature flag on the tenant; only platform staff may flip it.
        if actor is None or actor.role != "SUPER_ADMIN":
            raise ForbiddenError("Apenas o suporte da plataforma pode habilitar a emissão de NFS-e")
        _set("nfse_enabled", parse_bool(payload.get("nfse_enabled")))

    if changes:
        tenant.updated_at = datetime.utcnow()
        record_activity(
            s,
            tenant_id=tenant.id,
            actor=actor,
            action="UPDATE",
            entity="TENANT",
            entity_id=tenant.id,
            description="Configurações da empresa atualizadas",
            metadata={"changes": changes},
        )
    return tenant


def serialize_tenant(t: Tenant) -> dict[str, Any]:
    return {
        "id": t.id,
        "slug": t.slug,
        "name": t.name,
        "email": t.email,
        "phone": t.phone,
        "domain": t.domain,
        "active": t.active,
        "cnpj": t.cnpj,
        "inscricao_municipal": t.inscricao_municipal,
        "codigo_municipio": t.codigo_municipio,
        "nfse_enabled": t.nfse_enabled,
        "created_at": iso(t.created_at),
    }
