from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func

from app.rental.activity import record_activity
from app.rental.errors import ConflictError, NotFoundError, ValidationError, require_fields
from app.rental.modules.customers.models import PERSON_TYPES
from app.rental.modules.fiscal.validators import (
    format_cpf_cnpj,
    only_numbers,
    validate_cep,
    validate_cpf_cnpj,
    validate_uf,
)
from app.rental.utils import clean_str, iso, parse_bool

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.rental.models import User
    from app.rental.modules.customers.models import Customer, CustomerSite

_TEXT_FIELDS = (
    "name",
    "trade_name",
    "email",
    "phone",
    "whatsapp",
    "address",
    "number",
    "complement",
    "neighborhood",
    "city",
    "notes",
)


def get_customer_or_404(s: "Session", tenant_id: int, customer_id: int) -> "Customer":
    from app.rental.modules.customers.models import Customer

    customer = s.get(Customer, customer_id)
    if not customer or customer.tenant_id != tenant_id:
        raise NotFoundError("Cliente não encontrado")
    return customer


def normalize_customer_fields(payload: dict) -> dict[str, Any]:
    """Validate documents/UF/CEP of the keys present in payload; returns cleaned values."""
    out: dict[str, Any] = {}
    for field in _TEXT_FIELDS:
        if field in payload:
            out[field] = clean_str(payload.get(field))

    if "person_type" in payload:
        person_type = (payload.get("person_type") or "PF").strip().upper()
        if person_type not in PERSON_TYPES:
            raise ValidationError("Tipo de pessoa inválido. Use PF ou PJ")
        out["person_type"] = person_type

    if "cpf_cnpj" in payload:
        raw = clean_str(payload.get("cpf_cnpj"))
        if raw:
            if not validate_cpf_cnpj(raw):
                raise ValidationError("CPF/CNPJ inválido")
            out["cpf_cnpj"] = only_numbers(raw)
        else:
            out["cpf_cnpj"] = None

    if "state" in payload:
        state = clean_str(payload.get("state"))
        if state:
            if not validate_uf(state):
                raise ValidationError(f"UF inválida: {state}")
            out["state"] = state.upper()
        else:
            out["state"] = None

    if "zip_code" in payload:
        zip_code = clean_str(payload.get("zip_code"))
        if zip_code:
            if not validate_cep(zip_code):
                raise ValidationError("CEP inválido")
            out["zip_code"] = only_numbers(zip_code)
        else:
            out["zip_code"] = None

    return out


def create_customer(s: "Session", tenant_id: int, payload: dict, actor: "User | None") -> "Customer":
    from app.rental.modules.customers.models import Customer

    require_fields(payload, ("name", "phone"))
    fields = normalize_customer_fields(payload)
    if "person_type" not in fields:
        digits = fields.get("cpf_cnpj") or ""
        fields["person_type"] = "PJ" if len(digits) == 14 else "PF"

    now = datetime.utcnow()
    customer = Customer(tenant_id=tenant_id, is_active=True, created_at=now, updated_at=now, **fields)
    s.add(customer)
    s.flush()
    record_activity(
        s,
        tenant_id=tenant_id,
        actor=actor,
        action="CREATE",
        entity="CUSTOMER",
        entity_id=customer.id,
        description=f"Cliente \"{customer.name}\" criado",
    )
    return customer


def update_customer(s: "Session", customer: "Customer", payload: dict, actor: "User | None") -> "Customer":
    fields = normalize_customer_fields(payload)
    for required in ("name", "phone"):
        if required in fields and not fields[required]:
            raise ValidationError(f"Campos obrigatórios: {required}", payload={"missing_fields": [required]})
    if "is_active" in payload:
        fields["is_active"] = parse_bool(payload.get("is_active"))

    changes = {}
    for key, value in fields.items():
        if getattr(customer, key) != value:
            changes[key] = {"old": getattr(customer, key), "new": value}
            setattr(customer, key, value)

    if changes:
        customer.updated_at = datetime.utcnow()
        record_activity(
            s,
            tenant_id=customer.tenant_id,
            actor=actor,
            action="UPDATE",
            entity="CUSTOMER",
            entity_id=customer.id,
            description=f"Cliente \"{customer.name}\" atualizado",
            metadata={"changes": changes},
        )
    return customer


def delete_customer(s: "Session", customer: "Customer", actor: "User | None") -> None:
    from app.rental.modules.bookings.models import Booking

    active = (
        s.query(func.count(Booking.id))
        .filter(Booking.customer_id == customer.id, Booking.status.in_(("PENDING", "CONFIRMED")))
        .scalar()
    )
    if active:
        raise ConflictError("Cliente possui reservas ativas e não pode ser excluído")

    record_activity(
        s,
        tenant_id=customer.tenant_id,
        actor=actor,
        action="DELETE",
        entity="CUSTOMER",
        entity_id=customer.id,
        description=f"Cliente \"{customer.name}\" excluído",
    )
    has_history = s.query(func.count(Booking.id)).filter(Booking.customer_id == customer.id).scalar()
    if has_history:
        # Finished bookings still reference the customer; keep the row for history.
        customer.is_active = False
        customer.updated_at = datetime.utcnow()
    else:
        s.delete(customer)


def booking_counts(s: "Session", customer_ids: list[int]) -> dict[int, int]:
    from app.rental.modules.bookings.models import Booking

    if not customer_ids:
        return {}
    rows = (
        s.query(Booking.customer_id, func.count(Booking.id))
        .filter(Booking.customer_id.in_(customer_ids))
        .group_by(Booking.customer_id)
        .all()
    )
    return {cid: int(n) for cid, n in rows}


def serialize_customer(c: "Customer", *, booking_count: int | None = None) -> dict[str, Any]:
    data = {
        "id": c.id,
        "person_type": c.person_type,
        "name": c.name,
        "trade_name": c.trade_name,
        "cpf_cnpj": c.cpf_cnpj,
        "cpf_cnpj_formatted": format_cpf_cnpj(c.cpf_cnpj) if c.cpf_cnpj else None,
        "email": c.email,
        "phone": c.phone,
        "whatsapp": c.whatsapp,
        "address": c.address,
        "number": c.number,
        "complement": c.complement,
        "neighborhood": c.neighborhood,
        "city": c.city,
        "state": c.state,
        "zip_code": c.zip_code,
        "notes": c.notes,
        "is_active": c.is_active,
        "created_at": iso(c.created_at),
    }
    if booking_count is not None:
        data["booking_count"] = booking_count
    return data


_SITE_TEXT_FIELDS = (
    "name",
    "street",
    "number",
    "complement",
    "neighborhood",
    "city",
    "contact_name",
    "contact_phone",
)


def get_site_or_404(s: "Session", customer: "Customer", site_id: int) -> "CustomerSite":
    from app.rental.modules.customers.models import CustomerSite

    site = s.get(CustomerSite, site_id)
    if not site or site.customer_id != customer.id:
        raise NotFoundError("Local não encontrado")
    return site


def _site_fields(payload: dict) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for field in _SITE_TEXT_FIELDS:
        if field in payload:
            out[field] = clean_str(payload.get(field))
    # state/zip_code share the customer address rules
    address = normalize_customer_fields({k: payload[k] for k in ("state", "zip_code") if k in payload})
    out.update(address)
    if "ibge_code" in payload:
        ibge = only_numbers(clean_str(payload.get("ibge_code")) or "")
        if ibge and len(ibge) != 7:
            raise ValidationError("Código IBGE deve ter 7 dígitos")
        out["ibge_code"] = ibge or None
    for flag in ("is_default", "is_active"):
        if flag in payload:
            out[flag] = parse_bool(payload.get(flag))
    return out


def _unset_other_defaults(s: "Session", site: "CustomerSite") -> None:
    from app.rental.modules.customers.models import CustomerSite

    (
        s.query(CustomerSite)
        .filter(CustomerSite.customer_id == site.customer_id, CustomerSite.id != site.id)
        .update({CustomerSite.is_default: False}, synchronize_session="fetch")
    )


def list_sites(s: "Session", customer: "Customer", *, active_only: bool = True) -> list["CustomerSite"]:
    from app.rental.modules.customers.models import CustomerSite

    q = s.query(CustomerSite).filter(CustomerSite.customer_id == customer.id)
    if active_only:
        q = q.filter(CustomerSite.is_active.is_(True))
    return q.order_by(CustomerSite.is_default.desc(), CustomerSite.name.asc()).all()


def create_site(s: "Session", customer: "Customer", payload: dict, actor: "User | None") -> "CustomerSite":
    from app.rental.modules.customers.models import CustomerSite

    require_fields(payload, ("name",))
    fields = _site_fields(payload)
    fields.setdefault("is_default", False)
    fields.setdefault("is_active", True)

    now = datetime.utcnow()
    site = CustomerSite(tenant_id=customer.tenant_id, customer_id=customer.id, created_at=now, updated_at=now, **fields)
    s.add(site)
    s.flush()
    if site.is_default:
        _unset_other_defaults(s, site)
    record_activity(
        s,
        tenant_id=customer.tenant_id,
        actor=actor,
        action="CREATE",
        entity="CUSTOMER",
        entity_id=customer.id,
        description=f"Local \"{site.name}\" adicionado ao cliente \"{customer.name}\"",
        metadata={"site_id": site.id},
    )
    return site


def update_site(s: "Session", site: "CustomerSite", payload: dict, actor: "User | None") -> "CustomerSite":
    fields = _site_fields(payload)
    if "name" in fields and not fields["name"]:
        raise ValidationError("Campos obrigatórios: name", payload={"missing_fields": ["name"]})

    changes = {}
    for key, value in fields.items():
        if getattr(site, key) != value:
            changes[key] = {"old": getattr(site, key), "new": value}
            setattr(site, key, value)
    if not changes:
        return site

    site.updated_at = datetime.utcnow()
    if changes.get("is_default", {}).get("new"):
        _unset_other_defaults(s, site)
    record_activity(
        s,
        tenant_id=site.tenant_id,
        actor=actor,
        action="UPDATE",
        entity="CUSTOMER",
        entity_id=site.customer_id,
        description=f"Local \"{site.name}\" atualizado",
        metadata={"site_id": site.id, "changes": changes},
    )
    return site


def delete_site(s: "Session", site: "CustomerSite", actor: "User | None") -> str:
    """Deactivates a site still referenced by bookings, deletes it otherwise. Returns the message."""
    from app.rental.modules.bookings.models import Booking

    linked = s.query(func.count(Booking.id)).filter(Booking.customer_site_id == site.id).scalar()
    if linked:
        site.is_active = False
        site.is_default = False
        site.updated_at = datetime.utcnow()
        message = "Local desativado (possui reservas vinculadas)"
    else:
        s.delete(site)
        message = "Local excluído com sucesso"
    record_activity(
        s,
        tenant_id=site.tenant_id,
        actor=actor,
        action="DELETE",
        entity="CUSTOMER",
        entity_id=site.customer_id,
        description=f"Local \"{site.name}\": {message.lower()}",
        metadata={"site_id": site.id, "soft_delete": bool(linked)},
    )
    return message


def serialize_site(site: "CustomerSite") -> dict[str, Any]:
    return {
        "id": site.id,
        "customer_id": site.customer_id,
        "name": site.name,
        "street": site.street,
        "number": site.number,
        "complement": site.complement,
        "neighborhood": site.neighborhood,
        "city": site.city,
        "state": site.state,
        "zip_code": site.zip_code,
        "ibge_code": site.ibge_code,
        "contact_name": site.contact_name,
        "contact_phone": site.contact_phone,
        "is_default": site.is_default,
        "is_active": site.is_active,
        "created_at": iso(site.created_at),
    }
