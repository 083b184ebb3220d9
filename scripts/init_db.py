import os
import sys
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.rental.models import Tenant, User
from app.rental.modules.billing.models import Plan
from app.rental.modules.billing.service import SubscriptionService, get_subscription
from app.rental.modules.financial.service import ensure_default_categories

# (slug, name, price, max_users, max_equipments, max_bookings_per_month, is_default); -1 = unlimited
PLANS = (
    ("basico", "Básico", 99.0, 3, 50, 100, False),
    ("profissional", "Profissional", 199.0, 10, 500, -1, True),
    ("empresarial", "Empresarial", 399.0, -1, -1, -1, False),
)


@contextmanager
def _session_scope(database_url: str):
    engine = create_engine(database_url, future=True, pool_pre_ping=True)
    sm = sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()


def seed_plans(s: Session) -> dict[str, Plan]:
    plans: dict[str, Plan] = {}
    for slug, name, price, max_users, max_equipments, max_bookings, is_default in PLANS:
        plan = s.query(Plan).filter(Plan.slug == slug).one_or_none()
        if not plan:
            plan = Plan(
                slug=slug,
                name=name,
                price_monthly=price,
                max_users=max_users,
                max_equipments=max_equipments,
                max_bookings_per_month=max_bookings,
                is_default=is_default,
                active=True,
                features=[],
            )
            s.add(plan)
        plans[slug] = plan
    s.flush()
    return plans


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed plans, a demo tenant and its admin user in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@locadora.demo").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"
    tenant_slug = (os.environ.get("DEMO_TENANT_SLUG") or "demo").strip().lower()
    tenant_name = (os.environ.get("DEMO_TENANT_NAME") or "Locadora Demo").strip()

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///rental.db").strip()

    # Use direct engine/session so this can run in release without importing app.wsgi (avoids recursion).
    with _session_scope(db_url) as s:
        plans = seed_plans(s)

        tenant = s.query(Tenant).filter(Tenant.slug == tenant_slug).one_or_none()
        if not tenant:
            tenant = Tenant(slug=tenant_slug, name=tenant_name, email=admin_email, active=True)
            s.add(tenant)
            s.flush()

        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(
                tenant_id=tenant.id,
                name="Administrador",
                email=admin_email,
                password_hash=generate_password_hash(admin_password),
                role="ADMIN",
                is_active=True,
            )
            s.add(user)
            s.flush()

        created = ensure_default_categories(s, tenant.id)

        if get_subscription(s, tenant.id) is None:
            SubscriptionService(s).create_subscription(tenant, plans["profissional"], actor=user)

    print("Initialized database (seed_only).")
    print(f"Plans: {', '.join(name for _slug, name, *_rest in PLANS)}")
    print(f"Tenant: {tenant_slug} (new categories: {created})")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
