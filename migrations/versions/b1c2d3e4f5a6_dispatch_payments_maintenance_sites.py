"""booking dispatch/payment, customer sites and maintenance records

Revision ID: b1c2d3e4f5a6
Revises: a0b1c2d3e4f5
Create Date: 2026-10-17

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = "b1c2d3e4f5a6"
down_revision: Union[str, Sequence[str], None] = "a0b1c2d3e4f5"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=False), nullable=nullable)


def _tenant_fk() -> sa.Column:
    return sa.Column("tenant_id", sa.Integer(), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)


def upgrade() -> None:
    bind = op.get_bind()
    insp = inspect(bind)
    existing = set(insp.get_table_names())

    if "customer_sites" not in existing:
        op.create_table(
            "customer_sites",
            sa.Column("id", sa.Integer(), primary_key=True),
            _tenant_fk(),
            sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("street", sa.String(255), nullable=True),
            sa.Column("number", sa.String(32), nullable=True),
            sa.Column("complement", sa.String(128), nullable=True),
            sa.Column("neighborhood", sa.String(128), nullable=True),
            sa.Column("city", sa.String(128), nullable=True),
            sa.Column("state", sa.String(2), nullable=True),
            sa.Column("zip_code", sa.String(9), nullable=True),
            sa.Column("ibge_code", sa.String(7), nullable=True),
            sa.Column("contact_name", sa.String(255), nullable=True),
            sa.Column("contact_phone", sa.String(32), nullable=True),
            sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            _ts("created_at"),
            _ts("updated_at"),
        )
        op.create_index("idx_customer_sites_customer", "customer_sites", ["customer_id"])

    if "maintenance_records" not in existing:
        op.create_table(
            "maintenance_records",
            sa.Column("id", sa.Integer(), primary_key=True),
            _tenant_fk(),
            sa.Column("equipment_id", sa.Integer(), sa.ForeignKey("equipments.id", ondelete="CASCADE"), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False, server_default=sa.text("1")),
            sa.Column("type", sa.String(16), nullable=False),
            sa.Column("description", sa.String(512), nullable=False),
            sa.Column("scheduled_date", sa.Date(), nullable=False),
            sa.Column("completed_date", sa.Date(), nullable=True),
            sa.Column("cost", sa.Float(), nullable=True),
            sa.Column("vendor", sa.String(255), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("status", sa.String(16), nullable=False, server_default="SCHEDULED"),
            _ts("created_at"),
            _ts("updated_at"),
        )
        op.create_index("idx_maintenance_tenant_status", "maintenance_records", ["tenant_id", "status"])
        op.create_index("idx_maintenance_equipment", "maintenance_records", ["equipment_id"])

    if "bookings" in existing:
        cols = {c["name"] for c in insp.get_columns("bookings")}
        with op.batch_alter_table("bookings") as batch_op:
            if "dispatched_at" not in cols:
                batch_op.add_column(_ts("dispatched_at", nullable=True))
            if "paid_at" not in cols:
                batch_op.add_column(_ts("paid_at", nullable=True))
            if "payment_method" not in cols:
                batch_op.add_column(sa.Column("payment_method", sa.String(32), nullable=True))
            if "customer_site_id" not in cols:
                batch_op.add_column(sa.Column("customer_site_id", sa.Integer(), nullable=True))
                batch_op.create_foreign_key(
                    "fk_bookings_customer_site", "customer_sites", ["customer_site_id"], ["id"], ondelete="SET NULL"
                )

        # Confirmed bookings created before dispatch tracking already moved their units out.
        if "dispatched_at" not in cols:
            op.execute(
                "UPDATE bookings SET dispatched_at = updated_at "
                "WHERE status IN ('CONFIRMED', 'COMPLETED') AND dispatched_at IS NULL"
            )


def downgrade() -> None:
    insp = inspect(op.get_bind())
    existing = set(insp.get_table_names())

    if "bookings" in existing:
        cols = {c["name"] for c in insp.get_columns("bookings")}
        fks = {fk.get("name") for fk in insp.get_foreign_keys("bookings")}
        with op.batch_alter_table("bookings") as batch_op:
            if "fk_bookings_customer_site" in fks:
                batch_op.drop_constraint("fk_bookings_customer_site", type_="foreignkey")
            for name in ("customer_site_id", "payment_method", "paid_at", "dispatched_at"):
                if name in cols:
                    batch_op.drop_column(name)

    for name in ("maintenance_records", "customer_sites"):
        if name in existing:
            op.drop_table(name)
