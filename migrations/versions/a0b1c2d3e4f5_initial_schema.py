"""initial rental schema

Revision ID: a0b1c2d3e4f5
Revises:
Create Date: 2026-10-17

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = "a0b1c2d3e4f5"
down_revision: Union[str, Sequence[str], None] = None
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

    def create(name: str, *columns, indexes: tuple = ()) -> None:
        # Safe to re-run against databases bootstrapped with create_all().
        if name in existing:
            return
        op.create_table(name, *columns)
        for index_name, cols, unique in indexes:
            op.create_index(index_name, name, cols, unique=unique)

    # ---------- Tenancy / accounts ----------
    create(
        "tenants",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("slug", sa.String(64), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("domain", sa.String(255), nullable=True, unique=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("cnpj", sa.String(18), nullable=True),
        sa.Column("inscricao_municipal", sa.String(32), nullable=True),
        sa.Column("codigo_municipio", sa.String(16), nullable=True),
        sa.Column("nfse_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("asaas_customer_id", sa.String(64), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
    )
    create(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        _tenant_fk(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(320), nullable=False, unique=True),
        sa.Column("password_hash", sa.String(255), nullable=False),
        sa.Column("role", sa.String(32), nullable=False, server_default="VIEWER"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("last_login_at", nullable=True),
        _ts("created_at"),
        indexes=(("idx_users_tenant", ["tenant_id"], False),),
    )
    create(
        "password_reset_tokens",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("token", sa.String(128), nullable=False, unique=True),
        sa.Column("used", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("expires_at"),
        _ts("created_at"),
    )
    create(
        "activity_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        _tenant_fk(),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("action", sa.String(32), nullable=False),
        sa.Column("entity", sa.String(32), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=True),
        sa.Column("description", sa.String(512), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("request_id", sa.String(64), nullable=True),
        sa.Column("ip_address", sa.String(64), nullable=True),
        _ts("created_at"),
        indexes=(
            ("idx_activity_logs_tenant_created", ["tenant_id", "created_at"], False),
            ("idx_activity_logs_entity", ["entity", "entity_id"], False),
        ),
    )

    # ---------- Billing ----------
    create(
        "plans",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("slug", sa.String(64), nullable=False, unique=True),
        sa.Column("description", sa.String(512), nullable=True),
        sa.Column("price_monthly", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_users", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("max_equipments", sa.Integer(), nullable=False, server_default=sa.text("10")),
        sa.Column("max_bookings_per_month", sa.Integer(), nullable=False, server_default=sa.text("50")),
        sa.Column("features", sa.JSON(), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("created_at"),
    )
    create(
        "subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "tenant_id", sa.Integer(), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, unique=True
        ),
        sa.Column("plan_id", sa.Integer(), sa.ForeignKey("plans.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="TRIAL"),
        _ts("trial_ends_at", nullable=True),
        _ts("current_period_start", nullable=True),
        _ts("current_period_end", nullable=True),
        sa.Column("asaas_customer_id", sa.String(64), nullable=True),
        _ts("canceled_at", nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        indexes=(("idx_subscriptions_status", ["status"], False),),
    )
    create(
        "subscription_payments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "subscription_id", sa.Integer(), sa.ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("asaas_payment_id", sa.String(64), nullable=True, unique=True),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="PENDING"),
        sa.Column("billing_type", sa.String(16), nullable=False, server_default="BOLETO"),
        sa.Column("due_date", sa.Date(), nullable=False),
        _ts("paid_at", nullable=True),
        sa.Column("invoice_url", sa.String(512), nullable=True),
        _ts("period_start", nullable=True),
        _ts("period_end", nullable=True),
        _ts("created_at"),
    )

    # ---------- Catalog ----------
    create(
        "equipments",
        sa.Column("id", sa.Integer(), primary_key=True),
        _tenant_fk(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(128), nullable=False),
        sa.Column("price_per_day", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("price_per_hour", sa.Float(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="AVAILABLE"),
        sa.Column("images", sa.JSON(), nullable=True),
        sa.Column("total_stock", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("available_stock", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("reserved_stock", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("maintenance_stock", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("damaged_stock", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("min_stock_level", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("unit_cost", sa.Float(), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        indexes=(
            ("idx_equipments_tenant_status", ["tenant_id", "status"], False),
            ("idx_equipments_tenant_category", ["tenant_id", "category"], False),
        ),
    )
    create(
        "rental_periods",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("equipment_id", sa.Integer(), sa.ForeignKey("equipments.id", ondelete="CASCADE"), nullable=False),
        sa.Column("days", sa.Integer(), nullable=False),
        sa.Column("price", sa.Float(), nullable=False),
        sa.Column("label", sa.String(64), nullable=True),
    )
    create(
        "customers",
        sa.Column("id", sa.Integer(), primary_key=True),
        _tenant_fk(),
        sa.Column("person_type", sa.String(2), nullable=False, server_default="PF"),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("trade_name", sa.String(255), nullable=True),
        sa.Column("cpf_cnpj", sa.String(18), nullable=True),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("phone", sa.String(32), nullable=False),
        sa.Column("whatsapp", sa.String(32), nullable=True),
        sa.Column("address", sa.String(255), nullable=True),
        sa.Column("number", sa.String(32), nullable=True),
        sa.Column("complement", sa.String(128), nullable=True),
        sa.Column("neighborhood", sa.String(128), nullable=True),
        sa.Column("city", sa.String(128), nullable=True),
        sa.Column("state", sa.String(2), nullable=True),
        sa.Column("zip_code", sa.String(9), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at"),
        _ts("updated_at"),
        indexes=(
            ("idx_customers_tenant_name", ["tenant_id", "name"], False),
            ("idx_customers_tenant_document", ["tenant_id", "cpf_cnpj"], False),
        ),
    )

    # ---------- Bookings / stock ----------
    create(
        "bookings",
        sa.Column("id", sa.Integer(), primary_key=True),
        _tenant_fk(),
        sa.Column("booking_number", sa.String(32), nullable=False),
        sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customers.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("start_time", sa.String(5), nullable=True),
        sa.Column("end_time", sa.String(5), nullable=True),
        sa.Column("total_price", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="PENDING"),
        _ts("created_at"),
        _ts("updated_at"),
        sa.UniqueConstraint("tenant_id", "booking_number", name="uq_bookings_tenant_number"),
        indexes=(
            ("idx_bookings_tenant_status", ["tenant_id", "status"], False),
            ("idx_bookings_period", ["start_date", "end_date"], False),
        ),
    )
    create(
        "booking_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("booking_id", sa.Integer(), sa.ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False),
        sa.Column("equipment_id", sa.Integer(), sa.ForeignKey("equipments.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("unit_price", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_price", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("returned_quantity", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("damaged_quantity", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("damage_notes", sa.Text(), nullable=True),
        indexes=(("idx_booking_items_equipment", ["equipment_id"], False),),
    )
    create(
        "equipment_costs",
        sa.Column("id", sa.Integer(), primary_key=True),
        _tenant_fk(),
        sa.Column("equipment_id", sa.Integer(), sa.ForeignKey("equipments.id", ondelete="CASCADE"), nullable=False),
        sa.Column("booking_id", sa.Integer(), sa.ForeignKey("bookings.id", ondelete="SET NULL"), nullable=True),
        sa.Column("type", sa.String(16), nullable=False),
        sa.Column("description", sa.String(512), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        _ts("created_at"),
        indexes=(("idx_equipment_costs_equipment", ["equipment_id"], False),),
    )
    create(
        "stock_movements",
        sa.Column("id", sa.Integer(), primary_key=True),
        _tenant_fk(),
        sa.Column("equipment_id", sa.Integer(), sa.ForeignKey("equipments.id", ondelete="CASCADE"), nullable=False),
        sa.Column("booking_id", sa.Integer(), sa.ForeignKey("bookings.id", ondelete="SET NULL"), nullable=True),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(512), nullable=True),
        sa.Column("previous_stock", sa.Integer(), nullable=False),
        sa.Column("new_stock", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        _ts("created_at"),
        indexes=(
            ("idx_stock_movements_equipment_created", ["equipment_id", "created_at"], False),
            ("idx_stock_movements_tenant", ["tenant_id"], False),
        ),
    )

    # ---------- Financial ----------
    create(
        "transaction_categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        _tenant_fk(),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("type", sa.String(16), nullable=False),
        sa.Column("color", sa.String(16), nullable=True),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("created_at"),
        sa.UniqueConstraint("tenant_id", "name", "type", name="uq_transaction_categories_tenant_name_type"),
    )
    create(
        "recurring_transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        _tenant_fk(),
        sa.Column("type", sa.String(16), nullable=False),
        sa.Column("description", sa.String(512), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("transaction_categories.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("interval_days", sa.Integer(), nullable=False, server_default=sa.text("30")),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("next_due_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="ACTIVE"),
        sa.Column("notes", sa.Text(), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        indexes=(("idx_recurring_transactions_tenant_status", ["tenant_id", "status"], False),),
    )
    create(
        "financial_transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        _tenant_fk(),
        sa.Column("type", sa.String(16), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="PENDING"),
        sa.Column("description", sa.String(512), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=True),
        _ts("paid_at", nullable=True),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("transaction_categories.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("booking_id", sa.Integer(), sa.ForeignKey("bookings.id", ondelete="SET NULL"), nullable=True),
        sa.Column("equipment_id", sa.Integer(), sa.ForeignKey("equipments.id", ondelete="SET NULL"), nullable=True),
        sa.Column(
            "recurring_id",
            sa.Integer(),
            sa.ForeignKey("recurring_transactions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("notes", sa.Text(), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        indexes=(
            ("idx_financial_transactions_tenant_date", ["tenant_id", "date"], False),
            ("idx_financial_transactions_tenant_status", ["tenant_id", "status"], False),
        ),
    )

    # ---------- Fiscal ----------
    create(
        "tenant_fiscal_configs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "tenant_id", sa.Integer(), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, unique=True
        ),
        sa.Column("focus_nfe_token", sa.Text(), nullable=True),
        sa.Column("focus_nfe_environment", sa.String(16), nullable=False, server_default="HOMOLOGACAO"),
        sa.Column("regime_tributario", sa.Integer(), nullable=True),
        sa.Column("aliquota_iss", sa.Float(), nullable=False, server_default=sa.text("5")),
        sa.Column("iss_retido", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("codigo_servico", sa.String(32), nullable=True),
        sa.Column("descricao_template", sa.Text(), nullable=True),
        sa.Column("auto_emit_on_complete", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("created_at"),
        _ts("updated_at"),
    )
    create(
        "invoices",
        sa.Column("id", sa.Integer(), primary_key=True),
        _tenant_fk(),
        sa.Column("booking_id", sa.Integer(), sa.ForeignKey("bookings.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("internal_ref", sa.String(32), nullable=False, unique=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="PENDING"),
        sa.Column("numero", sa.String(32), nullable=True),
        sa.Column("codigo_verificacao", sa.String(64), nullable=True),
        sa.Column("url_pdf", sa.Text(), nullable=True),
        sa.Column("url_xml", sa.Text(), nullable=True),
        sa.Column("valor_servicos", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("valor_total", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("aliquota_iss", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("valor_iss", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("iss_retido", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("descricao_servico", sa.Text(), nullable=True),
        sa.Column("codigo_servico", sa.String(32), nullable=True),
        sa.Column("tomador_nome", sa.String(255), nullable=False),
        sa.Column("tomador_cpf_cnpj", sa.String(18), nullable=True),
        sa.Column("tomador_email", sa.String(320), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("focus_errors", sa.JSON(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _ts("authorized_at", nullable=True),
        _ts("cancelled_at", nullable=True),
        sa.Column("cancel_reason", sa.Text(), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        indexes=(
            ("idx_invoices_tenant_status", ["tenant_id", "status"], False),
            ("idx_invoices_booking", ["booking_id"], False),
        ),
    )

    # ---------- Integrations / CRM ----------
    create(
        "api_keys",
        sa.Column("id", sa.Integer(), primary_key=True),
        _tenant_fk(),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("key_hash", sa.String(64), nullable=False, unique=True),
        sa.Column("prefix", sa.String(16), nullable=False),
        sa.Column("permissions", sa.JSON(), nullable=True),
        _ts("last_used_at", nullable=True),
        _ts("expires_at", nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at"),
        indexes=(("idx_api_keys_tenant", ["tenant_id"], False),),
    )
    create(
        "leads",
        sa.Column("id", sa.Integer(), primary_key=True),
        _tenant_fk(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("company", sa.String(255), nullable=True),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("whatsapp", sa.String(32), nullable=True),
        sa.Column("address", sa.String(255), nullable=True),
        sa.Column("city", sa.String(128), nullable=True),
        sa.Column("state", sa.String(2), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="NEW"),
        sa.Column("source", sa.String(16), nullable=False, server_default="DIRECT"),
        sa.Column("contact_type", sa.String(16), nullable=False, server_default="PRESENCIAL"),
        sa.Column("expected_value", sa.Float(), nullable=True),
        sa.Column("interest_notes", sa.Text(), nullable=True),
        sa.Column("equipment_ids", sa.JSON(), nullable=True),
        sa.Column("next_action", sa.String(255), nullable=True),
        sa.Column("next_action_date", sa.Date(), nullable=True),
        sa.Column("lost_reason", sa.String(512), nullable=True),
        _ts("won_at", nullable=True),
        _ts("lost_at", nullable=True),
        sa.Column("assigned_to_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column(
            "converted_customer_id", sa.Integer(), sa.ForeignKey("customers.id", ondelete="SET NULL"), nullable=True
        ),
        _ts("created_at"),
        _ts("updated_at"),
        indexes=(
            ("idx_leads_tenant_status", ["tenant_id", "status"], False),
            ("idx_leads_assigned", ["assigned_to_id"], False),
        ),
    )
    create(
        "lead_activities",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("lead_id", sa.Integer(), sa.ForeignKey("leads.id", ondelete="CASCADE"), nullable=False),
        _tenant_fk(),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("type", sa.String(16), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        _ts("scheduled_at", nullable=True),
        _ts("completed_at", nullable=True),
        _ts("created_at"),
        indexes=(("idx_lead_activities_lead", ["lead_id"], False),),
    )


_TABLES_IN_DROP_ORDER = (
    "lead_activities",
    "leads",
    "api_keys",
    "invoices",
    "tenant_fiscal_configs",
    "financial_transactions",
    "recurring_transactions",
    "transaction_categories",
    "stock_movements",
    "equipment_costs",
    "booking_items",
    "bookings",
    "customers",
    "rental_periods",
    "equipments",
    "subscription_payments",
    "subscriptions",
    "plans",
    "activity_logs",
    "password_reset_tokens",
    "users",
    "tenants",
)


def downgrade() -> None:
    insp = inspect(op.get_bind())
    existing = set(insp.get_table_names())
    for name in _TABLES_IN_DROP_ORDER:
        if name in existing:
            op.drop_table(name)
