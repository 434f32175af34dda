"""customers and config_overrides

Revision ID: 0001
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa


revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

ACTIVE = sa.text("status <> 'DELETED'")

STATUSES = ("PENDING", "PROVISIONING", "RUNNING", "STOPPED", "ERROR", "DELETING", "DELETED")


def upgrade() -> None:
    op.create_table(
        "customers",
        sa.Column("customer_id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("domain", sa.String(253), nullable=False),
        sa.Column("mode", sa.Enum("LOCAL", "PRODUCTION", name="customer_mode"), nullable=False),
        sa.Column("partner_id", sa.String(100), nullable=True),
        sa.Column("port_backend", sa.Integer(), nullable=True),
        sa.Column("port_admin", sa.Integer(), nullable=True),
        sa.Column("port_store", sa.Integer(), nullable=True),
        sa.Column("db_name", sa.String(63), nullable=False),
        sa.Column("app_db_user", sa.String(63), nullable=False),
        sa.Column("app_db_password", sa.String(255), nullable=False),
        sa.Column("redis_host", sa.String(255), nullable=True),
        sa.Column("redis_port", sa.Integer(), nullable=True),
        sa.Column("redis_password", sa.String(255), nullable=True),
        sa.Column("template_version", sa.String(50), nullable=False),
        sa.Column("store_name", sa.String(255), nullable=True),
        sa.Column("demo_pack", sa.String(500), nullable=True),
        sa.Column("status", sa.Enum(*STATUSES, name="customer_status"), nullable=False),
        sa.Column("failed_step", sa.String(50), nullable=True),
        sa.Column("error_detail", sa.Text(), nullable=True),
        sa.Column("step_history", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_health_check_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
    )
    op.create_index("ix_customers_domain", "customers", ["domain"])
    op.create_index("ix_customers_status", "customers", ["status"])
    op.create_index("ix_customers_partner_status", "customers", ["partner_id", "status"])

    for name, column in (
        ("uq_customers_domain_active", "domain"),
        ("uq_customers_port_backend_active", "port_backend"),
        ("uq_customers_port_admin_active", "port_admin"),
        ("uq_customers_port_store_active", "port_store"),
    ):
        op.create_index(
            name, "customers", [column], unique=True,
            postgresql_where=ACTIVE, sqlite_where=ACTIVE,
        )

    op.create_table(
        "config_overrides",
        sa.Column("customer_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("service", sa.String(20), nullable=False),
        sa.Column("key", sa.String(128), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.customer_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("customer_id", "service", "key"),
    )


def downgrade() -> None:
    op.drop_table("config_overrides")
    op.drop_index("uq_customers_port_store_active", table_name="customers")
    op.drop_index("uq_customers_port_admin_active", table_name="customers")
    op.drop_index("uq_customers_port_backend_active", table_name="customers")
    op.drop_index("uq_customers_domain_active", table_name="customers")
    op.drop_index("ix_customers_partner_status", table_name="customers")
    op.drop_index("ix_customers_status", table_name="customers")
    op.drop_index("ix_customers_domain", table_name="customers")
    op.drop_table("customers")
    sa.Enum(name="customer_status").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="customer_mode").drop(op.get_bind(), checkfirst=True)
