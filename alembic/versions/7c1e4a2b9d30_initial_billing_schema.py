"""Initial billing schema: customers, packages, routers, services, invoices, payments.

Revision ID: 7c1e4a2b9d30
Revises:
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "7c1e4a2b9d30"
down_revision = None
branch_labels = None
depends_on = None

_ENUMS = {
    "customerstatus": (
        "pending_survey",
        "survey_scheduled",
        "survey_complete",
        "approved",
        "active",
        "rejected",
    ),
    "packagetype": ("residential", "business"),
    "servicestatus": (
        "pending",
        "active",
        "isolated",
        "suspended",
        "terminated",
        "provisioning_failed",
    ),
    "invoicestatus": ("unpaid", "paid"),
    "paymentstatus": ("success", "pending", "failed", "expired"),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*_ENUMS[name], name=name, create_type=False)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    for name, values in _ENUMS.items():
        postgresql.ENUM(*values, name=name).create(bind, checkfirst=True)

    op.create_table(
        "customers",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(160), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("phone", sa.String(40), nullable=True),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("status", _enum("customerstatus"), nullable=True),
        *_timestamps(),
    )
    op.create_table(
        "packages",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("speed", sa.String(40), nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("type", _enum("packagetype"), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("mikrotik_profile", sa.String(120), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        *_timestamps(),
    )
    op.create_table(
        "mikrotik_routers",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("ip_address", sa.String(64), nullable=False),
        sa.Column("username", sa.String(120), nullable=False),
        sa.Column("password_encrypted", sa.String(512), nullable=True),
        sa.Column("api_port", sa.Integer(), nullable=True),
        sa.Column("ssh_port", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        *_timestamps(),
    )
    op.create_table(
        "services",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "customer_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("customers.id"),
            nullable=False,
        ),
        sa.Column(
            "package_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("packages.id"), nullable=True
        ),
        sa.Column(
            "router_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("mikrotik_routers.id"),
            nullable=True,
        ),
        sa.Column("username", sa.String(120), nullable=False, unique=True),
        sa.Column("password_encrypted", sa.String(512), nullable=False),
        sa.Column("mikrotik_user_id", sa.String(64), nullable=True),
        sa.Column("status", _enum("servicestatus"), nullable=True),
        sa.Column("activation_date", sa.Date(), nullable=True),
        sa.Column("expiry_date", sa.Date(), nullable=True),
        sa.Column("isolation_timestamp", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_services_status_expiry", "services", ["status", "expiry_date"])
    op.create_table(
        "invoices",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "service_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("services.id"), nullable=False
        ),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("status", _enum("invoicestatus"), nullable=True),
        sa.Column("invoice_date", sa.Date(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_link", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_invoices_status_due_date", "invoices", ["status", "due_date"])
    op.create_table(
        "payments",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "invoice_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("invoices.id"), nullable=False
        ),
        sa.Column("gateway", sa.String(40), nullable=False),
        sa.Column("transaction_id", sa.String(160), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("status", _enum("paymentstatus"), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("gateway", "transaction_id", name="uq_payments_gateway_txn"),
    )


def downgrade() -> None:
    op.drop_table("payments")
    op.drop_index("ix_invoices_status_due_date", table_name="invoices")
    op.drop_table("invoices")
    op.drop_index("ix_services_status_expiry", table_name="services")
    op.drop_table("services")
    op.drop_table("mikrotik_routers")
    op.drop_table("packages")
    op.drop_table("customers")
    bind = op.get_bind()
    for name, values in reversed(list(_ENUMS.items())):
        postgresql.ENUM(*values, name=name).drop(bind, checkfirst=True)
