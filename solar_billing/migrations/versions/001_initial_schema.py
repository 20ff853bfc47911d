"""Initial schema: subscribers, plants, invoices, closings, ledger and journals.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-18 10:00:00.000000

"""

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.current_timestamp(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.current_timestamp(),
        ),
    ]


def _money(name: str, nullable: bool = False, **kwargs) -> sa.Column:
    return sa.Column(
        name,
        sa.Numeric(precision=12, scale=2),
        nullable=nullable,
        server_default=None if nullable else "0",
        **kwargs,
    )


def upgrade() -> None:
    # Create subscribers table
    op.create_table(
        "subscribers",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False, comment="Full name or company name"),
        sa.Column("cpf_cnpj", sa.String(length=20), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=30), nullable=True),
        sa.Column(
            "provider_customer_id",
            sa.String(length=64),
            nullable=True,
            comment="Cached billing provider customer id",
        ),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.Index("idx_subscriber_cpf_cnpj", "cpf_cnpj"),
        sa.Index("idx_subscriber_provider_customer", "provider_customer_id"),
    )

    # Create plants table
    op.create_table(
        "plants",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        _money("availability_cost"),
        _money("maintenance_cost"),
        _money("lease_cost"),
        sa.Column("bundled_services", sa.JSON(), nullable=True),
        sa.Column(
            "management_fee_percent",
            sa.Numeric(precision=5, scale=2),
            nullable=False,
            server_default="0",
        ),
        sa.Column("pix_key", sa.String(length=140), nullable=True),
        sa.Column("pix_key_type", sa.String(length=20), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )

    # Create consumer_units table
    op.create_table(
        "consumer_units",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("subscriber_id", sa.Integer(), nullable=False),
        sa.Column("plant_id", sa.Integer(), nullable=True),
        sa.Column("installation_code", sa.String(length=50), nullable=False),
        sa.Column("label", sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["subscriber_id"], ["subscribers.id"]),
        sa.ForeignKeyConstraint(["plant_id"], ["plants.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.Index("ix_consumer_units_subscriber_id", "subscriber_id"),
        sa.Index("ix_consumer_units_plant_id", "plant_id"),
        sa.Index("idx_consumer_unit_installation", "installation_code"),
    )

    # Create consolidated_invoices table
    op.create_table(
        "consolidated_invoices",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("subscriber_id", sa.Integer(), nullable=False),
        sa.Column("total_value", sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("provider_charge_id", sa.String(length=64), nullable=False),
        sa.Column("provider_document_url", sa.String(length=500), nullable=True),
        sa.Column(
            "status",
            sa.Enum("PENDING", "CANCELED", name="consolidatedinvoicestatus"),
            nullable=False,
        ),
        *_timestamps(),
        sa.ForeignKeyConstraint(["subscriber_id"], ["subscribers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.Index("ix_consolidated_invoices_subscriber_id", "subscriber_id"),
        sa.Index("ix_consolidated_invoices_provider_charge_id", "provider_charge_id"),
    )

    # Create invoices table
    op.create_table(
        "invoices",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("consumer_unit_id", sa.Integer(), nullable=False),
        sa.Column("reference_month", sa.Integer(), nullable=False, comment="1..12"),
        sa.Column("reference_year", sa.Integer(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=True),
        _money("consumed_kwh", comment="kWh"),
        _money("amount_payable"),
        sa.Column(
            "status",
            sa.Enum("PENDING", "PAID", "OVERDUE", "CANCELED", "SETTLED", name="invoicestatus"),
            nullable=False,
        ),
        sa.Column("provider_charge_id", sa.String(length=64), nullable=True),
        sa.Column("provider_document_url", sa.String(length=500), nullable=True),
        sa.Column("provider_status", sa.String(length=30), nullable=True),
        sa.Column("consolidated_invoice_id", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["consumer_unit_id"], ["consumer_units.id"]),
        sa.ForeignKeyConstraint(["consolidated_invoice_id"], ["consolidated_invoices.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.Index("ix_invoices_consumer_unit_id", "consumer_unit_id"),
        sa.Index("ix_invoices_provider_charge_id", "provider_charge_id"),
        sa.Index("ix_invoices_consolidated_invoice_id", "consolidated_invoice_id"),
        sa.Index("ix_invoices_status", "status"),
        sa.Index("idx_invoice_period", "reference_year", "reference_month"),
        sa.Index("idx_invoice_unit_period", "consumer_unit_id", "reference_year", "reference_month"),
    )

    # Create plant_closings table
    op.create_table(
        "plant_closings",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("plant_id", sa.Integer(), nullable=False),
        sa.Column("reference_month", sa.Integer(), nullable=False, comment="1..12"),
        sa.Column("reference_year", sa.Integer(), nullable=False),
        sa.Column("closing_date", sa.Date(), nullable=True),
        sa.Column(
            "status",
            sa.Enum("DRAFT", "CLOSED", "SETTLED", name="closingstatus"),
            nullable=False,
        ),
        _money("generated_energy", comment="kWh"),
        _money("compensated_energy", comment="kWh"),
        _money("monthly_billed"),
        _money("paid_invoices_base"),
        _money("availability_cost"),
        _money("maintenance"),
        _money("lease"),
        _money("bundled_services"),
        sa.Column(
            "management_fee_percent",
            sa.Numeric(precision=5, scale=2),
            nullable=False,
            server_default="0",
        ),
        _money("management_fee_value"),
        _money("total_expenses"),
        _money("net_balance"),
        sa.Column("transfer_id", sa.String(length=64), nullable=True),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["plant_id"], ["plants.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "plant_id", "reference_year", "reference_month", name="uq_plant_closing_period"
        ),
        sa.Index("ix_plant_closings_plant_id", "plant_id"),
    )

    # Create cashbook_entries table
    op.create_table(
        "cashbook_entries",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("plant_id", sa.Integer(), nullable=False),
        sa.Column("direction", sa.Enum("INFLOW", "OUTFLOW", name="entrydirection"), nullable=False),
        sa.Column("category", sa.String(length=50), nullable=False),
        sa.Column("amount", sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=True),
        sa.Column(
            "status",
            sa.Enum("PROVISIONED", "SETTLED", name="entrystatus"),
            nullable=False,
        ),
        sa.Column("transaction_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("closing_id", sa.Integer(), nullable=True),
        sa.Column("invoice_id", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["plant_id"], ["plants.id"]),
        sa.ForeignKeyConstraint(["closing_id"], ["plant_closings.id"]),
        sa.ForeignKeyConstraint(["invoice_id"], ["invoices.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.Index("ix_cashbook_entries_plant_id", "plant_id"),
        sa.Index("ix_cashbook_entries_closing_id", "closing_id"),
        sa.Index("ix_cashbook_entries_invoice_id", "invoice_id"),
        sa.Index("idx_cashbook_plant_direction", "plant_id", "direction", "status"),
    )

    # Create originators table
    op.create_table(
        "originators",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("pix_key", sa.String(length=140), nullable=True),
        sa.Column("pix_key_type", sa.String(length=20), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )

    # Create commissions table
    op.create_table(
        "commissions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("originator_id", sa.Integer(), nullable=False),
        sa.Column("reference_month", sa.Integer(), nullable=False),
        sa.Column("reference_year", sa.Integer(), nullable=False),
        sa.Column("total_value", sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column("status", sa.Enum("PENDING", "PAID", name="commissionstatus"), nullable=False),
        sa.Column("transfer_id", sa.String(length=64), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["originator_id"], ["originators.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.Index("ix_commissions_originator_id", "originator_id"),
    )

    # Create entity_history table
    op.create_table(
        "entity_history",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("details", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.Index("idx_history_entity", "entity_type", "entity_id"),
    )

    # Create external_operations table
    op.create_table(
        "external_operations",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.Enum("CHARGE", "TRANSFER", name="operationkind"), nullable=False),
        sa.Column("target_type", sa.String(length=50), nullable=False),
        sa.Column("target_id", sa.Integer(), nullable=False),
        sa.Column("idempotency_key", sa.String(length=120), nullable=False),
        sa.Column(
            "status",
            sa.Enum("PENDING", "SUBMITTED", "COMPLETED", name="operationstatus"),
            nullable=False,
        ),
        sa.Column("external_id", sa.String(length=64), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("error", sa.String(length=500), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key"),
        sa.Index("idx_operation_target", "target_type", "target_id"),
        sa.Index("idx_operation_status", "status"),
    )


def downgrade() -> None:
    op.drop_table("external_operations")
    op.drop_table("entity_history")
    op.drop_table("commissions")
    op.drop_table("originators")
    op.drop_table("cashbook_entries")
    op.drop_table("plant_closings")
    op.drop_table("invoices")
    op.drop_table("consolidated_invoices")
    op.drop_table("consumer_units")
    op.drop_table("plants")
    op.drop_table("subscribers")
