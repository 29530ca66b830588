"""stock ledger core tables

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

LEDGER_ID = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def _table_exists(inspector: sa.Inspector, table_name: str) -> bool:
    return table_name in inspector.get_table_names()


def _index_exists(inspector: sa.Inspector, table_name: str, index_name: str) -> bool:
    return index_name in {index["name"] for index in inspector.get_indexes(table_name)}


def _scope_columns() -> list[sa.Column]:
    return [
        sa.Column("business_id", sa.String(length=36), nullable=False),
        sa.Column("product_id", sa.String(length=36), nullable=False),
        sa.Column("variation_id", sa.String(length=36), nullable=False),
        sa.Column("location_id", sa.String(length=36), nullable=False),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not _table_exists(inspector, "stock_ledger_entries"):
        op.create_table(
            "stock_ledger_entries",
            sa.Column("id", LEDGER_ID, autoincrement=True, nullable=False),
            *_scope_columns(),
            sa.Column("type", sa.String(length=30), nullable=False),
            sa.Column("quantity_delta", sa.Numeric(18, 4), nullable=False),
            sa.Column("balance_after", sa.Numeric(18, 4), nullable=False),
            sa.Column("unit_cost", sa.Numeric(12, 2), nullable=True),
            sa.Column("reference_type", sa.String(length=50), nullable=True),
            sa.Column("reference_id", sa.String(length=36), nullable=True),
            sa.Column("reference_number", sa.String(length=100), nullable=True),
            sa.Column("note", sa.String(length=255), nullable=True),
            sa.Column("created_by", sa.String(length=191), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(inspector, "stock_projections"):
        op.create_table(
            "stock_projections",
            sa.Column("id", sa.String(length=36), nullable=False),
            *_scope_columns(),
            sa.Column("qty_available", sa.Numeric(18, 4), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(
                "business_id",
                "variation_id",
                "location_id",
                name="uq_stock_projections_business_variation_location",
            ),
        )

    if not _table_exists(inspector, "inventory_corrections"):
        op.create_table(
            "inventory_corrections",
            sa.Column("id", sa.String(length=36), nullable=False),
            *_scope_columns(),
            sa.Column("system_count", sa.Numeric(18, 4), nullable=False),
            sa.Column("physical_count", sa.Numeric(18, 4), nullable=False),
            sa.Column("difference", sa.Numeric(18, 4), nullable=False),
            sa.Column("reason", sa.String(length=100), nullable=False),
            sa.Column("remarks", sa.String(length=255), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("baseline_entry_id", LEDGER_ID, nullable=True),
            sa.Column("stock_entry_id", LEDGER_ID, nullable=True),
            sa.Column("created_by", sa.String(length=191), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("approved_by", sa.String(length=191), nullable=True),
            sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(inspector, "audit_logs"):
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("business_id", sa.String(length=36), nullable=False),
            sa.Column("actor_id", sa.String(length=191), nullable=False),
            sa.Column("action", sa.String(length=100), nullable=False),
            sa.Column("target_type", sa.String(length=100), nullable=False),
            sa.Column("target_id", sa.String(length=36), nullable=True),
            sa.Column("metadata_json", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )

    inspector = sa.inspect(bind)
    indexes = [
        (
            "stock_ledger_entries",
            "ix_stock_ledger_entries_scope_created_at",
            ["business_id", "variation_id", "location_id", "created_at", "id"],
        ),
        ("stock_ledger_entries", "ix_stock_ledger_entries_business_created_at", ["business_id", "created_at"]),
        ("stock_ledger_entries", "ix_stock_ledger_entries_reference", ["reference_type", "reference_id"]),
        ("stock_ledger_entries", "ix_stock_ledger_entries_business_id", ["business_id"]),
        ("stock_projections", "ix_stock_projections_business_id", ["business_id"]),
        ("stock_projections", "ix_stock_projections_business_location", ["business_id", "location_id"]),
        ("inventory_corrections", "ix_inventory_corrections_business_id", ["business_id"]),
        (
            "inventory_corrections",
            "ix_inventory_corrections_scope_status_created_at",
            ["business_id", "variation_id", "location_id", "status", "created_at"],
        ),
        ("audit_logs", "ix_audit_logs_business_id", ["business_id"]),
        ("audit_logs", "ix_audit_logs_actor_id", ["actor_id"]),
        ("audit_logs", "ix_audit_logs_target_id", ["target_id"]),
        ("audit_logs", "ix_audit_logs_business_created_at", ["business_id", "created_at"]),
        ("audit_logs", "ix_audit_logs_business_action_created_at", ["business_id", "action", "created_at"]),
    ]
    for table_name, index_name, columns in indexes:
        if not _index_exists(inspector, table_name, index_name):
            op.create_index(index_name, table_name, columns, unique=False)


def downgrade() -> None:
    op.drop_table("audit_logs")
    op.drop_table("inventory_corrections")
    op.drop_table("stock_projections")
    op.drop_table("stock_ledger_entries")
