"""create merchant engine tables

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00
"""

from alembic import op
import sqlalchemy as sa

revision = "001"
down_revision = None
branch_labels = None
depends_on = None

transaction_type = sa.Enum("expense", "income", name="transactiontype")
frequency = sa.Enum("weekly", "biweekly", "monthly", "quarterly", "annual", "irregular", name="frequency")
detection_method = sa.Enum("automatic", "manual", name="detectionmethod")


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "global_merchants",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("display_name", sa.String(100), nullable=False),
        sa.Column("logo_url", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "merchant_groups",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("account_id", sa.String(36), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("display_name", sa.String(100), nullable=False),
        sa.Column("canonical_pattern", sa.String(255), nullable=True),
        sa.Column("is_automatic", sa.Boolean(), nullable=False),
        sa.Column("global_merchant_id", sa.String(36), sa.ForeignKey("global_merchants.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("idx_merchant_group_account", "merchant_groups", ["account_id", "created_at"])

    op.create_table(
        "merchant_mappings",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("account_id", sa.String(36), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("raw_pattern", sa.Text(), nullable=False),
        sa.Column("canonical_pattern", sa.String(255), nullable=False),
        sa.Column("merchant_group_id", sa.String(36), sa.ForeignKey("merchant_groups.id"), nullable=True),
        sa.Column("is_automatic", sa.Boolean(), nullable=False),
        sa.Column("confidence_score", sa.Float(), nullable=False),
        sa.Column("usage_count", sa.Integer(), nullable=False),
        sa.Column("last_used_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("account_id", "canonical_pattern", name="uq_mapping_account_pattern"),
    )
    op.create_index("idx_mapping_group", "merchant_mappings", ["merchant_group_id"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("account_id", sa.String(36), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("merchant_group_id", sa.String(36), sa.ForeignKey("merchant_groups.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_transactions_date", "transactions", ["date"])
    op.create_index("idx_transaction_date_account", "transactions", ["date", "account_id"])
    op.create_index("idx_transaction_merchant_group", "transactions", ["merchant_group_id", "date"])

    op.create_table(
        "recurring_patterns",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("account_id", sa.String(36), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("merchant_group_id", sa.String(36), sa.ForeignKey("merchant_groups.id"), nullable=False),
        sa.Column("transaction_type", transaction_type, nullable=False),
        sa.Column("frequency", frequency, nullable=False),
        sa.Column("interval_days", sa.Integer(), nullable=False),
        sa.Column("amount_min", sa.Numeric(12, 2), nullable=False),
        sa.Column("amount_max", sa.Numeric(12, 2), nullable=False),
        sa.Column("amount_typical", sa.Numeric(12, 2), nullable=False),
        sa.Column("first_seen_date", sa.Date(), nullable=False),
        sa.Column("last_seen_date", sa.Date(), nullable=False),
        sa.Column("next_expected_date", sa.Date(), nullable=False),
        sa.Column("confidence_score", sa.Float(), nullable=False),
        sa.Column("occurrence_count", sa.Integer(), nullable=False),
        sa.Column("transaction_ids", sa.JSON(), nullable=False),
        sa.Column("is_lapsed", sa.Boolean(), nullable=False),
        sa.Column("is_confirmed", sa.Boolean(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("detection_method", detection_method, nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("idx_recurring_group_frequency", "recurring_patterns", ["merchant_group_id", "frequency"])


def downgrade() -> None:
    op.drop_index("idx_recurring_group_frequency", table_name="recurring_patterns")
    op.drop_table("recurring_patterns")
    op.drop_index("idx_transaction_merchant_group", table_name="transactions")
    op.drop_index("idx_transaction_date_account", table_name="transactions")
    op.drop_index("ix_transactions_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("idx_mapping_group", table_name="merchant_mappings")
    op.drop_table("merchant_mappings")
    op.drop_index("idx_merchant_group_account", table_name="merchant_groups")
    op.drop_table("merchant_groups")
    op.drop_table("global_merchants")
    op.drop_table("accounts")

    bind = op.get_bind()
    detection_method.drop(bind, checkfirst=True)
    frequency.drop(bind, checkfirst=True)
    transaction_type.drop(bind, checkfirst=True)
