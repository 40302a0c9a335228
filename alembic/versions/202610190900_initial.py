"""transactions, recurring patterns and alerts

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


TRANSACTION_TYPE = sa.Enum("income", "expense", name="transactiontype")
PATTERN_KIND = sa.Enum("subscription", "bill", "recurring", name="patternkind")
FREQUENCY = sa.Enum("daily", "weekly", "monthly", "yearly", name="frequency")
PATTERN_STATUS = sa.Enum("active", "paused", "cancelled", name="patternstatus")
ALERT_TYPE = sa.Enum("renewal", "unusual_spend", name="alerttype")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "currency_code", sa.String(length=3), nullable=False, server_default="EUR"
        ),
        sa.Column("merchant", sa.String(length=200), nullable=True),
        sa.Column("raw_description", sa.Text(), nullable=False, server_default=""),
        sa.Column("category", sa.String(length=100), nullable=True),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_transactions"),
    )
    op.create_index(
        "ix_transactions_user_occurred", "transactions", ["user_id", "occurred_at"]
    )
    op.create_index(
        "ix_transactions_user_merchant", "transactions", ["user_id", "merchant"]
    )

    op.create_table(
        "recurring_patterns",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("kind", PATTERN_KIND, nullable=False),
        sa.Column("identity_key", sa.String(length=240), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("merchant", sa.String(length=200), nullable=True),
        sa.Column("category", sa.String(length=100), nullable=True),
        sa.Column("direction", TRANSACTION_TYPE, nullable=False),
        sa.Column(
            "currency_code", sa.String(length=3), nullable=False, server_default="EUR"
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("frequency", FREQUENCY, nullable=True),
        sa.Column(
            "is_recurring", sa.Boolean(), nullable=False, server_default=sa.true()
        ),
        sa.Column("anchor_date", sa.Date(), nullable=False),
        sa.Column("last_observed_date", sa.Date(), nullable=False),
        sa.Column("next_occurrence", sa.Date(), nullable=False),
        sa.Column("occurrence_count", sa.Integer(), nullable=False),
        sa.Column(
            "status", PATTERN_STATUS, nullable=False, server_default="active"
        ),
        sa.Column("is_paid", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("paid_date", sa.Date(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_recurring_patterns"),
        sa.CheckConstraint(
            "occurrence_count >= 2",
            name="ck_recurring_patterns_occurrence_count_min",
        ),
    )
    op.create_index(
        "ix_patterns_user_kind_status",
        "recurring_patterns",
        ["user_id", "kind", "status"],
    )
    op.create_index(
        "ix_patterns_user_kind_identity",
        "recurring_patterns",
        ["user_id", "kind", "identity_key"],
    )
    op.create_index(
        "ix_patterns_user_next", "recurring_patterns", ["user_id", "next_occurrence"]
    )

    op.create_table(
        "alerts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("type", ALERT_TYPE, nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("pattern_id", sa.Integer(), nullable=True),
        sa.Column("transaction_id", sa.Integer(), nullable=True),
        sa.Column("occurrence_date", sa.Date(), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_alerts"),
        sa.ForeignKeyConstraint(
            ["pattern_id"],
            ["recurring_patterns.id"],
            name="fk_alerts_pattern_id_recurring_patterns",
            ondelete="SET NULL",
        ),
        sa.ForeignKeyConstraint(
            ["transaction_id"],
            ["transactions.id"],
            name="fk_alerts_transaction_id_transactions",
            ondelete="SET NULL",
        ),
    )
    op.create_index("ix_alerts_user_created", "alerts", ["user_id", "created_at"])
    op.create_index(
        "ix_alerts_renewal_lookup",
        "alerts",
        ["user_id", "type", "pattern_id", "occurrence_date"],
    )
    op.create_index(
        "ix_alerts_spend_lookup", "alerts", ["user_id", "type", "transaction_id"]
    )


def downgrade() -> None:
    op.drop_index("ix_alerts_spend_lookup", table_name="alerts")
    op.drop_index("ix_alerts_renewal_lookup", table_name="alerts")
    op.drop_index("ix_alerts_user_created", table_name="alerts")
    op.drop_table("alerts")
    op.drop_index("ix_patterns_user_next", table_name="recurring_patterns")
    op.drop_index("ix_patterns_user_kind_identity", table_name="recurring_patterns")
    op.drop_index("ix_patterns_user_kind_status", table_name="recurring_patterns")
    op.drop_table("recurring_patterns")
    op.drop_index("ix_transactions_user_merchant", table_name="transactions")
    op.drop_index("ix_transactions_user_occurred", table_name="transactions")
    op.drop_table("transactions")
    for enum in (ALERT_TYPE, PATTERN_STATUS, FREQUENCY, PATTERN_KIND, TRANSACTION_TYPE):
        enum.drop(op.get_bind(), checkfirst=True)
