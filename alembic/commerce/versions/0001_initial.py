"""initial billing schema

Revision ID: 0001_commerce
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_commerce"
down_revision = None
branch_labels = None
depends_on = None

# (table, key columns, extra indexed columns)
TASK_TABLES = [
    ("payment_customer_creating_tasks", [("account_id", sa.String())], []),
    ("init_credit_granting_tasks", [("account_id", sa.String())], []),
    ("payment_tasks", [("statement_id", sa.String())], []),
    ("payment_invoice_creating_tasks", [("task_id", sa.String())], [("statement_id", sa.String())]),
    ("payment_invoice_paying_tasks", [("task_id", sa.String())], [("statement_id", sa.String())]),
    ("payment_method_needs_update_notifying_tasks", [("statement_id", sa.String())], []),
    ("payment_profile_suspending_tasks", [("statement_id", sa.String())], []),
    (
        "payment_profile_suspension_notifying_tasks",
        [("account_id", sa.String()), ("version", sa.Integer())],
        [],
    ),
    (
        "payment_profile_state_syncing_tasks",
        [("account_id", sa.String()), ("version", sa.Integer())],
        [],
    ),
    ("connected_account_creating_tasks", [("task_id", sa.String())], [("account_id", sa.String())]),
    ("connected_account_needs_setup_notifying_tasks", [("account_id", sa.String())], []),
    ("payout_transfer_creating_tasks", [("task_id", sa.String())], [("statement_id", sa.String())]),
    ("payout_success_notifying_tasks", [("statement_id", sa.String())], []),
    ("payout_disabled_notifying_tasks", [("statement_id", sa.String())], []),
]


def upgrade() -> None:
    op.create_table(
        "payment_profiles",
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("state", sa.String(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("processor_customer_id", sa.String(), nullable=True),
        sa.Column("init_credit_state", sa.String(), nullable=False, server_default="NOT_GRANTED"),
        sa.Column("first_payment_time_ms", sa.BigInteger(), nullable=False),
        sa.Column("created_time_ms", sa.BigInteger(), nullable=False),
        sa.Column("updated_time_ms", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("account_id"),
    )
    op.create_index("ix_payment_profiles_state", "payment_profiles", ["state"])

    op.create_table(
        "payout_profiles",
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("processor_connected_account_id", sa.String(), nullable=True),
        sa.Column("connected_account_state", sa.String(), nullable=True),
        sa.Column("created_time_ms", sa.BigInteger(), nullable=False),
        sa.Column("updated_time_ms", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("account_id"),
    )

    op.create_table(
        "granted_card_fingerprints",
        sa.Column("fingerprint", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("created_time_ms", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("fingerprint"),
    )
    op.create_index("ix_granted_card_fingerprints_account_id", "granted_card_fingerprints", ["account_id"])

    op.create_table(
        "transaction_statements",
        sa.Column("statement_id", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("month", sa.String(length=7), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("total_amount", sa.BigInteger(), nullable=False),
        sa.Column("total_amount_type", sa.String(), nullable=False),
        sa.Column("items", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("created_time_ms", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("statement_id"),
        sa.UniqueConstraint("account_id", "month", name="uq_statement_account_month"),
    )
    op.create_index("ix_transaction_statements_account_id", "transaction_statements", ["account_id"])

    for table, reference in (("payments", "processor_invoice_id"), ("payouts", "processor_transfer_id")):
        op.create_table(
            table,
            sa.Column("statement_id", sa.String(), nullable=False),
            sa.Column("account_id", sa.String(), nullable=False),
            sa.Column("state", sa.String(), nullable=False),
            sa.Column(reference, sa.String(), nullable=True),
            sa.Column("created_time_ms", sa.BigInteger(), nullable=False),
            sa.Column("updated_time_ms", sa.BigInteger(), nullable=False),
            sa.PrimaryKeyConstraint("statement_id"),
        )
        op.create_index(f"ix_{table}_account_id", table, ["account_id"])
        op.create_index(f"ix_{table}_state", table, ["state"])

    for table, key, extra in TASK_TABLES:
        op.create_table(
            table,
            *[sa.Column(name, type_, nullable=False) for name, type_ in key + extra],
            sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("execution_time_ms", sa.BigInteger(), nullable=False),
            sa.Column("created_time_ms", sa.BigInteger(), nullable=False),
            sa.PrimaryKeyConstraint(*[name for name, _ in key]),
        )
        # Pending-task scans filter and order by eligible time.
        op.create_index(f"ix_{table}_execution_time_ms", table, ["execution_time_ms"])
        for name, _ in extra:
            op.create_index(f"ix_{table}_{name}", table, [name])


def downgrade() -> None:
    for table, _, extra in reversed(TASK_TABLES):
        for name, _ in extra:
            op.drop_index(f"ix_{table}_{name}", table_name=table)
        op.drop_index(f"ix_{table}_execution_time_ms", table_name=table)
        op.drop_table(table)
    for table in ("payouts", "payments"):
        op.drop_index(f"ix_{table}_state", table_name=table)
        op.drop_index(f"ix_{table}_account_id", table_name=table)
        op.drop_table(table)
    op.drop_index("ix_transaction_statements_account_id", table_name="transaction_statements")
    op.drop_table("transaction_statements")
    op.drop_index("ix_granted_card_fingerprints_account_id", table_name="granted_card_fingerprints")
    op.drop_table("granted_card_fingerprints")
    op.drop_table("payout_profiles")
    op.drop_index("ix_payment_profiles_state", table_name="payment_profiles")
    op.drop_table("payment_profiles")
