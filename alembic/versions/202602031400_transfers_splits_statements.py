"""transfer flags, split reimbursements and statements

Revision ID: 202602031400
Revises: 202601100900
Create Date: 2026-02-03 14:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202602031400"
down_revision = "202601100900"
branch_labels = None
depends_on = None


def upgrade():
    with op.batch_alter_table("transactions") as batch:
        batch.add_column(
            sa.Column(
                "is_transfer", sa.Boolean(), nullable=False, server_default=sa.false()
            )
        )
        batch.add_column(
            sa.Column("is_split", sa.Boolean(), nullable=False, server_default=sa.false())
        )
        batch.add_column(sa.Column("split_participants", sa.Integer()))
        batch.add_column(sa.Column("split_parent_id", sa.Integer()))
        batch.create_foreign_key(
            "fk_transactions_split_parent",
            "transactions",
            ["split_parent_id"],
            ["id"],
            ondelete="SET NULL",
        )
        batch.create_index("ix_transactions_split_parent", ["split_parent_id"])
        batch.create_check_constraint(
            "ck_txn_split_not_transfer", "NOT (is_split AND is_transfer)"
        )
        batch.create_check_constraint(
            "ck_txn_split_shape",
            "NOT is_split OR (amount_cents < 0 AND split_participants >= 2)",
        )
        batch.create_check_constraint(
            "ck_txn_reimbursement_positive",
            "split_parent_id IS NULL OR amount_cents > 0",
        )

    op.create_table(
        "statements",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("file_name", sa.String(length=255), nullable=False),
        sa.Column("file_type", sa.String(length=100), nullable=False),
        sa.Column("transaction_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_statements_account", "statements", ["account_id"])


def downgrade():
    op.drop_index("ix_statements_account", table_name="statements")
    op.drop_table("statements")
    with op.batch_alter_table("transactions") as batch:
        batch.drop_constraint("ck_txn_reimbursement_positive", type_="check")
        batch.drop_constraint("ck_txn_split_shape", type_="check")
        batch.drop_constraint("ck_txn_split_not_transfer", type_="check")
        batch.drop_index("ix_transactions_split_parent")
        batch.drop_constraint("fk_transactions_split_parent", type_="foreignkey")
        batch.drop_column("split_parent_id")
        batch.drop_column("split_participants")
        batch.drop_column("is_split")
        batch.drop_column("is_transfer")
