"""savings goals

Revision ID: 202603121000
Revises: 202602031400
Create Date: 2026-03-12 10:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202603121000"
down_revision = "202602031400"
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "goals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "household_id", sa.Integer(), sa.ForeignKey("households.id"), nullable=False
        ),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("target_amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "current_amount_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("target_date", sa.String(length=10)),
        sa.Column("icon", sa.String(length=40)),
        sa.Column("color", sa.String(length=9)),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("target_amount_cents > 0", name="ck_goal_target_positive"),
        sa.CheckConstraint(
            "current_amount_cents >= 0", name="ck_goal_current_non_negative"
        ),
    )
    op.create_index("ix_goals_household", "goals", ["household_id"])


def downgrade():
    op.drop_index("ix_goals_household", table_name="goals")
    op.drop_table("goals")
