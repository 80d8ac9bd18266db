"""initial schema: users, reset tokens, workspaces, items, completed cycles

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None

ITEM_TYPES = (
    "INCOME",
    "RENT",
    "CREDIT_CARD",
    "LOAN_PAYMENT",
    "UTILITIES",
    "INSURANCE",
    "SUBSCRIPTION",
    "OTHER",
)
PERMISSIONS = ("OWNER", "MEMBER", "VIEWER")


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("username", sa.String(length=30), nullable=False),
        sa.Column("display_name", sa.String(length=50), nullable=False),
        sa.Column("password_hash", sa.String(length=100), nullable=False),
        sa.Column("email_hash", sa.String(length=64)),
        sa.Column("email_encrypted", sa.Text()),
        sa.Column("token_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("username", name="uq_users_username"),
        sa.UniqueConstraint("email_hash", name="uq_users_email_hash"),
        sa.CheckConstraint("token_version >= 0", name="ck_users_token_version"),
    )

    op.create_table(
        "password_reset_tokens",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("token_hash", sa.String(length=64), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("used_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("token_hash", name="uq_reset_token_hash"),
    )
    op.create_index("ix_reset_tokens_user", "password_reset_tokens", ["user_id"])

    op.create_table(
        "workspaces",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("balance_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cycle_start_day", sa.Integer()),
        sa.Column("cycle_end_day", sa.Integer()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "cycle_start_day IS NULL OR (cycle_start_day BETWEEN 1 AND 31)",
            name="ck_workspace_cycle_start_day",
        ),
        sa.CheckConstraint(
            "cycle_end_day IS NULL OR (cycle_end_day BETWEEN 1 AND 31)",
            name="ck_workspace_cycle_end_day",
        ),
    )

    op.create_table(
        "workspace_users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "workspace_id",
            sa.Integer(),
            sa.ForeignKey("workspaces.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "permission",
            sa.Enum(*PERMISSIONS, name="workspacepermission"),
            nullable=False,
            server_default="OWNER",
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", "workspace_id", name="uq_workspace_user"),
    )

    op.create_table(
        "items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "workspace_id",
            sa.Integer(),
            sa.ForeignKey("workspaces.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("type", sa.Enum(*ITEM_TYPES, name="itemtype"), nullable=False),
        sa.Column("label", sa.String(length=100), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("day_of_month", sa.Integer(), nullable=False),
        sa.Column("is_paid", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents >= 0", name="ck_items_amount_positive"),
        sa.CheckConstraint(
            "day_of_month BETWEEN 1 AND 31", name="ck_items_day_of_month_range"
        ),
    )
    op.create_index("ix_items_workspace", "items", ["workspace_id"])

    op.create_table(
        "completed_cycles",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "workspace_id",
            sa.Integer(),
            sa.ForeignKey("workspaces.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("cycle_label", sa.String(length=40), nullable=False),
        sa.Column("final_balance_cents", sa.Integer(), nullable=False),
        sa.Column("items_snapshot", sa.Text(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_completed_cycles_workspace",
        "completed_cycles",
        ["workspace_id", "completed_at"],
    )


def downgrade():
    op.drop_index("ix_completed_cycles_workspace", table_name="completed_cycles")
    op.drop_table("completed_cycles")
    op.drop_index("ix_items_workspace", table_name="items")
    op.drop_table("items")
    op.drop_table("workspace_users")
    op.drop_table("workspaces")
    op.drop_index("ix_reset_tokens_user", table_name="password_reset_tokens")
    op.drop_table("password_reset_tokens")
    op.drop_table("users")
