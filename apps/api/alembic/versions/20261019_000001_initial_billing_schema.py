"""create users, servers and rewards ledger tables

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


SERVER_STATUSES = ("active", "suspended", "pending_deletion", "deleted")
LEDGER_CATEGORIES = (
    "referral",
    "daily_login",
    "promotion",
    "transfer",
    "redeem_code",
    "admin_adjustment",
    "billing",
)
LEDGER_ACTIONS = ("earn", "spend", "adjust")


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("coins", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_coins_earned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_coins_spent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "servers",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("billing_cycle", sa.String(), nullable=False),
        sa.Column("price_per_cycle", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("panel_server_id", sa.Integer(), nullable=True),
        sa.Column(
            "status",
            sa.Enum(*SERVER_STATUSES, name="serverstatus", native_enum=False, length=32),
            nullable=False,
            server_default="active",
        ),
        sa.Column("expiry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("suspended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("suspension_reason", sa.String(), nullable=True),
        sa.Column("overdue_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_billed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_billed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_servers_user_id", "servers", ["user_id"], unique=False)
    op.create_index("ix_servers_status", "servers", ["status"], unique=False)
    op.create_index("ix_servers_expiry_at", "servers", ["expiry_at"], unique=False)
    op.create_index("ix_servers_suspended_at", "servers", ["suspended_at"], unique=False)
    op.create_index("ix_servers_created_at", "servers", ["created_at"], unique=False)

    op.create_table(
        "rewards_ledger",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("delta", sa.Integer(), nullable=False),
        sa.Column("balance_before", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column(
            "source_category",
            sa.Enum(*LEDGER_CATEGORIES, name="ledgersourcecategory", native_enum=False, length=32),
            nullable=False,
        ),
        sa.Column(
            "source_action",
            sa.Enum(*LEDGER_ACTIONS, name="ledgersourceaction", native_enum=False, length=32),
            nullable=False,
        ),
        sa.Column("reference_id", sa.String(), nullable=True),
        sa.Column("message", sa.String(), nullable=True),
        sa.Column("idempotency_key", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key"),
    )
    op.create_index("ix_rewards_ledger_user_id", "rewards_ledger", ["user_id"], unique=False)
    op.create_index("ix_rewards_ledger_reference_id", "rewards_ledger", ["reference_id"], unique=False)
    op.create_index("ix_rewards_ledger_created_at", "rewards_ledger", ["created_at"], unique=False)
    op.create_index("ix_rewards_ledger_user_time", "rewards_ledger", ["user_id", "created_at"], unique=False)
    op.create_index("ix_rewards_ledger_source_time", "rewards_ledger", ["source_category", "created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_rewards_ledger_source_time", table_name="rewards_ledger")
    op.drop_index("ix_rewards_ledger_user_time", table_name="rewards_ledger")
    op.drop_index("ix_rewards_ledger_created_at", table_name="rewards_ledger")
    op.drop_index("ix_rewards_ledger_reference_id", table_name="rewards_ledger")
    op.drop_index("ix_rewards_ledger_user_id", table_name="rewards_ledger")
    op.drop_table("rewards_ledger")

    op.drop_index("ix_servers_created_at", table_name="servers")
    op.drop_index("ix_servers_suspended_at", table_name="servers")
    op.drop_index("ix_servers_expiry_at", table_name="servers")
    op.drop_index("ix_servers_status", table_name="servers")
    op.drop_index("ix_servers_user_id", table_name="servers")
    op.drop_table("servers")

    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
