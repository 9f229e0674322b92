"""Users, orders, loyalty ledger, and notifications.

Revision ID: 20261019_01
Revises: 
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


order_status_enum = sa.Enum(
    "AWAITING_PAYMENT",
    "PAYMENT_CONFIRMED",
    "PAYMENT_FAILED",
    "CONFIRMED",
    "PREPARING",
    "READY",
    "OUT_FOR_DELIVERY",
    "DELIVERED",
    "CANCELLED",
    name="order_status_enum",
)
fulfillment_method_enum = sa.Enum("PICKUP", "DELIVERY", name="fulfillment_method_enum")
loyalty_tier_enum = sa.Enum("BRONZE", "SILVER", "GOLD", name="loyalty_tier_enum")
loyalty_ledger_reason_enum = sa.Enum(
    "ORDER_EARNED",
    "POINTS_EXPIRED_90_DAY_CYCLE",
    name="loyalty_ledger_reason_enum",
)
notification_category_enum = sa.Enum("BIRTHDAY_REWARD", "ORDER_UPDATE", name="notification_category_enum")
notification_status_enum = sa.Enum("PENDING", "SENT", "FAILED", name="notification_status_enum")


def _uuid() -> sa.types.TypeEngine:
    return sa.dialects.postgresql.UUID(as_uuid=True)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("phone_number", sa.String(length=32), nullable=True),
        sa.Column("push_token", sa.String(length=256), nullable=True),
        sa.Column("role", sa.String(length=16), nullable=False, server_default="CUSTOMER"),
        sa.Column("birth_date", sa.Date(), nullable=True),
        sa.Column("registered_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", _uuid(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("status", order_status_enum, nullable=False, server_default="AWAITING_PAYMENT"),
        sa.Column("total", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="EUR"),
        sa.Column("checkout_id", sa.String(), nullable=True, unique=True),
        sa.Column("fulfillment_method", fulfillment_method_enum, nullable=False, server_default="PICKUP"),
        sa.Column("delivery_address", sa.Text(), nullable=True),
        sa.Column("order_code", sa.String(length=6), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("decline_reason", sa.Text(), nullable=True),
        sa.Column("driver_id", _uuid(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("estimated_ready_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ready_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_orders_user_id", "orders", ["user_id"])
    op.create_index("ix_orders_status_created_at", "orders", ["status", "created_at"])

    op.create_table(
        "order_items",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("menu_item_id", sa.Integer(), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("unit_price", sa.Numeric(10, 2), nullable=False),
        sa.Column("customizations", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_order_items_order_id", "order_items", ["order_id"])

    op.create_table(
        "loyalty_accounts",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column(
            "user_id",
            _uuid(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tier", loyalty_tier_enum, nullable=False, server_default="BRONZE"),
        sa.Column("total_spent_this_year", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("registration_date", sa.Date(), nullable=False),
        sa.Column("last_points_reset", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_annual_reset", sa.Date(), nullable=True),
        sa.Column("birthday_reward_sent", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        *_timestamps(),
    )

    op.create_table(
        "loyalty_transactions",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column(
            "account_id",
            _uuid(),
            sa.ForeignKey("loyalty_accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", _uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id", ondelete="SET NULL"), nullable=True),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("reason", loyalty_ledger_reason_enum, nullable=False),
        sa.Column("details", sa.Text(), nullable=True),
        sa.Column("source", sa.String(length=32), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_loyalty_transactions_account_id", "loyalty_transactions", ["account_id"])
    op.create_index(
        "uq_loyalty_transactions_order_earned",
        "loyalty_transactions",
        ["order_id"],
        unique=True,
        postgresql_where=sa.text("reason = 'ORDER_EARNED'"),
        sqlite_where=sa.text("reason = 'ORDER_EARNED'"),
    )

    op.create_table(
        "notifications",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("user_id", _uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("category", notification_category_enum, nullable=False),
        sa.Column("status", notification_status_enum, nullable=False, server_default="PENDING"),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])


def downgrade() -> None:
    op.drop_index("ix_notifications_user_id", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("uq_loyalty_transactions_order_earned", table_name="loyalty_transactions")
    op.drop_index("ix_loyalty_transactions_account_id", table_name="loyalty_transactions")
    op.drop_table("loyalty_transactions")
    op.drop_table("loyalty_accounts")
    op.drop_index("ix_order_items_order_id", table_name="order_items")
    op.drop_table("order_items")
    op.drop_index("ix_orders_status_created_at", table_name="orders")
    op.drop_index("ix_orders_user_id", table_name="orders")
    op.drop_table("orders")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")

    bind = op.get_bind()
    for enum in (
        notification_status_enum,
        notification_category_enum,
        loyalty_ledger_reason_enum,
        loyalty_tier_enum,
        fulfillment_method_enum,
        order_status_enum,
    ):
        enum.drop(bind, checkfirst=True)
