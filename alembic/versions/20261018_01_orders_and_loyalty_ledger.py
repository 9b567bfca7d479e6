"""Create customer, order, coupon and loyalty ledger tables."""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20261018_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


UUID = postgresql.UUID(as_uuid=True)

payment_status = sa.Enum("Pendente", "Pago", "Finalizada", "Cancelado", name="order_payment_status_enum")
delivery_status = sa.Enum("Pendente", "Despachado", "Entregue", name="order_delivery_status_enum")
state_axis = sa.Enum("payment", "delivery", name="order_state_axis_enum")
actor_type = sa.Enum("system", "customer", "operator", "admin", "gateway", name="order_state_actor_type_enum")
operation_type = sa.Enum(
    "accrual", "redemption", "manual_adjustment", "reversal", name="loyalty_operation_type_enum"
)
entry_reason = sa.Enum(
    "base",
    "high_ticket",
    "recurrence",
    "birthday",
    "referral",
    "redemption",
    "manual",
    "reversal",
    name="loyalty_entry_reason_enum",
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "loyalty_tiers",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("name", sa.String(), nullable=False, unique=True),
        sa.Column("min_spend", sa.Numeric(12, 2), nullable=False),
        sa.Column("max_spend", sa.Numeric(12, 2), nullable=True),
        sa.Column("points_multiplier", sa.Float(), nullable=False, server_default="1"),
        *_timestamps(),
    )

    op.create_table(
        "loyalty_settings",
        sa.Column("key", sa.String(64), primary_key=True),
        sa.Column("value", sa.String(64), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "loyalty_redemption_rules",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("points_cost", sa.Integer(), nullable=False),
        sa.Column("discount_value", sa.Numeric(12, 2), nullable=False),
        sa.Column("minimum_order_value", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("stock_quantity", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint("points_cost > 0", name="ck_redemption_rules_points_cost_positive"),
        sa.CheckConstraint(
            "stock_quantity IS NULL OR stock_quantity >= 0",
            name="ck_redemption_rules_stock_non_negative",
        ),
    )

    op.create_table(
        "customer_profiles",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("first_name", sa.String(), nullable=True),
        sa.Column("last_name", sa.String(), nullable=True),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("tier_id", UUID, sa.ForeignKey("loyalty_tiers.id", ondelete="SET NULL"), nullable=True),
        sa.Column("points_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("spend_last_6_months", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("date_of_birth", sa.Date(), nullable=True),
        sa.Column("birthday_bonus_granted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("referral_code", sa.String(16), nullable=False),
        sa.Column(
            "referred_by_id",
            UUID,
            sa.ForeignKey("customer_profiles.id", ondelete="SET NULL"),
            nullable=True,
        ),
        *_timestamps(),
    )
    op.create_index("ix_customer_profiles_email", "customer_profiles", ["email"], unique=True)
    op.create_index("ix_customer_profiles_referral_code", "customer_profiles", ["referral_code"], unique=True)

    op.create_table(
        "coupons",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("code", sa.String(64), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("discount_value", sa.Numeric(12, 2), nullable=False),
        sa.Column("minimum_order_value", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("points_cost", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("stock_quantity", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "redemption_rule_id",
            UUID,
            sa.ForeignKey("loyalty_redemption_rules.id", ondelete="SET NULL"),
            nullable=True,
            unique=True,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_coupons_code", "coupons", ["code"], unique=True)

    op.create_table(
        "orders",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("order_number", sa.String(), nullable=False, unique=True),
        sa.Column(
            "customer_id",
            UUID,
            sa.ForeignKey("customer_profiles.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("status", payment_status, nullable=False, server_default="Pendente"),
        sa.Column("delivery_status", delivery_status, nullable=False, server_default="Pendente"),
        sa.Column("subtotal", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("shipping_cost", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("coupon_discount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("donation_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("total_price", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("user_coupon_id", UUID, nullable=True),
        sa.Column("payment_method", sa.String(64), nullable=True),
        sa.Column("delivery_info", sa.Text(), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        *_timestamps(),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dispatched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_orders_customer_id", "orders", ["customer_id"])
    op.create_index("ix_orders_user_coupon_id", "orders", ["user_coupon_id"])
    op.create_index("ix_orders_paid_at", "orders", ["paid_at"])

    op.create_table(
        "order_items",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("order_id", UUID, sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("product_id", sa.String(64), nullable=True),
        sa.Column("product_name", sa.String(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("unit_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("total_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "order_state_events",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("order_id", UUID, sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("axis", state_axis, nullable=False),
        sa.Column("actor_type", actor_type, nullable=True),
        sa.Column("actor_id", sa.String(255), nullable=True),
        sa.Column("actor_label", sa.String(255), nullable=True),
        sa.Column("from_status", sa.String(64), nullable=True),
        sa.Column("to_status", sa.String(64), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_order_state_events_order_id", "order_state_events", ["order_id"])

    op.create_table(
        "user_coupons",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("coupon_id", UUID, sa.ForeignKey("coupons.id", ondelete="RESTRICT"), nullable=False),
        sa.Column(
            "customer_id",
            UUID,
            sa.ForeignKey("customer_profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("is_used", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "order_id",
            UUID,
            sa.ForeignKey("orders.id", ondelete="RESTRICT"),
            nullable=True,
            unique=True,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "(is_used AND order_id IS NOT NULL) OR (NOT is_used AND order_id IS NULL)",
            name="ck_user_coupons_used_order_link",
        ),
    )
    op.create_index("ix_user_coupons_customer_id", "user_coupons", ["customer_id"])

    op.create_table(
        "loyalty_ledger_entries",
        sa.Column("id", UUID, primary_key=True),
        sa.Column(
            "customer_id",
            UUID,
            sa.ForeignKey("customer_profiles.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("operation_type", operation_type, nullable=False),
        sa.Column("reason", entry_reason, nullable=False),
        sa.Column("description", sa.String(500), nullable=False),
        sa.Column("order_id", UUID, sa.ForeignKey("orders.id", ondelete="RESTRICT"), nullable=True),
        sa.Column(
            "reversed_entry_id",
            UUID,
            sa.ForeignKey("loyalty_ledger_entries.id", ondelete="RESTRICT"),
            nullable=True,
        ),
        sa.Column("idempotency_key", sa.String(128), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("customer_id", "idempotency_key", name="uq_loyalty_ledger_customer_idempotency"),
        sa.CheckConstraint("points <> 0", name="ck_loyalty_ledger_points_non_zero"),
    )
    op.create_index("ix_loyalty_ledger_entries_customer_id", "loyalty_ledger_entries", ["customer_id"])
    op.create_index("ix_loyalty_ledger_entries_order_id", "loyalty_ledger_entries", ["order_id"])
    op.create_index("ix_loyalty_ledger_entries_created_at", "loyalty_ledger_entries", ["created_at"])


def downgrade() -> None:
    op.drop_index("ix_loyalty_ledger_entries_created_at", table_name="loyalty_ledger_entries")
    op.drop_index("ix_loyalty_ledger_entries_order_id", table_name="loyalty_ledger_entries")
    op.drop_index("ix_loyalty_ledger_entries_customer_id", table_name="loyalty_ledger_entries")
    op.drop_table("loyalty_ledger_entries")
    op.drop_index("ix_user_coupons_customer_id", table_name="user_coupons")
    op.drop_table("user_coupons")
    op.drop_index("ix_order_state_events_order_id", table_name="order_state_events")
    op.drop_table("order_state_events")
    op.drop_table("order_items")
    op.drop_index("ix_orders_paid_at", table_name="orders")
    op.drop_index("ix_orders_user_coupon_id", table_name="orders")
    op.drop_index("ix_orders_customer_id", table_name="orders")
    op.drop_table("orders")
    op.drop_index("ix_coupons_code", table_name="coupons")
    op.drop_table("coupons")
    op.drop_index("ix_customer_profiles_referral_code", table_name="customer_profiles")
    op.drop_index("ix_customer_profiles_email", table_name="customer_profiles")
    op.drop_table("customer_profiles")
    op.drop_table("loyalty_redemption_rules")
    op.drop_table("loyalty_settings")
    op.drop_table("loyalty_tiers")

    bind = op.get_bind()
    for enum_type in (entry_reason, operation_type, actor_type, state_axis, delivery_status, payment_status):
        enum_type.drop(bind, checkfirst=True)
