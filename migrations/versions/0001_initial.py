"""Initial schema: price rules, orders, ride orders, usage, quotes, messages"""
from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None

MONEY = sa.Numeric(20, 6)
RATE = sa.Numeric(10, 2)
FACTOR = sa.Numeric(8, 2)


def upgrade() -> None:
    op.create_table(
        "price_rules",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("rule_id", sa.String(64), unique=True, nullable=False),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("rule_name", sa.String(255), nullable=False),
        sa.Column("display_name", sa.String(255), nullable=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("tags", sa.JSON, nullable=True),
        sa.Column("created_by", sa.String(64), nullable=True),
        sa.Column("approved_by", sa.String(64), nullable=True),
        sa.Column("approved_at", sa.BigInteger, nullable=True),
        sa.Column("approval_notes", sa.Text, nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("metadata", sa.JSON, nullable=True),
        sa.Column("category", sa.String(32), nullable=False),
        sa.Column("rule_type", sa.String(32), nullable=False),
        sa.Column("pricing_model", sa.String(32), nullable=True),
        sa.Column("discount_type", sa.String(32), nullable=True),
        sa.Column("vehicle_filters", sa.JSON, nullable=True),
        sa.Column("service_areas", sa.JSON, nullable=True),
        sa.Column("user_categories", sa.JSON, nullable=True),
        sa.Column("applicable_rides", sa.JSON, nullable=True),
        sa.Column("day_of_week", sa.String(16), nullable=True),
        sa.Column("time_slots", sa.JSON, nullable=True),
        sa.Column("excluded_dates", sa.JSON, nullable=True),
        sa.Column("included_dates", sa.JSON, nullable=True),
        sa.Column("started_at", sa.BigInteger, nullable=True),
        sa.Column("ended_at", sa.BigInteger, nullable=True),
        sa.Column("timezone", sa.String(64), nullable=True),
        sa.Column("base_rate", RATE, nullable=True),
        sa.Column("per_km_rate", RATE, nullable=True),
        sa.Column("per_minute_rate", RATE, nullable=True),
        sa.Column("minimum_fare", RATE, nullable=True),
        sa.Column("maximum_fare", RATE, nullable=True),
        sa.Column("discount_amount", RATE, nullable=True),
        sa.Column("discount_percent", FACTOR, nullable=True),
        sa.Column("surge_multiplier", FACTOR, nullable=True),
        sa.Column("max_discount", RATE, nullable=True),
        sa.Column("min_order_amount", RATE, nullable=True),
        sa.Column("tiered_rules", sa.JSON, nullable=True),
        sa.Column("demand_factor", FACTOR, nullable=True),
        sa.Column("supply_factor", FACTOR, nullable=True),
        sa.Column("weather_factor", FACTOR, nullable=True),
        sa.Column("event_factor", FACTOR, nullable=True),
        sa.Column("apply_on_original", sa.Boolean, nullable=True),
        sa.Column("max_usage_per_user", sa.Integer, nullable=True),
        sa.Column("max_usage_per_day", sa.Integer, nullable=True),
        sa.Column("max_usage_total", sa.Integer, nullable=True),
        sa.Column("usage_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("usage_today", sa.Integer, nullable=False, server_default="0"),
        sa.Column("usage_day", sa.String(10), nullable=True),
        sa.Column("min_distance", RATE, nullable=True),
        sa.Column("max_distance", RATE, nullable=True),
        sa.Column("min_duration", sa.Integer, nullable=True),
        sa.Column("max_duration", sa.Integer, nullable=True),
        sa.Column("priority", sa.Integer, nullable=True),
        sa.Column("stackable_rules", sa.JSON, nullable=True),
        sa.Column("exclusive_rules", sa.JSON, nullable=True),
        sa.Column("requires_code", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("promo_code", sa.String(64), nullable=True),
        sa.Column("case_sensitive", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("auto_apply", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_global", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("status", sa.String(16), nullable=False, server_default="draft"),
        sa.Column("revenue_impact", MONEY, nullable=False, server_default="0"),
        sa.Column("cost_saved", MONEY, nullable=False, server_default="0"),
        sa.Column("created_at", sa.BigInteger, nullable=False),
        sa.Column("updated_at", sa.BigInteger, nullable=False),
    )
    op.create_index("idx_price_rules_category_status", "price_rules", ["category", "status"])
    op.create_index("idx_price_rules_status", "price_rules", ["status"])
    op.create_index("idx_price_rules_priority", "price_rules", ["priority"])
    op.create_index("idx_price_rules_promo_code", "price_rules", ["promo_code"])

    op.create_table(
        "orders",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("order_id", sa.String(64), unique=True, nullable=False),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("order_type", sa.String(20), nullable=False, server_default="ride"),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("provider_id", sa.String(64), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="requested"),
        sa.Column("payment_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("schedule_type", sa.String(20), nullable=False, server_default="instant"),
        sa.Column("currency", sa.String(5), nullable=False, server_default="USD"),
        sa.Column("original_amount", MONEY, nullable=False, server_default="0"),
        sa.Column("surged_amount", MONEY, nullable=False, server_default="0"),
        sa.Column("discounted_amount", MONEY, nullable=False, server_default="0"),
        sa.Column("payment_amount", MONEY, nullable=False, server_default="0"),
        sa.Column("total_discount_amount", MONEY, nullable=False, server_default="0"),
        sa.Column("platform_fee", MONEY, nullable=False, server_default="0"),
        sa.Column("cancellation_fee", MONEY, nullable=False, server_default="0"),
        sa.Column("promo_discount", MONEY, nullable=False, server_default="0"),
        sa.Column("promo_codes", sa.JSON, nullable=True),
        sa.Column("user_promotion_ids", sa.JSON, nullable=True),
        sa.Column("applied_rule_ids", sa.JSON, nullable=True),
        sa.Column("fare_breakdown", sa.JSON, nullable=True),
        sa.Column("quote_id", sa.String(64), nullable=True),
        sa.Column("scheduled_at", sa.BigInteger, nullable=True),
        sa.Column("accepted_at", sa.BigInteger, nullable=True),
        sa.Column("started_at", sa.BigInteger, nullable=True),
        sa.Column("ended_at", sa.BigInteger, nullable=True),
        sa.Column("completed_at", sa.BigInteger, nullable=True),
        sa.Column("cancelled_at", sa.BigInteger, nullable=True),
        sa.Column("expired_at", sa.BigInteger, nullable=True),
        sa.Column("cancelled_by", sa.String(64), nullable=True),
        sa.Column("cancel_reason", sa.Text, nullable=True),
        sa.Column("dispatch_status", sa.String(20), nullable=True),
        sa.Column("current_round", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_rounds", sa.Integer, nullable=False, server_default="4"),
        sa.Column("dispatch_started_at", sa.BigInteger, nullable=True),
        sa.Column("last_dispatched_at", sa.BigInteger, nullable=True),
        sa.Column("auto_dispatch_enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("dispatch_strategy", sa.JSON, nullable=True),
        sa.Column("next_strategy", sa.JSON, nullable=True),
        sa.Column("metadata", sa.JSON, nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("created_at", sa.BigInteger, nullable=False),
        sa.Column("updated_at", sa.BigInteger, nullable=False),
    )
    op.create_index("idx_orders_user", "orders", ["user_id"])
    op.create_index("idx_orders_status", "orders", ["status"])
    op.create_index("idx_orders_payment_status", "orders", ["payment_status"])
    op.create_index("idx_orders_order_type", "orders", ["order_type"])
    op.create_index("idx_orders_user_status", "orders", ["user_id", "status"])

    op.create_table(
        "ride_orders",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("order_id", sa.String(64), unique=True, nullable=False),
        sa.Column("vehicle_id", sa.String(64), nullable=True),
        sa.Column("vehicle_category", sa.String(32), nullable=True),
        sa.Column("vehicle_level", sa.String(32), nullable=True),
        sa.Column("passenger_count", sa.Integer, nullable=False, server_default="1"),
        sa.Column("pickup_address", sa.Text, nullable=True),
        sa.Column("pickup_latitude", sa.Numeric(10, 8), nullable=True),
        sa.Column("pickup_longitude", sa.Numeric(11, 8), nullable=True),
        sa.Column("pickup_landmark", sa.String(255), nullable=True),
        sa.Column("dropoff_address", sa.Text, nullable=True),
        sa.Column("dropoff_latitude", sa.Numeric(10, 8), nullable=True),
        sa.Column("dropoff_longitude", sa.Numeric(11, 8), nullable=True),
        sa.Column("dropoff_landmark", sa.String(255), nullable=True),
        sa.Column("estimated_distance", sa.Numeric(10, 2), nullable=True),
        sa.Column("estimated_duration", sa.Integer, nullable=True),
        sa.Column("actual_distance", sa.Numeric(10, 2), nullable=True),
        sa.Column("actual_duration", sa.Integer, nullable=True),
        sa.Column("base_fare", MONEY, nullable=False, server_default="0"),
        sa.Column("distance_fare", MONEY, nullable=False, server_default="0"),
        sa.Column("time_fare", MONEY, nullable=False, server_default="0"),
        sa.Column("surge_fare", MONEY, nullable=False, server_default="0"),
        sa.Column("total_fare", MONEY, nullable=False, server_default="0"),
        sa.Column("driver_en_route_at", sa.BigInteger, nullable=True),
        sa.Column("arrived_at", sa.BigInteger, nullable=True),
        sa.Column("route_data", sa.JSON, nullable=True),
        sa.Column("created_at", sa.BigInteger, nullable=False),
        sa.Column("updated_at", sa.BigInteger, nullable=False),
    )

    op.create_table(
        "rule_usage",
        sa.Column("rule_id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(64), primary_key=True),
        sa.Column("day", sa.String(10), primary_key=True),
        sa.Column("usage_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("updated_at", sa.BigInteger, nullable=False),
    )

    op.create_table(
        "usage_reservations",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("rule_id", sa.String(64), nullable=False),
        sa.Column("order_id", sa.String(64), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("quote_id", sa.String(64), nullable=True),
        sa.Column("day", sa.String(10), nullable=False),
        sa.Column("amount", MONEY, nullable=False, server_default="0"),
        sa.Column("status", sa.String(16), nullable=False, server_default="reserved"),
        sa.Column("created_at", sa.BigInteger, nullable=False),
        sa.Column("updated_at", sa.BigInteger, nullable=False),
        sa.UniqueConstraint("rule_id", "order_id", name="uq_usage_reservations_rule_order"),
    )
    op.create_index("idx_usage_reservations_order", "usage_reservations", ["order_id"])
    op.create_index("idx_usage_reservations_status_created", "usage_reservations", ["status", "created_at"])

    op.create_table(
        "price_quotes",
        sa.Column("quote_id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("context", sa.JSON, nullable=False),
        sa.Column("breakdown", sa.JSON, nullable=False),
        sa.Column("applied_rule_ids", sa.JSON, nullable=False),
        sa.Column("order_id", sa.String(64), nullable=True),
        sa.Column("created_at", sa.BigInteger, nullable=False),
        sa.Column("expires_at", sa.BigInteger, nullable=False),
    )
    op.create_index("idx_price_quotes_user", "price_quotes", ["user_id"])
    op.create_index("idx_price_quotes_order", "price_quotes", ["order_id"])

    op.create_table(
        "messages",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("biz_id", sa.String(64), unique=True, nullable=False),
        sa.Column("thread_id", sa.String(64), nullable=True),
        sa.Column("conversation_id", sa.String(64), nullable=True),
        sa.Column("checkpoint_id", sa.String(64), nullable=True),
        sa.Column("step", sa.Integer, nullable=False, server_default="0"),
        sa.Column("role", sa.String(16), nullable=False, server_default="user"),
        sa.Column("content", sa.Text, nullable=True),
        sa.Column("metadata", sa.JSON, nullable=True),
        sa.Column("created_at", sa.BigInteger, nullable=False),
        sa.UniqueConstraint("thread_id", "checkpoint_id", name="uq_messages_thread_checkpoint"),
        sa.UniqueConstraint("conversation_id", "checkpoint_id", name="uq_messages_conversation_checkpoint"),
    )
    op.create_index("idx_messages_conversation_step", "messages", ["conversation_id", "step"])


def downgrade() -> None:
    op.drop_table("messages")
    op.drop_table("price_quotes")
    op.drop_table("usage_reservations")
    op.drop_table("rule_usage")
    op.drop_table("ride_orders")
    op.drop_table("orders")
    op.drop_table("price_rules")
