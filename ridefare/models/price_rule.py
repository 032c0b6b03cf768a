import uuid
from decimal import Decimal
from typing import Any

from sqlalchemy import JSON, BigInteger, Boolean, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ridefare.database import Base
from ridefare.models.common import Factor, Money, Rate, now_ms


class PriceRule(Base):
    """Persisted price rule. NULL means "not set"; defaults resolve in schemas.rules.Rule."""

    __tablename__ = "price_rules"
    __table_args__ = (
        Index("idx_price_rules_category_status", "category", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    rule_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    rule_name: Mapped[str] = mapped_column(String(255), nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    tags: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    approved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    approved_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    approval_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    extra: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)

    # base_pricing | surge_pricing | discount | promotion | special_offer
    category: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    # percentage | fixed_amount | multiplier | tiered | custom
    rule_type: Mapped[str] = mapped_column(String(32), nullable=False)
    # distance_based | time_based | fixed_rate | dynamic
    pricing_model: Mapped[str | None] = mapped_column(String(32), nullable=True)
    # percentage | fixed | buy_x_get_y | free_delivery
    discount_type: Mapped[str | None] = mapped_column(String(32), nullable=True)

    # Scope
    vehicle_filters: Mapped[list[dict] | None] = mapped_column(JSON, nullable=True)
    service_areas: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    user_categories: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    applicable_rides: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    day_of_week: Mapped[str | None] = mapped_column(String(16), nullable=True)
    time_slots: Mapped[list[dict] | None] = mapped_column(JSON, nullable=True)
    excluded_dates: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    included_dates: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    started_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    ended_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    timezone: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Pricing numerics
    base_rate: Mapped[Decimal | None] = mapped_column(Rate, nullable=True)
    per_km_rate: Mapped[Decimal | None] = mapped_column(Rate, nullable=True)
    per_minute_rate: Mapped[Decimal | None] = mapped_column(Rate, nullable=True)
    minimum_fare: Mapped[Decimal | None] = mapped_column(Rate, nullable=True)
    maximum_fare: Mapped[Decimal | None] = mapped_column(Rate, nullable=True)
    discount_amount: Mapped[Decimal | None] = mapped_column(Rate, nullable=True)
    discount_percent: Mapped[Decimal | None] = mapped_column(Factor, nullable=True)
    surge_multiplier: Mapped[Decimal | None] = mapped_column(Factor, nullable=True)
    max_discount: Mapped[Decimal | None] = mapped_column(Rate, nullable=True)
    min_order_amount: Mapped[Decimal | None] = mapped_column(Rate, nullable=True)
    tiered_rules: Mapped[list[dict] | None] = mapped_column(JSON, nullable=True)
    demand_factor: Mapped[Decimal | None] = mapped_column(Factor, nullable=True)
    supply_factor: Mapped[Decimal | None] = mapped_column(Factor, nullable=True)
    weather_factor: Mapped[Decimal | None] = mapped_column(Factor, nullable=True)
    event_factor: Mapped[Decimal | None] = mapped_column(Factor, nullable=True)
    apply_on_original: Mapped[bool | None] = mapped_column(Boolean, nullable=True)

    # Limits
    max_usage_per_user: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_usage_per_day: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_usage_total: Mapped[int | None] = mapped_column(Integer, nullable=True)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    usage_today: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    usage_day: Mapped[str | None] = mapped_column(String(10), nullable=True)
    min_distance: Mapped[Decimal | None] = mapped_column(Rate, nullable=True)
    max_distance: Mapped[Decimal | None] = mapped_column(Rate, nullable=True)
    min_duration: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_duration: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Combination
    priority: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    stackable_rules: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    exclusive_rules: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)

    # Code gating
    requires_code: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    promo_code: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    case_sensitive: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    auto_apply: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_global: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # draft | active | paused | expired | deleted
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft", index=True)

    # Statistics
    revenue_impact: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    cost_saved: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))

    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False, default=now_ms)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False, default=now_ms)
