import uuid
from decimal import Decimal
from typing import Any

from sqlalchemy import JSON, BigInteger, Boolean, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ridefare.database import Base
from ridefare.models.common import Money, now_ms


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        Index("idx_orders_user_status", "user_id", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # ride | delivery | shopping
    order_type: Mapped[str] = mapped_column(String(20), nullable=False, default="ride", index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    provider_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    # requested | accepted | in_progress | trip_ended | completed | cancelled | expired
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="requested", index=True)
    # pending | paid | failed | refunded
    payment_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    schedule_type: Mapped[str] = mapped_column(String(20), nullable=False, default="instant")
    currency: Mapped[str] = mapped_column(String(5), nullable=False, default="USD")

    original_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    surged_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    discounted_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    payment_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    total_discount_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    platform_fee: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    cancellation_fee: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    promo_discount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))

    promo_codes: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    user_promotion_ids: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    applied_rule_ids: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    fare_breakdown: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    quote_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    scheduled_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    accepted_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    started_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    ended_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    completed_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    cancelled_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    expired_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    cancelled_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Dispatch bookkeeping
    dispatch_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    current_round: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_rounds: Mapped[int] = mapped_column(Integer, nullable=False, default=4)
    dispatch_started_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    last_dispatched_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    auto_dispatch_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    dispatch_strategy: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    next_strategy: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    extra: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False, default=now_ms)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False, default=now_ms)


class RideOrderDetail(Base):
    __tablename__ = "ride_orders"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)

    vehicle_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    vehicle_category: Mapped[str | None] = mapped_column(String(32), nullable=True)
    vehicle_level: Mapped[str | None] = mapped_column(String(32), nullable=True)
    passenger_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    pickup_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    pickup_latitude: Mapped[Decimal | None] = mapped_column(Numeric(10, 8), nullable=True)
    pickup_longitude: Mapped[Decimal | None] = mapped_column(Numeric(11, 8), nullable=True)
    pickup_landmark: Mapped[str | None] = mapped_column(String(255), nullable=True)
    dropoff_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    dropoff_latitude: Mapped[Decimal | None] = mapped_column(Numeric(10, 8), nullable=True)
    dropoff_longitude: Mapped[Decimal | None] = mapped_column(Numeric(11, 8), nullable=True)
    dropoff_landmark: Mapped[str | None] = mapped_column(String(255), nullable=True)

    estimated_distance: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    estimated_duration: Mapped[int | None] = mapped_column(Integer, nullable=True)
    actual_distance: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    actual_duration: Mapped[int | None] = mapped_column(Integer, nullable=True)

    base_fare: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    distance_fare: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    time_fare: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    surge_fare: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    total_fare: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))

    driver_en_route_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    arrived_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    route_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False, default=now_ms)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False, default=now_ms, onupdate=now_ms)
