from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from ridefare.schemas.pricing import FareBreakdown


class OrderStatusEnum(str, Enum):
    requested = "requested"
    accepted = "accepted"
    in_progress = "in_progress"
    trip_ended = "trip_ended"
    completed = "completed"
    cancelled = "cancelled"
    expired = "expired"


class PaymentStatusEnum(str, Enum):
    pending = "pending"
    paid = "paid"
    failed = "failed"
    refunded = "refunded"


class OrderTypeEnum(str, Enum):
    ride = "ride"
    delivery = "delivery"
    shopping = "shopping"


class Location(BaseModel):
    address: Optional[str] = None
    lat: Optional[Decimal] = Field(None, ge=-90, le=90)
    lng: Optional[Decimal] = Field(None, ge=-180, le=180)
    landmark: Optional[str] = None


class RideDetailIn(BaseModel):
    vehicle_category: Optional[str] = None
    vehicle_level: Optional[str] = None
    passenger_count: int = Field(1, ge=1, le=12)
    pickup: Location = Field(default_factory=Location)
    dropoff: Location = Field(default_factory=Location)
    estimated_distance: Optional[Decimal] = Field(None, ge=0)
    estimated_duration: Optional[int] = Field(None, ge=0)


class OrderCreateRequest(BaseModel):
    order_type: OrderTypeEnum = OrderTypeEnum.ride
    currency: Optional[str] = None
    scheduled_at: Optional[int] = None
    expires_in_seconds: Optional[int] = Field(None, gt=0)
    ride: Optional[RideDetailIn] = None
    notes: Optional[str] = None


class OrderPatch(BaseModel):
    """Partial order update; only fields present are written."""

    status: Optional[OrderStatusEnum] = None
    payment_status: Optional[PaymentStatusEnum] = None
    provider_id: Optional[str] = None
    original_amount: Optional[Decimal] = None
    surged_amount: Optional[Decimal] = None
    discounted_amount: Optional[Decimal] = None
    payment_amount: Optional[Decimal] = None
    total_discount_amount: Optional[Decimal] = None
    platform_fee: Optional[Decimal] = None
    cancellation_fee: Optional[Decimal] = None
    promo_discount: Optional[Decimal] = None
    promo_codes: Optional[list[str]] = None
    user_promotion_ids: Optional[list[str]] = None
    applied_rule_ids: Optional[list[str]] = None
    fare_breakdown: Optional[dict[str, Any]] = None
    quote_id: Optional[str] = None
    accepted_at: Optional[int] = None
    started_at: Optional[int] = None
    ended_at: Optional[int] = None
    completed_at: Optional[int] = None
    cancelled_at: Optional[int] = None
    expired_at: Optional[int] = None
    cancelled_by: Optional[str] = None
    cancel_reason: Optional[str] = None
    notes: Optional[str] = None


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    order_id: str
    version: int
    order_type: str
    user_id: str
    provider_id: Optional[str] = None
    status: OrderStatusEnum
    payment_status: PaymentStatusEnum
    currency: str
    original_amount: Decimal
    surged_amount: Decimal
    discounted_amount: Decimal
    payment_amount: Decimal
    total_discount_amount: Decimal
    platform_fee: Decimal
    cancellation_fee: Decimal
    promo_discount: Decimal
    promo_codes: Optional[list[str]] = None
    applied_rule_ids: Optional[list[str]] = None
    quote_id: Optional[str] = None
    fare_breakdown: Optional[FareBreakdown] = None
    accepted_at: Optional[int] = None
    started_at: Optional[int] = None
    ended_at: Optional[int] = None
    completed_at: Optional[int] = None
    cancelled_at: Optional[int] = None
    expired_at: Optional[int] = None
    cancelled_by: Optional[str] = None
    cancel_reason: Optional[str] = None
    created_at: int
    updated_at: int


class AttachQuoteRequest(BaseModel):
    quote_id: str


class CancelOrderRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)
