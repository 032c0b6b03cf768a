from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from ridefare.models.common import now_ms
from ridefare.schemas.rules import RuleCategory

# ---------------------------------------------------------------------------
# Pricing context
# ---------------------------------------------------------------------------


class PricingContext(BaseModel):
    """Everything a rule predicate may look at for one prospective order."""

    user_id: str
    user_segments: list[str] = Field(default_factory=list)
    order_type: str = "ride"
    vehicle_category: Optional[str] = None
    vehicle_level: Optional[str] = None
    service_area_id: Optional[str] = None
    now_ms: int = Field(default_factory=now_ms, ge=0)
    local_day_of_week: Optional[int] = Field(None, ge=1, le=7)
    local_time: Optional[time] = None
    local_date: Optional[date] = None
    estimated_distance_km: Decimal = Field(Decimal("0"), ge=0)
    estimated_duration_min: Decimal = Field(Decimal("0"), ge=0)
    original_amount: Optional[Decimal] = Field(None, ge=0)
    currency: str = "USD"
    promo_codes: list[str] = Field(default_factory=list)
    platform_fee: Decimal = Field(Decimal("0"), ge=0)

    @model_validator(mode="after")
    def _derive_local_fields(self) -> "PricingContext":
        # Local calendar fields default to the UTC reading of now_ms
        moment = datetime.fromtimestamp(self.now_ms / 1000, tz=timezone.utc)
        if self.local_date is None:
            self.local_date = moment.date()
        if self.local_day_of_week is None:
            self.local_day_of_week = self.local_date.isoweekday()
        if self.local_time is None:
            self.local_time = moment.time().replace(second=0, microsecond=0)
        return self

    @property
    def utc_day(self) -> str:
        return datetime.fromtimestamp(self.now_ms / 1000, tz=timezone.utc).date().isoformat()


# ---------------------------------------------------------------------------
# Breakdown
# ---------------------------------------------------------------------------


class AppliedRule(BaseModel):
    rule_id: str
    category: RuleCategory
    amount: Decimal


class RuleRejection(BaseModel):
    rule_id: str
    reason: str
    detail: Optional[str] = None


class DroppedRule(BaseModel):
    rule_id: str
    reason: str


class FareBreakdown(BaseModel):
    currency: str = "USD"
    original_amount: Decimal
    surged_amount: Decimal
    total_discount: Decimal
    platform_fee: Decimal
    discounted_amount: Decimal
    payment_amount: Decimal
    base_fare: Decimal = Decimal("0.00")
    distance_fare: Decimal = Decimal("0.00")
    time_fare: Decimal = Decimal("0.00")
    surge_fare: Decimal = Decimal("0.00")
    applied_rules: list[AppliedRule] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @property
    def applied_rule_ids(self) -> list[str]:
        return [r.rule_id for r in self.applied_rules]


# ---------------------------------------------------------------------------
# Quote API
# ---------------------------------------------------------------------------


class QuoteRequest(BaseModel):
    user_segments: list[str] = Field(default_factory=list)
    order_type: str = "ride"
    vehicle_category: Optional[str] = None
    vehicle_level: Optional[str] = None
    service_area_id: Optional[str] = None
    at_ms: Optional[int] = Field(None, ge=0)
    local_day_of_week: Optional[int] = Field(None, ge=1, le=7)
    local_time: Optional[time] = None
    local_date: Optional[date] = None
    estimated_distance_km: Decimal = Field(..., ge=0)
    estimated_duration_min: Decimal = Field(..., ge=0)
    currency: Optional[str] = None
    promo_codes: list[str] = Field(default_factory=list)
    platform_fee: Optional[Decimal] = Field(None, ge=0)


class QuoteResponse(BaseModel):
    quote_id: str
    expires_at: int
    breakdown: FareBreakdown
    unmatched_codes: list[str] = Field(default_factory=list)
    dropped_rules: list[DroppedRule] = Field(default_factory=list)
