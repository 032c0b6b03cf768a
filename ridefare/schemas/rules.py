"""
Price rule schemas.

``Rule`` is the immutable projection the engine works on. It is built from a
``PriceRule`` row by ``Rule.from_model``, which is the only place optional
columns are resolved to their defaults (priority 100, factors 1.0, empty
scopes, UTC timezone). ``RuleCreate`` / ``RulePatch`` are the admin inputs.
"""
from datetime import time
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RuleCategory(str, Enum):
    base_pricing = "base_pricing"
    surge_pricing = "surge_pricing"
    discount = "discount"
    promotion = "promotion"
    special_offer = "special_offer"


DISCOUNT_CATEGORIES = frozenset(
    {RuleCategory.discount, RuleCategory.promotion, RuleCategory.special_offer}
)


class RuleType(str, Enum):
    percentage = "percentage"
    fixed_amount = "fixed_amount"
    multiplier = "multiplier"
    tiered = "tiered"
    custom = "custom"


class PricingModel(str, Enum):
    distance_based = "distance_based"
    time_based = "time_based"
    fixed_rate = "fixed_rate"
    dynamic = "dynamic"


class DiscountType(str, Enum):
    percentage = "percentage"
    fixed = "fixed"
    buy_x_get_y = "buy_x_get_y"
    free_delivery = "free_delivery"


class RuleStatus(str, Enum):
    draft = "draft"
    active = "active"
    paused = "paused"
    expired = "expired"
    deleted = "deleted"


CANCELLATION_FEE_TAG = "cancellation_fee"
WILDCARD = "*"

# ---------------------------------------------------------------------------
# Scope value objects
# ---------------------------------------------------------------------------


def _is_wildcard(value: Optional[str]) -> bool:
    return value is None or value == "" or value == WILDCARD


class VehicleFilter(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: str = WILDCARD
    level: str = WILDCARD

    def matches(self, category: Optional[str], level: Optional[str]) -> bool:
        return (_is_wildcard(self.category) or self.category == category) and (
            _is_wildcard(self.level) or self.level == level
        )

    @property
    def concrete_fields(self) -> int:
        return int(not _is_wildcard(self.category)) + int(not _is_wildcard(self.level))


class TimeSlot(BaseModel):
    """Same-day window, closed on both ends."""

    model_config = ConfigDict(frozen=True)

    start_hour: int = Field(..., ge=0, le=23)
    start_minute: int = Field(0, ge=0, le=59)
    end_hour: int = Field(..., ge=0, le=23)
    end_minute: int = Field(0, ge=0, le=59)

    @property
    def start(self) -> int:
        return self.start_hour * 60 + self.start_minute

    @property
    def end(self) -> int:
        return self.end_hour * 60 + self.end_minute

    @property
    def is_valid(self) -> bool:
        return self.end >= self.start

    def contains(self, at: time) -> bool:
        minutes = at.hour * 60 + at.minute
        return self.is_valid and self.start <= minutes <= self.end


class TierBand(BaseModel):
    model_config = ConfigDict(frozen=True)

    lower: Decimal = Field(..., ge=0)
    upper: Optional[Decimal] = None   # open-ended when None
    rate: Optional[Decimal] = None
    amount: Optional[Decimal] = None

    @model_validator(mode="after")
    def _one_of_rate_or_amount(self) -> "TierBand":
        if (self.amount is None) == (self.rate is None):
            raise ValueError("tier band needs exactly one of rate or amount")
        return self

    def overlap(self, x: Decimal) -> Decimal:
        top = x if self.upper is None else min(x, self.upper)
        return max(Decimal("0"), top - self.lower)

    def contains(self, x: Decimal, last: bool) -> bool:
        if x < self.lower:
            return False
        if self.upper is None:
            return True
        return x <= self.upper if last else x < self.upper


def tier_layout_error(bands: tuple[TierBand, ...] | list[TierBand]) -> Optional[str]:
    """Return a description of the first ordering/overlap problem, or None."""
    for i, band in enumerate(bands):
        if band.upper is not None and band.upper <= band.lower:
            return f"band {i} has upper <= lower"
        if i == 0:
            continue
        prev = bands[i - 1]
        if prev.upper is None:
            return f"band {i - 1} is open-ended but not last"
        if band.lower < prev.upper:
            return f"band {i} overlaps band {i - 1}"
    return None


# ---------------------------------------------------------------------------
# Domain projection
# ---------------------------------------------------------------------------

_ZERO = Decimal("0")
_ONE = Decimal("1")


class Rule(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule_id: str
    version: int = 1
    rule_name: str
    display_name: Optional[str] = None
    description: Optional[str] = None
    tags: tuple[str, ...] = ()

    category: RuleCategory
    rule_type: RuleType
    pricing_model: PricingModel = PricingModel.distance_based
    discount_type: Optional[DiscountType] = None

    vehicle_filters: tuple[VehicleFilter, ...] = ()
    service_areas: tuple[str, ...] = ()
    user_categories: tuple[str, ...] = ()
    applicable_rides: tuple[str, ...] = ()
    day_of_week: Optional[str] = None
    time_slots: tuple[TimeSlot, ...] = ()
    excluded_dates: tuple[str, ...] = ()
    included_dates: tuple[str, ...] = ()
    started_at: Optional[int] = None
    ended_at: Optional[int] = None
    timezone: str = "UTC"

    base_rate: Decimal = _ZERO
    per_km_rate: Decimal = _ZERO
    per_minute_rate: Decimal = _ZERO
    minimum_fare: Optional[Decimal] = None
    maximum_fare: Optional[Decimal] = None
    discount_amount: Decimal = _ZERO
    discount_percent: Decimal = _ZERO
    surge_multiplier: Decimal = _ONE
    max_discount: Optional[Decimal] = None
    min_order_amount: Optional[Decimal] = None
    tiered_rules: tuple[TierBand, ...] = ()
    demand_factor: Decimal = _ONE
    supply_factor: Decimal = _ONE
    weather_factor: Decimal = _ONE
    event_factor: Decimal = _ONE
    apply_on_original: bool = False

    max_usage_per_user: Optional[int] = None
    max_usage_per_day: Optional[int] = None
    max_usage_total: Optional[int] = None
    usage_count: int = 0
    usage_today: int = 0
    usage_day: Optional[str] = None
    min_distance: Optional[Decimal] = None
    max_distance: Optional[Decimal] = None
    min_duration: Optional[int] = None
    max_duration: Optional[int] = None

    priority: int = 100
    stackable_rules: tuple[str, ...] = ()
    exclusive_rules: tuple[str, ...] = ()

    requires_code: bool = False
    promo_code: Optional[str] = None
    case_sensitive: bool = False
    auto_apply: bool = False
    is_global: bool = False

    status: RuleStatus = RuleStatus.draft
    created_at: int = 0
    updated_at: int = 0

    @classmethod
    def from_model(cls, row: Any) -> "Rule":
        """Project an ORM row, dropping NULLs so field defaults apply."""
        data: dict[str, Any] = {}
        for name in cls.model_fields:
            value = getattr(row, name, None)
            if value is None:
                continue
            if isinstance(value, list):
                value = tuple(value)
            data[name] = value
        return cls.model_validate(data)

    @property
    def is_discount(self) -> bool:
        return self.category in DISCOUNT_CATEGORIES

    @property
    def is_cancellation_fee(self) -> bool:
        return CANCELLATION_FEE_TAG in self.tags

    @property
    def surge_product(self) -> Decimal:
        return (
            self.surge_multiplier
            * self.demand_factor
            * self.supply_factor
            * self.weather_factor
            * self.event_factor
        )

    @property
    def invalid_time_slots(self) -> list[TimeSlot]:
        return [slot for slot in self.time_slots if not slot.is_valid]

    def usage_today_on(self, day: str) -> int:
        """Daily counter as seen on ``day``; a stale day means the counter has rolled over."""
        return self.usage_today if self.usage_day == day else 0

    def invariant_errors(self) -> list[str]:
        return rule_invariant_errors(self)


def rule_invariant_errors(rule: Any) -> list[str]:
    """Cross-field checks shared by admin writes and catalog load."""
    errors: list[str] = []
    if rule.minimum_fare is not None and rule.maximum_fare is not None and rule.minimum_fare > rule.maximum_fare:
        errors.append("minimum_fare exceeds maximum_fare")
    if rule.started_at is not None and rule.ended_at is not None and rule.ended_at < rule.started_at:
        errors.append("ended_at precedes started_at")
    if rule.requires_code and not rule.promo_code:
        errors.append("requires_code set without promo_code")
    if rule.requires_code and rule.auto_apply:
        errors.append("auto_apply and requires_code are mutually exclusive")
    if rule.tiered_rules:
        layout = tier_layout_error(list(rule.tiered_rules))
        if layout:
            errors.append(f"tiered_rules: {layout}")
    return errors


# ---------------------------------------------------------------------------
# Admin inputs / outputs
# ---------------------------------------------------------------------------


class _RuleFields(BaseModel):
    rule_name: Optional[str] = Field(None, min_length=1, max_length=255)
    display_name: Optional[str] = None
    description: Optional[str] = None
    tags: Optional[list[str]] = None
    notes: Optional[str] = None

    category: Optional[RuleCategory] = None
    rule_type: Optional[RuleType] = None
    pricing_model: Optional[PricingModel] = None
    discount_type: Optional[DiscountType] = None

    vehicle_filters: Optional[list[VehicleFilter]] = None
    service_areas: Optional[list[str]] = None
    user_categories: Optional[list[str]] = None
    applicable_rides: Optional[list[str]] = None
    day_of_week: Optional[str] = Field(None, pattern=r"^[1-7]*$")
    time_slots: Optional[list[TimeSlot]] = None
    excluded_dates: Optional[list[str]] = None
    included_dates: Optional[list[str]] = None
    started_at: Optional[int] = None
    ended_at: Optional[int] = None
    timezone: Optional[str] = None

    base_rate: Optional[Decimal] = Field(None, ge=0)
    per_km_rate: Optional[Decimal] = Field(None, ge=0)
    per_minute_rate: Optional[Decimal] = Field(None, ge=0)
    minimum_fare: Optional[Decimal] = Field(None, ge=0)
    maximum_fare: Optional[Decimal] = Field(None, ge=0)
    discount_amount: Optional[Decimal] = Field(None, ge=0)
    discount_percent: Optional[Decimal] = Field(None, ge=0, le=100)
    surge_multiplier: Optional[Decimal] = None
    max_discount: Optional[Decimal] = Field(None, ge=0)
    min_order_amount: Optional[Decimal] = Field(None, ge=0)
    tiered_rules: Optional[list[TierBand]] = None
    demand_factor: Optional[Decimal] = None
    supply_factor: Optional[Decimal] = None
    weather_factor: Optional[Decimal] = None
    event_factor: Optional[Decimal] = None
    apply_on_original: Optional[bool] = None

    max_usage_per_user: Optional[int] = Field(None, ge=0)
    max_usage_per_day: Optional[int] = Field(None, ge=0)
    max_usage_total: Optional[int] = Field(None, ge=0)
    min_distance: Optional[Decimal] = Field(None, ge=0)
    max_distance: Optional[Decimal] = Field(None, ge=0)
    min_duration: Optional[int] = Field(None, ge=0)
    max_duration: Optional[int] = Field(None, ge=0)

    priority: Optional[int] = None
    stackable_rules: Optional[list[str]] = None
    exclusive_rules: Optional[list[str]] = None

    requires_code: Optional[bool] = None
    promo_code: Optional[str] = Field(None, max_length=50)
    case_sensitive: Optional[bool] = None
    auto_apply: Optional[bool] = None
    is_global: Optional[bool] = None


class RuleCreate(_RuleFields):
    rule_id: Optional[str] = Field(None, max_length=64)
    rule_name: str = Field(..., min_length=1, max_length=255)
    category: RuleCategory
    rule_type: RuleType


class RulePatch(_RuleFields):
    """Partial update; only fields present in the payload are applied."""


class RuleApproval(BaseModel):
    approval_notes: Optional[str] = None


class RuleResponse(Rule):
    revenue_impact: Decimal = _ZERO
    cost_saved: Decimal = _ZERO
    approved_by: Optional[str] = None
    approved_at: Optional[int] = None
