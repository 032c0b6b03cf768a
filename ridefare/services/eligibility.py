"""
Eligibility filter.

Checks, in order, every scope predicate a rule declares against one pricing
context. The first failing predicate rejects the rule with a structured
reason. Nothing here raises on rule data; a rule either passes or is reported.
"""
import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping, Optional

from ridefare.schemas.pricing import PricingContext, RuleRejection
from ridefare.schemas.rules import Rule, RuleStatus

logger = logging.getLogger(__name__)


@dataclass
class EligibilityResult:
    eligible: list[Rule] = field(default_factory=list)
    rejected: list[RuleRejection] = field(default_factory=list)

    @property
    def eligible_ids(self) -> list[str]:
        return [r.rule_id for r in self.eligible]


def sort_key(rule: Rule) -> tuple[int, str]:
    return rule.priority, rule.rule_id


# ---------------------------------------------------------------------------
# Predicates: each returns None when satisfied, else (reason, detail)
# ---------------------------------------------------------------------------

Check = Optional[tuple[str, Optional[str]]]


def _status(rule: Rule, ctx: PricingContext) -> Check:
    if rule.status != RuleStatus.active:
        return "NotActive", rule.status.value
    return None


def _window(rule: Rule, ctx: PricingContext) -> Check:
    if rule.started_at is not None and ctx.now_ms < rule.started_at:
        return "NotStarted", str(rule.started_at)
    if rule.ended_at is not None and ctx.now_ms > rule.ended_at:
        return "Ended", str(rule.ended_at)
    return None


def _day_of_week(rule: Rule, ctx: PricingContext) -> Check:
    if rule.day_of_week and str(ctx.local_day_of_week) not in rule.day_of_week:
        return "DayOfWeek", f"{ctx.local_day_of_week} not in {rule.day_of_week}"
    return None


def _time_slot(rule: Rule, ctx: PricingContext) -> Check:
    if rule.time_slots and not any(slot.contains(ctx.local_time) for slot in rule.time_slots):
        return "TimeSlot", ctx.local_time.strftime("%H:%M")
    return None


def _dates(rule: Rule, ctx: PricingContext) -> Check:
    today = ctx.local_date.isoformat()
    if today in rule.excluded_dates:
        return "ExcludedDate", today
    if rule.included_dates and today not in rule.included_dates:
        return "NotIncludedDate", today
    return None


def _vehicle(rule: Rule, ctx: PricingContext) -> Check:
    if rule.vehicle_filters and not any(
        f.matches(ctx.vehicle_category, ctx.vehicle_level) for f in rule.vehicle_filters
    ):
        return "Vehicle", f"{ctx.vehicle_category}/{ctx.vehicle_level}"
    return None


def _service_area(rule: Rule, ctx: PricingContext) -> Check:
    if rule.service_areas and ctx.service_area_id not in rule.service_areas:
        return "ServiceArea", ctx.service_area_id
    return None


def _user_segment(rule: Rule, ctx: PricingContext) -> Check:
    if rule.user_categories and not set(ctx.user_segments) & set(rule.user_categories):
        return "UserSegment", ",".join(ctx.user_segments)
    return None


def _order_type(rule: Rule, ctx: PricingContext) -> Check:
    if rule.applicable_rides and ctx.order_type not in rule.applicable_rides:
        return "OrderType", ctx.order_type
    return None


def _bounds(rule: Rule, ctx: PricingContext) -> Check:
    d = ctx.estimated_distance_km
    if (rule.min_distance is not None and d < rule.min_distance) or (
        rule.max_distance is not None and d > rule.max_distance
    ):
        return "Distance", str(d)
    m = ctx.estimated_duration_min
    if (rule.min_duration is not None and m < rule.min_duration) or (
        rule.max_duration is not None and m > rule.max_duration
    ):
        return "Duration", str(m)
    return None


def _min_order(rule: Rule, ctx: PricingContext) -> Check:
    # original_amount is unknown until the base fare is estimated
    if rule.min_order_amount is not None and ctx.original_amount is not None:
        if ctx.original_amount < rule.min_order_amount:
            return "MinOrderAmount", str(ctx.original_amount)
    return None


PREDICATES: tuple[Callable[[Rule, PricingContext], Check], ...] = (
    _status,
    _window,
    _day_of_week,
    _time_slot,
    _dates,
    _vehicle,
    _service_area,
    _user_segment,
    _order_type,
    _bounds,
    _min_order,
)


def _usage(rule: Rule, ctx: PricingContext, user_usage: Mapping[str, int]) -> Check:
    if rule.max_usage_total is not None and rule.usage_count >= rule.max_usage_total:
        return "UsageTotal", f"{rule.usage_count}/{rule.max_usage_total}"
    today = rule.usage_today_on(ctx.utc_day)
    if rule.max_usage_per_day is not None and today >= rule.max_usage_per_day:
        return "UsageDaily", f"{today}/{rule.max_usage_per_day}"
    used = user_usage.get(rule.rule_id, 0)
    if rule.max_usage_per_user is not None and used >= rule.max_usage_per_user:
        return "UsagePerUser", f"{used}/{rule.max_usage_per_user}"
    return None


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def check_rule(
    rule: Rule,
    ctx: PricingContext,
    *,
    user_usage: Mapping[str, int],
    matched_code_rule_ids: frozenset[str] | set[str],
) -> Optional[RuleRejection]:
    """Return the first failing predicate for ``rule``, or None if eligible."""
    if rule.is_cancellation_fee:
        return RuleRejection(rule_id=rule.rule_id, reason="CancellationFeeRule")
    for predicate in PREDICATES:
        failed = predicate(rule, ctx)
        if failed:
            return RuleRejection(rule_id=rule.rule_id, reason=failed[0], detail=failed[1])
    failed = _usage(rule, ctx, user_usage)
    if failed:
        return RuleRejection(rule_id=rule.rule_id, reason=failed[0], detail=failed[1])
    if rule.requires_code and rule.rule_id not in matched_code_rule_ids:
        return RuleRejection(rule_id=rule.rule_id, reason="CodeRequired", detail=rule.promo_code)
    return None


def filter_eligible(
    rules: Iterable[Rule],
    ctx: PricingContext,
    *,
    user_usage: Optional[Mapping[str, int]] = None,
    matched_code_rule_ids: frozenset[str] | set[str] = frozenset(),
) -> EligibilityResult:
    result = EligibilityResult()
    usage = user_usage or {}
    for rule in sorted(rules, key=sort_key):
        rejection = check_rule(rule, ctx, user_usage=usage, matched_code_rule_ids=matched_code_rule_ids)
        if rejection is None:
            result.eligible.append(rule)
        else:
            logger.debug("Rule %s rejected: %s (%s)", rule.rule_id, rejection.reason, rejection.detail)
            result.rejected.append(rejection)
    return result
