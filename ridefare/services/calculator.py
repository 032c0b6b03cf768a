"""
Fare calculation.

Evaluates an application plan in Decimal arithmetic:
  base (+ per-km + per-minute, or tier bands) -> clamp
  -> surge multipliers -> discounts -> platform fee.
Intermediates keep 6 decimal places; amounts are rounded half-even to 2
places only when the breakdown is produced.
"""
import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_EVEN, Decimal, localcontext
from typing import Optional

from ridefare.schemas.pricing import AppliedRule, FareBreakdown, PricingContext
from ridefare.schemas.rules import DiscountType, PricingModel, Rule, RuleType, TierBand
from ridefare.services.combiner import ApplicationPlan

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")
SCALE = Decimal("0.000001")
CENT = Decimal("0.01")


def q6(value: Decimal) -> Decimal:
    return value.quantize(SCALE, rounding=ROUND_HALF_EVEN)


def q2(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_EVEN)


def clamp(value: Decimal, lower: Optional[Decimal], upper: Optional[Decimal]) -> Decimal:
    if lower is not None and value < lower:
        value = lower
    if upper is not None and value > upper:
        value = upper
    return value


# ---------------------------------------------------------------------------
# Base fare
# ---------------------------------------------------------------------------

@dataclass
class BaseFare:
    base: Decimal = ZERO
    distance: Decimal = ZERO
    time: Decimal = ZERO

    @property
    def total(self) -> Decimal:
        return self.base + self.distance + self.time


def tiered_sum(bands: tuple[TierBand, ...], scalar: Decimal) -> Decimal:
    """Piecewise sum: rate bands pay per unit of overlap, amount bands pay once entered."""
    total = ZERO
    for band in bands:
        if band.rate is not None:
            total += band.rate * band.overlap(scalar)
        elif scalar > band.lower:
            total += band.amount
    return total


def evaluate_base(rule: Optional[Rule], ctx: PricingContext) -> BaseFare:
    if rule is None:
        return BaseFare()
    distance_km = ctx.estimated_distance_km
    duration_min = ctx.estimated_duration_min

    fare = BaseFare(base=rule.base_rate)
    if rule.rule_type == RuleType.tiered and rule.tiered_rules:
        if rule.pricing_model == PricingModel.time_based:
            fare.time = tiered_sum(rule.tiered_rules, duration_min)
        else:
            fare.distance = tiered_sum(rule.tiered_rules, distance_km)
    elif rule.pricing_model != PricingModel.fixed_rate:
        fare.distance = rule.per_km_rate * distance_km
        fare.time = rule.per_minute_rate * duration_min

    total = fare.total
    clamped = clamp(total, rule.minimum_fare, rule.maximum_fare)
    # Keep base + distance + time equal to the clamped amount
    fare.base += clamped - total
    fare.base, fare.distance, fare.time = q6(fare.base), q6(fare.distance), q6(fare.time)
    return fare


# ---------------------------------------------------------------------------
# Discounts
# ---------------------------------------------------------------------------

def _discount_kind(rule: Rule) -> Optional[str]:
    if rule.rule_type in (RuleType.percentage, RuleType.fixed_amount, RuleType.tiered):
        return rule.rule_type.value
    if rule.discount_type == DiscountType.percentage:
        return RuleType.percentage.value
    if rule.discount_type == DiscountType.fixed:
        return RuleType.fixed_amount.value
    return None


def tier_lookup(bands: tuple[TierBand, ...], scalar: Decimal) -> Optional[TierBand]:
    last = len(bands) - 1
    for i, band in enumerate(bands):
        if band.contains(scalar, last=i == last):
            return band
    return None


def discount_amount(
    rule: Rule, *, original: Decimal, surged: Decimal, running: Decimal, warnings: list[str]
) -> Optional[Decimal]:
    """Raw discount for one rule, or None when the rule cannot be evaluated."""
    kind = _discount_kind(rule)
    if kind == RuleType.percentage.value:
        basis = original if rule.apply_on_original else surged
        d = basis * rule.discount_percent / HUNDRED
    elif kind == RuleType.fixed_amount.value:
        return min(rule.discount_amount, running)
    elif kind == RuleType.tiered.value:
        band = tier_lookup(rule.tiered_rules, surged)
        if band is None:
            warnings.append(f"NoMatchingTier:{rule.rule_id}")
            return None
        d = band.amount if band.amount is not None else surged * band.rate / HUNDRED
    else:
        warnings.append(f"UnsupportedRuleType:{rule.rule_id}")
        logger.warning("Discount rule %s has unsupported type %s", rule.rule_id, rule.rule_type.value)
        return None
    if rule.max_discount is not None:
        d = min(d, rule.max_discount)
    return d


# ---------------------------------------------------------------------------
# Full evaluation
# ---------------------------------------------------------------------------

def calculate_fare(
    plan: ApplicationPlan,
    ctx: PricingContext,
    platform_fee: Optional[Decimal] = None,
    warnings: Optional[list[str]] = None,
) -> FareBreakdown:
    warnings = list(warnings or [])
    fee = ctx.platform_fee if platform_fee is None else platform_fee
    applied: list[AppliedRule] = []

    with localcontext() as dctx:
        dctx.prec = 28
        dctx.rounding = ROUND_HALF_EVEN

        # 1-3. base
        base = evaluate_base(plan.base, ctx)
        original = q6(base.total)
        if plan.base is not None:
            applied.append(AppliedRule(rule_id=plan.base.rule_id, category=plan.base.category, amount=q2(original)))

        # 4-5. surge
        amount = original
        for rule in plan.surges:
            before = amount
            amount = clamp(q6(amount * rule.surge_product), None, rule.maximum_fare)
            applied.append(AppliedRule(rule_id=rule.rule_id, category=rule.category, amount=q2(amount - before)))
        surged = amount

        # 6-7. discounts
        running = surged
        discount_total = ZERO
        for rule in plan.discounts:
            d = discount_amount(rule, original=original, surged=surged, running=running, warnings=warnings)
            if d is None:
                continue
            d = q2(min(max(d, ZERO), running))
            running = max(ZERO, running - d)
            discount_total += d
            applied.append(AppliedRule(rule_id=rule.rule_id, category=rule.category, amount=d))

        # 8-9. reporting
        surged_r = q2(surged)
        discounted_r = max(ZERO, surged_r - discount_total)
        fee_r = q2(fee)
        payment = max(ZERO, discounted_r + fee_r)

    breakdown = FareBreakdown(
        currency=ctx.currency,
        original_amount=q2(original),
        surged_amount=surged_r,
        total_discount=q2(discount_total),
        platform_fee=fee_r,
        discounted_amount=q2(discounted_r),
        payment_amount=q2(payment),
        base_fare=q2(base.base),
        distance_fare=q2(base.distance),
        time_fare=q2(base.time),
        surge_fare=q2(surged - original),
        applied_rules=applied,
        warnings=warnings,
    )
    logger.info(
        "Fare for user=%s: original=%s surged=%s discount=%s payment=%s rules=%s",
        ctx.user_id, breakdown.original_amount, breakdown.surged_amount,
        breakdown.total_discount, breakdown.payment_amount, breakdown.applied_rule_ids,
    )
    return breakdown
