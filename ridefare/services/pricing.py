"""
Quote pipeline.

Flow:
  1. Resolve promo codes against the catalog snapshot
  2. Estimate the original amount from the base rule (for min-order checks)
  3. Filter eligible rules
  4. Combine into an application plan
  5. Evaluate the plan into a fare breakdown

``price_snapshot`` is pure: the same snapshot, context and usage map always
give the same plan and breakdown.
"""
import logging
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional

from ridefare.schemas.pricing import FareBreakdown, PricingContext
from ridefare.schemas.rules import Rule, RuleCategory
from ridefare.services.calculator import calculate_fare, evaluate_base, q6
from ridefare.services.catalog import CatalogSnapshot, RuleCatalog
from ridefare.services.combiner import ApplicationPlan, CombinationResult, combine, select_base
from ridefare.services.eligibility import EligibilityResult, filter_eligible
from ridefare.services.promo import PromoResolution, resolve_codes
from ridefare.services.usage import UsageAccountant

logger = logging.getLogger(__name__)


@dataclass
class PricingResult:
    context: PricingContext
    promo: PromoResolution
    eligibility: EligibilityResult
    combination: CombinationResult
    breakdown: FareBreakdown
    excluded_rule_ids: frozenset[str] = field(default_factory=frozenset)

    @property
    def plan(self) -> ApplicationPlan:
        return self.combination.plan


def estimate_original(rules: Iterable[Rule], ctx: PricingContext, user_usage: Mapping[str, int]):
    bases = [r for r in rules if r.category == RuleCategory.base_pricing]
    eligible = filter_eligible(bases, ctx, user_usage=user_usage).eligible
    base, _ = select_base(eligible)
    return q6(evaluate_base(base, ctx).total)


def price_snapshot(
    snapshot: CatalogSnapshot,
    ctx: PricingContext,
    *,
    user_usage: Optional[Mapping[str, int]] = None,
    exclude_rule_ids: Iterable[str] = (),
) -> PricingResult:
    excluded = frozenset(exclude_rule_ids)
    usage = user_usage or {}
    promo = resolve_codes(ctx.promo_codes, snapshot)
    rules = [r for r in snapshot.rules.values() if r.rule_id not in excluded]

    if ctx.original_amount is None:
        ctx = ctx.model_copy(update={"original_amount": estimate_original(rules, ctx, usage)})

    eligibility = filter_eligible(
        rules, ctx, user_usage=usage, matched_code_rule_ids=promo.matched_rule_ids
    )
    combination = combine(eligibility.eligible, code_rule_ids=promo.matched_rule_ids)
    warnings = list(combination.warnings) + [f"UnmatchedCode:{code}" for code in promo.unmatched]
    breakdown = calculate_fare(combination.plan, ctx, warnings=warnings)
    return PricingResult(
        context=ctx,
        promo=promo,
        eligibility=eligibility,
        combination=combination,
        breakdown=breakdown,
        excluded_rule_ids=excluded,
    )


class PricingEngine:
    def __init__(self, catalog: RuleCatalog, usage: UsageAccountant) -> None:
        self.catalog = catalog
        self.usage = usage

    async def price(self, ctx: PricingContext, exclude_rule_ids: Iterable[str] = ()) -> PricingResult:
        snapshot = await self.catalog.snapshot()
        capped = [r.rule_id for r in snapshot.rules.values() if r.max_usage_per_user is not None]
        user_usage = await self.usage.user_usage(ctx.user_id, capped)
        return price_snapshot(snapshot, ctx, user_usage=user_usage, exclude_rule_ids=exclude_rule_ids)
