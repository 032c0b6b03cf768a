"""
Rule combiner: eligible rules to an ordered application plan.

  1. Partition by category.
  2. Base pricing: exactly one rule (smallest priority, then narrowest
     scope, then most recently updated, then rule_id). None -> NoBasePricing.
  3. Surge pricing: every admissible rule, in priority order.
  4. Discounts: code-matched rules first, then auto-applied ones, each
     admitted only if compatible with everything already admitted. The
     admitted set is applied in priority order.
"""
import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from ridefare.schemas.pricing import DroppedRule
from ridefare.schemas.rules import Rule, RuleCategory
from ridefare.services.eligibility import sort_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApplicationPlan:
    base: Optional[Rule] = None
    surges: tuple[Rule, ...] = ()
    discounts: tuple[Rule, ...] = ()

    @property
    def rules(self) -> list[Rule]:
        return ([self.base] if self.base else []) + list(self.surges) + list(self.discounts)

    @property
    def rule_ids(self) -> list[str]:
        return [r.rule_id for r in self.rules]

    def without(self, rule_id: str) -> "ApplicationPlan":
        return ApplicationPlan(
            base=None if self.base and self.base.rule_id == rule_id else self.base,
            surges=tuple(r for r in self.surges if r.rule_id != rule_id),
            discounts=tuple(r for r in self.discounts if r.rule_id != rule_id),
        )


@dataclass
class CombinationResult:
    plan: ApplicationPlan
    dropped: list[DroppedRule] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Base selection
# ---------------------------------------------------------------------------

def _scope_narrowness(rule: Rule) -> tuple[int, ...]:
    """Larger tuple = narrower scope: vehicle, then area, then user segment."""
    filters = rule.vehicle_filters
    vehicle = (
        (1, max(f.concrete_fields for f in filters), -len(filters)) if filters else (0, 0, 0)
    )
    area = (1, -len(rule.service_areas)) if rule.service_areas else (0, 0)
    segment = (1, -len(rule.user_categories)) if rule.user_categories else (0, 0)
    return vehicle + area + segment


def base_precedence(rule: Rule) -> tuple:
    narrow = tuple(-x for x in _scope_narrowness(rule))
    return (rule.priority, narrow, -rule.updated_at, rule.rule_id)


def select_base(rules: Iterable[Rule]) -> tuple[Optional[Rule], list[Rule]]:
    ordered = sorted(rules, key=base_precedence)
    if not ordered:
        return None, []
    return ordered[0], ordered[1:]


# ---------------------------------------------------------------------------
# Compatibility
# ---------------------------------------------------------------------------

def excludes(a: Rule, b: Rule) -> bool:
    return b.rule_id in a.exclusive_rules or a.rule_id in b.exclusive_rules


def stackable(a: Rule, b: Rule, *, same_gate: bool = True) -> bool:
    """
    Explicit whitelist on either side, or implicit stacking when neither rule
    declares a whitelist and both share a category. Implicit stacking never
    joins a code-matched rule with an auto-applied one.
    """
    if b.rule_id in a.stackable_rules or a.rule_id in b.stackable_rules:
        return True
    return (
        not a.stackable_rules
        and not b.stackable_rules
        and a.category == b.category
        and same_gate
    )


# ---------------------------------------------------------------------------
# Combine
# ---------------------------------------------------------------------------

def combine(eligible: Iterable[Rule], *, code_rule_ids: frozenset[str] = frozenset()) -> CombinationResult:
    rules = sorted(eligible, key=sort_key)
    dropped: list[DroppedRule] = []
    warnings: list[str] = []

    bases = [r for r in rules if r.category == RuleCategory.base_pricing]
    surges = [r for r in rules if r.category == RuleCategory.surge_pricing]
    discounts = [r for r in rules if r.is_discount]

    # Base
    base, shadowed = select_base(bases)
    if base is None:
        warnings.append("NoBasePricing")
    for rule in shadowed:
        dropped.append(DroppedRule(rule_id=rule.rule_id, reason=f"ShadowedBaseRule:{base.rule_id}"))

    # Surges
    admitted_surges: list[Rule] = []
    for rule in surges:
        if rule.surge_product <= 0:
            warnings.append(f"InvalidMultiplier:{rule.rule_id}")
            dropped.append(DroppedRule(rule_id=rule.rule_id, reason="InvalidMultiplier"))
            logger.warning("Surge rule %s has non-positive multiplier %s", rule.rule_id, rule.surge_product)
            continue
        blocker = next((a for a in admitted_surges if excludes(a, rule)), None)
        if blocker:
            dropped.append(DroppedRule(rule_id=rule.rule_id, reason=f"ExcludedBy:{blocker.rule_id}"))
            continue
        admitted_surges.append(rule)

    # Discounts: code-matched first, then auto-applied
    coded = [r for r in discounts if r.rule_id in code_rule_ids]
    auto = [r for r in discounts if r.rule_id not in code_rule_ids]
    admitted: list[Rule] = []
    for rule in coded + auto:
        is_coded = rule.rule_id in code_rule_ids
        reason = None
        for other in admitted:
            other_coded = other.rule_id in code_rule_ids
            superseded = other_coded and not is_coded
            if excludes(other, rule):
                reason = f"SupersededByCode:{other.rule_id}" if superseded else f"ExcludedBy:{other.rule_id}"
                break
            if not stackable(other, rule, same_gate=other_coded == is_coded):
                reason = f"SupersededByCode:{other.rule_id}" if superseded else f"NotStackableWith:{other.rule_id}"
                break
        if reason:
            logger.debug("Discount rule %s dropped: %s", rule.rule_id, reason)
            dropped.append(DroppedRule(rule_id=rule.rule_id, reason=reason))
            continue
        admitted.append(rule)

    # Admission is code-first; application is by priority
    plan = ApplicationPlan(
        base=base, surges=tuple(admitted_surges), discounts=tuple(sorted(admitted, key=sort_key))
    )
    return CombinationResult(plan=plan, dropped=dropped, warnings=warnings)
