"""
Promo code resolution: user-supplied strings to at most one rule per code.
"""
import logging
from dataclasses import dataclass, field
from typing import Iterable

from ridefare.config import get_settings
from ridefare.errors import ValidationError
from ridefare.schemas.rules import Rule, RuleStatus
from ridefare.services.catalog import CatalogSnapshot
from ridefare.services.eligibility import sort_key

logger = logging.getLogger(__name__)
settings = get_settings()


@dataclass
class PromoResolution:
    matched: dict[str, Rule] = field(default_factory=dict)
    unmatched: list[str] = field(default_factory=list)

    @property
    def matched_rule_ids(self) -> frozenset[str]:
        return frozenset(rule.rule_id for rule in self.matched.values())


def normalize_code(raw: str) -> str:
    code = raw.strip()
    if not code:
        raise ValidationError("Promo code is empty", code="INVALID_PROMO_CODE")
    if len(code) > settings.max_promo_code_length:
        raise ValidationError(
            f"Promo code longer than {settings.max_promo_code_length} characters",
            code="INVALID_PROMO_CODE",
        )
    if not code.isprintable():
        raise ValidationError("Promo code contains non-printable characters", code="INVALID_PROMO_CODE")
    return code


def _best(candidates: Iterable[Rule]) -> Rule | None:
    active = [r for r in candidates if r.status == RuleStatus.active]
    return min(active, key=sort_key) if active else None


def resolve_codes(codes: Iterable[str], snapshot: CatalogSnapshot) -> PromoResolution:
    """
    Case-sensitive rules are searched by exact match first, then
    case-insensitive rules by casefolded match. Several rules sharing a code
    resolve to the smallest (priority, rule_id).
    """
    resolution = PromoResolution()
    seen: set[str] = set()
    for raw in codes:
        code = normalize_code(raw)
        if code in seen:
            continue
        seen.add(code)
        rule = _best(snapshot.by_exact_code.get(code, ())) or _best(
            snapshot.by_folded_code.get(code.casefold(), ())
        )
        if rule is None:
            logger.info("Promo code %r did not match any active rule", code)
            resolution.unmatched.append(code)
        else:
            resolution.matched[code] = rule
    return resolution
