"""
Rule catalog: an immutable, indexed snapshot of persisted price rules.

One writer rebuilds the snapshot (on TTL expiry or after ``invalidate``) under
an asyncio lock; readers take whatever snapshot reference is current and never
wait on a reload in progress. A failed reload keeps the last good snapshot;
only a failed first load surfaces as ``CatalogUnavailableError``.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from pydantic import ValidationError as SchemaError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ridefare.config import get_settings
from ridefare.database import AsyncSessionLocal, TRANSIENT_ERRORS, bounded, db_retry
from ridefare.errors import CatalogUnavailableError
from ridefare.models.price_rule import PriceRule
from ridefare.redis_client import CacheFacade
from ridefare.schemas.pricing import PricingContext
from ridefare.schemas.rules import Rule, RuleCategory, RuleStatus
from ridefare.services.eligibility import EligibilityResult, filter_eligible, sort_key

logger = logging.getLogger(__name__)
settings = get_settings()


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CatalogSnapshot:
    rules: Mapping[str, Rule]
    by_exact_code: Mapping[str, tuple[Rule, ...]]
    by_folded_code: Mapping[str, tuple[Rule, ...]]
    by_category: Mapping[RuleCategory, tuple[Rule, ...]]
    invalid_rules: Mapping[str, str] = field(default_factory=dict)
    warnings: tuple[str, ...] = ()
    loaded_at: float = 0.0

    @classmethod
    def build(
        cls,
        rules: Iterable[Rule],
        invalid_rules: Optional[Mapping[str, str]] = None,
        warnings: Iterable[str] = (),
        loaded_at: float = 0.0,
    ) -> "CatalogSnapshot":
        ordered = sorted(rules, key=sort_key)
        exact: dict[str, list[Rule]] = {}
        folded: dict[str, list[Rule]] = {}
        by_category: dict[RuleCategory, list[Rule]] = {}
        for rule in ordered:
            by_category.setdefault(rule.category, []).append(rule)
            if not rule.promo_code:
                continue
            if rule.case_sensitive:
                exact.setdefault(rule.promo_code, []).append(rule)
            else:
                folded.setdefault(rule.promo_code.casefold(), []).append(rule)
        freeze = lambda d: MappingProxyType({k: tuple(v) for k, v in d.items()})
        return cls(
            rules=MappingProxyType({r.rule_id: r for r in ordered}),
            by_exact_code=freeze(exact),
            by_folded_code=freeze(folded),
            by_category=freeze(by_category),
            invalid_rules=MappingProxyType(dict(invalid_rules or {})),
            warnings=tuple(warnings),
            loaded_at=loaded_at,
        )

    def get(self, rule_id: str) -> Optional[Rule]:
        return self.rules.get(rule_id)

    def by_code(self, code: str, case_sensitive: bool) -> list[Rule]:
        if case_sensitive:
            return list(self.by_exact_code.get(code, ()))
        return list(self.by_folded_code.get(code.casefold(), ()))

    def in_category(self, category: RuleCategory) -> list[Rule]:
        return list(self.by_category.get(category, ()))


def project_rows(rows: Iterable[PriceRule], loaded_at: float = 0.0) -> CatalogSnapshot:
    """Project ORM rows, skipping rules that break an invariant."""
    rules: list[Rule] = []
    invalid: dict[str, str] = {}
    warnings: list[str] = []
    for row in rows:
        try:
            rule = Rule.from_model(row)
        except SchemaError as exc:
            invalid[row.rule_id] = str(exc)
            logger.error("Internal: rule %s failed to load: %s", row.rule_id, exc)
            continue
        errors = rule.invariant_errors()
        if errors:
            invalid[rule.rule_id] = "; ".join(errors)
            logger.error("Internal: rule %s skipped: %s", rule.rule_id, "; ".join(errors))
            continue
        for slot in rule.invalid_time_slots:
            warnings.append(f"InvalidTimeSlot:{rule.rule_id}")
            logger.warning(
                "InvalidTimeSlot on rule %s: %02d:%02d-%02d:%02d never matches",
                rule.rule_id, slot.start_hour, slot.start_minute, slot.end_hour, slot.end_minute,
            )
        rules.append(rule)
    return CatalogSnapshot.build(rules, invalid, warnings, loaded_at)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

class RuleCatalog:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
        cache: Optional[CacheFacade] = None,
        ttl_seconds: float = settings.catalog_ttl_seconds,
    ) -> None:
        self.session_factory = session_factory
        self.cache = cache or CacheFacade(None)
        self.ttl_seconds = ttl_seconds
        self._snapshot: Optional[CatalogSnapshot] = None
        self._stale = True
        self._lock = asyncio.Lock()

    @db_retry
    async def _fetch_rows(self) -> list[PriceRule]:
        async with self.session_factory() as db:
            result = await bounded(
                db.execute(select(PriceRule).where(PriceRule.status != RuleStatus.deleted.value))
            )
            return list(result.scalars().all())

    async def load(self, force: bool = True) -> CatalogSnapshot:
        """
        Rebuild the snapshot under the writer lock. With ``force=False`` a
        snapshot refreshed by another task while this one waited is reused.
        """
        async with self._lock:
            if not force and self._snapshot is not None and not self._expired():
                return self._snapshot
            try:
                rows = await self._fetch_rows()
            except (SQLAlchemyError, *TRANSIENT_ERRORS) as exc:
                if self._snapshot is None:
                    logger.error("Initial catalog load failed: %s", exc)
                    raise CatalogUnavailableError() from exc
                logger.warning("Catalog reload failed, keeping snapshot: %s", exc)
                self._snapshot = replace(self._snapshot, loaded_at=time.monotonic())
                self._stale = False
                return self._snapshot
            snapshot = project_rows(rows, loaded_at=time.monotonic())
            self._snapshot = snapshot
            self._stale = False
            logger.info(
                "Catalog loaded: %d rules, %d invalid", len(snapshot.rules), len(snapshot.invalid_rules)
            )
            return snapshot

    def _expired(self) -> bool:
        return self._stale or time.monotonic() - self._snapshot.loaded_at > self.ttl_seconds

    async def snapshot(self) -> CatalogSnapshot:
        if self._snapshot is None:
            return await self.load(force=False)
        # Readers keep the current snapshot while another task reloads
        if self._expired() and not self._lock.locked():
            return await self.load(force=False)
        return self._snapshot

    async def invalidate(self, rule_id: Optional[str] = None) -> None:
        self._stale = True
        if rule_id:
            await self.cache.invalidate(self.cache.price_rule_key(rule_id))

    async def get_by_id(self, rule_id: str) -> Optional[Rule]:
        snapshot = await self.snapshot()
        rule = snapshot.get(rule_id)
        if rule is not None:
            return rule

        async def load() -> Optional[str]:
            async with self.session_factory() as db:
                result = await bounded(db.execute(select(PriceRule).where(PriceRule.rule_id == rule_id)))
                row = result.scalar_one_or_none()
            return Rule.from_model(row).model_dump_json() if row is not None else None

        raw = await self.cache.get_or_load(
            self.cache.price_rule_key(rule_id), load, settings.price_rule_cache_ttl_seconds
        )
        return Rule.model_validate_json(raw) if raw else None

    async def get_by_promo_code(self, code: str, case_sensitive: bool) -> list[Rule]:
        snapshot = await self.snapshot()
        return snapshot.by_code(code, case_sensitive)

    async def list_applicable(
        self,
        ctx: PricingContext,
        *,
        user_usage: Optional[Mapping[str, int]] = None,
        matched_code_rule_ids: frozenset[str] = frozenset(),
    ) -> EligibilityResult:
        snapshot = await self.snapshot()
        return filter_eligible(
            snapshot.rules.values(),
            ctx,
            user_usage=user_usage,
            matched_code_rule_ids=matched_code_rule_ids,
        )
