"""
Price rule administration.

    draft -> active (approval) -> paused <-> active -> expired -> deleted

Writes validate the merged rule with the same invariant checks the catalog
applies at load time, bump ``version`` and ``updated_at``, and signal the
catalog to rebuild its snapshot.
"""
import logging
import uuid
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel
from pydantic import ValidationError as SchemaError
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ridefare.database import AsyncSessionLocal, bounded, db_retry
from ridefare.errors import NotFoundError, ValidationError
from ridefare.models.common import now_ms
from ridefare.models.price_rule import PriceRule
from ridefare.schemas.rules import Rule, RuleCreate, RulePatch, RuleResponse, RuleStatus
from ridefare.services.catalog import RuleCatalog

logger = logging.getLogger(__name__)

R = RuleStatus

RULE_TRANSITIONS: dict[R, set[R]] = {
    R.draft: {R.active, R.deleted},
    R.active: {R.paused, R.expired, R.deleted},
    R.paused: {R.active, R.expired, R.deleted},
    R.expired: {R.deleted},
    R.deleted: set(),
}

# Columns stored as JSON; nested models and decimals go in as JSON-safe values
JSON_FIELDS = {
    "tags",
    "vehicle_filters",
    "service_areas",
    "user_categories",
    "applicable_rides",
    "time_slots",
    "excluded_dates",
    "included_dates",
    "tiered_rules",
    "stackable_rules",
    "exclusive_rules",
}


def _column_values(payload: BaseModel) -> dict[str, Any]:
    values = payload.model_dump(exclude_unset=True)
    json_keys = JSON_FIELDS & values.keys()
    if json_keys:
        values.update(payload.model_dump(mode="json", exclude_unset=True, include=json_keys))
    return {k: v.value if isinstance(v, Enum) else v for k, v in values.items()}


def validate_rule(rule: Any) -> Rule:
    """Project and check a rule row; raises ValidationError listing every problem."""
    try:
        projected = Rule.from_model(rule)
    except SchemaError as exc:
        raise ValidationError("Rule is malformed", code="INVALID_RULE", details={"errors": exc.errors()}) from exc
    errors = projected.invariant_errors()
    if projected.invalid_time_slots:
        errors.append("InvalidTimeSlot: time slot ends before it starts")
    if errors:
        raise ValidationError("Rule violates invariants", code="INVALID_RULE", details={"errors": errors})
    return projected


class RuleService:
    def __init__(
        self,
        catalog: RuleCatalog,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
    ) -> None:
        self.catalog = catalog
        self.session_factory = session_factory

    async def _load(self, db: AsyncSession, rule_id: str) -> PriceRule:
        result = await bounded(db.execute(select(PriceRule).where(PriceRule.rule_id == rule_id)))
        row = result.scalar_one_or_none()
        if row is None or row.status == R.deleted.value:
            raise NotFoundError("Rule", rule_id)
        return row

    @db_retry
    async def get_rule(self, rule_id: str) -> RuleResponse:
        async with self.session_factory() as db:
            return RuleResponse.from_model(await self._load(db, rule_id))

    @db_retry
    async def list_rules(
        self,
        status: Optional[RuleStatus] = None,
        category: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[RuleResponse]:
        query = select(PriceRule).where(PriceRule.status != R.deleted.value)
        if status is not None:
            query = query.where(PriceRule.status == status.value)
        if category is not None:
            query = query.where(PriceRule.category == category)
        query = query.order_by(PriceRule.priority, PriceRule.rule_id).limit(limit).offset(offset)
        async with self.session_factory() as db:
            result = await bounded(db.execute(query))
            return [RuleResponse.from_model(row) for row in result.scalars().all()]

    async def create_rule(self, payload: RuleCreate, created_by: Optional[str] = None) -> RuleResponse:
        values = _column_values(payload)
        now = now_ms()
        row = PriceRule(
            **{**values, "rule_id": values.get("rule_id") or f"rule_{uuid.uuid4().hex[:16]}"},
            version=1,
            status=R.draft.value,
            created_by=created_by,
            usage_count=0,
            usage_today=0,
            created_at=now,
            updated_at=now,
        )
        validate_rule(row)
        async with self.session_factory() as db:
            existing = await bounded(db.execute(select(PriceRule.id).where(PriceRule.rule_id == row.rule_id)))
            if existing.scalar_one_or_none() is not None:
                raise ValidationError(f"Rule {row.rule_id} already exists", code="DUPLICATE_RULE")
            db.add(row)
            await bounded(db.commit())
            await db.refresh(row)
            logger.info("Rule %s created as draft by %s", row.rule_id, created_by)
            return RuleResponse.from_model(row)

    async def patch_rule(self, rule_id: str, patch: RulePatch) -> RuleResponse:
        values = _column_values(patch)
        if not values:
            return await self.get_rule(rule_id)
        async with self.session_factory() as db:
            row = await self._load(db, rule_id)
            for name, value in values.items():
                setattr(row, name, value)
            validate_rule(row)
            row.version += 1
            row.updated_at = now_ms()
            await bounded(db.commit())
            await db.refresh(row)
            response = RuleResponse.from_model(row)
        await self.catalog.invalidate(rule_id)
        logger.info("Rule %s patched (%s) -> v%d", rule_id, ", ".join(sorted(values)), response.version)
        return response

    async def _transition(self, rule_id: str, target: RuleStatus, **fields: Any) -> RuleResponse:
        async with self.session_factory() as db:
            row = await self._load(db, rule_id)
            current = R(row.status)
            if target == current:
                return RuleResponse.from_model(row)
            if target not in RULE_TRANSITIONS[current]:
                raise ValidationError(
                    f"Rule {rule_id} cannot move from {current.value} to {target.value}",
                    code="INVALID_TRANSITION",
                    details={"from": current.value, "to": target.value},
                )
            if target == R.active:
                validate_rule(row)
            row.status = target.value
            for name, value in fields.items():
                setattr(row, name, value)
            row.version += 1
            row.updated_at = now_ms()
            await bounded(db.commit())
            await db.refresh(row)
            response = RuleResponse.from_model(row)
        await self.catalog.invalidate(rule_id)
        logger.info("Rule %s %s -> %s", rule_id, current.value, target.value)
        return response

    async def approve(self, rule_id: str, approved_by: str, notes: Optional[str] = None) -> RuleResponse:
        return await self._transition(
            rule_id, R.active, approved_by=approved_by, approved_at=now_ms(), approval_notes=notes
        )

    async def pause(self, rule_id: str) -> RuleResponse:
        return await self._transition(rule_id, R.paused)

    async def resume(self, rule_id: str) -> RuleResponse:
        async with self.session_factory() as db:
            row = await self._load(db, rule_id)
        if row.status != R.paused.value:
            raise ValidationError(f"Rule {rule_id} is not paused", code="INVALID_TRANSITION")
        return await self._transition(rule_id, R.active)

    async def expire(self, rule_id: str) -> RuleResponse:
        return await self._transition(rule_id, R.expired)

    async def delete(self, rule_id: str) -> RuleResponse:
        return await self._transition(rule_id, R.deleted)

    async def expire_due(self, at_ms: Optional[int] = None) -> int:
        """Persist ``expired`` for live rules past ``ended_at`` or out of total usage."""
        now = at_ms if at_ms is not None else now_ms()
        async with self.session_factory() as db:
            result = await bounded(
                db.execute(
                    update(PriceRule)
                    .where(PriceRule.status.in_([R.active.value, R.paused.value]))
                    .where(
                        or_(
                            PriceRule.ended_at < now,
                            PriceRule.usage_count >= PriceRule.max_usage_total,
                        )
                    )
                    .values(status=R.expired.value, version=PriceRule.version + 1, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
            )
            await bounded(db.commit())
        count = result.rowcount or 0
        if count:
            await self.catalog.invalidate()
            logger.info("Expired %d rules", count)
        return count
