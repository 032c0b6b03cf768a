"""
Usage accountant.

Quota accounting for applied rules, in three steps per (rule, order):
  reserve  -> compare-and-swap increment of the rule's total/daily counters,
              soft per-user check, upsert of the (rule, user, day) row and a
              ``reserved`` reservation record
  confirm  -> reservation becomes ``confirmed`` (order accepted)
  release  -> counters decremented, reservation ``released`` (cancel/discard)

``reserve``/``confirm``/``release`` run inside the caller's transaction so the
counters move atomically with the order update. Reservations are keyed by
(rule_id, order_id), which makes every step idempotent.
"""
import logging
from decimal import Decimal
from typing import Iterable, Mapping, Optional

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ridefare.config import get_settings
from ridefare.database import AsyncSessionLocal, bounded, db_retry
from ridefare.errors import QuotaExceededError
from ridefare.models.common import now_ms, utc_day
from ridefare.models.price_rule import PriceRule
from ridefare.models.usage import RuleUsage, UsageReservation
from ridefare.schemas.rules import Rule

logger = logging.getLogger(__name__)
settings = get_settings()

RESERVED = "reserved"
CONFIRMED = "confirmed"
RELEASED = "released"


def tracks_usage(rule: Rule) -> bool:
    """Discounts always count usage; other rules only when they declare a cap."""
    return rule.is_discount or any(
        cap is not None
        for cap in (rule.max_usage_total, rule.max_usage_per_day, rule.max_usage_per_user)
    )


class UsageAccountant:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal) -> None:
        self.session_factory = session_factory

    # ---------------------------------------------------------------------------
    # Reads
    # ---------------------------------------------------------------------------

    @db_retry
    async def user_usage(self, user_id: str, rule_ids: Iterable[str]) -> dict[str, int]:
        """Lifetime usage of each rule by one user."""
        ids = list(rule_ids)
        if not ids:
            return {}
        async with self.session_factory() as db:
            result = await bounded(
                db.execute(
                    select(RuleUsage.rule_id, func.sum(RuleUsage.usage_count))
                    .where(RuleUsage.user_id == user_id, RuleUsage.rule_id.in_(ids))
                    .group_by(RuleUsage.rule_id)
                )
            )
            return {rule_id: int(total or 0) for rule_id, total in result.all()}

    async def reservations(self, db: AsyncSession, order_id: str) -> list[UsageReservation]:
        result = await bounded(
            db.execute(
                select(UsageReservation)
                .where(UsageReservation.order_id == order_id)
                .order_by(UsageReservation.rule_id)
            )
        )
        return list(result.scalars().all())

    # ---------------------------------------------------------------------------
    # Reserve
    # ---------------------------------------------------------------------------

    async def _increment_rule(self, db: AsyncSession, rule_id: str, day: str) -> None:
        stmt = (
            update(PriceRule)
            .where(PriceRule.rule_id == rule_id)
            .where(or_(PriceRule.max_usage_total.is_(None), PriceRule.usage_count < PriceRule.max_usage_total))
            .where(
                or_(
                    PriceRule.max_usage_per_day.is_(None),
                    PriceRule.usage_day.is_(None),
                    PriceRule.usage_day != day,
                    PriceRule.usage_today < PriceRule.max_usage_per_day,
                )
            )
            .values(
                usage_count=PriceRule.usage_count + 1,
                usage_today=case((PriceRule.usage_day == day, PriceRule.usage_today + 1), else_=1),
                usage_day=day,
            )
            .execution_options(synchronize_session=False)
        )
        result = await bounded(db.execute(stmt))
        if result.rowcount == 0:
            row = (
                await bounded(
                    db.execute(
                        select(PriceRule)
                        .where(PriceRule.rule_id == rule_id)
                        .execution_options(populate_existing=True)
                    )
                )
            ).scalar_one_or_none()
            counter = "daily"
            if row is None or (row.max_usage_total is not None and row.usage_count >= row.max_usage_total):
                counter = "total"
            raise QuotaExceededError(rule_id, counter)

    async def _check_user_cap(self, db: AsyncSession, rule: Rule, user_id: str) -> None:
        if rule.max_usage_per_user is None:
            return
        used = (
            await bounded(
                db.execute(
                    select(func.coalesce(func.sum(RuleUsage.usage_count), 0)).where(
                        RuleUsage.rule_id == rule.rule_id, RuleUsage.user_id == user_id
                    )
                )
            )
        ).scalar_one()
        if used >= rule.max_usage_per_user:
            raise QuotaExceededError(rule.rule_id, "per_user")

    async def _bump_user_row(self, db: AsyncSession, rule_id: str, user_id: str, day: str) -> None:
        row = await db.get(RuleUsage, (rule_id, user_id, day))
        if row is None:
            db.add(RuleUsage(rule_id=rule_id, user_id=user_id, day=day, usage_count=1))
            await bounded(db.flush())
            return
        await bounded(
            db.execute(
                update(RuleUsage)
                .where(RuleUsage.rule_id == rule_id, RuleUsage.user_id == user_id, RuleUsage.day == day)
                .values(usage_count=RuleUsage.usage_count + 1)
                .execution_options(synchronize_session="fetch")
            )
        )

    async def reserve(
        self,
        db: AsyncSession,
        rules: Iterable[Rule],
        *,
        user_id: str,
        order_id: str,
        quote_id: Optional[str] = None,
        amounts: Optional[Mapping[str, Decimal]] = None,
        at_ms: Optional[int] = None,
    ) -> list[str]:
        """
        Reserve one use of every usage-tracked rule for ``order_id``.

        Raises QuotaExceededError naming the first rule whose cap would be
        exceeded; the caller rolls back the whole transaction.
        Returns the ids newly reserved (already-held reservations are skipped).
        """
        at = at_ms if at_ms is not None else now_ms()
        day = utc_day(at)
        amounts = amounts or {}
        reserved: list[str] = []
        existing = {r.rule_id: r for r in await self.reservations(db, order_id)}

        for rule in sorted(rules, key=lambda r: r.rule_id):
            if not tracks_usage(rule):
                continue
            held = existing.get(rule.rule_id)
            if held is not None and held.status != RELEASED:
                continue

            await self._increment_rule(db, rule.rule_id, day)
            await self._check_user_cap(db, rule, user_id)
            await self._bump_user_row(db, rule.rule_id, user_id, day)

            amount = amounts.get(rule.rule_id, Decimal("0"))
            if held is None:
                db.add(
                    UsageReservation(
                        rule_id=rule.rule_id,
                        order_id=order_id,
                        user_id=user_id,
                        quote_id=quote_id,
                        day=day,
                        amount=amount,
                        status=RESERVED,
                        created_at=at,
                        updated_at=at,
                    )
                )
            else:
                held.status = RESERVED
                held.quote_id = quote_id
                held.day = day
                held.amount = amount
                held.created_at = at
                held.updated_at = at
            reserved.append(rule.rule_id)

        await bounded(db.flush())
        if reserved:
            logger.info("Reserved usage for order=%s rules=%s", order_id, reserved)
        return reserved

    # ---------------------------------------------------------------------------
    # Confirm / release
    # ---------------------------------------------------------------------------

    async def confirm(self, db: AsyncSession, order_id: str) -> list[str]:
        confirmed: list[str] = []
        for res in await self.reservations(db, order_id):
            if res.status != RESERVED:
                continue
            res.status = CONFIRMED
            res.updated_at = now_ms()
            await bounded(
                db.execute(
                    update(PriceRule)
                    .where(PriceRule.rule_id == res.rule_id)
                    .values(cost_saved=PriceRule.cost_saved + res.amount)
                    .execution_options(synchronize_session=False)
                )
            )
            confirmed.append(res.rule_id)
        await bounded(db.flush())
        if confirmed:
            logger.info("Confirmed usage for order=%s rules=%s", order_id, confirmed)
        return confirmed

    async def release(self, db: AsyncSession, order_id: str, rule_ids: Optional[Iterable[str]] = None) -> list[str]:
        """Undo held reservations; released ones are skipped, so repeats are no-ops."""
        wanted = set(rule_ids) if rule_ids is not None else None
        released: list[str] = []
        for res in await self.reservations(db, order_id):
            if res.status == RELEASED or (wanted is not None and res.rule_id not in wanted):
                continue
            await bounded(
                db.execute(
                    update(PriceRule)
                    .where(PriceRule.rule_id == res.rule_id)
                    .values(
                        usage_count=case((PriceRule.usage_count > 0, PriceRule.usage_count - 1), else_=0),
                        usage_today=case(
                            (and_(PriceRule.usage_day == res.day, PriceRule.usage_today > 0), PriceRule.usage_today - 1),
                            else_=PriceRule.usage_today,
                        ),
                        cost_saved=(
                            PriceRule.cost_saved - res.amount if res.status == CONFIRMED else PriceRule.cost_saved
                        ),
                    )
                    .execution_options(synchronize_session=False)
                )
            )
            await bounded(
                db.execute(
                    update(RuleUsage)
                    .where(
                        RuleUsage.rule_id == res.rule_id,
                        RuleUsage.user_id == res.user_id,
                        RuleUsage.day == res.day,
                        RuleUsage.usage_count > 0,
                    )
                    .values(usage_count=RuleUsage.usage_count - 1)
                    .execution_options(synchronize_session="fetch")
                )
            )
            res.status = RELEASED
            res.updated_at = now_ms()
            released.append(res.rule_id)
        await bounded(db.flush())
        if released:
            logger.info("Released usage for order=%s rules=%s", order_id, released)
        return released

    # ---------------------------------------------------------------------------
    # Sweeper
    # ---------------------------------------------------------------------------

    async def sweep_abandoned(self, grace_seconds: int = settings.reservation_grace_seconds, at_ms: Optional[int] = None) -> int:
        """Release reservations left in ``reserved`` longer than the grace period."""
        cutoff = (at_ms if at_ms is not None else now_ms()) - grace_seconds * 1000
        async with self.session_factory() as db:
            async with db.begin():
                result = await bounded(
                    db.execute(
                        select(UsageReservation.order_id)
                        .where(UsageReservation.status == RESERVED, UsageReservation.created_at < cutoff)
                        .distinct()
                    )
                )
                order_ids = [row[0] for row in result.all()]
                count = 0
                for order_id in order_ids:
                    stale = [
                        r.rule_id
                        for r in await self.reservations(db, order_id)
                        if r.status == RESERVED and r.created_at < cutoff
                    ]
                    count += len(await self.release(db, order_id, stale))
        if count:
            logger.warning("Swept %d abandoned reservations across %d orders", count, len(order_ids))
        return count
