"""
Order fare binder: ties quotes, usage reservations and order transitions together.

  quote              -> price a context, persist a PriceQuote valid for 15 minutes
  attach_quote       -> reserve usage + write fare fields on the order (one transaction)
  commit_on_accept   -> confirm reservations + requested -> accepted
  rollback_on_cancel -> release reservations + cancellation fee + -> cancelled
  complete_on_payment-> trip_ended -> completed, paid; rule revenue statistics
  expire_stale       -> release reservations + overdue orders -> expired

Anything that needs the catalog or a separate read happens before the write
transaction is opened, so the transaction only touches the rows it mutates.
"""
import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import update

from ridefare.config import get_settings
from ridefare.database import bounded
from ridefare.errors import NotFoundError, QuotaExceededError, ValidationError, VersionConflictError
from ridefare.models.common import now_ms
from ridefare.models.order import RideOrderDetail
from ridefare.models.price_rule import PriceRule
from ridefare.models.quote import PriceQuote
from ridefare.schemas.orders import OrderPatch, OrderResponse, OrderStatusEnum
from ridefare.schemas.pricing import FareBreakdown, PricingContext, QuoteResponse
from ridefare.schemas.rules import Rule, RuleStatus
from ridefare.services.orders import CANCELLABLE, OrderService, ensure_transition
from ridefare.services.pricing import PricingEngine
from ridefare.services.usage import UsageAccountant

logger = logging.getLogger(__name__)
settings = get_settings()

S = OrderStatusEnum


@dataclass
class AttachResult:
    order_id: str
    quote_id: str
    version: int
    breakdown: FareBreakdown


class FareBinder:
    def __init__(
        self,
        engine: PricingEngine,
        usage: UsageAccountant,
        orders: OrderService,
        quote_ttl_seconds: int = settings.quote_ttl_seconds,
    ) -> None:
        self.engine = engine
        self.usage = usage
        self.orders = orders
        self.session_factory = orders.session_factory
        self.quote_ttl_seconds = quote_ttl_seconds

    # ---------------------------------------------------------------------------
    # Quote
    # ---------------------------------------------------------------------------

    async def quote(self, ctx: PricingContext, exclude_rule_ids: Iterable[str] = ()) -> QuoteResponse:
        result = await self.engine.price(ctx, exclude_rule_ids)
        created = now_ms()
        quote = PriceQuote(
            quote_id=str(uuid.uuid4()),
            user_id=ctx.user_id,
            context=ctx.model_dump(mode="json"),
            breakdown=result.breakdown.model_dump(mode="json"),
            applied_rule_ids=result.breakdown.applied_rule_ids,
            created_at=created,
            expires_at=created + self.quote_ttl_seconds * 1000,
        )
        async with self.session_factory() as db:
            db.add(quote)
            await bounded(db.commit())
        logger.info("Quote %s for user=%s payment=%s", quote.quote_id, ctx.user_id, result.breakdown.payment_amount)
        return QuoteResponse(
            quote_id=quote.quote_id,
            expires_at=quote.expires_at,
            breakdown=result.breakdown,
            unmatched_codes=result.promo.unmatched,
            dropped_rules=list(result.combination.dropped),
        )

    async def _load_quote(self, quote_id: str) -> PriceQuote:
        async with self.session_factory() as db:
            quote = await bounded(db.get(PriceQuote, quote_id))
        if quote is None:
            raise NotFoundError("Quote", quote_id)
        return quote

    async def _requote(self, quote: PriceQuote, excluded: set[str]) -> FareBreakdown:
        """Recompute a stored quote without ``excluded`` rules and persist the new breakdown."""
        ctx = PricingContext.model_validate(quote.context)
        result = await self.engine.price(ctx, excluded)
        breakdown = result.breakdown
        async with self.session_factory() as db:
            await bounded(
                db.execute(
                    update(PriceQuote)
                    .where(PriceQuote.quote_id == quote.quote_id)
                    .values(
                        breakdown=breakdown.model_dump(mode="json"),
                        applied_rule_ids=breakdown.applied_rule_ids,
                    )
                )
            )
            await bounded(db.commit())
        logger.warning("Quote %s recomputed without rules %s", quote.quote_id, sorted(excluded))
        return breakdown

    async def _plan_rules(self, breakdown: FareBreakdown) -> list[Rule]:
        rules = []
        for applied in breakdown.applied_rules:
            rule = await self.engine.catalog.get_by_id(applied.rule_id)
            if rule is None:
                raise NotFoundError("Rule", applied.rule_id)
            rules.append(rule)
        return rules

    # ---------------------------------------------------------------------------
    # Attach
    # ---------------------------------------------------------------------------

    async def attach_quote(self, order_id: str, quote_id: str) -> AttachResult:
        """
        Bind a quote to an order. A quota miss recomputes the quote once
        without the offending rule; a version conflict re-reads once.
        """
        excluded: set[str] = set()
        conflicts = 0
        while True:
            try:
                return await self._attach_once(order_id, quote_id, excluded)
            except QuotaExceededError as exc:
                if excluded:
                    raise
                logger.warning("Quota exceeded for rule=%s on order=%s, recomputing", exc.rule_id, order_id)
                excluded.add(exc.rule_id)
            except VersionConflictError:
                conflicts += 1
                if conflicts > 1:
                    raise

    async def _attach_once(self, order_id: str, quote_id: str, excluded: set[str]) -> AttachResult:
        quote = await self._load_quote(quote_id)
        now = now_ms()
        if quote.order_id is not None and quote.order_id != order_id:
            raise ValidationError(f"Quote {quote_id} is bound to another order", code="QUOTE_ALREADY_BOUND")
        if quote.order_id is None and quote.expires_at < now:
            raise ValidationError(f"Quote {quote_id} has expired", code="QUOTE_EXPIRED")

        breakdown = await self._requote(quote, excluded) if excluded else FareBreakdown.model_validate(quote.breakdown)
        rules = await self._plan_rules(breakdown)
        amounts = {a.rule_id: a.amount for a in breakdown.applied_rules}
        ctx_codes = PricingContext.model_validate(quote.context).promo_codes
        code_rules = {r.rule_id for r in rules if r.promo_code and r.is_discount}
        promo_discount = sum((a.amount for a in breakdown.applied_rules if a.rule_id in code_rules), Decimal("0"))

        async with self.session_factory() as db:
            async with db.begin():
                order = await self.orders.load(db, order_id)
                if order.user_id != quote.user_id:
                    raise ValidationError(f"Quote {quote_id} belongs to another user", code="QUOTE_USER_MISMATCH")
                if order.quote_id == quote_id and quote.order_id == order_id and not excluded:
                    if order.status == S.requested.value:
                        # Already bound; restore anything the sweeper released since
                        restored = await self.usage.reserve(
                            db,
                            rules,
                            user_id=order.user_id,
                            order_id=order_id,
                            quote_id=quote_id,
                            amounts=amounts,
                            at_ms=now,
                        )
                        if restored:
                            logger.warning("Re-reserved swept usage for order=%s rules=%s", order_id, restored)
                    return AttachResult(order_id, quote_id, order.version, FareBreakdown.model_validate(order.fare_breakdown))
                if order.status != S.requested.value:
                    raise ValidationError(
                        f"Order {order_id} is {order.status}; fares attach only to requested orders",
                        code="INVALID_TRANSITION",
                    )

                await self.usage.reserve(
                    db,
                    rules,
                    user_id=order.user_id,
                    order_id=order_id,
                    quote_id=quote_id,
                    amounts=amounts,
                    at_ms=now,
                )
                # Drop reservations left over from a previously attached quote
                held = {r.rule_id for r in await self.usage.reservations(db, order_id)}
                stale = held - {r.rule_id for r in rules}
                if stale:
                    await self.usage.release(db, order_id, stale)

                version = await self.orders.apply_update(
                    db,
                    order_id,
                    order.version,
                    OrderPatch(
                        original_amount=breakdown.original_amount,
                        surged_amount=breakdown.surged_amount,
                        discounted_amount=breakdown.discounted_amount,
                        payment_amount=breakdown.payment_amount,
                        total_discount_amount=breakdown.total_discount,
                        platform_fee=breakdown.platform_fee,
                        promo_discount=promo_discount,
                        promo_codes=ctx_codes,
                        applied_rule_ids=breakdown.applied_rule_ids,
                        fare_breakdown=breakdown.model_dump(mode="json"),
                        quote_id=quote_id,
                    ),
                )
                await bounded(
                    db.execute(
                        update(RideOrderDetail)
                        .where(RideOrderDetail.order_id == order_id)
                        .values(
                            base_fare=breakdown.base_fare,
                            distance_fare=breakdown.distance_fare,
                            time_fare=breakdown.time_fare,
                            surge_fare=breakdown.surge_fare,
                            total_fare=breakdown.payment_amount,
                            updated_at=now,
                        )
                    )
                )
                await bounded(
                    db.execute(
                        update(PriceQuote)
                        .where(PriceQuote.quote_id == quote_id)
                        .values(order_id=order_id)
                    )
                )
        await self.orders.invalidate(order_id)
        logger.info("Quote %s attached to order=%s (v%d)", quote_id, order_id, version)
        return AttachResult(order_id, quote_id, version, breakdown)

    # ---------------------------------------------------------------------------
    # Accept / cancel / complete
    # ---------------------------------------------------------------------------

    async def commit_on_accept(self, order_id: str, provider_id: str) -> OrderResponse:
        """
        Confirm usage and accept. A requested order with a quote is re-attached
        first, so reservations released by the sweeper are taken again (or the
        fare recomputed without a rule whose quota ran out meanwhile).
        """
        async with self.session_factory() as db:
            order = await self.orders.load(db, order_id)
            quote_id, status = order.quote_id, order.status
        if quote_id and status == S.requested.value:
            await self.attach_quote(order_id, quote_id)

        async with self.session_factory() as db:
            async with db.begin():
                order = await self.orders.load(db, order_id)
                already = order.status == S.accepted.value and order.provider_id == provider_id
                if not already:
                    ensure_transition(order, S.accepted)
                    await self.usage.confirm(db, order_id)
                    await self.orders.apply_update(
                        db,
                        order_id,
                        order.version,
                        OrderPatch(status=S.accepted, provider_id=provider_id, accepted_at=now_ms()),
                    )
        await self.orders.invalidate(order_id)
        return await self.orders.get_order(order_id)

    async def cancellation_fee_rule(self, order_type: str) -> Optional[Rule]:
        snapshot = await self.engine.catalog.snapshot()
        candidates = [
            r
            for r in snapshot.rules.values()
            if r.is_cancellation_fee
            and r.status == RuleStatus.active
            and (not r.applicable_rides or order_type in r.applicable_rides)
        ]
        return min(candidates, key=lambda r: (r.priority, r.rule_id)) if candidates else None

    async def rollback_on_cancel(
        self, order_id: str, cancelled_by: str, reason: Optional[str] = None
    ) -> OrderResponse:
        current = await self.orders.get_order(order_id)
        fee_rule = await self.cancellation_fee_rule(current.order_type)

        async with self.session_factory() as db:
            async with db.begin():
                order = await self.orders.load(db, order_id)
                if S(order.status) not in CANCELLABLE:
                    raise ValidationError(
                        f"Order {order_id} cannot be cancelled from {order.status}",
                        code="INVALID_TRANSITION",
                    )
                fee = Decimal("0")
                # Fee applies only once a provider has accepted
                if fee_rule is not None and order.status == S.accepted.value:
                    fee = fee_rule.base_rate
                released = await self.usage.release(db, order_id)
                await self.orders.apply_update(
                    db,
                    order_id,
                    order.version,
                    OrderPatch(
                        status=S.cancelled,
                        cancelled_at=now_ms(),
                        cancelled_by=cancelled_by,
                        cancel_reason=reason,
                        cancellation_fee=fee,
                    ),
                )
        await self.orders.invalidate(order_id)
        logger.info("Order %s cancelled by %s; released %s, fee=%s", order_id, cancelled_by, released, fee)
        return await self.orders.get_order(order_id)

    async def complete_on_payment(self, order_id: str) -> OrderResponse:
        async with self.session_factory() as db:
            async with db.begin():
                order = await self.orders.load(db, order_id)
                ensure_transition(order, S.completed)
                await self.orders.apply_update(
                    db,
                    order_id,
                    order.version,
                    OrderPatch(status=S.completed, completed_at=now_ms(), payment_status="paid"),
                )
                if order.applied_rule_ids:
                    await bounded(
                        db.execute(
                            update(PriceRule)
                            .where(PriceRule.rule_id.in_(order.applied_rule_ids))
                            .values(revenue_impact=PriceRule.revenue_impact + order.payment_amount)
                            .execution_options(synchronize_session=False)
                        )
                    )
        await self.orders.invalidate(order_id)
        return await self.orders.get_order(order_id)

    # ---------------------------------------------------------------------------
    # Expiry
    # ---------------------------------------------------------------------------

    async def _expire_one(self, order_id: str, at: int) -> list[str]:
        async with self.session_factory() as db:
            async with db.begin():
                order = await self.orders.load(db, order_id)
                ensure_transition(order, S.expired)
                if order.expired_at is None or order.expired_at >= at:
                    raise ValidationError(f"Order {order_id} has not reached its expiry", code="NOT_EXPIRED")
                released = await self.usage.release(db, order_id)
                await self.orders.apply_update(db, order_id, order.version, OrderPatch(status=S.expired))
        await self.orders.invalidate(order_id)
        return released

    async def expire_order(self, order_id: str, at_ms: Optional[int] = None) -> OrderResponse:
        """Expire one overdue order and release its usage in the same transaction."""
        released = await self._expire_one(order_id, at_ms if at_ms is not None else now_ms())
        logger.info("Order %s expired; released %s", order_id, released)
        return await self.orders.get_order(order_id)

    async def expire_stale(self, at_ms: Optional[int] = None) -> list[str]:
        """Expire every requested/accepted order past its ``expired_at``."""
        at = at_ms if at_ms is not None else now_ms()
        expired: list[str] = []
        for order_id in await self.orders.overdue_order_ids(at):
            try:
                await self._expire_one(order_id, at)
            except (ValidationError, VersionConflictError) as exc:
                # moved on since the scan
                logger.info("Skipping expiry of order=%s: %s", order_id, exc)
                continue
            expired.append(order_id)
        if expired:
            logger.info("Expired %d stale orders", len(expired))
        return expired
