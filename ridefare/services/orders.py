"""
Order lifecycle.

    requested -> accepted -> in_progress -> trip_ended -> completed
    requested | accepted -> cancelled
    requested | accepted -> expired   (only once expired_at has passed)

Every mutation is an optimistic-lock update:
    UPDATE orders SET ..., version = version + 1
    WHERE order_id = :id AND version = :expected
Zero rows means someone else won; the caller gets VersionConflictError and
retries on a fresh read. The cached order is dropped after each commit.
"""
import logging
import uuid
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ridefare.config import get_settings
from ridefare.database import AsyncSessionLocal, bounded, db_retry
from ridefare.errors import InternalError, NotFoundError, ValidationError, VersionConflictError
from ridefare.models.common import now_ms
from ridefare.models.order import Order, RideOrderDetail
from ridefare.redis_client import CacheFacade
from ridefare.schemas.orders import OrderCreateRequest, OrderPatch, OrderResponse, OrderStatusEnum

logger = logging.getLogger(__name__)
settings = get_settings()

S = OrderStatusEnum

VALID_TRANSITIONS: dict[S, set[S]] = {
    S.requested: {S.accepted, S.cancelled, S.expired},
    S.accepted: {S.in_progress, S.cancelled, S.expired},
    S.in_progress: {S.trip_ended},
    S.trip_ended: {S.completed},
    S.completed: set(),
    S.cancelled: set(),
    S.expired: set(),
}

CANCELLABLE = {S.requested, S.accepted}

# Targets that move usage or rule statistics; FareBinder owns these
BOUND_TRANSITIONS = {S.accepted, S.cancelled, S.expired, S.completed}


def can_transition(current: Union[S, str], target: Union[S, str]) -> bool:
    return S(target) in VALID_TRANSITIONS.get(S(current), set())


def ensure_transition(order: Order, target: S) -> None:
    if not can_transition(order.status, target):
        raise ValidationError(
            f"Order {order.order_id} cannot move from {order.status} to {target.value}",
            code="INVALID_TRANSITION",
            details={"from": order.status, "to": target.value},
        )


def _column_values(patch: Union[OrderPatch, dict[str, Any]]) -> dict[str, Any]:
    values = patch.model_dump(exclude_unset=True) if isinstance(patch, BaseModel) else dict(patch)
    return {k: v.value if isinstance(v, Enum) else v for k, v in values.items()}


class OrderService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
        cache: Optional[CacheFacade] = None,
    ) -> None:
        self.session_factory = session_factory
        self.cache = cache or CacheFacade(None)

    # ---------------------------------------------------------------------------
    # Reads
    # ---------------------------------------------------------------------------

    async def load(self, db: AsyncSession, order_id: str) -> Order:
        result = await bounded(
            db.execute(
                select(Order).where(Order.order_id == order_id).execution_options(populate_existing=True)
            )
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    @db_retry
    async def _read(self, order_id: str) -> OrderResponse:
        async with self.session_factory() as db:
            return OrderResponse.model_validate(await self.load(db, order_id))

    async def get_order(self, order_id: str) -> OrderResponse:
        """Read-through cache on ``{ns}:order:{id}``."""
        async def load() -> str:
            return (await self._read(order_id)).model_dump_json()

        raw = await self.cache.get_or_load(self.cache.order_key(order_id), load, settings.order_cache_ttl_seconds)
        return OrderResponse.model_validate_json(raw)

    async def invalidate(self, order_id: str) -> None:
        await self.cache.invalidate(self.cache.order_key(order_id))

    # ---------------------------------------------------------------------------
    # Writes
    # ---------------------------------------------------------------------------

    async def create_order(self, user_id: str, payload: OrderCreateRequest) -> OrderResponse:
        now = now_ms()
        order = Order(
            order_id=str(uuid.uuid4()),
            version=1,
            order_type=payload.order_type.value,
            user_id=user_id,
            status=S.requested.value,
            payment_status="pending",
            schedule_type="scheduled" if payload.scheduled_at else "instant",
            scheduled_at=payload.scheduled_at,
            currency=payload.currency or settings.default_currency,
            max_rounds=settings.dispatch_max_rounds,
            expired_at=now + payload.expires_in_seconds * 1000 if payload.expires_in_seconds else None,
            notes=payload.notes,
            created_at=now,
            updated_at=now,
        )
        async with self.session_factory() as db:
            db.add(order)
            if payload.ride is not None:
                ride = payload.ride
                db.add(
                    RideOrderDetail(
                        order_id=order.order_id,
                        vehicle_category=ride.vehicle_category,
                        vehicle_level=ride.vehicle_level,
                        passenger_count=ride.passenger_count,
                        pickup_address=ride.pickup.address,
                        pickup_latitude=ride.pickup.lat,
                        pickup_longitude=ride.pickup.lng,
                        pickup_landmark=ride.pickup.landmark,
                        dropoff_address=ride.dropoff.address,
                        dropoff_latitude=ride.dropoff.lat,
                        dropoff_longitude=ride.dropoff.lng,
                        dropoff_landmark=ride.dropoff.landmark,
                        estimated_distance=ride.estimated_distance,
                        estimated_duration=ride.estimated_duration,
                    )
                )
            await bounded(db.commit())
            await db.refresh(order)
            logger.info("Order %s created for user=%s", order.order_id, user_id)
            return OrderResponse.model_validate(order)

    async def apply_update(
        self,
        db: AsyncSession,
        order_id: str,
        expected_version: int,
        patch: Union[OrderPatch, dict[str, Any]],
    ) -> int:
        """Optimistic-lock update inside the caller's transaction; returns the new version."""
        values = _column_values(patch)
        values.update(version=Order.version + 1, updated_at=now_ms())
        result = await bounded(
            db.execute(
                update(Order)
                .where(Order.order_id == order_id, Order.version == expected_version)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        )
        if result.rowcount == 0:
            exists = await bounded(db.execute(select(Order.id).where(Order.order_id == order_id)))
            if exists.scalar_one_or_none() is None:
                raise NotFoundError("Order", order_id)
            logger.warning("Version conflict on order=%s expected=%d", order_id, expected_version)
            raise VersionConflictError(order_id, expected_version)
        return expected_version + 1

    async def update_order(
        self, order_id: str, expected_version: int, patch: Union[OrderPatch, dict[str, Any]]
    ) -> int:
        async with self.session_factory() as db:
            version = await self.apply_update(db, order_id, expected_version, patch)
            await bounded(db.commit())
        await self.invalidate(order_id)
        return version

    async def transition(
        self,
        order_id: str,
        target: S,
        expected_version: Optional[int] = None,
        **fields: Any,
    ) -> OrderResponse:
        """Status change that touches only the order row (start, finish)."""
        if target in BOUND_TRANSITIONS:
            raise InternalError(f"{target.value} goes through FareBinder, which also moves usage")
        async with self.session_factory() as db:
            order = await self.load(db, order_id)
            if expected_version is not None and order.version != expected_version:
                raise VersionConflictError(order_id, expected_version)
            ensure_transition(order, target)
            await self.apply_update(db, order_id, order.version, {"status": target.value, **fields})
            await bounded(db.commit())
        await self.invalidate(order_id)
        logger.info("Order %s -> %s", order_id, target.value)
        return await self._read(order_id)

    # ---------------------------------------------------------------------------
    # Transitions
    # ---------------------------------------------------------------------------

    async def start(self, order_id: str, expected_version: Optional[int] = None) -> OrderResponse:
        return await self.transition(order_id, S.in_progress, expected_version, started_at=now_ms())

    async def finish(
        self,
        order_id: str,
        expected_version: Optional[int] = None,
        actual_distance: Optional[float] = None,
        actual_duration: Optional[int] = None,
    ) -> OrderResponse:
        if actual_distance is not None or actual_duration is not None:
            async with self.session_factory() as db:
                await bounded(
                    db.execute(
                        update(RideOrderDetail)
                        .where(RideOrderDetail.order_id == order_id)
                        .values(actual_distance=actual_distance, actual_duration=actual_duration, updated_at=now_ms())
                    )
                )
                await bounded(db.commit())
        return await self.transition(
            order_id, S.trip_ended, expected_version, ended_at=now_ms(), payment_status="pending"
        )

    # ---------------------------------------------------------------------------
    # Expiry scan
    # ---------------------------------------------------------------------------

    async def overdue_order_ids(self, at_ms: int) -> list[str]:
        """Requested/accepted orders whose ``expired_at`` has passed."""
        async with self.session_factory() as db:
            result = await bounded(
                db.execute(
                    select(Order.order_id)
                    .where(
                        Order.status.in_([S.requested.value, S.accepted.value]),
                        Order.expired_at.is_not(None),
                        Order.expired_at < at_ms,
                    )
                    .order_by(Order.expired_at)
                )
            )
            return [row[0] for row in result.all()]
