"""
Process-wide service singletons, built lazily on first request.

Routers depend on the getters below; tests swap implementations through
``app.dependency_overrides`` or by calling ``set_services``.
"""
from dataclasses import dataclass
from typing import Optional

from ridefare.database import AsyncSessionLocal
from ridefare.redis_client import get_cache
from ridefare.services.binder import FareBinder
from ridefare.services.catalog import RuleCatalog
from ridefare.services.orders import OrderService
from ridefare.services.pricing import PricingEngine
from ridefare.services.rules import RuleService
from ridefare.services.usage import UsageAccountant


@dataclass
class Services:
    catalog: RuleCatalog
    usage: UsageAccountant
    engine: PricingEngine
    orders: OrderService
    binder: FareBinder
    rules: RuleService


_services: Optional[Services] = None


def build_services(session_factory=AsyncSessionLocal, cache=None) -> Services:
    catalog = RuleCatalog(session_factory, cache)
    usage = UsageAccountant(session_factory)
    engine = PricingEngine(catalog, usage)
    orders = OrderService(session_factory, cache)
    return Services(
        catalog=catalog,
        usage=usage,
        engine=engine,
        orders=orders,
        binder=FareBinder(engine, usage, orders),
        rules=RuleService(catalog, session_factory),
    )


def set_services(services: Optional[Services]) -> None:
    global _services
    _services = services


async def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services(cache=await get_cache())
    return _services


async def get_binder() -> FareBinder:
    return (await get_services()).binder


async def get_order_service() -> OrderService:
    return (await get_services()).orders


async def get_rule_service() -> RuleService:
    return (await get_services()).rules
