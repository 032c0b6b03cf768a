"""
Quotes router: POST /v1/quotes
"""
import logging

from fastapi import APIRouter, Depends, status
from prometheus_client import Counter, Histogram

from ridefare.config import get_settings
from ridefare.dependencies import get_binder
from ridefare.middleware.auth import get_current_user_id
from ridefare.models.common import now_ms
from ridefare.schemas.pricing import PricingContext, QuoteRequest, QuoteResponse
from ridefare.services.binder import FareBinder

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/quotes", tags=["Quotes"])
settings = get_settings()

quote_counter = Counter("ridefare_quotes_total", "Quotes issued", ["status"])
quote_duration = Histogram("ridefare_quote_duration_seconds", "Time to price and persist a quote")


def build_context(user_id: str, payload: QuoteRequest) -> PricingContext:
    return PricingContext(
        user_id=user_id,
        user_segments=payload.user_segments,
        order_type=payload.order_type,
        vehicle_category=payload.vehicle_category,
        vehicle_level=payload.vehicle_level,
        service_area_id=payload.service_area_id,
        now_ms=payload.at_ms if payload.at_ms is not None else now_ms(),
        local_day_of_week=payload.local_day_of_week,
        local_time=payload.local_time,
        local_date=payload.local_date,
        estimated_distance_km=payload.estimated_distance_km,
        estimated_duration_min=payload.estimated_duration_min,
        currency=payload.currency or settings.default_currency,
        promo_codes=payload.promo_codes,
        platform_fee=payload.platform_fee if payload.platform_fee is not None else settings.default_platform_fee,
    )


@router.post("", status_code=status.HTTP_201_CREATED, response_model=QuoteResponse)
async def create_quote(
    payload: QuoteRequest,
    user_id: str = Depends(get_current_user_id),
    binder: FareBinder = Depends(get_binder),
):
    """Price a prospective order; the returned quote can be attached to an order for 15 minutes."""
    try:
        with quote_duration.time():
            quote = await binder.quote(build_context(user_id, payload))
    except Exception:
        quote_counter.labels(status="error").inc()
        raise
    quote_counter.labels(status="success").inc()
    return quote
