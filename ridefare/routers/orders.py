"""
Orders router: order creation, fare attachment and lifecycle transitions.

  POST /v1/orders                         create (requested)
  GET  /v1/orders/{id}                    read (cached)
  POST /v1/orders/{id}/quote              attach a quote: reserve usage, write fares
  POST /v1/orders/{id}/accept             provider accepts: confirm usage
  POST /v1/orders/{id}/start              trip started
  POST /v1/orders/{id}/finish             trip ended
  POST /v1/orders/{id}/complete           payment captured
  POST /v1/orders/{id}/cancel             release usage, record cancellation fee
  POST /v1/orders/expire-stale            admin sweep of overdue orders
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from ridefare.dependencies import get_binder, get_order_service
from ridefare.middleware.auth import get_current_provider, get_current_user, get_current_user_id, require_admin
from ridefare.schemas.orders import (
    AttachQuoteRequest, CancelOrderRequest, OrderCreateRequest, OrderResponse,
)
from ridefare.services.binder import FareBinder
from ridefare.services.orders import OrderService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/orders", tags=["Orders"])


class FinishOrderRequest(BaseModel):
    actual_distance: Optional[float] = Field(None, ge=0)
    actual_duration: Optional[int] = Field(None, ge=0)


class ExpireStaleResponse(BaseModel):
    expired: list[str]


async def _owned_order(order_id: str, orders: OrderService, token: dict) -> OrderResponse:
    order = await orders.get_order(order_id)
    sub = token.get("sub")
    if token.get("role") == "admin" or sub in (order.user_id, order.provider_id):
        return order
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your order")


@router.post("", status_code=status.HTTP_201_CREATED, response_model=OrderResponse)
async def create_order(
    payload: OrderCreateRequest,
    user_id: str = Depends(get_current_user_id),
    orders: OrderService = Depends(get_order_service),
):
    return await orders.create_order(user_id, payload)


@router.post("/expire-stale", response_model=ExpireStaleResponse)
async def expire_stale_orders(
    _: str = Depends(require_admin),
    binder: FareBinder = Depends(get_binder),
):
    return ExpireStaleResponse(expired=await binder.expire_stale())


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: str,
    token: dict = Depends(get_current_user),
    orders: OrderService = Depends(get_order_service),
):
    return await _owned_order(order_id, orders, token)


@router.post("/{order_id}/quote", response_model=OrderResponse)
async def attach_quote(
    order_id: str,
    payload: AttachQuoteRequest,
    token: dict = Depends(get_current_user),
    binder: FareBinder = Depends(get_binder),
):
    await _owned_order(order_id, binder.orders, token)
    await binder.attach_quote(order_id, payload.quote_id)
    return await binder.orders.get_order(order_id)


@router.post("/{order_id}/accept", response_model=OrderResponse)
async def accept_order(
    order_id: str,
    provider_id: str = Depends(get_current_provider),
    binder: FareBinder = Depends(get_binder),
):
    return await binder.commit_on_accept(order_id, provider_id)


@router.post("/{order_id}/start", response_model=OrderResponse)
async def start_order(
    order_id: str,
    _: str = Depends(get_current_provider),
    orders: OrderService = Depends(get_order_service),
):
    return await orders.start(order_id)


@router.post("/{order_id}/finish", response_model=OrderResponse)
async def finish_order(
    order_id: str,
    payload: FinishOrderRequest,
    _: str = Depends(get_current_provider),
    orders: OrderService = Depends(get_order_service),
):
    return await orders.finish(
        order_id, actual_distance=payload.actual_distance, actual_duration=payload.actual_duration
    )


@router.post("/{order_id}/complete", response_model=OrderResponse)
async def complete_order(
    order_id: str,
    _: str = Depends(require_admin),
    binder: FareBinder = Depends(get_binder),
):
    return await binder.complete_on_payment(order_id)


@router.post("/{order_id}/cancel", response_model=OrderResponse)
async def cancel_order(
    order_id: str,
    payload: CancelOrderRequest,
    token: dict = Depends(get_current_user),
    binder: FareBinder = Depends(get_binder),
):
    await _owned_order(order_id, binder.orders, token)
    return await binder.rollback_on_cancel(order_id, token["sub"], payload.reason)
