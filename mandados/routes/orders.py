from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from mandados.models import Caller, Order, OrderDetails, TrackingView
from mandados.routes.deps import current_caller
from mandados.services import Services, get_services

router = APIRouter(prefix="/orders", tags=["orders"])


class AdvanceBody(BaseModel):
    state: str = Field(..., description="Next state in the delivery sequence")


class RateBody(BaseModel):
    rating: int = Field(..., description="1 to 5")
    comment: str | None = None


@router.post("", status_code=201, response_model=Order)
async def create_order(
    body: OrderDetails,
    caller: Caller = Depends(current_caller),
    services: Services = Depends(get_services),
) -> Order:
    """Create a pending order and announce it to available couriers."""
    return await services.lifecycle.create(caller, body)


@router.get("/mine", response_model=list[Order])
async def my_orders(
    caller: Caller = Depends(current_caller),
    services: Services = Depends(get_services),
) -> list[Order]:
    return await services.lifecycle.list_for_requester(caller)


@router.get("/{order_id}", response_model=Order)
async def get_order(
    order_id: str,
    caller: Caller = Depends(current_caller),
    services: Services = Depends(get_services),
) -> Order:
    return await services.lifecycle.get(order_id)


@router.post("/{order_id}/accept", response_model=Order)
async def accept_order(
    order_id: str,
    caller: Caller = Depends(current_caller),
    services: Services = Depends(get_services),
) -> Order:
    """
    Claim a pending order. Exactly one courier wins; the others get 409 and should
    refresh their list of available orders.
    """
    return await services.lifecycle.accept(order_id, caller)


@router.post("/{order_id}/advance", response_model=Order)
async def advance_order(
    order_id: str,
    body: AdvanceBody,
    caller: Caller = Depends(current_caller),
    services: Services = Depends(get_services),
) -> Order:
    return await services.lifecycle.advance(order_id, caller, body.state)


@router.post("/{order_id}/cancel", response_model=Order)
async def cancel_order(
    order_id: str,
    caller: Caller = Depends(current_caller),
    services: Services = Depends(get_services),
) -> Order:
    return await services.lifecycle.cancel(order_id, caller)


@router.post("/{order_id}/rate", response_model=Order)
async def rate_order(
    order_id: str,
    body: RateBody,
    caller: Caller = Depends(current_caller),
    services: Services = Depends(get_services),
) -> Order:
    return await services.lifecycle.rate(order_id, caller, body.rating, body.comment)


@router.get("/{order_id}/tracking", response_model=TrackingView)
async def track_order(
    order_id: str,
    caller: Caller = Depends(current_caller),
    services: Services = Depends(get_services),
) -> TrackingView:
    """Read-time tracking snapshot; clients poll this every 10-15 seconds."""
    return await services.tracking.get_tracking_view(order_id, caller)
