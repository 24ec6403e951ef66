from fastapi import APIRouter, Depends
from pydantic import BaseModel

from mandados.models import Caller, CourierAvailability, CourierLocation, CourierStats, CourierSummary, Order
from mandados.routes.deps import current_caller
from mandados.services import Services, get_services

router = APIRouter(prefix="/couriers", tags=["couriers"])


class LocationBody(BaseModel):
    lat: float
    lng: float


class AvailabilityBody(BaseModel):
    available: bool


@router.get("/me/orders/{kind}", response_model=list[Order])
async def courier_orders(
    kind: str,
    caller: Caller = Depends(current_caller),
    services: Services = Depends(get_services),
) -> list[Order]:
    """kind: available | active | history | recent"""
    return await services.lifecycle.list_for_courier(caller, kind)


@router.get("/me/stats", response_model=CourierStats)
async def courier_stats(
    caller: Caller = Depends(current_caller),
    services: Services = Depends(get_services),
) -> CourierStats:
    return await services.lifecycle.courier_stats(caller)


@router.put("/me/location", response_model=CourierLocation)
async def update_location(
    body: LocationBody,
    caller: Caller = Depends(current_caller),
    services: Services = Depends(get_services),
) -> CourierLocation:
    return await services.locations.update_location(caller, body.lat, body.lng)


@router.put("/me/availability", response_model=CourierAvailability)
async def update_availability(
    body: AvailabilityBody,
    caller: Caller = Depends(current_caller),
    services: Services = Depends(get_services),
) -> CourierAvailability:
    return await services.locations.set_availability(caller, body.available)


@router.get("/available", response_model=list[CourierLocation])
async def available_couriers(
    caller: Caller = Depends(current_caller),
    services: Services = Depends(get_services),
) -> list[CourierLocation]:
    """Available couriers with a fresh position (administrators)."""
    return await services.locations.available_couriers(caller)


@router.get("/summary", response_model=CourierSummary)
async def courier_summary(
    caller: Caller = Depends(current_caller),
    services: Services = Depends(get_services),
) -> CourierSummary:
    return await services.locations.courier_summary(caller)
