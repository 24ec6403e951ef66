"""
Tracking Aggregator: combines an order's destination with its courier's last position
into a read-time snapshot with a staleness flag and a rough ETA.
"""
from math import asin, cos, floor, radians, sin, sqrt

from mandados.errors import AuthorizationError, NotFoundError
from mandados.locations import LocationRegistry
from mandados.models import Caller, Coordinates, TrackingView
from mandados.order_state import ACTIVE_STATES
from mandados.store import OrderStore

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points, in kilometres."""
    lng1, lat1, lng2, lat2 = map(radians, [lng1, lat1, lng2, lat2])
    dlng = lng2 - lng1
    dlat = lat2 - lat1
    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlng / 2) ** 2
    return 2 * EARTH_RADIUS_KM * asin(sqrt(a))


def estimate_minutes(distance_km: float, speed_kmh: float, floor_minutes: int) -> int:
    # halves round up: 6.5 minutes is quoted as 7
    return max(floor(distance_km * 60 / speed_kmh + 0.5), floor_minutes)


class TrackingAggregator:
    def __init__(
        self,
        store: OrderStore,
        locations: LocationRegistry,
        speed_kmh: float = 20.0,
        min_eta_minutes: int = 5,
    ):
        self._store = store
        self._locations = locations
        self._speed_kmh = speed_kmh
        self._min_eta = min_eta_minutes

    async def get_tracking_view(self, order_id: str, caller: Caller) -> TrackingView:
        order = await self._store.find_by_id(order_id)
        if order is None:
            raise NotFoundError(f"order {order_id} not found")
        if not (caller.is_admin or caller.identity in (order.requester, order.courier)):
            raise AuthorizationError("only the requester, the assigned courier or an administrator may track")

        destination = order.delivery.coordinates()
        view = TrackingView(
            order_id=order.order_id,
            state=order.state,
            destination=destination,
            courier=order.courier,
        )
        if order.courier is None:
            return view

        location = await self._locations.get_location(order.courier)
        if location is None:
            return view

        view.courier_location = Coordinates(lat=location.lat, lng=location.lng)
        view.location_updated_at = location.updated_at
        view.stale = self._locations.is_stale(location)
        if destination is not None and order.state in ACTIVE_STATES:
            distance = haversine_km(location.lat, location.lng, destination.lat, destination.lng)
            view.eta_minutes = estimate_minutes(distance, self._speed_kmh, self._min_eta)
        return view
