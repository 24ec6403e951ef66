"""
Location Registry: last known position and availability flag per courier.

Positions are overwritten on every push (last write wins) and never expire; staleness
is decided at read time by is_stale().
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable

import redis.asyncio as redis

from mandados.errors import AuthorizationError, ValidationError
from mandados.metrics import location_updates_total
from mandados.models import Caller, CourierAvailability, CourierLocation, CourierSummary, Role, utcnow

logger = logging.getLogger(__name__)

LOCATION_KEY = "courier:location:{}"
LOCATED_SET_KEY = "courier:located"
AVAILABILITY_KEY = "courier:availability"


class LocationBackend(ABC):
    @abstractmethod
    async def put_location(self, location: CourierLocation) -> None:
        ...

    @abstractmethod
    async def get_location(self, courier: str) -> CourierLocation | None:
        ...

    @abstractmethod
    async def all_locations(self) -> list[CourierLocation]:
        ...

    @abstractmethod
    async def set_available(self, courier: str, available: bool) -> None:
        ...

    @abstractmethod
    async def get_available(self, couriers: list[str]) -> dict[str, bool]:
        """Availability flag per courier; couriers that never set one are left out."""


class MemoryLocationBackend(LocationBackend):
    def __init__(self) -> None:
        self._locations: dict[str, CourierLocation] = {}
        self._available: dict[str, bool] = {}

    async def put_location(self, location: CourierLocation) -> None:
        self._locations[location.courier] = location

    async def get_location(self, courier: str) -> CourierLocation | None:
        return self._locations.get(courier)

    async def all_locations(self) -> list[CourierLocation]:
        return list(self._locations.values())

    async def set_available(self, courier: str, available: bool) -> None:
        self._available[courier] = available

    async def get_available(self, couriers: list[str]) -> dict[str, bool]:
        return {c: self._available[c] for c in couriers if c in self._available}


class RedisLocationBackend(LocationBackend):
    """One hash per courier for the position, one shared hash for availability flags."""

    def __init__(self, r: redis.Redis):
        self._r = r

    async def put_location(self, location: CourierLocation) -> None:
        async with self._r.pipeline(transaction=True) as pipe:
            pipe.hset(
                LOCATION_KEY.format(location.courier),
                mapping={
                    "lat": location.lat,
                    "lng": location.lng,
                    "updated_at": location.updated_at.isoformat(),
                },
            )
            pipe.sadd(LOCATED_SET_KEY, location.courier)
            await pipe.execute()

    async def get_location(self, courier: str) -> CourierLocation | None:
        data = await self._r.hgetall(LOCATION_KEY.format(courier))
        return _location_from_hash(courier, data)

    async def all_locations(self) -> list[CourierLocation]:
        couriers = sorted(await self._r.smembers(LOCATED_SET_KEY))
        found = []
        for courier in couriers:
            location = await self.get_location(courier)
            if location is not None:
                found.append(location)
        return found

    async def set_available(self, courier: str, available: bool) -> None:
        await self._r.hset(AVAILABILITY_KEY, courier, "1" if available else "0")

    async def get_available(self, couriers: list[str]) -> dict[str, bool]:
        if not couriers:
            return {}
        values = await self._r.hmget(AVAILABILITY_KEY, couriers)
        return {c: v == "1" for c, v in zip(couriers, values) if v is not None}


def _location_from_hash(courier: str, data: dict) -> CourierLocation | None:
    if not data:
        return None
    return CourierLocation(
        courier=courier,
        lat=float(data["lat"]),
        lng=float(data["lng"]),
        updated_at=datetime.fromisoformat(data["updated_at"]),
    )


def is_stale(location: CourierLocation, now: datetime, threshold_seconds: int) -> bool:
    return now - location.updated_at > timedelta(seconds=threshold_seconds)


class LocationRegistry:
    def __init__(
        self,
        backend: LocationBackend,
        stale_after_seconds: int = 60,
        clock: Callable[[], datetime] = utcnow,
        active_window_seconds: int = 1800,
    ):
        self._backend = backend
        self._stale_after = stale_after_seconds
        self._active_window = timedelta(seconds=active_window_seconds)
        self._clock = clock

    async def update_location(self, caller: Caller, lat: float, lng: float) -> CourierLocation:
        if caller.role != Role.COURIER:
            raise AuthorizationError("only couriers report locations")
        if not (-90 <= lat <= 90) or not (-180 <= lng <= 180):
            raise ValidationError("latitude/longitude out of range")
        location = CourierLocation(
            courier=caller.identity,
            lat=lat,
            lng=lng,
            updated_at=self._clock(),
        )
        await self._backend.put_location(location)
        location_updates_total.inc()
        logger.debug("Location of %s set to (%s, %s)", caller.identity, lat, lng)
        return location

    async def get_location(self, courier: str) -> CourierLocation | None:
        return await self._backend.get_location(courier)

    def is_stale(self, location: CourierLocation) -> bool:
        return is_stale(location, self._clock(), self._stale_after)

    async def set_availability(self, caller: Caller, available: bool) -> CourierAvailability:
        if caller.role != Role.COURIER:
            raise AuthorizationError("only couriers set availability")
        await self._backend.set_available(caller.identity, available)
        logger.info("Courier %s is now %s", caller.identity, "available" if available else "unavailable")
        return CourierAvailability(courier=caller.identity, available=available)

    async def is_available(self, courier: str) -> bool:
        flags = await self._backend.get_available([courier])
        return flags.get(courier, True)

    async def unavailable_among(self, couriers: list[str]) -> set[str]:
        flags = await self._backend.get_available(couriers)
        return {c for c, available in flags.items() if not available}

    async def available_couriers(self, caller: Caller) -> list[CourierLocation]:
        """Couriers that are available and have a fresh position, for the admin dispatch map."""
        if not caller.is_admin:
            raise AuthorizationError("administrators only")
        locations = [loc for loc in await self._backend.all_locations() if not self.is_stale(loc)]
        off = await self.unavailable_among([loc.courier for loc in locations])
        return [loc for loc in locations if loc.courier not in off]

    async def courier_summary(self, caller: Caller) -> CourierSummary:
        if not caller.is_admin:
            raise AuthorizationError("administrators only")
        locations = await self._backend.all_locations()
        off = await self.unavailable_among([loc.courier for loc in locations])
        since = self._clock() - self._active_window
        return CourierSummary(
            total=len(locations),
            available=sum(1 for loc in locations if loc.courier not in off),
            active=sum(1 for loc in locations if loc.updated_at >= since),
        )
