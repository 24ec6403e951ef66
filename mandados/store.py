"""
Order Store boundary. The lifecycle engine only talks to OrderStore; the atomic
conditional_update is the primitive that makes accept race-free.
"""
import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

from mandados.models import Order
from mandados.order_state import OrderState


@dataclass
class OrderFilter:
    state: OrderState | None = None
    state_in: list[OrderState] | None = None
    requester: str | None = None
    courier: str | None = None
    # matches orders where the identity is the courier or was released from them by a cancellation
    courier_or_previous: str | None = None
    deadline_after: datetime | None = None
    order_by: str = "created_at"  # newest first on this timestamp column
    limit: int | None = None

    def matches(self, order: Order) -> bool:
        if self.state is not None and order.state != self.state:
            return False
        if self.state_in is not None and order.state not in self.state_in:
            return False
        if self.requester is not None and order.requester != self.requester:
            return False
        if self.courier is not None and order.courier != self.courier:
            return False
        if self.courier_or_previous is not None and self.courier_or_previous not in (
            order.courier,
            order.previous_courier,
        ):
            return False
        if self.deadline_after is not None and order.deadline <= self.deadline_after:
            return False
        return True


class OrderStore(ABC):
    @abstractmethod
    async def insert(self, order: Order) -> Order:
        ...

    @abstractmethod
    async def find_by_id(self, order_id: str) -> Order | None:
        ...

    @abstractmethod
    async def conditional_update(
        self,
        order_id: str,
        expected: Mapping[str, Any],
        new_fields: Mapping[str, Any],
    ) -> Order | None:
        """
        Atomically apply new_fields only if every field in expected equals its current value
        (None means the field must be null). Returns the updated order, or None when the
        precondition failed or the order does not exist.
        """

    @abstractmethod
    async def find(self, flt: OrderFilter) -> list[Order]:
        """Orders matching flt, newest first by flt.order_by."""


class MemoryOrderStore(OrderStore):
    """Process-local store. The lock makes compare-and-set atomic across coroutines."""

    def __init__(self) -> None:
        self._orders: dict[str, Order] = {}
        self._lock = asyncio.Lock()

    async def insert(self, order: Order) -> Order:
        async with self._lock:
            if order.order_id in self._orders:
                raise KeyError(f"order {order.order_id} already exists")
            self._orders[order.order_id] = order.model_copy(deep=True)
        return order

    async def find_by_id(self, order_id: str) -> Order | None:
        order = self._orders.get(order_id)
        return order.model_copy(deep=True) if order else None

    async def conditional_update(
        self,
        order_id: str,
        expected: Mapping[str, Any],
        new_fields: Mapping[str, Any],
    ) -> Order | None:
        async with self._lock:
            current = self._orders.get(order_id)
            if current is None:
                return None
            for field, value in expected.items():
                actual = getattr(current, field)
                if value is None:
                    if actual is not None:
                        return None
                elif actual != value:
                    return None
            updated = current.model_copy(update=dict(new_fields), deep=True)
            self._orders[order_id] = updated
            return updated.model_copy(deep=True)

    async def find(self, flt: OrderFilter) -> list[Order]:
        found = [o for o in self._orders.values() if flt.matches(o)]
        found.sort(key=lambda o: getattr(o, flt.order_by), reverse=True)
        if flt.limit is not None:
            found = found[: flt.limit]
        return [o.model_copy(deep=True) for o in found]
