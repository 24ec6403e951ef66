"""
Domain events published by the lifecycle engine and the wire event pushed to live sessions.

The engine only knows the EventSink; who gets told (live sessions, metrics, audit log)
is decided by the subscribers registered on the bus.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from pydantic import BaseModel, Field

from mandados.models import Caller, Order, utcnow
from mandados.order_state import OrderState

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    NEW_ORDER = "new_order"
    STATUS_CHANGED = "status_changed"
    TEST = "test"


class DispatchEvent(BaseModel):
    """What a connected client receives. Timestamp is assigned by the server."""
    kind: EventKind
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


@dataclass(frozen=True)
class OrderCreated:
    order: Order


@dataclass(frozen=True)
class OrderStatusChanged:
    order: Order
    previous_state: OrderState
    actor: Caller
    # courier released by a cancellation, if any
    released_courier: str | None = None


@dataclass(frozen=True)
class OrderRated:
    order: Order
    rater: Caller


DomainEvent = OrderCreated | OrderStatusChanged | OrderRated


class EventSink(Protocol):
    async def publish(self, event: DomainEvent) -> None:
        ...


class Subscriber(Protocol):
    async def handle(self, event: DomainEvent) -> None:
        ...


class EventBus:
    """
    Fans each domain event out to subscribers in registration order.
    A failing subscriber is logged and skipped; it never fails the state change that published.
    """

    def __init__(self, subscribers: list[Subscriber] | None = None):
        self._subscribers: list[Subscriber] = list(subscribers or [])

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    async def publish(self, event: DomainEvent) -> None:
        for subscriber in self._subscribers:
            try:
                await subscriber.handle(event)
            except Exception:
                logger.exception(
                    "Subscriber %s failed on %s",
                    type(subscriber).__name__,
                    type(event).__name__,
                )


def new_order_event(order: Order) -> DispatchEvent:
    return DispatchEvent(
        kind=EventKind.NEW_ORDER,
        payload={
            "order_id": order.order_id,
            "category": order.category.value,
            "offered_price": order.offered_price,
            "pickup": order.pickup.address,
            "delivery": order.delivery.address,
            "deadline": order.deadline.isoformat(),
        },
    )


def status_changed_event(order: Order, previous_state: OrderState) -> DispatchEvent:
    return DispatchEvent(
        kind=EventKind.STATUS_CHANGED,
        payload={
            "order_id": order.order_id,
            "previous_state": previous_state.value,
            "state": order.state.value,
            "courier": order.courier,
        },
    )
