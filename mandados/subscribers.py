"""
Event-sink subscribers: live-session fan-out, metrics and the transition audit log.
"""
import logging

from mandados.events import (
    DomainEvent,
    OrderCreated,
    OrderRated,
    OrderStatusChanged,
    new_order_event,
    status_changed_event,
)
from mandados.metrics import order_ratings_total, order_transitions_total, orders_created_total
from mandados.notifier import ConnectionRegistry

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("mandados.audit")


class DispatchSubscriber:
    """New orders go to the courier group; status changes go to the people affected."""

    def __init__(self, registry: ConnectionRegistry):
        self._registry = registry

    async def handle(self, event: DomainEvent) -> None:
        if isinstance(event, OrderCreated):
            await self._registry.broadcast_to_couriers(new_order_event(event.order))
        elif isinstance(event, OrderStatusChanged):
            order = event.order
            message = status_changed_event(order, event.previous_state)
            if event.actor.identity != order.requester:
                await self._registry.notify_identity(order.requester, message)
            released = event.released_courier
            if released is not None and released != event.actor.identity:
                await self._registry.notify_identity(released, message)


class MetricsSubscriber:
    async def handle(self, event: DomainEvent) -> None:
        if isinstance(event, OrderCreated):
            orders_created_total.labels(category=event.order.category.value).inc()
        elif isinstance(event, OrderStatusChanged):
            order_transitions_total.labels(
                from_state=event.previous_state.value,
                to_state=event.order.state.value,
            ).inc()
        elif isinstance(event, OrderRated):
            order_ratings_total.labels(rater_role=event.rater.role.value).inc()


class AuditLogSubscriber:
    """One log line per state change, keeping the courier released by a cancellation."""

    async def handle(self, event: DomainEvent) -> None:
        if isinstance(event, OrderCreated):
            audit_logger.info(
                "order=%s event=created requester=%s price=%d",
                event.order.order_id,
                event.order.requester,
                event.order.offered_price,
            )
        elif isinstance(event, OrderStatusChanged):
            audit_logger.info(
                "order=%s event=transition from=%s to=%s actor=%s role=%s courier=%s previous_courier=%s",
                event.order.order_id,
                event.previous_state.value,
                event.order.state.value,
                event.actor.identity,
                event.actor.role.value,
                event.order.courier,
                event.order.previous_courier,
            )
        elif isinstance(event, OrderRated):
            audit_logger.info(
                "order=%s event=rated rater=%s",
                event.order.order_id,
                event.rater.identity,
            )
