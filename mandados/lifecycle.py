"""
Order Lifecycle Engine. The only code path that writes an order's state.

Every transition is a compare-and-set on the store: the expected state (and courier)
read by the engine must still hold when the write lands, otherwise the caller gets
ConflictError. Nothing here retries a lost race.
"""
import logging
import uuid
from datetime import datetime
from typing import Callable

from mandados.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from mandados.events import EventSink, OrderCreated, OrderRated, OrderStatusChanged
from mandados.locations import LocationRegistry
from mandados.metrics import order_conflicts_total
from mandados.models import Caller, CourierStats, Order, OrderDetails, PartyRating, Role, utcnow
from mandados.order_state import (
    ACTIVE_STATES,
    TERMINAL_STATES,
    TRANSITION_TIMESTAMPS,
    OrderState,
    is_valid_transition,
    next_in_sequence,
)
from mandados.store import OrderFilter, OrderStore

logger = logging.getLogger(__name__)

COURIER_LISTINGS = ("available", "active", "history", "recent")
RECENT_LIMIT = 5


def _conflict(operation: str, detail: str, order: Order | None = None) -> ConflictError:
    order_conflicts_total.labels(operation=operation).inc()
    current = order.state.value if order is not None else None
    logger.info("Conflict on %s: %s (state=%s)", operation, detail, current)
    return ConflictError(detail, current_state=current)


def _parse_state(value: OrderState | str) -> OrderState:
    try:
        return OrderState(value)
    except ValueError:
        raise ValidationError(f"unknown state {value!r}")


class OrderLifecycle:
    def __init__(
        self,
        store: OrderStore,
        events: EventSink,
        locations: LocationRegistry,
        min_offered_price: int = 1000,
        clock: Callable[[], datetime] = utcnow,
        new_id: Callable[[], str] = lambda: uuid.uuid4().hex,
    ):
        self._store = store
        self._events = events
        self._locations = locations
        self._min_price = min_offered_price
        self._clock = clock
        self._new_id = new_id

    async def get(self, order_id: str) -> Order:
        order = await self._store.find_by_id(order_id)
        if order is None:
            raise NotFoundError(f"order {order_id} not found")
        return order

    async def create(self, requester: Caller, details: OrderDetails) -> Order:
        if requester.role == Role.COURIER:
            raise AuthorizationError("couriers cannot request orders")
        description = details.description.strip()
        if not description:
            raise ValidationError("description is required")
        if details.offered_price < self._min_price:
            raise ValidationError(f"offered price must be at least {self._min_price}")
        now = self._clock()
        if details.deadline <= now:
            raise ValidationError("deadline must be in the future")
        if not details.pickup.address.strip() or not details.delivery.address.strip():
            raise ValidationError("pickup and delivery addresses are required")

        order = Order(
            order_id=self._new_id(),
            requester=requester.identity,
            description=description,
            category=details.category,
            offered_price=details.offered_price,
            notes=details.notes.strip() if details.notes else None,
            pickup=details.pickup,
            delivery=details.delivery,
            deadline=details.deadline,
            state=OrderState.PENDING,
            created_at=now,
            updated_at=now,
        )
        await self._store.insert(order)
        logger.info("Order %s created by %s (%s, %d)", order.order_id, requester.identity,
                    order.category.value, order.offered_price)
        await self._events.publish(OrderCreated(order=order))
        return order

    async def accept(self, order_id: str, courier: Caller) -> Order:
        if courier.role != Role.COURIER:
            raise AuthorizationError("only couriers can accept orders")
        order = await self.get(order_id)
        if order.state != OrderState.PENDING or order.courier is not None:
            raise _conflict("accept", "order is no longer available", order)
        now = max(self._clock(), order.latest_timestamp())
        if order.deadline <= now:
            raise _conflict("accept", "order deadline has passed", order)
        if not await self._locations.is_available(courier.identity):
            raise _conflict("accept", "courier is marked unavailable", order)

        updated = await self._store.conditional_update(
            order_id,
            {"state": OrderState.PENDING, "courier": None},
            {
                "state": OrderState.ACCEPTED,
                "courier": courier.identity,
                "accepted_at": now,
                "updated_at": now,
            },
        )
        if updated is None:
            raise _conflict("accept", "order was accepted by another courier", order)
        logger.info("Order %s accepted by %s", order_id, courier.identity)
        await self._events.publish(
            OrderStatusChanged(order=updated, previous_state=OrderState.PENDING, actor=courier)
        )
        return updated

    async def advance(self, order_id: str, courier: Caller, target_state: OrderState | str) -> Order:
        target = _parse_state(target_state)
        order = await self.get(order_id)
        if order.courier is None or order.courier != courier.identity:
            raise _conflict("advance", "caller is not the assigned courier", order)
        if order.state == OrderState.PENDING or next_in_sequence(order.state) != target:
            raise _conflict(
                "advance",
                f"cannot move from {order.state.value} to {target.value}",
                order,
            )

        now = max(self._clock(), order.latest_timestamp())
        updated = await self._store.conditional_update(
            order_id,
            {"state": order.state, "courier": courier.identity},
            {
                "state": target,
                TRANSITION_TIMESTAMPS[target]: now,
                "updated_at": now,
            },
        )
        if updated is None:
            raise _conflict("advance", "order changed concurrently", order)
        logger.info("Order %s moved %s -> %s by %s", order_id, order.state.value, target.value, courier.identity)
        await self._events.publish(
            OrderStatusChanged(order=updated, previous_state=order.state, actor=courier)
        )
        return updated

    async def cancel(self, order_id: str, caller: Caller) -> Order:
        order = await self.get(order_id)
        if not is_valid_transition(order.state, OrderState.CANCELLED):
            raise _conflict("cancel", f"order is already {order.state.value}", order)
        if not (caller.is_admin or (order.courier is not None and caller.identity == order.courier)):
            raise AuthorizationError("only the assigned courier or an administrator may cancel this order")

        now = max(self._clock(), order.latest_timestamp())
        new_fields = {
            "state": OrderState.CANCELLED,
            "courier": None,
            "cancelled_at": now,
            "updated_at": now,
        }
        if order.courier is not None:
            new_fields["previous_courier"] = order.courier
        updated = await self._store.conditional_update(
            order_id,
            {"state": order.state, "courier": order.courier},
            new_fields,
        )
        if updated is None:
            raise _conflict("cancel", "order changed concurrently", order)
        logger.info("Order %s cancelled by %s (released courier=%s)", order_id, caller.identity, order.courier)
        await self._events.publish(
            OrderStatusChanged(
                order=updated,
                previous_state=order.state,
                actor=caller,
                released_courier=order.courier,
            )
        )
        return updated

    async def rate(self, order_id: str, rater: Caller, rating: int, comment: str | None = None) -> Order:
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError("rating must be an integer between 1 and 5")
        order = await self.get(order_id)
        if rater.identity == order.requester:
            field = "requester_rating"
        elif order.courier is not None and rater.identity == order.courier:
            field = "courier_rating"
        else:
            raise AuthorizationError("only the requester or the courier can rate this order")
        if order.state != OrderState.COMPLETED:
            raise _conflict("rate", "only completed orders can be rated", order)
        if getattr(order, field) is not None:
            raise ValidationError("this party has already rated the order")

        now = self._clock()
        record = PartyRating(rating=rating, comment=comment.strip() if comment else None, rated_at=now)
        updated = await self._store.conditional_update(
            order_id,
            {"state": OrderState.COMPLETED, field: None},
            {field: record, "updated_at": now},
        )
        if updated is None:
            current = await self.get(order_id)
            if getattr(current, field) is not None:
                raise ValidationError("this party has already rated the order")
            raise _conflict("rate", "order changed concurrently", current)
        logger.info("Order %s rated %d by %s", order_id, rating, rater.identity)
        await self._events.publish(OrderRated(order=updated, rater=rater))
        return updated

    async def list_for_requester(self, caller: Caller) -> list[Order]:
        return await self._store.find(OrderFilter(requester=caller.identity))

    async def list_for_courier(self, caller: Caller, kind: str) -> list[Order]:
        if caller.role != Role.COURIER:
            raise AuthorizationError("couriers only")
        if kind == "available":
            if not await self._locations.is_available(caller.identity):
                return []
            return await self._store.find(
                OrderFilter(state=OrderState.PENDING, deadline_after=self._clock())
            )
        if kind == "active":
            return await self._store.find(
                OrderFilter(courier=caller.identity, state_in=sorted(ACTIVE_STATES))
            )
        if kind == "history":
            return await self._store.find(
                OrderFilter(courier_or_previous=caller.identity, state_in=sorted(TERMINAL_STATES))
            )
        if kind == "recent":
            # dashboard feed: last orders the courier touched, any state
            return await self._store.find(
                OrderFilter(courier_or_previous=caller.identity, order_by="updated_at", limit=RECENT_LIMIT)
            )
        raise ValidationError(f"unknown listing {kind!r}, expected one of {', '.join(COURIER_LISTINGS)}")

    async def courier_stats(self, caller: Caller) -> CourierStats:
        if caller.role != Role.COURIER:
            raise AuthorizationError("couriers only")
        orders = await self._store.find(OrderFilter(courier_or_previous=caller.identity))
        month_start = self._clock().replace(day=1, hour=0, minute=0, second=0, microsecond=0)

        stats = CourierStats()
        ratings = []
        for order in orders:
            if order.state == OrderState.COMPLETED and order.courier == caller.identity:
                stats.completed += 1
                stats.total_earnings += order.offered_price
                if order.completed_at and order.completed_at >= month_start:
                    stats.completed_this_month += 1
                    stats.earnings_this_month += order.offered_price
                if order.requester_rating is not None:
                    ratings.append(order.requester_rating.rating)
            elif order.state in ACTIVE_STATES and order.courier == caller.identity:
                stats.active += 1
            elif order.state == OrderState.CANCELLED and order.previous_courier == caller.identity:
                stats.cancelled += 1
        if ratings:
            stats.rating_count = len(ratings)
            stats.average_rating = round(sum(ratings) / len(ratings), 1)
        return stats
