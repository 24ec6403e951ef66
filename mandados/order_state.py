"""
Order lifecycle state machine. The only place that knows which state may follow which.
"""
from enum import Enum


class OrderState(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    EN_ROUTE = "en_route"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Delivery sequence; advance() may only move one step along it.
DELIVERY_SEQUENCE: list[OrderState] = [
    OrderState.PENDING,
    OrderState.ACCEPTED,
    OrderState.EN_ROUTE,
    OrderState.IN_PROGRESS,
    OrderState.COMPLETED,
]

# Current state -> allowed next states
VALID_TRANSITIONS: dict[OrderState, list[OrderState]] = {
    OrderState.PENDING: [OrderState.ACCEPTED, OrderState.CANCELLED],
    OrderState.ACCEPTED: [OrderState.EN_ROUTE, OrderState.CANCELLED],
    OrderState.EN_ROUTE: [OrderState.IN_PROGRESS, OrderState.CANCELLED],
    OrderState.IN_PROGRESS: [OrderState.COMPLETED, OrderState.CANCELLED],
    OrderState.COMPLETED: [],  # terminal
    OrderState.CANCELLED: [],  # terminal
}

TERMINAL_STATES = frozenset({OrderState.COMPLETED, OrderState.CANCELLED})

# States in which the order carries a courier obligation.
ASSIGNED_STATES = frozenset({
    OrderState.ACCEPTED,
    OrderState.EN_ROUTE,
    OrderState.IN_PROGRESS,
    OrderState.COMPLETED,
})

ACTIVE_STATES = frozenset({OrderState.ACCEPTED, OrderState.EN_ROUTE, OrderState.IN_PROGRESS})

# Timestamp field recorded when a state is reached.
TRANSITION_TIMESTAMPS: dict[OrderState, str] = {
    OrderState.ACCEPTED: "accepted_at",
    OrderState.EN_ROUTE: "en_route_at",
    OrderState.IN_PROGRESS: "in_progress_at",
    OrderState.COMPLETED: "completed_at",
    OrderState.CANCELLED: "cancelled_at",
}


def is_valid_transition(current_state: OrderState, new_state: OrderState) -> bool:
    """True if new_state is allowed after current_state."""
    return new_state in VALID_TRANSITIONS.get(current_state, [])


def next_in_sequence(state: OrderState) -> OrderState | None:
    """The single state advance() may move to from state, or None at the end of the sequence."""
    if state not in DELIVERY_SEQUENCE:
        return None
    idx = DELIVERY_SEQUENCE.index(state)
    if idx + 1 >= len(DELIVERY_SEQUENCE):
        return None
    return DELIVERY_SEQUENCE[idx + 1]
