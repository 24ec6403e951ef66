"""
Records of the dispatch core: orders, courier positions, callers and the tracking snapshot.
"""
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator

from mandados.order_state import ASSIGNED_STATES, OrderState


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes coming from clients are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Role(str, Enum):
    CUSTOMER = "customer"
    COURIER = "courier"
    ADMINISTRATOR = "administrator"


class Category(str, Enum):
    DOCUMENTS = "documents"
    FOOD = "food"
    PHARMACY = "pharmacy"
    MARKET = "market"
    OTHER = "other"


class Caller(BaseModel):
    """Authenticated identity and role, as resolved by the identity service."""
    model_config = {"frozen": True}

    identity: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMINISTRATOR


class Coordinates(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class Place(BaseModel):
    address: str
    lat: float | None = Field(default=None, ge=-90, le=90)
    lng: float | None = Field(default=None, ge=-180, le=180)

    def coordinates(self) -> Coordinates | None:
        if self.lat is None or self.lng is None:
            return None
        return Coordinates(lat=self.lat, lng=self.lng)


class OrderDetails(BaseModel):
    """What a requester submits. Business rules (minimum price, future deadline) are checked by the engine."""
    description: str
    category: Category = Category.OTHER
    offered_price: int
    notes: str | None = None
    pickup: Place
    delivery: Place
    deadline: datetime

    @field_validator("deadline")
    @classmethod
    def _deadline_utc(cls, v: datetime) -> datetime:
        return as_utc(v)


class PartyRating(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: str | None = None
    rated_at: datetime


class Order(BaseModel):
    order_id: str
    requester: str
    description: str
    category: Category
    offered_price: int
    notes: str | None = None
    pickup: Place
    delivery: Place
    deadline: datetime

    state: OrderState = OrderState.PENDING
    courier: str | None = None
    # Courier released by a cancellation, kept for disputes.
    previous_courier: str | None = None

    accepted_at: datetime | None = None
    en_route_at: datetime | None = None
    in_progress_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None

    # requester_rating: requester rates the courier; courier_rating: courier rates the requester.
    requester_rating: PartyRating | None = None
    courier_rating: PartyRating | None = None

    created_at: datetime
    updated_at: datetime

    @model_validator(mode="after")
    def _courier_matches_state(self) -> "Order":
        if (self.courier is not None) != (self.state in ASSIGNED_STATES):
            raise ValueError(f"courier must be set exactly when the order is assigned (state={self.state.value})")
        return self

    def latest_timestamp(self) -> datetime:
        stamps = [
            self.created_at,
            self.accepted_at,
            self.en_route_at,
            self.in_progress_at,
            self.completed_at,
            self.cancelled_at,
        ]
        return max(s for s in stamps if s is not None)


class CourierLocation(BaseModel):
    courier: str
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    updated_at: datetime


class CourierAvailability(BaseModel):
    courier: str
    available: bool


class TrackingView(BaseModel):
    order_id: str
    state: OrderState
    destination: Coordinates | None = None
    courier: str | None = None
    courier_location: Coordinates | None = None
    location_updated_at: datetime | None = None
    stale: bool = False
    eta_minutes: int | None = None


class CourierSummary(BaseModel):
    """Fleet headcount for the admin dashboard. Only couriers that ever reported a position are known."""
    total: int = 0
    available: int = 0
    # reported a position within the activity window
    active: int = 0


class CourierStats(BaseModel):
    completed: int = 0
    active: int = 0
    cancelled: int = 0
    completed_this_month: int = 0
    total_earnings: int = 0
    earnings_this_month: int = 0
    average_rating: float | None = None
    rating_count: int = 0
