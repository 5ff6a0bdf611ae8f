from typing import Dict, FrozenSet, List, Optional, Literal
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData

from .common import Coordinates, Location, Money, PHONE_PATTERN, UtcDatetime, utc_now

TransportStatus = Literal[
    "pending",
    "confirmed",
    "in_transit",
    "picked_up",
    "out_for_delivery",
    "delivered",
    "cancelled",
    "failed",
]

# Forward chain of the delivery lifecycle
STATUS_CHAIN = ("pending", "confirmed", "in_transit", "picked_up", "out_for_delivery", "delivered")
TERMINAL_STATUSES: FrozenSet[str] = frozenset({"delivered", "cancelled", "failed"})
ACTIVE_STATUSES = ("confirmed", "in_transit", "picked_up", "out_for_delivery")
CANCELLABLE_STATUSES = ("pending", "confirmed")


def _build_transitions() -> Dict[str, FrozenSet[str]]:
    table: Dict[str, FrozenSet[str]] = {}
    for i, status in enumerate(STATUS_CHAIN):
        if status in TERMINAL_STATUSES:
            table[status] = frozenset()
        else:
            table[status] = frozenset(STATUS_CHAIN[i + 1:]) | {"cancelled", "failed"}
    table["cancelled"] = frozenset()
    table["failed"] = frozenset()
    return table


# status -> statuses reachable from it in one update
TRANSITIONS: Dict[str, FrozenSet[str]] = _build_transitions()


def can_transition(current: str, new: str) -> bool:
    return new in TRANSITIONS.get(current, frozenset())


class ContactPerson(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)


class TransportLocation(Location):
    contact_person: Optional[ContactPerson] = None


class Vehicle(BaseModel):
    type: Literal["truck", "van", "tempo", "refrigerated"]
    number: str = Field(min_length=1)
    capacity: Optional[float] = Field(default=None, ge=0)

    @field_validator("number")
    @classmethod
    def _upper(cls, v: str) -> str:
        return v.strip().upper()


class TransportCost(BaseModel):
    base_fare: Money
    distance_charge: Money = 0
    loading_charge: Money = 0
    unloading_charge: Money = 0
    additional_charges: Money = 0
    discount: Money = 0
    total: float = 0

    def compute_total(self) -> float:
        return (
            self.base_fare
            + self.distance_charge
            + self.loading_charge
            + self.unloading_charge
            + self.additional_charges
            - self.discount
        )

    @model_validator(mode="after")
    def _recompute_total(self) -> "TransportCost":
        self.total = self.compute_total()
        if self.total < 0:
            raise ValueError("discount cannot exceed the sum of charges")
        return self


class Distance(BaseModel):
    value: float = Field(ge=0)
    unit: Literal["km", "miles"] = "km"


class Duration(BaseModel):
    value: float = Field(ge=0)
    unit: Literal["hours", "days"] = "hours"


class TrackingLocation(BaseModel):
    address: Optional[str] = None
    coordinates: Optional[Coordinates] = None


class TrackingUpdate(BaseModel):
    status: TransportStatus
    location: Optional[TrackingLocation] = None
    note: Optional[str] = None
    timestamp: datetime


class TransportRating(BaseModel):
    score: int = Field(ge=1, le=5)
    review: Optional[str] = Field(default=None, max_length=500)
    rated_by: str
    rated_at: datetime


class TransportDocument(BaseModel):
    type: Literal["invoice", "receipt", "permit", "other"] = "other"
    url: str
    uploaded_at: datetime = Field(default_factory=utc_now)


class TransportData(BaseCouchbaseEntityData):
    model_config = ConfigDict(str_strip_whitespace=True)

    # References
    product_id: str
    bid_id: str
    farmer_id: str
    buyer_id: str
    transporter_id: str

    # Route
    pickup_location: TransportLocation
    delivery_location: TransportLocation
    distance: Distance
    estimated_duration: Duration

    vehicle: Vehicle
    cost: TransportCost

    # Schedule
    scheduled_pickup_time: UtcDatetime
    scheduled_delivery_time: UtcDatetime
    actual_pickup_time: Optional[UtcDatetime] = None
    actual_delivery_time: Optional[UtcDatetime] = None

    status: TransportStatus = "pending"
    tracking_updates: List[TrackingUpdate] = []

    payment_status: Literal["pending", "paid", "failed", "refunded"] = "pending"
    payment_method: Literal["cash", "upi", "bank_transfer", "wallet"] = "cash"

    rating: Optional[TransportRating] = None
    documents: List[TransportDocument] = []
    notes: Optional[str] = Field(default=None, max_length=1000)

    # Cancellation
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None

    def before_save(self) -> None:
        self.cost.total = self.cost.compute_total()

    def is_delayed(self, now: Optional[datetime] = None) -> bool:
        now = now or utc_now()
        if self.actual_delivery_time is None:
            return now > self.scheduled_delivery_time
        return self.actual_delivery_time > self.scheduled_delivery_time

    def is_party(self, user_id: str) -> bool:
        return user_id in (self.farmer_id, self.buyer_id, self.transporter_id)


class Transport(BaseModelCouchbase[TransportData]):
    _collection_name = "transports"
