from typing import Optional, Literal
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, model_validator
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData

from .common import Money, Quantity, UtcDatetime, utc_now

BidStatus = Literal["active", "accepted", "rejected", "withdrawn", "expired"]
DeliveryPreference = Literal["pickup", "delivery", "negotiable"]
PaymentMethod = Literal["cash", "upi", "bank_transfer", "crypto", "cod"]


class CounterOffer(BaseModel):
    amount: Money
    message: Optional[str] = Field(default=None, max_length=500)


class BidResponse(BaseModel):
    """The farmer's answer to a bid."""
    status: Literal["pending", "accepted", "rejected", "countered"] = "pending"
    message: Optional[str] = Field(default=None, max_length=500)
    responded_at: Optional[datetime] = None
    counter_offer: Optional[CounterOffer] = None


class NotificationState(BaseModel):
    sent: bool = False
    sent_at: Optional[datetime] = None
    read: bool = False
    read_at: Optional[datetime] = None


def resolve_bid_status(data: "BidData", now: datetime) -> str:
    """Status the bid has at *now*: an active bid past valid_until is expired."""
    if data.status == "active" and data.valid_until < now:
        return "expired"
    return data.status


class BidData(BaseCouchbaseEntityData):
    model_config = ConfigDict(str_strip_whitespace=True)

    product_id: str
    buyer_id: str
    amount: Money
    quantity: Quantity
    status: BidStatus = "active"
    message: Optional[str] = Field(default=None, max_length=500)
    delivery_preference: DeliveryPreference = "negotiable"
    payment_method: PaymentMethod = "bank_transfer"
    valid_until: UtcDatetime
    auto_renew: bool = False

    # Position in the product's bid sequence, taken from the product counter
    bid_number: int = 0
    is_highest: bool = False
    previous_bid_amount: Optional[Money] = None
    bid_increment: float = Field(default=0, allow_inf_nan=False)

    response: BidResponse = BidResponse()
    notification: NotificationState = NotificationState()

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @model_validator(mode="after")
    def _expire(self) -> "BidData":
        self.status = resolve_bid_status(self, utc_now())
        return self

    def before_save(self) -> None:
        self.status = resolve_bid_status(self, utc_now())


class Bid(BaseModelCouchbase[BidData]):
    _collection_name = "bids"
