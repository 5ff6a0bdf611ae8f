from typing import Dict, List, Optional, Literal
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, model_validator
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData

from .common import Location, Money, Quantity, UtcDatetime, utc_now

ProductCategory = Literal[
    "vegetables",
    "fruits",
    "grains",
    "pulses",
    "spices",
    "dairy",
    "meat",
    "poultry",
    "fish",
    "organic",
    "other",
]

ProductStatus = Literal["active", "bidding", "sold", "expired", "cancelled"]

# Statuses in which a product still accepts bids
BIDDABLE_STATUSES = ("active", "bidding")


class Quality(BaseModel):
    grade: Literal["A+", "A", "B+", "B", "C"] = "B"
    certification: Literal["organic", "pesticide-free", "none"] = "none"


def resolve_product_status(data: "ProductData", now: datetime) -> str:
    """Status the product has at *now*, with a closed bidding window applied."""
    if data.status in BIDDABLE_STATUSES and data.bidding_end_time < now:
        return "expired"
    return data.status


class ProductData(BaseCouchbaseEntityData):
    model_config = ConfigDict(str_strip_whitespace=True)

    # Ownership
    farmer_id: str

    # Listing content
    name: str = Field(min_length=3, max_length=100)
    category: ProductCategory
    description: str = Field(min_length=20, max_length=1000)
    quantity: Quantity
    images: List[str] = Field(min_length=1)
    location: Location
    quality: Quality = Quality()
    tags: List[str] = []
    specifications: Dict[str, str] = {}

    # Pricing
    base_price: Money
    current_price: Optional[Money] = None
    minimum_bid_increment: float = Field(default=10, ge=1, allow_inf_nan=False)

    # Schedule
    harvest_date: UtcDatetime
    available_from: UtcDatetime = Field(default_factory=utc_now)
    available_until: UtcDatetime
    bidding_end_time: UtcDatetime

    status: ProductStatus = "active"

    # Denormalized bid state (updated via CAS on each bid)
    total_bids: int = Field(default=0, ge=0)
    highest_bid_id: Optional[str] = None

    # Sale
    winner_id: Optional[str] = None
    sold_price: Optional[Money] = None
    sold_at: Optional[UtcDatetime] = None

    views: int = 0
    featured: bool = False
    verified: bool = False

    @model_validator(mode="after")
    def _price_and_status(self) -> "ProductData":
        if self.current_price is None:
            self.current_price = self.base_price
        if self.current_price < self.base_price:
            raise ValueError("current_price cannot be lower than base_price")
        self.status = resolve_product_status(self, utc_now())
        return self

    def before_save(self) -> None:
        self.status = resolve_product_status(self, utc_now())

    def time_remaining_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or utc_now()
        return max(0.0, (self.bidding_end_time - now).total_seconds())


class Product(BaseModelCouchbase[ProductData]):
    _collection_name = "products"
