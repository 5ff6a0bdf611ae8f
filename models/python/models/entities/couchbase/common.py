"""Value objects shared by several marketplace documents."""

from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import AfterValidator, BaseModel, Field
from typing_extensions import Annotated


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # Naive datetimes from clients are taken to be UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]

PINCODE_PATTERN = r"^[0-9]{6}$"
PHONE_PATTERN = r"^[0-9]{10}$"

# Non-negative and finite
Money = Annotated[float, Field(ge=0, allow_inf_nan=False)]

QuantityUnit = Literal["kg", "quintal", "ton", "litre", "dozen", "piece"]


class Quantity(BaseModel):
    value: float = Field(ge=0, allow_inf_nan=False)
    unit: QuantityUnit


class Coordinates(BaseModel):
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)


class Location(BaseModel):
    address: str = Field(min_length=1)
    city: str = Field(min_length=1)
    state: str = Field(min_length=1)
    pincode: str = Field(pattern=PINCODE_PATTERN)
    coordinates: Optional[Coordinates] = None
