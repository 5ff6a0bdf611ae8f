from typing import List, Optional, Literal
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, field_validator
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData

from .common import PHONE_PATTERN, PINCODE_PATTERN

UserRole = Literal["farmer", "buyer", "transporter"]


class Address(BaseModel):
    street: Optional[str] = None
    city: str
    state: str
    pincode: str = Field(pattern=PINCODE_PATTERN)
    country: str = "India"


class FarmerDetails(BaseModel):
    farm_size: Optional[float] = Field(default=None, ge=0)
    farm_type: Optional[Literal["organic", "conventional", "mixed"]] = None
    experience: Optional[int] = Field(default=None, ge=0)
    certifications: List[str] = []


class BuyerDetails(BaseModel):
    business_name: Optional[str] = None
    gst_number: Optional[str] = None
    business_type: Optional[Literal["retailer", "wholesaler", "restaurant", "processor", "other"]] = None


class TransporterDetails(BaseModel):
    vehicle_type: Optional[Literal["truck", "van", "tempo", "refrigerated"]] = None
    vehicle_number: Optional[str] = None
    license_number: Optional[str] = None
    capacity: Optional[float] = Field(default=None, ge=0)

    @field_validator("vehicle_number")
    @classmethod
    def _upper(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if v else v


class RatingAggregate(BaseModel):
    average: float = Field(default=0.0, ge=0, le=5)
    count: int = Field(default=0, ge=0)


class UserData(BaseCouchbaseEntityData):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str
    name: Optional[str] = Field(default=None, min_length=2, max_length=50)
    # None until onboarding picks one
    role: Optional[UserRole] = None
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)
    address: Optional[Address] = None
    profile_image: Optional[str] = None
    farmer_details: Optional[FarmerDetails] = None
    buyer_details: Optional[BuyerDetails] = None
    transporter_details: Optional[TransporterDetails] = None
    rating: RatingAggregate = RatingAggregate()
    verified: bool = False
    active: bool = True
    last_login: Optional[datetime] = None
    wallet_address: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _lower_email(cls, v: str) -> str:
        return v.lower()


class User(BaseModelCouchbase[UserData]):
    _collection_name = "users"
