from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from models.entities.couchbase.users import (
    Address,
    BuyerDetails,
    FarmerDetails,
    RatingAggregate,
    TransporterDetails,
    User,
    UserRole,
)
from models.errors import MarketplaceError
from models.operations.users import (
    user_deactivate,
    user_get,
    user_get_data_for_frontend,
    user_list,
    user_update_onboarding,
)
from utils import log

from .common import Pagination, page_items, pagination_from, to_http_exception
from .dependencies import current_user_get

logger = log.get_logger(__name__)

router = APIRouter(tags=["users"])


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------

class OnboardingRequest(BaseModel):
    role: Optional[UserRole] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[Dict[str, Any]] = None
    profile_image: Optional[str] = None
    farmer_details: Optional[Dict[str, Any]] = None
    buyer_details: Optional[Dict[str, Any]] = None
    transporter_details: Optional[Dict[str, Any]] = None
    wallet_address: Optional[str] = None


class PublicUserResponse(BaseModel):
    id: str
    name: Optional[str] = None
    role: Optional[str] = None
    address: Optional[Address] = None
    profile_image: Optional[str] = None
    farmer_details: Optional[FarmerDetails] = None
    buyer_details: Optional[BuyerDetails] = None
    transporter_details: Optional[TransporterDetails] = None
    rating: RatingAggregate
    verified: bool


class UserListResponse(BaseModel):
    users: List[PublicUserResponse]
    pagination: Pagination


def _user_to_public(user: User) -> PublicUserResponse:
    d = user.data
    return PublicUserResponse(
        id=user.id,
        name=d.name,
        role=d.role,
        address=d.address,
        profile_image=d.profile_image,
        farmer_details=d.farmer_details,
        buyer_details=d.buyer_details,
        transporter_details=d.transporter_details,
        rating=d.rating,
        verified=d.verified,
    )


# ---------------------------------------------------------------------------
# Own profile
# ---------------------------------------------------------------------------

@router.get("/user_data", response_model=Dict[str, Any])
async def route_user_data_get(
    user: dict = Depends(current_user_get)
) -> Dict[str, Any]:
    """
    Retrieves the profile of the authenticated user.
    """
    user_id = user["sub"]
    try:
        return await user_get_data_for_frontend(user_id)
    except MarketplaceError as e:
        raise to_http_exception(e)


@router.put("/user_data/onboarding", response_model=Dict[str, Any])
async def route_user_onboarding(
    body: OnboardingRequest,
    user: dict = Depends(current_user_get),
) -> Dict[str, Any]:
    """
    Saves onboarding data (role, contact details, role-specific details).
    """
    user_id = user["sub"]
    try:
        updated = await user_update_onboarding(user_id, body.model_dump(exclude_none=True))
    except MarketplaceError as e:
        raise to_http_exception(e)
    logger.info(f"User {user_id} updated profile (role {updated.data.role})")
    return {"user": {"id": updated.id, **updated.data.model_dump(mode="json")}}


@router.post("/user_data/deactivate", response_model=Dict[str, Any])
async def route_user_deactivate(user: dict = Depends(current_user_get)) -> Dict[str, Any]:
    user_id = user["sub"]
    try:
        await user_deactivate(user_id)
    except MarketplaceError as e:
        raise to_http_exception(e)
    logger.info(f"User {user_id} deactivated their account")
    return {"message": "Account deactivated"}


# ---------------------------------------------------------------------------
# Directory
# ---------------------------------------------------------------------------

@router.get("/users", response_model=UserListResponse)
async def route_users_list(
    role: Optional[UserRole] = None,
    city: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    limit: Optional[int] = Query(default=None, ge=1),
    user: dict = Depends(current_user_get),
):
    result = await user_list(role=role, city=city, page=page, limit=limit)
    return UserListResponse(users=page_items(result, _user_to_public), pagination=pagination_from(result))


@router.get("/users/{user_id}", response_model=PublicUserResponse)
async def route_user_get(user_id: str, user: dict = Depends(current_user_get)):
    found = await user_get(user_id)
    if not found or not found.data.active:
        raise HTTPException(status_code=404, detail="User not found")
    return _user_to_public(found)
