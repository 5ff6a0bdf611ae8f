"""
API endpoints for bidding.

POST   /bids                     - place a bid (buyer)
GET    /bids/me                  - buyer's own bids
GET    /bids/received            - bids on the farmer's products
GET    /bids/product/{id}        - open and accepted bids on a product
PUT    /bids/{id}/accept         - accept a bid, selling the product (farmer)
PUT    /bids/{id}/reject         - reject a bid (farmer)
PUT    /bids/{id}/counter        - counter-offer (farmer)
PUT    /bids/{id}/withdraw       - withdraw own bid (buyer)
PUT    /bids/{id}/read           - mark the bid notification read (buyer)
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from models.entities.couchbase.bids import Bid, BidData, BidStatus
from models.errors import MarketplaceError
from models.operations.bids import (
    bid_accept,
    bid_counter_offer,
    bid_list_by_buyer,
    bid_list_for_product,
    bid_list_received,
    bid_mark_read,
    bid_reject,
    bid_submit,
    bid_withdraw,
)
from utils import log

from .common import Pagination, page_items, pagination_from, to_http_exception
from .dependencies import current_user_get, require_buyer, require_farmer

logger = log.get_logger(__name__)

router = APIRouter(prefix="/bids", tags=["bids"])


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------

class PlaceBidRequest(BaseModel):
    product_id: str
    amount: float = Field(allow_inf_nan=False)
    quantity: Optional[Dict[str, Any]] = None
    delivery_preference: Optional[str] = None
    payment_method: Optional[str] = None
    message: Optional[str] = None


class RespondRequest(BaseModel):
    message: Optional[str] = None


class CounterOfferRequest(BaseModel):
    amount: float = Field(allow_inf_nan=False)
    message: Optional[str] = None


class BidResponse(BidData):
    id: str


class BidListResponse(BaseModel):
    bids: List[BidResponse]
    pagination: Pagination


def bid_to_response(bid: Bid) -> BidResponse:
    return BidResponse(id=bid.id, **bid.data.model_dump())


def _bid_page_to_response(result) -> BidListResponse:
    return BidListResponse(bids=page_items(result, bid_to_response), pagination=pagination_from(result))


# ---------------------------------------------------------------------------
# POST /bids - place a bid
# ---------------------------------------------------------------------------

@router.post("", response_model=BidResponse, status_code=201)
async def route_bid_place(
    body: PlaceBidRequest,
    request: Request,
    user: dict = Depends(require_buyer),
):
    """Place a bid on a product open for bidding."""
    try:
        bid = await bid_submit(
            product_id=body.product_id,
            buyer_id=user["sub"],
            amount=body.amount,
            quantity=body.quantity,
            delivery_preference=body.delivery_preference,
            payment_method=body.payment_method,
            message=body.message,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )
    except MarketplaceError as e:
        raise to_http_exception(e)
    return bid_to_response(bid)


# ---------------------------------------------------------------------------
# Listings
# ---------------------------------------------------------------------------

@router.get("/me", response_model=BidListResponse)
async def route_bids_mine(
    status: Optional[BidStatus] = None,
    page: int = Query(default=1, ge=1),
    limit: Optional[int] = Query(default=None, ge=1),
    user: dict = Depends(require_buyer),
):
    result = await bid_list_by_buyer(user["sub"], status=status, page=page, limit=limit)
    return _bid_page_to_response(result)


@router.get("/received", response_model=BidListResponse)
async def route_bids_received(
    status: Optional[BidStatus] = None,
    page: int = Query(default=1, ge=1),
    limit: Optional[int] = Query(default=None, ge=1),
    user: dict = Depends(require_farmer),
):
    result = await bid_list_received(user["sub"], status=status, page=page, limit=limit)
    return _bid_page_to_response(result)


@router.get("/product/{product_id}", response_model=BidListResponse)
async def route_bids_for_product(
    product_id: str,
    page: int = Query(default=1, ge=1),
    limit: Optional[int] = Query(default=None, ge=1),
    user: dict = Depends(current_user_get),
):
    """Bid history for a product, highest amount first."""
    try:
        result = await bid_list_for_product(product_id, page=page, limit=limit)
    except MarketplaceError as e:
        raise to_http_exception(e)
    return _bid_page_to_response(result)


# ---------------------------------------------------------------------------
# Farmer responses
# ---------------------------------------------------------------------------

@router.put("/{bid_id}/accept", response_model=BidResponse)
async def route_bid_accept(
    bid_id: str,
    body: Optional[RespondRequest] = None,
    user: dict = Depends(require_farmer),
):
    try:
        bid = await bid_accept(bid_id, user["sub"], body.message if body else None)
    except MarketplaceError as e:
        raise to_http_exception(e)
    return bid_to_response(bid)


@router.put("/{bid_id}/reject", response_model=BidResponse)
async def route_bid_reject(
    bid_id: str,
    body: Optional[RespondRequest] = None,
    user: dict = Depends(require_farmer),
):
    try:
        bid = await bid_reject(bid_id, user["sub"], body.message if body else None)
    except MarketplaceError as e:
        raise to_http_exception(e)
    return bid_to_response(bid)


@router.put("/{bid_id}/counter", response_model=BidResponse)
async def route_bid_counter(
    bid_id: str,
    body: CounterOfferRequest,
    user: dict = Depends(require_farmer),
):
    try:
        bid = await bid_counter_offer(bid_id, user["sub"], body.amount, body.message)
    except MarketplaceError as e:
        raise to_http_exception(e)
    return bid_to_response(bid)


# ---------------------------------------------------------------------------
# Buyer actions
# ---------------------------------------------------------------------------

@router.put("/{bid_id}/withdraw", response_model=BidResponse)
async def route_bid_withdraw(bid_id: str, user: dict = Depends(require_buyer)):
    try:
        bid = await bid_withdraw(bid_id, user["sub"])
    except MarketplaceError as e:
        raise to_http_exception(e)
    return bid_to_response(bid)


@router.put("/{bid_id}/read", response_model=BidResponse)
async def route_bid_mark_read(bid_id: str, user: dict = Depends(require_buyer)):
    try:
        bid = await bid_mark_read(bid_id, user["sub"])
    except MarketplaceError as e:
        raise to_http_exception(e)
    return bid_to_response(bid)
