"""
API endpoints for transport fulfilment.

POST   /transports               - arrange transport for an accepted bid (transporter)
GET    /transports               - all transports, optionally by status
GET    /transports/me            - transports the caller takes part in
GET    /transports/active        - transporter's in-flight jobs
GET    /transports/{id}          - transport detail
PUT    /transports/{id}/status   - advance the delivery status (transporter)
PUT    /transports/{id}/cancel   - cancel a pending or confirmed transport
POST   /transports/{id}/rating   - rate a delivered transport (farmer or buyer)
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from models.entities.couchbase.transports import Transport, TransportData, TransportStatus
from models.errors import MarketplaceError
from models.operations.transports import (
    transport_add_rating,
    transport_cancel,
    transport_create,
    transport_get,
    transport_list,
    transport_list_active,
    transport_list_for_user,
    transport_update_status,
)
from utils import log

from .common import Pagination, page_items, pagination_from, to_http_exception
from .dependencies import current_user_get, require_farmer_or_buyer, require_transporter

logger = log.get_logger(__name__)

router = APIRouter(prefix="/transports", tags=["transports"])


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------

class CreateTransportRequest(BaseModel):
    product_id: str
    bid_id: str
    pickup_location: Dict[str, Any]
    delivery_location: Dict[str, Any]
    vehicle: Dict[str, Any]
    cost: Dict[str, Any]
    distance: Dict[str, Any]
    estimated_duration: Dict[str, Any]
    scheduled_pickup_time: datetime
    scheduled_delivery_time: datetime
    notes: Optional[str] = None
    payment_method: Optional[str] = None


class UpdateStatusRequest(BaseModel):
    status: TransportStatus
    location: Optional[Dict[str, Any]] = None
    note: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class RatingRequest(BaseModel):
    score: int
    review: Optional[str] = None


class TransportResponse(TransportData):
    id: str
    is_delayed: bool = False


class TransportListResponse(BaseModel):
    transports: List[TransportResponse]
    pagination: Pagination


def _transport_to_response(transport: Transport) -> TransportResponse:
    return TransportResponse(
        id=transport.id,
        is_delayed=transport.data.is_delayed(),
        **transport.data.model_dump(),
    )


def _transport_page_to_response(result) -> TransportListResponse:
    return TransportListResponse(
        transports=page_items(result, _transport_to_response),
        pagination=pagination_from(result),
    )


# ---------------------------------------------------------------------------
# POST /transports - create
# ---------------------------------------------------------------------------

@router.post("", response_model=TransportResponse, status_code=201)
async def route_transport_create(
    body: CreateTransportRequest,
    user: dict = Depends(require_transporter),
):
    """Arrange transport for a product whose bid has been accepted."""
    try:
        transport = await transport_create(
            transporter_id=user["sub"],
            **body.model_dump(),
        )
    except MarketplaceError as e:
        raise to_http_exception(e)
    return _transport_to_response(transport)


# ---------------------------------------------------------------------------
# Listings
# ---------------------------------------------------------------------------

@router.get("", response_model=TransportListResponse)
async def route_transports_list(
    status: Optional[TransportStatus] = None,
    page: int = Query(default=1, ge=1),
    limit: Optional[int] = Query(default=None, ge=1),
    user: dict = Depends(current_user_get),
):
    result = await transport_list(status=status, page=page, limit=limit)
    return _transport_page_to_response(result)


@router.get("/me", response_model=TransportListResponse)
async def route_transports_mine(
    status: Optional[TransportStatus] = None,
    page: int = Query(default=1, ge=1),
    limit: Optional[int] = Query(default=None, ge=1),
    user: dict = Depends(current_user_get),
):
    """Transports where the caller is the farmer, buyer or transporter (by role)."""
    if not user.get("role"):
        raise HTTPException(status_code=400, detail="Complete onboarding to choose a role first")
    try:
        result = await transport_list_for_user(user["sub"], user["role"], status=status, page=page, limit=limit)
    except MarketplaceError as e:
        raise to_http_exception(e)
    return _transport_page_to_response(result)


@router.get("/active", response_model=List[TransportResponse])
async def route_transports_active(user: dict = Depends(require_transporter)):
    transports = await transport_list_active(user["sub"])
    return [_transport_to_response(t) for t in transports]


# ---------------------------------------------------------------------------
# Single transport
# ---------------------------------------------------------------------------

@router.get("/{transport_id}", response_model=TransportResponse)
async def route_transport_detail(transport_id: str, user: dict = Depends(current_user_get)):
    transport = await transport_get(transport_id)
    if not transport:
        raise HTTPException(status_code=404, detail="Transport not found")
    return _transport_to_response(transport)


@router.put("/{transport_id}/status", response_model=TransportResponse)
async def route_transport_update_status(
    transport_id: str,
    body: UpdateStatusRequest,
    user: dict = Depends(require_transporter),
):
    try:
        transport = await transport_update_status(
            transport_id,
            user["sub"],
            body.status,
            location=body.location,
            note=body.note,
        )
    except MarketplaceError as e:
        raise to_http_exception(e)
    return _transport_to_response(transport)


@router.put("/{transport_id}/cancel", response_model=TransportResponse)
async def route_transport_cancel(
    transport_id: str,
    body: Optional[CancelRequest] = None,
    user: dict = Depends(current_user_get),
):
    try:
        transport = await transport_cancel(transport_id, user["sub"], body.reason if body else None)
    except MarketplaceError as e:
        raise to_http_exception(e)
    return _transport_to_response(transport)


@router.post("/{transport_id}/rating", response_model=TransportResponse)
async def route_transport_rate(
    transport_id: str,
    body: RatingRequest,
    user: dict = Depends(require_farmer_or_buyer),
):
    try:
        transport = await transport_add_rating(transport_id, user["sub"], body.score, body.review)
    except MarketplaceError as e:
        raise to_http_exception(e)
    return _transport_to_response(transport)
