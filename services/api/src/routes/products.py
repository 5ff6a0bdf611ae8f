"""
API endpoints for the product catalogue.

POST   /products                  - list produce (farmer)
GET    /products                  - search the catalogue (public)
GET    /products/featured         - featured products open for bidding
GET    /products/me               - farmer's own products
GET    /products/{id}             - product detail (counts a view)
PUT    /products/{id}             - edit own unsold product (farmer)
DELETE /products/{id}             - cancel or remove own product (farmer)
GET    /products/{id}/highest-bid - current leading open bid
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from models.entities.couchbase.products import Product, ProductCategory, ProductData, ProductStatus
from models.errors import MarketplaceError
from models.operations.bids import bid_get_highest_active
from models.operations.products import (
    SORT_FIELDS,
    product_create,
    product_delete,
    product_get,
    product_list_by_farmer,
    product_list_featured,
    product_search,
    product_update,
    product_view,
)
from utils import log

from .bids import BidResponse, bid_to_response
from .common import Pagination, page_items, pagination_from, to_http_exception
from .dependencies import require_farmer

logger = log.get_logger(__name__)

router = APIRouter(prefix="/products", tags=["products"])


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------

class CreateProductRequest(BaseModel):
    # Field constraints are enforced by the product entity so that violations
    # come back as a single per-field error list.
    name: str
    category: str
    description: str
    quantity: Dict[str, Any]
    base_price: float
    minimum_bid_increment: Optional[float] = None
    images: List[str] = []
    location: Dict[str, Any]
    quality: Optional[Dict[str, Any]] = None
    harvest_date: datetime
    available_from: Optional[datetime] = None
    available_until: datetime
    bidding_end_time: datetime
    tags: List[str] = []
    specifications: Dict[str, str] = {}


class ProductResponse(ProductData):
    id: str
    time_remaining_seconds: float = 0


class ProductListResponse(BaseModel):
    products: List[ProductResponse]
    pagination: Pagination


class DeleteProductResponse(BaseModel):
    message: str
    result: str


class HighestBidResponse(BaseModel):
    bid: Optional[BidResponse] = None


def _product_to_response(product: Product) -> ProductResponse:
    return ProductResponse(
        id=product.id,
        time_remaining_seconds=product.data.time_remaining_seconds(),
        **product.data.model_dump(),
    )


# ---------------------------------------------------------------------------
# POST /products - create
# ---------------------------------------------------------------------------

@router.post("", response_model=ProductResponse, status_code=201)
async def route_product_create(
    body: CreateProductRequest,
    user: dict = Depends(require_farmer),
):
    try:
        product = await product_create(user["sub"], body.model_dump(exclude_none=True))
    except MarketplaceError as e:
        raise to_http_exception(e)
    return _product_to_response(product)


# ---------------------------------------------------------------------------
# Listings
# ---------------------------------------------------------------------------

@router.get("", response_model=ProductListResponse)
async def route_products_search(
    category: Optional[ProductCategory] = None,
    city: Optional[str] = None,
    state: Optional[str] = None,
    min_price: Optional[float] = Query(default=None, ge=0, allow_inf_nan=False),
    max_price: Optional[float] = Query(default=None, ge=0, allow_inf_nan=False),
    status: Optional[ProductStatus] = "active",
    search: Optional[str] = None,
    sort: str = Query(default="newest", pattern=f"^({'|'.join(SORT_FIELDS)})$"),
    page: int = Query(default=1, ge=1),
    limit: Optional[int] = Query(default=None, ge=1),
):
    """Search the catalogue; by default only products still open for bidding."""
    result = await product_search(
        category=category,
        city=city,
        state=state,
        min_price=min_price,
        max_price=max_price,
        status=status,
        search=search,
        sort=sort,
        page=page,
        limit=limit,
    )
    return ProductListResponse(
        products=page_items(result, _product_to_response),
        pagination=pagination_from(result),
    )


@router.get("/featured", response_model=List[ProductResponse])
async def route_products_featured(limit: int = Query(default=8, ge=1, le=50)):
    products = await product_list_featured(limit=limit)
    return [_product_to_response(p) for p in products]


@router.get("/me", response_model=ProductListResponse)
async def route_products_mine(
    status: Optional[ProductStatus] = None,
    page: int = Query(default=1, ge=1),
    limit: Optional[int] = Query(default=None, ge=1),
    user: dict = Depends(require_farmer),
):
    result = await product_list_by_farmer(user["sub"], status=status, page=page, limit=limit)
    return ProductListResponse(
        products=page_items(result, _product_to_response),
        pagination=pagination_from(result),
    )


# ---------------------------------------------------------------------------
# Single product
# ---------------------------------------------------------------------------

@router.get("/{product_id}", response_model=ProductResponse)
async def route_product_detail(product_id: str):
    try:
        product = await product_view(product_id)
    except MarketplaceError as e:
        raise to_http_exception(e)
    return _product_to_response(product)


@router.put("/{product_id}", response_model=ProductResponse)
async def route_product_update(
    product_id: str,
    body: Dict[str, Any],
    user: dict = Depends(require_farmer),
):
    try:
        product = await product_update(product_id, user["sub"], body)
    except MarketplaceError as e:
        raise to_http_exception(e)
    return _product_to_response(product)


@router.delete("/{product_id}", response_model=DeleteProductResponse)
async def route_product_delete(product_id: str, user: dict = Depends(require_farmer)):
    try:
        result, _ = await product_delete(product_id, user["sub"])
    except MarketplaceError as e:
        raise to_http_exception(e)
    message = "Product cancelled (it has bids)" if result == "cancelled" else "Product deleted"
    return DeleteProductResponse(message=message, result=result)


@router.get("/{product_id}/highest-bid", response_model=HighestBidResponse)
async def route_product_highest_bid(product_id: str):
    product = await product_get(product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    bid = await bid_get_highest_active(product_id)
    return HighestBidResponse(bid=bid_to_response(bid) if bid else None)
