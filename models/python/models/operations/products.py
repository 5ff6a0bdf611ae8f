import logging
from typing import Any, Dict, List, Literal, Optional, Tuple

from models.entities.couchbase.common import utc_now
from models.entities.couchbase.products import Product, ProductData
from models.errors import EntityValidationError, InvalidStateError, NotFoundError, UnauthorizedError
from models.operations.common import Page, build_entity_data, cas_retry, paginate

logger = logging.getLogger(__name__)

# Fields owned by the bidding engine or the system; never changed through update
PROTECTED_FIELDS = frozenset({
    "farmer_id",
    "status",
    "total_bids",
    "highest_bid_id",
    "current_price",
    "winner_id",
    "sold_price",
    "sold_at",
    "views",
    "featured",
    "verified",
    "created_at",
    "updated_at",
    "created_by_user_id",
})

SORT_FIELDS = {
    "newest": ["created_at DESC"],
    "oldest": ["created_at ASC"],
    "price_asc": ["current_price ASC"],
    "price_desc": ["current_price DESC"],
    "ending_soon": ["bidding_end_time ASC"],
    "popular": ["total_bids DESC", "views DESC"],
}


def _open_window_conditions() -> list:
    return [("status", "IN", ["active", "bidding"]), ("bidding_end_time", ">", utc_now())]


async def product_create(farmer_id: str, values: Dict[str, Any]) -> Product:
    if not values.get("images"):
        raise EntityValidationError("Validation error", ["images: At least one image is required"])
    values = {k: v for k, v in values.items() if k not in PROTECTED_FIELDS}
    values["farmer_id"] = farmer_id
    data = build_entity_data(ProductData, values)
    data.current_price = data.base_price
    product = await Product.create(data, user_id=farmer_id)
    logger.info(f"Product {product.id} listed by farmer {farmer_id}")
    return product


async def product_get(product_id: str) -> Optional[Product]:
    return await Product.get(product_id)


async def product_view(product_id: str) -> Product:
    """Fetch a product for display and count the view."""
    def bump(data: ProductData) -> None:
        data.views += 1

    return await cas_retry(Product, product_id, bump, not_found_message="Product not found")


async def _get_owned(product_id: str, farmer_id: str, action: str) -> Product:
    product = await Product.get(product_id)
    if not product:
        raise NotFoundError("Product not found")
    if product.data.farmer_id != farmer_id:
        raise UnauthorizedError(f"Not authorized to {action} this product")
    if product.data.status == "sold":
        raise InvalidStateError(f"Cannot {action} a sold product")
    return product


async def product_update(product_id: str, farmer_id: str, changes: Dict[str, Any]) -> Product:
    await _get_owned(product_id, farmer_id, "update")
    allowed = {
        k: v for k, v in changes.items()
        if k in ProductData.model_fields and k not in PROTECTED_FIELDS
    }

    def apply(data: ProductData) -> None:
        if data.status == "sold":
            raise InvalidStateError("Cannot update a sold product")
        merged = {**data.model_dump(), **allowed}
        # Without bids the asking price follows the base price
        if data.total_bids == 0 and "base_price" in allowed:
            merged["current_price"] = allowed["base_price"]
        updated = build_entity_data(ProductData, merged)
        for key in list(allowed) + ["current_price"]:
            setattr(data, key, getattr(updated, key))

    product = await cas_retry(Product, product_id, apply, not_found_message="Product not found")
    logger.info(f"Product {product_id} updated by farmer {farmer_id}: {sorted(allowed)}")
    return product


async def product_delete(product_id: str, farmer_id: str) -> Tuple[Literal["cancelled", "deleted"], Optional[Product]]:
    """Cancel a product that has bids, remove it otherwise."""
    product = await _get_owned(product_id, farmer_id, "delete")

    if product.data.total_bids > 0:
        def cancel(data: ProductData) -> None:
            if data.status == "sold":
                raise InvalidStateError("Cannot delete a sold product")
            data.status = "cancelled"

        product = await cas_retry(Product, product_id, cancel, not_found_message="Product not found")
        logger.info(f"Product {product_id} cancelled by farmer {farmer_id}")
        return "cancelled", product

    await Product.delete(product_id)
    logger.info(f"Product {product_id} deleted by farmer {farmer_id}")
    return "deleted", None


async def product_search(
    category: Optional[str] = None,
    city: Optional[str] = None,
    state: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    status: Optional[str] = "active",
    search: Optional[str] = None,
    sort: str = "newest",
    page: Optional[int] = None,
    limit: Optional[int] = None,
) -> Page[Product]:
    """Search the catalogue. ``status="active"`` means open for bidding."""
    conditions: List = []
    if status == "active":
        conditions += _open_window_conditions()
    elif status:
        conditions.append(("status", "=", status))
    if category:
        conditions.append(("category", "=", category))
    if city:
        conditions.append(("location.city", "ICONTAINS", city))
    if state:
        conditions.append(("location.state", "ICONTAINS", state))
    if min_price is not None:
        conditions.append(("current_price", ">=", min_price))
    if max_price is not None:
        conditions.append(("current_price", "<=", max_price))
    if search:
        conditions.append((
            "OR",
            [
                ("name", "ICONTAINS", search),
                ("description", "ICONTAINS", search),
                ("tags", "ANY_ICONTAINS", search),
            ],
        ))
    order_by = SORT_FIELDS.get(sort, SORT_FIELDS["newest"])
    return await paginate(Product, conditions, order_by, page, limit)


async def product_list_by_farmer(
    farmer_id: str,
    status: Optional[str] = None,
    page: Optional[int] = None,
    limit: Optional[int] = None,
) -> Page[Product]:
    conditions: List = [("farmer_id", "=", farmer_id)]
    if status:
        conditions.append(("status", "=", status))
    return await paginate(Product, conditions, ["created_at DESC"], page, limit)


async def product_list_featured(limit: int = 8) -> List[Product]:
    return await Product.find(
        [("featured", "=", True)] + _open_window_conditions(),
        order_by=["created_at DESC"],
        limit=limit,
    )


async def product_expire_overdue() -> int:
    """Persist the expired status of products whose bidding window has closed."""
    count = await Product.update_where(
        [("status", "IN", ["active", "bidding"]), ("bidding_end_time", "<=", utc_now())],
        {"status": "expired"},
    )
    if count:
        logger.info(f"Expired {count} product(s) past their bidding end time")
    return count
