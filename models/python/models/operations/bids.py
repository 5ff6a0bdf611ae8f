"""
Bidding engine.

The product document is the serialization point for bids: every bid claims
the next price on the product with a CAS-guarded read-modify-write
(``cas_retry``) that re-checks status, bidding window, ownership and the
minimum increment against the freshly read product. The claim hands out a
``bid_number`` from the product's bid counter; the sweeps that clear
``is_highest`` and withdraw a buyer's previous bid only touch bids with a
lower number, so concurrent bids converge on the latest claim.
"""

import logging
import uuid
from datetime import datetime
from typing import List, Optional

from clients import relay
from models.entities.couchbase.bids import Bid, BidData, BidStatus, CounterOffer
from models.entities.couchbase.common import utc_now
from models.entities.couchbase.products import BIDDABLE_STATUSES, Product, ProductData
from models.errors import InvalidStateError, NotFoundError, UnauthorizedError
from models.operations.common import Page, build_entity_data, cas_retry, entity_payload, page_window, paginate

logger = logging.getLogger(__name__)


def format_amount(amount: float) -> str:
    return f"₹{amount:.2f}"


def minimum_next_bid(product: ProductData) -> float:
    return product.current_price + product.minimum_bid_increment


def open_bid_conditions(now: datetime) -> list:
    """Active bids whose validity window has not closed yet."""
    return [("status", "=", "active"), ("valid_until", ">", now)]


# ---------------------------------------------------------------------------
# Preconditions
# ---------------------------------------------------------------------------

def _check_can_bid(product: ProductData, buyer_id: str, amount: float, now: datetime) -> None:
    """Raise ``InvalidStateError`` for the first failing bid precondition."""
    if product.status not in BIDDABLE_STATUSES and product.status != "expired":
        raise InvalidStateError("Product is not available for bidding")
    if product.status == "expired" or now >= product.bidding_end_time:
        raise InvalidStateError("Bidding period has ended")
    if product.farmer_id == buyer_id:
        raise InvalidStateError("You cannot bid on your own product")
    minimum = minimum_next_bid(product)
    if amount < minimum:
        raise InvalidStateError(f"Bid amount must be at least {format_amount(minimum)}")


async def _get_bid(bid_id: str) -> Bid:
    bid = await Bid.get(bid_id)
    if not bid:
        raise NotFoundError("Bid not found")
    return bid


async def _get_bid_and_owned_product(bid_id: str, farmer_id: str, action: str) -> tuple[Bid, Product]:
    bid = await _get_bid(bid_id)
    product = await Product.get(bid.data.product_id)
    if not product:
        raise NotFoundError("Product not found")
    if product.data.farmer_id != farmer_id:
        raise UnauthorizedError(f"Not authorized to {action} this bid")
    if bid.data.status != "active":
        raise InvalidStateError("Bid is not active")
    return bid, product


def _require_active(data: BidData) -> None:
    if data.status != "active":
        raise InvalidStateError("Bid is not active")


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------

async def bid_submit(
    product_id: str,
    buyer_id: str,
    amount: float,
    quantity: Optional[dict] = None,
    delivery_preference: Optional[str] = None,
    payment_method: Optional[str] = None,
    message: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Bid:
    """
    Place a bid on a product.

    Flow:
    1. Validate the product (exists, biddable, window open, not own, increment)
    2. Build the bid document (schema errors surface before any write)
    3. CAS-claim the product: price, counter, highest pointer, status
    4. Insert the bid with the claimed ``bid_number``
    5. Withdraw the buyer's older active bids and clear older highest flags
    6. Notify the product room and the farmer
    """
    now = utc_now()
    product = await Product.get(product_id)
    if not product:
        raise NotFoundError("Product not found")
    _check_can_bid(product.data, buyer_id, amount, now)

    previous = await Bid.find_one(
        [("product_id", "=", product_id), ("buyer_id", "=", buyer_id), ("status", "=", "active")],
        order_by=["bid_number DESC"],
        consistent=True,
    )
    previous_amount = previous.data.amount if previous else None
    baseline = previous_amount if previous_amount is not None else product.data.base_price

    values = {
        "product_id": product_id,
        "buyer_id": buyer_id,
        "amount": amount,
        "quantity": quantity or product.data.quantity.model_dump(),
        "valid_until": product.data.bidding_end_time,
        "is_highest": True,
        "previous_bid_amount": previous_amount,
        "bid_increment": amount - baseline,
        "notification": {"sent": True, "sent_at": now},
        "ip_address": ip_address,
        "user_agent": user_agent,
    }
    if message is not None:
        values["message"] = message
    if delivery_preference:
        values["delivery_preference"] = delivery_preference
    if payment_method:
        values["payment_method"] = payment_method
    data = build_entity_data(BidData, values)

    bid_id = str(uuid.uuid4())
    claimed = {}

    def claim(p: ProductData) -> None:
        _check_can_bid(p, buyer_id, amount, utc_now())
        p.total_bids += 1
        p.current_price = amount
        p.highest_bid_id = bid_id
        p.status = "bidding"
        claimed["bid_number"] = p.total_bids

    product = await cas_retry(Product, product_id, claim, not_found_message="Product not found")

    data.bid_number = claimed["bid_number"]
    bid = await Bid.create(data, key=bid_id, user_id=buyer_id)

    withdrawn = await Bid.update_where(
        [
            ("product_id", "=", product_id),
            ("buyer_id", "=", buyer_id),
            ("status", "=", "active"),
            ("bid_number", "<", bid.data.bid_number),
        ],
        {"status": "withdrawn", "is_highest": False},
    )
    await Bid.update_where(
        [
            ("product_id", "=", product_id),
            ("is_highest", "=", True),
            ("bid_number", "<", bid.data.bid_number),
        ],
        {"is_highest": False},
    )
    # A later claim may have landed while this bid was being inserted.
    newer = await Bid.count(
        [("product_id", "=", product_id), ("bid_number", ">", bid.data.bid_number)],
        consistent=True,
    )
    if newer:
        await Bid.update_where([("id", "=", bid.id)], {"is_highest": False})
        bid.data.is_highest = False

    logger.info(
        f"Bid {bid.id} (#{bid.data.bid_number}) placed on product {product_id} "
        f"by {buyer_id}: {amount} (withdrew {withdrawn} previous)"
    )

    payload = entity_payload(bid)
    await relay.emit_to_product(
        product_id,
        "new_bid",
        {"bid": payload, "newPrice": product.data.current_price, "totalBids": product.data.total_bids},
    )
    await relay.emit_to_user(
        product.data.farmer_id,
        "bid_notification",
        {
            "message": f"New bid of {format_amount(amount)} received for {product.data.name}",
            "bid": payload,
        },
    )
    return bid


# ---------------------------------------------------------------------------
# Farmer responses
# ---------------------------------------------------------------------------

async def bid_accept(bid_id: str, farmer_id: str, response_message: Optional[str] = None) -> Bid:
    """
    Accept a bid: the bid becomes accepted, the product sold, and every other
    active bid on the product rejected.

    The bid is claimed first; if the product can no longer be sold the bid
    is returned to ``active`` before the error propagates.
    """
    bid, product = await _get_bid_and_owned_product(bid_id, farmer_id, "accept")
    product_id = product.id

    now = utc_now()

    def accept(data: BidData) -> None:
        _require_active(data)
        data.status = "accepted"
        data.response.status = "accepted"
        data.response.message = response_message
        data.response.responded_at = now

    bid = await cas_retry(Bid, bid_id, accept, not_found_message="Bid not found")

    def sell(p: ProductData) -> None:
        if p.status == "sold":
            raise InvalidStateError("Product has already been sold")
        if p.status not in BIDDABLE_STATUSES:
            raise InvalidStateError("Product is no longer available")
        p.status = "sold"
        p.winner_id = bid.data.buyer_id
        p.sold_price = bid.data.amount
        p.sold_at = now

    try:
        product = await cas_retry(Product, product_id, sell, not_found_message="Product not found")
    except Exception:
        logger.warning(f"Reverting acceptance of bid {bid_id}: product {product_id} could not be sold")

        def revert(data: BidData) -> None:
            data.status = "active"
            data.response.status = "pending"
            data.response.message = None
            data.response.responded_at = None

        await cas_retry(Bid, bid_id, revert, not_found_message="Bid not found")
        raise

    rejected = await Bid.update_where(
        [("product_id", "=", product_id), ("status", "=", "active"), ("id", "!=", bid_id)],
        {"status": "rejected", "response.status": "rejected", "response.responded_at": now},
    )
    logger.info(
        f"Bid {bid_id} accepted by farmer {farmer_id}; product {product_id} sold at "
        f"{bid.data.amount}, {rejected} competing bid(s) rejected"
    )

    await relay.emit_to_user(
        bid.data.buyer_id,
        "bid_accepted",
        {
            "message": f"Your bid of {format_amount(bid.data.amount)} for {product.data.name} has been accepted!",
            "bid": entity_payload(bid),
        },
    )
    await relay.emit_to_all(
        "product_sold",
        {"productId": product_id, "soldPrice": bid.data.amount, "product": entity_payload(product)},
    )
    return bid


async def bid_reject(bid_id: str, farmer_id: str, response_message: Optional[str] = None) -> Bid:
    _, product = await _get_bid_and_owned_product(bid_id, farmer_id, "reject")

    def reject(data: BidData) -> None:
        _require_active(data)
        data.status = "rejected"
        data.response.status = "rejected"
        data.response.message = response_message
        data.response.responded_at = utc_now()

    bid = await cas_retry(Bid, bid_id, reject, not_found_message="Bid not found")
    logger.info(f"Bid {bid_id} rejected by farmer {farmer_id}")

    await relay.emit_to_user(
        bid.data.buyer_id,
        "bid_rejected",
        {
            "message": f"Your bid for {product.data.name} has been rejected",
            "bid": entity_payload(bid),
        },
    )
    return bid


async def bid_counter_offer(
    bid_id: str,
    farmer_id: str,
    amount: float,
    message: Optional[str] = None,
) -> Bid:
    """Answer an active bid with a counter-offer; the bid stays active."""
    _, product = await _get_bid_and_owned_product(bid_id, farmer_id, "counter")
    counter_offer = build_entity_data(CounterOffer, {"amount": amount, "message": message})

    def counter(data: BidData) -> None:
        _require_active(data)
        data.response.status = "countered"
        data.response.message = message
        data.response.counter_offer = counter_offer
        data.response.responded_at = utc_now()

    bid = await cas_retry(Bid, bid_id, counter, not_found_message="Bid not found")
    logger.info(f"Counter-offer of {amount} on bid {bid_id} by farmer {farmer_id}")

    await relay.emit_to_user(
        bid.data.buyer_id,
        "bid_countered",
        {
            "message": f"You received a counter-offer of {format_amount(amount)} for {product.data.name}",
            "bid": entity_payload(bid),
        },
    )
    return bid


# ---------------------------------------------------------------------------
# Buyer actions
# ---------------------------------------------------------------------------

async def bid_withdraw(bid_id: str, buyer_id: str) -> Bid:
    """Withdraw an active bid. The product's price and highest pointer are left as they are."""
    bid = await _get_bid(bid_id)
    if bid.data.buyer_id != buyer_id:
        raise UnauthorizedError("Not authorized to withdraw this bid")
    _require_active(bid.data)

    def withdraw(data: BidData) -> None:
        _require_active(data)
        data.status = "withdrawn"

    bid = await cas_retry(Bid, bid_id, withdraw, not_found_message="Bid not found")
    logger.info(f"Bid {bid_id} withdrawn by buyer {buyer_id}")
    return bid


async def bid_mark_read(bid_id: str, buyer_id: str) -> Bid:
    bid = await _get_bid(bid_id)
    if bid.data.buyer_id != buyer_id:
        raise UnauthorizedError("Not authorized to update this bid")

    def mark_read(data: BidData) -> None:
        data.notification.read = True
        data.notification.read_at = utc_now()

    return await cas_retry(Bid, bid_id, mark_read, not_found_message="Bid not found")


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def bid_get_highest_active(product_id: str) -> Optional[Bid]:
    """Recompute the current leader by query rather than trusting the product pointer."""
    return await Bid.find_one(
        [("product_id", "=", product_id)] + open_bid_conditions(utc_now()),
        order_by=["amount DESC", "bid_number DESC"],
        consistent=True,
    )


async def bid_list_for_product(
    product_id: str,
    page: Optional[int] = None,
    limit: Optional[int] = None,
) -> Page[Bid]:
    """Open and accepted bids on a product, highest amount first."""
    if not await Product.get(product_id):
        raise NotFoundError("Product not found")
    conditions = [
        ("product_id", "=", product_id),
        ("OR", [("status", "=", "accepted"), open_bid_conditions(utc_now())]),
    ]
    return await paginate(Bid, conditions, ["amount DESC", "created_at DESC"], page, limit)


def _status_conditions(status: Optional[BidStatus]) -> list:
    if status is None:
        return []
    now = utc_now()
    if status == "active":
        return open_bid_conditions(now)
    if status == "expired":
        # Stored as expired, or still stored as active with a closed window
        return [("OR", [("status", "=", "expired"), [("status", "=", "active"), ("valid_until", "<=", now)]])]
    return [("status", "=", status)]


async def bid_list_by_buyer(
    buyer_id: str,
    status: Optional[BidStatus] = None,
    page: Optional[int] = None,
    limit: Optional[int] = None,
) -> Page[Bid]:
    conditions = [("buyer_id", "=", buyer_id)] + _status_conditions(status)
    return await paginate(Bid, conditions, ["created_at DESC"], page, limit)


async def bid_list_received(
    farmer_id: str,
    status: Optional[BidStatus] = None,
    page: Optional[int] = None,
    limit: Optional[int] = None,
) -> Page[Bid]:
    """Bids on any of the farmer's products, newest first."""
    products = await Product.find([("farmer_id", "=", farmer_id)])
    product_ids: List[str] = [p.id for p in products]
    if not product_ids:
        page, limit, _ = page_window(page, limit)
        return Page(items=[], total=0, page=page, limit=limit)
    conditions = [("product_id", "IN", product_ids)] + _status_conditions(status)
    return await paginate(Bid, conditions, ["created_at DESC"], page, limit)


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------

async def bid_expire_overdue() -> int:
    """Persist the expired status of active bids whose window has closed.

    Reads already resolve these lazily; the sweep only keeps stored
    documents and index-backed queries in step.
    """
    count = await Bid.update_where(
        [("status", "=", "active"), ("valid_until", "<=", utc_now())],
        {"status": "expired"},
    )
    if count:
        logger.info(f"Expired {count} overdue bid(s)")
    return count
