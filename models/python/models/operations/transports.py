"""
Fulfillment engine: transports created from accepted bids and their
delivery lifecycle.

Status changes follow ``TRANSITIONS`` from the transport entity: forward
along pending -> confirmed -> in_transit -> picked_up -> out_for_delivery
-> delivered, with cancelled and failed reachable from any non-terminal
state.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from clients import relay
from models.entities.couchbase.bids import Bid
from models.entities.couchbase.common import utc_now
from models.entities.couchbase.products import Product
from models.entities.couchbase.transports import (
    ACTIVE_STATUSES,
    CANCELLABLE_STATUSES,
    TrackingLocation,
    TrackingUpdate,
    Transport,
    TransportData,
    TransportRating,
    TransportStatus,
    can_transition,
)
from models.errors import InvalidStateError, NotFoundError, UnauthorizedError
from models.operations.common import Page, build_entity_data, cas_retry, entity_payload, paginate

logger = logging.getLogger(__name__)

STATUS_MESSAGES = {
    "confirmed": "Transport has been confirmed",
    "in_transit": "Transport is on the way to pickup",
    "picked_up": "Produce has been picked up",
    "out_for_delivery": "Produce is out for delivery",
    "delivered": "Produce has been delivered",
    "cancelled": "Transport has been cancelled",
    "failed": "Transport has failed",
}


async def _notify_parties(transport: Transport, event: str, message: str, include_transporter: bool = False) -> None:
    payload = {"message": message, "transport": entity_payload(transport)}
    recipients = [transport.data.farmer_id, transport.data.buyer_id]
    if include_transporter:
        recipients.append(transport.data.transporter_id)
    for user_id in recipients:
        await relay.emit_to_user(user_id, event, payload)


async def _get_transport(transport_id: str) -> Transport:
    transport = await Transport.get(transport_id)
    if not transport:
        raise NotFoundError("Transport not found")
    return transport


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

async def transport_create(
    product_id: str,
    bid_id: str,
    transporter_id: str,
    pickup_location: Dict[str, Any],
    delivery_location: Dict[str, Any],
    vehicle: Dict[str, Any],
    cost: Dict[str, Any],
    distance: Dict[str, Any],
    estimated_duration: Dict[str, Any],
    scheduled_pickup_time: datetime,
    scheduled_delivery_time: datetime,
    notes: Optional[str] = None,
    payment_method: Optional[str] = None,
) -> Transport:
    product = await Product.get(product_id)
    if not product:
        raise NotFoundError("Product not found")
    bid = await Bid.get(bid_id)
    if not bid:
        raise NotFoundError("Bid not found")
    if bid.data.status != "accepted":
        raise InvalidStateError("Bid must be accepted before creating transport")
    if bid.data.product_id != product_id:
        raise InvalidStateError("Bid does not belong to this product")

    values = {
        "product_id": product_id,
        "bid_id": bid_id,
        "farmer_id": product.data.farmer_id,
        "buyer_id": bid.data.buyer_id,
        "transporter_id": transporter_id,
        "pickup_location": pickup_location,
        "delivery_location": delivery_location,
        "vehicle": vehicle,
        # total is always derived from the components
        "cost": {k: v for k, v in cost.items() if k != "total"},
        "distance": distance,
        "estimated_duration": estimated_duration,
        "scheduled_pickup_time": scheduled_pickup_time,
        "scheduled_delivery_time": scheduled_delivery_time,
        "notes": notes,
        "status": "pending",
    }
    if payment_method:
        values["payment_method"] = payment_method
    data = build_entity_data(TransportData, values)

    transport = await Transport.create(data, user_id=transporter_id)
    logger.info(
        f"Transport {transport.id} created for product {product_id} / bid {bid_id} "
        f"by transporter {transporter_id} (total {transport.data.cost.total})"
    )
    await _notify_parties(transport, "transport_created", "Transport has been arranged for your order")
    return transport


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

async def transport_update_status(
    transport_id: str,
    transporter_id: str,
    status: TransportStatus,
    location: Optional[Dict[str, Any]] = None,
    note: Optional[str] = None,
) -> Transport:
    transport = await _get_transport(transport_id)
    if transport.data.transporter_id != transporter_id:
        raise UnauthorizedError("Not authorized to update this transport")
    tracking_location = build_entity_data(TrackingLocation, location) if location else None

    def apply(data: TransportData) -> None:
        if not can_transition(data.status, status):
            raise InvalidStateError(f"Cannot change transport status from {data.status} to {status}")
        now = utc_now()
        data.status = status
        data.tracking_updates.append(
            TrackingUpdate(status=status, location=tracking_location, note=note, timestamp=now)
        )
        if status == "picked_up":
            data.actual_pickup_time = now
        elif status == "delivered":
            data.actual_delivery_time = now
        elif status == "cancelled":
            data.cancelled_by = transporter_id
            data.cancelled_at = now
            if note:
                data.cancellation_reason = note

    transport = await cas_retry(Transport, transport_id, apply, not_found_message="Transport not found")
    logger.info(f"Transport {transport_id} moved to {status} by {transporter_id}")

    await _notify_parties(
        transport,
        "transport_update",
        STATUS_MESSAGES.get(status, f"Transport status changed to {status}"),
    )
    return transport


async def transport_cancel(transport_id: str, user_id: str, reason: Optional[str] = None) -> Transport:
    transport = await _get_transport(transport_id)
    if not transport.data.is_party(user_id):
        raise UnauthorizedError("Not authorized to cancel this transport")
    if transport.data.status not in CANCELLABLE_STATUSES:
        raise InvalidStateError("Transport cannot be cancelled in current status")

    def cancel(data: TransportData) -> None:
        if data.status not in CANCELLABLE_STATUSES:
            raise InvalidStateError("Transport cannot be cancelled in current status")
        now = utc_now()
        data.status = "cancelled"
        data.cancellation_reason = reason
        data.cancelled_by = user_id
        data.cancelled_at = now
        data.tracking_updates.append(TrackingUpdate(status="cancelled", note=reason, timestamp=now))

    transport = await cas_retry(Transport, transport_id, cancel, not_found_message="Transport not found")
    logger.info(f"Transport {transport_id} cancelled by {user_id}")

    await _notify_parties(transport, "transport_cancelled", "Transport has been cancelled", include_transporter=True)
    return transport


async def transport_add_rating(
    transport_id: str,
    user_id: str,
    score: int,
    review: Optional[str] = None,
) -> Transport:
    """Rate a delivered transport. Only the farmer or buyer may rate, and only once."""
    transport = await _get_transport(transport_id)
    if user_id not in (transport.data.farmer_id, transport.data.buyer_id):
        raise UnauthorizedError("Not authorized to rate this transport")
    if transport.data.status != "delivered":
        raise InvalidStateError("Can only rate completed transports")
    if transport.data.rating is not None:
        raise InvalidStateError("Transport already rated")

    rating = build_entity_data(TransportRating, {
        "score": score,
        "review": review,
        "rated_by": user_id,
        "rated_at": utc_now(),
    })

    def rate(data: TransportData) -> None:
        if data.rating is not None:
            raise InvalidStateError("Transport already rated")
        data.rating = rating

    transport = await cas_retry(Transport, transport_id, rate, not_found_message="Transport not found")
    logger.info(f"Transport {transport_id} rated {score} by {user_id}")
    return transport


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def transport_get(transport_id: str) -> Optional[Transport]:
    return await Transport.get(transport_id)


async def transport_list(
    status: Optional[TransportStatus] = None,
    page: Optional[int] = None,
    limit: Optional[int] = None,
) -> Page[Transport]:
    conditions: List = [("status", "=", status)] if status else []
    return await paginate(Transport, conditions, ["created_at DESC"], page, limit)


async def transport_list_for_user(
    user_id: str,
    role: str,
    status: Optional[TransportStatus] = None,
    page: Optional[int] = None,
    limit: Optional[int] = None,
) -> Page[Transport]:
    """Transports where the user takes part in the given role."""
    field = {"farmer": "farmer_id", "buyer": "buyer_id", "transporter": "transporter_id"}.get(role)
    if field is None:
        raise InvalidStateError(f"Role {role} has no transports")
    conditions: List = [(field, "=", user_id)]
    if status:
        conditions.append(("status", "=", status))
    return await paginate(Transport, conditions, ["created_at DESC"], page, limit)


async def transport_list_active(transporter_id: str) -> List[Transport]:
    return await Transport.find(
        [("transporter_id", "=", transporter_id), ("status", "IN", list(ACTIVE_STATUSES))],
        order_by=["scheduled_pickup_time ASC"],
    )