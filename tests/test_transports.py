"""Fulfillment engine: creation from accepted bids, delivery lifecycle, rating."""

import pytest

from conftest import BUYER_ID, FARMER_ID, TRANSPORTER_ID, transport_values, utc_in
from models.entities.couchbase.transports import TRANSITIONS, Transport, can_transition
from models.errors import EntityValidationError, InvalidStateError, NotFoundError, UnauthorizedError
from models.operations.bids import bid_submit
from models.operations.transports import (
    transport_add_rating,
    transport_cancel,
    transport_create,
    transport_list,
    transport_list_active,
    transport_list_for_user,
    transport_update_status,
)


@pytest.fixture
def make_transport(sold_product):
    async def _make(transporter_id: str = TRANSPORTER_ID, **overrides):
        product, bid = await sold_product()
        return await transport_create(product.id, bid.id, transporter_id, **transport_values(**overrides))

    return _make


async def _deliver(transport):
    for status in ("confirmed", "picked_up", "delivered"):
        transport = await transport_update_status(transport.id, TRANSPORTER_ID, status)
    return transport


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

async def test_create_links_parties_and_derives_total(store, make_transport):
    transport = await make_transport(cost={**transport_values()["cost"], "total": 1})

    assert transport.data.farmer_id == FARMER_ID
    assert transport.data.buyer_id == BUYER_ID
    assert transport.data.transporter_id == TRANSPORTER_ID
    assert transport.data.status == "pending"
    assert transport.data.cost.total == 2500
    assert transport.data.vehicle.number == "MH15AB1234"
    assert store.raw("transports", transport.id)["cost"]["total"] == 2500


async def test_create_requires_accepted_bid(store, make_product):
    product = await make_product()
    bid = await bid_submit(product.id, BUYER_ID, 110)
    with pytest.raises(InvalidStateError, match="accepted"):
        await transport_create(product.id, bid.id, TRANSPORTER_ID, **transport_values())
    assert await Transport.count() == 0


async def test_create_requires_matching_product(store, sold_product, make_product):
    _, bid = await sold_product()
    other = await make_product(name="Green Chillies")
    with pytest.raises(InvalidStateError, match="does not belong"):
        await transport_create(other.id, bid.id, TRANSPORTER_ID, **transport_values())


async def test_create_missing_references(store, sold_product):
    product, bid = await sold_product()
    with pytest.raises(NotFoundError, match="Product"):
        await transport_create("missing", bid.id, TRANSPORTER_ID, **transport_values())
    with pytest.raises(NotFoundError, match="Bid"):
        await transport_create(product.id, "missing", TRANSPORTER_ID, **transport_values())


async def test_create_rejects_discount_above_charges(store, make_transport):
    with pytest.raises(EntityValidationError):
        await make_transport(cost={"base_fare": 100, "discount": 500})


@pytest.mark.parametrize("component", ["base_fare", "distance_charge", "discount"])
async def test_create_rejects_non_finite_cost(store, make_transport, component):
    cost = {"base_fare": 1000, component: float("inf")}
    with pytest.raises(EntityValidationError) as exc:
        await make_transport(cost=cost)
    assert any(f"cost.{component}" in error for error in exc.value.errors)
    assert store.collections.get("transports", {}) == {}


async def test_payment_methods(store, make_transport):
    transport = await make_transport(payment_method="wallet")
    assert transport.data.payment_method == "wallet"
    with pytest.raises(EntityValidationError) as exc:
        await make_transport(payment_method="crypto")
    assert any(error.startswith("payment_method") for error in exc.value.errors)


async def test_create_notifies_farmer_and_buyer(store, make_transport, listen):
    farmer = listen(f"user_{FARMER_ID}", FARMER_ID)
    buyer = listen(f"user_{BUYER_ID}", BUYER_ID)
    transporter = listen(f"user_{TRANSPORTER_ID}", TRANSPORTER_ID)

    transport = await make_transport()

    [event] = farmer.events("transport_created")
    assert event["data"]["transport"]["id"] == transport.id
    assert buyer.events("transport_created")
    assert not transporter.events("transport_created")


# ---------------------------------------------------------------------------
# Status lifecycle
# ---------------------------------------------------------------------------

def test_transition_table():
    assert can_transition("pending", "confirmed")
    assert can_transition("confirmed", "picked_up")
    assert can_transition("out_for_delivery", "failed")
    assert not can_transition("picked_up", "confirmed")
    assert not can_transition("pending", "pending")
    for terminal in ("delivered", "cancelled", "failed"):
        assert TRANSITIONS[terminal] == frozenset()


async def test_status_updates_are_tracked(store, make_transport, listen):
    transport = await make_transport()
    buyer = listen(f"user_{BUYER_ID}", BUYER_ID)

    transport = await transport_update_status(transport.id, TRANSPORTER_ID, "confirmed")
    transport = await transport_update_status(
        transport.id,
        TRANSPORTER_ID,
        "picked_up",
        location={"address": "Farm gate", "coordinates": {"latitude": 20.0, "longitude": 73.8}},
        note="Loaded 20 crates",
    )
    assert transport.data.actual_pickup_time is not None

    transport = await transport_update_status(transport.id, TRANSPORTER_ID, "delivered")
    assert transport.data.actual_delivery_time is not None
    assert [u.status for u in transport.data.tracking_updates] == ["confirmed", "picked_up", "delivered"]
    assert transport.data.tracking_updates[1].location.address == "Farm gate"
    assert transport.data.tracking_updates[1].note == "Loaded 20 crates"
    assert transport.data.status == "delivered"

    messages = [e["data"]["message"] for e in buyer.events("transport_update")]
    assert messages[-1] == "Produce has been delivered"


async def test_status_cannot_move_backwards(store, make_transport):
    transport = await make_transport()
    await transport_update_status(transport.id, TRANSPORTER_ID, "in_transit")
    with pytest.raises(InvalidStateError):
        await transport_update_status(transport.id, TRANSPORTER_ID, "confirmed")
    assert store.raw("transports", transport.id)["status"] == "in_transit"


async def test_terminal_status_is_final(store, make_transport):
    transport = await _deliver(await make_transport())
    with pytest.raises(InvalidStateError):
        await transport_update_status(transport.id, TRANSPORTER_ID, "failed")


async def test_only_assigned_transporter_updates(store, make_transport):
    transport = await make_transport()
    with pytest.raises(UnauthorizedError):
        await transport_update_status(transport.id, "transporter-2", "confirmed")
    with pytest.raises(NotFoundError):
        await transport_update_status("missing", TRANSPORTER_ID, "confirmed")


def test_delay_detection(store):
    from models.entities.couchbase.transports import TransportData

    values = transport_values(
        scheduled_pickup_time=utc_in(hours=-8),
        scheduled_delivery_time=utc_in(hours=-2),
    )
    data = TransportData.model_validate(
        {**values, "product_id": "p", "bid_id": "b", "farmer_id": "f", "buyer_id": "u", "transporter_id": "t"}
    )
    assert data.is_delayed()
    data.actual_delivery_time = utc_in(hours=-3)
    assert not data.is_delayed()


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

async def test_party_can_cancel_before_transit(store, make_transport, listen):
    transport = await make_transport()
    transporter = listen(f"user_{TRANSPORTER_ID}", TRANSPORTER_ID)

    cancelled = await transport_cancel(transport.id, BUYER_ID, "Order moved to next week")

    assert cancelled.data.status == "cancelled"
    assert cancelled.data.cancelled_by == BUYER_ID
    assert cancelled.data.cancellation_reason == "Order moved to next week"
    assert cancelled.data.tracking_updates[-1].status == "cancelled"
    assert transporter.events("transport_cancelled")


async def test_cannot_cancel_once_in_transit(store, make_transport):
    transport = await make_transport()
    await transport_update_status(transport.id, TRANSPORTER_ID, "in_transit")
    with pytest.raises(InvalidStateError, match="cannot be cancelled"):
        await transport_cancel(transport.id, FARMER_ID)


async def test_outsider_cannot_cancel(store, make_transport):
    transport = await make_transport()
    with pytest.raises(UnauthorizedError):
        await transport_cancel(transport.id, "buyer-9")


# ---------------------------------------------------------------------------
# Rating
# ---------------------------------------------------------------------------

async def test_rating_is_written_once(store, make_transport):
    transport = await _deliver(await make_transport())

    rated = await transport_add_rating(transport.id, BUYER_ID, 5, "On time, careful handling")
    assert rated.data.rating.score == 5
    assert rated.data.rating.rated_by == BUYER_ID

    with pytest.raises(InvalidStateError, match="already rated"):
        await transport_add_rating(transport.id, FARMER_ID, 1)


async def test_rating_requires_delivery(store, make_transport):
    transport = await make_transport()
    with pytest.raises(InvalidStateError, match="completed"):
        await transport_add_rating(transport.id, BUYER_ID, 4)


async def test_rating_restricted_to_farmer_and_buyer(store, make_transport):
    transport = await _deliver(await make_transport())
    with pytest.raises(UnauthorizedError):
        await transport_add_rating(transport.id, TRANSPORTER_ID, 5)


async def test_rating_score_range(store, make_transport):
    transport = await _deliver(await make_transport())
    with pytest.raises(EntityValidationError):
        await transport_add_rating(transport.id, BUYER_ID, 6)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def test_listings(store, make_transport):
    first = await make_transport(scheduled_pickup_time=utc_in(days=2))
    second = await make_transport(scheduled_pickup_time=utc_in(days=1))
    other = await make_transport(transporter_id="transporter-2")
    for transport in (first, second):
        await transport_update_status(transport.id, TRANSPORTER_ID, "confirmed")

    assert (await transport_list()).total == 3
    assert [t.id for t in (await transport_list(status="pending")).items] == [other.id]

    active = await transport_list_active(TRANSPORTER_ID)
    assert [t.id for t in active] == [second.id, first.id]

    assert (await transport_list_for_user(BUYER_ID, "buyer")).total == 3
    assert (await transport_list_for_user("transporter-2", "transporter")).total == 1
    assert (await transport_list_for_user(FARMER_ID, "farmer", status="confirmed")).total == 2
