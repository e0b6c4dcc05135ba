from datetime import datetime

import pytest
from bson import ObjectId

from config.constants import (
    ORDER_CANCELLED,
    ORDER_CONFIRMED,
    ORDER_DELIVERED,
    ORDER_SHIPPED,
    PAYMENT_PAID,
    PAYMENT_REFUND_PENDING,
    PAYMENT_REFUNDED,
    SHIPMENT_CREATED,
    SHIPMENT_DELIVERED,
    SHIPMENT_IN_TRANSIT,
    SHIPMENT_PICKED_UP,
    SHIPMENT_RTO,
)
from factories import make_order
from utils.shipment_tracking import (
    normalize_carrier_payload,
    process_carrier_event,
    should_advance,
)

AWB = "AWB123456"


async def _seed(db, *, order_status=ORDER_CONFIRMED, shipment_status=SHIPMENT_CREATED, payment_status=PAYMENT_PAID):
    product_id = ObjectId()
    await db.products.insert_one({"_id": product_id, "stock": 5, "order_count": 3})
    order = make_order(
        status=order_status,
        payment_status=payment_status,
        gateway_order_id="cf_ship_1",
        items=[{"product_id": product_id, "quantity": 1, "price": 1000}],
    )
    await db.orders.insert_one(order)
    shipment = {
        "_id": ObjectId(),
        "order_id": order["_id"],
        "seller_id": order["seller_id"],
        "carrier_order_id": "7001",
        "awb_code": AWB,
        "courier_name": "",
        "status": shipment_status,
        "scan_history": [],
        "scan_keys": [],
    }
    await db.shipments.insert_one(shipment)
    return order, shipment


def _payload(status_id, label, *, scans=None, **extra):
    payload = {
        "awb": AWB,
        "current_status_id": status_id,
        "current_status": label,
        "courier_name": "Delhivery",
        "scans": scans if scans is not None else [
            {"date": "2026-01-02 10:00:00", "activity": label, "location": "Delhi"},
        ],
    }
    payload.update(extra)
    return normalize_carrier_payload(payload)


# =========================================================
# PURE RULES
# =========================================================

@pytest.mark.parametrize("current,new,expected", [
    ("created", "picked_up", True),
    ("in_transit", "picked_up", False),
    ("in_transit", "in_transit", False),
    ("delivered", "rto", True),
    ("in_transit", "cancelled", True),
    ("rto", "delivered", False),
    ("cancelled", "in_transit", False),
    ("created", None, False),
])
def test_forward_only_rule(current, new, expected):
    assert should_advance(current, new) is expected


def test_normalize_accepts_legacy_field_names():
    event = normalize_carrier_payload({
        "awb_code": 998877,
        "order_id": "55",
        "shipment_status_id": "17",
        "shipment_status": "IN TRANSIT",
        "etd": "2026-01-05 18:00:00",
        "scans": [{"date": "2026-01-03T09:30:00Z", "sr-status-label": "IT", "activity": "Bag received"}],
    })
    assert event.awb == "998877"
    assert event.carrier_order_id == "55"
    assert event.status_code == 17
    assert event.estimated_delivery == datetime(2026, 1, 5, 18, 0)
    assert event.scans[0].timestamp == datetime(2026, 1, 3, 9, 30)
    assert event.scans[0].status == "IT"


def test_normalize_tolerates_garbage():
    event = normalize_carrier_payload({"current_status_id": "abc", "etd": "soon", "scans": ["x"]})
    assert event.status_code is None
    assert event.estimated_delivery is None
    assert event.scans == []
    assert not event.has_identifier


# =========================================================
# EVENT PROCESSING
# =========================================================

async def test_progression_projects_order_to_shipped_then_delivered(db):
    order, shipment = await _seed(db)

    first = await process_carrier_event(db, _payload(18, "PICKED UP"))
    assert first["status"] == SHIPMENT_PICKED_UP
    assert first["order_status"] == ORDER_SHIPPED

    stored_order = await db.orders.find_one({"_id": order["_id"]})
    assert stored_order["status"] == ORDER_SHIPPED
    assert stored_order["tracking_info"]["tracking_number"] == AWB

    second = await process_carrier_event(db, _payload(
        20, "DELIVERED", scans=[{"date": "2026-01-04 12:00:00", "activity": "Delivered"}],
    ))
    assert second["status"] == SHIPMENT_DELIVERED

    stored_order = await db.orders.find_one({"_id": order["_id"]})
    assert stored_order["status"] == ORDER_DELIVERED
    assert stored_order["delivered_at"] is not None

    stored_shipment = await db.shipments.find_one({"_id": shipment["_id"]})
    assert stored_shipment["courier_name"] == "Delhivery"
    assert stored_shipment["picked_up_at"] is not None
    assert len(stored_shipment["scan_history"]) == 2


async def test_replayed_event_adds_no_scans(db):
    _, shipment = await _seed(db)
    event = _payload(18, "PICKED UP")

    await process_carrier_event(db, event)
    replay = await process_carrier_event(db, event)

    assert replay["scans_added"] == 0
    assert replay["advanced"] is False
    stored = await db.shipments.find_one({"_id": shipment["_id"]})
    assert len(stored["scan_history"]) == 1


async def test_scans_with_unreadable_dates_stay_distinct(db):
    _, shipment = await _seed(db)
    event = _payload(18, "PICKED UP", scans=[
        {"date": "4th Jan, 10:05 AM", "activity": "Reached hub", "location": "Delhi"},
        {"date": "4th Jan, 6:40 PM", "activity": "Reached hub", "location": "Jaipur"},
    ])

    first = await process_carrier_event(db, event)
    replay = await process_carrier_event(db, event)

    assert first["scans_added"] == 2
    assert replay["scans_added"] == 0
    stored = await db.shipments.find_one({"_id": shipment["_id"]})
    assert [s["location"] for s in stored["scan_history"]] == ["Delhi", "Jaipur"]


async def test_out_of_order_event_keeps_scan_but_not_status(db):
    _, shipment = await _seed(db, order_status=ORDER_SHIPPED, shipment_status=SHIPMENT_IN_TRANSIT)

    result = await process_carrier_event(db, _payload(18, "PICKED UP"))

    assert result["advanced"] is False
    assert result["scans_added"] == 1
    stored = await db.shipments.find_one({"_id": shipment["_id"]})
    assert stored["status"] == SHIPMENT_IN_TRANSIT


async def test_delivered_on_confirmed_order_moves_through_shipped(db):
    order, _ = await _seed(db)

    await process_carrier_event(db, _payload(20, "DELIVERED"))

    stored = await db.orders.find_one({"_id": order["_id"]})
    assert stored["status"] == ORDER_DELIVERED
    assert [h["status"] for h in stored["status_history"]] == [ORDER_SHIPPED, ORDER_DELIVERED]


async def test_unknown_shipment_is_ignored(db):
    result = await process_carrier_event(db, normalize_carrier_payload({"awb": "NOPE", "current_status_id": 18}))
    assert result == {"ignored": "shipment_not_found"}


async def test_lookup_falls_back_to_carrier_order_id(db):
    _, shipment = await _seed(db)
    result = await process_carrier_event(db, normalize_carrier_payload({"sr_order_id": 7001, "current_status_id": 18}))
    assert result["shipment_id"] == str(shipment["_id"])


# =========================================================
# RTO / NDR
# =========================================================

async def test_rto_cancels_restores_stock_and_refunds(db, gateway):
    gateway.mark_paid("cf_ship_1", 1000)
    order, _ = await _seed(db, order_status=ORDER_SHIPPED, shipment_status=SHIPMENT_IN_TRANSIT)

    result = await process_carrier_event(db, _payload(9, "RTO INITIATED"))
    assert result["status"] == SHIPMENT_RTO

    stored = await db.orders.find_one({"_id": order["_id"]})
    assert stored["status"] == ORDER_CANCELLED
    assert stored["payment_status"] == PAYMENT_REFUNDED
    assert gateway.refunds[0]["refund_id"].startswith("refund_rto_")

    product = await db.products.find_one({"_id": order["items"][0]["product_id"]})
    assert product["stock"] == 6
    assert product["order_count"] == 2
    assert await db.audit_logs.count_documents({"action": "rto_auto_cancel"}) == 1


async def test_rto_refund_failure_leaves_refund_pending(db, gateway):
    gateway.mark_paid("cf_ship_1", 1000)
    gateway.fail_refunds = True
    order, _ = await _seed(db, order_status=ORDER_SHIPPED, shipment_status=SHIPMENT_IN_TRANSIT)

    await process_carrier_event(db, _payload(9, "RTO INITIATED"))

    stored = await db.orders.find_one({"_id": order["_id"]})
    assert stored["status"] == ORDER_CANCELLED
    assert stored["payment_status"] == PAYMENT_REFUND_PENDING


async def test_rto_after_delivery_leaves_order_delivered(db, gateway):
    gateway.mark_paid("cf_ship_1", 1000)
    order, _ = await _seed(db, order_status=ORDER_DELIVERED, shipment_status=SHIPMENT_DELIVERED)

    result = await process_carrier_event(db, _payload(10, "RTO DELIVERED"))
    assert result["status"] == SHIPMENT_RTO

    stored = await db.orders.find_one({"_id": order["_id"]})
    assert stored["status"] == ORDER_DELIVERED
    assert stored["payment_status"] == PAYMENT_PAID
    assert gateway.refunds == []
    assert await db.audit_logs.count_documents({"action": "rto_after_delivery"}) == 1


async def test_ndr_notifies_without_state_change(db):
    order, shipment = await _seed(db, order_status=ORDER_SHIPPED, shipment_status=SHIPMENT_IN_TRANSIT)
    event = _payload(21, "UNDELIVERED", scans=[{"date": "2026-01-04 15:00:00", "activity": "Customer unavailable"}])

    result = await process_carrier_event(db, event)
    assert result["ndr"] is True
    assert result["status"] == SHIPMENT_IN_TRANSIT

    stored = await db.orders.find_one({"_id": order["_id"]})
    assert stored["status"] == ORDER_SHIPPED
    assert await db.notifications.count_documents({"type": "shipping_update"}) == 2

    # a replay of the same attempt does not notify again
    await process_carrier_event(db, event)
    assert await db.notifications.count_documents({"type": "shipping_update"}) == 2


async def test_carrier_cancellation_only_notifies_seller(db):
    order, _ = await _seed(db)

    result = await process_carrier_event(db, _payload(8, "CANCELED"))

    assert result["status"] == "cancelled"
    stored = await db.orders.find_one({"_id": order["_id"]})
    assert stored["status"] == ORDER_CONFIRMED
    notes = await db.notifications.find({}).to_list(None)
    assert [n["user_role"] for n in notes] == ["seller"]
