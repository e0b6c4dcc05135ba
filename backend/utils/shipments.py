import asyncio
import logging
from datetime import datetime

from fastapi import HTTPException

from config.constants import (
    ORDER_CONFIRMED,
    ORDER_PROCESSING,
    ROLE_SELLER,
    SHIPMENT_CANCELLED,
    SHIPMENT_CREATED,
    SHIPMENT_PICKUP_SCHEDULED,
)
from models.order import BookShipmentRequest
from utils import shiprocket
from utils.audit import log_audit
from utils.errors import AlreadyProcessed, UpstreamUnavailable
from utils.order_status import transition_order

logger = logging.getLogger(__name__)

DEFAULT_PICKUP_LOCATION = "Primary"


def _awb_from_response(resp: dict) -> dict:
    data = ((resp or {}).get("response") or {}).get("data") or {}
    freight = data.get("freight_charges")
    return {
        "awb_code": str(data.get("awb_code") or ""),
        "courier_name": data.get("courier_name") or "",
        "courier_id": data.get("courier_company_id"),
        "shipping_charge": float(freight) if freight not in (None, "") else None,
    }


async def _create_local_shipment(db, order: dict, seller: dict, payload: BookShipmentRequest) -> dict:
    pickup_location = (seller.get("seller_profile") or {}).get("pickup_location") or DEFAULT_PICKUP_LOCATION
    created = await asyncio.to_thread(
        shiprocket.create_carrier_order,
        order=order,
        pickup_location=pickup_location,
        package=payload.model_dump(),
    )
    if not created.get("shipment_id"):
        raise UpstreamUnavailable("Carrier did not return a shipment id")

    now = datetime.utcnow()
    shipment = {
        "order_id": order["_id"],
        "seller_id": order["seller_id"],
        "carrier_order_id": str(created.get("order_id") or ""),
        "carrier_shipment_id": str(created["shipment_id"]),
        "awb_code": "",
        "courier_name": "",
        "courier_id": None,
        "status": SHIPMENT_CREATED,
        "scan_history": [],
        "scan_keys": [],
        "estimated_delivery": None,
        "pickup_scheduled_at": None,
        "picked_up_at": None,
        "label_url": None,
        "tracking_url": None,
        "shipping_charge": None,
        "created_at": now,
        "updated_at": now,
    }
    await db.shipments.insert_one(shipment)
    return shipment


async def book_shipment(db, order: dict, seller: dict, payload: BookShipmentRequest) -> dict:
    """
    Book the order with the carrier: create, assign AWB, optionally
    schedule pickup and fetch the label.

    The local shipment is stored right after creation so carrier webhooks
    can resolve it; a booking interrupted before the AWB is resumed on the
    next call instead of creating a second carrier order.
    """
    if order.get("status") not in (ORDER_CONFIRMED, ORDER_PROCESSING):
        raise HTTPException(status_code=400, detail=f'Cannot book shipment for order with status "{order.get("status")}"')

    shipment = await db.shipments.find_one({"order_id": order["_id"], "status": {"$ne": SHIPMENT_CANCELLED}})
    if shipment and shipment.get("awb_code"):
        raise AlreadyProcessed("Shipment already booked", shipment_id=str(shipment["_id"]))

    if not shipment:
        shipment = await _create_local_shipment(db, order, seller, payload)

    assigned = _awb_from_response(await asyncio.to_thread(
        shiprocket.assign_courier,
        carrier_shipment_id=shipment["carrier_shipment_id"],
        courier_id=payload.courier_id,
    ))
    if not assigned["awb_code"]:
        raise UpstreamUnavailable("Carrier did not assign an AWB")

    updates = {**assigned, "updated_at": datetime.utcnow()}

    if payload.schedule_pickup:
        try:
            await asyncio.to_thread(shiprocket.schedule_pickup, carrier_shipment_id=shipment["carrier_shipment_id"])
            updates["status"] = SHIPMENT_PICKUP_SCHEDULED
            updates["pickup_scheduled_at"] = datetime.utcnow()
        except UpstreamUnavailable:
            logger.warning("PICKUP_SCHEDULE_FAILED shipment=%s", shipment["_id"])

    try:
        label = await asyncio.to_thread(shiprocket.generate_label, carrier_shipment_id=shipment["carrier_shipment_id"])
        updates["label_url"] = label.get("label_url")
    except UpstreamUnavailable:
        logger.warning("LABEL_GENERATION_FAILED shipment=%s", shipment["_id"])

    # webhooks may already have moved the status; only overwrite "created"
    if "status" in updates:
        await db.shipments.update_one(
            {"_id": shipment["_id"], "status": SHIPMENT_CREATED},
            {"$set": {"status": updates.pop("status"), "pickup_scheduled_at": updates.pop("pickup_scheduled_at")}},
        )
    await db.shipments.update_one({"_id": shipment["_id"]}, {"$set": updates})
    shipment = await db.shipments.find_one({"_id": shipment["_id"]})

    # the carrier rate is what seller-borne shipping is deducted at payout
    if assigned["shipping_charge"] is not None:
        await db.orders.update_one(
            {"_id": order["_id"]},
            {"$set": {"actual_shipping_cost": assigned["shipping_charge"], "updated_at": datetime.utcnow()}},
        )
        order["actual_shipping_cost"] = assigned["shipping_charge"]

    if order.get("status") == ORDER_CONFIRMED:
        await transition_order(
            db,
            order,
            ORDER_PROCESSING,
            actor_role=ROLE_SELLER,
            actor_id=seller["_id"],
            note=f"Shipment booked (AWB: {shipment['awb_code']})",
        )

    await log_audit(
        db,
        str(seller["_id"]),
        ROLE_SELLER,
        "shipment_booked",
        {"order_number": order.get("order_number"), "awb": shipment.get("awb_code")},
        domain="shipping",
        target_type="Order",
        target_id=order["_id"],
    )
    logger.info("SHIPMENT_BOOKED order=%s awb=%s", order.get("order_number"), shipment.get("awb_code"))
    return shipment
