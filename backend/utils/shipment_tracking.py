import logging
from datetime import datetime

from config.constants import (
    CARRIER_NDR,
    ORDER_CONFIRMED,
    ORDER_DELIVERED,
    ORDER_PROCESSING,
    ORDER_SHIPPED,
    ROLE_BUYER,
    ROLE_SYSTEM,
    SHIPMENT_CANCELLED,
    SHIPMENT_CREATED,
    SHIPMENT_DELIVERED,
    SHIPMENT_IN_TRANSIT,
    SHIPMENT_OUT_FOR_DELIVERY,
    SHIPMENT_PICKED_UP,
    SHIPMENT_PICKUP_SCHEDULED,
    SHIPMENT_RTO,
)
from models.carrier import CarrierEvent, ScanEvent
from utils.audit import log_audit
from utils.errors import InvalidTransition
from utils.ndr_handler import handle_carrier_cancellation, handle_ndr
from utils.notify import dispatch_effects, notify_effect
from utils.order_status import transition_order
from utils.rto_handler import handle_rto

logger = logging.getLogger(__name__)

# =========================================================
# CARRIER STATUS CODES
# =========================================================

CARRIER_STATUS_MAP: dict[int, str] = {
    6: SHIPMENT_PICKUP_SCHEDULED,   # shipped / manifested
    7: SHIPMENT_PICKUP_SCHEDULED,   # pickup scheduled
    18: SHIPMENT_PICKED_UP,
    17: SHIPMENT_IN_TRANSIT,
    38: SHIPMENT_IN_TRANSIT,        # reached destination hub
    19: SHIPMENT_OUT_FOR_DELIVERY,
    20: SHIPMENT_DELIVERED,
    9: SHIPMENT_RTO,                # rto initiated
    10: SHIPMENT_RTO,               # rto delivered
    14: SHIPMENT_RTO,               # rto acknowledged
    8: SHIPMENT_CANCELLED,
    21: CARRIER_NDR,                # undelivered
}

# linear order of the non-terminal path
SHIPMENT_RANK: dict[str, int] = {
    SHIPMENT_CREATED: 0,
    SHIPMENT_PICKUP_SCHEDULED: 1,
    SHIPMENT_PICKED_UP: 2,
    SHIPMENT_IN_TRANSIT: 3,
    SHIPMENT_OUT_FOR_DELIVERY: 4,
    SHIPMENT_DELIVERED: 5,
}

ABSORBING_STATUSES = frozenset({SHIPMENT_RTO, SHIPMENT_CANCELLED})

IN_TRANSIT_STATUSES = frozenset({
    SHIPMENT_PICKUP_SCHEDULED,
    SHIPMENT_PICKED_UP,
    SHIPMENT_IN_TRANSIT,
    SHIPMENT_OUT_FOR_DELIVERY,
})

_CARRIER_DATE_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d",
    "%d %m %Y %H:%M:%S",
    "%d-%m-%Y %H:%M:%S",
)


def should_advance(current: str | None, new: str | None) -> bool:
    """
    Forward-only rule. rto and cancelled win from anywhere that is not
    already rto or cancelled; everything else must rank strictly higher.
    """
    if not new or new == current:
        return False
    if current in ABSORBING_STATUSES:
        return False
    if new in ABSORBING_STATUSES:
        return True
    return SHIPMENT_RANK.get(new, -1) > SHIPMENT_RANK.get(current, -1)


# =========================================================
# PAYLOAD NORMALISATION
# =========================================================

def _parse_carrier_datetime(value):
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    text = str(value).strip()
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        return parsed.replace(tzinfo=None) if parsed.tzinfo else parsed
    except ValueError:
        pass
    for fmt in _CARRIER_DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    logger.debug("CARRIER_DATE_UNPARSED value=%s", text)
    return None


def _parse_status_code(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def normalize_carrier_payload(payload: dict) -> CarrierEvent:
    """
    Collapse the payload shapes the carrier has sent over time into one
    typed event. Nothing downstream reads the raw dict.
    """
    payload = payload or {}
    status_label = str(payload.get("current_status") or payload.get("shipment_status") or "")

    scans = []
    for scan in payload.get("scans") or []:
        if not isinstance(scan, dict):
            continue
        scans.append(ScanEvent(
            status=str(scan.get("sr-status-label") or scan.get("status") or status_label),
            description=str(scan.get("activity") or status_label),
            location=str(scan.get("location") or ""),
            timestamp=_parse_carrier_datetime(scan.get("date")),
            raw_date=str(scan.get("date") or ""),
        ))

    return CarrierEvent(
        awb=str(payload.get("awb") or payload.get("awb_code") or ""),
        carrier_order_id=str(payload.get("sr_order_id") or payload.get("order_id") or ""),
        status_code=_parse_status_code(payload.get("current_status_id") or payload.get("shipment_status_id")),
        status_label=status_label,
        courier_name=str(payload.get("courier_name") or ""),
        estimated_delivery=_parse_carrier_datetime(payload.get("etd")),
        event_time=_parse_carrier_datetime(payload.get("current_timestamp")),
        scans=scans,
    )


# =========================================================
# STEPS
# =========================================================

async def _find_shipment(db, event: CarrierEvent):
    shipment = None
    if event.awb:
        shipment = await db.shipments.find_one({"awb_code": event.awb})
    if not shipment and event.carrier_order_id:
        shipment = await db.shipments.find_one({"carrier_order_id": event.carrier_order_id})
    return shipment


async def _append_scans(db, shipment: dict, event: CarrierEvent) -> int:
    scans = event.scans or [
        ScanEvent(
            status=event.status_label,
            description=event.status_label,
            timestamp=event.event_time,
        )
    ]

    added = 0
    for scan in scans:
        entry = {
            "status": scan.status,
            "description": scan.description,
            "location": scan.location,
            "timestamp": scan.timestamp or datetime.utcnow(),
        }
        result = await db.shipments.update_one(
            {"_id": shipment["_id"], "scan_keys": {"$ne": scan.identity_key}},
            {
                "$push": {"scan_history": entry},
                "$addToSet": {"scan_keys": scan.identity_key},
            },
        )
        added += result.modified_count
    return added


async def _backfill_fields(db, shipment: dict, event: CarrierEvent):
    updates = {}
    if event.courier_name and not shipment.get("courier_name"):
        updates["courier_name"] = event.courier_name
    if event.awb and not shipment.get("awb_code"):
        updates["awb_code"] = event.awb
    if event.estimated_delivery:
        updates["estimated_delivery"] = event.estimated_delivery
    if updates:
        await db.shipments.update_one({"_id": shipment["_id"]}, {"$set": updates})
        shipment.update(updates)


async def _advance_status(db, shipment: dict, new_status: str | None) -> bool:
    current = shipment.get("status")
    if not should_advance(current, new_status):
        return False

    now = datetime.utcnow()
    updates = {"status": new_status, "updated_at": now}
    if new_status == SHIPMENT_PICKUP_SCHEDULED and not shipment.get("pickup_scheduled_at"):
        updates["pickup_scheduled_at"] = now
    if new_status == SHIPMENT_PICKED_UP and not shipment.get("picked_up_at"):
        updates["picked_up_at"] = now

    result = await db.shipments.update_one(
        {"_id": shipment["_id"], "status": current},
        {"$set": updates},
    )
    if result.modified_count != 1:
        # another delivery moved it first; that one owns the projection
        logger.info("SHIPMENT_STATUS_RACE shipment=%s expected=%s", shipment["_id"], current)
        return False

    shipment.update(updates)
    return True


async def _project_order_status(db, shipment: dict, order: dict, event: CarrierEvent) -> str | None:
    """
    Mirror shipment progress on the order through the status machine.
    Returns the order status it moved to, or None.
    """
    status = shipment.get("status")
    if status not in IN_TRANSIT_STATUSES and status != SHIPMENT_DELIVERED:
        return None
    if order.get("status") == ORDER_DELIVERED:
        return None

    note = f"Carrier update (AWB: {shipment.get('awb_code') or event.awb})"
    effects = []

    if order.get("status") in (ORDER_CONFIRMED, ORDER_PROCESSING):
        tracking = order.get("tracking_info") or {}
        await transition_order(
            db,
            order,
            ORDER_SHIPPED,
            actor_role=ROLE_SYSTEM,
            note=note,
            extra_set={
                "tracking_info": {
                    "courier_name": shipment.get("courier_name") or event.courier_name,
                    "tracking_number": shipment.get("awb_code") or event.awb,
                    "shipped_at": tracking.get("shipped_at") or datetime.utcnow(),
                    "estimated_delivery": shipment.get("estimated_delivery"),
                }
            },
        )
        if status != SHIPMENT_DELIVERED:
            effects.append(notify_effect(
                user_id=order.get("buyer_id"),
                role=ROLE_BUYER,
                type="order_shipped",
                title=f"Order #{order['order_number']} shipped",
                message=f"Your order is on the way (AWB: {shipment.get('awb_code') or event.awb})",
                link=f"/orders/{order['_id']}",
                metadata={"order_id": str(order["_id"])},
            ))

    if status == SHIPMENT_DELIVERED and order.get("status") == ORDER_SHIPPED:
        await transition_order(
            db,
            order,
            ORDER_DELIVERED,
            actor_role=ROLE_SYSTEM,
            note=note,
            extra_set={"delivered_at": datetime.utcnow()},
        )
        effects.append(notify_effect(
            user_id=order.get("buyer_id"),
            role=ROLE_BUYER,
            type="order_delivered",
            title=f"Order #{order['order_number']} delivered",
            message="Your order has been delivered!",
            link=f"/orders/{order['_id']}",
            metadata={"order_id": str(order["_id"])},
        ))

    if not effects:
        return None

    await dispatch_effects(db, effects)
    await log_audit(
        db,
        None,
        ROLE_SYSTEM,
        "carrier_status_update",
        {"order_number": order.get("order_number"), "status": order.get("status"), "awb": shipment.get("awb_code")},
        domain="shipping",
        target_type="Order",
        target_id=order["_id"],
    )
    return order.get("status")


# =========================================================
# ENTRY POINT
# =========================================================

async def process_carrier_event(db, event: CarrierEvent) -> dict:
    """
    Apply one carrier tracking event. Safe to replay: scans are keyed,
    status only moves forward, and the order projection is a no-op once
    the order has caught up.
    """
    if not event.has_identifier:
        logger.warning("CARRIER_EVENT_NO_IDENTIFIER")
        return {"ignored": "no_identifier"}

    shipment = await _find_shipment(db, event)
    if not shipment:
        logger.warning("CARRIER_SHIPMENT_NOT_FOUND awb=%s carrier_order=%s", event.awb, event.carrier_order_id)
        return {"ignored": "shipment_not_found"}

    mapped = CARRIER_STATUS_MAP.get(event.status_code) if event.status_code is not None else None
    is_ndr = mapped == CARRIER_NDR
    new_status = None if is_ndr else mapped
    previous_status = shipment.get("status")

    await _backfill_fields(db, shipment, event)
    scans_added = await _append_scans(db, shipment, event)
    advanced = await _advance_status(db, shipment, new_status)

    order = await db.orders.find_one({"_id": shipment.get("order_id")})
    order_status = None

    if order:
        try:
            order_status = await _project_order_status(db, shipment, order, event)
        except InvalidTransition as e:
            logger.warning(
                "CARRIER_PROJECTION_SKIPPED order=%s shipment_status=%s detail=%s",
                order.get("order_number"),
                shipment.get("status"),
                e.detail,
            )

    if advanced and new_status == SHIPMENT_RTO:
        try:
            await handle_rto(db, shipment, order)
        except Exception:
            logger.exception("RTO_HANDLER_ERROR shipment=%s", shipment["_id"])
    elif advanced and new_status == SHIPMENT_CANCELLED:
        try:
            await handle_carrier_cancellation(db, shipment, order)
        except Exception:
            logger.exception("CARRIER_CANCEL_HANDLER_ERROR shipment=%s", shipment["_id"])
    elif is_ndr and scans_added:
        try:
            await handle_ndr(db, shipment, order)
        except Exception:
            logger.exception("NDR_HANDLER_ERROR shipment=%s", shipment["_id"])

    logger.info(
        "CARRIER_EVENT_APPLIED shipment=%s %s->%s scans_added=%s",
        shipment["_id"],
        previous_status,
        shipment.get("status"),
        scans_added,
    )
    return {
        "shipment_id": str(shipment["_id"]),
        "previous_status": previous_status,
        "status": shipment.get("status"),
        "advanced": advanced,
        "scans_added": scans_added,
        "order_status": order_status,
        "ndr": is_ndr,
    }
