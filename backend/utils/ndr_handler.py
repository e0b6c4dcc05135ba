import logging

from config.constants import ROLE_BUYER, ROLE_SELLER, ROLE_SYSTEM
from utils.audit import log_audit
from utils.notify import dispatch_effects, notify_effect

logger = logging.getLogger(__name__)


async def handle_ndr(db, shipment: dict, order: dict | None) -> int:
    """
    Failed delivery attempt. The carrier re-attempts or escalates to RTO on
    its own, so nothing changes state here; buyer and seller are told.
    """
    if not order:
        logger.warning("NDR_ORDER_MISSING shipment=%s", shipment.get("_id"))
        return 0

    awb = shipment.get("awb_code") or "N/A"
    logger.info("NDR_DELIVERY_FAILED order=%s awb=%s", order.get("order_number"), awb)

    metadata = {"order_id": str(order["_id"]), "awb": shipment.get("awb_code"), "reason": "ndr"}
    sent = await dispatch_effects(db, [
        notify_effect(
            user_id=order.get("seller_id"),
            role=ROLE_SELLER,
            type="shipping_update",
            title=f"Delivery Failed: Order #{order['order_number']}",
            message=f"Delivery attempt failed for AWB {awb}. The courier will retry. Contact the customer if needed.",
            link="/seller/orders",
            metadata=metadata,
        ),
        notify_effect(
            user_id=order.get("buyer_id"),
            role=ROLE_BUYER,
            type="shipping_update",
            title=f"Delivery Attempt Failed: Order #{order['order_number']}",
            message="A delivery attempt was unsuccessful. The courier will try again.",
            link=f"/orders/{order['_id']}",
            metadata=metadata,
        ),
    ])

    await log_audit(
        db,
        None,
        ROLE_SYSTEM,
        "ndr_delivery_failed",
        {"order_number": order.get("order_number"), "awb": shipment.get("awb_code")},
        domain="shipping",
        target_type="Order",
        target_id=order["_id"],
    )
    return sent


async def handle_carrier_cancellation(db, shipment: dict, order: dict | None) -> int:
    """
    Carrier cancelled the shipment. The order is left alone; the seller
    has to rebook or cancel it themselves.
    """
    if not order:
        return 0

    logger.warning(
        "CARRIER_SHIPMENT_CANCELLED order=%s awb=%s",
        order.get("order_number"),
        shipment.get("awb_code"),
    )
    return await dispatch_effects(db, [
        notify_effect(
            user_id=order.get("seller_id"),
            role=ROLE_SELLER,
            type="shipping_update",
            title=f"Shipment Cancelled: Order #{order['order_number']}",
            message="The carrier cancelled this shipment. Book a new shipment or cancel the order.",
            link="/seller/orders",
            metadata={"order_id": str(order["_id"]), "awb": shipment.get("awb_code"), "reason": "carrier_cancelled"},
        ),
    ])
