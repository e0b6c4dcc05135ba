import logging
from datetime import datetime

from config.constants import (
    ORDER_CANCELLED,
    ORDER_DELIVERED,
    ORDER_REFUNDED,
    PAYMENT_PAID,
    ROLE_BUYER,
    ROLE_SELLER,
    ROLE_SYSTEM,
)
from utils.audit import log_audit
from utils.errors import InvalidTransition
from utils.inventory import restore_order_stock
from utils.notify import dispatch_effects, notify_effect
from utils.order_status import transition_order
from utils.refunds import refund_order

logger = logging.getLogger(__name__)

RTO_CANCEL_REASON = "Return to Origin (RTO): shipment returned by courier"


async def handle_rto(db, shipment: dict, order: dict | None) -> dict:
    """
    Shipment came back to the seller. Cancel the order, put the stock back,
    refund if paid, tell both sides.

    Steps run one after another and are not rolled back: the parcel has
    physically returned, so a failed refund must not undo the cancellation.
    """
    if not order:
        logger.warning("RTO_ORDER_MISSING shipment=%s", shipment.get("_id"))
        return {"skipped": "order_missing"}

    awb = shipment.get("awb_code") or str(shipment.get("_id"))

    if order.get("status") in (ORDER_CANCELLED, ORDER_REFUNDED):
        logger.info("RTO_SKIPPED order=%s status=%s", order.get("order_number"), order.get("status"))
        return {"skipped": order.get("status")}

    if order.get("status") == ORDER_DELIVERED:
        # delivered orders are never auto-cancelled; finance reviews these by hand
        logger.error("RTO_AFTER_DELIVERY order=%s awb=%s", order.get("order_number"), awb)
        await log_audit(
            db,
            None,
            ROLE_SYSTEM,
            "rto_after_delivery",
            {"order_number": order.get("order_number"), "awb": shipment.get("awb_code")},
            domain="shipping",
            target_type="Order",
            target_id=order["_id"],
        )
        return {"skipped": ORDER_DELIVERED}

    logger.info("RTO_PROCESSING order=%s shipment=%s", order.get("order_number"), shipment.get("_id"))
    result = {"cancelled": False, "stock_restored": 0, "refund": None, "errors": []}
    was_paid = order.get("payment_status") == PAYMENT_PAID

    try:
        await transition_order(
            db,
            order,
            ORDER_CANCELLED,
            actor_role=ROLE_SYSTEM,
            note=f"RTO: shipment {awb} returned to origin",
            extra_set={"cancelled_at": datetime.utcnow(), "cancel_reason": RTO_CANCEL_REASON},
        )
        result["cancelled"] = True
    except InvalidTransition as e:
        logger.error("RTO_CANCEL_FAILED order=%s detail=%s", order.get("order_number"), e.detail)
        result["errors"].append({"step": "cancel", "error": e.detail})
        return result

    try:
        result["stock_restored"] = await restore_order_stock(db, order, was_paid=was_paid)
    except Exception as e:
        logger.exception("RTO_STOCK_RESTORE_FAILED order=%s", order.get("order_number"))
        result["errors"].append({"step": "stock", "error": str(e)})

    if was_paid:
        try:
            result["refund"] = await refund_order(
                db,
                order,
                note="Order cancelled: RTO (shipment returned to origin)",
                refund_prefix="refund_rto",
            )
        except Exception as e:
            logger.exception("RTO_REFUND_FAILED order=%s", order.get("order_number"))
            result["errors"].append({"step": "refund", "error": str(e)})

    await dispatch_effects(db, [
        notify_effect(
            user_id=order.get("buyer_id"),
            role=ROLE_BUYER,
            type="order_cancelled",
            title=f"Order #{order['order_number']}: Shipment Returned",
            message="Your shipment was returned to the seller. A refund has been initiated.",
            link=f"/orders/{order['_id']}",
            metadata={"order_id": str(order["_id"]), "reason": "rto"},
        ),
        notify_effect(
            user_id=order.get("seller_id"),
            role=ROLE_SELLER,
            type="order_cancelled",
            title=f"RTO: Order #{order['order_number']}",
            message=f"Shipment {shipment.get('awb_code') or ''} was returned to origin. Order has been auto-cancelled.",
            link="/seller/orders",
            metadata={"order_id": str(order["_id"]), "reason": "rto"},
        ),
    ])

    await log_audit(
        db,
        None,
        ROLE_SYSTEM,
        "rto_auto_cancel",
        {"order_number": order.get("order_number"), "awb": shipment.get("awb_code"), "payment_status": order.get("payment_status")},
        domain="shipping",
        target_type="Order",
        target_id=order["_id"],
    )

    logger.info(
        "RTO_DONE order=%s payment_status=%s",
        order.get("order_number"),
        order.get("payment_status"),
    )
    return result
