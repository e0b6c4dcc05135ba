import logging
from datetime import datetime

from fastapi import HTTPException

from config.constants import (
    BUYER_CANCELLABLE_STATUSES,
    ORDER_CANCELLED,
    ORDER_DELIVERED,
    ORDER_SHIPPED,
    PAYMENT_PAID,
    PAYMENT_REFUND_PENDING,
    PAYMENT_REFUNDED,
    ROLE_ADMIN,
    ROLE_BUYER,
    ROLE_SELLER,
)
from models.order import ShipOrderRequest
from utils.audit import log_audit
from utils.errors import AlreadyProcessed, InvalidTransition
from utils.inventory import restore_order_stock
from utils.notify import dispatch_effects, notify_effect
from utils.order_status import transition_order
from utils.refunds import refund_order

logger = logging.getLogger(__name__)


async def seller_mark_shipped(db, order: dict, payload: ShipOrderRequest, seller: dict) -> dict:
    """
    Manual shipping by the seller (own courier, no carrier booking).
    """
    await transition_order(
        db,
        order,
        ORDER_SHIPPED,
        actor_role=ROLE_SELLER,
        actor_id=seller["_id"],
        note="Marked shipped by seller",
        extra_set={
            "tracking_info": {
                "courier_name": payload.courier_name,
                "tracking_number": payload.tracking_number,
                "shipped_at": datetime.utcnow(),
                "estimated_delivery": payload.estimated_delivery,
            }
        },
    )

    await dispatch_effects(db, [
        notify_effect(
            user_id=order.get("buyer_id"),
            role=ROLE_BUYER,
            type="order_shipped",
            title=f"Order #{order['order_number']} shipped",
            message=f"Your order is on the way ({payload.courier_name or 'courier'} {payload.tracking_number})".strip(),
            link=f"/orders/{order['_id']}",
            metadata={"order_id": str(order["_id"])},
        ),
    ])
    return order


async def cancel_order(db, order: dict, *, actor_role: str, actor_id=None, reason: str | None = None) -> dict:
    """
    Cancel, put stock back and refund. Buyers may only cancel before the
    order ships; admins follow the full status machine.
    """
    if actor_role == ROLE_BUYER and order.get("status") not in BUYER_CANCELLABLE_STATUSES:
        raise InvalidTransition(
            f'Cannot cancel order with status "{order.get("status")}". Only pending or confirmed orders can be cancelled.',
            from_status=order.get("status"),
            to_status=ORDER_CANCELLED,
        )

    reason = reason or ("Cancelled by customer" if actor_role == ROLE_BUYER else "Cancelled by admin")
    was_paid = order.get("payment_status") == PAYMENT_PAID

    await transition_order(
        db,
        order,
        ORDER_CANCELLED,
        actor_role=actor_role,
        actor_id=actor_id,
        note=reason,
        extra_set={"cancelled_at": datetime.utcnow(), "cancel_reason": reason},
    )

    refund = None
    if was_paid:
        # stock is only taken once payment is confirmed
        await restore_order_stock(db, order, was_paid=True)
        refund = await refund_order(db, order, note=reason)

    await dispatch_effects(db, [
        notify_effect(
            user_id=order.get("seller_id"),
            role=ROLE_SELLER,
            type="order_cancelled",
            title=f"Order #{order['order_number']} cancelled",
            message=reason,
            link="/seller/orders",
            metadata={"order_id": str(order["_id"])},
        ),
    ])

    await log_audit(
        db,
        str(actor_id) if actor_id else None,
        actor_role,
        "order_cancelled",
        {"order_number": order.get("order_number"), "reason": reason, "payment_status": order.get("payment_status")},
        domain="order",
        target_type="Order",
        target_id=order["_id"],
    )
    return {"order": order, "refund": refund}


async def admin_update_order_status(db, order: dict, to_status: str, *, admin: dict, note: str | None = None) -> dict:
    """
    Admin status edit. Goes through the same machine as everything else;
    cancellation takes the full cancel path so money and stock follow.
    """
    if to_status == ORDER_CANCELLED:
        result = await cancel_order(db, order, actor_role=ROLE_ADMIN, actor_id=admin["_id"], reason=note)
        return result["order"]

    extra_set = {}
    if to_status == ORDER_DELIVERED:
        extra_set["delivered_at"] = datetime.utcnow()

    await transition_order(
        db,
        order,
        to_status,
        actor_role=ROLE_ADMIN,
        actor_id=admin["_id"],
        note=note or "Updated by admin",
        extra_set=extra_set,
    )
    await log_audit(
        db,
        str(admin["_id"]),
        ROLE_ADMIN,
        "order_status_updated",
        {"order_number": order.get("order_number"), "status": to_status},
        domain="order",
        target_type="Order",
        target_id=order["_id"],
    )
    return order


async def retry_refund(db, order: dict, *, admin: dict) -> dict:
    if order.get("payment_status") == PAYMENT_REFUNDED:
        raise AlreadyProcessed("Order already refunded", refund_id=order.get("refund_id"))
    if order.get("payment_status") != PAYMENT_REFUND_PENDING:
        raise HTTPException(status_code=400, detail="Order has no pending refund")

    await db.orders.update_one({"_id": order["_id"]}, {"$inc": {"refund_retry_count": 1}})
    result = await refund_order(db, order, note="Refund retried by admin", refund_prefix="refund_retry")

    await log_audit(
        db,
        str(admin["_id"]),
        ROLE_ADMIN,
        "refund_retried",
        {"order_number": order.get("order_number"), "refunded": result.get("refunded")},
        domain="payment",
        target_type="Order",
        target_id=order["_id"],
    )
    logger.info("REFUND_RETRY order=%s refunded=%s", order.get("order_number"), result.get("refunded"))
    return result
