import asyncio
import logging
from datetime import datetime

from config.constants import PAYMENT_PAID, PAYMENT_REFUND_PENDING, PAYMENT_REFUNDED
from utils import cashfree

logger = logging.getLogger(__name__)


async def _refundable_amount(order: dict):
    """
    Refund at most what the gateway actually collected for this order.
    If the gateway cannot be reached the local total is used.
    """
    amount = order["total_amount"]
    try:
        gateway_order = await asyncio.to_thread(cashfree.get_gateway_order, order["gateway_order_id"])
        paid = gateway_order.get("order_amount")
        if paid is not None:
            amount = min(amount, float(paid))
    except Exception:
        logger.warning("REFUND_AMOUNT_VERIFY_FAILED order=%s", order.get("order_number"))
    return amount


async def refund_order(db, order: dict, *, note: str, refund_prefix: str = "refund") -> dict:
    """
    Refund a paid order through the gateway.

    Success leaves payment_status=refunded with the refund id; any failure
    leaves payment_status=refund_pending for manual follow-up. Never raises
    for gateway problems.
    """
    if order.get("payment_status") not in (PAYMENT_PAID, PAYMENT_REFUND_PENDING):
        return {"refunded": False, "reason": "not_refundable", "payment_status": order.get("payment_status")}

    if not order.get("gateway_order_id"):
        logger.error("REFUND_NO_GATEWAY_ORDER order=%s", order.get("order_number"))
        await _mark_refund_pending(db, order)
        return {"refunded": False, "reason": "missing_gateway_order", "payment_status": PAYMENT_REFUND_PENDING}

    refund_id = f"{refund_prefix}_{order['order_number']}_{int(datetime.utcnow().timestamp() * 1000)}"

    try:
        amount = await _refundable_amount(order)
        await asyncio.to_thread(
            cashfree.create_refund,
            gateway_order_id=order["gateway_order_id"],
            refund_amount=amount,
            refund_id=refund_id,
            refund_note=note,
        )
    except Exception as e:
        logger.error("REFUND_FAILED order=%s error=%s", order.get("order_number"), e)
        await _mark_refund_pending(db, order)
        return {"refunded": False, "reason": "gateway_error", "payment_status": PAYMENT_REFUND_PENDING}

    now = datetime.utcnow()
    await db.orders.update_one(
        {"_id": order["_id"]},
        {
            "$set": {
                "payment_status": PAYMENT_REFUNDED,
                "refund_id": refund_id,
                "refund_amount": amount,
                "refunded_at": now,
                "updated_at": now,
            }
        },
    )
    order["payment_status"] = PAYMENT_REFUNDED
    order["refund_id"] = refund_id
    logger.info("REFUND_INITIATED order=%s refund=%s amount=%s", order.get("order_number"), refund_id, amount)
    return {"refunded": True, "refund_id": refund_id, "amount": amount, "payment_status": PAYMENT_REFUNDED}


async def _mark_refund_pending(db, order: dict):
    await db.orders.update_one(
        {"_id": order["_id"], "payment_status": {"$ne": PAYMENT_REFUNDED}},
        {"$set": {"payment_status": PAYMENT_REFUND_PENDING, "updated_at": datetime.utcnow()}},
    )
    order["payment_status"] = PAYMENT_REFUND_PENDING
