import asyncio
import logging
from datetime import datetime

from pymongo import ReturnDocument

from config import env
from config.constants import (
    ORDER_CANCELLED,
    ORDER_CONFIRMED,
    ORDER_PENDING,
    PAYABLE_PAYMENT_STATUSES,
    PAYMENT_PAID,
    PAYMENT_PENDING,
    PAYMENT_FAILED,
    ROLE_BUYER,
    ROLE_SELLER,
    ROLE_SYSTEM,
)
from utils import cashfree
from utils.audit import log_audit
from utils.errors import AmountMismatch, InvalidTransition, NotFound
from utils.inventory import decrement_order_stock
from utils.notify import dispatch_effects, notify_effect
from utils.order_status import transition_order
from utils.refunds import refund_order

logger = logging.getLogger(__name__)

REASON_GATEWAY_NOT_PAID = "gateway_not_paid"
REASON_NO_ORDERS = "no_matching_orders"
REASON_ALREADY_PAID = "already_paid"
REASON_NOT_PAYABLE = "not_payable"
REASON_AMOUNT_MISMATCH = "amount_mismatch"


# =========================================================
# CORE (STATE ONLY, RETURNS EFFECTS)
# =========================================================

async def confirm_gateway_payment(db, gateway_order_id: str, *, buyer_id=None, actor_role: str = ROLE_SYSTEM) -> dict:
    """
    Apply an authoritative "paid" result from the gateway to every local
    order sharing `gateway_order_id`.

    Safe to call any number of times: the pending->paid flip is a
    conditional update, so each order is processed by exactly one caller.
    Raises AmountMismatch (no writes) and UpstreamUnavailable.
    """
    gateway_order = await asyncio.to_thread(cashfree.get_gateway_order, gateway_order_id)
    if not cashfree.is_gateway_order_paid(gateway_order):
        return _summary(
            processed_count=0,
            total_orders=0,
            reason=REASON_GATEWAY_NOT_PAID,
            gateway_status=gateway_order.get("order_status"),
        )

    query = {"gateway_order_id": gateway_order_id}
    if buyer_id is not None:
        query["buyer_id"] = buyer_id
    orders = await db.orders.find(query).to_list(None)
    if not orders:
        return _summary(processed_count=0, total_orders=0, reason=REASON_NO_ORDERS)

    expected_total = sum(float(o.get("total_amount", 0)) for o in orders)
    paid_amount = float(gateway_order.get("order_amount") or 0)
    if abs(paid_amount - expected_total) > env.PAYMENT_AMOUNT_TOLERANCE:
        logger.error(
            "PAYMENT_AMOUNT_MISMATCH gateway_order=%s paid=%s expected=%s",
            gateway_order_id,
            paid_amount,
            expected_total,
        )
        await log_audit(
            db,
            None,
            ROLE_SYSTEM,
            "payment_amount_mismatch",
            {"gateway_order_id": gateway_order_id, "paid": paid_amount, "expected": expected_total},
            domain="payment",
            target_type="Order",
            target_id=orders[0]["_id"],
        )
        raise AmountMismatch(
            f"Amount mismatch: paid {paid_amount}, expected {expected_total}",
            paid=paid_amount,
            expected=expected_total,
        )

    payments = await asyncio.to_thread(cashfree.get_gateway_payments, gateway_order_id)
    gateway_payment_id = cashfree.successful_payment_id(payments)

    processed = []
    errors = []
    effects = []

    for order in orders:
        if order.get("payment_status") not in PAYABLE_PAYMENT_STATUSES:
            continue
        try:
            claimed = await _claim_order_payment(db, order, gateway_payment_id)
            if not claimed:
                continue
            processed.append(claimed)
            effects.extend(await _apply_paid_order(db, claimed, actor_role=actor_role, errors=errors))
        except Exception as e:
            logger.exception("PAYMENT_ORDER_ERROR order=%s", order.get("order_number"))
            errors.append({"order_number": order.get("order_number"), "error": str(e)})

    if processed:
        await _track_coupon_usage(db, orders, gateway_order_id)

    reason = None
    if not processed:
        claimable = (*PAYABLE_PAYMENT_STATUSES, PAYMENT_PAID)
        if any(o.get("payment_status") in claimable for o in orders):
            reason = REASON_ALREADY_PAID
        else:
            # only refund_pending / refunded orders matched
            reason = REASON_NOT_PAYABLE

    return _summary(
        processed_count=len(processed),
        total_orders=len(orders),
        reason=reason,
        errors=errors,
        effects=effects,
        order_numbers=[o["order_number"] for o in processed],
    )


async def _claim_order_payment(db, order: dict, gateway_payment_id: str):
    now = datetime.utcnow()
    return await db.orders.find_one_and_update(
        {"_id": order["_id"], "payment_status": {"$in": list(PAYABLE_PAYMENT_STATUSES)}},
        {
            "$set": {
                "payment_status": PAYMENT_PAID,
                "gateway_payment_id": gateway_payment_id,
                "paid_at": now,
                "updated_at": now,
            }
        },
        return_document=ReturnDocument.AFTER,
    )


async def _apply_paid_order(db, order: dict, *, actor_role: str, errors: list) -> list[dict]:
    """
    Follow-up for an order this caller just claimed as paid. Money has
    already moved, so nothing here may undo the paid flag.
    """
    if order.get("status") == ORDER_PENDING:
        try:
            await transition_order(
                db,
                order,
                ORDER_CONFIRMED,
                actor_role=actor_role,
                note="Payment confirmed by gateway",
            )
        except InvalidTransition as e:
            logger.warning("PAYMENT_CONFIRM_SKIPPED order=%s detail=%s", order.get("order_number"), e.detail)
            errors.append({"order_number": order.get("order_number"), "error": e.detail})
            return []
    else:
        # paid after the order left pending; no stock is taken
        logger.error(
            "PAYMENT_FOR_INACTIVE_ORDER order=%s status=%s",
            order.get("order_number"),
            order.get("status"),
        )
        errors.append({"order_number": order.get("order_number"), "error": f"order is {order.get('status')}"})
        if order.get("status") == ORDER_CANCELLED:
            await refund_order(db, order, note="Payment received for a cancelled order", refund_prefix="refund_late")
        return []

    await decrement_order_stock(db, order)

    await db.users.update_one(
        {"_id": order["seller_id"]},
        {"$inc": {"seller_profile.total_sales": order["total_amount"], "seller_profile.total_orders": 1}},
    )

    await log_audit(
        db,
        None,
        ROLE_SYSTEM,
        "payment_confirmed",
        {"order_number": order.get("order_number"), "gateway_order_id": order.get("gateway_order_id")},
        domain="payment",
        target_type="Order",
        target_id=order["_id"],
    )

    return [
        notify_effect(
            user_id=order.get("buyer_id"),
            role=ROLE_BUYER,
            type="order_confirmed",
            title=f"Order #{order['order_number']} confirmed",
            message="Your payment was received and the order is confirmed.",
            link=f"/orders/{order['_id']}",
            metadata={"order_id": str(order["_id"])},
        ),
        notify_effect(
            user_id=order.get("seller_id"),
            role=ROLE_SELLER,
            type="new_order",
            title=f"New order #{order['order_number']}",
            message=f"A paid order worth {order['total_amount']} is ready to ship.",
            link="/seller/orders",
            metadata={"order_id": str(order["_id"])},
        ),
    ]


async def _track_coupon_usage(db, orders: list[dict], gateway_order_id: str):
    """
    Count a coupon once per checkout. The filter carries both the usage
    limit and the checkout marker, so concurrent deliveries cannot
    double count or exceed the limit.
    """
    coupon_code = next((o.get("coupon_code") for o in orders if o.get("coupon_code")), None)
    if not coupon_code:
        return

    try:
        coupon = await db.coupons.find_one({"code": coupon_code})
        if not coupon:
            logger.warning("COUPON_NOT_FOUND code=%s", coupon_code)
            return

        query = {"_id": coupon["_id"], "redeemed_checkouts": {"$ne": gateway_order_id}}
        if coupon.get("usage_limit"):
            query["used_count"] = {"$lt": coupon["usage_limit"]}

        result = await db.coupons.update_one(
            query,
            {
                "$inc": {"used_count": 1},
                "$addToSet": {
                    "used_by": orders[0].get("buyer_id"),
                    "redeemed_checkouts": gateway_order_id,
                },
            },
        )
        if result.modified_count == 0:
            logger.warning("COUPON_NOT_COUNTED code=%s gateway_order=%s", coupon_code, gateway_order_id)
    except Exception:
        logger.exception("COUPON_TRACKING_ERROR code=%s", coupon_code)


async def mark_gateway_payment_failed(db, gateway_order_id: str) -> int:
    """
    Record a failed attempt. Only still-pending orders move, and failed
    stays payable so a later success still confirms them.
    """
    result = await db.orders.update_many(
        {"gateway_order_id": gateway_order_id, "payment_status": PAYMENT_PENDING},
        {"$set": {"payment_status": PAYMENT_FAILED, "updated_at": datetime.utcnow()}},
    )
    return result.modified_count


def _summary(**fields) -> dict:
    summary = {
        "processed": fields.get("processed_count", 0) > 0,
        "processed_count": 0,
        "total_orders": 0,
        "reason": None,
        "errors": [],
        "effects": [],
    }
    summary.update(fields)
    return summary


# =========================================================
# ENTRY POINTS
# =========================================================

async def process_payment_confirmation(db, gateway_order_id: str, *, buyer_id=None, actor_role: str = ROLE_SYSTEM) -> dict:
    """
    Core plus effect dispatch. Returns the summary without the effect list.
    """
    result = await confirm_gateway_payment(db, gateway_order_id, buyer_id=buyer_id, actor_role=actor_role)
    effects = result.pop("effects", [])
    await dispatch_effects(db, effects)

    if result["processed"]:
        logger.info(
            "PAYMENT_CONFIRMED gateway_order=%s processed=%s/%s",
            gateway_order_id,
            result["processed_count"],
            result["total_orders"],
        )
    else:
        logger.info("PAYMENT_SKIPPED gateway_order=%s reason=%s", gateway_order_id, result["reason"])
    return result


async def verify_payment(db, gateway_order_id: str, buyer: dict) -> dict:
    """
    Buyer-initiated poll after the gateway redirect. Only the buyer's own
    orders are touched; gateway and amount errors reach the caller.
    """
    owned = await db.orders.find_one({"gateway_order_id": gateway_order_id, "buyer_id": buyer["_id"]})
    if not owned:
        raise NotFound("Order not found")

    return await process_payment_confirmation(
        db,
        gateway_order_id,
        buyer_id=buyer["_id"],
        actor_role=ROLE_BUYER,
    )
