import asyncio
import logging
import secrets
from collections import defaultdict
from datetime import datetime

from fastapi import HTTPException

from config.constants import (
    ORDER_PAYOUT_PENDING,
    ORDER_PENDING,
    PAYMENT_PENDING,
    ROLE_BUYER,
)
from models.order import CheckoutRequest
from utils import cashfree
from utils.commission import build_order_pricing
from utils.guards import parse_object_id
from utils.order_status import history_entry
from utils.settings_cache import get_platform_settings

logger = logging.getLogger(__name__)


def _order_number(now: datetime) -> str:
    return f"ORD{now:%y%m%d}{secrets.token_hex(3).upper()}"


async def _validate_coupon(db, code: str | None):
    if not code:
        return None
    coupon = await db.coupons.find_one({"code": code.strip().upper(), "active": {"$ne": False}})
    if not coupon:
        raise HTTPException(status_code=400, detail="Invalid coupon code")
    if coupon.get("usage_limit") and coupon.get("used_count", 0) >= coupon["usage_limit"]:
        raise HTTPException(status_code=400, detail="Coupon usage limit reached")
    return coupon["code"]


async def create_checkout(db, buyer: dict, payload: CheckoutRequest) -> dict:
    """
    One gateway order for the whole cart, one local order per seller.

    Financials are frozen on each order here; stock is only taken once the
    gateway confirms payment.
    """
    lines_by_seller = defaultdict(list)
    for line in payload.items:
        product = await db.products.find_one({
            "_id": parse_object_id(line.product_id, "product id"),
            "active": {"$ne": False},
        })
        if not product:
            raise HTTPException(status_code=404, detail="Product not found")
        if product.get("stock", 0) < line.quantity:
            raise HTTPException(status_code=400, detail=f"Insufficient stock for {product.get('title')}")

        lines_by_seller[product["seller_id"]].append({
            "product_id": product["_id"],
            "title": product.get("title", ""),
            "sku": product.get("sku"),
            "price": product["selling_price"],
            "quantity": line.quantity,
        })

    coupon_code = await _validate_coupon(db, payload.coupon_code)
    settings = await get_platform_settings(db)
    now = datetime.utcnow()
    gateway_order_id = f"cf_{now:%Y%m%d%H%M%S}_{secrets.token_hex(4)}"

    orders = []
    for seller_id, items in lines_by_seller.items():
        seller = await db.users.find_one({"_id": seller_id}) or {}
        shipping_cost = (seller.get("seller_profile") or {}).get("flat_shipping_fee") or 0
        pricing = build_order_pricing(items, shipping_cost, seller, settings)

        orders.append({
            "order_number": _order_number(now),
            "buyer_id": buyer["_id"],
            "seller_id": seller_id,
            "items": items,
            "shipping_address": payload.shipping_address.model_dump(),
            **pricing,
            "actual_shipping_cost": None,
            "shipping_paid_by": "customer" if pricing["shipping_cost"] else "seller",
            "payment_status": PAYMENT_PENDING,
            "status": ORDER_PENDING,
            "payout_status": ORDER_PAYOUT_PENDING,
            "payout_id": None,
            "gateway_order_id": gateway_order_id,
            "gateway_payment_id": None,
            "coupon_code": coupon_code,
            "refund_retry_count": 0,
            "status_history": [history_entry(ORDER_PENDING, actor_role=ROLE_BUYER, actor_id=buyer["_id"], note="Order placed", at=now)],
            "created_at": now,
            "updated_at": now,
        })

    await db.orders.insert_many(orders)
    total_amount = sum(o["total_amount"] for o in orders)

    try:
        gateway_order = await asyncio.to_thread(
            cashfree.create_gateway_order,
            gateway_order_id=gateway_order_id,
            amount=total_amount,
            customer={
                "id": buyer["_id"],
                "email": buyer.get("email"),
                "phone": buyer.get("phone"),
                "name": buyer.get("name"),
            },
        )
    except Exception:
        # nothing was paid or reserved yet; drop the unpaid orders
        await db.orders.delete_many({"gateway_order_id": gateway_order_id, "payment_status": PAYMENT_PENDING})
        logger.exception("CHECKOUT_GATEWAY_ORDER_FAILED gateway_order=%s", gateway_order_id)
        raise

    logger.info("CHECKOUT_CREATED gateway_order=%s orders=%s total=%s", gateway_order_id, len(orders), total_amount)
    return {
        "gateway_order_id": gateway_order_id,
        "payment_session_id": gateway_order.get("payment_session_id"),
        "order_numbers": [o["order_number"] for o in orders],
        "total_amount": total_amount,
    }
