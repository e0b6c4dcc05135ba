import asyncio

import pytest
from bson import ObjectId

from config.constants import (
    ORDER_CANCELLED,
    ORDER_CONFIRMED,
    PAYMENT_FAILED,
    PAYMENT_PAID,
    PAYMENT_PENDING,
    PAYMENT_REFUND_PENDING,
    PAYMENT_REFUNDED,
)
from factories import make_order, make_seller
from utils.errors import AmountMismatch, NotFound
from utils.payment_confirmation import (
    REASON_ALREADY_PAID,
    REASON_GATEWAY_NOT_PAID,
    REASON_NO_ORDERS,
    REASON_NOT_PAYABLE,
    confirm_gateway_payment,
    mark_gateway_payment_failed,
    process_payment_confirmation,
    verify_payment,
)

GW = "cf_test_1"


async def _seed_checkout(db, *, coupon_code=None, orders=2, gateway_order_id=GW):
    """Two sellers, one product each, one checkout."""
    buyer_id = ObjectId()
    created = []
    for _ in range(orders):
        seller = make_seller()
        product_id = ObjectId()
        await db.users.insert_one(seller)
        await db.products.insert_one({"_id": product_id, "stock": 10, "order_count": 0})
        order = make_order(
            buyer_id=buyer_id,
            seller_id=seller["_id"],
            gateway_order_id=gateway_order_id,
            coupon_code=coupon_code,
            items=[{"product_id": product_id, "quantity": 2, "price": 500}],
        )
        await db.orders.insert_one(order)
        created.append(order)
    return buyer_id, created


async def test_repeated_confirmation_applies_side_effects_once(db, gateway):
    buyer_id, orders = await _seed_checkout(db, coupon_code="SAVE10")
    await db.coupons.insert_one({"code": "SAVE10", "used_count": 0, "usage_limit": 5, "used_by": []})
    gateway.mark_paid(GW, 2000)

    first = await process_payment_confirmation(db, GW)
    second = await process_payment_confirmation(db, GW)

    assert first["processed_count"] == 2
    assert second["processed"] is False
    assert second["reason"] == REASON_ALREADY_PAID

    for order in orders:
        stored = await db.orders.find_one({"_id": order["_id"]})
        assert stored["payment_status"] == PAYMENT_PAID
        assert stored["status"] == ORDER_CONFIRMED
        assert stored["gateway_payment_id"] == "9001"

        product = await db.products.find_one({"_id": order["items"][0]["product_id"]})
        assert product["stock"] == 8
        assert product["order_count"] == 2

        seller = await db.users.find_one({"_id": order["seller_id"]})
        assert seller["seller_profile"]["total_orders"] == 1
        assert seller["seller_profile"]["total_sales"] == 1000

    coupon = await db.coupons.find_one({"code": "SAVE10"})
    assert coupon["used_count"] == 1
    assert coupon["redeemed_checkouts"] == [GW]


async def test_concurrent_confirmations_apply_side_effects_once(db, gateway):
    _, orders = await _seed_checkout(db, coupon_code="SAVE10")
    await db.coupons.insert_one({"code": "SAVE10", "used_count": 0, "usage_limit": 5, "used_by": []})
    gateway.mark_paid(GW, 2000)

    results = await asyncio.gather(
        process_payment_confirmation(db, GW),
        process_payment_confirmation(db, GW),
    )

    assert sum(r["processed_count"] for r in results) == 2
    for order in orders:
        product = await db.products.find_one({"_id": order["items"][0]["product_id"]})
        assert product["stock"] == 8
        seller = await db.users.find_one({"_id": order["seller_id"]})
        assert seller["seller_profile"]["total_orders"] == 1
    assert await db.notifications.count_documents({"type": "new_order"}) == 2

    coupon = await db.coupons.find_one({"code": "SAVE10"})
    assert coupon["used_count"] == 1


async def test_coupon_usage_limit_holds_across_racing_checkouts(db, gateway):
    await db.coupons.insert_one({"code": "ONCE", "used_count": 0, "usage_limit": 1, "used_by": []})
    _, first = await _seed_checkout(db, coupon_code="ONCE", orders=1, gateway_order_id="cf_a")
    _, second = await _seed_checkout(db, coupon_code="ONCE", orders=1, gateway_order_id="cf_b")
    gateway.mark_paid("cf_a", 1000)
    gateway.mark_paid("cf_b", 1000)

    await asyncio.gather(
        process_payment_confirmation(db, "cf_a"),
        process_payment_confirmation(db, "cf_b"),
    )

    coupon = await db.coupons.find_one({"code": "ONCE"})
    assert coupon["used_count"] == 1
    assert len(coupon["redeemed_checkouts"]) == 1
    # the payment itself still stands for both checkouts
    for order in first + second:
        stored = await db.orders.find_one({"_id": order["_id"]})
        assert stored["payment_status"] == PAYMENT_PAID


@pytest.mark.parametrize("payment_status", [PAYMENT_REFUND_PENDING, PAYMENT_REFUNDED])
async def test_refunding_orders_are_reported_as_not_payable(db, gateway, payment_status):
    _, orders = await _seed_checkout(db, orders=1)
    await db.orders.update_one({"_id": orders[0]["_id"]}, {"$set": {"payment_status": payment_status}})
    gateway.mark_paid(GW, 1000)

    result = await confirm_gateway_payment(db, GW)

    assert result["processed"] is False
    assert result["reason"] == REASON_NOT_PAYABLE
    stored = await db.orders.find_one({"_id": orders[0]["_id"]})
    assert stored["payment_status"] == payment_status


async def test_buyer_and_seller_are_notified(db, gateway):
    _, orders = await _seed_checkout(db, orders=1)
    gateway.mark_paid(GW, 1000)

    await process_payment_confirmation(db, GW)

    types = sorted(n["type"] for n in await db.notifications.find({}).to_list(None))
    assert types == ["new_order", "order_confirmed"]


async def test_amount_mismatch_writes_nothing(db, gateway):
    _, orders = await _seed_checkout(db)
    gateway.mark_paid(GW, 1500)

    with pytest.raises(AmountMismatch) as exc:
        await confirm_gateway_payment(db, GW)

    assert exc.value.context["paid"] == 1500
    assert exc.value.context["expected"] == 2000
    for order in orders:
        stored = await db.orders.find_one({"_id": order["_id"]})
        assert stored["payment_status"] == PAYMENT_PENDING
        assert stored["status"] == "pending"
    assert await db.audit_logs.count_documents({"action": "payment_amount_mismatch"}) == 1


async def test_amount_within_tolerance_is_accepted(db, gateway):
    await _seed_checkout(db, orders=1)
    gateway.mark_paid(GW, 1000.5)

    result = await confirm_gateway_payment(db, GW)
    assert result["processed_count"] == 1


async def test_unpaid_gateway_order_is_skipped(db, gateway):
    _, orders = await _seed_checkout(db, orders=1)
    gateway.orders[GW] = {"order_status": "ACTIVE", "order_amount": 1000}

    result = await confirm_gateway_payment(db, GW)

    assert result["reason"] == REASON_GATEWAY_NOT_PAID
    stored = await db.orders.find_one({"_id": orders[0]["_id"]})
    assert stored["payment_status"] == PAYMENT_PENDING


async def test_no_local_orders(db, gateway):
    gateway.mark_paid("cf_unknown", 100)
    result = await confirm_gateway_payment(db, "cf_unknown")
    assert result["reason"] == REASON_NO_ORDERS


async def test_failed_attempt_can_still_be_paid(db, gateway):
    _, orders = await _seed_checkout(db, orders=1)

    assert await mark_gateway_payment_failed(db, GW) == 1
    stored = await db.orders.find_one({"_id": orders[0]["_id"]})
    assert stored["payment_status"] == PAYMENT_FAILED

    gateway.mark_paid(GW, 1000)
    result = await confirm_gateway_payment(db, GW)

    assert result["processed_count"] == 1
    stored = await db.orders.find_one({"_id": orders[0]["_id"]})
    assert stored["payment_status"] == PAYMENT_PAID


async def test_late_payment_on_cancelled_order_is_refunded(db, gateway):
    _, orders = await _seed_checkout(db, orders=1)
    await db.orders.update_one({"_id": orders[0]["_id"]}, {"$set": {"status": ORDER_CANCELLED}})
    gateway.mark_paid(GW, 1000)

    result = await confirm_gateway_payment(db, GW)

    assert result["errors"]
    stored = await db.orders.find_one({"_id": orders[0]["_id"]})
    assert stored["status"] == ORDER_CANCELLED
    assert stored["payment_status"] == PAYMENT_REFUNDED
    assert gateway.refunds[0]["refund_id"].startswith("refund_late_")

    product = await db.products.find_one({"_id": orders[0]["items"][0]["product_id"]})
    assert product["stock"] == 10


async def test_stock_shortfall_does_not_go_negative(db, gateway):
    _, orders = await _seed_checkout(db, orders=1)
    product_id = orders[0]["items"][0]["product_id"]
    await db.products.update_one({"_id": product_id}, {"$set": {"stock": 1}})
    gateway.mark_paid(GW, 1000)

    result = await confirm_gateway_payment(db, GW)

    assert result["processed_count"] == 1
    product = await db.products.find_one({"_id": product_id})
    assert product["stock"] == 1


async def test_verify_payment_requires_ownership(db, gateway):
    await _seed_checkout(db, orders=1)
    gateway.mark_paid(GW, 1000)

    with pytest.raises(NotFound):
        await verify_payment(db, GW, {"_id": ObjectId()})


async def test_verify_payment_confirms_own_orders(db, gateway):
    buyer_id, orders = await _seed_checkout(db, orders=1)
    gateway.mark_paid(GW, 1000)

    result = await verify_payment(db, GW, {"_id": buyer_id})

    assert result["processed"] is True
    assert "effects" not in result
