from datetime import datetime

from bson import ObjectId

from config.constants import ORDER_PAYOUT_INCLUDED, PAYOUT_LINKING
from factories import make_delivered_order, make_order, make_seller
from utils.payout_engine import calculate_payouts, mark_paid
from utils.reconciliation import build_reconciliation_report

START = datetime(2026, 2, 1)
END = datetime(2026, 2, 14, 23, 59, 59)


async def _batch(db, orders=2):
    seller = make_seller()
    await db.users.insert_one(seller)
    docs = [make_delivered_order(seller["_id"], datetime(2026, 2, 5)) for _ in range(orders)]
    await db.orders.insert_many(docs)
    result = await calculate_payouts(db, START, END)
    return result["created"][0], docs


def _problems(items):
    return sorted(item["problem"] for item in items)


async def test_clean_books_report_nothing(db):
    payout, _ = await _batch(db)
    await mark_paid(db, payout["_id"], "UTR1")

    report = await build_reconciliation_report(db)

    assert report["orphan_count"] == 0
    assert report["mismatch_count"] == 0
    assert report["payouts_by_status"]["paid"] == {"count": 1, "amount": 1740.0}
    assert report["orders_by_payout_status"]["paid"]["count"] == 2


async def test_order_marked_included_without_payout_is_an_orphan(db):
    order = make_order(payout_status=ORDER_PAYOUT_INCLUDED, payout_id=None)
    await db.orders.insert_one(order)

    report = await build_reconciliation_report(db)

    assert _problems(report["orphans"]) == ["missing_payout_ref"]
    assert report["orphans"][0]["order_id"] == str(order["_id"])


async def test_reference_to_deleted_payout_is_dangling(db):
    order = make_order(payout_status=ORDER_PAYOUT_INCLUDED, payout_id=ObjectId())
    await db.orders.insert_one(order)

    report = await build_reconciliation_report(db)

    assert _problems(report["orphans"]) == ["dangling_payout_ref"]


async def test_tampered_payout_totals_are_flagged(db):
    payout, _ = await _batch(db)
    await db.seller_payouts.update_one({"_id": payout["_id"]}, {"$set": {"net_payout": 9999, "order_count": 3}})

    report = await build_reconciliation_report(db)

    assert _problems(report["mismatches"]) == ["net_payout", "order_count"]


async def test_interrupted_linking_is_flagged(db):
    payout, _ = await _batch(db)
    await db.seller_payouts.update_one({"_id": payout["_id"]}, {"$set": {"link_state": PAYOUT_LINKING}})

    report = await build_reconciliation_report(db)

    assert "link_incomplete" in _problems(report["mismatches"])


async def test_paid_payout_with_unsettled_orders_is_flagged(db):
    payout, _ = await _batch(db)
    await db.seller_payouts.update_one({"_id": payout["_id"]}, {"$set": {"status": "paid"}})

    report = await build_reconciliation_report(db)

    assert _problems(report["mismatches"]) == ["paid_payout_unpaid_orders"]


async def test_refund_and_hold_counters(db):
    await db.orders.insert_one(make_order(payment_status="refund_pending"))
    await db.seller_payouts.insert_one({"seller_id": ObjectId(), "status": "on_hold", "net_payout": 10, "order_count": 0})

    report = await build_reconciliation_report(db)

    assert report["refund_pending_orders"] == 1
    assert report["on_hold_payouts"] == 1
