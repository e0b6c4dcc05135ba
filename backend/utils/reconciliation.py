import logging
from collections import defaultdict
from datetime import datetime

from config.constants import (
    ORDER_PAYOUT_INCLUDED,
    ORDER_PAYOUT_PAID,
    PAYMENT_REFUND_PENDING,
    PAYOUT_LINKING,
    PAYOUT_ON_HOLD,
    PAYOUT_PAID,
)

logger = logging.getLogger(__name__)

# payouts are recomputed to the paisa
NET_TOLERANCE = 0.01


async def _totals_by(collection, field: str, amount_field: str) -> dict:
    rows = await collection.aggregate([
        {"$group": {"_id": f"${field}", "count": {"$sum": 1}, "amount": {"$sum": f"${amount_field}"}}},
    ]).to_list(None)
    return {
        str(row["_id"]): {"count": row["count"], "amount": round(float(row["amount"] or 0), 2)}
        for row in rows
    }


async def _find_orphans(db) -> list[dict]:
    linked_states = [ORDER_PAYOUT_INCLUDED, ORDER_PAYOUT_PAID]
    orphans = []

    async for order in db.orders.find(
        {"payout_status": {"$in": linked_states}, "payout_id": None},
        {"order_number": 1, "payout_status": 1},
    ):
        orphans.append({
            "order_id": str(order["_id"]),
            "order_number": order.get("order_number"),
            "payout_status": order.get("payout_status"),
            "problem": "missing_payout_ref",
        })

    referenced = await db.orders.distinct(
        "payout_id",
        {"payout_status": {"$in": linked_states}, "payout_id": {"$ne": None}},
    )
    if referenced:
        existing = set(await db.seller_payouts.distinct("_id", {"_id": {"$in": referenced}}))
        dangling = [ref for ref in referenced if ref not in existing]
        if dangling:
            async for order in db.orders.find(
                {"payout_id": {"$in": dangling}},
                {"order_number": 1, "payout_status": 1, "payout_id": 1},
            ):
                orphans.append({
                    "order_id": str(order["_id"]),
                    "order_number": order.get("order_number"),
                    "payout_status": order.get("payout_status"),
                    "payout_id": str(order["payout_id"]),
                    "problem": "dangling_payout_ref",
                })

    return orphans


async def _find_mismatches(db) -> list[dict]:
    linked = defaultdict(list)
    async for order in db.orders.find(
        {"payout_id": {"$ne": None}},
        {"payout_id": 1, "payout_status": 1, "seller_net_amount": 1, "shipping_paid_by": 1, "actual_shipping_cost": 1, "shipping_cost": 1},
    ):
        linked[order["payout_id"]].append(order)

    mismatches = []
    async for payout in db.seller_payouts.find({}):
        payout_id = str(payout["_id"])
        orders = linked.get(payout["_id"], [])

        if payout.get("link_state") == PAYOUT_LINKING:
            mismatches.append({"payout_id": payout_id, "problem": "link_incomplete"})

        if payout.get("order_count") != len(orders):
            mismatches.append({
                "payout_id": payout_id,
                "problem": "order_count",
                "expected": payout.get("order_count"),
                "actual": len(orders),
            })

        shipping = sum(
            float(o.get("actual_shipping_cost") or o.get("shipping_cost") or 0)
            for o in orders
            if o.get("shipping_paid_by") == "seller"
        )
        recomputed = round(max(0.0, sum(float(o.get("seller_net_amount") or 0) for o in orders) - shipping), 2)
        if orders and abs(recomputed - float(payout.get("net_payout") or 0)) > NET_TOLERANCE:
            mismatches.append({
                "payout_id": payout_id,
                "problem": "net_payout",
                "expected": payout.get("net_payout"),
                "actual": recomputed,
            })

        if payout.get("status") == PAYOUT_PAID:
            unpaid = [o for o in orders if o.get("payout_status") != ORDER_PAYOUT_PAID]
            if unpaid:
                mismatches.append({
                    "payout_id": payout_id,
                    "problem": "paid_payout_unpaid_orders",
                    "order_ids": [str(o["_id"]) for o in unpaid],
                })

    return mismatches


async def build_reconciliation_report(db) -> dict:
    """
    Finance sanity report. Read-only: defects are listed for manual
    remediation and never repaired here.
    """
    orders_by_payout_status = await _totals_by(db.orders, "payout_status", "seller_net_amount")
    payouts_by_status = await _totals_by(db.seller_payouts, "status", "net_payout")
    orphans = await _find_orphans(db)
    mismatches = await _find_mismatches(db)

    report = {
        "generated_at": datetime.utcnow(),
        "orders_by_payout_status": orders_by_payout_status,
        "payouts_by_status": payouts_by_status,
        "refund_pending_orders": await db.orders.count_documents({"payment_status": PAYMENT_REFUND_PENDING}),
        "on_hold_payouts": await db.seller_payouts.count_documents({"status": PAYOUT_ON_HOLD}),
        "orphans": orphans,
        "orphan_count": len(orphans),
        "mismatches": mismatches,
        "mismatch_count": len(mismatches),
    }

    if orphans or mismatches:
        logger.warning("RECONCILIATION_DEFECTS orphans=%s mismatches=%s", len(orphans), len(mismatches))
    return report
