import logging
from collections import defaultdict
from datetime import datetime

from fastapi import HTTPException
from pymongo.errors import DuplicateKeyError, OperationFailure

from config.constants import (
    HOLD_MISSING_BANK_DETAILS,
    ORDER_DELIVERED,
    ORDER_PAYOUT_INCLUDED,
    ORDER_PAYOUT_PAID,
    ORDER_PAYOUT_PENDING,
    PAYMENT_PAID,
    PAYOUT_FAILED,
    PAYOUT_LINKED,
    PAYOUT_LINKING,
    PAYOUT_ON_HOLD,
    PAYOUT_PAID,
    PAYOUT_PENDING,
    PAYOUT_PROCESSING,
    ROLE_ADMIN,
    ROLE_SELLER,
)
from utils.audit import log_audit
from utils.errors import InvalidTransition, NotFound, PartialFailure
from utils.notify import dispatch_effects, notify_effect
from utils.seller_bank import bank_snapshot, get_bank_details, is_bank_details_complete
from utils.settings_cache import get_platform_settings

logger = logging.getLogger(__name__)

# Mongo "IllegalOperation": transactions need a replica set or mongos
TRANSACTIONS_UNSUPPORTED_CODE = 20


def _money(value) -> float:
    return round(float(value or 0), 2)


async def _run_atomic(client, work, *, fallback=None):
    """
    Run `work(session)` inside a multi-document transaction when the
    deployment supports one, else run `fallback(None)` (or `work(None)`).
    """
    fallback = fallback or work
    if client is None:
        return await fallback(None)

    try:
        async with await client.start_session() as session:
            async with session.start_transaction():
                return await work(session)
    except OperationFailure as e:
        if e.code != TRANSACTIONS_UNSUPPORTED_CODE:
            raise
        logger.warning("MONGO_TRANSACTIONS_UNSUPPORTED falling back to sequential writes")
    return await fallback(None)


async def _get_payout(db, payout_id) -> dict:
    payout = await db.seller_payouts.find_one({"_id": payout_id})
    if not payout:
        raise NotFound("Payout not found")
    return payout


async def _transition_payout(db, payout: dict, allowed_from: tuple, to_status: str, *, set_fields=None, inc=None, session=None):
    if payout.get("status") not in allowed_from:
        raise InvalidTransition(
            f"Cannot move payout from '{payout.get('status')}' to '{to_status}'",
            from_status=payout.get("status"),
            to_status=to_status,
        )

    update = {"$set": {"status": to_status, "updated_at": datetime.utcnow(), **(set_fields or {})}}
    if inc:
        update["$inc"] = inc

    result = await db.seller_payouts.update_one(
        {"_id": payout["_id"], "status": payout["status"]},
        update,
        session=session,
    )
    if result.modified_count != 1:
        raise InvalidTransition(
            "Payout status changed concurrently",
            from_status=payout.get("status"),
            to_status=to_status,
        )

    payout.update(update["$set"])
    for field, amount in (inc or {}).items():
        payout[field] = payout.get(field, 0) + amount
    return payout


# =========================================================
# BATCH CALCULATION
# =========================================================

def _build_payout(seller_id, orders: list[dict], seller: dict | None, period_start, period_end, period_label) -> dict:
    shipping_deducted = sum(
        float(o.get("actual_shipping_cost") or o.get("shipping_cost") or 0)
        for o in orders
        if o.get("shipping_paid_by") == "seller"
    )
    seller_net = sum(float(o.get("seller_net_amount") or 0) for o in orders)

    bank_details = get_bank_details(seller)
    bank_ready = is_bank_details_complete(bank_details)
    now = datetime.utcnow()

    return {
        "seller_id": seller_id,
        "period_start": period_start,
        "period_end": period_end,
        "period_label": period_label,
        "order_ids": [o["_id"] for o in orders],
        "order_count": len(orders),
        "total_sales": _money(sum(float(o.get("total_amount") or 0) for o in orders)),
        "commission_deducted": _money(sum(float(o.get("commission_amount") or 0) for o in orders)),
        "gateway_fees_deducted": _money(sum(float(o.get("gateway_fee_amount") or 0) for o in orders)),
        "shipping_deducted": _money(shipping_deducted),
        "net_payout": _money(max(0.0, seller_net - shipping_deducted)),
        "status": PAYOUT_PENDING if bank_ready else PAYOUT_ON_HOLD,
        "hold_reason": None if bank_ready else HOLD_MISSING_BANK_DETAILS,
        "bank_details_snapshot": bank_snapshot(bank_details) if bank_ready else None,
        "failure_details": None,
        "retry_count": 0,
        "transaction_id": None,
        "paid_at": None,
        "paid_by": None,
        "created_at": now,
        "updated_at": now,
    }


async def _link_orders(db, payout: dict, session=None) -> int:
    result = await db.orders.update_many(
        {"_id": {"$in": payout["order_ids"]}, "payout_status": ORDER_PAYOUT_PENDING},
        {
            "$set": {
                "payout_status": ORDER_PAYOUT_INCLUDED,
                "payout_id": payout["_id"],
                "updated_at": datetime.utcnow(),
            }
        },
        session=session,
    )
    return result.modified_count


async def _create_payout_batch(db, client, payout: dict) -> dict:
    async def in_transaction(session):
        doc = {**payout, "link_state": PAYOUT_LINKED}
        await db.seller_payouts.insert_one(doc, session=session)
        payout["_id"] = doc["_id"]
        linked = await _link_orders(db, payout, session=session)
        if linked != payout["order_count"]:
            # aborts the transaction; nothing is written
            raise PartialFailure(
                "Orders changed while linking payout",
                expected=payout["order_count"],
                linked=linked,
            )
        payout["link_state"] = PAYOUT_LINKED
        return payout

    async def sequential(_session):
        # write-ahead marker: a payout left in "linking" shows up in reconciliation
        payout.pop("_id", None)
        doc = {**payout, "link_state": PAYOUT_LINKING}
        await db.seller_payouts.insert_one(doc)
        payout["_id"] = doc["_id"]
        payout["link_state"] = PAYOUT_LINKING

        linked = await _link_orders(db, payout)
        if linked != payout["order_count"]:
            logger.error(
                "PAYOUT_LINK_MISMATCH payout=%s expected=%s linked=%s",
                payout["_id"],
                payout["order_count"],
                linked,
            )
            return payout

        await db.seller_payouts.update_one(
            {"_id": payout["_id"]},
            {"$set": {"link_state": PAYOUT_LINKED}},
        )
        payout["link_state"] = PAYOUT_LINKED
        return payout

    return await _run_atomic(client, in_transaction, fallback=sequential)


async def calculate_payouts(db, period_start: datetime, period_end: datetime, period_label: str | None = None, *, client=None, admin_id=None) -> dict:
    """
    Batch delivered, paid, unbatched orders up to period_end into one
    payout per seller. Orders left behind by an earlier run (below the
    minimum, or blocked by an overlapping payout) are picked up here.

    A seller that already has a payout overlapping the window is skipped
    whole. Each payout and its order links are written together.
    """
    if period_end < period_start:
        raise HTTPException(status_code=400, detail="period_end must not be before period_start")

    period_label = period_label or f"{period_start:%Y-%m-%d} to {period_end:%Y-%m-%d}"
    settings = await get_platform_settings(db)

    orders = await db.orders.find({
        "payment_status": PAYMENT_PAID,
        "status": ORDER_DELIVERED,
        "payout_status": ORDER_PAYOUT_PENDING,
        "delivered_at": {"$lte": period_end},
    }).to_list(None)

    summary = {
        "period_label": period_label,
        "created": [],
        "processed_sellers": 0,
        "skipped_duplicates": 0,
        "below_minimum": 0,
        "errors": [],
    }
    if not orders:
        return summary

    by_seller = defaultdict(list)
    for order in orders:
        by_seller[order["seller_id"]].append(order)

    effects = []
    for seller_id, seller_orders in by_seller.items():
        overlap = await db.seller_payouts.find_one({
            "seller_id": seller_id,
            "period_start": {"$lte": period_end},
            "period_end": {"$gte": period_start},
        })
        if overlap:
            logger.warning(
                "PAYOUT_DUPLICATE_PERIOD seller=%s existing=%s",
                seller_id,
                overlap["_id"],
            )
            summary["skipped_duplicates"] += 1
            continue

        seller = await db.users.find_one({"_id": seller_id})
        payout = _build_payout(seller_id, seller_orders, seller, period_start, period_end, period_label)

        if payout["net_payout"] < settings.minimum_payout_amount:
            summary["below_minimum"] += 1
            continue

        try:
            payout = await _create_payout_batch(db, client, payout)
        except DuplicateKeyError:
            logger.warning("PAYOUT_DUPLICATE_PERIOD seller=%s concurrent", seller_id)
            summary["skipped_duplicates"] += 1
            continue
        except Exception as e:
            logger.exception("PAYOUT_CREATE_ERROR seller=%s", seller_id)
            summary["errors"].append({"seller_id": str(seller_id), "error": str(getattr(e, "detail", e))})
            continue

        summary["created"].append(payout)
        summary["processed_sellers"] += 1

        if payout["status"] == PAYOUT_ON_HOLD:
            effects.append(notify_effect(
                user_id=seller_id,
                role=ROLE_SELLER,
                type="payout_on_hold",
                title="Payout on hold",
                message=f"Your payout of {payout['net_payout']} for {period_label} is waiting for bank details.",
                link="/seller/settings/bank",
                metadata={"payout_id": str(payout["_id"])},
            ))

    await dispatch_effects(db, effects)
    await log_audit(
        db,
        admin_id,
        ROLE_ADMIN if admin_id else "system",
        "payout_batch_calculated",
        {
            "period_label": period_label,
            "created": summary["processed_sellers"],
            "skipped_duplicates": summary["skipped_duplicates"],
            "below_minimum": summary["below_minimum"],
        },
        domain="payout",
    )
    logger.info(
        "PAYOUT_BATCH period=%s created=%s duplicates=%s below_minimum=%s",
        period_label,
        summary["processed_sellers"],
        summary["skipped_duplicates"],
        summary["below_minimum"],
    )
    return summary


# =========================================================
# LIFECYCLE
# =========================================================

async def mark_processing(db, payout_id, *, admin_id=None) -> dict:
    payout = await _get_payout(db, payout_id)
    await _transition_payout(db, payout, (PAYOUT_PENDING,), PAYOUT_PROCESSING)
    await log_audit(db, admin_id, ROLE_ADMIN, "payout_processing", domain="payout", target_type="SellerPayout", target_id=payout["_id"])
    return payout


async def mark_paid(db, payout_id, transaction_id: str, *, admin_id=None, client=None) -> dict:
    payout = await _get_payout(db, payout_id)
    if payout.get("status") == PAYOUT_PAID:
        return {"already_paid": True, "payout": payout}

    async def work(session):
        await _transition_payout(
            db,
            payout,
            (PAYOUT_PENDING, PAYOUT_PROCESSING),
            PAYOUT_PAID,
            set_fields={
                "transaction_id": transaction_id or "",
                "paid_at": datetime.utcnow(),
                "paid_by": admin_id,
            },
            session=session,
        )
        await db.orders.update_many(
            {"payout_id": payout["_id"]},
            {"$set": {"payout_status": ORDER_PAYOUT_PAID, "updated_at": datetime.utcnow()}},
            session=session,
        )

    await _run_atomic(client, work)

    await dispatch_effects(db, [
        notify_effect(
            user_id=payout["seller_id"],
            role=ROLE_SELLER,
            type="payout_paid",
            title="Payout sent",
            message=f"{payout['net_payout']} for {payout.get('period_label')} has been paid.",
            link="/seller/payouts",
            metadata={"payout_id": str(payout["_id"]), "transaction_id": transaction_id},
        ),
    ])
    await log_audit(
        db,
        admin_id,
        ROLE_ADMIN,
        "payout_marked_paid",
        {"transaction_id": transaction_id, "net_payout": payout.get("net_payout")},
        domain="payout",
        target_type="SellerPayout",
        target_id=payout["_id"],
    )
    logger.info("PAYOUT_PAID payout=%s txn=%s", payout["_id"], transaction_id)
    return {"already_paid": False, "payout": payout}


async def mark_failed(db, payout_id, reason: str, *, admin_id=None) -> dict:
    payout = await _get_payout(db, payout_id)
    await _transition_payout(
        db,
        payout,
        (PAYOUT_PENDING, PAYOUT_ON_HOLD, PAYOUT_PROCESSING),
        PAYOUT_FAILED,
        set_fields={"failure_details": {"reason": reason, "failed_at": datetime.utcnow()}},
        inc={"retry_count": 1},
    )

    await dispatch_effects(db, [
        notify_effect(
            user_id=payout["seller_id"],
            role=ROLE_SELLER,
            type="payout_failed",
            title="Payout failed",
            message=f"Your payout for {payout.get('period_label')} failed: {reason}",
            link="/seller/payouts",
            metadata={"payout_id": str(payout["_id"])},
        ),
    ])
    await log_audit(
        db,
        admin_id,
        ROLE_ADMIN,
        "payout_marked_failed",
        {"reason": reason, "retry_count": payout.get("retry_count")},
        domain="payout",
        target_type="SellerPayout",
        target_id=payout["_id"],
    )
    logger.warning("PAYOUT_FAILED payout=%s reason=%s", payout["_id"], reason)
    return payout


async def retry_payout(db, payout_id, *, admin_id=None) -> dict:
    """
    Re-arm a failed or held payout with the seller's current bank details.
    Without complete details it lands back on hold.
    """
    payout = await _get_payout(db, payout_id)
    seller = await db.users.find_one({"_id": payout["seller_id"]})
    bank_details = get_bank_details(seller)

    if is_bank_details_complete(bank_details):
        to_status = PAYOUT_PENDING
        set_fields = {"hold_reason": None, "bank_details_snapshot": bank_snapshot(bank_details)}
    else:
        to_status = PAYOUT_ON_HOLD
        set_fields = {"hold_reason": HOLD_MISSING_BANK_DETAILS}

    if payout.get("status") == PAYOUT_ON_HOLD and to_status == PAYOUT_ON_HOLD:
        return payout

    await _transition_payout(db, payout, (PAYOUT_FAILED, PAYOUT_ON_HOLD), to_status, set_fields=set_fields)
    await log_audit(
        db,
        admin_id,
        ROLE_ADMIN,
        "payout_retried",
        {"status": to_status},
        domain="payout",
        target_type="SellerPayout",
        target_id=payout["_id"],
    )
    return payout
