import logging

logger = logging.getLogger(__name__)


async def decrement_order_stock(db, order: dict) -> list:
    """
    Take stock for every line of a paid order. Each decrement only applies
    while enough stock remains; shortfalls are returned and logged, never
    driven negative.
    """
    shortfalls = []
    for item in order.get("items", []):
        qty = int(item.get("quantity", 1))
        updated = await db.products.find_one_and_update(
            {"_id": item["product_id"], "stock": {"$gte": qty}},
            {"$inc": {"stock": -qty, "order_count": qty}},
        )
        if not updated:
            logger.error(
                "STOCK_SHORTFALL product=%s order=%s qty=%s",
                item.get("product_id"),
                order.get("order_number"),
                qty,
            )
            shortfalls.append(item.get("product_id"))
    return shortfalls


async def restore_order_stock(db, order: dict, *, was_paid: bool) -> int:
    restored = 0
    for item in order.get("items", []):
        qty = int(item.get("quantity", 1))
        inc = {"stock": qty}
        if was_paid:
            inc["order_count"] = -qty
        try:
            result = await db.products.update_one({"_id": item["product_id"]}, {"$inc": inc})
            restored += result.modified_count
        except Exception:
            logger.exception(
                "STOCK_RESTORE_ERROR product=%s order=%s",
                item.get("product_id"),
                order.get("order_number"),
            )
    return restored
