from fastapi import HTTPException
from bson import ObjectId

from utils.errors import NotFound

# -------------------------------
# ObjectId Guard
# -------------------------------

def parse_object_id(value: str, name: str = "id") -> ObjectId:
    try:
        return ObjectId(value)
    except Exception:
        raise HTTPException(status_code=400, detail=f"Invalid {name}")


# -------------------------------
# Ownership Guard
# -------------------------------

async def load_order(db, order_id: str, **owner) -> dict:
    """
    Fetch an order by id, optionally scoped to an owner field
    (buyer_id=..., seller_id=...). Someone else's order is reported
    as missing rather than forbidden.
    """
    query = {"_id": parse_object_id(order_id, "order id"), **owner}
    order = await db.orders.find_one(query)
    if not order:
        raise NotFound("Order not found")
    return order
