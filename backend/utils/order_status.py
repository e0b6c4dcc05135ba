from datetime import datetime

from config.constants import (
    ORDER_PENDING,
    ORDER_CONFIRMED,
    ORDER_PROCESSING,
    ORDER_SHIPPED,
    ORDER_DELIVERED,
    ORDER_CANCELLED,
    ORDER_REFUNDED,
    ROLE_SYSTEM,
)
from utils.errors import InvalidTransition

# ============================================================
# ORDER STATUS MACHINE (SINGLE SOURCE OF TRUTH)
# ============================================================

VALID_TRANSITIONS: dict[str, frozenset[str]] = {
    ORDER_PENDING: frozenset({ORDER_CONFIRMED, ORDER_CANCELLED}),
    ORDER_CONFIRMED: frozenset({ORDER_PROCESSING, ORDER_SHIPPED, ORDER_CANCELLED}),
    ORDER_PROCESSING: frozenset({ORDER_SHIPPED, ORDER_CANCELLED}),
    ORDER_SHIPPED: frozenset({ORDER_DELIVERED, ORDER_CANCELLED}),
    ORDER_DELIVERED: frozenset(),
    ORDER_CANCELLED: frozenset(),
    ORDER_REFUNDED: frozenset(),
}


def is_valid_transition(from_status: str, to_status: str) -> bool:
    return to_status in VALID_TRANSITIONS.get(from_status, frozenset())


def assert_transition(from_status: str, to_status: str) -> None:
    if not is_valid_transition(from_status, to_status):
        raise InvalidTransition(
            f"Cannot move order from '{from_status}' to '{to_status}'",
            from_status=from_status,
            to_status=to_status,
        )


def history_entry(status: str, *, actor_role: str = ROLE_SYSTEM, actor_id=None, note: str = "", at=None) -> dict:
    return {
        "status": status,
        "timestamp": at or datetime.utcnow(),
        "actor_role": actor_role,
        "actor_id": actor_id,
        "note": note,
    }


async def transition_order(
    db,
    order: dict,
    to_status: str,
    *,
    actor_role: str = ROLE_SYSTEM,
    actor_id=None,
    note: str = "",
    extra_set: dict | None = None,
) -> dict:
    """
    Move an order to `to_status`.

    Legality is checked before any write, and the write is conditional on
    the status the caller read, so a concurrent change turns into an
    InvalidTransition instead of a half-applied update.
    """
    from_status = order.get("status")
    assert_transition(from_status, to_status)

    now = datetime.utcnow()
    result = await db.orders.update_one(
        {"_id": order["_id"], "status": from_status},
        {
            "$set": {
                "status": to_status,
                "updated_at": now,
                **(extra_set or {}),
            },
            "$push": {
                "status_history": history_entry(
                    to_status,
                    actor_role=actor_role,
                    actor_id=actor_id,
                    note=note,
                    at=now,
                )
            },
        },
    )

    if result.modified_count != 1:
        raise InvalidTransition(
            f"Order status changed concurrently (expected '{from_status}')",
            from_status=from_status,
            to_status=to_status,
        )

    order["status"] = to_status
    order.update(extra_set or {})
    return order
