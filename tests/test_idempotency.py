from datetime import datetime, timedelta

from utils.idempotency import (
    IN_PROGRESS_RESPONSE,
    complete_idempotency_key,
    fail_idempotency_key,
    reserve_idempotency_key,
    webhook_event_key,
)

SCOPE = "cashfree_webhook"


def test_event_key_skips_empty_parts():
    assert webhook_event_key("cashfree", "ORDER_PAID", "cf_1", None) == "cashfree:ORDER_PAID:cf_1"


async def test_first_reservation_wins(db):
    assert await reserve_idempotency_key(db=db, key="k1", scope=SCOPE) is None
    assert await reserve_idempotency_key(db=db, key="k1", scope=SCOPE) == IN_PROGRESS_RESPONSE


async def test_completed_event_returns_stored_response(db):
    await reserve_idempotency_key(db=db, key="k1", scope=SCOPE)
    await complete_idempotency_key(db=db, key="k1", scope=SCOPE, response={"ok": True, "processed": True})

    assert await reserve_idempotency_key(db=db, key="k1", scope=SCOPE) == {"ok": True, "processed": True}


async def test_failed_event_is_reclaimed_once(db):
    await reserve_idempotency_key(db=db, key="k1", scope=SCOPE)
    await fail_idempotency_key(db=db, key="k1", scope=SCOPE, error="gateway down")

    assert await reserve_idempotency_key(db=db, key="k1", scope=SCOPE) is None
    assert await reserve_idempotency_key(db=db, key="k1", scope=SCOPE) == IN_PROGRESS_RESPONSE

    stored = await db.idempotency_keys.find_one({"key": "k1"})
    assert stored["attempts"] == 2


async def test_abandoned_reservation_is_reclaimed(db):
    await reserve_idempotency_key(db=db, key="k1", scope=SCOPE)
    await db.idempotency_keys.update_one(
        {"key": "k1"},
        {"$set": {"reserved_at": datetime.utcnow() - timedelta(minutes=30)}},
    )

    assert await reserve_idempotency_key(db=db, key="k1", scope=SCOPE) is None


async def test_scopes_are_independent(db):
    await reserve_idempotency_key(db=db, key="k1", scope=SCOPE)
    assert await reserve_idempotency_key(db=db, key="k1", scope="other") is None
