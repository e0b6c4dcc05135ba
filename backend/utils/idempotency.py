from datetime import datetime

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

IDEMPOTENCY_TTL_SECONDS = 60 * 60 * 24 * 7   # webhook senders retry for days
IN_PROGRESS_STALE_SECONDS = 60 * 5

STATUS_RESERVED = "reserved"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

IN_PROGRESS_RESPONSE = {"status": "processing", "message": "Event already being processed"}


def webhook_event_key(*parts) -> str:
    return ":".join(str(p) for p in parts if p not in (None, ""))


async def _reclaim(db, existing: dict):
    """
    Take over a failed or abandoned reservation. Only one caller wins.
    """
    claimed = await db.idempotency_keys.find_one_and_update(
        {"_id": existing["_id"], "status": existing.get("status"), "attempts": existing.get("attempts", 1)},
        {
            "$set": {"status": STATUS_RESERVED, "reserved_at": datetime.utcnow(), "error": None},
            "$inc": {"attempts": 1},
        },
        return_document=ReturnDocument.AFTER,
    )
    return None if claimed else IN_PROGRESS_RESPONSE


async def reserve_idempotency_key(*, db, key: str, scope: str):
    """
    Reserve a webhook event before handling it.

    Returns None when the caller should process the event, the stored
    response for an event already handled, or an in-progress marker while
    another delivery holds the reservation.
    """
    existing = await db.idempotency_keys.find_one({"key": key, "scope": scope})

    if not existing:
        now = datetime.utcnow()
        try:
            await db.idempotency_keys.insert_one({
                "key": key,
                "scope": scope,
                "status": STATUS_RESERVED,
                "attempts": 1,
                "response": None,
                "created_at": now,
                "reserved_at": now,
            })
            return None
        except DuplicateKeyError:
            existing = await db.idempotency_keys.find_one({"key": key, "scope": scope})
            if not existing:
                return IN_PROGRESS_RESPONSE

    if existing.get("status") == STATUS_COMPLETED:
        return existing.get("response")

    if existing.get("status") == STATUS_FAILED:
        return await _reclaim(db, existing)

    reserved_at = existing.get("reserved_at") or existing.get("created_at")
    age_seconds = (datetime.utcnow() - reserved_at).total_seconds() if reserved_at else 0
    if age_seconds > IN_PROGRESS_STALE_SECONDS:
        return await _reclaim(db, existing)

    return IN_PROGRESS_RESPONSE


async def complete_idempotency_key(*, db, key: str, scope: str, response: dict):
    await db.idempotency_keys.update_one(
        {"key": key, "scope": scope},
        {
            "$set": {
                "status": STATUS_COMPLETED,
                "response": response,
                "completed_at": datetime.utcnow(),
            }
        },
    )


async def fail_idempotency_key(*, db, key: str, scope: str, error: str):
    """
    Release the reservation so the sender's next retry is processed.
    """
    await db.idempotency_keys.update_one(
        {"key": key, "scope": scope},
        {
            "$set": {
                "status": STATUS_FAILED,
                "error": error,
                "failed_at": datetime.utcnow(),
            }
        },
    )
