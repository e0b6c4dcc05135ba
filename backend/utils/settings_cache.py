import logging
import time
from datetime import datetime

from config.constants import PLATFORM_SETTINGS_ID
from config.env import SETTINGS_CACHE_TTL_SECONDS
from models.settings import PlatformSettings

logger = logging.getLogger(__name__)

# In-memory store (process-level), keyed by the singleton settings id
_SETTINGS_CACHE: dict[str, tuple[float, PlatformSettings]] = {}


def _from_doc(doc: dict | None) -> PlatformSettings:
    data = dict(doc or {})
    data.pop("_id", None)
    if data.get("updated_by") is not None:
        data["updated_by"] = str(data["updated_by"])
    return PlatformSettings(**data)


async def get_platform_settings(db) -> PlatformSettings:
    """
    Read-through cache over the platform settings singleton.
    Staleness up to the TTL is accepted; order financials are frozen at
    creation, so a stale read never rewrites a historical split.
    """
    cached = _SETTINGS_CACHE.get(PLATFORM_SETTINGS_ID)
    now = time.monotonic()
    if cached and cached[0] > now:
        return cached[1]

    doc = await db.platform_settings.find_one({"_id": PLATFORM_SETTINGS_ID})
    if not doc:
        defaults = PlatformSettings().model_dump()
        await db.platform_settings.update_one(
            {"_id": PLATFORM_SETTINGS_ID},
            {"$setOnInsert": defaults},
            upsert=True,
        )
        doc = await db.platform_settings.find_one({"_id": PLATFORM_SETTINGS_ID})

    settings = _from_doc(doc)
    _SETTINGS_CACHE[PLATFORM_SETTINGS_ID] = (now + SETTINGS_CACHE_TTL_SECONDS, settings)
    return settings


def invalidate_settings_cache() -> None:
    _SETTINGS_CACHE.pop(PLATFORM_SETTINGS_ID, None)


async def update_platform_settings(db, changes: dict, *, admin_id=None) -> PlatformSettings:
    current = await get_platform_settings(db)
    merged = current.model_copy(update=changes)
    # re-run validation on the merged document
    merged = PlatformSettings(**merged.model_dump())

    now = datetime.utcnow()
    await db.platform_settings.update_one(
        {"_id": PLATFORM_SETTINGS_ID},
        {
            "$set": {
                **{k: getattr(merged, k) for k in changes},
                "updated_at": now,
                "updated_by": str(admin_id) if admin_id else None,
            }
        },
        upsert=True,
    )
    invalidate_settings_cache()

    if "global_commission_rate" in changes and changes["global_commission_rate"] != current.global_commission_rate:
        logger.info(
            "COMMISSION_RATE_CHANGED old=%s new=%s admin=%s",
            current.global_commission_rate,
            changes["global_commission_rate"],
            admin_id,
        )

    return await get_platform_settings(db)
