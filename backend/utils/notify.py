import logging
from datetime import datetime

logger = logging.getLogger(__name__)


def notify_effect(
    *,
    user_id,
    role: str,
    type: str,
    title: str,
    message: str = "",
    link: str = "",
    metadata: dict | None = None,
) -> dict:
    """
    Describe a notification to send once the state change has committed.
    Settlement code returns these instead of calling `notify` inline.
    """
    return {
        "effect": "notify",
        "user_id": user_id,
        "role": role,
        "type": type,
        "title": title,
        "message": message,
        "link": link,
        "metadata": metadata or {},
    }


async def notify(
    db,
    *,
    user_id,
    role: str,
    type: str,
    title: str,
    message: str = "",
    link: str = "",
    metadata: dict | None = None,
):
    """
    Fire-and-forget in-app notification. Never raises.
    """
    if not user_id:
        return None
    try:
        doc = {
            "user_id": user_id,
            "user_role": role,
            "type": type,
            "title": title,
            "message": message,
            "link": link,
            "metadata": metadata or {},
            "is_read": False,
            "created_at": datetime.utcnow(),
        }
        await db.notifications.insert_one(doc)
        return doc
    except Exception:
        logger.exception("NOTIFY_ERROR user=%s type=%s", user_id, type)
        return None


async def dispatch_effects(db, effects: list[dict]) -> int:
    """
    Run queued side effects one by one. A failing effect is logged and
    skipped; it can never undo or fail the settlement step that queued it.
    """
    sent = 0
    for effect in effects or []:
        try:
            if effect.get("effect") == "notify":
                payload = {k: v for k, v in effect.items() if k != "effect"}
                if await notify(db, **payload):
                    sent += 1
            else:
                logger.warning("UNKNOWN_EFFECT %s", effect.get("effect"))
        except Exception:
            logger.exception("EFFECT_DISPATCH_ERROR effect=%s", effect.get("effect"))
    return sent
