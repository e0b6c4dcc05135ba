import logging
from datetime import datetime

logger = logging.getLogger(__name__)


async def log_audit(
    db,
    actor_id: str | None,
    actor_role: str,
    action: str,
    metadata: dict | None = None,
    *,
    domain: str = "settlement",
    target_type: str | None = None,
    target_id=None,
):
    """
    Append-only audit trail. Audit writes must never break settlement.
    """
    try:
        await db.audit_logs.insert_one({
            "domain": domain,
            "actor_id": actor_id,
            "actor_role": actor_role,
            "action": action,
            "target_type": target_type,
            "target_id": target_id,
            "metadata": metadata or {},
            "created_at": datetime.utcnow()
        })
    except Exception:
        logger.exception("AUDIT_WRITE_ERROR action=%s", action)
