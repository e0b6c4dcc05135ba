import hmac
import json
import logging

from fastapi import APIRouter, Depends, Request

from config import env
from database import get_db
from utils.cashfree import verify_webhook_signature
from utils.errors import AmountMismatch, Unauthenticated, UpstreamUnavailable
from utils.idempotency import (
    reserve_idempotency_key,
    complete_idempotency_key,
    fail_idempotency_key,
    webhook_event_key,
)
from utils.mongo import serialize_doc
from utils.payment_confirmation import (
    REASON_AMOUNT_MISMATCH,
    REASON_GATEWAY_NOT_PAID,
    REASON_NO_ORDERS,
    mark_gateway_payment_failed,
    process_payment_confirmation,
)
from utils.shipment_tracking import normalize_carrier_payload, process_carrier_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["Webhooks"])

PAYMENT_SUCCESS_EVENTS = {"PAYMENT_SUCCESS_WEBHOOK", "ORDER_PAID"}
PAYMENT_FAILED_EVENTS = {"PAYMENT_FAILED_WEBHOOK"}
PAYMENT_WEBHOOK_SCOPE = "cashfree_webhook"
# outcomes a redelivery can still change; the key is released, not completed
RETRYABLE_REASONS = {REASON_GATEWAY_NOT_PAID, REASON_NO_ORDERS}


# =========================================================
# PAYMENT GATEWAY WEBHOOK
# =========================================================

@router.post("/cashfree")
async def cashfree_webhook(request: Request, db=Depends(get_db)):
    """
    Payment gateway webhook.

    - Signature checked before anything is read (401 on failure)
    - Gateway re-queried; the payload is never trusted for amounts
    - Every other outcome is acknowledged with 200 and a reason
    """
    raw_body = await request.body()
    verify_webhook_signature(
        timestamp=request.headers.get("x-webhook-timestamp"),
        signature=request.headers.get("x-webhook-signature"),
        raw_body=raw_body,
    )

    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except Exception:
        return {"ok": True, "ignored": "invalid_payload"}

    event_type = payload.get("type") or ""
    data = payload.get("data") or {}
    gateway_order_id = (data.get("order") or {}).get("order_id")
    payment_id = (data.get("payment") or {}).get("cf_payment_id")

    if not gateway_order_id:
        return {"ok": True, "ignored": "no_order_id"}

    if event_type not in PAYMENT_SUCCESS_EVENTS | PAYMENT_FAILED_EVENTS:
        return {"ok": True, "ignored": event_type or "unknown_event"}

    key = webhook_event_key("cashfree", event_type, gateway_order_id, payment_id)
    existing = await reserve_idempotency_key(db=db, key=key, scope=PAYMENT_WEBHOOK_SCOPE)
    if existing:
        return existing

    try:
        if event_type in PAYMENT_FAILED_EVENTS:
            failed = await mark_gateway_payment_failed(db, gateway_order_id)
            response = {"ok": True, "event": event_type, "orders_marked_failed": failed}
        else:
            result = await process_payment_confirmation(db, gateway_order_id)
            response = {"ok": True, "event": event_type, **serialize_doc(result)}
    except AmountMismatch as e:
        response = {
            "ok": True,
            "processed": False,
            "reason": REASON_AMOUNT_MISMATCH,
            "paid": e.context.get("paid"),
            "expected": e.context.get("expected"),
        }
    except UpstreamUnavailable as e:
        logger.error("CASHFREE_WEBHOOK_UPSTREAM gateway_order=%s detail=%s", gateway_order_id, e.detail)
        await fail_idempotency_key(db=db, key=key, scope=PAYMENT_WEBHOOK_SCOPE, error=e.detail)
        return {"ok": True, "processed": False, "reason": "upstream_unavailable"}
    except Exception as e:
        logger.exception("CASHFREE_WEBHOOK_ERROR gateway_order=%s", gateway_order_id)
        await fail_idempotency_key(db=db, key=key, scope=PAYMENT_WEBHOOK_SCOPE, error=str(e))
        return {"ok": True, "processed": False, "reason": "internal_error"}

    if response.get("processed") is False and response.get("reason") in RETRYABLE_REASONS:
        logger.info("CASHFREE_WEBHOOK_NOT_READY gateway_order=%s reason=%s", gateway_order_id, response["reason"])
        await fail_idempotency_key(db=db, key=key, scope=PAYMENT_WEBHOOK_SCOPE, error=response["reason"])
        return response

    await complete_idempotency_key(db=db, key=key, scope=PAYMENT_WEBHOOK_SCOPE, response=response)
    return response


# =========================================================
# CARRIER TRACKING WEBHOOK
# =========================================================

@router.post("/shiprocket")
async def shiprocket_webhook(request: Request, db=Depends(get_db)):
    """
    Carrier tracking webhook. Replays are harmless (scan keys, forward-only
    status), so no idempotency reservation is taken.
    """
    secret = env.SHIPROCKET_WEBHOOK_SECRET
    if secret:
        token = request.query_params.get("token") or ""
        if not hmac.compare_digest(token, secret):
            logger.warning("SHIPROCKET_WEBHOOK_BAD_TOKEN")
            raise Unauthenticated("Invalid webhook token")

    try:
        payload = await request.json()
    except Exception:
        return {"ok": True, "ignored": "invalid_payload"}

    try:
        event = normalize_carrier_payload(payload if isinstance(payload, dict) else {})
        result = await process_carrier_event(db, event)
    except Exception:
        logger.exception("SHIPROCKET_WEBHOOK_ERROR")
        return {"ok": True, "processed": False, "reason": "internal_error"}

    return {"ok": True, **result}
