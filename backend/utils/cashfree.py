import base64
import hashlib
import hmac
import json
from urllib import request, error

from config import env
from utils.errors import Unauthenticated, UpstreamUnavailable

CASHFREE_CURRENCY = "INR"
CASHFREE_PAID = "PAID"
CASHFREE_PAYMENT_SUCCESS = "SUCCESS"


def _api_base() -> str:
    if (env.CASHFREE_ENV or "").lower() == "production":
        return "https://api.cashfree.com/pg"
    return "https://sandbox.cashfree.com/pg"


def _require_cashfree_config() -> tuple[str, str]:
    if not env.CASHFREE_APP_ID or not env.CASHFREE_SECRET_KEY:
        raise UpstreamUnavailable("Cashfree keys are not configured")
    return env.CASHFREE_APP_ID, env.CASHFREE_SECRET_KEY


def _headers() -> dict:
    app_id, secret = _require_cashfree_config()
    return {
        "Content-Type": "application/json",
        "x-api-version": env.CASHFREE_API_VERSION,
        "x-client-id": app_id,
        "x-client-secret": secret,
    }


def _call(method: str, path: str, payload: dict | None = None):
    req = request.Request(
        url=f"{_api_base()}{path}",
        data=json.dumps(payload).encode("utf-8") if payload is not None else None,
        headers=_headers(),
        method=method,
    )
    try:
        with request.urlopen(req, timeout=15) as resp:
            return json.loads(resp.read().decode("utf-8"))
    except error.HTTPError as e:
        details = e.read().decode("utf-8", errors="ignore")
        raise UpstreamUnavailable(f"Cashfree {method} {path} failed: {details}")
    except Exception:
        raise UpstreamUnavailable(f"Cashfree {method} {path} failed")


# =========================================================
# GATEWAY API
# =========================================================

def create_gateway_order(*, gateway_order_id: str, amount, customer: dict, return_url: str | None = None) -> dict:
    return _call("POST", "/orders", {
        "order_id": gateway_order_id,
        "order_amount": amount,
        "order_currency": CASHFREE_CURRENCY,
        "customer_details": {
            "customer_id": str(customer.get("id")),
            "customer_email": customer.get("email") or "",
            "customer_phone": customer.get("phone") or "",
            "customer_name": customer.get("name") or "Customer",
        },
        "order_meta": {
            "return_url": return_url or f"{env.CLIENT_URL}/orders?cf_id={{order_id}}",
        },
    })


def get_gateway_order(gateway_order_id: str) -> dict:
    return _call("GET", f"/orders/{gateway_order_id}")


def get_gateway_payments(gateway_order_id: str) -> list[dict]:
    payments = _call("GET", f"/orders/{gateway_order_id}/payments")
    return payments if isinstance(payments, list) else []


def create_refund(*, gateway_order_id: str, refund_amount, refund_id: str, refund_note: str) -> dict:
    return _call("POST", f"/orders/{gateway_order_id}/refunds", {
        "refund_amount": refund_amount,
        "refund_id": refund_id,
        "refund_note": refund_note,
    })


def is_gateway_order_paid(gateway_order: dict) -> bool:
    return (gateway_order or {}).get("order_status") == CASHFREE_PAID


def successful_payment_id(payments: list[dict]) -> str:
    for payment in payments or []:
        if payment.get("payment_status") == CASHFREE_PAYMENT_SUCCESS:
            return str(payment.get("cf_payment_id") or "")
    return ""


# =========================================================
# WEBHOOK SIGNATURE
# =========================================================

def compute_webhook_signature(timestamp: str, raw_body: bytes, secret: str) -> str:
    message = timestamp.encode("utf-8") + raw_body
    digest = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_webhook_signature(*, timestamp: str | None, signature: str | None, raw_body: bytes | None) -> None:
    """
    HMAC-SHA256 over timestamp + raw body, base64 encoded.
    Raises Unauthenticated before anything else is looked at.
    """
    if not timestamp or not signature or not raw_body:
        raise Unauthenticated("Missing webhook signature headers or body")

    secret = env.CASHFREE_SECRET_KEY
    if not secret:
        raise Unauthenticated("Webhook secret is not configured")

    expected = compute_webhook_signature(timestamp, raw_body, secret)
    if not hmac.compare_digest(expected, signature):
        raise Unauthenticated("Invalid webhook signature")
