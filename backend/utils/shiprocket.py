import json
import threading
import time
from urllib import request, error

from config import env
from utils.errors import UpstreamUnavailable

SHIPROCKET_API_BASE = "https://apiv2.shiprocket.in/v1/external"
TOKEN_TTL_SECONDS = 9 * 24 * 60 * 60  # tokens live 10 days; refresh a day early

_TOKEN_LOCK = threading.Lock()
_TOKEN_STATE: dict = {"token": None, "expires_at": 0.0}


def _post(url: str, payload: dict, headers: dict) -> dict:
    req = request.Request(
        url=url,
        data=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json", **headers},
        method="POST",
    )
    try:
        with request.urlopen(req, timeout=20) as resp:
            return json.loads(resp.read().decode("utf-8"))
    except error.HTTPError as e:
        details = e.read().decode("utf-8", errors="ignore")
        raise UpstreamUnavailable(f"Carrier error: {details}")
    except Exception:
        raise UpstreamUnavailable("Carrier request failed")


def _get_token() -> str:
    with _TOKEN_LOCK:
        if _TOKEN_STATE["token"] and time.time() < _TOKEN_STATE["expires_at"]:
            return _TOKEN_STATE["token"]

        if not env.SHIPROCKET_EMAIL or not env.SHIPROCKET_PASSWORD:
            raise UpstreamUnavailable("Shiprocket credentials are not configured")

        data = _post(
            f"{SHIPROCKET_API_BASE}/auth/login",
            {"email": env.SHIPROCKET_EMAIL, "password": env.SHIPROCKET_PASSWORD},
            {},
        )
        token = data.get("token")
        if not token:
            raise UpstreamUnavailable("Shiprocket login returned no token")

        _TOKEN_STATE["token"] = token
        _TOKEN_STATE["expires_at"] = time.time() + TOKEN_TTL_SECONDS
        return token


def _auth_post(path: str, payload: dict) -> dict:
    return _post(
        f"{SHIPROCKET_API_BASE}{path}",
        payload,
        {"Authorization": f"Bearer {_get_token()}"},
    )


# =========================================================
# CARRIER API
# =========================================================

def create_carrier_order(*, order: dict, pickup_location: str, package: dict) -> dict:
    address = order.get("shipping_address") or {}
    return _auth_post("/orders/create/adhoc", {
        "order_id": order["order_number"],
        "order_date": order["created_at"].strftime("%Y-%m-%d %H:%M"),
        "pickup_location": pickup_location,
        "billing_customer_name": address.get("name", ""),
        "billing_last_name": "",
        "billing_address": address.get("street", ""),
        "billing_city": address.get("city", ""),
        "billing_pincode": address.get("pincode", ""),
        "billing_state": address.get("state", ""),
        "billing_country": "India",
        "billing_phone": address.get("phone", ""),
        "shipping_is_billing": True,
        "order_items": [
            {
                "name": item.get("title", ""),
                "sku": str(item.get("sku") or item.get("product_id")),
                "units": item.get("quantity", 1),
                "selling_price": item.get("price", 0),
            }
            for item in order.get("items", [])
        ],
        "payment_method": "Prepaid",
        "sub_total": order.get("item_total", 0),
        "weight": package["weight_grams"] / 1000,
        "length": package["length_cm"],
        "breadth": package["width_cm"],
        "height": package["height_cm"],
    })


def assign_courier(*, carrier_shipment_id: str, courier_id: int | None = None) -> dict:
    payload = {"shipment_id": carrier_shipment_id}
    if courier_id:
        payload["courier_id"] = courier_id
    return _auth_post("/courier/assign/awb", payload)


def schedule_pickup(*, carrier_shipment_id: str) -> dict:
    return _auth_post("/courier/generate/pickup", {"shipment_id": [carrier_shipment_id]})


def generate_label(*, carrier_shipment_id: str) -> dict:
    return _auth_post("/courier/generate/label", {"shipment_id": [carrier_shipment_id]})
