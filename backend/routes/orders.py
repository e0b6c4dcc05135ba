from fastapi import APIRouter, Depends

from config.constants import ROLE_BUYER
from database import get_db
from models.order import CancelOrderRequest, CheckoutRequest, VerifyPaymentRequest
from utils.checkout import create_checkout
from utils.guards import load_order
from utils.mongo import serialize_doc, serialize_docs
from utils.order_actions import cancel_order
from utils.payment_confirmation import verify_payment
from utils.security import require_role


router = APIRouter(
    prefix="/api/orders",
    tags=["Orders"]
)


# =========================================================
# CHECKOUT
# =========================================================

@router.post("/create")
async def create_order(
    payload: CheckoutRequest,
    buyer=Depends(require_role(ROLE_BUYER)),
    db=Depends(get_db),
):
    return await create_checkout(db, buyer, payload)


@router.post("/verify-payment")
async def verify_order_payment(
    payload: VerifyPaymentRequest,
    buyer=Depends(require_role(ROLE_BUYER)),
    db=Depends(get_db),
):
    """
    Poll path after the gateway redirect. Same core as the webhook, so
    whichever arrives second is a no-op.
    """
    result = await verify_payment(db, payload.gateway_order_id, buyer)
    return serialize_doc(result)


# =========================================================
# BUYER ORDERS
# =========================================================

@router.get("/my")
async def my_orders(
    buyer=Depends(require_role(ROLE_BUYER)),
    db=Depends(get_db),
):
    orders = await db.orders.find({"buyer_id": buyer["_id"]}).sort("created_at", -1).to_list(100)
    return {"orders": serialize_docs(orders)}


@router.get("/{order_id}")
async def get_order(
    order_id: str,
    buyer=Depends(require_role(ROLE_BUYER)),
    db=Depends(get_db),
):
    order = await load_order(db, order_id, buyer_id=buyer["_id"])
    shipment = await db.shipments.find_one({"order_id": order["_id"]}, sort=[("created_at", -1)])
    return {"order": serialize_doc(order), "shipment": serialize_doc(shipment)}


@router.post("/{order_id}/cancel")
async def cancel_my_order(
    order_id: str,
    payload: CancelOrderRequest,
    buyer=Depends(require_role(ROLE_BUYER)),
    db=Depends(get_db),
):
    order = await load_order(db, order_id, buyer_id=buyer["_id"])
    result = await cancel_order(
        db,
        order,
        actor_role=ROLE_BUYER,
        actor_id=buyer["_id"],
        reason=payload.reason,
    )
    return {
        "message": "Order cancelled successfully",
        "order": serialize_doc(result["order"]),
        "refund": result["refund"],
    }
