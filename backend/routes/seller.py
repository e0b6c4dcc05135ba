from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from database import get_db
from models.order import BookShipmentRequest, ShipOrderRequest
from models.payout import BankDetailsIn
from utils.commission import get_commission_rate
from utils.guards import load_order
from utils.mongo import serialize_doc, serialize_docs
from utils.order_actions import seller_mark_shipped
from utils.security import get_current_seller
from utils.seller_bank import get_bank_details, public_bank_details, save_bank_details
from utils.settings_cache import get_platform_settings
from utils.shipments import book_shipment

router = APIRouter(
    prefix="/api/seller",
    tags=["Seller"]
)


# ----------------------------------------
# ORDERS
# ----------------------------------------

@router.get("/orders")
async def seller_orders(
    status: Optional[str] = Query(None),
    seller=Depends(get_current_seller),
    db=Depends(get_db),
):
    query = {"seller_id": seller["_id"]}
    if status:
        query["status"] = status

    orders = await db.orders.find(query).sort("created_at", -1).to_list(200)
    return {"orders": serialize_docs(orders)}


@router.put("/orders/{order_id}/ship")
async def mark_order_shipped(
    order_id: str,
    payload: ShipOrderRequest,
    seller=Depends(get_current_seller),
    db=Depends(get_db),
):
    order = await load_order(db, order_id, seller_id=seller["_id"])
    order = await seller_mark_shipped(db, order, payload, seller)
    return {"message": "Order marked as shipped", "order": serialize_doc(order)}


@router.post("/orders/{order_id}/shipment")
async def create_shipment(
    order_id: str,
    payload: BookShipmentRequest,
    seller=Depends(get_current_seller),
    db=Depends(get_db),
):
    order = await load_order(db, order_id, seller_id=seller["_id"])
    shipment = await book_shipment(db, order, seller, payload)
    return {"message": "Shipment booked", "shipment": serialize_doc(shipment)}


# ----------------------------------------
# BANK DETAILS
# ----------------------------------------

@router.get("/bank-details")
async def get_seller_bank_details(
    seller=Depends(get_current_seller),
):
    bank_details = get_bank_details(seller)
    if not bank_details:
        return {"bank_details": None}
    return {"bank_details": public_bank_details(bank_details)}


@router.put("/bank-details")
async def update_bank_details(
    payload: BankDetailsIn,
    seller=Depends(get_current_seller),
    db=Depends(get_db),
):
    try:
        result = await save_bank_details(db, seller, payload)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {"message": "Bank details saved", **result}


# ----------------------------------------
# PAYOUTS
# ----------------------------------------

@router.get("/payouts")
async def seller_payouts(
    seller=Depends(get_current_seller),
    db=Depends(get_db),
):
    payouts = await db.seller_payouts.find(
        {"seller_id": seller["_id"]},
        {"bank_details_snapshot.bank_account_encrypted": 0},
    ).sort("created_at", -1).to_list(100)
    return {"payouts": serialize_docs(payouts)}


@router.get("/commission")
async def seller_commission(
    seller=Depends(get_current_seller),
    db=Depends(get_db),
):
    settings = await get_platform_settings(db)
    return {
        "commission_rate": get_commission_rate(seller, settings),
        "gateway_fee_rate": settings.payment_gateway_fee_rate,
    }
