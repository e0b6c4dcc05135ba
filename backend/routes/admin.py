from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from config.constants import PAYMENT_REFUND_PENDING, ROLE_ADMIN, ROLE_SELLER
from database import get_client, get_db
from models.order import OrderStatusUpdate
from models.payout import MarkFailedRequest, MarkPaidRequest, PayoutCalculateRequest
from models.settings import PlatformSettingsUpdate
from utils.audit import log_audit
from utils.crypto import decrypt_sensitive_value
from utils.guards import load_order, parse_object_id
from utils.mongo import serialize_doc, serialize_docs
from utils.order_actions import admin_update_order_status, retry_refund
from utils.payout_engine import (
    calculate_payouts,
    mark_failed,
    mark_paid,
    mark_processing,
    retry_payout,
)
from utils.reconciliation import build_reconciliation_report
from utils.security import require_role
from utils.settings_cache import get_platform_settings, update_platform_settings


router = APIRouter(prefix="/api/admin", tags=["Admin"])


# =====================================================
# SCHEMAS
# =====================================================

class SellerCommissionUpdate(BaseModel):
    # None clears the override
    commission_rate: Optional[float] = Field(None, ge=0, le=100)


# =====================================================
# PLATFORM SETTINGS
# =====================================================

@router.get("/settings")
async def get_settings(
    admin=Depends(require_role(ROLE_ADMIN)),
    db=Depends(get_db),
):
    settings = await get_platform_settings(db)
    return {"settings": settings.model_dump()}


@router.put("/settings")
async def update_settings(
    payload: PlatformSettingsUpdate,
    admin=Depends(require_role(ROLE_ADMIN)),
    db=Depends(get_db),
):
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No changes supplied")

    settings = await update_platform_settings(db, changes, admin_id=admin["_id"])

    await log_audit(
        db,
        str(admin["_id"]),
        ROLE_ADMIN,
        "platform_settings_updated",
        {"fields": sorted(changes)},
        domain="settings",
    )
    return {"message": "Settings updated", "settings": settings.model_dump()}


@router.put("/sellers/{seller_id}/commission")
async def set_seller_commission(
    seller_id: str,
    payload: SellerCommissionUpdate,
    admin=Depends(require_role(ROLE_ADMIN)),
    db=Depends(get_db),
):
    seller_oid = parse_object_id(seller_id, "seller id")
    seller = await db.users.find_one({"_id": seller_oid, "role": ROLE_SELLER})
    if not seller:
        raise HTTPException(status_code=404, detail="Seller not found")

    await db.users.update_one(
        {"_id": seller_oid},
        {"$set": {"commission_rate": payload.commission_rate}},
    )

    await log_audit(
        db,
        str(admin["_id"]),
        ROLE_ADMIN,
        "seller_commission_updated",
        {"old": seller.get("commission_rate"), "new": payload.commission_rate},
        domain="settings",
        target_type="User",
        target_id=seller_oid,
    )
    return {"message": "Commission updated", "commission_rate": payload.commission_rate}


# =====================================================
# ORDERS
# =====================================================

@router.put("/orders/{order_id}/status")
async def update_order_status(
    order_id: str,
    payload: OrderStatusUpdate,
    admin=Depends(require_role(ROLE_ADMIN)),
    db=Depends(get_db),
):
    order = await load_order(db, order_id)
    order = await admin_update_order_status(db, order, payload.status, admin=admin, note=payload.note)
    return {"message": "Order updated", "order": serialize_doc(order)}


@router.get("/orders/refund-pending")
async def refund_pending_orders(
    admin=Depends(require_role(ROLE_ADMIN)),
    db=Depends(get_db),
):
    orders = await db.orders.find({"payment_status": PAYMENT_REFUND_PENDING}).sort("updated_at", 1).to_list(200)
    return {"orders": serialize_docs(orders)}


@router.post("/orders/{order_id}/refund/retry")
async def retry_order_refund(
    order_id: str,
    admin=Depends(require_role(ROLE_ADMIN)),
    db=Depends(get_db),
):
    order = await load_order(db, order_id)
    result = await retry_refund(db, order, admin=admin)
    return {"message": "Refund retried", **result}


# =====================================================
# PAYOUTS
# =====================================================

@router.get("/payouts")
async def list_payouts(
    status: Optional[str] = Query(None),
    seller_id: Optional[str] = Query(None),
    admin=Depends(require_role(ROLE_ADMIN)),
    db=Depends(get_db),
):
    query = {}
    if status:
        query["status"] = status
    if seller_id:
        query["seller_id"] = parse_object_id(seller_id, "seller id")

    payouts = await db.seller_payouts.find(query).sort("created_at", -1).to_list(200)
    return {"payouts": serialize_docs(payouts)}


@router.post("/payouts/calculate")
async def calculate_payout_batch(
    payload: PayoutCalculateRequest,
    admin=Depends(require_role(ROLE_ADMIN)),
    db=Depends(get_db),
    client=Depends(get_client),
):
    result = await calculate_payouts(
        db,
        payload.period_start,
        payload.period_end,
        payload.period_label,
        client=client,
        admin_id=str(admin["_id"]),
    )
    return {
        "message": f"{result['processed_sellers']} payouts calculated",
        **result,
        "created": serialize_docs(result["created"]),
    }


@router.put("/payouts/{payout_id}/mark-processing")
async def payout_mark_processing(
    payout_id: str,
    admin=Depends(require_role(ROLE_ADMIN)),
    db=Depends(get_db),
):
    payout = await mark_processing(db, parse_object_id(payout_id, "payout id"), admin_id=str(admin["_id"]))
    return {"message": "Payout marked as processing", "payout": serialize_doc(payout)}


@router.put("/payouts/{payout_id}/mark-paid")
async def payout_mark_paid(
    payout_id: str,
    payload: MarkPaidRequest,
    admin=Depends(require_role(ROLE_ADMIN)),
    db=Depends(get_db),
    client=Depends(get_client),
):
    result = await mark_paid(
        db,
        parse_object_id(payout_id, "payout id"),
        payload.transaction_id,
        admin_id=str(admin["_id"]),
        client=client,
    )
    message = "Payout already paid" if result["already_paid"] else "Payout marked as paid"
    return {"message": message, "payout": serialize_doc(result["payout"])}


@router.put("/payouts/{payout_id}/mark-failed")
async def payout_mark_failed(
    payout_id: str,
    payload: MarkFailedRequest,
    admin=Depends(require_role(ROLE_ADMIN)),
    db=Depends(get_db),
):
    payout = await mark_failed(db, parse_object_id(payout_id, "payout id"), payload.reason, admin_id=str(admin["_id"]))
    return {"message": "Payout marked as failed", "payout": serialize_doc(payout)}


@router.post("/payouts/{payout_id}/retry")
async def payout_retry(
    payout_id: str,
    admin=Depends(require_role(ROLE_ADMIN)),
    db=Depends(get_db),
):
    payout = await retry_payout(db, parse_object_id(payout_id, "payout id"), admin_id=str(admin["_id"]))
    return {"message": f"Payout is {payout['status']}", "payout": serialize_doc(payout)}


@router.get("/payouts/{payout_id}/bank-details")
async def payout_bank_details(
    payout_id: str,
    admin=Depends(require_role(ROLE_ADMIN)),
    db=Depends(get_db),
):
    """
    Full account number for manual transfer. Every reveal is audited.
    """
    payout = await db.seller_payouts.find_one({"_id": parse_object_id(payout_id, "payout id")})
    if not payout:
        raise HTTPException(status_code=404, detail="Payout not found")

    snapshot = payout.get("bank_details_snapshot") or {}
    if not snapshot.get("bank_account_encrypted"):
        raise HTTPException(status_code=409, detail="Payout has no bank details snapshot")

    try:
        account_number = decrypt_sensitive_value(snapshot["bank_account_encrypted"])
    except ValueError as e:
        raise HTTPException(status_code=500, detail=str(e))

    await log_audit(
        db,
        str(admin["_id"]),
        ROLE_ADMIN,
        "payout_bank_details_viewed",
        domain="payout",
        target_type="SellerPayout",
        target_id=payout["_id"],
    )
    return {
        "account_holder_name": snapshot.get("account_holder_name"),
        "account_number": account_number,
        "ifsc_code": snapshot.get("ifsc_code"),
        "bank_name": snapshot.get("bank_name"),
    }


# =====================================================
# RECONCILIATION
# =====================================================

@router.get("/reconciliation")
async def reconciliation_report(
    admin=Depends(require_role(ROLE_ADMIN)),
    db=Depends(get_db),
):
    report = await build_reconciliation_report(db)
    return serialize_doc(report)
