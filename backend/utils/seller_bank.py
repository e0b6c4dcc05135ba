import logging
from datetime import datetime

from config.constants import (
    HOLD_MISSING_BANK_DETAILS,
    PAYOUT_ON_HOLD,
    PAYOUT_PENDING,
    ROLE_SELLER,
)
from models.payout import BankDetailsIn
from utils.audit import log_audit
from utils.crypto import encrypt_sensitive_value
from utils.validators import mask_account_number, normalize_account_number, normalize_ifsc

logger = logging.getLogger(__name__)

BANK_FIELDS = ("account_holder_name", "bank_account_encrypted", "ifsc_code", "bank_name")


def get_bank_details(seller: dict | None) -> dict:
    return ((seller or {}).get("seller_profile") or {}).get("bank_details") or {}


def is_bank_details_complete(bank_details: dict | None) -> bool:
    bank_details = bank_details or {}
    return all(str(bank_details.get(field) or "").strip() for field in BANK_FIELDS)


def bank_snapshot(bank_details: dict | None) -> dict:
    """
    Copy taken onto a payout. Carries the encrypted account number and
    its mask, never the plain number.
    """
    bank_details = bank_details or {}
    return {
        "account_holder_name": bank_details.get("account_holder_name"),
        "bank_account_encrypted": bank_details.get("bank_account_encrypted"),
        "bank_account_masked": bank_details.get("bank_account_masked"),
        "ifsc_code": bank_details.get("ifsc_code"),
        "bank_name": bank_details.get("bank_name"),
    }


def public_bank_details(bank_details: dict | None) -> dict:
    snapshot = bank_snapshot(bank_details)
    snapshot.pop("bank_account_encrypted")
    return snapshot


async def release_bank_holds(db, seller_id, bank_details: dict) -> int:
    """
    Flip every payout held for missing bank details back to pending with
    a fresh snapshot.
    """
    if not is_bank_details_complete(bank_details):
        return 0

    result = await db.seller_payouts.update_many(
        {
            "seller_id": seller_id,
            "status": PAYOUT_ON_HOLD,
            "hold_reason": HOLD_MISSING_BANK_DETAILS,
        },
        {
            "$set": {
                "status": PAYOUT_PENDING,
                "hold_reason": None,
                "bank_details_snapshot": bank_snapshot(bank_details),
                "updated_at": datetime.utcnow(),
            }
        },
    )
    if result.modified_count:
        logger.info("PAYOUT_AUTO_UNHOLD seller=%s released=%s", seller_id, result.modified_count)
    return result.modified_count


async def save_bank_details(db, seller: dict, payload: BankDetailsIn) -> dict:
    """
    Validate, encrypt and store a seller's bank details, then release any
    payouts that were waiting on them. Raises ValueError on bad input.
    """
    account_number = normalize_account_number(payload.account_number)
    ifsc_code = normalize_ifsc(payload.ifsc_code)
    holder = payload.account_holder_name.strip()
    bank_name = payload.bank_name.strip()
    if not holder or not bank_name:
        raise ValueError("Account holder name and bank name are required")

    bank_details = {
        "account_holder_name": holder,
        "bank_account_encrypted": encrypt_sensitive_value(account_number),
        "bank_account_masked": mask_account_number(account_number),
        "ifsc_code": ifsc_code,
        "bank_name": bank_name,
        "updated_at": datetime.utcnow(),
    }

    await db.users.update_one(
        {"_id": seller["_id"]},
        {"$set": {"seller_profile.bank_details": bank_details}},
    )

    released = await release_bank_holds(db, seller["_id"], bank_details)

    await log_audit(
        db,
        str(seller["_id"]),
        ROLE_SELLER,
        "bank_details_updated",
        {"released_payouts": released},
        domain="payout",
        target_type="User",
        target_id=seller["_id"],
    )

    return {
        "bank_details": public_bank_details(bank_details),
        "released_payouts": released,
    }
