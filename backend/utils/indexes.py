from pymongo import ASCENDING, DESCENDING
from pymongo.errors import OperationFailure

from utils.idempotency import IDEMPOTENCY_TTL_SECONDS


def _normalize_key_pairs(keys):
    return [(k, v) for k, v in keys]


async def _create_index_safe(collection, keys, **kwargs):
    """
    Create index safely.
    If Mongo reports IndexOptionsConflict/IndexKeySpecsConflict for same key pattern,
    drop the conflicting index and recreate with desired options.
    """
    desired_key = _normalize_key_pairs(keys)
    desired_name = kwargs.get("name")
    try:
        await collection.create_index(keys, **kwargs)
        return
    except OperationFailure as e:
        if getattr(e, "code", None) not in {85, 86}:
            raise

        conflicting_names = []
        async for idx in collection.list_indexes():
            idx_key = _normalize_key_pairs(list(idx.get("key", {}).items()))
            if idx_key == desired_key:
                idx_name = idx.get("name")
                if idx_name and idx_name != desired_name:
                    conflicting_names.append(idx_name)

        for idx_name in conflicting_names:
            await collection.drop_index(idx_name)

        await collection.create_index(keys, **kwargs)


async def ensure_indexes(db):
    # Orders
    await _create_index_safe(
        db.orders,
        [("order_number", ASCENDING)],
        name="orders_order_number_unique",
        unique=True,
    )
    await _create_index_safe(
        db.orders,
        [("gateway_order_id", ASCENDING)],
        name="orders_gateway_order_idx",
        sparse=True,
    )
    await _create_index_safe(
        db.orders,
        [("buyer_id", ASCENDING), ("created_at", DESCENDING)],
        name="orders_buyer_created_at_idx",
    )
    await _create_index_safe(
        db.orders,
        [
            ("seller_id", ASCENDING),
            ("payment_status", ASCENDING),
            ("status", ASCENDING),
            ("payout_status", ASCENDING),
            ("delivered_at", ASCENDING),
        ],
        name="orders_payout_eligibility_idx",
    )
    await _create_index_safe(
        db.orders,
        [("payout_id", ASCENDING)],
        name="orders_payout_ref_idx",
        sparse=True,
    )

    # Shipments
    await _create_index_safe(
        db.shipments,
        [("awb_code", ASCENDING)],
        name="shipments_awb_idx",
    )
    await _create_index_safe(
        db.shipments,
        [("carrier_order_id", ASCENDING)],
        name="shipments_carrier_order_idx",
    )
    await _create_index_safe(
        db.shipments,
        [("order_id", ASCENDING)],
        name="shipments_order_idx",
    )

    # Seller payouts
    await _create_index_safe(
        db.seller_payouts,
        [("seller_id", ASCENDING), ("period_start", ASCENDING), ("period_end", ASCENDING)],
        name="seller_payouts_period_unique",
        unique=True,
    )
    await _create_index_safe(
        db.seller_payouts,
        [("status", ASCENDING), ("created_at", DESCENDING)],
        name="seller_payouts_status_created_at_idx",
    )

    # Coupons
    await _create_index_safe(
        db.coupons,
        [("code", ASCENDING)],
        name="coupons_code_unique",
        unique=True,
    )

    # Notifications / audit
    await _create_index_safe(
        db.notifications,
        [("user_id", ASCENDING), ("created_at", DESCENDING)],
        name="notifications_user_created_at_idx",
    )
    await _create_index_safe(
        db.audit_logs,
        [("target_type", ASCENDING), ("target_id", ASCENDING), ("created_at", DESCENDING)],
        name="audit_logs_target_idx",
    )

    # Idempotency
    await _create_index_safe(
        db.idempotency_keys,
        [("key", ASCENDING), ("scope", ASCENDING)],
        name="idempotency_key_scope_unique",
        unique=True,
    )
    await _create_index_safe(
        db.idempotency_keys,
        [("created_at", ASCENDING)],
        name="idempotency_ttl_idx",
        expireAfterSeconds=IDEMPOTENCY_TTL_SECONDS,
    )
