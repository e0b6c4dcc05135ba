# backend/config/constants.py

# -----------------------------
# ORDER STATUS
# -----------------------------

ORDER_PENDING = "pending"
ORDER_CONFIRMED = "confirmed"
ORDER_PROCESSING = "processing"
ORDER_SHIPPED = "shipped"
ORDER_DELIVERED = "delivered"
ORDER_CANCELLED = "cancelled"
ORDER_REFUNDED = "refunded"

# -----------------------------
# PAYMENT STATUS
# -----------------------------

PAYMENT_PENDING = "pending"
PAYMENT_PAID = "paid"
PAYMENT_FAILED = "failed"
PAYMENT_REFUND_PENDING = "refund_pending"
PAYMENT_REFUNDED = "refunded"

# payment_status values a gateway confirmation may still advance
PAYABLE_PAYMENT_STATUSES = (PAYMENT_PENDING, PAYMENT_FAILED)

# -----------------------------
# ORDER PAYOUT STATUS
# -----------------------------

ORDER_PAYOUT_PENDING = "pending"
ORDER_PAYOUT_INCLUDED = "included_in_payout"
ORDER_PAYOUT_PAID = "paid"

# -----------------------------
# SELLER PAYOUT STATUS
# -----------------------------

PAYOUT_PENDING = "pending"
PAYOUT_ON_HOLD = "on_hold"
PAYOUT_PROCESSING = "processing"
PAYOUT_PAID = "paid"
PAYOUT_FAILED = "failed"

HOLD_MISSING_BANK_DETAILS = "missing_bank_details"

PAYOUT_LINKING = "linking"
PAYOUT_LINKED = "linked"

# -----------------------------
# SHIPMENT STATUS
# -----------------------------

SHIPMENT_CREATED = "created"
SHIPMENT_PICKUP_SCHEDULED = "pickup_scheduled"
SHIPMENT_PICKED_UP = "picked_up"
SHIPMENT_IN_TRANSIT = "in_transit"
SHIPMENT_OUT_FOR_DELIVERY = "out_for_delivery"
SHIPMENT_DELIVERED = "delivered"
SHIPMENT_RTO = "rto"
SHIPMENT_CANCELLED = "cancelled"

# soft carrier event, never stored as a shipment status
CARRIER_NDR = "ndr"

# -----------------------------
# ACTOR ROLES
# -----------------------------

ROLE_SYSTEM = "system"
ROLE_ADMIN = "admin"
ROLE_SELLER = "seller"
ROLE_BUYER = "buyer"

# -----------------------------
# PLATFORM SETTINGS DEFAULTS
# -----------------------------

PLATFORM_SETTINGS_ID = "platform"
DEFAULT_GATEWAY_FEE_RATE = 3.0
PAYOUT_SCHEDULES = ("weekly", "biweekly", "monthly")

# -----------------------------
# BUYER CANCELLATION
# -----------------------------

BUYER_CANCELLABLE_STATUSES = (ORDER_PENDING, ORDER_CONFIRMED)
