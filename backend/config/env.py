import os
from dotenv import load_dotenv

load_dotenv()

# =====================================================
# ENV
# =====================================================
ENV = os.getenv("ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# =====================================================
# DATABASE
# =====================================================
MONGO_URI = os.getenv("MONGO_URI") or os.getenv("MONGODB_URI")

# =====================================================
# JWT
# =====================================================
JWT_SECRET = os.getenv("JWT_SECRET")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

# =====================================================
# PAYMENT GATEWAY (CASHFREE PG)
# =====================================================
CASHFREE_ENV = os.getenv("CASHFREE_ENV", "sandbox")
CASHFREE_APP_ID = os.getenv("CASHFREE_APP_ID")
CASHFREE_SECRET_KEY = os.getenv("CASHFREE_SECRET_KEY")
CASHFREE_API_VERSION = os.getenv("CASHFREE_API_VERSION", "2025-01-01")
CLIENT_URL = os.getenv("CLIENT_URL", "http://localhost:5173")

# Rupee tolerance between gateway-paid amount and local order totals
PAYMENT_AMOUNT_TOLERANCE = float(os.getenv("PAYMENT_AMOUNT_TOLERANCE", 1))

# =====================================================
# CARRIER AGGREGATOR (SHIPROCKET)
# =====================================================
SHIPROCKET_EMAIL = os.getenv("SHIPROCKET_EMAIL")
SHIPROCKET_PASSWORD = os.getenv("SHIPROCKET_PASSWORD")
SHIPROCKET_WEBHOOK_SECRET = os.getenv("SHIPROCKET_WEBHOOK_SECRET")

# =====================================================
# SETTINGS / PAYOUTS
# =====================================================
SETTINGS_CACHE_TTL_SECONDS = int(os.getenv("SETTINGS_CACHE_TTL_SECONDS", 120))
PAYOUT_WORKER_INTERVAL_SECONDS = int(os.getenv("PAYOUT_WORKER_INTERVAL_SECONDS", 60 * 60))
PAYOUT_WORKER_ENABLED = os.getenv("PAYOUT_WORKER_ENABLED", "true").lower() == "true"

# =====================================================
# CORS
# =====================================================
CORS_ALLOWED_ORIGINS = os.getenv("CORS_ALLOWED_ORIGINS", "").split(",")

# --------------------------------------------------
# DATA ENCRYPTION
# --------------------------------------------------
BANK_DATA_ENCRYPTION_KEY = os.getenv("BANK_DATA_ENCRYPTION_KEY")


def validate_production_env() -> None:
    if (ENV or "").lower() != "production":
        return

    required = {
        "JWT_SECRET": JWT_SECRET,
        "CASHFREE_APP_ID": CASHFREE_APP_ID,
        "CASHFREE_SECRET_KEY": CASHFREE_SECRET_KEY,
        "SHIPROCKET_EMAIL": SHIPROCKET_EMAIL,
        "SHIPROCKET_PASSWORD": SHIPROCKET_PASSWORD,
        "SHIPROCKET_WEBHOOK_SECRET": SHIPROCKET_WEBHOOK_SECRET,
        "BANK_DATA_ENCRYPTION_KEY": BANK_DATA_ENCRYPTION_KEY,
        "MONGODB_URI": MONGO_URI,
    }

    invalid = []
    for key, value in required.items():
        val = (value or "").strip()
        if not val or val.startswith("CHANGE_THIS"):
            invalid.append(key)

    if invalid:
        raise RuntimeError(f"Production env misconfigured. Invalid keys: {', '.join(sorted(invalid))}")
