import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from config.env import BANK_DATA_ENCRYPTION_KEY, JWT_SECRET


def _build_fernet() -> Fernet:
    # dedicated key preferred; JWT secret keeps dev setups working
    seed = (BANK_DATA_ENCRYPTION_KEY or JWT_SECRET or "").strip()
    if not seed:
        raise RuntimeError("Bank data encryption key is not configured")
    key = base64.urlsafe_b64encode(hashlib.sha256(seed.encode("utf-8")).digest())
    return Fernet(key)


def encrypt_sensitive_value(value: str) -> str:
    if not value:
        raise ValueError("Sensitive value missing")
    return _build_fernet().encrypt(value.encode("utf-8")).decode("utf-8")


def decrypt_sensitive_value(token: str) -> str:
    if not token:
        raise ValueError("Encrypted sensitive value missing")
    try:
        raw = _build_fernet().decrypt(token.encode("utf-8"))
    except InvalidToken:
        raise ValueError("Encrypted value cannot be decrypted with the current key")
    return raw.decode("utf-8")
