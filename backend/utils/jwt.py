from jose import JWTError, jwt

from config.env import JWT_ALGORITHM, JWT_SECRET
from utils.errors import Unauthenticated


def _require_jwt_secret() -> str:
    secret = (JWT_SECRET or "").strip()
    if not secret:
        raise RuntimeError("JWT_SECRET is not configured")
    return secret


def decode_token(token: str) -> dict:
    """
    Tokens are issued by the auth service; this service only verifies them.
    """
    try:
        return jwt.decode(token, _require_jwt_secret(), algorithms=[JWT_ALGORITHM])
    except JWTError:
        raise Unauthenticated("Invalid or expired token")
