from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from bson import ObjectId
from bson.errors import InvalidId

from config.constants import ROLE_SELLER
from database import get_db
from utils.errors import Unauthenticated
from utils.jwt import decode_token

security = HTTPBearer()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db=Depends(get_db),
):
    payload = decode_token(credentials.credentials)

    try:
        user_id = ObjectId(payload.get("sub"))
    except (InvalidId, TypeError):
        raise Unauthenticated("Invalid token payload")

    user = await db.users.find_one({"_id": user_id})
    if not user:
        raise Unauthenticated("User not found")

    if user.get("is_blocked"):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is blocked",
        )

    return user


def require_role(*roles: str):
    async def checker(user=Depends(get_current_user)):
        if user.get("role") not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return user

    return checker


async def get_current_seller(
    user=Depends(get_current_user),
):
    if user.get("role") != ROLE_SELLER:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Seller access only",
        )
    return user
