"""
Bearer-token identity for the booking API.

Tokens are issued elsewhere; this service only verifies the signature and
reads the numeric user id from the `sub` claim.
"""
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader
from jose import jwt, JWTError

from .config import settings

api_key_header = APIKeyHeader(name="Authorization")


def user_id_from_authorization(authorization: Optional[str]) -> Optional[int]:
    """Returns the user id carried by a 'Bearer <jwt>' header value, or None."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    try:
        claims = jwt.decode(token.strip(), settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None

    subject = claims.get("sub")
    if subject is None or not str(subject).isdigit():
        return None
    return int(subject)


async def rate_limit_key(request: Request) -> str:
    # Signed-in callers share one bucket across addresses
    user_id = user_id_from_authorization(request.headers.get("Authorization"))
    if user_id is not None:
        return f"user:{user_id}"
    return f"ip:{request.client.host if request.client else 'unknown'}"


async def get_current_user_id(authorization: Annotated[str, Depends(api_key_header)]) -> int:
    user_id = user_id_from_authorization(authorization)
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user_id
