from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader
from jose import jwt, JWTError
from typing import Annotated, Optional

from .config import settings

api_key_header = APIKeyHeader(name="Authorization")
optional_api_key_header = APIKeyHeader(name="Authorization", auto_error=False)


def _decode_user_id(token: str) -> int:
    """
    Pulls the integer user id out of an 'Authorization: Bearer <jwt>' value.
    Raises ValueError/JWTError/AttributeError/TypeError on anything malformed.
    """
    scheme, jwt_token = token.split()
    if scheme.lower() != "bearer":
        raise ValueError("Unsupported authorization scheme")
    payload = jwt.decode(jwt_token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    return int(payload.get("sub"))


async def get_key_by_user_id_or_ip(request: Request) -> str:
    """
    Rate-limit identifier: the user id from the JWT, or the client IP when
    the token is missing or invalid.
    """
    try:
        return str(_decode_user_id(request.headers.get("Authorization")))
    except (JWTError, ValueError, AttributeError, TypeError):
        return request.client.host


async def get_current_user_id_from_token(
        token: Annotated[str, Depends(api_key_header)]
) -> int:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        return _decode_user_id(token)
    except (JWTError, ValueError, AttributeError, TypeError):
        raise credentials_exception


async def get_optional_user_id(
        token: Annotated[Optional[str], Depends(optional_api_key_header)]
) -> int | None:
    """Like get_current_user_id_from_token, but anonymous callers get None."""
    if not token:
        return None
    try:
        return _decode_user_id(token)
    except (JWTError, ValueError, AttributeError, TypeError):
        return None
