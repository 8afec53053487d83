import os
from typing import Any, Callable, Dict

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

# Must match the secret of the service issuing tokens.
SECRET_KEY = os.getenv("JWT_SECRET_KEY", "super-secret-smart-meeting-room-key")
ALGORITHM = "HS256"

# Roles that may read bookings but never create, edit or cancel them.
READ_ONLY_ROLES = ("auditor", "moderator", "service_account")

security = HTTPBearer()


async def get_current_user_claims(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Dict[str, Any]:
    """
    Decode a JWT bearer token and extract user claims.

    Parameters
    ----------
    credentials : HTTPAuthorizationCredentials
        Authorization header parsed by FastAPI's HTTPBearer.

    Returns
    -------
    Dict[str, Any]
        A dictionary containing 'username', 'role' and 'user_id'.

    Raises
    ------
    HTTPException
        If the token is missing, invalid, or lacks one of the claims.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = jwt.decode(credentials.credentials, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise credentials_exception

    username = payload.get("sub")
    role = payload.get("role")
    user_id = payload.get("user_id")
    if username is None or role is None or user_id is None:
        raise credentials_exception

    return {"username": username, "role": role, "user_id": int(user_id)}


def require_roles(*allowed_roles: str) -> Callable:
    """
    Build a dependency that enforces a set of allowed roles.

    Returns
    -------
    Callable
        A FastAPI dependency that raises HTTP 403 for any other role.
    """

    async def dependency(claims: Dict[str, Any] = Depends(get_current_user_claims)) -> Dict[str, Any]:
        if claims["role"] not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Not enough permissions",
            )
        return claims

    return dependency


async def require_booking_writer(
    claims: Dict[str, Any] = Depends(get_current_user_claims),
) -> Dict[str, Any]:
    """Reject read-only roles before any booking write is attempted."""
    if claims["role"] in READ_ONLY_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="This role cannot create or modify bookings",
        )
    return claims
