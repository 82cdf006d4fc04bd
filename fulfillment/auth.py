"""
Authentication and authorization utilities for the Fulfillment service.

Validates JWT tokens issued by the auth service. Tokens carry the staff
member id in "sub" and the staff role in "role".
"""
import logging
import os
from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel

logger = logging.getLogger(__name__)

# JWT settings (must match the auth service)
SECRET_KEY = os.getenv("SECRET_KEY", "change-me-in-production")
ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

STAFF_ROLES = ("admin", "inventory")

# Security scheme for JWT bearer tokens
security = HTTPBearer()


class CurrentStaff(BaseModel):
    """Current authenticated staff member."""
    id: str
    role: str


def decode_token(token: str) -> CurrentStaff:
    """
    Decode and validate a bearer token.

    Args:
        token: Encoded JWT

    Returns:
        The staff member the token was issued to

    Raises:
        JWTError: If the token is invalid, expired or missing claims
    """
    payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    staff_id = payload.get("sub")
    role = payload.get("role")
    if staff_id is None or role is None:
        raise JWTError("Token is missing 'sub' or 'role'")
    return CurrentStaff(id=str(staff_id), role=role)


def get_current_staff(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> CurrentStaff:
    """
    FastAPI dependency to get the current authenticated staff member from JWT token.

    Raises:
        HTTPException: 401 if token is invalid
    """
    try:
        return decode_token(credentials.credentials)
    except JWTError as e:
        logger.error(f"JWT validation error: {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )


def require_driver(current_staff: CurrentStaff = Depends(get_current_staff)) -> CurrentStaff:
    """
    FastAPI dependency to require the driver role.

    Raises:
        HTTPException: 403 if the staff member is not a driver
    """
    if current_staff.role != "driver":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Driver role required"
        )
    return current_staff


def require_staff(current_staff: CurrentStaff = Depends(get_current_staff)) -> CurrentStaff:
    """
    FastAPI dependency to require an admin or inventory staff member.

    Raises:
        HTTPException: 403 otherwise
    """
    if current_staff.role not in STAFF_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin or inventory privileges required"
        )
    return current_staff
