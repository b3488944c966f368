"""
Authentication utilities for the BitLoot service.

Validates user JWTs issued by the auth service and issues/verifies the
order session tokens handed to guests at checkout.
"""
import logging
from datetime import timedelta
from typing import Optional
from jose import JWTError, jwt
from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel

from . import config

logger = logging.getLogger(__name__)

SESSION_TOKEN_HEADER = "x-order-session-token"
SESSION_TOKEN_TYPE = "order_session"

# Credentials are optional at the scheme level; each dependency decides
# whether a missing token is an error.
security = HTTPBearer(auto_error=False)


class CurrentUser(BaseModel):
    """Current authenticated user information."""
    id: str
    email: str
    role: str
    token: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class SessionClaims(BaseModel):
    """Verified claims of an order session token."""
    order_id: str
    email: str


def _credentials_exception() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_user_token(token: str) -> CurrentUser:
    """
    Decode and validate a user JWT.

    Raises:
        HTTPException: 401 if the token is invalid or lacks required claims
    """
    try:
        payload = jwt.decode(token, config.JWT_SECRET_KEY, algorithms=[config.JWT_ALGORITHM])
        user_id = payload.get("sub")
        email: str = payload.get("email")
        role: str = payload.get("role")

        if user_id is None or email is None or role is None:
            raise _credentials_exception()

        return CurrentUser(id=str(user_id), email=email, role=role, token=token)
    except JWTError as e:
        logger.error(f"JWT validation error: {e}")
        raise _credentials_exception()


def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> Optional[CurrentUser]:
    """
    FastAPI dependency returning the authenticated user, or None when no
    bearer token was sent. A token that is present but invalid is still a 401.
    """
    if credentials is None:
        return None
    return decode_user_token(credentials.credentials)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> CurrentUser:
    """
    FastAPI dependency to get the current authenticated user from JWT token.

    Raises:
        HTTPException: 401 if token is missing or invalid
    """
    if credentials is None:
        raise _credentials_exception()
    return decode_user_token(credentials.credentials)


def require_admin(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """
    FastAPI dependency to require admin role.

    Raises:
        HTTPException: 403 if user is not an admin
    """
    if not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required"
        )
    return current_user


def get_session_token(
    x_order_session_token: Optional[str] = Header(None, alias=SESSION_TOKEN_HEADER)
) -> Optional[str]:
    """FastAPI dependency reading the guest session token header."""
    if x_order_session_token is None or not x_order_session_token.strip():
        return None
    return x_order_session_token.strip()


class SessionTokenService:
    """Issues and verifies signed order session tokens."""

    def __init__(self, secret: Optional[str] = None, ttl_minutes: Optional[int] = None, clock=config.utcnow):
        self.secret = secret or config.ORDER_SESSION_SECRET
        self.ttl = timedelta(minutes=ttl_minutes or config.ORDER_SESSION_TTL_MINUTES)
        self.clock = clock

    def issue(self, order_id: str, email: str) -> str:
        expire = self.clock() + self.ttl
        claims = {
            "orderId": order_id,
            "email": email.lower(),
            "typ": SESSION_TOKEN_TYPE,
            "exp": expire,
        }
        return jwt.encode(claims, self.secret, algorithm=config.JWT_ALGORITHM)

    def verify(self, token: str) -> Optional[SessionClaims]:
        """
        Verify signature and expiry.

        Returns:
            The token's claims, or None if the token is invalid or expired
        """
        try:
            payload = jwt.decode(token, self.secret, algorithms=[config.JWT_ALGORITHM])
        except JWTError as e:
            logger.warning(f"Order session token rejected: {e}")
            return None

        order_id = payload.get("orderId")
        email = payload.get("email")
        if payload.get("typ") != SESSION_TOKEN_TYPE or not order_id or not email:
            logger.warning("Order session token rejected: missing claims")
            return None
        return SessionClaims(order_id=order_id, email=email)
