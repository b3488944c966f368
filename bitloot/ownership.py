"""
Access decisions for an order's sensitive reads (status, links, key reveals).

Checks run in priority order and the first match wins:
session token, admin role, user id match, email match. A check that does
not match falls through to the next one.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from . import crud, models
from .auth import CurrentUser, SessionTokenService
from .exceptions import ForbiddenError, NotFoundError

logger = logging.getLogger(__name__)

METHOD_SESSION_TOKEN = "session_token"
METHOD_ADMIN = "admin"
METHOD_USER_ID = "user_id_match"
METHOD_EMAIL = "email_match"
METHOD_DENIED = "denied"


@dataclass
class CallerContext:
    user: Optional[CurrentUser] = None
    session_token: Optional[str] = None

    @property
    def is_anonymous(self) -> bool:
        return self.user is None and not self.session_token


@dataclass
class AccessDecision:
    granted: bool
    method: str
    order: models.Order


def _same_email(a: Optional[str], b: Optional[str]) -> bool:
    if not a or not b:
        return False
    return a.strip().lower() == b.strip().lower()


class OwnershipResolver:
    def __init__(self, db: Session, session_tokens: Optional[SessionTokenService] = None):
        self.db = db
        self.session_tokens = session_tokens or SessionTokenService()

    def resolve_access(self, order_id: str, caller: CallerContext) -> AccessDecision:
        """
        Decide whether the caller may read the order's secrets.

        Raises:
            NotFoundError: if the order does not exist
        """
        order = crud.get_order(self.db, order_id)
        if order is None:
            raise NotFoundError("Order not found")

        if caller.session_token:
            claims = self.session_tokens.verify(caller.session_token)
            if claims is None:
                logger.info(f"Access check order={order.id}: session token invalid or expired")
            elif claims.order_id != order.id:
                logger.warning(
                    f"Access check order={order.id}: session token issued for order {claims.order_id}"
                )
            elif not _same_email(claims.email, order.email):
                logger.warning(f"Access check order={order.id}: session token email mismatch")
            else:
                return AccessDecision(True, METHOD_SESSION_TOKEN, order)

        user = caller.user
        if user is not None:
            if user.is_admin:
                return AccessDecision(True, METHOD_ADMIN, order)
            if user.id and order.user_id and user.id == order.user_id:
                return AccessDecision(True, METHOD_USER_ID, order)
            if _same_email(user.email, order.email):
                return AccessDecision(True, METHOD_EMAIL, order)
            logger.info(f"Access check order={order.id}: user {user.id} is not the owner")

        return AccessDecision(False, METHOD_DENIED, order)

    def require_access(self, order_id: str, caller: CallerContext) -> AccessDecision:
        """
        Like resolve_access, but raise ForbiddenError on denial.

        The caller only ever sees "Forbidden"; which check failed is logged.
        """
        decision = self.resolve_access(order_id, caller)
        if not decision.granted:
            raise ForbiddenError("Forbidden")
        logger.debug(f"Access granted for order {order_id} via {decision.method}")
        return decision
