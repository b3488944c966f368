"""
Domain errors raised by the fulfillment, delivery and promo services.

Each error carries the HTTP status the API layer answers with, so the
services stay free of FastAPI imports.
"""


class DomainError(Exception):
    """Base class for expected business failures."""
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(DomainError):
    """Order, item or promo code does not exist (or is soft-deleted)."""
    status_code = 404


class ForbiddenError(DomainError):
    """Caller is authenticated but may not access the resource."""
    status_code = 403


class UnauthorizedError(DomainError):
    """No usable identity was presented."""
    status_code = 401


class StateError(DomainError):
    """Operation is not valid for the current order/item state."""
    status_code = 400


class ValidationError(DomainError):
    """Request data breaks a business rule (see validators)."""
    status_code = 400


class ConflictError(DomainError):
    """Uniqueness violation, e.g. a duplicate promo code."""
    status_code = 409


class UpstreamError(DomainError):
    """Supplier or inventory acquisition failed."""
    status_code = 502


class DecryptionError(Exception):
    """Ciphertext could not be authenticated or decrypted."""
