"""
Promo code engine.

validate_code runs an ordered rule pipeline against a trial order and
returns a result; it never raises for a rejected code. Redemptions are
recorded once per (promo, order) when payment is confirmed.
"""
import logging
import math
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import config, models, schemas
from .exceptions import ConflictError, NotFoundError, ValidationError
from .validators import parse_amount, validate_discount_value, validate_promo_window

logger = logging.getLogger(__name__)

MONEY_QUANTUM = Decimal("0.00000001")

INVALID_ORDER_TOTAL = "INVALID_ORDER_TOTAL"
PROMO_NOT_FOUND = "PROMO_NOT_FOUND"
PROMO_INACTIVE = "PROMO_INACTIVE"
PROMO_NOT_STARTED = "PROMO_NOT_STARTED"
PROMO_EXPIRED = "PROMO_EXPIRED"
PROMO_MAX_USES_REACHED = "PROMO_MAX_USES_REACHED"
PROMO_USER_LIMIT_REACHED = "PROMO_USER_LIMIT_REACHED"
PROMO_MIN_ORDER_NOT_MET = "PROMO_MIN_ORDER_NOT_MET"
PROMO_SCOPE_MISMATCH = "PROMO_SCOPE_MISMATCH"
PROMO_ALREADY_APPLIED = "PROMO_ALREADY_APPLIED"
PROMO_NOT_STACKABLE = "PROMO_NOT_STACKABLE"


def normalize_code(code: str) -> str:
    return code.strip().upper()


def compute_discount(discount_type: str, discount_value: Decimal, order_total: Decimal) -> Decimal:
    """Discount for an order total, clamped to [0, order_total] at 8 decimal places."""
    if discount_type == "percent":
        discount = order_total * Decimal(discount_value) / Decimal(100)
    else:
        discount = Decimal(discount_value)
    discount = max(min(discount, order_total), Decimal(0))
    return discount.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def _split_scope(value: Optional[str]) -> set:
    if not value:
        return set()
    return {part.strip().lower() for part in value.split(",") if part.strip()}


def _as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _rejected(error_code: str, message: str) -> schemas.ValidatePromoResponse:
    return schemas.ValidatePromoResponse(valid=False, error_code=error_code, message=message)


class PromoService:
    def __init__(self, db: Session, clock=config.utcnow):
        self.db = db
        self.clock = clock

    def _find_by_code(self, code: str) -> Optional[models.PromoCode]:
        return self.db.query(models.PromoCode).filter(
            models.PromoCode.code == normalize_code(code),
            models.PromoCode.deleted_at.is_(None),
        ).first()

    def _user_redemptions(self, promo_id: str, user_id: Optional[str], email: Optional[str]) -> int:
        matches = []
        if user_id:
            matches.append(models.PromoRedemption.user_id == user_id)
        if email:
            matches.append(func.lower(models.PromoRedemption.email) == email.strip().lower())
        return self.db.query(models.PromoRedemption).filter(
            models.PromoRedemption.promo_code_id == promo_id,
            or_(*matches),
        ).count()

    def validate_code(
        self,
        code: str,
        order_total,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
        product_ids: Optional[List[str]] = None,
        category_ids: Optional[List[str]] = None,
        applied_promo_code_ids: Optional[List[str]] = None,
    ) -> schemas.ValidatePromoResponse:
        """
        Check a promo code against a trial order.

        Rules run in a fixed order and the first failure is returned:
        order total, existence, active flag, start, expiry, total uses,
        per-user uses, minimum order value, scope, stacking.

        Args:
            code: Promo code as typed by the buyer (case-insensitive)
            order_total: Order total as a decimal string
            user_id: Buyer's user ID, if signed in
            email: Buyer's email
            product_ids: Products in the cart (for product-scoped promos)
            category_ids: Categories in the cart (for category-scoped promos)
            applied_promo_code_ids: Promos already applied to this order

        Returns:
            ValidatePromoResponse; on success discount_amount holds the
            clamped discount with 8 decimal places
        """
        total = parse_amount(order_total)
        if total is None or total <= 0:
            return _rejected(INVALID_ORDER_TOTAL, "Order total must be a positive number")

        promo = self._find_by_code(code or "")
        if promo is None:
            return _rejected(PROMO_NOT_FOUND, "Promo code not found")

        if not promo.is_active:
            return _rejected(PROMO_INACTIVE, "Promo code is not active")

        now = self.clock()
        if promo.starts_at is not None and now < promo.starts_at:
            return _rejected(PROMO_NOT_STARTED, "Promo code is not yet valid")

        if promo.expires_at is not None and now > promo.expires_at:
            return _rejected(PROMO_EXPIRED, "Promo code has expired")

        if promo.max_uses_total is not None and promo.usage_count >= promo.max_uses_total:
            return _rejected(PROMO_MAX_USES_REACHED, "Promo code usage limit reached")

        if promo.max_uses_per_user is not None and (user_id or email):
            if self._user_redemptions(promo.id, user_id, email) >= promo.max_uses_per_user:
                return _rejected(PROMO_USER_LIMIT_REACHED, "You have already used this promo code the maximum number of times")

        if promo.min_order_value is not None and total < promo.min_order_value:
            return _rejected(
                PROMO_MIN_ORDER_NOT_MET,
                f"Minimum order value of {promo.min_order_value} not met",
            )

        if promo.scope_type != "global":
            allowed = _split_scope(promo.scope_value)
            requested = product_ids if promo.scope_type == "product" else category_ids
            requested = {value.strip().lower() for value in requested or [] if value}
            if not allowed & requested:
                return _rejected(PROMO_SCOPE_MISMATCH, f"Promo code is not valid for these {promo.scope_type} items")

        applied = [promo_id for promo_id in applied_promo_code_ids or [] if promo_id]
        if applied:
            if promo.id in applied:
                return _rejected(PROMO_ALREADY_APPLIED, "Promo code has already been applied")
            if not promo.stackable:
                return _rejected(PROMO_NOT_STACKABLE, "Promo code cannot be combined with other promo codes")
            others = self.db.query(models.PromoCode).filter(models.PromoCode.id.in_(applied)).all()
            for other in others:
                if not other.stackable:
                    return _rejected(PROMO_NOT_STACKABLE, f"Promo code {other.code} cannot be combined with other promo codes")

        discount = compute_discount(promo.discount_type, promo.discount_value, total)
        return schemas.ValidatePromoResponse(
            valid=True,
            message="Promo code applied",
            promo_code_id=promo.id,
            discount_amount=str(discount),
            discount_type=promo.discount_type,
            discount_value=str(promo.discount_value),
            stackable=promo.stackable,
        )

    def _existing_redemption(self, promo_code_id: str, order_id: str) -> Optional[models.PromoRedemption]:
        return self.db.query(models.PromoRedemption).filter(
            models.PromoRedemption.promo_code_id == promo_code_id,
            models.PromoRedemption.order_id == order_id,
        ).first()

    def record_redemption(
        self,
        promo_code_id: str,
        order_id: str,
        email: str,
        discount_applied: Decimal,
        original_total: Decimal,
        final_total: Decimal,
        user_id: Optional[str] = None,
    ) -> models.PromoRedemption:
        """
        Record that a promo was used by a paid order. Safe to call repeatedly.

        The insert and the usage_count increment commit together. A second
        call for the same (promo, order), including one that loses a race on
        the unique constraint, returns the first redemption and does not
        increment again.

        Raises:
            NotFoundError: if the promo code does not exist
        """
        existing = self._existing_redemption(promo_code_id, order_id)
        if existing is not None:
            logger.info(f"Redemption of promo {promo_code_id} for order {order_id} already recorded")
            return existing

        promo = self.db.query(models.PromoCode).filter(models.PromoCode.id == promo_code_id).first()
        if promo is None:
            raise NotFoundError("Promo code not found")

        redemption = models.PromoRedemption(
            promo_code_id=promo_code_id,
            order_id=order_id,
            user_id=user_id,
            email=email.lower(),
            discount_applied=discount_applied,
            original_total=original_total,
            final_total=final_total,
        )
        try:
            self.db.add(redemption)
            self.db.flush()
            incremented = self.db.query(models.PromoCode).filter(
                models.PromoCode.id == promo_code_id,
                or_(
                    models.PromoCode.max_uses_total.is_(None),
                    models.PromoCode.usage_count < models.PromoCode.max_uses_total,
                ),
            ).update({"usage_count": models.PromoCode.usage_count + 1}, synchronize_session=False)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self._existing_redemption(promo_code_id, order_id)
            if existing is None:
                raise
            logger.info(f"Concurrent redemption of promo {promo_code_id} for order {order_id}; using existing row")
            return existing

        if not incremented:
            logger.warning(f"Promo {promo.code} redeemed by order {order_id} beyond its usage limit")
        self.db.refresh(redemption)
        logger.info(f"Promo {promo_code_id} redeemed by order {order_id} (discount {discount_applied})")
        return redemption

    # ==================== ADMIN ====================

    def get_or_404(self, promo_id: str) -> models.PromoCode:
        promo = self.db.query(models.PromoCode).filter(
            models.PromoCode.id == promo_id,
            models.PromoCode.deleted_at.is_(None),
        ).first()
        if promo is None:
            raise NotFoundError("Promo code not found")
        return promo

    def _check_rules(self, discount_type, discount_value, starts_at, expires_at):
        is_valid, error_message = validate_discount_value(discount_type, discount_value)
        if not is_valid:
            raise ValidationError(error_message)
        is_valid, error_message = validate_promo_window(starts_at, expires_at)
        if not is_valid:
            raise ValidationError(error_message)

    def create(self, data: schemas.PromoCodeCreate) -> models.PromoCode:
        """
        Raises:
            ValidationError: if the discount or validity window is invalid
            ConflictError: if the code already exists
        """
        values = data.model_dump(exclude={"code"})
        values["starts_at"] = _as_naive_utc(values["starts_at"])
        values["expires_at"] = _as_naive_utc(values["expires_at"])
        self._check_rules(data.discount_type, data.discount_value, values["starts_at"], values["expires_at"])

        code = normalize_code(data.code)
        if self.db.query(models.PromoCode).filter(models.PromoCode.code == code).first():
            raise ConflictError(f"Promo code {code} already exists")

        promo = models.PromoCode(code=code, **values)
        self.db.add(promo)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError(f"Promo code {code} already exists")
        self.db.refresh(promo)
        logger.info(f"Promo code {code} created")
        return promo

    def update(self, promo_id: str, data: schemas.PromoCodeUpdate) -> models.PromoCode:
        promo = self.get_or_404(promo_id)
        changes = data.model_dump(exclude_unset=True)
        # Required columns cannot be cleared
        for field in ("discount_type", "discount_value", "scope_type", "stackable", "is_active"):
            if changes.get(field, promo) is None:
                changes.pop(field)
        for field in ("starts_at", "expires_at"):
            if field in changes:
                changes[field] = _as_naive_utc(changes[field])

        self._check_rules(
            changes.get("discount_type", promo.discount_type),
            changes.get("discount_value", promo.discount_value),
            changes.get("starts_at", promo.starts_at),
            changes.get("expires_at", promo.expires_at),
        )
        for field, value in changes.items():
            setattr(promo, field, value)
        self.db.commit()
        self.db.refresh(promo)
        logger.info(f"Promo code {promo.code} updated ({', '.join(changes) or 'no changes'})")
        return promo

    def soft_delete(self, promo_id: str) -> None:
        promo = self.get_or_404(promo_id)
        promo.deleted_at = self.clock()
        promo.is_active = False
        self.db.commit()
        logger.info(f"Promo code {promo.code} deleted")

    def list_codes(
        self,
        page: int = 1,
        limit: int = 20,
        is_active: Optional[bool] = None,
        search: Optional[str] = None,
        scope_type: Optional[str] = None,
    ) -> schemas.PaginatedPromoCodes:
        page = max(page, 1)
        limit = max(1, min(limit, 100))
        query = self.db.query(models.PromoCode).filter(models.PromoCode.deleted_at.is_(None))
        if is_active is not None:
            query = query.filter(models.PromoCode.is_active == is_active)
        if search:
            query = query.filter(models.PromoCode.code.like(f"%{search.strip().upper()}%"))
        if scope_type:
            query = query.filter(models.PromoCode.scope_type == scope_type)

        total = query.count()
        rows = query.order_by(models.PromoCode.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
        return schemas.PaginatedPromoCodes(
            data=[schemas.PromoCode.model_validate(row) for row in rows],
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit) if total else 0,
        )

    def list_redemptions(self, promo_id: str, page: int = 1, limit: int = 20) -> schemas.PaginatedRedemptions:
        self.get_or_404(promo_id)
        page = max(page, 1)
        limit = max(1, min(limit, 100))
        query = self.db.query(models.PromoRedemption).filter(models.PromoRedemption.promo_code_id == promo_id)
        total = query.count()
        rows = query.order_by(models.PromoRedemption.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
        return schemas.PaginatedRedemptions(
            data=[schemas.PromoRedemption.model_validate(row) for row in rows],
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit) if total else 0,
        )
