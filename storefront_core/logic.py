from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import func, update
from sqlmodel import Session, select

from .logging import get_logger
from .models import Coupon, CouponCreate, CouponRedemption, CouponUpdate, to_utc, utcnow

logger = get_logger(__name__)


class CouponError(Exception):
    """Coupon operation failure carrying the HTTP status it maps to."""

    status_code = 400

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class CouponNotFound(CouponError):
    status_code = 404


class CouponConflict(CouponError):
    status_code = 400


class CouponUpdateError(CouponError):
    status_code = 500


# ---------------------------
# Discount math
# ---------------------------

def compute_discount(coupon: Coupon, subtotal: float) -> float:
    if coupon.discount_type.upper() == "PERCENTAGE":
        discount = subtotal * coupon.discount_value / 100.0
        if coupon.max_discount is not None:
            discount = min(discount, coupon.max_discount)
    elif coupon.discount_type.upper() == "FIXED":
        discount = coupon.discount_value
    else:
        discount = 0.0
    # discount cannot exceed subtotal
    return max(0.0, min(discount, subtotal))


def is_within_date_range(coupon: Coupon, now: Optional[datetime] = None) -> bool:
    now = utcnow() if now is None else to_utc(now)
    if coupon.valid_from > now:
        return False
    return coupon.valid_to is None or coupon.valid_to >= now


def has_remaining_usage(coupon: Coupon) -> bool:
    if coupon.usage_limit is None:
        return True
    return coupon.usage_count < coupon.usage_limit


def count_user_redemptions(session: Session, coupon_id: int, user_id: str) -> int:
    stmt = (
        select(func.count())
        .select_from(CouponRedemption)
        .where(CouponRedemption.coupon_id == coupon_id, CouponRedemption.user_id == user_id)
    )
    return session.exec(stmt).one()


def count_redemptions(session: Session, coupon_id: int) -> int:
    stmt = (
        select(func.count())
        .select_from(CouponRedemption)
        .where(CouponRedemption.coupon_id == coupon_id)
    )
    return session.exec(stmt).one()


def redemption_counts(session: Session) -> Dict[int, int]:
    stmt = (
        select(CouponRedemption.coupon_id, func.count())
        .group_by(CouponRedemption.coupon_id)
    )
    return {coupon_id: count for coupon_id, count in session.exec(stmt).all()}


# ---------------------------
# Lookups and admin CRUD
# ---------------------------

def get_coupon(session: Session, coupon_id: int) -> Coupon:
    coupon = session.get(Coupon, coupon_id)
    if coupon is None:
        raise CouponNotFound("Coupon not found")
    return coupon


def get_coupon_by_code(session: Session, code: str) -> Optional[Coupon]:
    stmt = select(Coupon).where(Coupon.code == code.upper())
    return session.exec(stmt).first()


def list_coupons(session: Session) -> List[Coupon]:
    stmt = select(Coupon).order_by(Coupon.created_at.desc(), Coupon.id.desc())
    return list(session.exec(stmt).all())


def check_coupon_rules(payload: CouponCreate) -> None:
    """Cross-field rules that field validation alone cannot express."""
    if payload.discountType == "PERCENTAGE" and payload.discountValue > 100:
        raise CouponError("Percentage discount cannot exceed 100%")

    if payload.validTo is not None and payload.validFrom > payload.validTo:
        raise CouponError("End date must be after start date")


def _apply_payload(coupon: Coupon, payload: CouponCreate) -> None:
    coupon.code = payload.code.upper()
    coupon.description = payload.description
    coupon.discount_type = payload.discountType
    coupon.discount_value = payload.discountValue
    coupon.min_purchase = payload.minPurchase
    coupon.max_discount = payload.maxDiscount
    coupon.usage_limit = payload.usageLimit
    coupon.usage_per_user = payload.usagePerUser
    coupon.valid_from = payload.validFrom
    coupon.valid_to = payload.validTo
    coupon.active = payload.active
    coupon.campaign_type = payload.campaignType


def create_coupon(session: Session, payload: CouponCreate) -> Coupon:
    if get_coupon_by_code(session, payload.code) is not None:
        raise CouponConflict("Coupon code already exists")
    check_coupon_rules(payload)

    coupon = Coupon(
        code=payload.code.upper(),
        discount_type=payload.discountType,
        discount_value=payload.discountValue,
    )
    _apply_payload(coupon, payload)
    session.add(coupon)
    session.commit()
    session.refresh(coupon)
    logger.info("Coupon created", coupon_id=coupon.id, code=coupon.code)
    return coupon


def update_coupon(session: Session, coupon_id: int, payload: CouponUpdate) -> Coupon:
    coupon = get_coupon(session, coupon_id)

    if payload.code.upper() != coupon.code:
        if get_coupon_by_code(session, payload.code) is not None:
            raise CouponConflict("Coupon code already exists")
    check_coupon_rules(payload)

    _apply_payload(coupon, payload)
    session.add(coupon)
    session.commit()
    session.refresh(coupon)
    logger.info("Coupon updated", coupon_id=coupon.id, code=coupon.code)
    return coupon


def delete_coupon(session: Session, coupon_id: int) -> None:
    """Delete a coupon that has never been redeemed.

    Redeemed coupons keep their redemption history; deactivate them instead.
    """
    coupon = get_coupon(session, coupon_id)
    if count_redemptions(session, coupon_id) > 0:
        raise CouponError(
            "Cannot delete coupon that has been used in orders. "
            "Consider deactivating it instead."
        )

    code = coupon.code
    session.delete(coupon)
    session.commit()
    logger.info("Coupon deleted", coupon_id=coupon_id, code=code)

# ---------------------------
# Checkout
# ---------------------------

def validate_coupon(session: Session, code: str, subtotal: float,
                    user_id: Optional[str] = None,
                    now: Optional[datetime] = None) -> tuple[Coupon, float]:
    """Check that ``code`` can be applied to ``subtotal`` and price the discount.

    Checks run in order: existence, active flag, validity window, global usage
    limit, per-user limit, minimum purchase. The first failing check raises a
    ``CouponError`` with the customer-facing message.
    """
    now = utcnow() if now is None else to_utc(now)

    coupon = get_coupon_by_code(session, code)
    if coupon is None:
        raise CouponNotFound("Invalid coupon code")

    if not coupon.active:
        raise CouponError("This coupon is no longer active")

    if coupon.valid_from > now:
        raise CouponError("This coupon is not yet valid")

    if coupon.valid_to is not None and coupon.valid_to < now:
        raise CouponError("This coupon has expired")

    if not has_remaining_usage(coupon):
        raise CouponError("This coupon has reached its usage limit")

    if user_id and coupon.usage_per_user:
        if count_user_redemptions(session, coupon.id, user_id) >= coupon.usage_per_user:
            raise CouponError("You have already used this coupon")

    if coupon.min_purchase and subtotal < coupon.min_purchase:
        raise CouponError(f"Minimum purchase of ₪{coupon.min_purchase:g} required")

    return coupon, compute_discount(coupon, subtotal)


def use_coupon(session: Session, coupon_id: int, user_id: Optional[str] = None) -> Coupon:
    """Add one to the coupon's usage count.

    The increment is a single ``UPDATE ... SET usage_count = usage_count + 1``,
    so concurrent redemptions are serialized by the database, not by this
    process. Nothing is validated here; limits are checked by
    ``validate_coupon`` before checkout calls this.
    """
    stmt = (
        update(Coupon)
        .where(Coupon.id == coupon_id)
        .values(usage_count=Coupon.usage_count + 1)
    )
    result = session.exec(stmt)
    if result.rowcount == 0:
        session.rollback()
        raise CouponUpdateError(f"No coupon with id {coupon_id}")

    if user_id:
        session.add(CouponRedemption(coupon_id=coupon_id, user_id=user_id))

    session.commit()

    coupon = session.get(Coupon, coupon_id)
    logger.info("Coupon used", coupon_id=coupon_id, code=coupon.code,
                usage_count=coupon.usage_count, user_id=user_id)
    return coupon
