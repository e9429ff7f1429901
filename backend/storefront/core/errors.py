from __future__ import annotations

from typing import Any

from fastapi import status


class CouponError(Exception):
    """Base class for caller-recoverable coupon and checkout failures."""

    code: str = "coupon_error"
    status_code: int = status.HTTP_400_BAD_REQUEST
    default_message: str = "Coupon error"

    def __init__(self, message: str | None = None, *, details: Any = None) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class InputInvalid(CouponError):
    code = "input_invalid"
    default_message = "Invalid input"


class CouponNotFound(CouponError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Coupon not found or inactive"


class CouponRejection(CouponError):
    """A business rule made the coupon unusable for this order."""


class CouponNotYetValid(CouponRejection):
    code = "not_yet_valid"
    default_message = "Coupon not yet valid"


class CouponExpired(CouponRejection):
    code = "expired"
    default_message = "Coupon has expired"


class CouponUsageLimitReached(CouponRejection):
    code = "usage_limit_reached"
    default_message = "Coupon usage limit exceeded"


class CouponUserUsageLimitReached(CouponRejection):
    code = "user_usage_limit_reached"
    default_message = "User has exceeded coupon usage limit"


class CouponFirstOrderOnly(CouponRejection):
    code = "first_order_only"
    default_message = "Coupon is only valid for first order"


class CouponBelowMinimumOrder(CouponRejection):
    code = "below_minimum_order"
    default_message = "Order subtotal is below the coupon minimum"


class CouponNotApplicableToItems(CouponRejection):
    code = "not_applicable_to_items"
    default_message = "Coupon does not apply to the items in this order"


class CouponAlreadyApplied(CouponError):
    code = "already_applied"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Coupon already applied to this order"


class InvalidDiscountData(CouponError):
    code = "invalid_discount_data"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_message = "Invalid discount data"


class NoActiveCart(CouponError):
    code = "no_active_cart"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Active cart not found"


class CouponCodeExists(CouponError):
    code = "code_exists"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Coupon code already exists"


class CouponInUse(CouponError):
    code = "coupon_in_use"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Cannot delete coupon that has been used"


class CouponAlreadyGranted(CouponError):
    code = "already_granted"
    status_code = status.HTTP_409_CONFLICT
    default_message = "User already has this coupon"


class UserNotFound(CouponError):
    code = "user_not_found"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "User not found"
