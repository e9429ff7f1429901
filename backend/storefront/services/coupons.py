from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from pydantic import ValidationError
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.config import settings
from storefront.core.errors import (
    CouponAlreadyApplied,
    CouponBelowMinimumOrder,
    CouponExpired,
    CouponFirstOrderOnly,
    CouponNotApplicableToItems,
    CouponNotFound,
    CouponNotYetValid,
    CouponRejection,
    CouponUsageLimitReached,
    CouponUserUsageLimitReached,
    InputInvalid,
    InvalidDiscountData,
)
from storefront.models.coupons import Coupon, CouponType, OrderCoupon, UserCoupon
from storefront.models.order import Order, OrderStatus
from storefront.schemas.coupons import DiscountData, DiscountResult, OrderContext
from storefront.services import cart as cart_service
from storefront.services import catalog as catalog_service
from storefront.services import pricing

logger = logging.getLogger(__name__)

_HUNDRED = Decimal("100")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def _as_utc(value: datetime | None) -> datetime | None:
    # sqlite drops tzinfo on the way back
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _money(value: Decimal) -> Decimal:
    return pricing.quantize_money(value, rounding=settings.money_rounding)


# ---------------------------------------------------------------------------
# Persistence lookups
# ---------------------------------------------------------------------------


async def get_coupon_by_code(session: AsyncSession, *, code: str, active_only: bool = True) -> Coupon | None:
    cleaned = _normalize_code(code)
    if not cleaned:
        return None
    stmt = select(Coupon).where(Coupon.code == cleaned)
    if active_only:
        stmt = stmt.where(Coupon.is_active.is_(True))
    return (await session.execute(stmt)).scalar_one_or_none()


async def count_user_coupon_usage(session: AsyncSession, *, user_id: int, coupon_id: int) -> int:
    return int(
        (
            await session.execute(
                select(func.count())
                .select_from(OrderCoupon)
                .join(Order, Order.id == OrderCoupon.order_id)
                .where(OrderCoupon.coupon_id == coupon_id, Order.user_id == user_id)
            )
        ).scalar_one()
    )


async def _count_prior_orders(session: AsyncSession, *, user_id: int) -> int:
    return int(
        (
            await session.execute(
                select(func.count())
                .select_from(Order)
                .where(Order.user_id == user_id, Order.status != OrderStatus.cancelled)
            )
        ).scalar_one()
    )


async def _increment_used_count(session: AsyncSession, *, coupon_id: int) -> bool:
    """Bump used_count only while it is still below usage_limit. Returns False when the limit was hit."""
    result = await session.execute(
        update(Coupon)
        .where(
            Coupon.id == coupon_id,
            or_(Coupon.usage_limit.is_(None), Coupon.used_count < Coupon.usage_limit),
        )
        .values(used_count=Coupon.used_count + 1)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) > 0


# ---------------------------------------------------------------------------
# Applicability matcher
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ApplicabilityResult:
    ok: bool
    reason: str | None = None


def _item_product_id(item: Any) -> int:
    if isinstance(item, Mapping):
        return int(item.get("product_id", item.get("productId")))
    return int(item.product_id)


def match_items(coupon: Coupon, items: Iterable[Any], catalog: Mapping[int, list[int]]) -> ApplicabilityResult:
    """Check the order's line items against the coupon's product and category rules.

    Empty or missing lists impose no restriction. Whitelists need at least one
    qualifying item; blacklists reject on any hit. Products unknown to the
    catalog map have no categories.
    """
    product_ids = [_item_product_id(item) for item in items]
    category_ids: set[int] = set()
    for product_id in product_ids:
        category_ids.update(int(cid) for cid in catalog.get(product_id, []))
    products = set(product_ids)

    excluded_products = set(coupon.excluded_products or [])
    if excluded_products and products & excluded_products:
        return ApplicabilityResult(ok=False, reason="excluded_product")

    excluded_categories = set(coupon.excluded_categories or [])
    if excluded_categories and category_ids & excluded_categories:
        return ApplicabilityResult(ok=False, reason="excluded_category")

    applicable_products = set(coupon.applicable_products or [])
    if applicable_products and not products & applicable_products:
        return ApplicabilityResult(ok=False, reason="no_applicable_product")

    applicable_categories = set(coupon.applicable_categories or [])
    if applicable_categories and not category_ids & applicable_categories:
        return ApplicabilityResult(ok=False, reason="no_applicable_category")

    return ApplicabilityResult(ok=True)


def matches(coupon: Coupon, items: Iterable[Any], catalog: Mapping[int, list[int]]) -> bool:
    return match_items(coupon, items, catalog).ok


_APPLICABILITY_MESSAGES = {
    "excluded_product": "Coupon cannot be used with one of the products in this order",
    "excluded_category": "Coupon cannot be used with one of the categories in this order",
    "no_applicable_product": "Coupon does not apply to any product in this order",
    "no_applicable_category": "Coupon does not apply to any category in this order",
}


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------


async def _check_rules(
    session: AsyncSession,
    coupon: Coupon,
    *,
    user_id: int | None,
    context: OrderContext,
    catalog: Mapping[int, list[int]] | None = None,
    now: datetime | None = None,
) -> None:
    now = now or _now()

    start_date = _as_utc(coupon.start_date)
    end_date = _as_utc(coupon.end_date)
    if start_date is not None and start_date > now:
        raise CouponNotYetValid()
    if end_date is not None and end_date < now:
        raise CouponExpired()

    if coupon.usage_limit is not None and int(coupon.used_count or 0) >= int(coupon.usage_limit):
        raise CouponUsageLimitReached()

    if user_id is not None:
        if coupon.usage_limit_per_user is not None:
            used = await count_user_coupon_usage(session, user_id=user_id, coupon_id=coupon.id)
            if used >= int(coupon.usage_limit_per_user):
                raise CouponUserUsageLimitReached()
        if coupon.first_order_only and settings.coupon_enforce_first_order_only:
            if await _count_prior_orders(session, user_id=user_id) > 0:
                raise CouponFirstOrderOnly()

    if coupon.min_order_amount is not None and Decimal(context.subtotal) < Decimal(coupon.min_order_amount):
        raise CouponBelowMinimumOrder(
            f"Minimum order amount is {_money(coupon.min_order_amount)}",
            details={"min_order_amount": str(_money(coupon.min_order_amount))},
        )

    if catalog is None:
        catalog = await catalog_service.find_categories_for_product_ids(
            session, [item.product_id for item in context.items]
        )
    result = match_items(coupon, context.items, catalog)
    if not result.ok:
        raise CouponNotApplicableToItems(
            _APPLICABILITY_MESSAGES.get(result.reason or "", None), details={"reason": result.reason}
        )


async def validate_coupon(
    session: AsyncSession,
    *,
    code: str,
    user_id: int | None,
    context: OrderContext,
) -> Coupon:
    """Resolve ``code`` to an active coupon usable for this order, or raise the first failing rule.

    Read-only: no counters move here.
    """
    cleaned = _normalize_code(code)
    if not cleaned:
        raise InputInvalid("Coupon code is required")
    if not context.items:
        raise InputInvalid("Order items are required")
    coupon = await get_coupon_by_code(session, code=cleaned)
    try:
        if coupon is None:
            raise CouponNotFound()
        await _check_rules(session, coupon, user_id=user_id, context=context)
    except (CouponNotFound, CouponRejection) as exc:
        logger.info(
            "coupon_rejected",
            extra={"coupon_code": cleaned, "user_id": user_id, "reason": exc.code, "detail": exc.message},
        )
        raise
    logger.info("coupon_validated", extra={"coupon_code": cleaned, "coupon_id": coupon.id, "user_id": user_id})
    return coupon


# ---------------------------------------------------------------------------
# Discount calculator
# ---------------------------------------------------------------------------


def calculate_discount(coupon: Coupon, context: OrderContext) -> DiscountResult:
    subtotal = Decimal(context.subtotal)
    shipping_fee = Decimal(context.shipping_fee or 0)
    value = Decimal(coupon.value or 0)

    discount = Decimal("0")
    shipping_discount = Decimal("0")
    if coupon.type == CouponType.percent:
        pct = min(max(value, Decimal("0")), _HUNDRED)
        discount = subtotal * pct / _HUNDRED
        if coupon.max_discount_amount is not None:
            discount = min(discount, Decimal(coupon.max_discount_amount))
    elif coupon.type == CouponType.fixed:
        discount = min(max(value, Decimal("0")), subtotal)
    elif coupon.type == CouponType.free_shipping:
        shipping_discount = shipping_fee

    discount_q = _money(discount)
    shipping_discount_q = _money(shipping_discount)
    final_amount = subtotal - discount_q + shipping_fee - shipping_discount_q
    return DiscountResult(
        discount_amount=discount_q,
        shipping_discount=shipping_discount_q,
        final_amount=_money(max(final_amount, Decimal("0"))),
    )


async def preview_discount(session: AsyncSession, *, code: str, context: OrderContext) -> DiscountResult:
    """What the coupon would save on this order right now; no rules are checked."""
    if not _normalize_code(code):
        raise InputInvalid("Coupon code is required")
    coupon = await get_coupon_by_code(session, code=code)
    if coupon is None:
        raise CouponNotFound()
    return calculate_discount(coupon, context)


def build_discount_data(coupon: Coupon, context: OrderContext, discount: DiscountResult) -> DiscountData:
    return DiscountData(
        coupon_code=coupon.code,
        discount_type=coupon.type,
        discount_value=_money(coupon.value or 0),
        discount_amount=discount.discount_amount,
        order_subtotal=_money(context.subtotal),
        shipping_fee=_money(context.shipping_fee or 0),
        shipping_discount=discount.shipping_discount,
        applied_products=[
            {"product_id": item.product_id, "quantity": item.quantity, "price": _money(item.price or 0)}
            for item in context.items
        ],
        conditions_met={
            "min_order_amount": _money(coupon.min_order_amount or 0),
            "applicable_products": list(coupon.applicable_products or []),
            "applicable_categories": list(coupon.applicable_categories or []),
        },
    )


# ---------------------------------------------------------------------------
# Applicator
# ---------------------------------------------------------------------------


def _parse_discount_data(discount_data: DiscountData | Mapping[str, Any]) -> DiscountData:
    if isinstance(discount_data, DiscountData):
        return discount_data
    try:
        return DiscountData.model_validate(discount_data)
    except ValidationError as exc:
        raise InvalidDiscountData(details=exc.errors(include_url=False)) from exc


async def _record_user_coupon_use(session: AsyncSession, *, user_coupon_id: int, coupon_id: int, now: datetime) -> None:
    user_coupon = await session.get(UserCoupon, user_coupon_id)
    if user_coupon is None or user_coupon.coupon_id != coupon_id:
        raise CouponNotFound("User coupon not found")
    if int(user_coupon.used_count or 0) >= int(user_coupon.max_usage or 0):
        raise CouponUserUsageLimitReached("User coupon has no uses left")
    user_coupon.used_count = int(user_coupon.used_count or 0) + 1
    if user_coupon.first_used_at is None:
        user_coupon.first_used_at = now
    user_coupon.last_used_at = now
    session.add(user_coupon)


async def apply_coupon_to_order(
    session: AsyncSession,
    *,
    order_id: int,
    coupon_id: int,
    discount_data: DiscountData | Mapping[str, Any],
    user_coupon_id: int | None = None,
) -> OrderCoupon:
    """Record the coupon on the order and consume one use of it.

    Runs inside the caller's transaction and never commits. On any raised
    error the caller must roll back; a failed flush leaves the session unusable
    until it does.
    """
    data = _parse_discount_data(discount_data)

    coupon = await session.get(Coupon, coupon_id)
    if coupon is None:
        raise CouponNotFound()

    existing = (
        await session.execute(
            select(OrderCoupon.id).where(OrderCoupon.order_id == order_id, OrderCoupon.coupon_id == coupon_id)
        )
    ).first()
    if existing is not None:
        raise CouponAlreadyApplied()

    order_coupon = OrderCoupon(
        order_id=order_id,
        coupon_id=coupon_id,
        user_coupon_id=user_coupon_id,
        coupon_code=_normalize_code(data.coupon_code),
        discount_type=data.discount_type,
        discount_value=data.discount_value,
        discount_amount=data.discount_amount,
        order_subtotal=data.order_subtotal,
        shipping_fee=data.shipping_fee,
        shipping_discount=data.shipping_discount,
        applied_products=[item.model_dump(mode="json") for item in data.applied_products],
        conditions_met=data.conditions_met.model_dump(mode="json"),
    )
    session.add(order_coupon)
    try:
        await session.flush()
    except IntegrityError as exc:
        raise CouponAlreadyApplied() from exc

    if not await _increment_used_count(session, coupon_id=coupon_id):
        raise CouponUsageLimitReached()

    if user_coupon_id is not None:
        await _record_user_coupon_use(session, user_coupon_id=user_coupon_id, coupon_id=coupon_id, now=_now())
        await session.flush()

    await session.refresh(coupon, attribute_names=["used_count"])
    await session.refresh(order_coupon)
    logger.info(
        "coupon_applied",
        extra={
            "order_id": order_id,
            "coupon_id": coupon_id,
            "coupon_code": order_coupon.coupon_code,
            "discount_amount": data.discount_amount,
            "shipping_discount": data.shipping_discount,
            "used_count": coupon.used_count,
        },
    )
    return order_coupon


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


async def list_valid_coupons_for_cart(session: AsyncSession, *, user_id: int) -> list[Coupon]:
    """Active coupons that would pass validation against the user's active cart."""
    cart = await cart_service.require_active_cart(session, user_id)
    context = cart_service.build_order_context(cart)
    if not context.items:
        return []
    catalog = await catalog_service.find_categories_for_product_ids(
        session, [item.product_id for item in context.items]
    )
    now = _now()

    coupons = (
        (await session.execute(select(Coupon).where(Coupon.is_active.is_(True)).order_by(Coupon.id))).scalars().all()
    )
    valid: list[Coupon] = []
    for coupon in coupons:
        try:
            await _check_rules(session, coupon, user_id=user_id, context=context, catalog=catalog, now=now)
        except CouponRejection as exc:
            logger.debug("coupon_skipped", extra={"coupon_id": coupon.id, "user_id": user_id, "reason": exc.code})
            continue
        valid.append(coupon)
    return valid
