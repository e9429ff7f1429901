from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.config import settings
from storefront.core.errors import InputInvalid
from storefront.models.coupons import UserCoupon
from storefront.models.order import Order, OrderItem, OrderStatus
from storefront.services import cart as cart_service
from storefront.services import coupons as coupons_service
from storefront.services import pricing

logger = logging.getLogger(__name__)


async def _find_user_coupon_id(session: AsyncSession, *, user_id: int, coupon_id: int) -> int | None:
    return (
        await session.execute(
            select(UserCoupon.id).where(
                UserCoupon.user_id == user_id,
                UserCoupon.coupon_id == coupon_id,
                UserCoupon.is_active.is_(True),
                UserCoupon.used_count < UserCoupon.max_usage,
            )
        )
    ).scalar_one_or_none()


async def place_order(
    session: AsyncSession,
    *,
    user_id: int,
    shipping_fee: Decimal,
    coupon_code: str | None = None,
    note: str | None = None,
) -> Order:
    """Turn the user's active cart into an order, applying ``coupon_code`` if given.

    Everything happens in one transaction: if the coupon cannot be applied no
    order is left behind and the cart stays active.
    """
    try:
        cart = await cart_service.require_active_cart(session, user_id)
        if not cart.items:
            raise InputInvalid("Cart is empty")
        context = cart_service.build_order_context(cart, shipping_fee=shipping_fee)

        coupon = None
        discount = None
        if coupon_code and coupon_code.strip():
            coupon = await coupons_service.validate_coupon(
                session, code=coupon_code, user_id=user_id, context=context
            )
            discount = coupons_service.calculate_discount(coupon, context)

        totals = pricing.compute_order_totals(
            subtotal=context.subtotal,
            shipping=context.shipping_fee,
            discount=discount.discount_amount if discount else pricing.ZERO,
            shipping_discount=discount.shipping_discount if discount else pricing.ZERO,
            rounding=settings.money_rounding,
        )
        order = Order(
            user_id=user_id,
            status=OrderStatus.pending_confirmation,
            subtotal=totals.subtotal,
            shipping_fee=totals.shipping,
            discount_amount=totals.discount,
            shipping_discount=totals.shipping_discount,
            total_amount=totals.total,
            note=note,
            items=[
                OrderItem(
                    product_id=item.product_id,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    line_total=pricing.line_total(item.unit_price, item.quantity, rounding=settings.money_rounding),
                )
                for item in cart.items
            ],
        )
        session.add(order)
        await session.flush()

        if coupon is not None and discount is not None:
            user_coupon_id = await _find_user_coupon_id(session, user_id=user_id, coupon_id=coupon.id)
            await coupons_service.apply_coupon_to_order(
                session,
                order_id=order.id,
                coupon_id=coupon.id,
                discount_data=coupons_service.build_discount_data(coupon, context, discount),
                user_coupon_id=user_coupon_id,
            )

        await cart_service.mark_ordered(session, cart)
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    await session.refresh(order)
    await session.refresh(order, attribute_names=["items"])
    logger.info(
        "order_placed",
        extra={
            "order_id": order.id,
            "user_id": user_id,
            "coupon_code": coupon.code if coupon is not None else None,
            "total_amount": order.total_amount,
        },
    )
    return order
