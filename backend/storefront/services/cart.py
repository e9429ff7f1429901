from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.config import settings
from storefront.core.errors import NoActiveCart
from storefront.models.cart import Cart, CartStatus
from storefront.schemas.coupons import OrderContext, OrderItemRef
from storefront.services.pricing import ZERO, quantize_money, sum_lines


async def get_active_cart(session: AsyncSession, user_id: int) -> Cart | None:
    result = await session.execute(
        select(Cart)
        .where(Cart.user_id == user_id, Cart.status == CartStatus.active)
        .order_by(Cart.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def require_active_cart(session: AsyncSession, user_id: int) -> Cart:
    cart = await get_active_cart(session, user_id)
    if cart is None:
        raise NoActiveCart()
    return cart


def cart_subtotal(cart: Cart) -> Decimal:
    return sum_lines(((item.unit_price, item.quantity) for item in cart.items), rounding=settings.money_rounding)


def build_order_context(cart: Cart, *, shipping_fee: Decimal = ZERO) -> OrderContext:
    """Snapshot the cart as the input the coupon engine reasons about."""
    return OrderContext(
        user_id=cart.user_id,
        subtotal=cart_subtotal(cart),
        shipping_fee=quantize_money(shipping_fee, rounding=settings.money_rounding),
        items=[
            OrderItemRef(product_id=item.product_id, quantity=item.quantity, price=item.unit_price)
            for item in cart.items
        ],
    )


async def mark_ordered(session: AsyncSession, cart: Cart) -> None:
    cart.status = CartStatus.ordered
    session.add(cart)
    await session.flush()
