import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from storefront.core import errors
from storefront.models.coupons import Coupon, CouponType, OrderCoupon, UserCoupon, UserCouponSource
from storefront.models.order import Order
from storefront.models.user import User
from storefront.schemas.coupons import AppliedProduct, ConditionsMet, DiscountData, OrderCouponRead
from storefront.services.coupons import apply_coupon_to_order


def seed(session_factory: async_sessionmaker, *, usage_limit: int | None = None, orders: int = 1) -> dict:
    async def _seed() -> dict:
        async with session_factory() as session:
            user = User(email="shopper@example.com", name="Shopper")
            coupon = Coupon(
                code="SAVE10",
                name="Save 10",
                type=CouponType.percent,
                value=Decimal("10.00"),
                usage_limit=usage_limit,
                is_active=True,
            )
            session.add_all([user, coupon])
            await session.flush()
            order_ids = []
            for _ in range(orders):
                order = Order(user_id=user.id, subtotal=Decimal("100.00"), total_amount=Decimal("90.00"))
                session.add(order)
                await session.flush()
                order_ids.append(order.id)
            await session.commit()
            return {"user": user.id, "coupon": coupon.id, "orders": order_ids}

    return asyncio.run(_seed())


def discount_data(**overrides) -> DiscountData:  # type: ignore[no-untyped-def]
    data = {
        "coupon_code": "SAVE10",
        "discount_type": CouponType.percent,
        "discount_value": Decimal("10.00"),
        "discount_amount": Decimal("10.00"),
        "order_subtotal": Decimal("100.00"),
        "shipping_fee": Decimal("7.50"),
        "shipping_discount": Decimal("0.00"),
        "applied_products": [AppliedProduct(product_id=3, quantity=2, price=Decimal("50.00"))],
        "conditions_met": ConditionsMet(min_order_amount=Decimal("25.00"), applicable_categories=[5]),
    }
    data.update(overrides)
    return DiscountData(**data)


def apply(session_factory: async_sessionmaker, **kwargs) -> OrderCoupon:  # type: ignore[no-untyped-def]
    async def _apply() -> OrderCoupon:
        async with session_factory() as session:
            try:
                order_coupon = await apply_coupon_to_order(session, **kwargs)
            except Exception:
                await session.rollback()
                raise
            await session.commit()
            return order_coupon

    return asyncio.run(_apply())


def used_count(session_factory: async_sessionmaker, coupon_id: int) -> int:
    async def _get() -> int:
        async with session_factory() as session:
            return (await session.execute(select(Coupon.used_count).where(Coupon.id == coupon_id))).scalar_one()

    return asyncio.run(_get())


def order_coupon_count(session_factory: async_sessionmaker) -> int:
    async def _count() -> int:
        async with session_factory() as session:
            return int((await session.execute(select(func.count()).select_from(OrderCoupon))).scalar_one())

    return asyncio.run(_count())


def test_apply_is_exactly_once_per_order(session_factory: async_sessionmaker) -> None:
    ids = seed(session_factory)
    order_id = ids["orders"][0]

    apply(session_factory, order_id=order_id, coupon_id=ids["coupon"], discount_data=discount_data())
    assert used_count(session_factory, ids["coupon"]) == 1

    with pytest.raises(errors.CouponAlreadyApplied):
        apply(session_factory, order_id=order_id, coupon_id=ids["coupon"], discount_data=discount_data())
    assert used_count(session_factory, ids["coupon"]) == 1
    assert order_coupon_count(session_factory) == 1


def test_applied_snapshot_round_trips(session_factory: async_sessionmaker) -> None:
    ids = seed(session_factory)
    data = discount_data(discount_value=Decimal("33.33"), discount_amount=Decimal("33.33"))
    created = apply(session_factory, order_id=ids["orders"][0], coupon_id=ids["coupon"], discount_data=data)

    async def _reload() -> OrderCoupon:
        async with session_factory() as session:
            return await session.get(OrderCoupon, created.id)

    stored = OrderCouponRead.model_validate(asyncio.run(_reload()))
    assert stored.coupon_code == data.coupon_code
    assert stored.discount_type == data.discount_type
    assert stored.discount_value == Decimal("33.33")
    assert stored.discount_amount == Decimal("33.33")
    assert stored.order_subtotal == data.order_subtotal
    assert stored.shipping_fee == Decimal("7.50")
    assert stored.shipping_discount == data.shipping_discount
    assert stored.applied_products == data.applied_products
    assert stored.conditions_met == data.conditions_met


def test_apply_accepts_camel_case_mapping(session_factory: async_sessionmaker) -> None:
    ids = seed(session_factory)
    payload = {
        "couponCode": "save10",
        "discountType": "percent",
        "discountValue": "10",
        "discountAmount": "10.00",
        "orderSubtotal": "100.00",
        "shippingFee": "0",
        "appliedProducts": [{"productId": 1, "quantity": 1, "price": "100.00"}],
    }
    created = apply(session_factory, order_id=ids["orders"][0], coupon_id=ids["coupon"], discount_data=payload)
    assert created.coupon_code == "SAVE10"
    assert created.applied_products == [{"product_id": 1, "quantity": 1, "price": "100.00"}]
    assert created.conditions_met == {"min_order_amount": "0", "applicable_products": [], "applicable_categories": []}


def test_invalid_discount_data_is_rejected(session_factory: async_sessionmaker) -> None:
    ids = seed(session_factory)
    payload = {"discountType": "percent", "discountAmount": "-1", "orderSubtotal": "10", "shippingFee": "0"}

    with pytest.raises(errors.InvalidDiscountData) as exc:
        apply(session_factory, order_id=ids["orders"][0], coupon_id=ids["coupon"], discount_data=payload)
    fields = {tuple(err["loc"]) for err in exc.value.details}
    assert ("couponCode",) in fields
    assert ("discountAmount",) in fields
    assert used_count(session_factory, ids["coupon"]) == 0


def test_unknown_coupon_is_not_found(session_factory: async_sessionmaker) -> None:
    ids = seed(session_factory)
    with pytest.raises(errors.CouponNotFound):
        apply(session_factory, order_id=ids["orders"][0], coupon_id=9999, discount_data=discount_data())


def test_conditional_increment_stops_at_usage_limit(session_factory: async_sessionmaker) -> None:
    ids = seed(session_factory, usage_limit=1, orders=2)
    first, second = ids["orders"]

    apply(session_factory, order_id=first, coupon_id=ids["coupon"], discount_data=discount_data())
    # a second order validated before the first one committed still cannot overshoot the limit
    with pytest.raises(errors.CouponUsageLimitReached):
        apply(session_factory, order_id=second, coupon_id=ids["coupon"], discount_data=discount_data())

    assert used_count(session_factory, ids["coupon"]) == 1
    assert order_coupon_count(session_factory) == 1


def test_apply_does_not_commit(session_factory: async_sessionmaker) -> None:
    ids = seed(session_factory)

    async def _apply_then_rollback() -> None:
        async with session_factory() as session:
            await apply_coupon_to_order(
                session, order_id=ids["orders"][0], coupon_id=ids["coupon"], discount_data=discount_data()
            )
            await session.rollback()

    asyncio.run(_apply_then_rollback())
    assert used_count(session_factory, ids["coupon"]) == 0
    assert order_coupon_count(session_factory) == 0


def test_apply_updates_user_voucher(session_factory: async_sessionmaker) -> None:
    ids = seed(session_factory, orders=2)

    async def _grant() -> int:
        async with session_factory() as session:
            voucher = UserCoupon(
                user_id=ids["user"], coupon_id=ids["coupon"], max_usage=1, source=UserCouponSource.admin_gift
            )
            session.add(voucher)
            await session.commit()
            return voucher.id

    voucher_id = asyncio.run(_grant())
    created = apply(
        session_factory,
        order_id=ids["orders"][0],
        coupon_id=ids["coupon"],
        discount_data=discount_data(),
        user_coupon_id=voucher_id,
    )
    assert created.user_coupon_id == voucher_id

    async def _voucher() -> UserCoupon:
        async with session_factory() as session:
            return await session.get(UserCoupon, voucher_id)

    voucher = asyncio.run(_voucher())
    assert voucher.used_count == 1
    assert voucher.first_used_at is not None
    assert voucher.last_used_at is not None

    with pytest.raises(errors.CouponUserUsageLimitReached):
        apply(
            session_factory,
            order_id=ids["orders"][1],
            coupon_id=ids["coupon"],
            discount_data=discount_data(),
            user_coupon_id=voucher_id,
        )
    assert used_count(session_factory, ids["coupon"]) == 1


def test_apply_rejects_sub_cent_money_amounts(session_factory: async_sessionmaker) -> None:
    ids = seed(session_factory)
    payload = discount_data().model_dump()
    payload.update(discount_amount=Decimal("10.555"), order_subtotal=Decimal("100.004"))

    with pytest.raises(errors.InvalidDiscountData) as exc:
        apply(session_factory, order_id=ids["orders"][0], coupon_id=ids["coupon"], discount_data=payload)
    assert len(exc.value.details) == 2

    payload = discount_data().model_dump()
    payload["applied_products"][0]["price"] = Decimal("49.999")
    with pytest.raises(errors.InvalidDiscountData):
        apply(session_factory, order_id=ids["orders"][0], coupon_id=ids["coupon"], discount_data=payload)

    assert order_coupon_count(session_factory) == 0
    assert used_count(session_factory, ids["coupon"]) == 0
