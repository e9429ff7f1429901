import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker

from storefront.core import errors
from storefront.core.config import settings
from storefront.models.catalog import Category, Product
from storefront.models.coupons import Coupon, CouponType, OrderCoupon
from storefront.models.order import Order, OrderStatus
from storefront.models.user import User
from storefront.schemas.coupons import OrderContext, OrderItemRef
from storefront.services.coupons import count_user_coupon_usage, get_coupon_by_code, validate_coupon


def seed_catalog(session_factory: async_sessionmaker) -> dict[str, int]:
    async def _seed() -> dict[str, int]:
        async with session_factory() as session:
            user = User(email="buyer@example.com", name="Buyer")
            decor = Category(slug="decor", name="Decor")
            garden = Category(slug="garden", name="Garden")
            vase = Product(sku="VASE-1", name="Vase", price=Decimal("40.00"), categories=[decor])
            shovel = Product(sku="SHOVEL-1", name="Shovel", price=Decimal("25.00"), categories=[garden])
            session.add_all([user, decor, garden, vase, shovel])
            await session.commit()
            return {"user": user.id, "decor": decor.id, "garden": garden.id, "vase": vase.id, "shovel": shovel.id}

    return asyncio.run(_seed())


def create_coupon(session_factory: async_sessionmaker, **kwargs) -> int:  # type: ignore[no-untyped-def]
    async def _create() -> int:
        async with session_factory() as session:
            data = {"name": "Promo", "type": CouponType.percent, "value": Decimal("10"), "is_active": True}
            data.update(kwargs)
            coupon = Coupon(**data)
            session.add(coupon)
            await session.commit()
            return coupon.id

    return asyncio.run(_create())


def create_order(
    session_factory: async_sessionmaker,
    *,
    user_id: int,
    status: OrderStatus = OrderStatus.delivered,
    coupon_id: int | None = None,
) -> int:
    async def _create() -> int:
        async with session_factory() as session:
            order = Order(user_id=user_id, status=status, subtotal=Decimal("50.00"), total_amount=Decimal("50.00"))
            session.add(order)
            await session.flush()
            if coupon_id is not None:
                coupon = await session.get(Coupon, coupon_id)
                session.add(
                    OrderCoupon(
                        order_id=order.id,
                        coupon_id=coupon_id,
                        coupon_code=coupon.code,
                        discount_type=coupon.type,
                        discount_value=coupon.value,
                        discount_amount=Decimal("5.00"),
                        order_subtotal=Decimal("50.00"),
                        shipping_fee=Decimal("0.00"),
                        shipping_discount=Decimal("0.00"),
                    )
                )
            await session.commit()
            return order.id

    return asyncio.run(_create())


def run_validate(session_factory: async_sessionmaker, code: str, *, user_id: int | None, context: OrderContext) -> Coupon:
    async def _run() -> Coupon:
        async with session_factory() as session:
            return await validate_coupon(session, code=code, user_id=user_id, context=context)

    return asyncio.run(_run())


def context_for(*product_ids: int, subtotal: str = "100.00", user_id: int | None = None) -> OrderContext:
    return OrderContext(
        user_id=user_id,
        subtotal=Decimal(subtotal),
        items=[OrderItemRef(product_id=pid, quantity=1, price=Decimal("10.00")) for pid in product_ids],
    )


def test_validate_normalizes_code_and_returns_coupon(session_factory: async_sessionmaker) -> None:
    ids = seed_catalog(session_factory)
    coupon_id = create_coupon(session_factory, code="SAVE10")

    coupon = run_validate(session_factory, "  save10 ", user_id=ids["user"], context=context_for(ids["vase"]))
    assert coupon.id == coupon_id
    assert coupon.code == "SAVE10"


def test_validate_rejects_unknown_and_inactive_codes(session_factory: async_sessionmaker) -> None:
    ids = seed_catalog(session_factory)
    create_coupon(session_factory, code="OFF", is_active=False)

    with pytest.raises(errors.CouponNotFound):
        run_validate(session_factory, "MISSING", user_id=None, context=context_for(ids["vase"]))
    with pytest.raises(errors.CouponNotFound):
        run_validate(session_factory, "OFF", user_id=None, context=context_for(ids["vase"]))


def test_validate_requires_items(session_factory: async_sessionmaker) -> None:
    seed_catalog(session_factory)
    create_coupon(session_factory, code="SAVE10")

    with pytest.raises(errors.InputInvalid):
        run_validate(session_factory, "SAVE10", user_id=None, context=OrderContext(subtotal=Decimal("10"), items=[]))


def test_validate_requires_code(session_factory: async_sessionmaker) -> None:
    ids = seed_catalog(session_factory)

    for blank in ("", "   "):
        with pytest.raises(errors.InputInvalid, match="Coupon code is required"):
            run_validate(session_factory, blank, user_id=None, context=context_for(ids["vase"]))


def test_validate_time_window(session_factory: async_sessionmaker) -> None:
    ids = seed_catalog(session_factory)
    now = datetime.now(timezone.utc)
    create_coupon(session_factory, code="SOON", start_date=now + timedelta(days=1))
    create_coupon(session_factory, code="OLD", end_date=now - timedelta(days=1))

    with pytest.raises(errors.CouponNotYetValid):
        run_validate(session_factory, "SOON", user_id=None, context=context_for(ids["vase"]))
    with pytest.raises(errors.CouponExpired):
        run_validate(session_factory, "OLD", user_id=None, context=context_for(ids["vase"]))


def test_expired_is_reported_before_minimum_order(session_factory: async_sessionmaker) -> None:
    ids = seed_catalog(session_factory)
    create_coupon(
        session_factory,
        code="LATE",
        end_date=datetime.now(timezone.utc) - timedelta(hours=1),
        min_order_amount=Decimal("500.00"),
    )

    with pytest.raises(errors.CouponExpired):
        run_validate(session_factory, "LATE", user_id=None, context=context_for(ids["vase"], subtotal="10.00"))


def test_global_usage_limit(session_factory: async_sessionmaker) -> None:
    ids = seed_catalog(session_factory)
    create_coupon(session_factory, code="LIMITED", usage_limit=2, used_count=2)
    create_coupon(session_factory, code="ROOM", usage_limit=2, used_count=1)

    with pytest.raises(errors.CouponUsageLimitReached):
        run_validate(session_factory, "LIMITED", user_id=None, context=context_for(ids["vase"]))
    assert run_validate(session_factory, "ROOM", user_id=None, context=context_for(ids["vase"])).code == "ROOM"


def test_per_user_usage_limit(session_factory: async_sessionmaker) -> None:
    ids = seed_catalog(session_factory)
    coupon_id = create_coupon(session_factory, code="ONCE", usage_limit_per_user=1)
    create_order(session_factory, user_id=ids["user"], coupon_id=coupon_id)

    with pytest.raises(errors.CouponUserUsageLimitReached):
        run_validate(session_factory, "ONCE", user_id=ids["user"], context=context_for(ids["vase"]))
    # anonymous validation skips per-user checks
    assert run_validate(session_factory, "ONCE", user_id=None, context=context_for(ids["vase"])).id == coupon_id


def test_unlimited_per_user_usage(session_factory: async_sessionmaker) -> None:
    ids = seed_catalog(session_factory)
    coupon_id = create_coupon(session_factory, code="ALWAYS", usage_limit_per_user=None)
    create_order(session_factory, user_id=ids["user"], coupon_id=coupon_id)
    create_order(session_factory, user_id=ids["user"], coupon_id=None)

    assert run_validate(session_factory, "ALWAYS", user_id=ids["user"], context=context_for(ids["vase"])).id == coupon_id


def test_first_order_only(session_factory: async_sessionmaker, monkeypatch: pytest.MonkeyPatch) -> None:
    ids = seed_catalog(session_factory)
    create_coupon(session_factory, code="WELCOME", first_order_only=True)
    create_order(session_factory, user_id=ids["user"], status=OrderStatus.cancelled)

    # cancelled orders do not count
    assert run_validate(session_factory, "WELCOME", user_id=ids["user"], context=context_for(ids["vase"])).code == "WELCOME"

    create_order(session_factory, user_id=ids["user"], status=OrderStatus.delivered)
    with pytest.raises(errors.CouponFirstOrderOnly):
        run_validate(session_factory, "WELCOME", user_id=ids["user"], context=context_for(ids["vase"]))

    monkeypatch.setattr(settings, "coupon_enforce_first_order_only", False)
    assert run_validate(session_factory, "WELCOME", user_id=ids["user"], context=context_for(ids["vase"])).code == "WELCOME"


def test_minimum_order_amount(session_factory: async_sessionmaker) -> None:
    ids = seed_catalog(session_factory)
    create_coupon(session_factory, code="MIN50", min_order_amount=Decimal("50.00"))

    with pytest.raises(errors.CouponBelowMinimumOrder) as exc:
        run_validate(session_factory, "MIN50", user_id=None, context=context_for(ids["vase"], subtotal="49.99"))
    assert "50.00" in exc.value.message
    assert run_validate(session_factory, "MIN50", user_id=None, context=context_for(ids["vase"], subtotal="50.00")).code == "MIN50"


def test_category_applicability_uses_catalog(session_factory: async_sessionmaker) -> None:
    ids = seed_catalog(session_factory)
    create_coupon(session_factory, code="DECOR", applicable_categories=[ids["decor"]])
    create_coupon(session_factory, code="NOGARDEN", excluded_categories=[ids["garden"]])

    assert run_validate(
        session_factory, "DECOR", user_id=None, context=context_for(ids["vase"], ids["shovel"])
    ).code == "DECOR"
    with pytest.raises(errors.CouponNotApplicableToItems) as exc:
        run_validate(session_factory, "DECOR", user_id=None, context=context_for(ids["shovel"]))
    assert exc.value.details == {"reason": "no_applicable_category"}
    with pytest.raises(errors.CouponNotApplicableToItems):
        run_validate(session_factory, "NOGARDEN", user_id=None, context=context_for(ids["vase"], ids["shovel"]))


def test_rejections_share_a_base_class(session_factory: async_sessionmaker) -> None:
    ids = seed_catalog(session_factory)
    create_coupon(session_factory, code="MIN50", min_order_amount=Decimal("50.00"))

    with pytest.raises(errors.CouponRejection) as exc:
        run_validate(session_factory, "MIN50", user_id=None, context=context_for(ids["vase"], subtotal="1.00"))
    assert exc.value.code == "below_minimum_order"


def test_get_coupon_by_code_honours_active_only(session_factory: async_sessionmaker) -> None:
    create_coupon(session_factory, code="PAUSED", is_active=False)

    async def _lookup(code: str, active_only: bool) -> Coupon | None:
        async with session_factory() as session:
            return await get_coupon_by_code(session, code=code, active_only=active_only)

    assert asyncio.run(_lookup(" paused ", True)) is None
    found = asyncio.run(_lookup(" paused ", False))
    assert found is not None and found.code == "PAUSED"
    assert asyncio.run(_lookup("   ", False)) is None


def test_count_user_coupon_usage_is_scoped_to_user(session_factory: async_sessionmaker) -> None:
    ids = seed_catalog(session_factory)
    coupon_id = create_coupon(session_factory, code="COUNTME")
    create_order(session_factory, user_id=ids["user"], coupon_id=coupon_id)
    create_order(session_factory, user_id=ids["user"], coupon_id=coupon_id)
    create_order(session_factory, user_id=ids["user"])

    async def _count(user_id: int) -> int:
        async with session_factory() as session:
            return await count_user_coupon_usage(session, user_id=user_id, coupon_id=coupon_id)

    assert asyncio.run(_count(ids["user"])) == 2
    assert asyncio.run(_count(ids["user"] + 100)) == 0
