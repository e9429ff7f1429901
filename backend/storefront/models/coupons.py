import enum
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from storefront.db.base import Base
from storefront.models.order import Order
from storefront.models.user import User


class CouponType(str, enum.Enum):
    percent = "percent"
    fixed = "fixed"
    free_shipping = "free_shipping"


class UserCouponSource(str, enum.Enum):
    system_reward = "system_reward"
    admin_gift = "admin_gift"
    event_reward = "event_reward"
    referral_bonus = "referral_bonus"
    loyalty_point = "loyalty_point"


class Coupon(Base):
    __tablename__ = "coupons"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(150), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[CouponType] = mapped_column(Enum(CouponType, native_enum=False), nullable=False)
    value: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    min_order_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    max_discount_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    usage_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    used_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    usage_limit_per_user: Mapped[int | None] = mapped_column(Integer, nullable=True)
    start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    first_order_only: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # null or [] both mean "no restriction"
    applicable_products: Mapped[list[int] | None] = mapped_column(JSON, nullable=True)
    applicable_categories: Mapped[list[int] | None] = mapped_column(JSON, nullable=True)
    excluded_products: Mapped[list[int] | None] = mapped_column(JSON, nullable=True)
    excluded_categories: Mapped[list[int] | None] = mapped_column(JSON, nullable=True)
    applicable_user_groups: Mapped[list[int] | None] = mapped_column(JSON, nullable=True)

    created_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class UserCoupon(Base):
    __tablename__ = "user_coupons"
    __table_args__ = (UniqueConstraint("user_id", "coupon_id", name="uq_user_coupons_user_coupon"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    coupon_id: Mapped[int] = mapped_column(Integer, ForeignKey("coupons.id", ondelete="CASCADE"), nullable=False)
    personal_code: Mapped[str | None] = mapped_column(String(50), unique=True, nullable=True)
    gift_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    used_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    max_usage: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    valid_from: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    source: Mapped[UserCouponSource] = mapped_column(
        Enum(UserCouponSource, native_enum=False), nullable=False, default=UserCouponSource.system_reward
    )
    first_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    extra: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    coupon: Mapped[Coupon] = relationship("Coupon", lazy="selectin")
    user: Mapped[User] = relationship("User")


class OrderCoupon(Base):
    __tablename__ = "order_coupons"
    __table_args__ = (UniqueConstraint("order_id", "coupon_id", name="uq_order_coupons_order_coupon"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    coupon_id: Mapped[int] = mapped_column(Integer, ForeignKey("coupons.id"), nullable=False, index=True)
    user_coupon_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("user_coupons.id", ondelete="SET NULL"), nullable=True
    )
    coupon_code: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    discount_type: Mapped[CouponType] = mapped_column(Enum(CouponType, native_enum=False), nullable=False)
    discount_value: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    order_subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    shipping_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    shipping_discount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    applied_products: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)
    conditions_met: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    order: Mapped[Order] = relationship("Order")
    coupon: Mapped[Coupon] = relationship("Coupon")
