from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from storefront.models.coupons import CouponType, UserCouponSource


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OrderItemRef(_CamelModel):
    product_id: int
    quantity: int = Field(default=1, ge=1)
    price: Decimal | None = Field(default=None, ge=0)


class OrderContext(_CamelModel):
    user_id: int | None = None
    subtotal: Decimal = Field(ge=0)
    shipping_fee: Decimal = Field(default=Decimal("0.00"), ge=0)
    items: list[OrderItemRef] = Field(default_factory=list)


class DiscountResult(BaseModel):
    discount_amount: Decimal
    shipping_discount: Decimal
    final_amount: Decimal


class AppliedProduct(_CamelModel):
    product_id: int
    quantity: int = Field(ge=1)
    price: Decimal = Field(ge=0, decimal_places=2)


class ConditionsMet(_CamelModel):
    min_order_amount: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=2)
    applicable_products: list[int] = Field(default_factory=list)
    applicable_categories: list[int] = Field(default_factory=list)


class DiscountData(_CamelModel):
    coupon_code: str = Field(min_length=1, max_length=50)
    discount_type: CouponType
    discount_value: Decimal = Field(ge=0, decimal_places=2)
    discount_amount: Decimal = Field(ge=0, decimal_places=2)
    order_subtotal: Decimal = Field(ge=0, decimal_places=2)
    shipping_fee: Decimal = Field(ge=0, decimal_places=2)
    shipping_discount: Decimal = Field(default=Decimal("0.00"), ge=0, decimal_places=2)
    applied_products: list[AppliedProduct] = Field(default_factory=list)
    conditions_met: ConditionsMet = Field(default_factory=ConditionsMet)


class CouponRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    code: str
    name: str
    description: str | None = None
    type: CouponType
    value: Decimal
    min_order_amount: Decimal | None = None
    max_discount_amount: Decimal | None = None
    usage_limit: int | None = None
    used_count: int
    usage_limit_per_user: int | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    is_active: bool
    first_order_only: bool = False
    applicable_products: list[int] | None = None
    applicable_categories: list[int] | None = None
    excluded_products: list[int] | None = None
    excluded_categories: list[int] | None = None
    applicable_user_groups: list[int] | None = None
    created_by: int | None = None
    created_at: datetime
    updated_at: datetime


class CouponSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    code: str
    name: str
    type: CouponType
    value: Decimal


class CouponCreate(BaseModel):
    code: str = Field(min_length=3, max_length=50)
    name: str = Field(min_length=1, max_length=150)
    description: str | None = None
    type: CouponType
    value: Decimal = Field(default=Decimal("0.00"), ge=0)
    min_order_amount: Decimal | None = Field(default=None, ge=0)
    max_discount_amount: Decimal | None = Field(default=None, ge=0)
    usage_limit: int | None = Field(default=None, ge=1)
    usage_limit_per_user: int | None = Field(default=1, ge=1)
    start_date: datetime | None = None
    end_date: datetime | None = None
    is_active: bool = True
    first_order_only: bool = False
    applicable_products: list[int] | None = None
    applicable_categories: list[int] | None = None
    excluded_products: list[int] | None = None
    excluded_categories: list[int] | None = None
    applicable_user_groups: list[int] | None = None


class CouponUpdate(BaseModel):
    code: str | None = Field(default=None, min_length=3, max_length=50)
    name: str | None = Field(default=None, min_length=1, max_length=150)
    description: str | None = None
    type: CouponType | None = None
    value: Decimal | None = Field(default=None, ge=0)
    min_order_amount: Decimal | None = Field(default=None, ge=0)
    max_discount_amount: Decimal | None = Field(default=None, ge=0)
    usage_limit: int | None = Field(default=None, ge=1)
    usage_limit_per_user: int | None = Field(default=None, ge=1)
    start_date: datetime | None = None
    end_date: datetime | None = None
    is_active: bool | None = None
    first_order_only: bool | None = None
    applicable_products: list[int] | None = None
    applicable_categories: list[int] | None = None
    excluded_products: list[int] | None = None
    excluded_categories: list[int] | None = None
    applicable_user_groups: list[int] | None = None


class ToggleStatusRequest(BaseModel):
    is_active: bool


class OrderCouponRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: int
    coupon_id: int
    user_coupon_id: int | None = None
    coupon_code: str
    discount_type: CouponType
    discount_value: Decimal
    discount_amount: Decimal
    order_subtotal: Decimal
    shipping_fee: Decimal
    shipping_discount: Decimal
    applied_products: list[AppliedProduct] | None = None
    conditions_met: ConditionsMet | None = None
    created_at: datetime


class UserCouponGrant(BaseModel):
    user_id: int
    coupon_id: int
    personal_code: str | None = Field(default=None, max_length=50)
    gift_message: str | None = None
    max_usage: int = Field(default=1, ge=1)
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    source: UserCouponSource = UserCouponSource.admin_gift


class UserCouponRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    coupon_id: int
    personal_code: str | None = None
    gift_message: str | None = None
    used_count: int
    max_usage: int
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    is_active: bool
    source: UserCouponSource
    first_used_at: datetime | None = None
    last_used_at: datetime | None = None
    created_at: datetime
    coupon: CouponSummary | None = None


class PaginationMeta(BaseModel):
    total_items: int
    current_page: int
    items_per_page: int
    total_pages: int


class CouponPage(BaseModel):
    items: list[CouponRead]
    meta: PaginationMeta


class UserCouponPage(BaseModel):
    items: list[UserCouponRead]
    meta: PaginationMeta


class CouponValidateRequest(_CamelModel):
    code: str = Field(min_length=1, max_length=50)
    user_id: int | None = None
    subtotal: Decimal = Field(ge=0)
    shipping_fee: Decimal = Field(default=Decimal("0.00"), ge=0)
    items: list[OrderItemRef] = Field(min_length=1)


class CouponValidateResponse(BaseModel):
    coupon: CouponSummary
    discount: DiscountResult
