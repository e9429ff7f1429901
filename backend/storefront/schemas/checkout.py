from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from storefront.models.order import OrderStatus


class CheckoutRequest(BaseModel):
    user_id: int
    shipping_fee: Decimal = Field(default=Decimal("0.00"), ge=0)
    coupon_code: str | None = Field(default=None, max_length=50)
    note: str | None = Field(default=None, max_length=1000)


class OrderItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: int
    quantity: int
    unit_price: Decimal
    line_total: Decimal


class OrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    status: OrderStatus
    subtotal: Decimal
    shipping_fee: Decimal
    discount_amount: Decimal
    shipping_discount: Decimal
    total_amount: Decimal
    note: str | None = None
    created_at: datetime
    items: list[OrderItemRead] = []
