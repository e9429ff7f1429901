from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.db.session import get_session
from storefront.schemas.checkout import CheckoutRequest, OrderRead
from storefront.services import checkout as checkout_service


router = APIRouter(prefix="/checkout", tags=["checkout"])


@router.post("", response_model=OrderRead, status_code=status.HTTP_201_CREATED)
async def place_order(payload: CheckoutRequest, session: AsyncSession = Depends(get_session)) -> OrderRead:
    order = await checkout_service.place_order(
        session,
        user_id=payload.user_id,
        shipping_fee=payload.shipping_fee,
        coupon_code=payload.coupon_code,
        note=payload.note,
    )
    return OrderRead.model_validate(order)
