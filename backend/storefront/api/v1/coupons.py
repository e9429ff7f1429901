from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.dependencies import require_admin_token
from storefront.db.session import get_session
from storefront.models.coupons import CouponType
from storefront.schemas.coupons import (
    CouponCreate,
    CouponPage,
    CouponRead,
    CouponSummary,
    CouponUpdate,
    CouponValidateRequest,
    CouponValidateResponse,
    DiscountResult,
    OrderContext,
    ToggleStatusRequest,
    UserCouponGrant,
    UserCouponPage,
    UserCouponRead,
)
from storefront.services import coupon_admin as admin_service
from storefront.services import coupons as coupons_service


router = APIRouter(prefix="/coupons", tags=["coupons"])


@router.post("/validate", response_model=CouponValidateResponse)
async def validate_coupon(
    payload: CouponValidateRequest,
    session: AsyncSession = Depends(get_session),
) -> CouponValidateResponse:
    context = OrderContext(
        user_id=payload.user_id,
        subtotal=payload.subtotal,
        shipping_fee=payload.shipping_fee,
        items=payload.items,
    )
    coupon = await coupons_service.validate_coupon(
        session, code=payload.code, user_id=payload.user_id, context=context
    )
    discount = coupons_service.calculate_discount(coupon, context)
    return CouponValidateResponse(coupon=CouponSummary.model_validate(coupon), discount=discount)


@router.post("/preview", response_model=DiscountResult)
async def preview_coupon(
    payload: CouponValidateRequest,
    session: AsyncSession = Depends(get_session),
) -> DiscountResult:
    context = OrderContext(
        user_id=payload.user_id,
        subtotal=payload.subtotal,
        shipping_fee=payload.shipping_fee,
        items=payload.items,
    )
    return await coupons_service.preview_discount(session, code=payload.code, context=context)


@router.get("/available", response_model=list[CouponRead])
async def available_coupons(
    user_id: int = Query(...),
    session: AsyncSession = Depends(get_session),
) -> list[CouponRead]:
    coupons = await coupons_service.list_valid_coupons_for_cart(session, user_id=user_id)
    return [CouponRead.model_validate(c) for c in coupons]


@router.post(
    "",
    response_model=CouponRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin_token)],
)
async def create_coupon(payload: CouponCreate, session: AsyncSession = Depends(get_session)) -> CouponRead:
    coupon = await admin_service.create_coupon(session, payload)
    return CouponRead.model_validate(coupon)


@router.get("", response_model=CouponPage, dependencies=[Depends(require_admin_token)])
async def list_coupons(
    session: AsyncSession = Depends(get_session),
    page: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1, le=100),
    is_active: bool | None = Query(default=None),
    type: CouponType | None = Query(default=None),
    code: str | None = Query(default=None, max_length=50),
) -> CouponPage:
    items, meta = await admin_service.list_coupons(
        session, page=page, limit=limit, is_active=is_active, type=type, code=code
    )
    return CouponPage(items=[CouponRead.model_validate(c) for c in items], meta=meta)


@router.post(
    "/grants",
    response_model=UserCouponRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin_token)],
)
async def grant_coupon(payload: UserCouponGrant, session: AsyncSession = Depends(get_session)) -> UserCouponRead:
    user_coupon = await admin_service.grant_coupon_to_user(session, payload)
    return UserCouponRead.model_validate(user_coupon)


@router.get("/users/{user_id}", response_model=UserCouponPage, dependencies=[Depends(require_admin_token)])
async def list_user_coupons(
    user_id: int,
    session: AsyncSession = Depends(get_session),
    page: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1, le=100),
    available_only: bool = Query(default=False),
) -> UserCouponPage:
    items, meta = await admin_service.list_user_coupons(
        session, user_id=user_id, page=page, limit=limit, available_only=available_only
    )
    return UserCouponPage(items=[UserCouponRead.model_validate(uc) for uc in items], meta=meta)


@router.get("/{coupon_id}", response_model=CouponRead, dependencies=[Depends(require_admin_token)])
async def get_coupon(coupon_id: int, session: AsyncSession = Depends(get_session)) -> CouponRead:
    return CouponRead.model_validate(await admin_service.get_coupon(session, coupon_id))


@router.put("/{coupon_id}", response_model=CouponRead, dependencies=[Depends(require_admin_token)])
async def update_coupon(
    coupon_id: int, payload: CouponUpdate, session: AsyncSession = Depends(get_session)
) -> CouponRead:
    coupon = await admin_service.update_coupon(session, coupon_id, payload)
    return CouponRead.model_validate(coupon)


@router.patch("/{coupon_id}/toggle-status", response_model=CouponRead, dependencies=[Depends(require_admin_token)])
async def toggle_coupon_status(
    coupon_id: int, payload: ToggleStatusRequest, session: AsyncSession = Depends(get_session)
) -> CouponRead:
    coupon = await admin_service.set_coupon_active(session, coupon_id, payload.is_active)
    return CouponRead.model_validate(coupon)


@router.delete("/{coupon_id}", status_code=status.HTTP_204_NO_CONTENT, dependencies=[Depends(require_admin_token)])
async def delete_coupon(coupon_id: int, session: AsyncSession = Depends(get_session)) -> Response:
    await admin_service.delete_coupon(session, coupon_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
