from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.config import settings
from storefront.core.errors import (
    CouponAlreadyGranted,
    CouponCodeExists,
    CouponInUse,
    CouponNotFound,
    InputInvalid,
    UserNotFound,
)
from storefront.models.coupons import Coupon, CouponType, OrderCoupon, UserCoupon
from storefront.models.user import User
from storefront.schemas.coupons import CouponCreate, CouponUpdate, PaginationMeta, UserCouponGrant

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _page_bounds(page: int, limit: int | None) -> tuple[int, int]:
    page = max(int(page or 1), 1)
    limit = int(limit or settings.default_page_size)
    limit = min(max(limit, 1), settings.max_page_size)
    return page, limit


def _meta(total: int, page: int, limit: int) -> PaginationMeta:
    return PaginationMeta(
        total_items=total,
        current_page=page,
        items_per_page=limit,
        total_pages=math.ceil(total / limit) if total else 0,
    )


def _check_value(coupon_type: CouponType, value: Decimal | None) -> Decimal:
    if coupon_type == CouponType.free_shipping:
        return Decimal("0.00")
    value = Decimal(value or 0)
    if value < 0:
        raise InputInvalid("Coupon value must be non-negative")
    if coupon_type == CouponType.percent and value > 100:
        raise InputInvalid("Percentage value must be between 0 and 100")
    return value


_NON_NULLABLE_FIELDS = ("code", "name", "type", "value", "is_active", "first_order_only")


def _check_dates(start_date: datetime | None, end_date: datetime | None) -> None:
    start_date, end_date = _as_utc(start_date), _as_utc(end_date)
    if start_date is not None and end_date is not None and start_date > end_date:
        raise InputInvalid("start_date must not be after end_date")


async def _ensure_code_unique(session: AsyncSession, code: str, exclude_id: int | None = None) -> None:
    stmt = select(Coupon.id).where(Coupon.code == code)
    if exclude_id is not None:
        stmt = stmt.where(Coupon.id != exclude_id)
    if (await session.execute(stmt)).first() is not None:
        raise CouponCodeExists()


async def create_coupon(session: AsyncSession, payload: CouponCreate, *, created_by: int | None = None) -> Coupon:
    code = _normalize_code(payload.code)
    if not code:
        raise InputInvalid("Coupon code is required")
    await _ensure_code_unique(session, code)
    _check_dates(payload.start_date, payload.end_date)
    value = _check_value(payload.type, payload.value)

    data = payload.model_dump()
    data.update(code=code, value=value, created_by=created_by)
    coupon = Coupon(**data)
    session.add(coupon)
    await session.commit()
    await session.refresh(coupon)
    logger.info("coupon_created", extra={"coupon_id": coupon.id, "coupon_code": coupon.code, "created_by": created_by})
    return coupon


async def list_coupons(
    session: AsyncSession,
    *,
    page: int = 1,
    limit: int | None = None,
    is_active: bool | None = None,
    type: CouponType | None = None,
    code: str | None = None,
) -> tuple[list[Coupon], PaginationMeta]:
    page, limit = _page_bounds(page, limit)
    filters: list[Any] = []
    if is_active is not None:
        filters.append(Coupon.is_active.is_(is_active))
    if type is not None:
        filters.append(Coupon.type == type)
    cleaned = _normalize_code(code or "")
    if cleaned:
        filters.append(func.upper(Coupon.code).like(f"%{cleaned}%"))

    total = int((await session.execute(select(func.count()).select_from(Coupon).where(*filters))).scalar_one())
    rows = (
        (
            await session.execute(
                select(Coupon)
                .where(*filters)
                .order_by(Coupon.created_at.desc(), Coupon.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
        )
        .scalars()
        .all()
    )
    return list(rows), _meta(total, page, limit)


async def get_coupon(session: AsyncSession, coupon_id: int) -> Coupon:
    coupon = await session.get(Coupon, coupon_id)
    if coupon is None:
        raise CouponNotFound("Coupon not found")
    return coupon


async def update_coupon(session: AsyncSession, coupon_id: int, payload: CouponUpdate) -> Coupon:
    coupon = await get_coupon(session, coupon_id)
    data = payload.model_dump(exclude_unset=True)
    nulls = sorted(field for field in _NON_NULLABLE_FIELDS if field in data and data[field] is None)
    if nulls:
        raise InputInvalid("Fields cannot be null", details={"fields": nulls})

    if "code" in data:
        code = _normalize_code(data["code"] or "")
        if not code:
            raise InputInvalid("Coupon code is required")
        if code != coupon.code:
            await _ensure_code_unique(session, code, exclude_id=coupon.id)
        data["code"] = code

    coupon_type = data.get("type") or coupon.type
    if "type" in data or "value" in data:
        data["value"] = _check_value(coupon_type, data.get("value", coupon.value))
    _check_dates(data.get("start_date", coupon.start_date), data.get("end_date", coupon.end_date))
    usage_limit = data.get("usage_limit")
    if usage_limit is not None and usage_limit < coupon.used_count:
        raise InputInvalid(
            "usage_limit cannot be lower than the number of uses so far",
            details={"used_count": coupon.used_count, "usage_limit": usage_limit},
        )

    for field, value in data.items():
        setattr(coupon, field, value)
    session.add(coupon)
    await session.commit()
    await session.refresh(coupon)
    logger.info("coupon_updated", extra={"coupon_id": coupon.id, "fields": sorted(data)})
    return coupon


async def set_coupon_active(session: AsyncSession, coupon_id: int, is_active: bool) -> Coupon:
    coupon = await get_coupon(session, coupon_id)
    coupon.is_active = bool(is_active)
    session.add(coupon)
    await session.commit()
    await session.refresh(coupon)
    logger.info("coupon_status_changed", extra={"coupon_id": coupon.id, "is_active": coupon.is_active})
    return coupon


async def delete_coupon(session: AsyncSession, coupon_id: int) -> None:
    coupon = await get_coupon(session, coupon_id)
    used = int(
        (
            await session.execute(select(func.count()).select_from(OrderCoupon).where(OrderCoupon.coupon_id == coupon.id))
        ).scalar_one()
    )
    if used > 0:
        raise CouponInUse()
    await session.delete(coupon)
    await session.commit()
    logger.info("coupon_deleted", extra={"coupon_id": coupon_id})


async def grant_coupon_to_user(session: AsyncSession, payload: UserCouponGrant) -> UserCoupon:
    coupon = await get_coupon(session, payload.coupon_id)
    if await session.get(User, payload.user_id) is None:
        raise UserNotFound()
    existing = (
        await session.execute(
            select(UserCoupon.id).where(UserCoupon.user_id == payload.user_id, UserCoupon.coupon_id == coupon.id)
        )
    ).first()
    if existing is not None:
        raise CouponAlreadyGranted()
    _check_dates(payload.valid_from, payload.valid_until)

    personal_code = _normalize_code(payload.personal_code or "") or None
    user_coupon = UserCoupon(
        user_id=payload.user_id,
        coupon_id=coupon.id,
        personal_code=personal_code,
        gift_message=payload.gift_message,
        max_usage=payload.max_usage,
        valid_from=payload.valid_from,
        valid_until=payload.valid_until,
        source=payload.source,
    )
    session.add(user_coupon)
    await session.commit()
    await session.refresh(user_coupon)
    await session.refresh(user_coupon, attribute_names=["coupon"])
    logger.info(
        "coupon_granted",
        extra={"coupon_id": coupon.id, "user_id": payload.user_id, "source": payload.source.value},
    )
    return user_coupon


async def list_user_coupons(
    session: AsyncSession,
    *,
    user_id: int,
    page: int = 1,
    limit: int | None = None,
    available_only: bool = False,
) -> tuple[list[UserCoupon], PaginationMeta]:
    page, limit = _page_bounds(page, limit)
    filters: list[Any] = [UserCoupon.user_id == user_id]
    stmt = select(UserCoupon)
    count_stmt = select(func.count()).select_from(UserCoupon)
    if available_only:
        now = _now()
        filters.extend(
            [
                UserCoupon.is_active.is_(True),
                UserCoupon.used_count < UserCoupon.max_usage,
                or_(UserCoupon.valid_from.is_(None), UserCoupon.valid_from <= now),
                or_(UserCoupon.valid_until.is_(None), UserCoupon.valid_until >= now),
                Coupon.is_active.is_(True),
            ]
        )
        stmt = stmt.join(Coupon, Coupon.id == UserCoupon.coupon_id)
        count_stmt = count_stmt.join(Coupon, Coupon.id == UserCoupon.coupon_id)

    total = int((await session.execute(count_stmt.where(*filters))).scalar_one())
    rows = (
        (
            await session.execute(
                stmt.where(*filters)
                .order_by(UserCoupon.created_at.desc(), UserCoupon.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
        )
        .scalars()
        .all()
    )
    return list(rows), _meta(total, page, limit)
