import argparse
import asyncio
from decimal import Decimal, InvalidOperation

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from storefront.core.errors import CouponError
from storefront.db.base import Base
from storefront.db.session import SessionLocal, engine as default_engine
from storefront.models.coupons import CouponType
from storefront.schemas.coupons import CouponCreate
from storefront.services import coupon_admin
from storefront.services import coupons as coupons_service

import storefront.models  # noqa: F401


def _decimal(raw: str) -> Decimal:
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"Not a number: {raw}") from exc


async def init_db(engine: AsyncEngine = default_engine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    print("Database tables created")


async def create_coupon(payload: CouponCreate, *, session_factory: async_sessionmaker = SessionLocal) -> int:
    async with session_factory() as session:
        try:
            coupon = await coupon_admin.create_coupon(session, payload)
        except CouponError as exc:
            raise SystemExit(f"{exc.code}: {exc.message}") from exc
        print(f"Coupon created: {coupon.code} ({coupon.type.value}) id={coupon.id}")
        return coupon.id


async def disable_coupon(code: str, *, session_factory: async_sessionmaker = SessionLocal) -> None:
    async with session_factory() as session:
        coupon = await coupons_service.get_coupon_by_code(session, code=code, active_only=False)
        if coupon is None:
            raise SystemExit(f"Coupon not found: {code.strip().upper()}")
        await coupon_admin.set_coupon_active(session, coupon.id, False)
        print(f"Coupon disabled: {coupon.code}")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Storefront coupon utilities")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("init-db", help="Create all tables (local/dev; use alembic in production)")

    create = subparsers.add_parser("create-coupon", help="Create a coupon")
    create.add_argument("--code", required=True)
    create.add_argument("--name", required=True)
    create.add_argument("--type", required=True, choices=[t.value for t in CouponType])
    create.add_argument("--value", type=_decimal, default=Decimal("0"))
    create.add_argument("--usage-limit", type=int, default=None)
    create.add_argument("--min-order-amount", type=_decimal, default=None)
    create.add_argument("--max-discount-amount", type=_decimal, default=None)
    create.add_argument("--per-user", type=int, default=1, help="Uses allowed per user")

    disable = subparsers.add_parser("disable-coupon", help="Soft-disable a coupon by code")
    disable.add_argument("--code", required=True)
    return parser


def _run_cli_command(args: argparse.Namespace) -> bool:
    if args.command == "init-db":
        asyncio.run(init_db())
        return True

    if args.command == "create-coupon":
        payload = CouponCreate(
            code=args.code,
            name=args.name,
            type=CouponType(args.type),
            value=args.value,
            usage_limit=args.usage_limit,
            min_order_amount=args.min_order_amount,
            max_discount_amount=args.max_discount_amount,
            usage_limit_per_user=args.per_user,
        )
        asyncio.run(create_coupon(payload))
        return True

    if args.command == "disable-coupon":
        asyncio.run(disable_coupon(args.code))
        return True

    return False


def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if not _run_cli_command(args):
        parser.print_help()


if __name__ == "__main__":
    main()
