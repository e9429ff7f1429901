from fastapi import APIRouter

from storefront.api.v1 import checkout
from storefront.api.v1 import coupons

api_router = APIRouter()

api_router.include_router(coupons.router)
api_router.include_router(checkout.router)


@api_router.get("/health", tags=["health"])
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}
