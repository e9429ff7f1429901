import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from storefront.api.v1 import api_router
from storefront.core.config import settings
from storefront.core.errors import CouponError
from storefront.core.logging_config import configure_logging
from storefront.middleware import RequestLoggingMiddleware
from storefront.schemas.error import ErrorResponse

logger = logging.getLogger(__name__)


def get_application() -> FastAPI:
    configure_logging(settings.log_json, settings.log_level)
    tags_metadata = [
        {"name": "coupons", "description": "Coupon validation, discovery and administration"},
        {"name": "checkout", "description": "Order placement"},
    ]
    app = FastAPI(title=settings.app_name, version=settings.app_version, openapi_tags=tags_metadata)
    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(api_router, prefix="/api/v1")

    @app.exception_handler(CouponError)
    async def coupon_error_handler(request: Request, exc: CouponError):
        if exc.status_code >= 500:
            logger.error("coupon_error", extra={"code": exc.code, "detail": exc.message})
        payload = ErrorResponse(detail=exc.message, code=exc.code, errors=exc.details)
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(payload.model_dump(exclude_none=True)))

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        payload = ErrorResponse(detail=exc.detail, code=None)
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(payload.model_dump()))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = jsonable_encoder(exc.errors())
        payload = ErrorResponse(detail=errors, code="validation_error")
        return JSONResponse(status_code=422, content=payload.model_dump())

    return app


app = get_application()
