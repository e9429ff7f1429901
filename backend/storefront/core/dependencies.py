import secrets

from fastapi import Header, HTTPException, status

from storefront.core.config import settings


async def require_admin_token(x_admin_token: str | None = Header(default=None, alias="X-Admin-Token")) -> None:
    if not x_admin_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Admin token required")
    if not secrets.compare_digest(x_admin_token, settings.admin_api_token or ""):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid admin token")
