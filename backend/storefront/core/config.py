from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables or a .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)

    app_name: str = "Storefront Coupons API"
    app_version: str = "0.1.0"
    environment: str = "local"

    database_url: str = "sqlite+aiosqlite:///./storefront.db"
    log_json: bool = False
    log_level: str = "INFO"

    admin_api_token: str = "dev-admin-token"

    coupon_enforce_first_order_only: bool = True
    money_rounding: Literal["half_up", "half_even", "up", "down"] = "half_up"

    default_page_size: int = 10
    max_page_size: int = 100


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
