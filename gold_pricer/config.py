from __future__ import annotations

from typing import Literal

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    SHOPIFY_APP_API_KEY: str
    SHOPIFY_APP_API_SECRET: str
    SHOPIFY_APP_SCOPES: str = "read_products,write_products"
    SHOPIFY_APP_BASE_URL: AnyHttpUrl
    GOLD_SYNC_INTERNAL_API_TOKEN: str
    GOLD_SYNC_DB_URL: str = "sqlite:///./gold_price_sync.db"
    SHOPIFY_ADMIN_API_VERSION: str = "2025-01"
    SHOPIFY_REQUEST_TIMEOUT_SECONDS: float = 20.0

    GOLD_MULTIPLIER_RULES_PATH: str | None = None
    GOLD_MATCHING_STRATEGY: Literal["name", "metafield"] = "name"

    CATALOG_PRODUCT_PAGE_SIZE: int = Field(default=50, ge=1, le=250)
    CATALOG_VARIANT_PAGE_SIZE: int = Field(default=10, ge=1, le=250)
    CATALOG_MAX_PAGES: int = Field(default=1, ge=1)
    PRICE_UPDATE_MAX_CONCURRENCY: int | None = Field(default=None, ge=1)

    LOG_LEVEL: str = "INFO"

    @field_validator("SHOPIFY_APP_SCOPES")
    @classmethod
    def validate_scopes(cls, value: str) -> str:
        scopes = [scope.strip() for scope in value.split(",") if scope.strip()]
        if not scopes:
            raise ValueError("SHOPIFY_APP_SCOPES must include at least one scope")
        missing = {"read_products", "write_products"} - set(scopes)
        if missing:
            raise ValueError(f"SHOPIFY_APP_SCOPES is missing required scopes: {', '.join(sorted(missing))}")
        return ",".join(scopes)

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unsupported LOG_LEVEL: {value}")
        return normalized

    @property
    def app_base_url(self) -> str:
        return str(self.SHOPIFY_APP_BASE_URL).rstrip("/")

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
