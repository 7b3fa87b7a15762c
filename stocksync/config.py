from enum import Enum
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SyncMode(str, Enum):
    REMOTE_FIRST = "remote_first"
    LOCAL_FIRST = "local_first"


class SyncScope(str, Enum):
    PRICE = "price"
    INVENTORY = "inventory"
    BOTH = "both"

    @property
    def includes_price(self) -> bool:
        return self in (SyncScope.PRICE, SyncScope.BOTH)

    @property
    def includes_inventory(self) -> bool:
        return self in (SyncScope.INVENTORY, SyncScope.BOTH)


class Transport(str, Enum):
    GRAPHQL = "graphql"
    REST = "rest"


_MODE_ALIASES = {
    "shopify_first": SyncMode.REMOTE_FIRST.value,
    "remote-first": SyncMode.REMOTE_FIRST.value,
    "local-first": SyncMode.LOCAL_FIRST.value,
}


class SyncSettings(BaseSettings):
    shopify_shop_name: str
    shopify_access_token: str
    shopify_api_version: str = "2025-04"
    shopify_transport: Transport = Transport.GRAPHQL
    shopify_rate_limit: float = Field(default=2.0, gt=0)
    shopify_page_size: int = Field(default=100, ge=1, le=250)
    shopify_max_pages: int = Field(default=500, ge=1)
    page_delay_seconds: float = Field(default=0.25, ge=0)
    throttle_cooldown_seconds: float = Field(default=5.0, ge=0)
    page_retry_limit: int = Field(default=3, ge=0)

    data_api_url: str
    inventory_api_url: str
    location_id: str | None = None
    discount_csv_path: str | None = "discounts.csv"

    sync_mode: SyncMode = SyncMode.REMOTE_FIRST
    sync_type: SyncScope = SyncScope.BOTH

    max_retries: int = Field(default=3, ge=0)
    retry_base_delay_seconds: float = Field(default=1.0, ge=0)
    retry_jitter_seconds: float = Field(default=1.0, ge=0)
    api_timeout: float = Field(default=60.0, gt=0)
    local_api_timeout: float = Field(default=30.0, gt=0)
    shutdown_grace_seconds: float = Field(default=30.0, ge=0)

    sku_pad_width: int = Field(default=5, ge=1)
    local_sku_field: str = "CodigoProducto"
    local_price_field: str = "Venta1"
    local_name_field: str = "Descripcion"
    local_initial_qty_field: str = "CantidadInicial"
    local_received_qty_field: str = "CantidadEntradas"
    local_shipped_qty_field: str = "CantidadSalidas"
    local_date_field: str = "Fecha"

    log_level: str = "INFO"
    log_file_path: str | None = "logs/shopify-sync.log"
    log_max_size: int = Field(default=100, ge=1, description="Log file size bound in MB")

    model_config = SettingsConfigDict(env_file=".env", env_prefix="", extra="ignore")

    @field_validator("sync_mode", mode="before")
    @classmethod
    def _accept_mode_aliases(cls, value: object) -> object:
        if isinstance(value, str):
            lowered = value.strip().lower()
            return _MODE_ALIASES.get(lowered, lowered)
        return value

    @field_validator("sync_type", "shopify_transport", mode="before")
    @classmethod
    def _lowercase(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("location_id", "discount_csv_path", "log_file_path", mode="before")
    @classmethod
    def _blank_to_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def shop_domain(self) -> str:
        domain = self.shopify_shop_name.replace("https://", "").replace("http://", "").rstrip("/")
        if not domain.endswith(".myshopify.com"):
            domain = f"{domain}.myshopify.com"
        return domain

    @property
    def admin_base_url(self) -> str:
        return f"https://{self.shop_domain}/admin/api/{self.shopify_api_version}"


@lru_cache
def get_settings() -> SyncSettings:
    return SyncSettings()
