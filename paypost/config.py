# paypost/config.py
import os
from typing import Optional

from pydantic import BaseModel


def _int_env(name, default):
    raw = os.getenv(name)
    return int(raw) if raw else default


class Settings(BaseModel):
    database_url: Optional[str] = None
    pool_min: int = 1
    pool_max: int = 10

    vk_access_token: Optional[str] = None
    vk_api_version: str = "5.131"
    vk_api_url: str = "https://api.vk.com/method"

    ord_type: str = "vk"
    ord_token: Optional[str] = None
    ord_api_url: str = "https://api.vk.com/method/ads.registerAd"

    http_timeout: float = 15.0

    payment_type: str = "vk_pay"  # 'vk_pay' | 'yookassa' | 'tinkoff' | ...
    frontend_url: str = "http://localhost:3000"

    uploads_dir: str = "./uploads"
    retention_days: int = 30
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        vk_token = os.getenv("VK_ACCESS_TOKEN")
        return cls(
            database_url=os.getenv("DATABASE_URL"),
            pool_min=_int_env("APP_POOL_MIN", 1),
            pool_max=_int_env("APP_POOL_MAX", 10),
            vk_access_token=vk_token,
            vk_api_version=os.getenv("VK_API_VERSION", "5.131"),
            vk_api_url=os.getenv("VK_API_URL", "https://api.vk.com/method"),
            ord_type=os.getenv("ORD_TYPE", "vk"),
            # VK ORD accepts the main API token when no dedicated one is set
            ord_token=os.getenv("VK_ORD_TOKEN") or vk_token,
            ord_api_url=os.getenv("ORD_API_URL", "https://api.vk.com/method/ads.registerAd"),
            http_timeout=float(os.getenv("HTTP_TIMEOUT", "15")),
            payment_type=os.getenv("PAYMENT_TYPE", "vk_pay"),
            frontend_url=os.getenv("FRONTEND_URL", "http://localhost:3000"),
            uploads_dir=os.getenv("UPLOADS_DIR", "./uploads"),
            retention_days=_int_env("RETENTION_DAYS", 30),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
