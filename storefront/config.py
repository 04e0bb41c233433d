"""Storefront application settings."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv

from .common.config import SmtpConfig, resolve_smtp_configs


DEFAULT_GATEWAY_IPS = ("185.240.29.227",)
DEFAULT_ORDER_NOTIFICATION_EMAIL = "orders@puretide.ca"
DEFAULT_ALERT_EMAIL = "info@puretide.ca"


def _flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() == "true"


def _int(value: Optional[str], default: int) -> int:
    try:
        return int(value) if value not in (None, "") else default
    except ValueError:
        return default


def _float(value: Optional[str], default: float) -> float:
    try:
        return float(value) if value not in (None, "") else default
    except ValueError:
        return default


@dataclass(frozen=True)
class GatewayConfig:
    """Hosted card gateway credentials and callback policy."""

    site_id: Optional[str] = None
    encryption_key: Optional[str] = None
    postback_url: Optional[str] = None
    tcomplete_base: Optional[str] = None
    sandbox_site_id: Optional[str] = None
    use_sandbox: bool = False
    allowed_ips: Tuple[str, ...] = DEFAULT_GATEWAY_IPS
    hmac_secret: Optional[str] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.site_id and self.encryption_key and self.postback_url and self.tcomplete_base)

    @property
    def effective_site_id(self) -> Optional[str]:
        if self.use_sandbox and self.sandbox_site_id:
            return self.sandbox_site_id
        return self.site_id


@dataclass(frozen=True)
class CatalogConfig:
    service_url: Optional[str] = None
    api_token: Optional[str] = None
    timeout_seconds: float = 10.0


@dataclass(frozen=True)
class TaskTrackerConfig:
    api_token: Optional[str] = None
    orders_folder_id: Optional[str] = None
    stock_alerts_folder_id: Optional[str] = None
    timeout_seconds: float = 10.0

    @property
    def is_configured(self) -> bool:
        return bool(self.api_token and self.stock_alerts_folder_id)


@dataclass
class StorefrontConfig:
    """All settings for one storefront process, read once at startup."""

    secret_key: str
    database_url: str
    data_dir: Path
    log_level: str = "INFO"
    store_name: str = "Pure Tide"
    dashboard_secret: Optional[str] = None
    orders_api_key: Optional[str] = None
    order_notification_email: str = DEFAULT_ORDER_NOTIFICATION_EMAIL
    contact_email: str = DEFAULT_ALERT_EMAIL
    low_stock_email: str = DEFAULT_ALERT_EMAIL
    low_stock_threshold: int = 5
    low_stock_cooldown_minutes: int = 360
    disable_shipping_fee: bool = False
    smtp_timeout_seconds: float = 15.0
    trusted_proxy_hops: int = 1
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    catalog: CatalogConfig = field(default_factory=CatalogConfig)
    tasks: TaskTrackerConfig = field(default_factory=TaskTrackerConfig)
    smtp: Dict[str, Optional[SmtpConfig]] = field(default_factory=dict)

    @property
    def legacy_orders_file(self) -> Path:
        return self.data_dir / "orders.json"

    @property
    def catalog_dir(self) -> Path:
        return self.data_dir / "catalog"

    def smtp_for(self, category: str) -> Optional[SmtpConfig]:
        return self.smtp.get(category.upper())

    @classmethod
    def load(cls, env_file: Optional[Path] = None) -> "StorefrontConfig":
        """Build settings from the environment (and .env), ensuring the data dir exists."""

        root = Path(__file__).resolve().parent.parent
        load_dotenv(env_file or root / ".env")
        env = os.environ

        data_dir = Path(env.get("STOREFRONT_DATA_DIR") or root / "data")
        data_dir.mkdir(parents=True, exist_ok=True)
        database_url = env.get("DATABASE_URL") or f"sqlite:///{data_dir / 'orders.sqlite'}"

        allowed_ips = tuple(
            ip.strip() for ip in (env.get("DIGIPAY_ALLOWED_IPS") or "").split(",") if ip.strip()
        ) or DEFAULT_GATEWAY_IPS

        gateway = GatewayConfig(
            site_id=env.get("DIGIPAY_SITE_ID") or None,
            encryption_key=env.get("DIGIPAY_ENCRYPTION_KEY") or None,
            postback_url=env.get("DIGIPAY_POSTBACK_URL") or None,
            tcomplete_base=env.get("DIGIPAY_TCOMPLETE_BASE") or None,
            sandbox_site_id=env.get("DIGIPAY_SANDBOX_SITE_ID") or None,
            use_sandbox=_flag(env.get("DIGIPAY_USE_SANDBOX")),
            allowed_ips=allowed_ips,
            hmac_secret=env.get("DIGIPAY_POSTBACK_HMAC_SECRET") or None,
        )
        catalog = CatalogConfig(
            service_url=env.get("CATALOG_SERVICE_URL") or None,
            api_token=env.get("CATALOG_SERVICE_TOKEN") or None,
            timeout_seconds=_float(env.get("CATALOG_TIMEOUT_SECONDS"), 10.0),
        )
        tasks = TaskTrackerConfig(
            api_token=env.get("WRIKE_API_TOKEN") or None,
            orders_folder_id=env.get("WRIKE_ORDERS_FOLDER_ID") or None,
            stock_alerts_folder_id=env.get("WRIKE_STOCK_ALERTS_FOLDER_ID") or None,
        )

        return cls(
            secret_key=env.get("SECRET_KEY", "dev_secret"),
            database_url=database_url,
            data_dir=data_dir,
            log_level=env.get("LOG_LEVEL", "INFO"),
            store_name=env.get("STORE_NAME", "Pure Tide"),
            dashboard_secret=(env.get("DASHBOARD_SECRET") or "").strip() or None,
            orders_api_key=env.get("ORDERS_API_KEY") or None,
            order_notification_email=env.get("ORDER_NOTIFICATION_EMAIL") or DEFAULT_ORDER_NOTIFICATION_EMAIL,
            contact_email=env.get("CONTACT_EMAIL") or DEFAULT_ALERT_EMAIL,
            low_stock_email=env.get("LOW_STOCK_EMAIL") or DEFAULT_ALERT_EMAIL,
            low_stock_threshold=_int(env.get("LOW_STOCK_THRESHOLD"), 5),
            low_stock_cooldown_minutes=_int(env.get("LOW_STOCK_ALERT_COOLDOWN_MINUTES"), 360),
            disable_shipping_fee=_flag(env.get("DISABLE_SHIPPING_FEE")),
            smtp_timeout_seconds=_float(env.get("SMTP_TIMEOUT_SECONDS"), 15.0),
            trusted_proxy_hops=max(0, _int(env.get("TRUSTED_PROXY_HOPS"), 1)),
            gateway=gateway,
            catalog=catalog,
            tasks=tasks,
            smtp=resolve_smtp_configs(env),
        )
