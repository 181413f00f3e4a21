# Central place for all configurable settings. We use Pydantic's
# BaseSettings so values can be read from env vars or a .env file.
# This keeps deployment flexible without hardcoding secrets.

import json
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def safe_json_loads(value):
    try:
        return json.loads(value)
    except Exception:
        return value


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_json_loads=safe_json_loads,
    )

    # Core DB connection string, like sqlite:///./app.db or Postgres URL.
    DATABASE_URL: str

    # Secret key used to salt IP / user agent hashes per shop.
    # Changing it breaks fingerprint matching for existing clicks.
    SECRET_KEY: str

    # Toggle SQLAlchemy echo logs. Useful for debugging queries locally.
    DB_ECHO: bool = False

    # Shared secret Shopify signs order webhooks with. The app's API secret
    # is accepted as a fallback because app-level webhooks are signed with it.
    SHOPIFY_WEBHOOK_SECRET: Optional[str] = None
    SHOPIFY_API_SECRET: Optional[str] = None

    # Hostnames of the merchant's own storefront. Affiliate webhooks that
    # point here are misconfigured and never dispatched.
    STORE_DOMAINS: List[str] = Field(default_factory=list)

    # Click tracking
    CLICK_DEDUPE_WINDOW_SECONDS: int = Field(default=300, gt=0)
    CLICK_RETENTION_DAYS: int = Field(default=365, gt=0)
    BOT_ALLOWED_MARKERS: List[str] = Field(default_factory=lambda: ["shopify"])

    # Attribution
    DEFAULT_ATTRIBUTION_WINDOW_DAYS: int = Field(default=90, gt=0)
    FINGERPRINT_LOOKBACK_DAYS: int = Field(default=90, gt=0)
    ORGANIC_SEARCH_DOMAINS: List[str] = Field(
        default_factory=lambda: [
            "google.com",
            "google.co.uk",
            "google.ca",
            "google.com.au",
            "bing.com",
            "yahoo.com",
            "duckduckgo.com",
            "yandex.com",
            "baidu.com",
            "ask.com",
        ]
    )

    # Commissions
    DEFAULT_PAYOUT_TERMS_DAYS: int = Field(default=30, ge=0)
    DEFAULT_CURRENCY: str = "USD"
    # $0 orders are commissioned even when Shopify leaves them "pending".
    # Used for sandbox / test orders; switch off in fraud-sensitive shops.
    COMMISSION_ZERO_TOTAL_ORDERS: bool = True

    # Fraud heuristics
    FRAUD_SELF_REFERRAL_THRESHOLD: int = 50
    FRAUD_SELF_REFERRAL_IP_CLICKS: int = 5
    FRAUD_SELF_REFERRAL_LOOKBACK_DAYS: int = 7
    FRAUD_EXCESSIVE_CLICKS_THRESHOLD: int = 100
    FRAUD_EXCESSIVE_CLICKS_WINDOW_HOURS: int = 24
    FRAUD_REFUND_RATE_THRESHOLD: float = 30.0

    # Outbound affiliate webhooks / postbacks
    WEBHOOK_TIMEOUT_SECONDS: float = 10.0
    WEBHOOK_USER_AGENT: str = "Affiliate-Engine/1.0"
    WEBHOOK_MAX_ATTEMPTS: int = Field(default=5, gt=0)
    WEBHOOK_RETRY_MIN_GAP_SECONDS: int = Field(default=3600, ge=0)
    WEBHOOK_RESPONSE_MAX_CHARS: int = Field(default=1000, gt=0)

    # Proxy/client IP extraction settings
    TRUST_PROXY_HEADERS: bool = False
    TRUSTED_PROXY_IPS: List[str] = Field(default_factory=list)
    TRUSTED_IP_HEADERS: List[str] = Field(
        default_factory=lambda: [
            "CF-Connecting-IP",
            "X-Forwarded-For",
            "X-Real-IP",
        ]
    )

    # The click beacon is called from storefront themes on any origin.
    CORS_ALLOW_ORIGINS: List[str] = Field(default_factory=lambda: ["*"])

    @field_validator(
        "STORE_DOMAINS",
        "BOT_ALLOWED_MARKERS",
        "ORGANIC_SEARCH_DOMAINS",
        "TRUSTED_PROXY_IPS",
        "TRUSTED_IP_HEADERS",
        "CORS_ALLOW_ORIGINS",
        mode="before",
    )
    @classmethod
    def _parse_list_values(cls, value):
        if isinstance(value, str):
            parts = [p.strip() for p in value.split(",") if p.strip()]
            return parts
        return value

    @property
    def shopify_webhook_secret(self) -> Optional[str]:
        return self.SHOPIFY_WEBHOOK_SECRET or self.SHOPIFY_API_SECRET


# Instantiate a single settings object for app-wide import.
# Any module can just `from affiliate_engine.core.config import settings`.
settings = Settings()
