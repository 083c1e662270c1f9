"""
Runtime configuration for the storefront, read from the environment and
``.env`` via pydantic-settings.  Loading fails fast on bad values.
"""
import socket
from decimal import Decimal
from urllib.parse import quote_plus
from typing import Optional
from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _resolve_db_host(host: str) -> str:
    """Container hostnames are looked up once, up front, instead of inside the event loop."""
    if not host or host in ("localhost", "127.0.0.1"):
        return host
    try:
        return socket.gethostbyname(host)
    except socket.gaierror:
        return host


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # PostgreSQL
    DB_USER: str = Field(...)
    DB_PASSWORD: str = Field(...)
    DB_NAME: str = Field(...)
    DB_HOST: str = Field(default="localhost")
    DB_PORT: str = Field(default="5432")
    DATABASE_URL: Optional[str] = Field(default=None, description="Full async DB URL, overrides DB_* parts")

    # Connection pool
    DB_POOL_SIZE: int = Field(default=10)
    DB_MAX_OVERFLOW: int = Field(default=20)
    DB_POOL_RECYCLE: int = Field(default=1800, description="Seconds before a pooled connection is replaced")

    # Storefront origins allowed to call the API, comma separated
    ALLOWED_ORIGINS: str = Field(default="")

    ENVIRONMENT: str = Field(default="production", description="development or production")
    LOG_LEVEL: str = Field(default="INFO")

    # Public URLs
    PUBLIC_BASE_URL: str = Field(default="http://localhost:3000", description="Storefront base URL used in tracking links")
    DEFAULT_LOCALE: str = Field(default="en", description="Locale for customer emails")

    # Money: order prices are stored in STORE_CURRENCY, payments are charged in SETTLEMENT_CURRENCY
    STORE_CURRENCY: str = Field(default="USD")
    SETTLEMENT_CURRENCY: str = Field(default="MZN")
    EXCHANGE_RATE: Decimal = Field(default=Decimal("64"), description="STORE_CURRENCY -> SETTLEMENT_CURRENCY rate")
    MINIMUM_CHARGE: Decimal = Field(default=Decimal("1"), description="Minimum payable amount in settlement currency")
    PLATFORM_FEE_PERCENT: Decimal = Field(default=Decimal("2.5"), description="Default platform fee percent")
    PLATFORM_FEE_FIXED: Decimal = Field(default=Decimal("0"), description="Fixed platform fee per payment")
    MPESA_FEE_PERCENT: Decimal = Field(default=Decimal("0"), description="Processor fee percent for M-Pesa")
    BANK_TRANSFER_FEE_PERCENT: Decimal = Field(default=Decimal("0"))
    CASH_ON_DELIVERY_FEE_PERCENT: Decimal = Field(default=Decimal("0"))

    # M-Pesa (Mozambique) provider configuration
    MPESA_ENVIRONMENT: str = Field(default="sandbox", description="sandbox or production")
    MPESA_VODACOM_API_KEY: Optional[str] = Field(default=None)
    MPESA_VODACOM_SERVICE_PROVIDER_CODE: Optional[str] = Field(default=None)
    MPESA_VODACOM_BASE_URL: str = Field(default="https://api.vm.co.mz:18352/ipg/v1x")
    MPESA_MOVITEL_API_KEY: Optional[str] = Field(default=None)
    MPESA_MOVITEL_SERVICE_PROVIDER_CODE: Optional[str] = Field(default=None)
    MPESA_MOVITEL_BASE_URL: str = Field(default="https://api.movitel.co.mz/mpesa/v1")
    MPESA_TIMEOUT_SECONDS: float = Field(default=15.0)

    # Transactional email API (optional; statuses are only logged when unset)
    EMAIL_API_URL: Optional[str] = Field(default=None, description="HTTP endpoint of the email provider")
    EMAIL_API_KEY: Optional[str] = Field(default=None)
    EMAIL_FROM: str = Field(default="orders@storefront.local")
    EMAIL_TIMEOUT_SECONDS: float = Field(default=10.0)

    # Billing sweep
    CRON_SECRET: Optional[str] = Field(default=None, description="Bearer token for /cron endpoints")
    SWEEP_HOUR_UTC: int = Field(default=0, description="Hour (UTC) when the daily sweep runs")
    SCHEDULER_ENABLED: bool = Field(default=True)
    GRACE_PERIOD_DAYS: int = Field(default=7)
    EFFECT_MAX_ATTEMPTS: int = Field(default=2, description="Attempts per side effect before it is dropped")

    @field_validator("ENVIRONMENT", "MPESA_ENVIRONMENT")
    @classmethod
    def validate_environment(cls, v: str, info: ValidationInfo) -> str:
        allowed = ("development", "production") if info.field_name == "ENVIRONMENT" else ("sandbox", "production")
        if v not in allowed:
            raise ValueError(f"{info.field_name} must be one of {allowed}")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown LOG_LEVEL '{v}'")
        return level

    @field_validator("EXCHANGE_RATE", "MINIMUM_CHARGE")
    @classmethod
    def validate_positive(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    def validate_production_settings(self) -> list[str]:
        """Settings that may be blank while developing but not in production."""
        errors: list[str] = []
        if self.ENVIRONMENT != "production":
            return errors

        if not self.ALLOWED_ORIGINS:
            errors.append("ALLOWED_ORIGINS is required in production")
        if not self.CRON_SECRET:
            errors.append("CRON_SECRET is required in production")
        if self.MPESA_ENVIRONMENT == "production":
            for provider in ("VODACOM", "MOVITEL"):
                for key in ("API_KEY", "SERVICE_PROVIDER_CODE"):
                    name = f"MPESA_{provider}_{key}"
                    if not getattr(self, name):
                        errors.append(f"{name} is required for live M-Pesa")
        return errors

    @property
    def db_url(self) -> str:
        """asyncpg URL built from the DB_* parts unless DATABASE_URL is given."""
        if self.DATABASE_URL:
            return self.DATABASE_URL
        host = _resolve_db_host(self.DB_HOST)
        password = quote_plus(self.DB_PASSWORD)
        return f"postgresql+asyncpg://{self.DB_USER}:{password}@{host}:{self.DB_PORT}/{self.DB_NAME}"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def allowed_origins_list(self) -> list[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Process-wide settings, loaded and checked on first use."""
    global _settings
    if _settings is None:
        loaded = Settings()
        problems = loaded.validate_production_settings()
        if problems:
            raise ValueError("Invalid configuration: " + "; ".join(problems))
        _settings = loaded
    return _settings
