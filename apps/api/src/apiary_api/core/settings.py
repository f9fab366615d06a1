from datetime import date
from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./apiary.db"
    secret_key: str = "change-me"

    # Stripe configuration
    stripe_public_key: str = ""
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_connected_accounts: dict[str, str] = Field(default_factory=dict)
    payment_currency: str = "eur"
    minimum_chargeable_amount: Decimal = Decimal("0.50")
    gateway_timeout_seconds: float = 15.0

    @field_validator("stripe_connected_accounts", mode="before")
    @classmethod
    def _parse_connected_accounts(cls, value: object) -> dict[str, str]:
        if value is None:
            return {}
        if isinstance(value, str):
            accounts: dict[str, str] = {}
            for pair in value.split(","):
                if "=" not in pair:
                    continue
                organization, account = pair.split("=", 1)
                if organization.strip() and account.strip():
                    accounts[organization.strip().upper()] = account.strip()
            return accounts
        if isinstance(value, dict):
            return {str(key).upper(): str(item) for key, item in value.items() if item}
        return {}

    # Application URLs
    frontend_url: str = "http://localhost:3000"
    api_base_url: str = "http://localhost:8000"

    # Tariffs
    rate_sheet_path: str | None = None

    # Certificate rendering + document storage
    document_renderer_url: str | None = None
    document_renderer_api_key: str | None = None
    document_renderer_timeout_seconds: float = 20.0
    document_storage_bucket: str | None = None
    document_storage_prefix: str = "apiary-documents"
    document_storage_region: str | None = None
    document_storage_endpoint: str | None = None
    document_storage_force_path_style: bool = False

    # Email / notification settings
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_username: str | None = None
    smtp_password: str | None = None
    smtp_use_tls: bool = True
    smtp_sender_email: str | None = None
    notifier_timeout_seconds: float = 10.0

    # Partner (UNAF) export
    partner_export_recipients: list[str] = Field(default_factory=list)
    partner_export_dates: list[date] = Field(
        default_factory=lambda: [
            date(2026, 1, 12),
            date(2026, 1, 19),
            date(2026, 1, 26),
            date(2026, 2, 2),
            date(2026, 2, 9),
            date(2026, 2, 16),
            date(2026, 3, 2),
            date(2026, 3, 16),
            date(2026, 3, 30),
            date(2026, 4, 27),
            date(2026, 5, 25),
            date(2026, 6, 22),
            date(2026, 7, 20),
            date(2026, 8, 17),
            date(2026, 9, 14),
        ]
    )
    partner_export_worker_enabled: bool = False
    partner_export_interval_seconds: int = 6 * 60 * 60

    @field_validator("partner_export_recipients", mode="before")
    @classmethod
    def _parse_recipient_list(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip() for item in value if str(item).strip()]
        return []

    @field_validator("partner_export_dates", mode="before")
    @classmethod
    def _parse_export_dates(cls, value: object) -> object:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    # Payment reconciliation sweeper
    reconciliation_worker_enabled: bool = False
    reconciliation_interval_seconds: int = 60 * 60
    reconciliation_window_days: int = 30
    reconciliation_page_size: int = 100
    reconciliation_trigger_label: str = "scheduler"


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
