# socialbank/config.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


ChannelName = Literal["whatsapp", "ussd"]
AuthMethod = Literal["otp", "pin"]


@dataclass(frozen=True)
class ChannelProfile:
    """
    Capability record for one channel.

    The only place session timeouts and login method are decided;
    the dispatcher and adapters read them from here.
    """
    name: str
    session_timeout_seconds: int   # idle timeout checked against updated_at
    store_ttl_seconds: int         # TTL handed to the session store
    sliding_ttl: bool              # store extends TTL on every read
    auth_method: AuthMethod
    synchronous: bool              # reply travels back in the HTTP response
    supports_buttons: bool


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    log_level: str = "INFO"
    storage_backend: Literal["postgres", "memory"] = "postgres"

    # Database
    expected_schema_version: str = "002_chat_users_and_logins.sql"
    database_url: str | None = None
    pghost: str = "localhost"
    pgport: int = 5432
    pguser: str = "postgres"
    pgpassword: str = ""
    pgdatabase: str = "socialbank"
    pg_pool_min: int = 2
    pg_pool_max: int = 20
    pg_connect_timeout: int = 5
    pg_command_timeout: float = 10.0  # upper bound for any single store call

    # Dialogue navigation
    exit_token: str = "000"
    main_menu_token: str = "00"
    enabled_flows: str = ""  # comma-separated flow names, empty = all
    msisdn_country_code: str = "254"

    # WhatsApp channel (asynchronous, webhook-delivered)
    whatsapp_session_timeout_seconds: int = 600
    whatsapp_store_ttl_seconds: int = 86400
    whatsapp_auth_method: AuthMethod = "otp"

    # USSD channel (synchronous, caller-held timeout)
    ussd_session_timeout_seconds: int = 120
    ussd_store_ttl_seconds: int = 120
    ussd_auth_method: AuthMethod = "pin"
    ussd_service_code: str = "*123#"

    # Authentication
    otp_length: int = 6
    otp_expiry_seconds: int = 300
    login_validity_seconds: int = 1800  # 30 minutes
    pin_length: int = 4
    max_pin_attempts: int = 3
    pin_hash_iterations: int = 120_000

    # Meta WhatsApp Cloud API
    meta_access_token: str | None = None
    meta_phone_number_id: str | None = None  # default business phone id for outbound
    meta_webhook_verify_token: str | None = None
    meta_graph_api_version: str = "v20.0"
    meta_app_secret: str | None = None  # X-Hub-Signature-256 verification
    whatsapp_mark_read: bool = True

    # Core banking (ESB)
    banking_backend: Literal["esb", "sandbox"] = "sandbox"
    esb_base_url: str | None = None
    esb_api_key: str | None = None
    esb_timeout_seconds: float = 15.0
    esb_account_details_path: str = "/third-party/mobile-banking/cbs_account_details"
    esb_transfer_path: str = "/third-party/mobile-banking/bank_to_bank_transfer"
    esb_mini_statement_path: str = "/third-party/mobile-banking/mini_statement"
    esb_full_statement_path: str = "/third-party/mobile-banking/full_statement"
    esb_bill_payment_path: str = "/third-party/mobile-banking/bill_payment"
    currency: str = "KES"

    # Transactions
    min_transaction_amount: float = 10.0
    max_transaction_amount: float = 150_000.0
    bank_transfer_fixed_fee: float = 50.0
    bank_transfer_fee_percent: float = 1.0
    mobile_money_fixed_fee: float = 30.0
    mobile_money_fee_percent: float = 0.5

    # Housekeeping
    processed_message_retention_days: int = 30

    # Security
    admin_token: str | None = None
    metrics_token: str | None = None
    allowed_origins: list[str] = ["*"]

    # Feature Flags
    require_webhook_validation: bool = True
    enable_request_logging: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def database_dsn(self) -> str:
        if self.database_url:
            return self.database_url

        return (
            f"postgresql://{self.pguser}:{self.pgpassword}"
            f"@{self.pghost}:{self.pgport}/{self.pgdatabase}"
        )

    @property
    def meta_enabled(self) -> bool:
        """Check if Meta Cloud API is configured"""
        return bool(
            self.meta_access_token
            and self.meta_phone_number_id
            and self.meta_webhook_verify_token
        )

    def channel_profile(self, name: str) -> ChannelProfile:
        """Build the capability record for a channel."""
        if name == "whatsapp":
            return ChannelProfile(
                name="whatsapp",
                session_timeout_seconds=self.whatsapp_session_timeout_seconds,
                store_ttl_seconds=self.whatsapp_store_ttl_seconds,
                sliding_ttl=False,
                auth_method=self.whatsapp_auth_method,
                synchronous=False,
                supports_buttons=True,
            )
        if name == "ussd":
            return ChannelProfile(
                name="ussd",
                session_timeout_seconds=self.ussd_session_timeout_seconds,
                store_ttl_seconds=self.ussd_store_ttl_seconds,
                sliding_ttl=True,
                auth_method=self.ussd_auth_method,
                synchronous=True,
                supports_buttons=False,
            )
        raise ValueError(f"Unknown channel: {name}")

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        missing = []

        required_fields = [
            ("admin_token", self.admin_token),
            ("meta_access_token", self.meta_access_token),
            ("meta_phone_number_id", self.meta_phone_number_id),
            ("meta_webhook_verify_token", self.meta_webhook_verify_token),
        ]
        if self.banking_backend == "esb":
            required_fields.extend([
                ("esb_base_url", self.esb_base_url),
                ("esb_api_key", self.esb_api_key),
            ])

        for field_name, value in required_fields:
            if not value:
                missing.append(field_name)

        return missing


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    if s.is_production and s.allowed_origins == ["*"]:
        warnings.append("prod: allowed_origins=['*'] (CORS is wide open).")

    if s.is_production and s.storage_backend == "memory":
        warnings.append("prod: storage_backend=memory (sessions are lost on restart and not shared between replicas).")

    if s.is_production and s.banking_backend == "sandbox":
        warnings.append("prod: banking_backend=sandbox (no real core-banking calls are made).")

    if s.require_webhook_validation and not s.meta_app_secret:
        warnings.append("require_webhook_validation=True but meta_app_secret is not set (signature checks are skipped).")

    if not s.metrics_token:
        warnings.append("metrics_token is not set: /metrics is disabled.")

    if s.ussd_session_timeout_seconds > s.ussd_store_ttl_seconds:
        warnings.append("ussd_session_timeout_seconds exceeds ussd_store_ttl_seconds (store expires sessions first).")

    if s.whatsapp_session_timeout_seconds > s.whatsapp_store_ttl_seconds:
        warnings.append(
            "whatsapp_session_timeout_seconds exceeds whatsapp_store_ttl_seconds "
            "(users will never see the session-expired notice)."
        )

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce required settings (hard fail).
    In non-prod: warn only.
    """
    missing = s.validate_required_for_production()

    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    # Logging is not configured yet at import time
    for msg in warn_on_risky_config(s):
        print(f"[WARN][config] {msg}")


settings = Settings()
validate_or_warn(settings)
