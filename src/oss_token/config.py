"""Application configuration models and helpers."""

from __future__ import annotations

import ipaddress
from decimal import Decimal
from enum import Enum
from functools import lru_cache
from typing import Optional

from pydantic import AnyHttpUrl, BaseModel, Field, SecretStr, model_validator
from pydantic.functional_validators import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LogLevel(str, Enum):
    """Supported logging levels."""

    CRITICAL = "CRITICAL"
    ERROR = "ERROR"
    WARNING = "WARNING"
    INFO = "INFO"
    DEBUG = "DEBUG"


class LedgerNetwork(str, Enum):
    """Ledger networks the service can settle on."""

    TESTNET = "testnet"
    MAINNET = "mainnet"


class IssuancePolicyKind(str, Enum):
    """How many reward tokens a donation earns."""

    RATIO = "ratio"
    PRICE = "price"


class WalletConfig(BaseModel):
    """Operator-controlled ledger account."""

    id: str
    address: str = Field(..., min_length=25, pattern=r"^r")
    secret: SecretStr
    active: bool = False


class Settings(BaseSettings):
    """Environment-driven application configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # Ledger
    ledger_network: LedgerNetwork = Field(LedgerNetwork.TESTNET, alias="LEDGER_NETWORK")
    ledger_rpc_url: AnyHttpUrl = Field(..., alias="LEDGER_RPC_URL")
    # hosts outside private networks that may still receive issuer seeds
    ledger_rpc_trusted_hosts: list[str] = Field(default_factory=list, alias="LEDGER_RPC_TRUSTED_HOSTS")
    ledger_timeout_sec: float = Field(20.0, alias="LEDGER_TIMEOUT_SEC")
    ledger_lookup_attempts: int = Field(6, alias="LEDGER_LOOKUP_ATTEMPTS")
    ledger_lookup_delay_sec: float = Field(5.0, alias="LEDGER_LOOKUP_DELAY_SEC")
    ledger_validation_poll_sec: float = Field(1.0, alias="LEDGER_VALIDATION_POLL_SEC")
    ledger_validation_attempts: int = Field(20, alias="LEDGER_VALIDATION_ATTEMPTS")
    issuer_wallets: list[WalletConfig] = Field(default_factory=list, alias="ISSUER_WALLETS")
    treasury_wallets: list[WalletConfig] = Field(default_factory=list, alias="TREASURY_WALLETS")

    # Signing provider
    signing_api_base: AnyHttpUrl = Field("https://xumm.app/api/v1", alias="SIGNING_API_BASE")
    signing_api_key: SecretStr = Field(..., alias="SIGNING_API_KEY")
    signing_api_secret: SecretStr = Field(..., alias="SIGNING_API_SECRET")
    signing_timeout_sec: float = Field(15.0, alias="SIGNING_TIMEOUT_SEC")
    webhook_max_skew_sec: int = Field(300, alias="WEBHOOK_MAX_SKEW_SEC")
    signing_watch_enabled: bool = Field(False, alias="SIGNING_WATCH_ENABLED")
    signing_poll_interval_sec: int = Field(5, alias="SIGNING_POLL_INTERVAL_SEC")

    # Pledges
    verification_secret: SecretStr = Field(..., alias="VERIFICATION_SECRET")
    verification_token_length: int = Field(32, alias="VERIFICATION_TOKEN_LENGTH")
    pledge_min_amount: Decimal = Field(Decimal("1"), alias="PLEDGE_MIN_AMOUNT")
    pledge_max_amount: Decimal = Field(Decimal("10000"), alias="PLEDGE_MAX_AMOUNT")
    pledge_ttl_sec: int = Field(600, alias="PLEDGE_TTL_SEC")

    # Trust lines
    trustline_ttl_sec: int = Field(300, alias="TRUSTLINE_TTL_SEC")
    trustline_limit: Decimal = Field(Decimal("1000000"), alias="TRUSTLINE_LIMIT")

    # Issuance
    issuance_policy: IssuancePolicyKind = Field(IssuancePolicyKind.RATIO, alias="ISSUANCE_POLICY")
    issuance_ratio: Decimal = Field(Decimal("1"), alias="ISSUANCE_RATIO")
    issuance_batch_delay_sec: float = Field(1.0, alias="ISSUANCE_BATCH_DELAY_SEC")
    issuance_queue_size: int = Field(256, alias="ISSUANCE_QUEUE_SIZE")
    issuance_max_failures: int = Field(5, alias="ISSUANCE_MAX_FAILURES")
    issuance_retry_interval_sec: float = Field(30.0, alias="ISSUANCE_RETRY_INTERVAL_SEC")

    # Pricing
    exchange_rate_ttl_sec: int = Field(300, alias="EXCHANGE_RATE_TTL_SEC")
    fallback_exchange_rate: float = Field(2.32, alias="FALLBACK_EXCHANGE_RATE")
    secondary_currency: str = Field("RLUSD", alias="SECONDARY_CURRENCY")
    secondary_currency_issuer: Optional[str] = Field(None, alias="SECONDARY_CURRENCY_ISSUER")
    github_api_base: AnyHttpUrl = Field("https://api.github.com", alias="GITHUB_API_BASE")
    github_timeout_sec: float = Field(15.0, alias="GITHUB_TIMEOUT_SEC")

    # API
    api_host: str = Field("0.0.0.0", alias="API_HOST")
    api_port: int = Field(8080, alias="API_PORT")

    # Misc
    log_level: LogLevel = Field(LogLevel.INFO, alias="LOG_LEVEL")

    @field_validator(
        "verification_token_length",
        "pledge_ttl_sec",
        "trustline_ttl_sec",
        "issuance_queue_size",
        "issuance_max_failures",
        "issuance_retry_interval_sec",
        "exchange_rate_ttl_sec",
        "webhook_max_skew_sec",
        "signing_poll_interval_sec",
        "ledger_lookup_attempts",
        "ledger_validation_attempts",
        "api_port",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("Value must be positive")
        return value

    @field_validator(
        "ledger_lookup_delay_sec",
        "ledger_validation_poll_sec",
        "issuance_batch_delay_sec",
    )
    @classmethod
    def _ensure_non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("Delays must be non-negative")
        return value

    @field_validator("fallback_exchange_rate", "issuance_ratio", "trustline_limit")
    @classmethod
    def _ensure_positive_number(cls, value):
        if value <= 0:
            raise ValueError("Value must be positive")
        return value

    @model_validator(mode="after")
    def _validate_pledge_bounds(self) -> "Settings":
        if self.pledge_min_amount <= 0:
            raise ValueError("PLEDGE_MIN_AMOUNT must be positive")
        if self.pledge_max_amount <= self.pledge_min_amount:
            raise ValueError("PLEDGE_MAX_AMOUNT must exceed PLEDGE_MIN_AMOUNT")
        return self

    @model_validator(mode="after")
    def _validate_signing_node(self) -> "Settings":
        # issuance submits in sign-and-submit mode, which sends the issuer seed to the node
        if self.issuer_wallets and not _is_operator_host(self.ledger_rpc_url.host, self.ledger_rpc_trusted_hosts):
            raise ValueError(
                "LEDGER_RPC_URL must point at an operator-run node (private address, internal "
                "hostname or LEDGER_RPC_TRUSTED_HOSTS) when ISSUER_WALLETS are configured"
            )
        return self


def _is_operator_host(host: Optional[str], trusted: list[str]) -> bool:
    if not host:
        return False
    host = host.strip("[]").lower()
    if host in {name.lower() for name in trusted}:
        return True
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        # single-label names only resolve inside the operator's network
        return host == "localhost" or "." not in host or host.endswith((".internal", ".local"))
    return address.is_private or address.is_loopback


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""

    return Settings()
