"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
presale monitor, loading and validating environment variables at startup.
"""

from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import Annotated, Literal, TypedDict

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict
from solders.pubkey import Pubkey

# USDC mint on Solana mainnet; always part of the stable-mint allowlist
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"

DEFAULT_RPC_URL = "https://api.mainnet-beta.solana.com"
DEFAULT_WS_URL = "wss://api.mainnet-beta.solana.com"
DEFAULT_PRICE_PRIMARY_URL = (
    "https://lite-api.jup.ag/price/v2?ids=So11111111111111111111111111111111111111112"
)
DEFAULT_PRICE_FALLBACK_URL = (
    "https://api.coingecko.com/api/v3/simple/price?ids=solana&vs_currencies=usd"
)

_API_KEY_PATTERN = re.compile(r"(api[-_]?key=)[^&]+", re.IGNORECASE)


def validate_pubkey(value: str) -> str:
    """Validate a base58 public key and return it stripped."""
    value = value.strip()
    try:
        Pubkey.from_string(value)
    except Exception as e:
        raise ValueError(f"{value!r} is not a valid Solana public key") from e
    return value


class SolanaSettings(BaseSettings):
    """Solana RPC and subscription endpoint settings."""

    model_config = SettingsConfigDict(env_prefix="SOLANA_")

    rpc_url: str = Field(
        default=DEFAULT_RPC_URL,
        alias="SOLANA_RPC_URL",
        description="Primary Solana JSON-RPC endpoint",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="SOLANA_FALLBACK_RPC_URL",
        description="Fallback Solana JSON-RPC endpoint",
    )
    ws_url: str = Field(
        default=DEFAULT_WS_URL,
        alias="SOLANA_WS_URL",
        description="Solana websocket endpoint for push subscriptions",
    )
    commitment: Literal["processed", "confirmed", "finalized"] = Field(
        default="confirmed",
        alias="SOLANA_COMMITMENT",
    )
    max_requests_per_second: float = Field(
        default=10.0,
        alias="SOLANA_MAX_REQUESTS_PER_SECOND",
        gt=0,
    )
    max_retries: int = Field(default=3, alias="SOLANA_MAX_RETRIES", ge=1)
    request_timeout: float = Field(default=30.0, alias="SOLANA_REQUEST_TIMEOUT", gt=0)

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_rpc_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v

    @field_validator("ws_url")
    @classmethod
    def validate_ws_url(cls, v: str) -> str:
        """Validate WebSocket URL format."""
        if not v.startswith(("ws://", "wss://")):
            raise ValueError("WebSocket URL must start with ws:// or wss://")
        return v


class PriceSettings(BaseSettings):
    """SOL/USD price source settings."""

    model_config = SettingsConfigDict(env_prefix="PRICE_")

    primary_url: str = Field(default=DEFAULT_PRICE_PRIMARY_URL, alias="PRICE_PRIMARY_URL")
    fallback_url: str = Field(default=DEFAULT_PRICE_FALLBACK_URL, alias="PRICE_FALLBACK_URL")
    timeout: float = Field(default=10.0, alias="PRICE_TIMEOUT", gt=0)


class PresaleSettings(BaseSettings):
    """Monitored presale settings."""

    model_config = SettingsConfigDict(env_prefix="PRESALE_")

    address: str | None = Field(
        default=None,
        alias="PRESALE_ADDRESS",
        description="Presale address to monitor",
    )
    stable_mints: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        alias="PRESALE_STABLE_MINTS",
        description="Comma-separated extra stablecoin mints",
    )
    batch_size: int = Field(default=10, alias="PRESALE_BATCH_SIZE", ge=1)
    metrics_ttl_seconds: float = Field(default=10.0, alias="PRESALE_METRICS_TTL_SECONDS", gt=0)
    metrics_transaction_limit: int = Field(
        default=200,
        alias="PRESALE_METRICS_TRANSACTION_LIMIT",
        ge=0,
    )
    recent_transactions: int = Field(default=20, alias="PRESALE_RECENT_TRANSACTIONS", ge=1)

    @field_validator("address")
    @classmethod
    def validate_address(cls, v: str | None) -> str | None:
        """Validate the presale address is a public key."""
        if v is None or not v.strip():
            return None
        return validate_pubkey(v)

    @field_validator("stable_mints", mode="before")
    @classmethod
    def split_mints(cls, v: object) -> object:
        """Accept a comma-separated string."""
        if isinstance(v, str):
            return [part for part in (p.strip() for p in v.split(",")) if part]
        return v

    @field_validator("stable_mints")
    @classmethod
    def validate_mints(cls, v: list[str]) -> list[str]:
        """Validate every extra mint is a public key."""
        return [validate_pubkey(mint) for mint in v]

    @property
    def stable_mint_allowlist(self) -> list[str]:
        """Default USDC mint plus configured extras, de-duplicated in order."""
        mints = [USDC_MINT]
        for mint in self.stable_mints:
            if mint not in mints:
                mints.append(mint)
        return mints


class SolanaSummary(TypedDict):
    rpc_url: str
    fallback_rpc_url: str
    ws_url: str
    commitment: str


class SettingsSummary(TypedDict):
    """Printable settings with secrets masked."""

    solana: SolanaSummary
    presale_address: str
    stable_mints: str
    log_level: str
    api_port: str


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from presale_monitor.config import get_settings

        settings = get_settings()
        print(settings.solana.rpc_url)
        print(settings.presale.stable_mint_allowlist)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    solana: SolanaSettings = Field(default_factory=SolanaSettings)
    price: PriceSettings = Field(default_factory=PriceSettings)
    presale: PresaleSettings = Field(default_factory=PresaleSettings)

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    api_port: int = Field(
        default=8080,
        alias="API_PORT",
        description="HTTP port for the presale API",
        ge=1,
        le=65535,
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> SettingsSummary:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with API keys and credentials masked.
        """
        return {
            "solana": {
                "rpc_url": self._redact_url(self.solana.rpc_url),
                "fallback_rpc_url": (
                    self._redact_url(self.solana.fallback_rpc_url)
                    if self.solana.fallback_rpc_url
                    else "(not set)"
                ),
                "ws_url": self._redact_url(self.solana.ws_url),
                "commitment": self.solana.commitment,
            },
            "presale_address": self.presale.address or "(not set)",
            "stable_mints": ",".join(self.presale.stable_mint_allowlist),
            "log_level": self.log_level,
            "api_port": str(self.api_port),
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact API keys and passwords from a URL."""
        url = _API_KEY_PATTERN.sub(r"\1***", url)
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If environment variables have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
