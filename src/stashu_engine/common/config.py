"""Stashu-Engine configuration via pydantic-settings."""

import re
import warnings
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

from stashu_engine.common.exceptions import ConfigurationError

_HEX_KEY = re.compile(r"^[0-9a-fA-F]{64}$")


class StashuSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="STASHU_")

    environment: str = "development"

    # AES-256-GCM key for custodied tokens: 64 hex chars (32 bytes).
    # Generate with: stashu keygen
    token_encryption_key: str = ""

    # Database
    db_url: str = "sqlite+aiosqlite:///./data/stashu.db"

    # Mint
    mint_url: str = "https://mint.minibits.cash/Bitcoin"
    mint_unit: str = "sat"
    wallet_db_path: str = "./data/wallet"
    mint_timeout_seconds: float = 30.0
    lnurl_timeout_seconds: float = 15.0

    # API
    api_title: str = "Stashu-Engine"
    api_version: str = "0.1.0"
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:5173", "http://localhost:5174"]

    # NIP-98 request auth
    auth_max_age_seconds: int = 60

    # Rate limiting
    trusted_proxy: bool = False
    rate_limit_window_seconds: float = 60.0
    rate_limit_default: int = 60
    rate_limit_quotas: dict[str, int] = {
        "/api/unlock": 10,
        "/api/pay": 30,
        "/api/stash": 30,
        "/api/withdraw": 5,
        "/api/settings": 20,
    }
    rate_limit_max_entries: int = 10_000

    # Background maintenance
    stale_invoice_ttl_seconds: int = 3600
    processing_ttl_seconds: int = 600
    cleanup_interval_seconds: float = 300.0
    ratelimit_cleanup_interval_seconds: float = 300.0

    # Reconciliation: boots on which an indeterminate melt is re-checked
    # before it is parked as 'abandoned' for manual review.
    max_melt_checks: int = 50

    settlement_history_limit: int = 20

    @property
    def encryption_key_bytes(self) -> bytes:
        """Return the decoded vault key, raising if it is unusable."""
        key = self.token_encryption_key
        if not key:
            raise ConfigurationError(
                "STASHU_TOKEN_ENCRYPTION_KEY is not set. Generate one with: stashu keygen"
            )
        if not _HEX_KEY.match(key):
            raise ConfigurationError(
                "STASHU_TOKEN_ENCRYPTION_KEY must be exactly 64 hex characters "
                f"(32 bytes). Got {len(key)} characters."
            )
        return bytes.fromhex(key)

    def rate_limit_for(self, route_family: str) -> int:
        return self.rate_limit_quotas.get(route_family, self.rate_limit_default)

    def validate_for_production(self) -> None:
        """Raise if the vault key is unusable outside development."""
        if self.environment != "development":
            # Raises ConfigurationError on a missing or malformed key
            self.encryption_key_bytes
            return

        if not self.token_encryption_key:
            warnings.warn(
                "STASHU_TOKEN_ENCRYPTION_KEY is not set; the server will refuse "
                "to start until it is",
                UserWarning,
                stacklevel=2,
            )


@lru_cache
def get_settings() -> StashuSettings:
    settings = StashuSettings()
    settings.validate_for_production()
    return settings
