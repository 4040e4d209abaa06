from pydantic import SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Development-only key material. Refused when ENVIRONMENT=production.
DEV_ENCRYPTION_KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
DEV_LINK_TOKEN_SECRET = "insecure-dev-link-token-secret-change-me"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: str = "development"

    # Database
    database_url: str = "sqlite:///./skyddad.db"

    # Key material (never logged)
    encryption_key: SecretStr = SecretStr(DEV_ENCRYPTION_KEY)
    link_token_secret: SecretStr = SecretStr(DEV_LINK_TOKEN_SECRET)
    allow_legacy_decrypt: bool = True

    # Limits
    max_secret_length: int = 10_000
    default_expiry: str = "24h"
    max_expiry_hours: int = 168  # 7 days
    pin_min_length: int = 4
    pin_max_length: int = 20
    request_timeout_seconds: float = 10.0

    # Argon2id parameters for PINs (~20ms on modern CPU)
    pin_hash_time_cost: int = 2
    pin_hash_memory_cost: int = 19_456  # KiB
    pin_hash_parallelism: int = 1

    # Rate Limiting
    rate_limit_creates: str = "10/hour"
    rate_limit_views: str = "20/hour"

    # Cleanup
    cleanup_interval_hours: int = 1
    log_retention_days: int = 90

    # Logging
    log_level: str = "info"
    log_format: str = "console"  # "console" | "json"

    # CORS
    cors_origins: list[str] | str = ["http://localhost:3000", "http://127.0.0.1:3000"]

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        """Parse CORS origins from comma-separated string or list."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("encryption_key")
    @classmethod
    def validate_encryption_key(cls, v: SecretStr) -> SecretStr:
        raw = v.get_secret_value()
        if len(raw) != 64:
            raise ValueError("Encryption key must be 32 bytes (64 hex characters)")
        try:
            bytes.fromhex(raw)
        except ValueError:
            raise ValueError("Encryption key must be hex encoded")
        return v

    @field_validator("link_token_secret")
    @classmethod
    def validate_link_token_secret(cls, v: SecretStr) -> SecretStr:
        if len(v.get_secret_value()) < 32:
            raise ValueError("Link token secret must be at least 32 characters")
        return v

    @model_validator(mode="after")
    def refuse_dev_keys_in_production(self) -> "Settings":
        """Production must supply its own key material."""
        if not self.is_production:
            return self
        if self.encryption_key.get_secret_value() == DEV_ENCRYPTION_KEY:
            raise ValueError("ENCRYPTION_KEY must be set in production")
        if self.link_token_secret.get_secret_value() == DEV_LINK_TOKEN_SECRET:
            raise ValueError("LINK_TOKEN_SECRET must be set in production")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def encryption_key_bytes(self) -> bytes:
        return bytes.fromhex(self.encryption_key.get_secret_value())

    @property
    def link_token_secret_bytes(self) -> bytes:
        return self.link_token_secret.get_secret_value().encode("utf-8")


settings = Settings()
