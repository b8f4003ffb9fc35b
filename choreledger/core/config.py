"""Configuration management for choreledger."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    sqlite_db_path: str = Field(default="data/choreledger.sqlite3", description="SQLite database file path")

    # Runtime
    environment: str = Field(default="development", description="Deployment environment name")
    debug: bool = Field(default=False, description="Expose internal error detail in API error responses")
    secret_key: str = Field(default="change-me", description="Key used to verify identity tokens")

    # Pydantic Logfire Configuration (optional)
    logfire_token: str | None = Field(default=None, description="Pydantic Logfire token for observability")

    # External ledger collaborator
    ledger_api_url: str = Field(default="http://ledger:8545", description="Ledger transfer service base URL")
    ledger_api_key: str | None = Field(default=None, description="Ledger transfer service API key (optional)")
    ledger_sender_address: str = Field(
        default="0x0000000000000000000000000000000000000000",
        description="Wallet address rewards are paid from",
    )

    # Invite defaults
    invite_default_expiry_days: int = Field(default=7, description="Days until a generated invite expires")
    invite_default_max_uses: int = Field(default=5, description="Redemptions allowed per generated invite")

    # Background jobs
    expiry_sweep_interval_minutes: int = Field(default=15, description="Minutes between task expiry sweeps")
    settlement_retry_interval_minutes: int = Field(
        default=10, description="Minutes between retries of failed reward settlements"
    )

    @property
    def is_production(self) -> bool:
        """True when running in the production environment."""
        return self.environment == "production"

    def require_credential(self, field_name: str, service_name: str) -> str:
        """Validate that a required credential is set, raising a clear error if missing.

        Args:
            field_name: Name of the field to check
            service_name: Human-readable service name for error message

        Returns:
            The credential value

        Raises:
            ValueError: If the credential is None or empty
        """
        value = getattr(self, field_name)
        if not value:
            raise ValueError(
                f"{service_name} credential not configured. "
                f"Set {field_name.upper()} environment variable or add to .env file."
            )
        return value


# Application Constants
class Constants:
    """Application-wide constants."""

    # Ledger
    LEDGER_TIMEOUT_SECONDS: float = 30.0

    # Identity tokens
    IDENTITY_TOKEN_SALT: str = "choreledger-identity"
    IDENTITY_TOKEN_MAX_AGE_SECONDS: int = 86400 * 30

    # Invite codes
    INVITE_CODE_PREFIX: str = "FAM-"
    INVITE_CODE_ALPHABET: str = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
    INVITE_CODE_LENGTH: int = 6
    INVITE_CODE_MAX_ATTEMPTS: int = 5

    # Tasks
    DEFAULT_TASK_PRIORITY: int = 3

    # Pagination
    MAX_PER_PAGE_LIMIT: int = 50
    # Upper bound for unpaginated internal reads (members, task detail children)
    INTERNAL_FETCH_LIMIT: int = 500
    SWEEP_BATCH_SIZE: int = 200


def get_settings() -> Settings:
    """Get application settings (singleton pattern)."""
    return Settings()


# Global settings instance
settings = get_settings()
