import os
from pathlib import Path

from loguru import logger
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def get_database_url() -> str:
    """Get database URL, using an absolute path for SQLite to avoid path resolution issues.

    SQLite is for local development only. Production deployments must set
    DATABASE_URL to a PostgreSQL connection string.
    """
    db_url = os.getenv("DATABASE_URL", "")
    if db_url:
        logger.info("Using DATABASE_URL from environment")
        return db_url

    db_path = Path(__file__).parent.parent.parent / "athlete_sync.db"
    db_url = f"sqlite:///{db_path.resolve()}"
    logger.warning(
        f"Using SQLite database (LOCAL DEV ONLY): {db_url}. "
        "Set DATABASE_URL environment variable to use PostgreSQL in production."
    )
    return db_url


class Settings(BaseSettings):
    garmin_client_id: str = Field(default="", validation_alias="GARMIN_CLIENT_ID")
    garmin_client_secret: str = Field(default="", validation_alias="GARMIN_CLIENT_SECRET")
    garmin_redirect_uri: str = Field(
        default="http://localhost:8000/integrations/garmin/callback",  # Default for local dev; MUST be set to backend URL in production
        validation_alias="GARMIN_REDIRECT_URI",
    )
    garmin_authorize_url: str = Field(
        default="https://connect.garmin.com/oauth2Confirm",
        validation_alias="GARMIN_AUTHORIZE_URL",
    )
    garmin_token_url: str = Field(
        default="https://diauth.garmin.com/di-oauth2-service/oauth/token",
        validation_alias="GARMIN_TOKEN_URL",
    )
    garmin_revoke_url: str = Field(
        default="https://connectapi.garmin.com/oauth-service/oauth/revoke",
        validation_alias="GARMIN_REVOKE_URL",
    )
    garmin_user_info_url: str = Field(
        default="https://connectapi.garmin.com/oauth-service/oauth/user-info",
        validation_alias="GARMIN_USER_INFO_URL",
    )
    garmin_user_profile_url: str = Field(
        default="https://connectapi.garmin.com/userprofile-service/userprofile",
        validation_alias="GARMIN_USER_PROFILE_URL",
    )
    garmin_http_timeout_seconds: float = Field(default=10.0, validation_alias="GARMIN_HTTP_TIMEOUT_SECONDS")
    garmin_oauth_state_ttl_seconds: int = Field(default=600, validation_alias="GARMIN_OAUTH_STATE_TTL_SECONDS")
    garmin_webhooks_enabled: bool = Field(default=True, validation_alias="GARMIN_WEBHOOKS_ENABLED")
    frontend_url: str = Field(
        default="http://localhost:3000",
        validation_alias="FRONTEND_URL",
    )
    database_url: str = Field(
        default_factory=get_database_url,
        validation_alias="DATABASE_URL",
    )
    auth_secret_key: str = Field(default="", validation_alias="AUTH_SECRET_KEY")
    auth_algorithm: str = Field(default="HS256", validation_alias="AUTH_ALGORITHM")
    auth_token_expire_days: int = Field(default=30, validation_alias="AUTH_TOKEN_EXPIRE_DAYS")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_file: str | None = Field(default=None, validation_alias="LOG_FILE")

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Validate that log level is one of the standard logging levels."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_value = value.upper()
        if upper_value not in valid_levels:
            logger.warning(f"Invalid LOG_LEVEL '{value}'. Valid levels are: {', '.join(sorted(valid_levels))}. Defaulting to INFO.")
            return "INFO"
        return upper_value

    @field_validator("garmin_client_id", "garmin_client_secret")
    @classmethod
    def validate_required(cls, value: str) -> str:
        """Warn when Garmin credentials are missing.

        Empty values are allowed for local development and tests; the OAuth
        routes refuse to start a handshake without them.
        """
        if not value:
            logger.warning(
                "GARMIN_CLIENT_ID and/or GARMIN_CLIENT_SECRET are not set. "
                "Garmin OAuth will not work until they are configured."
            )
        return value

    @field_validator("garmin_redirect_uri")
    @classmethod
    def validate_redirect_uri(cls, value: str) -> str:
        """Validate that redirect URI points to /integrations/garmin/callback."""
        if value and "/integrations/garmin/callback" not in value:
            logger.warning(f"GARMIN_REDIRECT_URI should point to /integrations/garmin/callback, but got: {value}. This may cause OAuth failures.")
        return value

    @field_validator("garmin_http_timeout_seconds")
    @classmethod
    def validate_timeout(cls, value: float) -> float:
        """Outbound OAuth calls must always be bounded."""
        if value <= 0:
            logger.warning(f"GARMIN_HTTP_TIMEOUT_SECONDS must be positive, got {value}. Defaulting to 10 seconds.")
            return 10.0
        return value


settings = Settings()
