from typing import Optional
from urllib.parse import urlsplit

from pydantic import Field, AliasChoices, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Known insecure default values that must be changed in production
_INSECURE_DB_PASSWORDS = {
    "postgres",
    "password",
    "changeme",
}


def _extract_password_from_database_url(database_url: str | None) -> str | None:
    if not database_url:
        return None
    try:
        parts = urlsplit(database_url)
        return parts.password
    except ValueError:
        return None


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")
    PROJECT_NAME: str = "Capability Gateway"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    # Database settings
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = "postgres"
    POSTGRES_SERVER: str = Field(
        default="db",
        validation_alias=AliasChoices("POSTGRES_SERVER", "POSTGRES_HOST", "POSTGRES_HOSTNAME"),
    )
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "capgate"

    # Database connection pooling
    DB_POOL_SIZE: int = Field(default=20, description="Number of persistent DB connections")
    DB_MAX_OVERFLOW: int = Field(default=40, description="Max additional connections under load")

    # Full DB URL (preferred in CI/containers). If not provided, we build it from POSTGRES_*.
    DATABASE_URL: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("DATABASE_URL", "SQLALCHEMY_DATABASE_URI"),
    )

    SQLALCHEMY_ECHO: bool = False

    # Analytic query limits
    QUERY_DEFAULT_LIMIT: int = Field(default=100, description="Row limit applied when a caller gives none")
    QUERY_MAX_LIMIT: int = Field(default=1000, description="Hard cap on rows returned by one query")
    ANOMALY_DEFAULT_THRESHOLD: float = 2.0

    # Capability execution
    CAPABILITY_TIMEOUT_MS: int = 30000
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY_MS: int = 300
    RETRY_MAX_DELAY_MS: int = 5000

    # Write one audit row per invocation
    AUDIT_INVOCATIONS: bool = True

    # Optional JSON file overriding the built-in role access map
    ROLE_PERMISSIONS_FILE: Optional[str] = None

    @computed_field
    @property
    def IS_PRODUCTION(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    def model_post_init(self, __context):
        """
        Validate configuration on startup. In production, fail hard if insecure defaults are detected.
        """
        # Fill DATABASE_URL if it wasn't provided explicitly
        relying_on_components = not self.DATABASE_URL
        if not self.DATABASE_URL:
            self.DATABASE_URL = (
                f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
                f"@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
            )

        is_prod = self.ENVIRONMENT.lower() == "production"
        errors = []
        db_url_password = _extract_password_from_database_url(self.DATABASE_URL)

        if is_prod:
            if relying_on_components and self.POSTGRES_PASSWORD in _INSECURE_DB_PASSWORDS:
                errors.append(
                    "POSTGRES_PASSWORD is insecure. "
                    "Set a strong password in your environment (or provide DATABASE_URL with a strong password)."
                )
            elif db_url_password and db_url_password in _INSECURE_DB_PASSWORDS:
                errors.append("DATABASE_URL contains an insecure password.")

            if self.DEBUG:
                errors.append("DEBUG must be False in production.")

        if self.QUERY_DEFAULT_LIMIT > self.QUERY_MAX_LIMIT:
            errors.append("QUERY_DEFAULT_LIMIT must not exceed QUERY_MAX_LIMIT.")

        if self.RETRY_MAX_ATTEMPTS < 1:
            errors.append("RETRY_MAX_ATTEMPTS must be at least 1.")

        # Fail hard with all errors at once for easier debugging
        if errors:
            error_msg = "Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors)
            raise ValueError(error_msg)


settings = Settings()
