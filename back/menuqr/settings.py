from decimal import Decimal
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


_PROJECT_ROOT = Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    """
    App configuration.

    Values come from the environment, then `config.env` / `.env` in the
    repository root, then the same files relative to the working directory.
    """

    model_config = SettingsConfigDict(
        env_file=(
            str(_PROJECT_ROOT / "config.env"),
            str(_PROJECT_ROOT / ".env"),
            "config.env",
            ".env",
        ),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    db_host: str = Field(default="localhost", validation_alias="DB_HOST")
    db_port: int = Field(default=5432, validation_alias="DB_PORT")
    db_user: str = Field(default="menuqr", validation_alias="DB_USER")
    db_password: str = Field(default="menuqr", validation_alias="DB_PASSWORD")
    db_name: str = Field(default="menuqr", validation_alias="DB_NAME")
    # Full SQLAlchemy URL; overrides the DB_* parts when set
    database_url_override: str = Field(default="", validation_alias="DATABASE_URL")

    secret_key: str = Field(default="CHANGE_THIS_IN_PRODUCTION", validation_alias="SECRET_KEY")
    algorithm: str = Field(default="HS256", validation_alias="ALGORITHM")
    access_token_expire_minutes: int = Field(default=30, validation_alias="ACCESS_TOKEN_EXPIRE_MINUTES")
    is_production: bool = Field(default=False, validation_alias="IS_PRODUCTION")

    cors_origins: str = Field(
        default="http://localhost:5000",
        validation_alias="CORS_ORIGINS"
    )

    # Empty string disables order event publishing
    redis_url: str = Field(default="redis://localhost:6379", validation_alias="REDIS_URL")

    # Base for the menu URLs encoded into table QR codes
    public_base_url: str = Field(default="https://menuqr.pk", validation_alias="PUBLIC_BASE_URL")

    # Billing
    default_currency: str = Field(default="PKR", validation_alias="DEFAULT_CURRENCY")
    billing_cycle_days: int = Field(default=30, validation_alias="BILLING_CYCLE_DAYS")
    low_balance_multiplier: Decimal = Field(default=Decimal("2"), validation_alias="LOW_BALANCE_MULTIPLIER")
    billing_scheduler_enabled: bool = Field(default=False, validation_alias="BILLING_SCHEDULER_ENABLED")
    billing_run_hour: int = Field(default=2, validation_alias="BILLING_RUN_HOUR")

    # Email (billing notifications)
    smtp_host: str = Field(default="smtp.gmail.com", validation_alias="SMTP_HOST")
    smtp_port: int = Field(default=587, validation_alias="SMTP_PORT")
    smtp_user: str = Field(default="", validation_alias="SMTP_USER")
    smtp_password: str = Field(default="", validation_alias="SMTP_PASSWORD")
    smtp_use_tls: bool = Field(default=True, validation_alias="SMTP_USE_TLS")
    email_from: str = Field(default="billing@menuqr.pk", validation_alias="EMAIL_FROM")
    email_from_name: str = Field(default="MenuQR Billing", validation_alias="EMAIL_FROM_NAME")

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        # SQLModel uses SQLAlchemy under the hood; this uses the psycopg driver (v3).
        return (
            f"postgresql+psycopg://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )


settings = Settings()
