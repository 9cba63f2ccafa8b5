"""Configuration settings for the billflow service.

Wraps environment variables and provides defaults.
"""

from typing import Optional

from pydantic import Field, PostgresDsn, ValidationInfo, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Pydantic settings class.

    Attributes:
    ----------
        PROJECT_NAME (str): The name of the project.
        LOCAL_DEVELOPMENT (bool): Whether the application is running locally.
        DEBUG (bool): Whether debug mode is enabled.
        LOG_LEVEL (str): The logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        POSTGRES_HOST (str): The PostgreSQL server hostname.
        POSTGRES_DB (str): The PostgreSQL database name.
        POSTGRES_USER (str): The PostgreSQL username.
        POSTGRES_PASSWORD (str): The PostgreSQL password.
        SQLALCHEMY_ASYNC_DATABASE_URI (Optional[str]): The SQLAlchemy async database URI.
        STRIPE_ENABLED (bool): Whether calls to Stripe are enabled.
        STRIPE_SECRET_KEY (Optional[str]): The Stripe secret API key.
        STRIPE_WEBHOOK_SECRET (Optional[str]): The shared secret used to sign webhooks.
        STRIPE_TIMEOUT_SECONDS (float): Timeout for a single Stripe API call.
        STRIPE_MAX_NETWORK_RETRIES (int): Retries the Stripe SDK performs on network errors.
        WEBHOOK_TOLERANCE_SECONDS (int): Accepted age of a webhook signature timestamp.
        TRIAL_PERIOD_DAYS (int): Trial length granted on checkout for paid prices.
        CHECKOUT_SUCCESS_URL (str): Redirect target after a completed checkout.
        CHECKOUT_CANCEL_URL (str): Redirect target after an abandoned checkout.
        RESEND_API_KEY (Optional[str]): The Resend API key for notification emails.
        RESEND_FROM_EMAIL (Optional[str]): The sender address for notification emails.
        NOTIFIER_TIMEOUT_SECONDS (float): Timeout for a single notification send.
        RECONCILIATION_ENABLED (bool): Whether the reconciliation scheduler runs in-process.
        RECONCILIATION_INTERVAL_SECONDS (int): Seconds between two reconciliation sweeps.
        SWEEP_MAX_CONCURRENCY (int): Max tenants reconciled in parallel.
        SYSTEM_API_TOKEN (Optional[str]): Bearer token for cron and admin endpoints.
    """

    PROJECT_NAME: str = "Billflow"
    LOCAL_DEVELOPMENT: bool = False
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    POSTGRES_HOST: str = "localhost"
    POSTGRES_DB: str = "billflow"
    POSTGRES_USER: str = "billflow"
    POSTGRES_PASSWORD: str = ""
    SQLALCHEMY_ASYNC_DATABASE_URI: Optional[str] = Field(default=None, validate_default=True)

    STRIPE_ENABLED: bool = True
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_TIMEOUT_SECONDS: float = 10.0
    STRIPE_MAX_NETWORK_RETRIES: int = 3
    WEBHOOK_TOLERANCE_SECONDS: int = 300

    TRIAL_PERIOD_DAYS: int = 7
    CHECKOUT_SUCCESS_URL: str = (
        "http://localhost:3000/billing/success?session_id={CHECKOUT_SESSION_ID}"
    )
    CHECKOUT_CANCEL_URL: str = "http://localhost:3000/billing/cancel"

    RESEND_API_KEY: Optional[str] = None
    RESEND_FROM_EMAIL: Optional[str] = None
    NOTIFIER_TIMEOUT_SECONDS: float = 10.0

    RECONCILIATION_ENABLED: bool = True
    RECONCILIATION_INTERVAL_SECONDS: int = 300
    SWEEP_MAX_CONCURRENCY: int = 10

    SYSTEM_API_TOKEN: Optional[str] = None

    @field_validator("LOG_LEVEL", mode="before")
    def validate_log_level(cls, v: str) -> str:
        """Validate the log level.

        Args:
            v: The log level value.

        Returns:
            str: The upper-cased log level.

        Raises:
            ValueError: If the log level is not a standard logging level.
        """
        level = str(v).upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid LOG_LEVEL: {v}")
        return level

    @field_validator("SWEEP_MAX_CONCURRENCY", "TRIAL_PERIOD_DAYS")
    def validate_non_negative(cls, v: int, info: ValidationInfo) -> int:
        """Reject negative counts."""
        if v < 0:
            raise ValueError(f"{info.field_name} must not be negative")
        return v

    @field_validator("SQLALCHEMY_ASYNC_DATABASE_URI", mode="before")
    def assemble_db_connection(cls, v: Optional[str], info: ValidationInfo) -> str:
        """Build the SQLAlchemy database URI.

        Args:
        ----
            v (Optional[str]): The value of the SQLALCHEMY_ASYNC_DATABASE_URI setting.
            info (ValidationInfo): The validation context containing all field values.

        Returns:
        -------
            str: The assembled SQLAlchemy async database URI.

        """
        if isinstance(v, str) and v:
            return v

        return str(
            PostgresDsn.build(
                scheme="postgresql+asyncpg",
                username=info.data.get("POSTGRES_USER"),
                password=info.data.get("POSTGRES_PASSWORD") or None,
                host=info.data.get("POSTGRES_HOST", "localhost"),
                path=f"{info.data.get('POSTGRES_DB') or ''}",
            )
        )

    @property
    def stripe_configured(self) -> bool:
        """Whether Stripe API calls can be made.

        Returns:
            bool: True if Stripe is enabled and a secret key is set.
        """
        return self.STRIPE_ENABLED and bool(self.STRIPE_SECRET_KEY)

    @property
    def notifications_configured(self) -> bool:
        """Whether notification emails can be sent.

        Returns:
            bool: True if both the Resend key and sender address are set.
        """
        return bool(self.RESEND_API_KEY and self.RESEND_FROM_EMAIL)


settings = Settings()
