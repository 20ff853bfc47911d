"""Application configuration from environment variables and .env file."""

import logging
from dataclasses import dataclass
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

SANDBOX = "sandbox"
PRODUCTION = "production"


@dataclass(frozen=True)
class ProviderConfig:
    """Billing provider connection settings.

    Passed explicitly to the provider client; services never read the
    environment themselves.
    """

    base_url: str
    api_key: str
    environment: str = SANDBOX
    timeout: float = 25.0


class Settings(BaseSettings):
    """Settings loaded from environment variables.

    Pydantic automatically loads values from:
    1. OS environment variables (at instantiation time)
    2. .env file (if present)
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",  # Allow extra fields in .env file
    )

    database_url: str = "sqlite:///./solar_billing.db"
    log_level: str = "INFO"
    log_file: str = "logs/server.log"
    operations_log_file: str = "logs/operations.log"

    # Billing provider (sandbox or production credentials)
    billing_provider_environment: str = SANDBOX
    billing_provider_api_key: str = ""
    billing_provider_api_url: str = "https://api.asaas.com/v3"
    billing_provider_sandbox_api_key: str = ""
    billing_provider_sandbox_api_url: str = "https://sandbox.asaas.com/api/v3"
    billing_provider_timeout: float = 25.0

    def provider_config(self) -> ProviderConfig:
        """Build provider settings for the configured environment.

        Raises:
            ValueError: If the environment is unknown or its credentials are missing
        """
        environment = self.billing_provider_environment.strip().lower()
        if environment == SANDBOX:
            api_key = self.billing_provider_sandbox_api_key
            base_url = self.billing_provider_sandbox_api_url
        elif environment == PRODUCTION:
            api_key = self.billing_provider_api_key
            base_url = self.billing_provider_api_url
        else:
            raise ValueError(
                f"BILLING_PROVIDER_ENVIRONMENT must be '{SANDBOX}' or '{PRODUCTION}', "
                f"got '{self.billing_provider_environment}'"
            )

        if not api_key or not base_url:
            raise ValueError(
                f"Billing provider credentials not configured for '{environment}'. "
                "Set the API key and URL environment variables or .env entries."
            )

        return ProviderConfig(
            base_url=base_url.rstrip("/"),
            api_key=api_key,
            environment=environment,
            timeout=self.billing_provider_timeout,
        )


# Lazy loader to ensure environment is loaded before instantiation
_settings_instance: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create the settings instance."""
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings()
        logger.debug(
            "Settings loaded: database_url=%s provider_environment=%s",
            _settings_instance.database_url,
            _settings_instance.billing_provider_environment,
        )
    return _settings_instance


def reset_settings() -> None:
    """Drop the cached settings (used by tests after changing the environment)."""
    global _settings_instance
    _settings_instance = None


__all__ = ["ProviderConfig", "Settings", "get_settings", "reset_settings", "SANDBOX", "PRODUCTION"]
