"""Vreamio API – Application Configuration.

Loads from .env file or environment variables.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


STRIPE_SECRET_PLACEHOLDER = "sk_test_placeholder"
STRIPE_WEBHOOK_PLACEHOLDER = "whsec_placeholder"
DEV_ENCRYPTION_KEY = "vreamio-dev-encryption-key-change-in-prod"
WEAK_AUTH_SECRETS = {"", "change-me-long-random-secret", "changeme", "password123"}


class Settings(BaseSettings):
    """Central application configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Gateway ---
    environment: str = "development"
    log_level: str = "info"
    gateway_host: str = "0.0.0.0"
    gateway_port: int = 3001
    gateway_public_url: str = "http://localhost:3001"

    # --- Database ---
    database_url: str = "sqlite:///./vreamio.db"

    # --- Auth ---
    auth_secret: str = "change-me-long-random-secret"
    internal_api_key: str = ""  # Operator routes; open in development when empty

    # --- Stripe ---
    stripe_secret_key: str = STRIPE_SECRET_PLACEHOLDER
    stripe_webhook_secret: str = STRIPE_WEBHOOK_PLACEHOLDER
    stripe_price_id: str = "price_placeholder"
    stripe_success_url: str = "http://localhost:5173/billing/success"
    stripe_cancel_url: str = "http://localhost:5173/billing/cancel"

    # --- TorBox vendor ---
    torbox_vendor_api_key: str = ""
    torbox_base_url: str = "https://api.torbox.app/v1/api/vendors"
    torbox_encryption_key: str = DEV_ENCRYPTION_KEY
    torbox_max_attempts: int = 3
    torbox_retry_base_delay_seconds: float = 1.0
    torbox_timeout_seconds: float = 30.0

    # --- Provisioning worker ---
    provisioning_interval_seconds: float = 60.0
    provisioning_worker_enabled: bool = True
    provisioning_max_attempts: int = 5

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def stripe_configured(self) -> bool:
        key = (self.stripe_secret_key or "").strip()
        return bool(key) and key != STRIPE_SECRET_PLACEHOLDER

    @property
    def torbox_configured(self) -> bool:
        return bool((self.torbox_vendor_api_key or "").strip())

    def production_errors(self) -> list[str]:
        """Configuration problems that must block a production start."""
        errors: list[str] = []
        if len(self.torbox_encryption_key) < 32:
            errors.append("TORBOX_ENCRYPTION_KEY must be at least 32 characters in production")
        if self.torbox_encryption_key == DEV_ENCRYPTION_KEY:
            errors.append("TORBOX_ENCRYPTION_KEY is still the dev placeholder")
        if not self.stripe_configured:
            errors.append("STRIPE_SECRET_KEY must be set in production")
        if self.stripe_webhook_secret == STRIPE_WEBHOOK_PLACEHOLDER:
            errors.append("STRIPE_WEBHOOK_SECRET must be set in production")
        if self.auth_secret in WEAK_AUTH_SECRETS:
            errors.append("AUTH_SECRET is weak or a default value")
        return errors


def get_settings() -> Settings:
    """Factory function for settings singleton."""
    return Settings()
