"""Settings for the settlement service."""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Service configuration using Pydantic BaseSettings.

    Loads configuration from environment variables and a .env file (if present).
    Gateway credentials live here and are handed to the gateway clients when
    they are constructed.
    """

    # Application
    service_name: str = "settlement-service"
    app_env: str = "development"
    log_level: str = "INFO"
    log_file: Optional[str] = None
    log_json: bool = False
    currency: str = "VND"
    pos_url: str = "http://localhost:3001"

    # Kafka
    kafka_bootstrap_servers: Optional[str] = None

    # Outbound gateway calls
    gateway_timeout_seconds: float = 10.0

    # VNPay (redirect gateway)
    vnpay_tmn_code: str = "DEMO0001"
    vnpay_hash_secret: str = "vnpay-dev-secret"
    vnpay_payment_url: str = "https://sandbox.vnpayment.vn/paymentv2/vpcpay.html"
    vnpay_return_url: str = "http://localhost:3001/payment/vnpay/callback"
    vnpay_ipn_enabled: bool = False
    vnpay_timezone: str = "Asia/Ho_Chi_Minh"

    # Stripe (async gateway)
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_webhook_tolerance: int = 300
    stripe_currency: str = "vnd"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the Settings instance, creating it on first use."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def set_settings_for_test(**kwargs) -> Settings:
    """For testing only: override the Settings instance with new values."""
    global _settings
    _settings = Settings(**kwargs)
    return _settings
