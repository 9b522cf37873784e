"""Environment-driven gateway configuration.

Every setting is read from a ``PAYMENT_``-prefixed environment variable (or
``.env``). Credentials are validated by the gateway factory, not here, so a
process fails at startup with a message naming what is missing.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class GatewaySettings(BaseSettings):
    """Typed view of the payment configuration."""

    provider: str = ""
    sandbox: bool = False
    timeout_seconds: float = 15.0
    log_level: str = "INFO"
    status_poll_after_seconds: float | None = None

    payfast_merchant_id: str | None = None
    payfast_merchant_key: str | None = None
    payfast_passphrase: str | None = None
    payfast_supported_currencies: list[str] = ["ZAR"]

    paymob_api_key: str | None = None
    paymob_integration_id: str | None = None
    paymob_hmac_secret: str | None = None
    paymob_iframe_id: str | None = None

    paddle_api_key: str | None = None
    paddle_webhook_secret: str | None = None

    mock_auto_complete_seconds: float = 3.0
    mock_processing_seconds: float = 1.0
    mock_success_rate: float = 1.0
    mock_seed: int | None = None

    model_config = SettingsConfigDict(env_prefix="PAYMENT_", env_file=".env", extra="ignore")


@lru_cache(maxsize=1)
def get_settings() -> GatewaySettings:
    """Settings loaded once per process."""
    return GatewaySettings()
