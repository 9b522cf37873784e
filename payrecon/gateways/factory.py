"""Build the one configured gateway adapter, failing fast on bad config."""

import logging
from datetime import timedelta

import requests

from payrecon.config import GatewaySettings, get_settings
from payrecon.errors import ConfigurationError
from payrecon.gateways.base import PaymentGateway
from payrecon.gateways.mock import MockGateway
from payrecon.gateways.paddle import PaddleGateway
from payrecon.gateways.payfast import PayFastGateway
from payrecon.gateways.paymob import PaymobGateway
from payrecon.gateways.scheduler import VirtualScheduler
from payrecon.gateways.token_cache import TokenCache

logger = logging.getLogger(__name__)


def _require(settings: GatewaySettings, provider: str, *fields: str) -> None:
    missing = [name for name in fields if not getattr(settings, name)]
    if missing:
        names = ", ".join(f"PAYMENT_{name.upper()}" for name in missing)
        raise ConfigurationError(f"{provider} gateway requires {names}", provider)


def _build_payfast(settings, common, **_):
    _require(settings, "payfast", "payfast_merchant_id", "payfast_merchant_key")
    return PayFastGateway(
        merchant_id=settings.payfast_merchant_id,
        merchant_key=settings.payfast_merchant_key,
        passphrase=settings.payfast_passphrase,
        supported_currencies=settings.payfast_supported_currencies,
        **common,
    )


def _build_paymob(settings, common, token_cache=None, **_):
    _require(settings, "paymob", "paymob_api_key", "paymob_integration_id")
    return PaymobGateway(
        api_key=settings.paymob_api_key,
        integration_id=settings.paymob_integration_id,
        hmac_secret=settings.paymob_hmac_secret,
        iframe_id=settings.paymob_iframe_id,
        token_cache=token_cache,
        **common,
    )


def _build_paddle(settings, common, **_):
    _require(settings, "paddle", "paddle_api_key", "paddle_webhook_secret")
    return PaddleGateway(
        api_key=settings.paddle_api_key,
        webhook_secret=settings.paddle_webhook_secret,
        **common,
    )


def _build_mock(settings, common, scheduler=None, **_):
    if not settings.sandbox:
        raise ConfigurationError("mock gateway is only available with PAYMENT_SANDBOX=true", "mock")
    return MockGateway(
        scheduler=scheduler,
        auto_complete_seconds=settings.mock_auto_complete_seconds,
        processing_seconds=settings.mock_processing_seconds,
        success_rate=settings.mock_success_rate,
        seed=settings.mock_seed,
        **common,
    )


_BUILDERS = {
    "payfast": _build_payfast,
    "paymob": _build_paymob,
    "paddle": _build_paddle,
    "mock": _build_mock,
}


def available_providers() -> list[str]:
    return sorted(_BUILDERS)


def create_gateway(
    settings: GatewaySettings | None = None,
    *,
    session: requests.Session | None = None,
    scheduler: VirtualScheduler | None = None,
    token_cache: TokenCache | None = None,
) -> PaymentGateway:
    """Return the adapter named by ``settings.provider``.

    Raises ConfigurationError for an unknown provider or missing credentials.
    """
    settings = settings or get_settings()
    provider = (settings.provider or "").strip().lower()
    if not provider:
        raise ConfigurationError("PAYMENT_PROVIDER is not set")
    builder = _BUILDERS.get(provider)
    if builder is None:
        raise ConfigurationError(
            f"Unknown PAYMENT_PROVIDER {provider!r}; expected one of {', '.join(available_providers())}"
        )

    common = {
        "sandbox": settings.sandbox,
        "timeout_seconds": settings.timeout_seconds,
        "session": session,
    }
    gateway = builder(settings, common, scheduler=scheduler, token_cache=token_cache)
    if settings.status_poll_after_seconds is not None:
        gateway.status_poll_after = timedelta(seconds=settings.status_poll_after_seconds)
    logger.info("payment gateway %s ready (sandbox=%s)", provider, settings.sandbox)
    return gateway
