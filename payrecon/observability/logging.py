"""Structured JSON logging with payment correlation fields."""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from payrecon.config import get_settings


provider_ctx: ContextVar[str] = ContextVar("provider", default="")
payment_intent_id_ctx: ContextVar[str] = ContextVar("payment_intent_id", default="")
webhook_id_ctx: ContextVar[str] = ContextVar("webhook_id", default="")


class ContextFilter(logging.Filter):
    """Inject provider, payment intent and webhook identifiers into every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.provider = provider_ctx.get()
        record.payment_intent_id = payment_intent_id_ctx.get()
        record.webhook_id = webhook_id_ctx.get()
        return True


def configure_logging(level: str | None = None) -> None:
    """Configure the root logger once per process.

    The level defaults to ``PAYMENT_LOG_LEVEL``.
    """

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter()
    handler.addFilter(context_filter)
    formatter = JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(provider)s %(payment_intent_id)s %(webhook_id)s %(message)s"
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel((level or get_settings().log_level).upper())


@contextmanager
def log_context(**values: str | None):
    """Bind correlation fields for the duration of a block."""

    variables = {
        "provider": provider_ctx,
        "payment_intent_id": payment_intent_id_ctx,
        "webhook_id": webhook_id_ctx,
    }
    tokens = [(variables[name], variables[name].set(value or "")) for name, value in values.items()]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)
