"""Capability contract every payment gateway adapter implements.

Adapters create provider-side sessions and translate provider notifications.
They never touch payment records; the reconciliation engine owns those.
"""

import json
import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable

import requests

from payrecon.errors import (
    GatewayProtocolError,
    GatewayUnavailable,
    InvalidPaymentRequest,
    StatusCheckUnsupported,
    UnknownOutcome,
)
from payrecon.models import (
    CanonicalWebhookEvent,
    EventStatus,
    PaymentConfirmation,
    PaymentSession,
    ProviderStatus,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 15.0


def to_decimal(value: Any) -> Decimal | None:
    """Parse a provider amount. None when absent or not a finite number."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        parsed = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return parsed if parsed.is_finite() else None


def to_money(value: Any) -> Decimal | None:
    """Parse a provider amount rounded to cents. None when it does not fit."""
    parsed = to_decimal(value)
    if parsed is None:
        return None
    try:
        return parsed.quantize(Decimal("0.01"))
    except InvalidOperation:
        return None


def minor_to_major(value: Any) -> Decimal | None:
    """Convert an amount in cents to a two-decimal amount."""
    parsed = to_decimal(value)
    if parsed is None:
        return None
    return to_money(parsed.scaleb(-2))


def as_text(value: Any) -> str | None:
    """Provider ids arrive as strings or integers; anything else is dropped."""
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        return None
    return str(value) or None


def dig(data: Any, *path: str | int) -> Any:
    """Walk nested dicts/lists, returning None as soon as a step is missing."""
    for step in path:
        if isinstance(step, int) and isinstance(data, list) and -len(data) <= step < len(data):
            data = data[step]
        elif isinstance(step, str) and isinstance(data, dict):
            data = data.get(step)
        else:
            return None
    return data


def load_json_object(payload: Any) -> dict | None:
    """Decode a JSON object from raw bytes. None for anything else."""
    try:
        if isinstance(payload, (bytes, bytearray)):
            payload = bytes(payload).decode("utf-8")
        data = json.loads(payload)
    except (TypeError, ValueError, RecursionError):
        return None
    return data if isinstance(data, dict) else None


class PaymentGateway(ABC):
    """One provider's wire protocol behind a uniform interface."""

    name: str = ""
    intent_prefix: str = "pay"
    supported_currencies: frozenset[str] = frozenset()
    supports_status_check: bool = True
    # How long a payment may stay pending before the engine polls for it.
    status_poll_after: timedelta = timedelta(minutes=15)
    signature_header: str | None = None
    signature_query_param: str | None = None

    def __init__(
        self,
        sandbox: bool = False,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.sandbox = sandbox
        self.timeout_seconds = timeout_seconds
        self._http = session or requests.Session()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @abstractmethod
    def create_payment_session(
        self,
        amount: Decimal | int | str,
        currency: str,
        description: str,
        return_url: str | None = None,
        cancel_url: str | None = None,
        metadata: dict | None = None,
    ) -> PaymentSession:
        """Create the provider-side transaction and return where to send the payer."""

    @abstractmethod
    def verify_webhook_signature(self, payload: bytes, signature: str | None) -> bool:
        """Authenticate raw webhook bytes. Pure, never raises."""

    @abstractmethod
    def parse_webhook_event(self, payload: bytes) -> CanonicalWebhookEvent | None:
        """Normalize raw webhook bytes. None for shapes we do not recognize."""

    @abstractmethod
    def get_payment_status(
        self, payment_intent_id: str, provider_transaction_id: str | None = None
    ) -> ProviderStatus:
        """Ask the provider where a payment stands."""

    def confirm_payment(self, payment_intent_id: str, extra: dict | None = None) -> PaymentConfirmation:
        """Status lookup for redirect-return flows.

        An answer we could not get is reported as pending with
        ``outcome_known=False``, never as failed.
        """
        provider_transaction_id = (extra or {}).get("provider_transaction_id")
        try:
            status = self.get_payment_status(payment_intent_id, provider_transaction_id=provider_transaction_id)
        except StatusCheckUnsupported:
            return PaymentConfirmation(
                success=False,
                status=EventStatus.PENDING,
                outcome_known=False,
                message="Awaiting payment notification from provider",
            )
        except (GatewayUnavailable, UnknownOutcome) as exc:
            logger.warning("%s confirmation for %s deferred: %s", self.name, payment_intent_id, exc)
            return PaymentConfirmation(
                success=False,
                status=EventStatus.PENDING,
                outcome_known=False,
                message=str(exc),
            )
        return PaymentConfirmation(
            success=status.status is EventStatus.COMPLETED,
            status=status.status,
            outcome_known=status.status is not EventStatus.PENDING,
            transaction_id=status.transaction_id,
            amount=status.amount,
            currency=status.currency,
        )

    def extract_signature(self, headers: Mapping[str, str], query: Mapping[str, str]) -> str | None:
        """Pull this provider's signature off an inbound HTTP request."""
        if self.signature_header:
            wanted = self.signature_header.lower()
            for key, value in headers.items():
                if key.lower() == wanted:
                    return value
        if self.signature_query_param:
            return query.get(self.signature_query_param)
        return None

    def new_payment_intent_id(self) -> str:
        return f"{self.intent_prefix}_{uuid.uuid4().hex}"

    def _validate_request(self, amount: Any, currency: str) -> tuple[Decimal, str]:
        value = to_decimal(amount)
        if value is None or value <= 0:
            raise InvalidPaymentRequest(f"Amount must be positive, got {amount!r}", self.name)
        code = (currency or "").upper()
        if code not in self.supported_currencies:
            raise InvalidPaymentRequest(f"{self.name} does not support currency {currency!r}", self.name)
        return value, code

    def _on_auth_rejected(self) -> None:
        """Hook for adapters holding cached credentials."""

    def _protocol_error(self, message: str, raw: str | None, status_code: int | None = None) -> GatewayProtocolError:
        logger.error("%s protocol error: %s raw=%s", self.name, message, raw)
        return GatewayProtocolError(message, self.name, raw_payload=raw, status_code=status_code)

    def _request_json(
        self,
        method: str,
        url: str,
        *,
        operation: str,
        json: dict | None = None,
        headers: dict | None = None,
        payment_intent_id: str | None = None,
    ) -> Any:
        """One bounded HTTP exchange, errors mapped onto the gateway taxonomy.

        No retries here: callers own the retry policy.
        """
        try:
            response = self._http.request(
                method,
                url,
                json=json,
                headers=headers,
                timeout=self.timeout_seconds,
            )
        except requests.exceptions.ConnectTimeout as exc:
            raise GatewayUnavailable(f"{self.name} {operation}: connect timeout", self.name) from exc
        except requests.exceptions.Timeout as exc:
            logger.warning(
                "%s %s timed out after %ss, outcome unknown for %s",
                self.name,
                operation,
                self.timeout_seconds,
                payment_intent_id,
            )
            raise UnknownOutcome(
                f"{self.name} {operation}: no response within {self.timeout_seconds}s",
                self.name,
                payment_intent_id=payment_intent_id,
            ) from exc
        except requests.exceptions.ConnectionError as exc:
            raise GatewayUnavailable(f"{self.name} {operation}: connection error", self.name) from exc
        except requests.exceptions.RequestException as exc:
            raise GatewayUnavailable(f"{self.name} {operation}: {exc}", self.name) from exc

        if response.status_code in (401, 403):
            self._on_auth_rejected()
            raise GatewayUnavailable(f"{self.name} {operation}: credentials rejected ({response.status_code})", self.name)
        if response.status_code >= 500:
            raise GatewayUnavailable(f"{self.name} {operation}: HTTP {response.status_code}", self.name)
        if response.status_code >= 400:
            raise self._protocol_error(
                f"{operation}: HTTP {response.status_code}", response.text, response.status_code
            )
        try:
            return response.json()
        except ValueError as exc:
            raise self._protocol_error(
                f"{operation}: response is not JSON", response.text, response.status_code
            ) from exc
