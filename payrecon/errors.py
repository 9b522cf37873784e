"""Error taxonomy for gateway calls, webhook verification and reconciliation.

Duplicate webhooks are not errors: the engine reports them as
``ReconcileOutcome.DUPLICATE``.
"""


class PaymentGatewayError(Exception):
    """Base class for every error raised by this package."""

    def __init__(self, message: str, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider


class ConfigurationError(PaymentGatewayError):
    """Gateway configuration is unusable. Fatal at startup."""


class InvalidPaymentRequest(PaymentGatewayError, ValueError):
    """Session request rejected locally (non-positive amount, unsupported currency)."""


class GatewayUnavailable(PaymentGatewayError):
    """Provider could not be reached or refused our credentials.

    Transient: the caller may retry session creation with backoff. Adapters
    never retry on their own.
    """


class GatewayProtocolError(PaymentGatewayError):
    """Provider answered with a shape we do not understand."""

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        raw_payload: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, provider)
        self.raw_payload = raw_payload
        self.status_code = status_code


class UnknownOutcome(PaymentGatewayError):
    """Request was sent but no answer arrived before the timeout.

    The payment may have succeeded on the provider side. Callers must settle
    it later through a status poll or a webhook, never report it as failed.
    """

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        payment_intent_id: str | None = None,
    ) -> None:
        super().__init__(message, provider)
        self.payment_intent_id = payment_intent_id


class StatusCheckUnsupported(PaymentGatewayError):
    """Provider offers no status API for this payment."""


class SignatureVerificationFailed(PaymentGatewayError):
    """Inbound webhook failed authentication and was rejected outright."""


class ConcurrentUpdateError(PaymentGatewayError):
    """Conditional write kept losing against concurrent writers."""

    def __init__(self, payment_intent_id: str, attempts: int) -> None:
        super().__init__(
            f"Gave up updating payment {payment_intent_id} after {attempts} conflicting writes"
        )
        self.payment_intent_id = payment_intent_id
        self.attempts = attempts
