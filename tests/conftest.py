import json
import threading
import time
from datetime import datetime, timedelta, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from payrecon.gateways.mock import MockGateway
from payrecon.gateways.paddle import PaddleGateway
from payrecon.gateways.payfast import PayFastGateway
from payrecon.gateways.paymob import PaymobGateway
from payrecon.gateways.scheduler import VirtualScheduler
from payrecon.gateways.token_cache import TokenCache
from payrecon.observability.alerting import AlertManager
from payrecon.observability.metrics import MetricsCollector
from payrecon.reconciliation.collaborators import RecordingCollaborator
from payrecon.reconciliation.engine import ReconciliationEngine
from payrecon.reconciliation.retry import RetryManager
from payrecon.reconciliation.store import InMemoryPaymentRecordStore
from payrecon.utils.factories import PaymentRecordFactory, WebhookFactory
from payrecon.webhooks.audit import WebhookAuditLog
from payrecon.webhooks.processor import WebhookProcessor
from payrecon.webhooks.server import WebhookReceiverServer


PAYFAST_PASSPHRASE = "jt7NOE43FZPn"
PADDLE_WEBHOOK_SECRET = "pdl_ntfset_test_secret"
PAYMOB_HMAC_SECRET = "paymob-hmac-test-secret"
START = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Wall clock replacement that only moves when told to."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class _StubHandler(BaseHTTPRequestHandler):
    def _handle(self):
        length = int(self.headers.get("Content-Length", 0))
        body = self.rfile.read(length) if length else b""
        stub = self.server.stub  # type: ignore[attr-defined]
        path = self.path.split("?", 1)[0]
        response = stub._next_response(self.command, path, body, dict(self.headers.items()))
        if response["delay"] > 0:
            time.sleep(response["delay"])
        data = response["body"]
        try:
            self.send_response(response["status"])
            self.send_header("Content-Type", response["content_type"])
            self.send_header("Content-Length", str(len(data)))
            self.end_headers()
            self.wfile.write(data)
        except (BrokenPipeError, ConnectionResetError):
            # Client gave up waiting (timeout tests).
            pass

    do_GET = _handle
    do_POST = _handle

    def log_message(self, format, *args):
        pass


class ProviderStubServer:
    """Local stand-in for a provider API with scripted responses.

    Responses queue per (method, path); the last one keeps being served.
    Unscripted routes answer 404.
    """

    def __init__(self):
        self._routes: dict[tuple[str, str], list[dict]] = {}
        self._requests: list[dict] = []
        self._lock = threading.Lock()
        self._server = ThreadingHTTPServer(("127.0.0.1", 0), _StubHandler)
        self._server.stub = self  # type: ignore[attr-defined]
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._server.shutdown()
        self._server.server_close()
        self._thread.join(timeout=5)

    @property
    def url(self) -> str:
        return f"http://127.0.0.1:{self._server.server_address[1]}"

    def respond(self, method: str, path: str, status: int = 200, json_body=None, text: str | None = None, delay: float = 0.0):
        if text is not None:
            body, content_type = text.encode(), "text/plain"
        else:
            body, content_type = json.dumps(json_body if json_body is not None else {}).encode(), "application/json"
        with self._lock:
            self._routes.setdefault((method, path), []).append(
                {"status": status, "body": body, "content_type": content_type, "delay": delay}
            )
        return self

    def _next_response(self, method: str, path: str, body: bytes, headers: dict) -> dict:
        with self._lock:
            self._requests.append({"method": method, "path": path, "body": body, "headers": headers})
            queue = self._routes.get((method, path))
            if not queue:
                return {"status": 404, "body": b'{"detail": "not found"}', "content_type": "application/json", "delay": 0}
            return queue.pop(0) if len(queue) > 1 else queue[0]

    def requests_to(self, path: str) -> list[dict]:
        with self._lock:
            return [r for r in self._requests if r["path"] == path]

    def json_body(self, path: str, index: int = -1) -> dict:
        return json.loads(self.requests_to(path)[index]["body"])


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryPaymentRecordStore()


@pytest.fixture
def collaborator():
    return RecordingCollaborator()


@pytest.fixture
def retry_manager():
    return RetryManager()


@pytest.fixture
def engine(store, collaborator, retry_manager, clock):
    return ReconciliationEngine(store, collaborator, retry_manager=retry_manager, clock=clock)


@pytest.fixture
def scheduler():
    return VirtualScheduler(start=START)


@pytest.fixture
def mock_gateway(scheduler):
    return MockGateway(scheduler=scheduler, auto_complete_seconds=3, processing_seconds=1, seed=7)


@pytest.fixture
def payfast_gateway():
    return PayFastGateway(
        merchant_id="10000100",
        merchant_key="46f0cd694581a",
        passphrase=PAYFAST_PASSPHRASE,
        supported_currencies=["ZAR", "USD"],
        sandbox=True,
    )


@pytest.fixture
def provider_stub():
    server = ProviderStubServer()
    server.start()
    yield server
    server.stop()


@pytest.fixture
def paddle_gateway(provider_stub):
    return PaddleGateway(
        api_key="pdl_sdbx_apikey_test",
        webhook_secret=PADDLE_WEBHOOK_SECRET,
        api_url=provider_stub.url,
        sandbox=True,
        timeout_seconds=2,
    )


@pytest.fixture
def token_clock():
    return {"now": 1000.0}


@pytest.fixture
def paymob_gateway(provider_stub, token_clock):
    return PaymobGateway(
        api_key="paymob-api-key",
        integration_id="4567",
        hmac_secret=PAYMOB_HMAC_SECRET,
        iframe_id="8901",
        token_cache=TokenCache(ttl_seconds=3000, clock=lambda: token_clock["now"]),
        base_url=provider_stub.url,
        timeout_seconds=2,
    )


@pytest.fixture
def metrics():
    return MetricsCollector(window_seconds=300)


@pytest.fixture
def alert_manager(metrics):
    return AlertManager(metrics=metrics, threshold=0.10)


@pytest.fixture
def audit_log():
    return WebhookAuditLog()


@pytest.fixture
def make_processor(engine, audit_log, metrics, alert_manager):
    def _make(gateway):
        return WebhookProcessor(gateway, engine, audit_log=audit_log, metrics=metrics, alerts=alert_manager)

    return _make


@pytest.fixture
def record_factory():
    return PaymentRecordFactory


@pytest.fixture
def webhook_factory():
    return WebhookFactory


@pytest.fixture
def payfast_passphrase():
    return PAYFAST_PASSPHRASE


@pytest.fixture
def paddle_secret():
    return PADDLE_WEBHOOK_SECRET


@pytest.fixture
def paymob_secret():
    return PAYMOB_HMAC_SECRET


@pytest.fixture
def webhook_gateways(mock_gateway, payfast_gateway):
    """One adapter per provider, none of which needs a provider API."""
    paddle = PaddleGateway(api_key="pdl_sdbx_apikey_test", webhook_secret=PADDLE_WEBHOOK_SECRET, sandbox=True)
    paymob = PaymobGateway(api_key="paymob-api-key", integration_id="4567", hmac_secret=PAYMOB_HMAC_SECRET)
    return {gateway.name: gateway for gateway in (mock_gateway, payfast_gateway, paddle, paymob)}


@pytest.fixture
def receiver(webhook_gateways, make_processor):
    server = WebhookReceiverServer({name: make_processor(gateway) for name, gateway in webhook_gateways.items()})
    server.start()
    yield server
    server.stop()
