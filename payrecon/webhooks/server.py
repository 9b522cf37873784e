import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Self
from urllib.parse import parse_qsl, urlsplit

from payrecon.errors import PaymentGatewayError
from payrecon.webhooks.processor import WebhookProcessor

logger = logging.getLogger(__name__)

WEBHOOK_PATH_PREFIX = "/webhooks/"


class _WebhookHandler(BaseHTTPRequestHandler):
    """Accepts ``POST /webhooks/<provider>`` and hands the raw body to its processor."""

    def _send_json(self, code: int, body: dict) -> None:
        data = json.dumps(body).encode()
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def do_GET(self):
        if urlsplit(self.path).path == "/health":
            self._send_json(200, {"status": "ok"})
            return
        self._send_json(404, {"error": "not found"})

    def do_POST(self):
        content_length = int(self.headers.get("Content-Length", 0))
        body = self.rfile.read(content_length)

        url = urlsplit(self.path)
        if not url.path.startswith(WEBHOOK_PATH_PREFIX):
            self._send_json(404, {"error": "not found"})
            return
        provider = url.path[len(WEBHOOK_PATH_PREFIX):].strip("/")
        processors = self.server.processors  # type: ignore[attr-defined]
        processor = processors.get(provider)
        if processor is None:
            self._send_json(404, {"error": f"unknown provider: {provider}"})
            return

        query = dict(parse_qsl(url.query, keep_blank_values=True))
        signature = processor.gateway.extract_signature(dict(self.headers.items()), query)
        try:
            result = processor.handle(body, signature)
        except PaymentGatewayError:
            # Provider will redeliver; the record has not been changed.
            logger.exception("webhook for %s could not be reconciled", provider)
            self._send_json(503, {"error": "temporarily unable to process webhook"})
            return
        except Exception:
            logger.exception("webhook for %s failed", provider)
            self._send_json(500, {"error": "internal error"})
            return

        self._send_json(
            result.http_status,
            {
                "webhook_id": result.webhook_id,
                "outcome": result.outcome.value,
                "payment_intent_id": result.payment_intent_id,
            },
        )

    def log_message(self, format, *args):
        """Suppress default request logging."""
        pass


class WebhookReceiverServer:
    """HTTP endpoint for provider webhooks, one path per configured provider."""

    def __init__(self, processors: dict[str, WebhookProcessor] | None = None, host: str = "127.0.0.1", port: int = 0):
        self._host = host
        self._port = port
        self._processors: dict[str, WebhookProcessor] = dict(processors or {})
        self._server: ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None

    def add_processor(self, processor: WebhookProcessor) -> Self:
        self._processors[processor.provider] = processor
        return self

    def start(self) -> None:
        self._server = ThreadingHTTPServer((self._host, self._port), _WebhookHandler)
        self._server.processors = self._processors  # type: ignore[attr-defined]
        # Actual port when bound to 0
        self._port = self._server.server_address[1]
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()
        logger.info("webhook receiver listening on %s:%d for %s", self._host, self._port, sorted(self._processors))

    def stop(self) -> None:
        if self._server:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None

    @property
    def processors(self) -> dict[str, WebhookProcessor]:
        return dict(self._processors)

    @property
    def port(self) -> int:
        return self._port

    @property
    def base_url(self) -> str:
        return f"http://{self._host}:{self._port}"

    def url_for(self, provider: str) -> str:
        return f"{self.base_url}{WEBHOOK_PATH_PREFIX}{provider}"
