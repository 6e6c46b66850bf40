"""Chapa payment webhook endpoint for Vercel."""

from http.server import BaseHTTPRequestHandler
import json
import logging

# Setup basic logging first
logging.basicConfig(level=logging.INFO)
_logger = logging.getLogger(__name__)

# Lazy imports to avoid initialization errors
_services_loaded = False
_get_engine = None
_run_sync = None


def _load_services():
    """Lazy load services to avoid import errors."""
    global _services_loaded, _get_engine, _run_sync

    if _services_loaded:
        return True

    try:
        from src.services.engine import get_engine, run_sync

        _get_engine = get_engine
        _run_sync = run_sync
        _services_loaded = True
        return True
    except Exception as e:
        _logger.error(f"Failed to load services: {e}")
        return False


async def process_webhook(raw_body: str, headers: dict, engine) -> tuple[int, dict]:
    """Verify and apply a webhook; returns (HTTP status, JSON body)."""
    from src.services.chapa_verifier import signature_from_headers
    from src.utils.errors import InvalidInputError, MarketplaceError, NotFoundError, WebhookVerificationError
    from src.utils.logging import correlation_context

    with correlation_context():
        signature = signature_from_headers(headers)
        try:
            outcome = await engine.reconciler.handle_webhook(raw_body, signature)
        except WebhookVerificationError:
            _logger.warning(f"Chapa signature verification failed - has_signature={bool(signature)}")
            return 401, {"error": "invalid signature"}
        except (InvalidInputError, NotFoundError) as e:
            return 400, {"error": e.code, "message": e.message}
        except MarketplaceError as e:
            _logger.error(f"Chapa webhook processing failed: {e.message}")
            # Non-2xx makes Chapa redeliver
            return 503 if e.retryable else 422, {"error": e.code}

    return 200, {"ok": True, "status": outcome.status.value, "reason": outcome.reason}


class handler(BaseHTTPRequestHandler):
    """Vercel serverless function handler for Chapa webhooks."""

    def _send_json(self, status: int, body: dict):
        self.send_response(status)
        self.send_header('Content-Type', 'application/json')
        self.end_headers()
        self.wfile.write(json.dumps(body).encode('utf-8'))

    def do_POST(self):
        """Handle POST request from Chapa."""
        try:
            content_length = int(self.headers.get('Content-Length', 0))
            raw_body = self.rfile.read(content_length).decode('utf-8') if content_length > 0 else ""

            if not _load_services():
                self._send_json(500, {"error": "service initialization failed"})
                return

            status, body = _run_sync(process_webhook(raw_body, dict(self.headers), _get_engine()))
            self._send_json(status, body)

        except Exception as e:
            _logger.error(f"Error processing Chapa webhook: {e}")
            self._send_json(500, {"error": "internal server error"})

    def do_GET(self):
        """Handle GET request (health check)."""
        self._send_json(200, {"status": "ok", "endpoint": "chapa/webhook"})
