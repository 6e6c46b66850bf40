"""Health check endpoint."""

from http.server import BaseHTTPRequestHandler
import json
import os

from src.utils.config import PaymentConfig


def health_payload() -> dict:
    """Service status plus whether the payment gateway can be reached."""
    return {
        "status": "ok",
        "service": "muyacon-backend",
        "environment": os.environ.get("ENVIRONMENT", "production"),
        "payments_configured": PaymentConfig.gateway_configured(),
        "currency": PaymentConfig.CURRENCY,
    }


class handler(BaseHTTPRequestHandler):
    """Health check handler for Vercel serverless function."""

    def do_GET(self):
        self.send_response(200)
        self.send_header('Content-Type', 'application/json')
        self.end_headers()
        self.wfile.write(json.dumps(health_payload()).encode('utf-8'))

    def do_POST(self):
        """Same as GET."""
        self.do_GET()
