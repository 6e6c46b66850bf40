"""Payment and lifecycle configuration read from the environment."""

import os
from typing import Optional


def _env_float(name: str, default: str) -> float:
    return float(os.environ.get(name, default))


def _env_int(name: str, default: str) -> int:
    return int(os.environ.get(name, default))


class PaymentConfig:
    """Chapa gateway, fee and reconciliation settings."""

    CHAPA_BASE_URL = os.environ.get("CHAPA_BASE_URL", "https://api.chapa.co/v1")
    CHAPA_SECRET_KEY = os.environ.get("CHAPA_SECRET_KEY", "").strip()
    CHAPA_WEBHOOK_SECRET = os.environ.get("CHAPA_WEBHOOK_SECRET", "").strip()
    CHAPA_CALLBACK_URL = os.environ.get("CHAPA_CALLBACK_URL", "")
    CHAPA_RETURN_URL = os.environ.get("CHAPA_RETURN_URL", "")
    CHAPA_TIMEOUT_SECONDS = _env_int("CHAPA_TIMEOUT_SECONDS", "30")
    CHAPA_MAX_RETRIES = _env_int("CHAPA_MAX_RETRIES", "3")
    COMPANY_NAME = os.environ.get("COMPANY_NAME", "Muyacon")
    TX_REF_PREFIX = os.environ.get("TX_REF_PREFIX", "MUYA")

    CURRENCY = os.environ.get("PAYMENT_CURRENCY", "ETB")
    VAT_RATE = _env_float("VAT_RATE", "0.15")
    PLATFORM_FEE_RATE = _env_float("PLATFORM_FEE_RATE", "0.05")

    POLL_INTERVAL_SECONDS = _env_float("POLL_INTERVAL_SECONDS", "3")
    POLL_MAX_ATTEMPTS = _env_int("POLL_MAX_ATTEMPTS", "200")
    SETTLEMENT_DELAY_SECONDS = _env_float("SETTLEMENT_DELAY_SECONDS", "2")

    # Withdrawal methods available to taskers
    WITHDRAWAL_METHODS = {
        "bank_transfer": {
            "name": "Bank Transfer",
            "min_amount": 100.0,
            "max_amount": 50000.0,
            "fee": 0.0,
            "required_details": ("bank_name", "account_number", "account_holder"),
        },
        "mobile_money": {
            "name": "Mobile Money",
            "min_amount": 10.0,
            "max_amount": 10000.0,
            "fee": 5.0,
            "required_details": ("provider", "phone_number"),
        },
    }

    @classmethod
    def withdrawal_method(cls, method: str) -> Optional[dict]:
        """Look up a withdrawal method's limits and required account fields."""
        return cls.WITHDRAWAL_METHODS.get(method)

    @classmethod
    def gateway_configured(cls) -> bool:
        """Check that a usable Chapa secret key is set."""
        key = cls.CHAPA_SECRET_KEY
        return bool(key) and "your_secret_key_here" not in key
