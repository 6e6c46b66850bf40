"""Error handling utilities."""

from typing import Optional


class MarketplaceError(Exception):
    """Base exception for the marketplace backend."""

    code = "internal_error"
    retryable = True

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFoundError(MarketplaceError):
    """Referenced entity does not exist."""

    code = "not_found"
    retryable = False


class InvalidInputError(MarketplaceError):
    """Rating, amount or account details failed validation."""

    code = "invalid_input"
    retryable = False


class InsufficientFundsError(MarketplaceError):
    """Wallet balance does not cover the requested amount."""

    code = "insufficient_funds"
    retryable = False


class DuplicateOperationError(MarketplaceError):
    """Operation already happened; callers treat this as a no-op."""

    code = "duplicate_operation"
    retryable = False


class GatewayError(MarketplaceError):
    """Payment provider unreachable or returned an unexpected shape."""

    code = "gateway_error"


class SupabaseError(MarketplaceError):
    """Supabase operation error."""

    code = "storage_error"


class WebhookVerificationError(MarketplaceError):
    """Payment webhook signature verification failed."""

    code = "invalid_signature"
    retryable = False
