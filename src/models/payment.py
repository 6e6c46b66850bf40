"""External checkout models - fee breakdown, checkout session and polling result."""

from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


class PaymentBreakdown(BaseModel):
    """Split of what the customer pays at checkout."""
    subtotal: float = Field(..., description="Task price owed to the tasker")
    tax: float = Field(..., description="VAT on the subtotal")
    platform_fee: float = Field(..., description="Platform commission on the subtotal")
    total: float = Field(..., description="Amount charged by the gateway")
    net_to_tasker: float = Field(..., description="Amount credited to the tasker wallet")
    currency: str = "ETB"

    @classmethod
    def compute(cls, subtotal: float, vat_rate: float, fee_rate: float, currency: str = "ETB") -> "PaymentBreakdown":
        """Compute the breakdown, rounding each component to two decimals."""
        subtotal = round(subtotal, 2)
        tax = round(subtotal * vat_rate, 2)
        platform_fee = round(subtotal * fee_rate, 2)
        return cls(
            subtotal=subtotal,
            tax=tax,
            platform_fee=platform_fee,
            total=round(subtotal + tax + platform_fee, 2),
            net_to_tasker=subtotal,
            currency=currency,
        )


class CustomerInfo(BaseModel):
    """Payer details forwarded to the gateway."""
    email: str
    first_name: str
    last_name: str = ""
    phone: Optional[str] = None


class CheckoutSession(BaseModel):
    """Checkout started with the gateway."""
    tx_ref: str
    checkout_url: str
    obligation_id: str
    breakdown: PaymentBreakdown


class GatewayStatus(str, Enum):
    """Gateway-reported transaction status, normalised."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @classmethod
    def from_gateway(cls, raw: Optional[str]) -> "GatewayStatus":
        value = (raw or "").strip().lower()
        if value == "success":
            return cls.COMPLETED
        if value in ("failed", "failure"):
            return cls.FAILED
        if value == "cancelled":
            return cls.CANCELLED
        return cls.PENDING

    @property
    def is_terminal(self) -> bool:
        return self != GatewayStatus.PENDING


class PollState(str, Enum):
    """States of a single checkout polling run."""
    INITIALIZED = "initialized"
    AWAITING_GATEWAY = "awaiting_gateway"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    STOPPED = "stopped"


class PollResult(BaseModel):
    """How a polling run ended."""
    tx_ref: str
    state: PollState
    attempts: int = 0
    finalized: bool = Field(default=False, description="True when this run applied the settlement")
