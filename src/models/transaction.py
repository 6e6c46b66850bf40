"""Ledger models - payment obligations and wallet movements share one table."""

from enum import Enum
from typing import Optional, Any
from pydantic import BaseModel, Field


class TransactionType(str, Enum):
    """Kinds of ledger rows."""
    TASK_PAYMENT = "task_payment"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    REFUND = "refund"


class TransactionStatus(str, Enum):
    """Ledger row states."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self not in (TransactionStatus.PENDING, TransactionStatus.PROCESSING)


# Obligations in these states may still be settled
SETTLEABLE_STATUSES = [TransactionStatus.PENDING.value, TransactionStatus.PROCESSING.value]

# Obligations in these states may be re-armed for a new checkout attempt
RETRYABLE_STATUSES = [
    TransactionStatus.PENDING.value,
    TransactionStatus.FAILED.value,
    TransactionStatus.CANCELLED.value,
]


class Transaction(BaseModel):
    """Row in the transactions ledger."""
    id: str = Field(..., description="Transaction ID")
    user_id: str = Field(..., description="Profile the row belongs to (payer for task payments)")
    type: TransactionType = Field(..., description="task_payment, deposit, withdrawal or refund")
    amount: float = Field(..., description="Amount in the platform currency")
    currency: str = Field(default="ETB")
    status: TransactionStatus = Field(default=TransactionStatus.PENDING)
    description: Optional[str] = None
    task_id: Optional[str] = Field(None, description="Task the row relates to")
    payee_id: Optional[str] = Field(None, description="Tasker to be credited (task payments)")
    tx_ref: Optional[str] = Field(None, description="External gateway reference")
    checkout_url: Optional[str] = Field(None, description="Hosted checkout page for the current tx_ref")
    original_payment_id: Optional[str] = Field(None, description="Task payment a refund row returns funds for")
    payment_method_id: Optional[str] = None
    breakdown: Optional[dict[str, Any]] = Field(None, description="Checkout fee breakdown")
    metadata: Optional[dict[str, Any]] = Field(default_factory=dict)
    failure_reason: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None


class PaymentObligation(Transaction):
    """Task payment owed by a customer to a tasker."""
    type: TransactionType = Field(default=TransactionType.TASK_PAYMENT)

    @property
    def payer_id(self) -> str:
        return self.user_id

    @property
    def is_settled(self) -> bool:
        return self.status == TransactionStatus.COMPLETED
