"""Wallet and withdrawal models."""

from enum import Enum
from typing import Optional, Any
from pydantic import BaseModel, Field


class Wallet(BaseModel):
    """Tasker's internal balance. The balance never goes below zero."""
    id: str = Field(..., description="Wallet ID")
    user_id: str = Field(..., description="Owner profile ID")
    balance: float = Field(default=0.0, ge=0, description="Available balance")
    currency: str = Field(default="ETB")
    is_active: bool = True
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class WithdrawalMethod(str, Enum):
    """Supported payout rails."""
    BANK_TRANSFER = "bank_transfer"
    MOBILE_MONEY = "mobile_money"


class WithdrawalStatus(str, Enum):
    """Withdrawal order states."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class WithdrawalOrder(BaseModel):
    """Tasker's request to move wallet funds out of the platform."""
    id: str = Field(..., description="Order ID")
    user_id: str = Field(..., description="Requesting tasker profile ID")
    amount: float = Field(..., gt=0, description="Requested amount")
    currency: str = Field(default="ETB")
    withdrawal_method: WithdrawalMethod
    withdrawal_details: dict[str, Any] = Field(default_factory=dict)
    processing_fee: float = Field(default=0.0, ge=0)
    net_amount: float = Field(..., description="Amount after the processing fee")
    status: WithdrawalStatus = Field(default=WithdrawalStatus.PENDING)
    processed_by: Optional[str] = None
    processed_at: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
