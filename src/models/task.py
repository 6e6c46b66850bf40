"""Task models."""

from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


class TaskStatus(str, Enum):
    """Task life cycle states."""
    OPEN = "open"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.CANCELLED)


class TaskPaymentStatus(str, Enum):
    """Payment state of a task as seen by the customer."""
    UNPAID = "unpaid"
    PENDING = "pending"
    COMPLETED = "completed"


class Task(BaseModel):
    """Task posted by a customer, eventually assigned to a tasker."""
    id: str = Field(..., description="Task ID")
    title: str = Field(..., description="Task title")
    description: Optional[str] = Field(None, description="Task description")
    budget: Optional[float] = Field(None, ge=0, description="Customer's original budget")
    final_price: Optional[float] = Field(None, ge=0, description="Agreed price, set on assignment")
    status: TaskStatus = Field(default=TaskStatus.OPEN, description="Status: open, assigned, in_progress, completed, cancelled")
    customer_id: str = Field(..., description="Customer (task owner) profile ID")
    tasker_id: Optional[str] = Field(None, description="Assigned tasker profile ID")
    payment_status: Optional[TaskPaymentStatus] = Field(None, description="Payment status: unpaid, pending, completed")
    completed_at: Optional[str] = None
    cancelled_at: Optional[str] = None
    cancellation_reason: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def payable_amount(self) -> tuple[float, str]:
        """Amount owed for the task and which column it came from."""
        if self.final_price:
            return self.final_price, "final_price"
        return self.budget or 0.0, "budget"
