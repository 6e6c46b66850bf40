"""TaskApplication model - a tasker's bid on a task."""

from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


class ApplicationStatus(str, Enum):
    """Task application states."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    COMPLETED = "completed"


class TaskApplication(BaseModel):
    """Tasker's bid; the accepted one is the effective assignment."""
    id: str = Field(..., description="Application ID")
    task_id: str = Field(..., description="Task ID (FK)")
    tasker_id: str = Field(..., description="Applying tasker profile ID")
    proposed_price: Optional[float] = Field(None, ge=0, description="Tasker's proposed price")
    message: Optional[str] = Field(None, description="Cover message")
    status: ApplicationStatus = Field(default=ApplicationStatus.PENDING, description="Status: pending, accepted, rejected, completed")
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
