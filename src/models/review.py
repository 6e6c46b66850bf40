"""Review model."""

from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


class ReviewDirection(str, Enum):
    """Who is reviewing whom."""
    CUSTOMER_TO_TASKER = "customer_to_tasker"
    TASKER_TO_CUSTOMER = "tasker_to_customer"


class Review(BaseModel):
    """Rating left by one party of a task for the other."""
    id: str = Field(..., description="Review ID")
    task_id: str = Field(..., description="Reviewed task")
    reviewer_id: str
    reviewee_id: str
    rating: int = Field(..., ge=1, le=5, description="Star rating from 1 to 5")
    comment: Optional[str] = None
    review_type: ReviewDirection
    is_anonymous: bool = False
    created_at: Optional[str] = None
