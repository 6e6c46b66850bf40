"""Status audit entry - append-only record of applied status changes."""

from typing import Optional
from pydantic import BaseModel, Field


class StatusAuditEntry(BaseModel):
    """Who moved which record to which status, and why. Never updated."""
    id: str = Field(..., description="Audit row ID")
    entity_type: str = Field(..., description="task or direct_booking")
    entity_id: str = Field(..., description="ID of the record whose status changed")
    task_id: Optional[str] = None
    application_id: Optional[str] = None
    from_status: Optional[str] = None
    to_status: str = Field(..., description="Status written to the record")
    requested_status: str = Field(..., description="Booking status the caller asked for")
    actor_id: Optional[str] = Field(None, description="Profile that requested the change")
    reason: Optional[str] = None
    created_at: Optional[str] = None
