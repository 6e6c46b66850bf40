"""Booking models - legacy direct bookings and the unified read projection."""

from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field

from src.models.task import Task
from src.models.task_application import TaskApplication, ApplicationStatus


APPLICATION_BOOKING_PREFIX = "task_"


class BookingStatus(str, Enum):
    """Statuses a caller may request for a booking."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @classmethod
    def parse(cls, value: str) -> "BookingStatus":
        """Parse a requested status, accepting 'assigned' as an alias of 'confirmed'."""
        normalized = (value or "").strip().lower()
        if normalized == "assigned":
            return cls.CONFIRMED
        return cls(normalized)

    @property
    def is_terminal(self) -> bool:
        return self in (BookingStatus.COMPLETED, BookingStatus.CANCELLED)


class DirectBooking(BaseModel):
    """Legacy booking made directly with a technician, without a task."""
    id: str = Field(..., description="Booking ID")
    customer_id: str = Field(..., description="Customer profile ID")
    technician_id: str = Field(..., description="Technician (tasker) profile ID")
    service_name: str = Field(..., description="Booked service")
    total_amount: Optional[float] = Field(None, ge=0, description="Agreed total")
    status: BookingStatus = Field(default=BookingStatus.PENDING, description="Booking status")
    completed_at: Optional[str] = None
    cancelled_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


_APPLICATION_TO_BOOKING = {
    ApplicationStatus.PENDING: BookingStatus.PENDING,
    ApplicationStatus.ACCEPTED: BookingStatus.CONFIRMED,
    ApplicationStatus.REJECTED: BookingStatus.CANCELLED,
    ApplicationStatus.COMPLETED: BookingStatus.COMPLETED,
}


class BookingView(BaseModel):
    """Read-only projection unifying direct bookings and accepted applications."""
    id: str = Field(..., description="task_<application id> or direct booking ID")
    source: str = Field(..., description="task_application or direct_booking")
    customer_id: str
    tasker_id: str
    title: str
    task_id: Optional[str] = None
    application_id: Optional[str] = None
    agreed_price: Optional[float] = None
    status: BookingStatus
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_application(cls, application: TaskApplication, task: Task) -> "BookingView":
        """Project an application and its task into booking shape."""
        status = _APPLICATION_TO_BOOKING[application.status]
        if task.status.value == "in_progress" and status == BookingStatus.CONFIRMED:
            status = BookingStatus.IN_PROGRESS
        return cls(
            id=f"{APPLICATION_BOOKING_PREFIX}{application.id}",
            source="task_application",
            customer_id=task.customer_id,
            tasker_id=application.tasker_id,
            title=task.title,
            task_id=task.id,
            application_id=application.id,
            agreed_price=application.proposed_price or task.budget,
            status=status,
            created_at=application.created_at,
            updated_at=application.updated_at,
        )

    @classmethod
    def from_direct_booking(cls, booking: DirectBooking) -> "BookingView":
        """Project a legacy direct booking."""
        return cls(
            id=booking.id,
            source="direct_booking",
            customer_id=booking.customer_id,
            tasker_id=booking.technician_id,
            title=booking.service_name,
            agreed_price=booking.total_amount,
            status=booking.status,
            created_at=booking.created_at,
            updated_at=booking.updated_at,
        )


def is_application_booking_ref(ref: str) -> bool:
    """Check whether a booking reference points at a task application."""
    return bool(ref) and ref.startswith(APPLICATION_BOOKING_PREFIX)


def application_id_from_ref(ref: str) -> str:
    """Strip the task_ prefix from an application-backed booking reference."""
    return ref[len(APPLICATION_BOOKING_PREFIX):]
