"""Notification dispatcher - writes in-app notifications for lifecycle events."""

from typing import Any, Optional

from src.services.supabase_client import SupabaseGateway, generate_id
from src.utils.logging import get_structured_logger, mask_user_id

logger = get_structured_logger(__name__)

NOTIFICATIONS_TABLE = "notifications"

# event kind -> (notification type, title, message template)
EVENT_TEMPLATES: dict[str, tuple[str, str, str]] = {
    "booking_status_changed": ("booking", "Booking Updated", "{title} is now {status}."),
    "application_accepted": ("application", "Application Accepted", "Your application for {title} was accepted."),
    "application_rejected": ("application", "Application Rejected", "Another tasker was selected for {title}."),
    "task_completed": ("task", "Task Completed", "{title} has been marked as completed."),
    "task_cancelled": ("task", "Task Cancelled", "{title} has been cancelled."),
    "payment_required": ("payment", "Payment Required", "Please pay {amount} {currency} for {title}."),
    "payment_sent": ("payment", "Payment Sent", "Your payment of {amount} {currency} was completed."),
    "payment_received": ("payment", "Payment Received", "You received {amount} {currency}."),
    "payment_failed": ("payment", "Payment Failed", "Your payment of {amount} {currency} did not go through."),
    "refund_requested": ("payment", "Refund Requested", "A refund of {amount} {currency} for {title} is being processed."),
    "withdrawal_requested": ("payment", "Withdrawal Requested", "Your withdrawal of {amount} {currency} is pending review."),
    "withdrawal_completed": ("payment", "Withdrawal Completed", "Your withdrawal of {amount} {currency} was processed."),
    "withdrawal_failed": ("payment", "Withdrawal Failed", "Your withdrawal of {amount} {currency} could not be processed."),
    "review_received": ("task", "New Review", "You received a {rating}-star review."),
}

_GENERIC_TEMPLATE = ("system", "Update", "You have a new update.")


class _SafeDict(dict):
    def __missing__(self, key):
        return ""


def render_notification(event_kind: str, payload: dict[str, Any]) -> tuple[str, str, str]:
    """Render (type, title, message) for an event kind; unknown kinds get a generic text."""
    notification_type, title, template = EVENT_TEMPLATES.get(event_kind, _GENERIC_TEMPLATE)
    values = _SafeDict({"title": "your task", "currency": "ETB"})
    values.update({k: v for k, v in payload.items() if v is not None})
    return notification_type, title, template.format_map(values)


class NotificationDispatcher:
    """Fire-and-forget in-app notifications. Never raises."""

    def __init__(self, gateway: SupabaseGateway):
        self.gateway = gateway

    async def notify(self, user_id: Optional[str], event_kind: str, payload: Optional[dict[str, Any]] = None) -> bool:
        """Write a notification row for a user; returns False when it could not be written."""
        if not user_id:
            logger.debug("Skipping notification without recipient", event_kind=event_kind)
            return False

        payload = payload or {}
        try:
            notification_type, title, message = render_notification(event_kind, payload)
            await self.gateway.insert(NOTIFICATIONS_TABLE, {
                "id": generate_id(),
                "user_id": user_id,
                "title": title,
                "message": message,
                "type": notification_type,
                "data": {"event_kind": event_kind, **payload},
                "is_read": False,
            })
            logger.debug(
                "Notification dispatched",
                event_kind=event_kind,
                user_id=mask_user_id(user_id),
            )
            return True
        except Exception as e:
            logger.warning(
                "Failed to dispatch notification",
                event_kind=event_kind,
                user_id=mask_user_id(user_id),
                error=str(e),
                error_type=type(e).__name__,
            )
            return False
