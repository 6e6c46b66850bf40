"""Status transition coordinator - the single entry point for booking and task status changes.

A transition runs a fixed sequence of steps against records that cannot be
updated in one transaction:

1. task application status
2. task status (the durability checkpoint)
3. status audit entry
4. notifications to both parties

followed by side effects that depend on the new status (chat creation on
confirmation, chat teardown and payment obligation on completion). Only the
checkpoint decides between ``failed`` and ``success``/``partial``.
"""

from dataclasses import dataclass
from typing import Any, Optional

from src.services.supabase_client import SupabaseGateway, generate_id, utc_now_iso
from src.services.notification_dispatcher import NotificationDispatcher
from src.services.chat_lifecycle import ChatLifecycleManager
from src.services.payment_obligations import PaymentObligationManager
from src.models.task import Task, TaskStatus
from src.models.task_application import TaskApplication, ApplicationStatus
from src.models.booking import (
    BookingStatus,
    BookingView,
    DirectBooking,
    application_id_from_ref,
    is_application_booking_ref,
)
from src.models.outcome import OperationOutcome
from src.utils.errors import InvalidInputError, NotFoundError
from src.utils.logging import get_structured_logger, log_timing, mask_user_id

logger = get_structured_logger(__name__)

TASKS_TABLE = "tasks"
APPLICATIONS_TABLE = "task_applications"
DIRECT_BOOKINGS_TABLE = "direct_bookings"
AUDIT_TABLE = "status_audit"

# requested booking status -> (application status, task status)
STATUS_MAP: dict[BookingStatus, tuple[ApplicationStatus, TaskStatus]] = {
    BookingStatus.PENDING: (ApplicationStatus.PENDING, TaskStatus.OPEN),
    BookingStatus.CONFIRMED: (ApplicationStatus.ACCEPTED, TaskStatus.ASSIGNED),
    BookingStatus.IN_PROGRESS: (ApplicationStatus.ACCEPTED, TaskStatus.IN_PROGRESS),
    BookingStatus.COMPLETED: (ApplicationStatus.COMPLETED, TaskStatus.COMPLETED),
    BookingStatus.CANCELLED: (ApplicationStatus.REJECTED, TaskStatus.CANCELLED),
}

_NOTIFY_EVENT = {
    BookingStatus.COMPLETED: "task_completed",
    BookingStatus.CANCELLED: "task_cancelled",
}


@dataclass
class ResolvedBooking:
    """What a booking reference points at."""
    ref: str
    task: Optional[Task] = None
    application: Optional[TaskApplication] = None
    direct_booking: Optional[DirectBooking] = None

    @property
    def is_direct(self) -> bool:
        return self.direct_booking is not None


def _terminal_backfill(status: str, completed_at: Optional[str], cancelled_at: Optional[str], now: str) -> dict:
    """Missing terminal timestamp to stamp on an already-terminal record."""
    if status == "completed" and not completed_at:
        return {"completed_at": now}
    if status == "cancelled" and not cancelled_at:
        return {"cancelled_at": now}
    return {}


class StatusTransitionCoordinator:
    """Keeps task, application, booking, chat and payment state in step."""

    def __init__(
        self,
        gateway: SupabaseGateway,
        notifier: NotificationDispatcher,
        chats: ChatLifecycleManager,
        obligations: PaymentObligationManager,
    ):
        self.gateway = gateway
        self.notifier = notifier
        self.chats = chats
        self.obligations = obligations

    async def resolve(self, ref: str) -> ResolvedBooking:
        """Resolve a booking or task reference.

        ``task_<id>`` is an application-backed booking; any other reference
        is tried as a legacy direct booking and then as a task id.
        """
        if not ref:
            raise InvalidInputError("Booking reference is required")

        if is_application_booking_ref(ref):
            app_row = await self.gateway.get(APPLICATIONS_TABLE, application_id_from_ref(ref))
            if not app_row:
                raise NotFoundError(f"Booking not found: {ref}")
            application = TaskApplication(**app_row)
            task_row = await self.gateway.get(TASKS_TABLE, application.task_id)
            if not task_row:
                raise NotFoundError(f"Task not found for booking {ref}")
            return ResolvedBooking(ref=ref, task=Task(**task_row), application=application)

        booking_row = await self.gateway.get(DIRECT_BOOKINGS_TABLE, ref)
        if booking_row:
            return ResolvedBooking(ref=ref, direct_booking=DirectBooking(**booking_row))

        task_row = await self.gateway.get(TASKS_TABLE, ref)
        if not task_row:
            raise NotFoundError(f"No booking or task found for {ref}")
        task = Task(**task_row)

        if task.tasker_id:
            app_row = await self.gateway.find_one(APPLICATIONS_TABLE, {"task_id": task.id, "tasker_id": task.tasker_id})
        else:
            app_row = await self.gateway.find_one(
                APPLICATIONS_TABLE, {"task_id": task.id, "status": ApplicationStatus.ACCEPTED.value}
            )
        return ResolvedBooking(ref=ref, task=task, application=TaskApplication(**app_row) if app_row else None)

    async def get_booking_view(self, ref: str) -> BookingView:
        """Read-only booking projection for a reference."""
        resolved = await self.resolve(ref)
        if resolved.is_direct:
            return BookingView.from_direct_booking(resolved.direct_booking)
        if resolved.application is None:
            raise NotFoundError(f"Task {ref} has no booking yet")
        return BookingView.from_application(resolved.application, resolved.task)

    async def transition(
        self,
        ref: str,
        requested_status: str,
        actor_id: Optional[str],
        reason: Optional[str] = None,
        override: bool = False,
    ) -> OperationOutcome:
        """Move a booking (and its task) to a new status.

        Already completed or cancelled records are left alone (a missing
        terminal timestamp is backfilled) unless ``override`` is set.
        """
        try:
            status = BookingStatus.parse(requested_status)
        except ValueError:
            raise InvalidInputError(f"Unsupported status: {requested_status}")

        resolved = await self.resolve(ref)

        with log_timing("status_transition", logger=logger, ref=ref, requested_status=status.value):
            if resolved.is_direct:
                return await self._transition_direct_booking(resolved, status, actor_id, reason, override)
            return await self._transition_task(resolved, status, actor_id, reason, override)

    async def complete_task(self, task_id: str, actor_id: Optional[str], reason: Optional[str] = None) -> OperationOutcome:
        """Drive a task to completed through the regular transition path."""
        return await self.transition(task_id, BookingStatus.COMPLETED.value, actor_id, reason)

    async def _transition_task(
        self,
        resolved: ResolvedBooking,
        status: BookingStatus,
        actor_id: Optional[str],
        reason: Optional[str],
        override: bool,
    ) -> OperationOutcome:
        task = resolved.task
        application = resolved.application
        previous = task.status
        app_status, task_status = STATUS_MAP[status]
        now = utc_now_iso()

        if previous.is_terminal and not override:
            backfill = _terminal_backfill(previous.value, task.completed_at, task.cancelled_at, now)
            if backfill:
                try:
                    await self.gateway.update(TASKS_TABLE, {"id": task.id}, backfill)
                except Exception as e:
                    logger.warning("Terminal timestamp backfill failed", task_id=task.id, error=str(e))
            logger.info(
                "Transition ignored for terminal task",
                task_id=task.id,
                current_status=previous.value,
                requested_status=status.value,
            )
            return OperationOutcome.noop(f"task already {previous.value}", task_id=task.id, status=previous.value)

        if status == BookingStatus.CONFIRMED and application is None:
            raise InvalidInputError(f"Task {task.id} has no application to confirm")

        failed_steps: list[str] = []

        # 1. application
        if application is not None:
            try:
                await self.gateway.update(
                    APPLICATIONS_TABLE, {"id": application.id},
                    {"status": app_status.value, "updated_at": now},
                )
            except Exception as e:
                logger.warning("Application status update failed", application_id=application.id, error=str(e))
                failed_steps.append("application_status")

        # 2. task (checkpoint)
        values: dict[str, Any] = {"status": task_status.value, "updated_at": now}
        if task_status == TaskStatus.COMPLETED:
            values["completed_at"] = now
        elif task_status == TaskStatus.CANCELLED:
            values["cancelled_at"] = now
            if reason:
                values["cancellation_reason"] = reason
        if status == BookingStatus.CONFIRMED:
            values["tasker_id"] = application.tasker_id

        try:
            updated = await self.gateway.update(TASKS_TABLE, {"id": task.id}, values)
            if not updated:
                raise NotFoundError(f"Task {task.id} disappeared during transition")
        except Exception as e:
            logger.error(
                "Task status update failed",
                task_id=task.id,
                requested_status=status.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            return OperationOutcome.failed(
                f"task status update failed: {e}",
                failed_steps=failed_steps + ["task_status"],
                task_id=task.id,
            )

        tasker_id = values.get("tasker_id") or task.tasker_id or (application.tasker_id if application else None)

        # 3. audit
        if not await self._audit(
            entity_type="task",
            entity_id=task.id,
            task_id=task.id,
            application_id=application.id if application else None,
            from_status=previous.value,
            to_status=task_status.value,
            requested_status=status,
            actor_id=actor_id,
            reason=reason,
            override=override,
        ):
            failed_steps.append("audit")

        # 4. notifications
        payload = {"task_id": task.id, "title": task.title, "status": status.value, "booking_ref": resolved.ref}
        event = _NOTIFY_EVENT.get(status, "booking_status_changed")
        if not await self.notifier.notify(task.customer_id, event, payload):
            failed_steps.append("notify_customer")
        tasker_event = "application_accepted" if status == BookingStatus.CONFIRMED else event
        if tasker_id and not await self.notifier.notify(tasker_id, tasker_event, payload):
            failed_steps.append("notify_tasker")

        data: dict[str, Any] = {
            "task_id": task.id,
            "application_id": application.id if application else None,
            "previous_status": previous.value,
            "status": task_status.value,
        }

        if status == BookingStatus.CONFIRMED:
            failed_steps.extend(await self._on_confirmed(task, application, resolved.ref, data))

        if status == BookingStatus.COMPLETED:
            if not await self.chats.teardown_for_completed_task(task.id):
                failed_steps.append("chat_teardown")
            try:
                obligation = await self.obligations.create_obligation_for_completed_task(task.id)
                data["obligation_id"] = obligation.data.get("obligation_id")
                failed_steps.extend(obligation.failed_steps)
            except Exception as e:
                logger.error(
                    "Obligation creation failed after completion",
                    task_id=task.id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                return OperationOutcome.failed(
                    f"obligation creation failed: {e}",
                    failed_steps=failed_steps + ["obligation"],
                    **data,
                )

        outcome = OperationOutcome.from_steps(failed_steps, **data)
        logger.info(
            "Task transitioned",
            task_id=task.id,
            from_status=previous.value,
            to_status=task_status.value,
            actor_id=mask_user_id(actor_id) if actor_id else None,
            outcome=outcome.status.value,
            failed_steps=failed_steps,
        )
        return outcome

    async def _on_confirmed(
        self,
        task: Task,
        application: TaskApplication,
        booking_ref: str,
        data: dict[str, Any],
    ) -> list[str]:
        failed_steps = []

        try:
            competitors = await self.gateway.list(
                APPLICATIONS_TABLE, {"task_id": task.id, "status": ApplicationStatus.PENDING.value}
            )
            for competitor in competitors:
                if competitor["id"] == application.id:
                    continue
                await self.gateway.update(
                    APPLICATIONS_TABLE,
                    {"id": competitor["id"], "status": ApplicationStatus.PENDING.value},
                    {"status": ApplicationStatus.REJECTED.value, "updated_at": utc_now_iso()},
                )
                await self.notifier.notify(competitor["tasker_id"], "application_rejected", {
                    "task_id": task.id, "title": task.title,
                })
        except Exception as e:
            logger.warning("Rejecting competing applications failed", task_id=task.id, error=str(e))
            failed_steps.append("reject_competing_applications")

        try:
            data["chat_id"] = await self.chats.ensure_chat(
                task.customer_id, application.tasker_id, booking_ref, task_id=task.id
            )
        except Exception as e:
            logger.warning("Chat creation failed", task_id=task.id, error=str(e))
            failed_steps.append("chat")

        return failed_steps

    async def _transition_direct_booking(
        self,
        resolved: ResolvedBooking,
        status: BookingStatus,
        actor_id: Optional[str],
        reason: Optional[str],
        override: bool,
    ) -> OperationOutcome:
        booking = resolved.direct_booking
        previous = booking.status
        now = utc_now_iso()

        if previous.is_terminal and not override:
            backfill = _terminal_backfill(previous.value, booking.completed_at, booking.cancelled_at, now)
            if backfill:
                try:
                    await self.gateway.update(DIRECT_BOOKINGS_TABLE, {"id": booking.id}, backfill)
                except Exception as e:
                    logger.warning("Terminal timestamp backfill failed", booking_id=booking.id, error=str(e))
            return OperationOutcome.noop(
                f"booking already {previous.value}", booking_id=booking.id, status=previous.value
            )

        values: dict[str, Any] = {"status": status.value, "updated_at": now}
        if status == BookingStatus.COMPLETED:
            values["completed_at"] = now
        elif status == BookingStatus.CANCELLED:
            values["cancelled_at"] = now

        try:
            updated = await self.gateway.update(DIRECT_BOOKINGS_TABLE, {"id": booking.id}, values)
            if not updated:
                raise NotFoundError(f"Booking {booking.id} disappeared during transition")
        except Exception as e:
            logger.error("Booking status update failed", booking_id=booking.id, error=str(e))
            return OperationOutcome.failed(
                f"booking status update failed: {e}", failed_steps=["booking_status"], booking_id=booking.id
            )

        failed_steps = []
        if not await self._audit(
            entity_type="direct_booking",
            entity_id=booking.id,
            from_status=previous.value,
            to_status=status.value,
            requested_status=status,
            actor_id=actor_id,
            reason=reason,
            override=override,
        ):
            failed_steps.append("audit")

        payload = {"booking_id": booking.id, "title": booking.service_name, "status": status.value}
        event = _NOTIFY_EVENT.get(status, "booking_status_changed")
        if not await self.notifier.notify(booking.customer_id, event, payload):
            failed_steps.append("notify_customer")
        if not await self.notifier.notify(booking.technician_id, event, payload):
            failed_steps.append("notify_tasker")

        data: dict[str, Any] = {"booking_id": booking.id, "previous_status": previous.value, "status": status.value}

        if status == BookingStatus.CONFIRMED:
            try:
                data["chat_id"] = await self.chats.ensure_chat(booking.customer_id, booking.technician_id, booking.id)
            except Exception as e:
                logger.warning("Chat creation failed", booking_id=booking.id, error=str(e))
                failed_steps.append("chat")
        elif status == BookingStatus.COMPLETED:
            if not await self.chats.teardown_for_booking(booking.id):
                failed_steps.append("chat_teardown")

        logger.info(
            "Direct booking transitioned",
            booking_id=booking.id,
            from_status=previous.value,
            to_status=status.value,
            failed_steps=failed_steps,
        )
        return OperationOutcome.from_steps(failed_steps, **data)

    async def _audit(self, requested_status: BookingStatus, override: bool, reason: Optional[str], **fields: Any) -> bool:
        if override:
            reason = f"override: {reason}" if reason else "override"
        try:
            await self.gateway.insert(AUDIT_TABLE, {
                "id": generate_id(),
                "requested_status": requested_status.value,
                "reason": reason,
                "created_at": utc_now_iso(),
                **fields,
            })
            return True
        except Exception as e:
            logger.warning("Status audit write failed", error=str(e), **{k: v for k, v in fields.items() if k.endswith("_id")})
            return False
