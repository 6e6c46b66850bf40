"""Review submission; the first review on an unfinished task completes it."""

from typing import Optional, Union

from src.services.supabase_client import SupabaseGateway, generate_id, utc_now_iso
from src.services.notification_dispatcher import NotificationDispatcher
from src.services.status_coordinator import StatusTransitionCoordinator
from src.services.background import KeyedLocks
from src.models.task import Task
from src.models.review import ReviewDirection
from src.models.outcome import OperationOutcome, OutcomeStatus
from src.utils.errors import InvalidInputError, NotFoundError, SupabaseError
from src.utils.logging import get_structured_logger, mask_user_id, sanitize_review_text

logger = get_structured_logger(__name__)

REVIEWS_TABLE = "reviews"
TASKS_TABLE = "tasks"


class RatingCompletionTrigger:
    """Stores reviews and hands completion to the status coordinator."""

    def __init__(
        self,
        gateway: SupabaseGateway,
        notifier: NotificationDispatcher,
        coordinator: StatusTransitionCoordinator,
    ):
        self.gateway = gateway
        self.notifier = notifier
        self.coordinator = coordinator
        self._review_locks = KeyedLocks()

    async def submit_review(
        self,
        task_id: str,
        reviewer_id: str,
        reviewee_id: str,
        rating: int,
        comment: Optional[str],
        direction: Union[ReviewDirection, str],
        is_anonymous: bool = False,
    ) -> OperationOutcome:
        """Record a review for one direction of a task.

        A second review for the same direction is a noop. When the task is
        not yet completed or cancelled, the review completes it, which also
        creates the payment obligation and removes the task chat.
        """
        try:
            direction = ReviewDirection(direction)
        except ValueError:
            raise InvalidInputError(f"Unknown review direction: {direction}")

        if not isinstance(rating, int) or isinstance(rating, bool) or not 1 <= rating <= 5:
            raise InvalidInputError("Rating must be a whole number from 1 to 5")

        task_row = await self.gateway.get(TASKS_TABLE, task_id)
        if not task_row:
            raise NotFoundError(f"Task not found: {task_id}")
        task = Task(**task_row)

        if direction == ReviewDirection.CUSTOMER_TO_TASKER:
            expected_reviewer, expected_reviewee = task.customer_id, task.tasker_id
        else:
            expected_reviewer, expected_reviewee = task.tasker_id, task.customer_id

        if not expected_reviewee:
            raise InvalidInputError(f"Task {task_id} has no assigned tasker to review")
        if reviewer_id != expected_reviewer or reviewee_id != expected_reviewee:
            raise InvalidInputError("Reviewer and reviewee must be the task's parties for this direction")

        async with self._review_locks.hold((task_id, direction.value)):
            existing = await self._existing_review(task_id, direction)
            if existing:
                logger.info("Review already submitted", task_id=task_id, direction=direction.value)
                return OperationOutcome.noop("review already exists", task_id=task_id, review_id=existing["id"])

            try:
                review = await self.gateway.insert(REVIEWS_TABLE, {
                    "id": generate_id(),
                    "task_id": task_id,
                    "reviewer_id": reviewer_id,
                    "reviewee_id": reviewee_id,
                    "rating": rating,
                    "comment": comment,
                    "review_type": direction.value,
                    "is_anonymous": is_anonymous,
                    "created_at": utc_now_iso(),
                })
            except SupabaseError:
                # The unique key on (task_id, review_type) rejects a review another process just wrote
                existing = await self._existing_review(task_id, direction)
                if existing:
                    logger.info("Review written concurrently", task_id=task_id, direction=direction.value)
                    return OperationOutcome.noop("review already exists", task_id=task_id, review_id=existing["id"])
                raise

        logger.info(
            "Review submitted",
            task_id=task_id,
            review_id=review["id"],
            rating=rating,
            direction=direction.value,
            reviewer_id=mask_user_id(reviewer_id),
            comment=sanitize_review_text(comment or ""),
        )

        failed_steps = []
        if not await self.notifier.notify(reviewee_id, "review_received", {
            "task_id": task_id,
            "title": task.title,
            "rating": rating,
            "review_id": review["id"],
        }):
            failed_steps.append("notify_reviewee")

        data = {"task_id": task_id, "review_id": review["id"], "task_completed": False}

        if task.status.is_terminal:
            return OperationOutcome.from_steps(failed_steps, **data)

        completion = await self.coordinator.complete_task(task_id, reviewer_id, reason=f"review:{direction.value}")
        data["task_completed"] = completion.status != OutcomeStatus.FAILED
        data["completion"] = completion.model_dump()
        if completion.status == OutcomeStatus.FAILED:
            # The review stands; the completion can be retried through the coordinator
            return OperationOutcome(
                status=OutcomeStatus.PARTIAL,
                reason=f"review saved but task completion failed: {completion.reason}",
                failed_steps=failed_steps + ["task_completion"] + completion.failed_steps,
                data=data,
            )
        return OperationOutcome.from_steps(failed_steps + completion.failed_steps, **data)

    async def _existing_review(self, task_id: str, direction: ReviewDirection) -> Optional[dict]:
        return await self.gateway.find_one(REVIEWS_TABLE, {"task_id": task_id, "review_type": direction.value})
