"""Chat lifecycle - open a chat when a tasker is confirmed, tear it down on completion."""

from typing import Optional

from src.services.supabase_client import SupabaseGateway, generate_id, utc_now_iso
from src.services.background import KeyedLocks
from src.models.chat import ChatStatus, MessageType
from src.utils.logging import get_structured_logger, mask_user_id

logger = get_structured_logger(__name__)

CHATS_TABLE = "chats"
MESSAGES_TABLE = "messages"

WELCOME_MESSAGE = "Booking confirmed. You can now chat about the task details here."


class ChatLifecycleManager:
    """Creates at most one chat per (customer, tasker) pair and removes it when work ends."""

    def __init__(self, gateway: SupabaseGateway):
        self.gateway = gateway
        self._pair_locks = KeyedLocks()

    async def ensure_chat(
        self,
        customer_id: str,
        tasker_id: str,
        booking_ref: Optional[str],
        task_id: Optional[str] = None,
    ) -> str:
        """Return the pair's chat id, creating the chat if needed.

        An existing chat is re-tagged with the latest booking and task so a
        later teardown by task finds it. Storage errors propagate.
        """
        async with self._pair_locks.hold((customer_id, tasker_id)):
            existing = await self.gateway.find_one(CHATS_TABLE, {
                "customer_id": customer_id,
                "tasker_id": tasker_id,
            })

            if existing:
                tags = {}
                if task_id and existing.get("task_id") != task_id:
                    tags["task_id"] = task_id
                if booking_ref and existing.get("booking_id") != booking_ref:
                    tags["booking_id"] = booking_ref
                if tags:
                    tags["updated_at"] = utc_now_iso()
                    await self.gateway.update(CHATS_TABLE, {"id": existing["id"]}, tags)
                logger.debug("Reusing existing chat", chat_id=existing["id"])
                return existing["id"]

            now = utc_now_iso()
            chat = await self.gateway.insert(CHATS_TABLE, {
                "id": generate_id(),
                "customer_id": customer_id,
                "tasker_id": tasker_id,
                "booking_id": booking_ref,
                "task_id": task_id,
                "status": ChatStatus.ACTIVE.value,
                "last_message_at": now,
                "created_at": now,
            })

            await self.gateway.insert(MESSAGES_TABLE, {
                "id": generate_id(),
                "chat_id": chat["id"],
                "sender_id": None,
                "content": WELCOME_MESSAGE,
                "message_type": MessageType.SYSTEM.value,
                "is_read": False,
                "created_at": now,
            })

            logger.info(
                "Chat created",
                chat_id=chat["id"],
                customer_id=mask_user_id(customer_id),
                tasker_id=mask_user_id(tasker_id),
                task_id=task_id,
            )
            return chat["id"]

    async def teardown_for_completed_task(self, task_id: str) -> bool:
        """Delete the chats (and their messages) attached to a task."""
        return await self._teardown({"task_id": task_id}, task_id=task_id)

    async def teardown_for_booking(self, booking_id: str) -> bool:
        """Delete the chats (and their messages) attached to a legacy booking."""
        return await self._teardown({"booking_id": booking_id}, booking_id=booking_id)

    async def _teardown(self, filters: dict, **context) -> bool:
        try:
            chats = await self.gateway.list(CHATS_TABLE, filters)
            if not chats:
                logger.debug("No chat to tear down", **context)
                return True

            for chat in chats:
                await self.gateway.delete(MESSAGES_TABLE, {"chat_id": chat["id"]})
                await self.gateway.delete(CHATS_TABLE, {"id": chat["id"]})
                logger.info("Chat deleted", chat_id=chat["id"], **context)
            return True
        except Exception as e:
            logger.error(
                "Chat teardown failed",
                error=str(e),
                error_type=type(e).__name__,
                **context,
            )
            return False
