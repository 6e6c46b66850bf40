"""Lifecycle engine - builds and wires the services for one process."""

import asyncio
from typing import Optional

from supabase import Client

from src.services.supabase_client import SupabaseGateway, close_supabase_client
from src.services.notification_dispatcher import NotificationDispatcher
from src.services.background import BackgroundTaskSupervisor
from src.services.chat_lifecycle import ChatLifecycleManager
from src.services.payment_obligations import PaymentObligationManager
from src.services.status_coordinator import StatusTransitionCoordinator
from src.services.chapa_client import ChapaClient
from src.services.payment_reconciler import ExternalPaymentReconciler
from src.services.rating_trigger import RatingCompletionTrigger
from src.utils.logging import get_structured_logger

logger = get_structured_logger(__name__)


class LifecycleEngine:
    """Owns one instance of every lifecycle service.

    Construct it once per process (or per test) and pass it to request
    handlers; ``aclose`` cancels background jobs and releases HTTP clients.
    """

    def __init__(
        self,
        gateway: Optional[SupabaseGateway] = None,
        chapa: Optional[ChapaClient] = None,
        supabase_client: Optional[Client] = None,
        settlement_delay: Optional[float] = None,
        poll_interval: Optional[float] = None,
        poll_max_attempts: Optional[int] = None,
    ):
        self.gateway = gateway or SupabaseGateway(supabase_client)
        self.supervisor = BackgroundTaskSupervisor()
        self.notifier = NotificationDispatcher(self.gateway)
        self.chats = ChatLifecycleManager(self.gateway)
        self.obligations = PaymentObligationManager(
            self.gateway, self.notifier, self.supervisor, settlement_delay=settlement_delay
        )
        self.coordinator = StatusTransitionCoordinator(self.gateway, self.notifier, self.chats, self.obligations)
        self.chapa = chapa or ChapaClient()
        self.reconciler = ExternalPaymentReconciler(
            self.gateway,
            self.obligations,
            self.notifier,
            self.chapa,
            self.supervisor,
            poll_interval=poll_interval,
            max_attempts=poll_max_attempts,
        )
        self.ratings = RatingCompletionTrigger(self.gateway, self.notifier, self.coordinator)
        logger.debug("Lifecycle engine constructed")

    async def __aenter__(self) -> "LifecycleEngine":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()
        return False

    async def aclose(self) -> None:
        await self.supervisor.shutdown()
        await self.chapa.close()
        await close_supabase_client()
        logger.info("Lifecycle engine closed")


# Process-wide engine for serverless handlers
_engine: Optional[LifecycleEngine] = None


def get_engine() -> LifecycleEngine:
    """Get or create the process's engine."""
    global _engine
    if _engine is None:
        _engine = LifecycleEngine()
    return _engine


def run_sync(coro):
    """Run a coroutine to completion from synchronous handler code."""
    try:
        loop = asyncio.get_event_loop()
    except RuntimeError:
        loop = None
    if loop is None or loop.is_closed():
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
    return loop.run_until_complete(coro)
