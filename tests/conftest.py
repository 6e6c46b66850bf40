"""Shared pytest fixtures and configuration."""

import os
import pytest
from freezegun import freeze_time

# Set test environment variables before any src module reads them
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-key")
os.environ.setdefault("CHAPA_SECRET_KEY", "CHASECK_TEST-testsecretkey0123456789")
os.environ.setdefault("CHAPA_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("PAYMENT_CURRENCY", "ETB")
os.environ.setdefault("VAT_RATE", "0.15")
os.environ.setdefault("PLATFORM_FEE_RATE", "0.05")

from src.services.background import BackgroundTaskSupervisor  # noqa: E402
from src.services.chat_lifecycle import ChatLifecycleManager  # noqa: E402
from src.services.engine import LifecycleEngine  # noqa: E402
from src.services.notification_dispatcher import NotificationDispatcher  # noqa: E402
from src.services.payment_obligations import PaymentObligationManager  # noqa: E402
from src.services.payment_reconciler import ExternalPaymentReconciler  # noqa: E402
from src.services.rating_trigger import RatingCompletionTrigger  # noqa: E402
from src.services.status_coordinator import StatusTransitionCoordinator  # noqa: E402
from tests.utils.fakes import FakeChapaGateway, InMemoryGateway, RecordingDispatcher  # noqa: E402

WEBHOOK_SECRET = os.environ["CHAPA_WEBHOOK_SECRET"]


@pytest.fixture
def gateway():
    """Empty in-memory persistence gateway."""
    return InMemoryGateway()


@pytest.fixture
def notifier(gateway):
    """Real dispatcher writing to the in-memory notifications table."""
    return NotificationDispatcher(gateway)


@pytest.fixture
def recorder():
    return RecordingDispatcher()


@pytest.fixture
def supervisor():
    return BackgroundTaskSupervisor()


@pytest.fixture
def chats(gateway):
    return ChatLifecycleManager(gateway)


@pytest.fixture
def obligations(gateway, notifier, supervisor):
    return PaymentObligationManager(gateway, notifier, supervisor, settlement_delay=0)


@pytest.fixture
def coordinator(gateway, notifier, chats, obligations):
    return StatusTransitionCoordinator(gateway, notifier, chats, obligations)


@pytest.fixture
def fake_chapa():
    return FakeChapaGateway()


@pytest.fixture
def reconciler(gateway, obligations, notifier, fake_chapa, supervisor):
    return ExternalPaymentReconciler(
        gateway, obligations, notifier, fake_chapa, supervisor,
        poll_interval=0.01, max_attempts=5,
    )


@pytest.fixture
def ratings(gateway, notifier, coordinator):
    return RatingCompletionTrigger(gateway, notifier, coordinator)


@pytest.fixture
def engine(gateway, fake_chapa):
    """Fully wired engine over the in-memory gateway and scripted Chapa."""
    return LifecycleEngine(
        gateway=gateway,
        chapa=fake_chapa,
        settlement_delay=0,
        poll_interval=0.01,
        poll_max_attempts=5,
    )


@pytest.fixture
def freeze_time_fixture():
    """Fixture for freezing time in tests."""
    with freeze_time("2025-03-14 09:30:00") as frozen_time:
        yield frozen_time


@pytest.fixture(scope="function")
def reset_environment(monkeypatch):
    """Reset environment variables for each test."""
    original_env = os.environ.copy()
    yield
    os.environ.clear()
    os.environ.update(original_env)
