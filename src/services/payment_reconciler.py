"""Reconciles task payments with Chapa's asynchronous hosted checkout.

Each checkout is tracked by its ``tx_ref``:

    initialized -> awaiting_gateway -> completed | failed | cancelled

with ``timed_out`` and ``stopped`` ending a poll run without a gateway
verdict. Every path that observes a successful payment (poll, client
verification, webhook, sweep) goes through ``finalize``, which relies on the
obligation's conditional settle so a payment is credited once.
"""

import asyncio
import json
from typing import Any, Optional, Union

from ulid import ULID

from src.services.supabase_client import SupabaseGateway, utc_now_iso
from src.services.notification_dispatcher import NotificationDispatcher
from src.services.payment_obligations import PaymentObligationManager, TRANSACTIONS_TABLE
from src.services.background import BackgroundTaskSupervisor
from src.services.chapa_client import ChapaClient
from src.services.chapa_verifier import verify_chapa_request
from src.models.task import Task
from src.models.transaction import (
    PaymentObligation,
    TransactionStatus,
    TransactionType,
    RETRYABLE_STATUSES,
    SETTLEABLE_STATUSES,
)
from src.models.payment import (
    CheckoutSession,
    CustomerInfo,
    GatewayStatus,
    PaymentBreakdown,
    PollResult,
    PollState,
)
from src.models.outcome import OperationOutcome
from src.utils.config import PaymentConfig
from src.utils.errors import (
    DuplicateOperationError,
    GatewayError,
    InvalidInputError,
    NotFoundError,
    SupabaseError,
    WebhookVerificationError,
)
from src.utils.logging import get_structured_logger, log_timing, mask_user_id

logger = get_structured_logger(__name__)

TASKS_TABLE = "tasks"

SUCCESS_EVENTS = ("charge.success", "charge.completed")


def poll_job_key(tx_ref: str) -> str:
    return f"poll:{tx_ref}"


class ExternalPaymentReconciler:
    """Starts Chapa checkouts and brings their outcome back into the ledger."""

    def __init__(
        self,
        gateway: SupabaseGateway,
        obligations: PaymentObligationManager,
        notifier: NotificationDispatcher,
        chapa: ChapaClient,
        supervisor: BackgroundTaskSupervisor,
        poll_interval: Optional[float] = None,
        max_attempts: Optional[int] = None,
        vat_rate: Optional[float] = None,
        platform_fee_rate: Optional[float] = None,
        currency: Optional[str] = None,
    ):
        self.gateway = gateway
        self.obligations = obligations
        self.notifier = notifier
        self.chapa = chapa
        self.supervisor = supervisor
        self.poll_interval = PaymentConfig.POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        self.max_attempts = PaymentConfig.POLL_MAX_ATTEMPTS if max_attempts is None else max_attempts
        self.vat_rate = PaymentConfig.VAT_RATE if vat_rate is None else vat_rate
        self.platform_fee_rate = PaymentConfig.PLATFORM_FEE_RATE if platform_fee_rate is None else platform_fee_rate
        self.currency = currency or PaymentConfig.CURRENCY
        self._stop_events: dict[str, asyncio.Event] = {}

    def compute_breakdown(self, subtotal: float) -> PaymentBreakdown:
        return PaymentBreakdown.compute(subtotal, self.vat_rate, self.platform_fee_rate, self.currency)

    @staticmethod
    def generate_tx_ref(task_id: str) -> str:
        """Unique gateway reference, e.g. MUYA_01J8Z3K4_7RBXQW2M9T."""
        return f"{PaymentConfig.TX_REF_PREFIX}_{task_id[:8]}_{str(ULID())[-10:]}"

    async def initialize(
        self,
        task_id: str,
        payer_id: str,
        customer_info: Union[CustomerInfo, dict],
    ) -> CheckoutSession:
        """Start a hosted checkout for a task's payment.

        Attaches the new tx_ref and fee breakdown to the task's obligation,
        creating the obligation if the task does not have one yet. A pending
        obligation that already has a checkout gets that same checkout back,
        so every tx_ref handed to the payer stays resolvable. An earlier
        failed or cancelled attempt is re-armed as pending with a new tx_ref.
        """
        if isinstance(customer_info, dict):
            customer_info = CustomerInfo(**customer_info)

        task_row = await self.gateway.get(TASKS_TABLE, task_id)
        if not task_row:
            raise NotFoundError(f"Task not found: {task_id}")
        task = Task(**task_row)

        if payer_id != task.customer_id:
            raise InvalidInputError("Only the task owner can pay for a task")

        obligation = await self.obligations.get_obligation_for_task(task_id)
        if obligation is None:
            await self.obligations.create_obligation_for_completed_task(task_id)
            obligation = await self.obligations.get_obligation_for_task(task_id)
            if obligation is None:
                raise NotFoundError(f"Obligation missing right after creation for task {task_id}")

        if obligation.status == TransactionStatus.COMPLETED:
            raise DuplicateOperationError(f"Task {task_id} is already paid")
        if obligation.status.value not in RETRYABLE_STATUSES:
            raise DuplicateOperationError(f"Payment for task {task_id} is already {obligation.status.value}")
        if obligation.amount <= 0:
            raise InvalidInputError(f"Task {task_id} has no payable amount")

        open_session = self._open_checkout(obligation)
        if open_session is not None:
            logger.info("Reusing open checkout", task_id=task_id, tx_ref=open_session.tx_ref)
            return open_session

        breakdown = self.compute_breakdown(obligation.amount)
        tx_ref = self.generate_tx_ref(task_id)

        with log_timing("chapa_initialize", logger=logger, task_id=task_id, tx_ref=tx_ref):
            checkout_url = await self.chapa.initialize_checkout(
                tx_ref=tx_ref,
                amount=breakdown.total,
                currency=self.currency,
                email=customer_info.email,
                first_name=customer_info.first_name,
                last_name=customer_info.last_name,
                phone_number=customer_info.phone,
                meta={
                    "task_id": task_id,
                    "customer_id": task.customer_id,
                    "tasker_id": obligation.payee_id,
                    "vat_amount": breakdown.tax,
                    "platform_fee": breakdown.platform_fee,
                    "net_amount": breakdown.net_to_tasker,
                },
            )

        # Conditional on the tx_ref read above so a concurrent initialize cannot be overwritten
        attached = await self.gateway.update(
            TRANSACTIONS_TABLE,
            {"id": obligation.id, "status": RETRYABLE_STATUSES, "tx_ref": obligation.tx_ref},
            {
                "tx_ref": tx_ref,
                "checkout_url": checkout_url,
                "breakdown": breakdown.model_dump(),
                "status": TransactionStatus.PENDING.value,
                "failure_reason": None,
                "updated_at": utc_now_iso(),
            },
        )
        if not attached:
            current = await self.obligations.get_obligation_for_task(task_id)
            open_session = self._open_checkout(current) if current else None
            if open_session is not None:
                logger.info("Concurrent checkout won, reusing it", task_id=task_id, tx_ref=open_session.tx_ref)
                return open_session
            raise DuplicateOperationError(f"Payment for task {task_id} changed while starting checkout")

        logger.info(
            "Checkout initialized",
            task_id=task_id,
            tx_ref=tx_ref,
            obligation_id=obligation.id,
            total=breakdown.total,
            payer_id=mask_user_id(payer_id),
        )
        return CheckoutSession(
            tx_ref=tx_ref,
            checkout_url=checkout_url,
            obligation_id=obligation.id,
            breakdown=breakdown,
        )

    @staticmethod
    def _open_checkout(obligation: PaymentObligation) -> Optional[CheckoutSession]:
        """The checkout a pending obligation already has, if any."""
        if obligation.status != TransactionStatus.PENDING or not obligation.tx_ref:
            return None
        if not obligation.checkout_url or not obligation.breakdown:
            return None
        return CheckoutSession(
            tx_ref=obligation.tx_ref,
            checkout_url=obligation.checkout_url,
            obligation_id=obligation.id,
            breakdown=PaymentBreakdown(**obligation.breakdown),
        )

    async def poll_until_terminal(self, tx_ref: str) -> PollResult:
        """Query the gateway every poll interval until a verdict, timeout or stop.

        No further gateway call is made for a tx_ref once a terminal status
        has been seen. A timeout leaves the obligation untouched.
        """
        stop = self._stop_events.get(tx_ref)
        if stop is None:
            stop = asyncio.Event()
            self._stop_events[tx_ref] = stop

        attempts = 0
        try:
            while attempts < self.max_attempts:
                if stop.is_set():
                    return self._stopped(tx_ref, attempts)

                attempts += 1
                try:
                    status = await self.chapa.get_status(tx_ref)
                except GatewayError as e:
                    logger.warning("Gateway status check failed", tx_ref=tx_ref, attempt=attempts, error=e.message)
                    status = GatewayStatus.PENDING

                if status == GatewayStatus.COMPLETED:
                    finalized = await self.finalize(tx_ref)
                    return PollResult(tx_ref=tx_ref, state=PollState.COMPLETED, attempts=attempts, finalized=finalized)

                if status in (GatewayStatus.FAILED, GatewayStatus.CANCELLED):
                    await self._record_failure(tx_ref, status)
                    return PollResult(tx_ref=tx_ref, state=PollState(status.value), attempts=attempts)

                if attempts >= self.max_attempts:
                    break

                try:
                    await asyncio.wait_for(stop.wait(), timeout=self.poll_interval)
                    return self._stopped(tx_ref, attempts)
                except asyncio.TimeoutError:
                    continue

            logger.warning("Payment polling timed out", tx_ref=tx_ref, attempts=attempts)
            return PollResult(tx_ref=tx_ref, state=PollState.TIMED_OUT, attempts=attempts)
        finally:
            if self._stop_events.get(tx_ref) is stop:
                del self._stop_events[tx_ref]

    @staticmethod
    def _stopped(tx_ref: str, attempts: int) -> PollResult:
        logger.info("Payment polling stopped", tx_ref=tx_ref, attempts=attempts)
        return PollResult(tx_ref=tx_ref, state=PollState.STOPPED, attempts=attempts)

    def start_polling(self, tx_ref: str) -> bool:
        """Poll a tx_ref in the background; False if it is already being polled."""
        if self.supervisor.is_running(poll_job_key(tx_ref)):
            return False
        self._stop_events[tx_ref] = asyncio.Event()
        task = self.supervisor.spawn(poll_job_key(tx_ref), self.poll_until_terminal(tx_ref))
        return task is not None

    def stop_polling(self, tx_ref: str) -> bool:
        """Ask a running poll to stop at its next tick."""
        stop = self._stop_events.get(tx_ref)
        if stop is None:
            return False
        stop.set()
        return True

    async def verify(self, tx_ref: str) -> GatewayStatus:
        """Client-triggered verification; settles or records failure on a verdict."""
        status = await self.chapa.get_status(tx_ref)
        if status == GatewayStatus.COMPLETED:
            await self.finalize(tx_ref)
        elif status in (GatewayStatus.FAILED, GatewayStatus.CANCELLED):
            await self._record_failure(tx_ref, status)

        if status.is_terminal:
            self.stop_polling(tx_ref)
        return status

    async def finalize(self, tx_ref: str) -> bool:
        """Settle the obligation behind a tx_ref. Returns False if nothing was settled."""
        obligation = await self.obligations.get_obligation_by_tx_ref(tx_ref)
        if obligation is None:
            logger.warning("No obligation for tx_ref", tx_ref=tx_ref)
            return False
        finalized = await self.obligations.complete_obligation(obligation)
        logger.info("Payment finalize", tx_ref=tx_ref, obligation_id=obligation.id, applied=finalized)
        return finalized

    async def _record_failure(self, tx_ref: str, status: GatewayStatus) -> bool:
        obligation = await self.obligations.get_obligation_by_tx_ref(tx_ref)
        if obligation is None:
            logger.warning("No obligation for failed tx_ref", tx_ref=tx_ref, status=status.value)
            return False

        reason = f"gateway reported {status.value}"
        if status == GatewayStatus.CANCELLED:
            closed = await self.obligations.cancel_obligation(obligation.id, reason)
        else:
            closed = await self.obligations.mark_obligation_failed(obligation.id, reason)

        if closed:
            await self.notifier.notify(obligation.payer_id, "payment_failed", {
                "task_id": obligation.task_id,
                "amount": obligation.amount,
                "currency": obligation.currency,
                "tx_ref": tx_ref,
            })
        return closed

    async def handle_webhook(self, raw_body: Union[str, bytes], signature: Optional[str]) -> OperationOutcome:
        """Apply a signed Chapa webhook event."""
        if isinstance(raw_body, bytes):
            raw_body = raw_body.decode("utf-8")

        if not verify_chapa_request(raw_body, signature):
            raise WebhookVerificationError("Invalid Chapa webhook signature")

        try:
            payload = json.loads(raw_body)
        except json.JSONDecodeError as e:
            raise InvalidInputError(f"Invalid webhook JSON: {e}") from e
        if not isinstance(payload, dict):
            raise InvalidInputError("Webhook payload must be an object")

        data: dict[str, Any] = payload.get("data") if isinstance(payload.get("data"), dict) else payload
        tx_ref = data.get("tx_ref") or payload.get("tx_ref")
        if not tx_ref:
            raise InvalidInputError("Webhook payload missing tx_ref")

        event = str(payload.get("event") or "").lower()
        status = GatewayStatus.from_gateway(data.get("status"))
        logger.info("Chapa webhook received", tx_ref=tx_ref, webhook_event=event, status=status.value)

        if event in SUCCESS_EVENTS or status == GatewayStatus.COMPLETED:
            finalized = await self.finalize(tx_ref)
            self.stop_polling(tx_ref)
            if finalized:
                return OperationOutcome.success(tx_ref=tx_ref, status=GatewayStatus.COMPLETED.value)
            return OperationOutcome.noop("payment already finalized", tx_ref=tx_ref)

        if status in (GatewayStatus.FAILED, GatewayStatus.CANCELLED):
            closed = await self._record_failure(tx_ref, status)
            self.stop_polling(tx_ref)
            if closed:
                return OperationOutcome.success(tx_ref=tx_ref, status=status.value)
            return OperationOutcome.noop("payment already closed", tx_ref=tx_ref)

        return OperationOutcome.noop(f"ignored webhook event {event or status.value}", tx_ref=tx_ref)

    async def reconcile_pending_once(self, max_items: int = 50) -> dict[str, int]:
        """Verify unsettled checkouts once each; the restart path after poll timeouts."""
        rows = await self.gateway.list(
            TRANSACTIONS_TABLE,
            {"type": TransactionType.TASK_PAYMENT.value, "status": SETTLEABLE_STATUSES},
            order_by="created_at",
            limit=max_items,
        )
        summary = {"checked": 0, "completed": 0, "failed": 0, "pending": 0, "errors": 0, "skipped": 0}

        for row in rows:
            obligation = PaymentObligation(**row)
            if not obligation.tx_ref or self.supervisor.is_running(poll_job_key(obligation.tx_ref)):
                summary["skipped"] += 1
                continue

            summary["checked"] += 1
            try:
                status = await self.verify(obligation.tx_ref)
            except (GatewayError, SupabaseError) as e:
                summary["errors"] += 1
                logger.warning("Reconciliation check failed", tx_ref=obligation.tx_ref, error=e.message)
                continue

            if status == GatewayStatus.COMPLETED:
                summary["completed"] += 1
            elif status.is_terminal:
                summary["failed"] += 1
            else:
                summary["pending"] += 1

        logger.info("Reconciliation sweep finished", **summary)
        return summary
