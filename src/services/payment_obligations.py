"""Payment obligations, tasker wallets and withdrawals."""

import asyncio
from typing import Any, Optional, Union

from src.services.supabase_client import SupabaseGateway, generate_id, utc_now_iso
from src.services.notification_dispatcher import NotificationDispatcher
from src.services.background import BackgroundTaskSupervisor, KeyedLocks
from src.models.task import Task, TaskPaymentStatus
from src.models.transaction import (
    PaymentObligation,
    TransactionStatus,
    TransactionType,
    SETTLEABLE_STATUSES,
)
from src.models.wallet import WithdrawalOrder, WithdrawalStatus
from src.models.outcome import OperationOutcome
from src.utils.config import PaymentConfig
from src.utils.errors import (
    DuplicateOperationError,
    InsufficientFundsError,
    InvalidInputError,
    NotFoundError,
    SupabaseError,
)
from src.utils.logging import get_structured_logger, log_timing, mask_user_id, mask_account_number

logger = get_structured_logger(__name__)

TASKS_TABLE = "tasks"
TRANSACTIONS_TABLE = "transactions"
WALLETS_TABLE = "wallets"
WITHDRAWALS_TABLE = "withdrawal_orders"

MAX_CREDIT_ATTEMPTS = 5


class PaymentObligationManager:
    """Creates and settles task payments and keeps tasker wallets consistent."""

    def __init__(
        self,
        gateway: SupabaseGateway,
        notifier: NotificationDispatcher,
        supervisor: BackgroundTaskSupervisor,
        settlement_delay: Optional[float] = None,
        currency: Optional[str] = None,
    ):
        self.gateway = gateway
        self.notifier = notifier
        self.supervisor = supervisor
        self.settlement_delay = (
            PaymentConfig.SETTLEMENT_DELAY_SECONDS if settlement_delay is None else settlement_delay
        )
        self.currency = currency or PaymentConfig.CURRENCY
        self._task_locks = KeyedLocks()

    # Obligations

    async def get_obligation_for_task(self, task_id: str) -> Optional[PaymentObligation]:
        row = await self.gateway.find_one(TRANSACTIONS_TABLE, {
            "task_id": task_id,
            "type": TransactionType.TASK_PAYMENT.value,
        })
        return PaymentObligation(**row) if row else None

    async def get_obligation_by_tx_ref(self, tx_ref: str) -> Optional[PaymentObligation]:
        row = await self.gateway.find_one(TRANSACTIONS_TABLE, {
            "tx_ref": tx_ref,
            "type": TransactionType.TASK_PAYMENT.value,
        })
        return PaymentObligation(**row) if row else None

    async def create_obligation_for_completed_task(self, task_id: str) -> OperationOutcome:
        """Create the single task payment for a task, freezing its amount.

        Returns a noop outcome when the task already has an obligation.
        Raises NotFoundError for an unknown task and InvalidInputError when
        no tasker is assigned or there is nothing to pay.
        """
        async with self._task_locks.hold(task_id):
            existing = await self.get_obligation_for_task(task_id)
            if existing:
                logger.info("Obligation already exists", task_id=task_id, obligation_id=existing.id)
                return OperationOutcome.noop("obligation already exists", obligation_id=existing.id)

            row = await self.gateway.get(TASKS_TABLE, task_id)
            if not row:
                raise NotFoundError(f"Task not found: {task_id}")
            task = Task(**row)

            if not task.tasker_id:
                raise InvalidInputError(f"Task {task_id} has no assigned tasker")

            amount, amount_source = task.payable_amount()
            if amount <= 0:
                raise InvalidInputError(f"Task {task_id} has no payable amount")

            now = utc_now_iso()
            obligation = await self.gateway.insert(TRANSACTIONS_TABLE, {
                "id": generate_id(),
                "user_id": task.customer_id,
                "payee_id": task.tasker_id,
                "task_id": task.id,
                "type": TransactionType.TASK_PAYMENT.value,
                "amount": round(amount, 2),
                "currency": self.currency,
                "status": TransactionStatus.PENDING.value,
                "description": f"Payment for task: {task.title}",
                "metadata": {"amount_source": amount_source, "payment_type": "task_completion"},
                "created_at": now,
                "updated_at": now,
            })

            logger.info(
                "Obligation created",
                task_id=task.id,
                obligation_id=obligation["id"],
                amount=amount,
                amount_source=amount_source,
                payer_id=mask_user_id(task.customer_id),
            )

        failed_steps = []
        try:
            await self.gateway.update(
                TASKS_TABLE, {"id": task.id},
                {"payment_status": TaskPaymentStatus.PENDING.value, "updated_at": now},
            )
        except SupabaseError as e:
            logger.warning("Failed to mark task payment pending", task_id=task.id, error=str(e))
            failed_steps.append("task_payment_status")

        await self.notifier.notify(task.customer_id, "payment_required", {
            "task_id": task.id,
            "title": task.title,
            "amount": amount,
            "currency": self.currency,
            "obligation_id": obligation["id"],
        })

        return OperationOutcome.from_steps(failed_steps, obligation_id=obligation["id"], amount=amount)

    async def process_obligation(self, obligation_id: str, payment_method_id: Optional[str] = None) -> OperationOutcome:
        """Move a pending obligation to processing and settle it in the background."""
        row = await self.gateway.get(TRANSACTIONS_TABLE, obligation_id)
        if not row:
            raise NotFoundError(f"Obligation not found: {obligation_id}")

        if row.get("status") != TransactionStatus.PENDING.value:
            return OperationOutcome.noop(f"obligation is {row.get('status')}", obligation_id=obligation_id)

        values: dict[str, Any] = {"status": TransactionStatus.PROCESSING.value, "updated_at": utc_now_iso()}
        if payment_method_id:
            values["payment_method_id"] = payment_method_id
        claimed = await self.gateway.update(
            TRANSACTIONS_TABLE,
            {"id": obligation_id, "status": TransactionStatus.PENDING.value},
            values,
        )
        if not claimed:
            return OperationOutcome.noop("obligation changed concurrently", obligation_id=obligation_id)

        self.supervisor.spawn(f"settle:{obligation_id}", self._settle_after_delay(obligation_id))
        logger.info("Obligation processing", obligation_id=obligation_id, delay_seconds=self.settlement_delay)
        return OperationOutcome.success(obligation_id=obligation_id, status=TransactionStatus.PROCESSING.value)

    async def _settle_after_delay(self, obligation_id: str) -> bool:
        # A failure here leaves the obligation in processing for the reconciliation sweep
        await asyncio.sleep(self.settlement_delay)
        row = await self.gateway.get(TRANSACTIONS_TABLE, obligation_id)
        if not row:
            raise NotFoundError(f"Obligation disappeared before settlement: {obligation_id}")
        return await self.complete_obligation(row)

    async def complete_obligation(self, obligation: Union[PaymentObligation, dict]) -> bool:
        """Settle an obligation exactly once.

        The pending/processing -> completed write is conditional, so only one
        caller ever proceeds to credit the payee. If the credit fails the
        obligation goes back to processing, so a later poll, webhook or sweep
        can settle it again. Returns False when the obligation was already
        finalized.
        """
        if isinstance(obligation, dict):
            obligation = PaymentObligation(**obligation)

        if not obligation.payee_id:
            raise InvalidInputError(f"Obligation {obligation.id} has no payee")

        now = utc_now_iso()
        with log_timing("complete_obligation", logger=logger, obligation_id=obligation.id):
            settled = await self.gateway.update(
                TRANSACTIONS_TABLE,
                {"id": obligation.id, "status": SETTLEABLE_STATUSES},
                {"status": TransactionStatus.COMPLETED.value, "completed_at": now, "failure_reason": None, "updated_at": now},
            )
            if not settled:
                logger.info("Obligation already finalized", obligation_id=obligation.id)
                return False

            credit = obligation.amount
            if obligation.breakdown and obligation.breakdown.get("net_to_tasker") is not None:
                credit = float(obligation.breakdown["net_to_tasker"])

            try:
                new_balance = await self.credit_wallet(obligation.payee_id, credit)
            except Exception as e:
                logger.error(
                    "Payee credit failed, returning obligation to processing",
                    obligation_id=obligation.id,
                    payee_id=mask_user_id(obligation.payee_id),
                    amount=credit,
                    error=str(e),
                )
                await self._release_settlement(obligation.id, f"payee credit failed: {e}")
                raise

            try:
                await self.gateway.insert(TRANSACTIONS_TABLE, {
                    "id": generate_id(),
                    "user_id": obligation.payee_id,
                    "task_id": obligation.task_id,
                    "type": TransactionType.DEPOSIT.value,
                    "amount": credit,
                    "currency": obligation.currency,
                    "status": TransactionStatus.COMPLETED.value,
                    "description": "Task payment received",
                    "metadata": {"task_id": obligation.task_id, "obligation_id": obligation.id},
                    "created_at": now,
                    "completed_at": now,
                })
            except SupabaseError as e:
                logger.warning("Failed to write deposit ledger row", obligation_id=obligation.id, error=str(e))

            if obligation.task_id:
                try:
                    await self.gateway.update(
                        TASKS_TABLE, {"id": obligation.task_id},
                        {"payment_status": TaskPaymentStatus.COMPLETED.value, "updated_at": now},
                    )
                except SupabaseError as e:
                    logger.warning("Failed to mark task paid", task_id=obligation.task_id, error=str(e))

        payload = {"task_id": obligation.task_id, "amount": credit, "currency": obligation.currency}
        await self.notifier.notify(obligation.user_id, "payment_sent", payload)
        await self.notifier.notify(obligation.payee_id, "payment_received", payload)

        logger.info(
            "Obligation completed",
            obligation_id=obligation.id,
            task_id=obligation.task_id,
            amount=credit,
            payee_balance=new_balance,
        )
        return True

    async def _release_settlement(self, obligation_id: str, reason: str) -> None:
        try:
            released = await self.gateway.update(
                TRANSACTIONS_TABLE,
                {"id": obligation_id, "status": TransactionStatus.COMPLETED.value},
                {
                    "status": TransactionStatus.PROCESSING.value,
                    "completed_at": None,
                    "failure_reason": reason,
                    "updated_at": utc_now_iso(),
                },
            )
        except SupabaseError as e:
            logger.error("Could not release obligation for retry", obligation_id=obligation_id, error=str(e))
            return
        if released:
            logger.info("Obligation released for retry", obligation_id=obligation_id)

    async def cancel_obligation(self, obligation_id: str, reason: Optional[str] = None) -> bool:
        """Cancel an unsettled obligation."""
        return await self._close_unsettled(obligation_id, TransactionStatus.CANCELLED, reason)

    async def mark_obligation_failed(self, obligation_id: str, reason: Optional[str] = None) -> bool:
        """Record a failed payment attempt on an unsettled obligation."""
        return await self._close_unsettled(obligation_id, TransactionStatus.FAILED, reason)

    async def _close_unsettled(self, obligation_id: str, status: TransactionStatus, reason: Optional[str]) -> bool:
        values: dict[str, Any] = {"status": status.value, "updated_at": utc_now_iso()}
        if reason:
            values["failure_reason"] = reason
        updated = await self.gateway.update(
            TRANSACTIONS_TABLE,
            {"id": obligation_id, "status": SETTLEABLE_STATUSES},
            values,
        )
        if updated:
            logger.info("Obligation closed", obligation_id=obligation_id, status=status.value, reason=reason)
        return bool(updated)

    async def create_refund(self, obligation_id: str, amount: float, reason: str) -> dict:
        """Record a pending refund against a settled task payment.

        Refunds on one obligation may not add up to more than its amount.
        Once they cover it in full the obligation is marked refunded.
        """
        if amount is None or amount <= 0:
            raise InvalidInputError("Refund amount must be positive")
        if not (reason or "").strip():
            raise InvalidInputError("Refund reason is required")

        async with self._task_locks.hold(f"refund:{obligation_id}"):
            row = await self.gateway.get(TRANSACTIONS_TABLE, obligation_id)
            if not row or row.get("type") != TransactionType.TASK_PAYMENT.value:
                raise NotFoundError(f"Obligation not found: {obligation_id}")
            obligation = PaymentObligation(**row)

            if obligation.status == TransactionStatus.REFUNDED:
                raise DuplicateOperationError(f"Obligation {obligation_id} is already fully refunded")
            if obligation.status != TransactionStatus.COMPLETED:
                raise InvalidInputError(f"Only settled payments can be refunded (obligation is {obligation.status.value})")

            earlier = await self.gateway.list(TRANSACTIONS_TABLE, {
                "type": TransactionType.REFUND.value,
                "original_payment_id": obligation_id,
                "status": [
                    TransactionStatus.PENDING.value,
                    TransactionStatus.PROCESSING.value,
                    TransactionStatus.COMPLETED.value,
                ],
            })
            refunded = round(sum(float(r["amount"]) for r in earlier), 2)
            remaining = round(obligation.amount - refunded, 2)
            if amount > remaining:
                raise InvalidInputError(
                    f"Refund of {amount} exceeds the {remaining} still refundable",
                    details={"refundable": remaining, "requested": amount},
                )

            now = utc_now_iso()
            refund = await self.gateway.insert(TRANSACTIONS_TABLE, {
                "id": generate_id(),
                "user_id": obligation.payer_id,
                "task_id": obligation.task_id,
                "original_payment_id": obligation_id,
                "type": TransactionType.REFUND.value,
                "amount": round(amount, 2),
                "currency": obligation.currency,
                "status": TransactionStatus.PENDING.value,
                "description": f"Refund for: {obligation.description or 'task payment'}",
                "metadata": {"original_payment_id": obligation_id, "reason": reason, "refund_type": "task_refund"},
                "created_at": now,
                "updated_at": now,
            })

            if round(refunded + amount, 2) >= obligation.amount:
                await self.gateway.update(
                    TRANSACTIONS_TABLE,
                    {"id": obligation_id, "status": TransactionStatus.COMPLETED.value},
                    {"status": TransactionStatus.REFUNDED.value, "updated_at": now},
                )

        logger.info(
            "Refund created",
            refund_id=refund["id"],
            obligation_id=obligation_id,
            amount=amount,
            refunded_total=round(refunded + amount, 2),
        )
        await self.notifier.notify(obligation.payer_id, "refund_requested", {
            "task_id": obligation.task_id,
            "amount": amount,
            "currency": obligation.currency,
        })
        return refund

    # Wallets

    async def get_wallet_balance(self, user_id: str) -> float:
        wallet = await self.gateway.find_one(WALLETS_TABLE, {"user_id": user_id})
        return float(wallet["balance"]) if wallet else 0.0

    async def credit_wallet(self, user_id: str, amount: float) -> float:
        """Add funds to a wallet, creating it on first credit. Returns the new balance."""
        if amount <= 0:
            raise InvalidInputError("Credit amount must be positive")

        for attempt in range(1, MAX_CREDIT_ATTEMPTS + 1):
            wallet = await self.gateway.find_one(WALLETS_TABLE, {"user_id": user_id})

            if wallet is None:
                try:
                    created = await self.gateway.insert(WALLETS_TABLE, {
                        "id": generate_id(),
                        "user_id": user_id,
                        "balance": round(amount, 2),
                        "currency": self.currency,
                        "is_active": True,
                        "created_at": utc_now_iso(),
                    })
                    return float(created["balance"])
                except SupabaseError as e:
                    # Another writer created the wallet first; credit it on the next pass
                    logger.debug("Wallet create raced", user_id=mask_user_id(user_id), error=str(e))
                    continue

            current = float(wallet["balance"])
            new_balance = round(current + amount, 2)
            updated = await self.gateway.update(
                WALLETS_TABLE,
                {"id": wallet["id"], "balance": wallet["balance"]},
                {"balance": new_balance, "updated_at": utc_now_iso()},
            )
            if updated:
                return new_balance
            logger.debug("Wallet credit raced, retrying", user_id=mask_user_id(user_id), attempt=attempt)

        raise SupabaseError(f"Could not credit wallet after {MAX_CREDIT_ATTEMPTS} attempts")

    async def debit_wallet(self, user_id: str, amount: float) -> float:
        """Remove funds from a wallet. Never lets the balance go negative."""
        if amount <= 0:
            raise InvalidInputError("Debit amount must be positive")

        wallet = await self.gateway.find_one(WALLETS_TABLE, {"user_id": user_id})
        balance = float(wallet["balance"]) if wallet else 0.0
        if wallet is None or balance < amount:
            raise InsufficientFundsError(
                f"Insufficient balance: {balance} available, {amount} requested",
                details={"balance": balance, "requested": amount},
            )

        new_balance = round(balance - amount, 2)
        updated = await self.gateway.update(
            WALLETS_TABLE,
            {"id": wallet["id"], "balance": wallet["balance"]},
            {"balance": new_balance, "updated_at": utc_now_iso()},
        )
        if not updated:
            raise InsufficientFundsError(
                "Wallet balance changed during debit",
                details={"balance": balance, "requested": amount},
            )
        return new_balance

    # Withdrawals

    async def request_withdrawal(
        self,
        tasker_id: str,
        amount: float,
        method: str,
        details: Optional[dict[str, Any]] = None,
    ) -> WithdrawalOrder:
        """Validate and record a withdrawal request. Funds move only on approval."""
        if amount is None or amount <= 0:
            raise InvalidInputError("Withdrawal amount must be positive")

        method_config = PaymentConfig.withdrawal_method(method)
        if method_config is None:
            raise InvalidInputError(f"Unknown withdrawal method: {method}")

        details = details or {}
        missing = [field for field in method_config["required_details"] if not str(details.get(field) or "").strip()]
        if missing:
            raise InvalidInputError(
                f"Missing withdrawal details: {', '.join(missing)}",
                details={"missing": missing},
            )

        if amount < method_config["min_amount"] or amount > method_config["max_amount"]:
            raise InvalidInputError(
                f"{method_config['name']} withdrawals must be between "
                f"{method_config['min_amount']} and {method_config['max_amount']}",
                details={"min_amount": method_config["min_amount"], "max_amount": method_config["max_amount"]},
            )

        balance = await self.get_wallet_balance(tasker_id)
        if amount > balance:
            raise InsufficientFundsError(
                f"Insufficient balance: {balance} available, {amount} requested",
                details={"balance": balance, "requested": amount},
            )

        fee = float(method_config["fee"])
        row = await self.gateway.insert(WITHDRAWALS_TABLE, {
            "id": generate_id(),
            "user_id": tasker_id,
            "amount": round(amount, 2),
            "currency": self.currency,
            "withdrawal_method": method,
            "withdrawal_details": details,
            "processing_fee": fee,
            "net_amount": round(amount - fee, 2),
            "status": WithdrawalStatus.PENDING.value,
            "created_at": utc_now_iso(),
        })
        order = WithdrawalOrder(**row)

        logger.info(
            "Withdrawal requested",
            order_id=order.id,
            tasker_id=mask_user_id(tasker_id),
            amount=amount,
            method=method,
            account=mask_account_number(details.get("account_number") or details.get("phone_number")),
        )
        await self.notifier.notify(tasker_id, "withdrawal_requested", {
            "order_id": order.id, "amount": amount, "currency": self.currency,
        })
        return order

    async def approve_withdrawal(self, order_id: str, admin_id: str) -> WithdrawalOrder:
        """Debit the tasker's wallet for a pending order and mark it completed."""
        row = await self.gateway.get(WITHDRAWALS_TABLE, order_id)
        if not row:
            raise NotFoundError(f"Withdrawal order not found: {order_id}")
        if row["status"] == WithdrawalStatus.COMPLETED.value:
            raise DuplicateOperationError(f"Withdrawal order {order_id} already completed")
        if row["status"] != WithdrawalStatus.PENDING.value:
            raise InvalidInputError(f"Withdrawal order {order_id} is {row['status']}")

        claimed = await self.gateway.update(
            WITHDRAWALS_TABLE,
            {"id": order_id, "status": WithdrawalStatus.PENDING.value},
            {"status": WithdrawalStatus.PROCESSING.value, "processed_by": admin_id, "updated_at": utc_now_iso()},
        )
        if not claimed:
            raise DuplicateOperationError(f"Withdrawal order {order_id} is already being processed")

        order = WithdrawalOrder(**claimed[0])
        try:
            new_balance = await self.debit_wallet(order.user_id, order.amount)
        except InsufficientFundsError as e:
            await self.gateway.update(WITHDRAWALS_TABLE, {"id": order_id}, {
                "status": WithdrawalStatus.FAILED.value,
                "failure_reason": e.message,
                "processed_at": utc_now_iso(),
            })
            await self.notifier.notify(order.user_id, "withdrawal_failed", {
                "order_id": order_id, "amount": order.amount, "currency": order.currency,
            })
            logger.warning("Withdrawal failed on debit", order_id=order_id, reason=e.message)
            raise

        now = utc_now_iso()
        try:
            await self.gateway.insert(TRANSACTIONS_TABLE, {
                "id": generate_id(),
                "user_id": order.user_id,
                "type": TransactionType.WITHDRAWAL.value,
                "amount": order.amount,
                "currency": order.currency,
                "status": TransactionStatus.COMPLETED.value,
                "description": f"Withdrawal - {order.withdrawal_method.value}",
                "metadata": {
                    "withdrawal_order_id": order_id,
                    "processing_fee": order.processing_fee,
                    "net_amount": order.net_amount,
                },
                "created_at": now,
                "completed_at": now,
            })
        except SupabaseError as e:
            logger.warning("Failed to write withdrawal ledger row", order_id=order_id, error=str(e))

        completed = await self.gateway.update(WITHDRAWALS_TABLE, {"id": order_id}, {
            "status": WithdrawalStatus.COMPLETED.value,
            "processed_at": now,
            "updated_at": now,
        })
        await self.notifier.notify(order.user_id, "withdrawal_completed", {
            "order_id": order_id, "amount": order.net_amount, "currency": order.currency,
        })
        logger.info(
            "Withdrawal approved",
            order_id=order_id,
            admin_id=mask_user_id(admin_id),
            amount=order.amount,
            remaining_balance=new_balance,
        )
        return WithdrawalOrder(**completed[0]) if completed else order

    async def cancel_withdrawal(self, tasker_id: str, order_id: str) -> WithdrawalOrder:
        """Cancel the tasker's own pending withdrawal order."""
        row = await self.gateway.get(WITHDRAWALS_TABLE, order_id)
        if not row or row.get("user_id") != tasker_id:
            raise NotFoundError(f"Withdrawal order not found: {order_id}")
        if row["status"] != WithdrawalStatus.PENDING.value:
            raise InvalidInputError(f"Only pending withdrawals can be cancelled (order is {row['status']})")

        updated = await self.gateway.update(
            WITHDRAWALS_TABLE,
            {"id": order_id, "user_id": tasker_id, "status": WithdrawalStatus.PENDING.value},
            {"status": WithdrawalStatus.CANCELLED.value, "updated_at": utc_now_iso()},
        )
        if not updated:
            raise InvalidInputError(f"Withdrawal order {order_id} is no longer pending")

        logger.info("Withdrawal cancelled", order_id=order_id, tasker_id=mask_user_id(tasker_id))
        return WithdrawalOrder(**updated[0])
