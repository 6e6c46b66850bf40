"""Tests for obligation creation and settlement."""

import asyncio
import pytest
from src.utils.errors import DuplicateOperationError, InvalidInputError, NotFoundError, SupabaseError
from tests.utils.assertions import assert_outcome, assert_single_obligation, assert_wallet_balance
from tests.utils.factories import (
    create_obligation_data,
    create_profile_id,
    create_task_data,
    create_wallet_data,
)


@pytest.fixture
def completed_task(gateway):
    task = create_task_data(tasker_id=create_profile_id(), status="completed", budget=500)
    gateway.seed("tasks", task)
    return task


@pytest.mark.unit
@pytest.mark.asyncio
async def test_create_obligation_freezes_budget(gateway, obligations, completed_task):
    outcome = await obligations.create_obligation_for_completed_task(completed_task["id"])

    assert_outcome(outcome, "success")
    obligation = assert_single_obligation(gateway, completed_task["id"], amount=500)
    assert obligation["user_id"] == completed_task["customer_id"]
    assert obligation["payee_id"] == completed_task["tasker_id"]
    assert obligation["status"] == "pending"
    assert obligation["metadata"]["amount_source"] == "budget"
    assert gateway.row("tasks", completed_task["id"])["payment_status"] == "pending"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_create_obligation_prefers_final_price(gateway, obligations):
    task = create_task_data(tasker_id=create_profile_id(), status="completed", budget=500, final_price=650)
    gateway.seed("tasks", task)

    await obligations.create_obligation_for_completed_task(task["id"])

    obligation = assert_single_obligation(gateway, task["id"], amount=650)
    assert obligation["metadata"]["amount_source"] == "final_price"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_create_obligation_notifies_customer(gateway, obligations, completed_task):
    await obligations.create_obligation_for_completed_task(completed_task["id"])

    notes = gateway.rows("notifications", user_id=completed_task["customer_id"])
    assert [n["data"]["event_kind"] for n in notes] == ["payment_required"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_second_create_is_noop(gateway, obligations, completed_task):
    await obligations.create_obligation_for_completed_task(completed_task["id"])
    outcome = await obligations.create_obligation_for_completed_task(completed_task["id"])

    assert_outcome(outcome, "noop")
    assert_single_obligation(gateway, completed_task["id"])


@pytest.mark.unit
@pytest.mark.asyncio
async def test_concurrent_create_yields_one_obligation(gateway, obligations, completed_task):
    outcomes = await asyncio.gather(*[
        obligations.create_obligation_for_completed_task(completed_task["id"]) for _ in range(4)
    ])

    assert sorted(o.status.value for o in outcomes) == ["noop", "noop", "noop", "success"]
    assert_single_obligation(gateway, completed_task["id"])


@pytest.mark.unit
@pytest.mark.asyncio
async def test_create_for_unknown_task(obligations):
    with pytest.raises(NotFoundError):
        await obligations.create_obligation_for_completed_task("missing")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_create_without_tasker(gateway, obligations):
    task = create_task_data(status="completed")
    gateway.seed("tasks", task)

    with pytest.raises(InvalidInputError):
        await obligations.create_obligation_for_completed_task(task["id"])
    assert gateway.rows("transactions") == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_create_without_amount(gateway, obligations):
    task = create_task_data(tasker_id=create_profile_id(), status="completed", budget=None)
    gateway.seed("tasks", task)

    with pytest.raises(InvalidInputError):
        await obligations.create_obligation_for_completed_task(task["id"])


@pytest.mark.unit
@pytest.mark.asyncio
async def test_payment_status_failure_is_partial(gateway, obligations, completed_task):
    gateway.fail("update", "tasks")

    outcome = await obligations.create_obligation_for_completed_task(completed_task["id"])

    assert_outcome(outcome, "partial", ["task_payment_status"])
    assert_single_obligation(gateway, completed_task["id"])


@pytest.mark.unit
@pytest.mark.asyncio
async def test_complete_obligation_credits_payee_once(gateway, obligations, completed_task):
    row = create_obligation_data(completed_task, status="processing")
    gateway.seed("transactions", row)

    results = await asyncio.gather(obligations.complete_obligation(row), obligations.complete_obligation(row))

    assert sorted(results) == [False, True]
    assert gateway.row("transactions", row["id"])["status"] == "completed"
    assert_wallet_balance(gateway, completed_task["tasker_id"], 500)
    deposits = gateway.rows("transactions", type="deposit", user_id=completed_task["tasker_id"])
    assert len(deposits) == 1
    assert gateway.row("tasks", completed_task["id"])["payment_status"] == "completed"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_complete_obligation_credits_net_from_breakdown(gateway, obligations, completed_task):
    row = create_obligation_data(
        completed_task, status="pending",
        breakdown={"subtotal": 500, "tax": 75, "platform_fee": 25, "total": 600, "net_to_tasker": 500},
    )
    gateway.seed("transactions", row)
    gateway.seed("wallets", create_wallet_data(completed_task["tasker_id"], balance=100))

    assert await obligations.complete_obligation(row) is True
    assert_wallet_balance(gateway, completed_task["tasker_id"], 600)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_complete_obligation_notifies_both_parties(gateway, obligations, completed_task):
    row = create_obligation_data(completed_task)
    gateway.seed("transactions", row)

    await obligations.complete_obligation(row)

    payer_events = [n["data"]["event_kind"] for n in gateway.rows("notifications", user_id=completed_task["customer_id"])]
    payee_events = [n["data"]["event_kind"] for n in gateway.rows("notifications", user_id=completed_task["tasker_id"])]
    assert payer_events == ["payment_sent"]
    assert payee_events == ["payment_received"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_complete_already_completed_is_false(gateway, obligations, completed_task):
    row = create_obligation_data(completed_task, status="completed")
    gateway.seed("transactions", row)

    assert await obligations.complete_obligation(row) is False
    assert gateway.rows("wallets") == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_complete_without_payee_rejected(gateway, obligations, completed_task):
    row = create_obligation_data(completed_task, payee_id=None)
    gateway.seed("transactions", row)

    with pytest.raises(InvalidInputError):
        await obligations.complete_obligation(row)
    assert gateway.row("transactions", row["id"])["status"] == "pending"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_process_obligation_settles_in_background(gateway, obligations, supervisor, completed_task):
    row = create_obligation_data(completed_task)
    gateway.seed("transactions", row)

    outcome = await obligations.process_obligation(row["id"], payment_method_id="pm-1")

    assert_outcome(outcome, "success")
    assert gateway.row("transactions", row["id"])["status"] == "processing"
    assert gateway.row("transactions", row["id"])["payment_method_id"] == "pm-1"

    await supervisor.wait_idle(timeout=1)

    assert gateway.row("transactions", row["id"])["status"] == "completed"
    assert_wallet_balance(gateway, completed_task["tasker_id"], 500)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_process_non_pending_is_noop(gateway, obligations, supervisor, completed_task):
    row = create_obligation_data(completed_task, status="completed")
    gateway.seed("transactions", row)

    outcome = await obligations.process_obligation(row["id"])

    assert_outcome(outcome, "noop")
    assert supervisor.is_running(f"settle:{row['id']}") is False


@pytest.mark.unit
@pytest.mark.asyncio
async def test_process_unknown_obligation(obligations):
    with pytest.raises(NotFoundError):
        await obligations.process_obligation("missing")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_cancel_only_unsettled(gateway, obligations, completed_task):
    pending = create_obligation_data(completed_task)
    gateway.seed("transactions", pending)

    assert await obligations.cancel_obligation(pending["id"], "customer cancelled") is True
    assert gateway.row("transactions", pending["id"])["status"] == "cancelled"
    assert gateway.row("transactions", pending["id"])["failure_reason"] == "customer cancelled"
    assert await obligations.mark_obligation_failed(pending["id"]) is False


@pytest.mark.unit
@pytest.mark.asyncio
async def test_credit_creates_wallet_on_first_credit(gateway, obligations):
    tasker = create_profile_id()

    assert await obligations.credit_wallet(tasker, 250) == 250
    assert await obligations.credit_wallet(tasker, 50.5) == 300.5
    assert len(gateway.rows("wallets", user_id=tasker)) == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_concurrent_credits_are_not_lost(gateway, obligations):
    tasker = create_profile_id()

    await asyncio.gather(*[obligations.credit_wallet(tasker, 100) for _ in range(3)])

    assert_wallet_balance(gateway, tasker, 300)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_credit_gives_up_after_repeated_failures(gateway, obligations):
    tasker = create_profile_id()
    gateway.fail("insert", "wallets", times=5)

    with pytest.raises(SupabaseError):
        await obligations.credit_wallet(tasker, 100)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_credit_rejects_non_positive(obligations):
    with pytest.raises(InvalidInputError):
        await obligations.credit_wallet("k1", 0)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_task_locks_are_dropped_after_creation(gateway, obligations, completed_task):
    await asyncio.gather(*[
        obligations.create_obligation_for_completed_task(completed_task["id"]) for _ in range(3)
    ])

    assert len(obligations._task_locks) == 0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_credit_failure_leaves_obligation_settleable(gateway, obligations, completed_task):
    await obligations.create_obligation_for_completed_task(completed_task["id"])
    row = assert_single_obligation(gateway, completed_task["id"])
    gateway.fail("select", "wallets")

    with pytest.raises(SupabaseError):
        await obligations.complete_obligation(row)

    stored = gateway.row("transactions", row["id"])
    assert stored["status"] == "processing"
    assert stored["completed_at"] is None
    assert stored["failure_reason"].startswith("payee credit failed")
    assert gateway.rows("wallets") == []

    assert await obligations.complete_obligation(stored) is True

    settled = gateway.row("transactions", row["id"])
    assert settled["status"] == "completed"
    assert settled["failure_reason"] is None
    assert_wallet_balance(gateway, completed_task["tasker_id"], 500)
    assert len(gateway.rows("transactions", type="deposit")) == 1


# Refunds

@pytest.fixture
def settled_obligation(gateway, completed_task):
    row = create_obligation_data(completed_task, status="completed", description="Payment for task: Fix sink")
    gateway.seed("transactions", row)
    return row


@pytest.mark.unit
@pytest.mark.asyncio
async def test_partial_refund_recorded_as_pending(gateway, obligations, completed_task, settled_obligation):
    refund = await obligations.create_refund(settled_obligation["id"], 200, "Part of the work was not done")

    assert refund["type"] == "refund"
    assert refund["status"] == "pending"
    assert refund["amount"] == 200
    assert refund["user_id"] == completed_task["customer_id"]
    assert refund["task_id"] == completed_task["id"]
    assert refund["original_payment_id"] == settled_obligation["id"]
    assert refund["metadata"]["reason"] == "Part of the work was not done"
    assert refund["description"] == "Refund for: Payment for task: Fix sink"
    assert gateway.row("transactions", settled_obligation["id"])["status"] == "completed"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_full_refund_marks_obligation_refunded(gateway, obligations, settled_obligation):
    await obligations.create_refund(settled_obligation["id"], 200, "first part")
    await obligations.create_refund(settled_obligation["id"], 300, "remainder")

    assert gateway.row("transactions", settled_obligation["id"])["status"] == "refunded"
    assert len(gateway.rows("transactions", type="refund")) == 2

    with pytest.raises(DuplicateOperationError):
        await obligations.create_refund(settled_obligation["id"], 1, "again")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_refund_cannot_exceed_payment(gateway, obligations, settled_obligation):
    with pytest.raises(InvalidInputError):
        await obligations.create_refund(settled_obligation["id"], 600, "too much")

    await obligations.create_refund(settled_obligation["id"], 400, "most of it")
    with pytest.raises(InvalidInputError) as exc_info:
        await obligations.create_refund(settled_obligation["id"], 150, "over the rest")

    assert exc_info.value.details["refundable"] == 100
    assert len(gateway.rows("transactions", type="refund")) == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_failed_refunds_do_not_count(gateway, obligations, completed_task, settled_obligation):
    gateway.seed("transactions", {
        "user_id": completed_task["customer_id"],
        "type": "refund",
        "status": "failed",
        "amount": 500,
        "original_payment_id": settled_obligation["id"],
    })

    await obligations.create_refund(settled_obligation["id"], 500, "full refund")

    assert gateway.row("transactions", settled_obligation["id"])["status"] == "refunded"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_concurrent_refunds_stay_within_payment(gateway, obligations, settled_obligation):
    results = await asyncio.gather(
        obligations.create_refund(settled_obligation["id"], 300, "first"),
        obligations.create_refund(settled_obligation["id"], 300, "second"),
        return_exceptions=True,
    )

    assert sum(isinstance(r, InvalidInputError) for r in results) == 1
    refunds = gateway.rows("transactions", type="refund")
    assert sum(r["amount"] for r in refunds) == 300


@pytest.mark.unit
@pytest.mark.asyncio
@pytest.mark.parametrize("amount,reason", [(0, "zero"), (-5, "negative"), (100, "  ")])
async def test_refund_input_validated(obligations, settled_obligation, amount, reason):
    with pytest.raises(InvalidInputError):
        await obligations.create_refund(settled_obligation["id"], amount, reason)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_refund_requires_settled_payment(gateway, obligations, completed_task):
    row = create_obligation_data(completed_task, status="pending")
    gateway.seed("transactions", row)

    with pytest.raises(InvalidInputError):
        await obligations.create_refund(row["id"], 100, "not paid yet")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_refund_unknown_obligation(obligations):
    with pytest.raises(NotFoundError):
        await obligations.create_refund("missing", 100, "unknown")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_refund_notifies_payer(gateway, obligations, completed_task, settled_obligation):
    await obligations.create_refund(settled_obligation["id"], 100, "late arrival")

    notes = gateway.rows("notifications", user_id=completed_task["customer_id"])
    assert [n["data"]["event_kind"] for n in notes] == ["refund_requested"]
