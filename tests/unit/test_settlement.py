"""Unit tests for reward settlement."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from choreledger.core import db_client
from choreledger.core.config import Constants
from choreledger.core.errors import ForbiddenError, InvalidTransitionError, InvariantViolationError
from choreledger.domain import (
    ApprovalStatus,
    DecisionCreate,
    NotificationType,
    RecurringConfig,
    SubmissionCreate,
    TaskStatus,
    TransactionStatus,
    UserRole,
)
from choreledger.models.service_models import SettlementOutcome
from choreledger.modules.tasks import settlement, submissions
from choreledger.services import notification_service, user_service


APPROVE = DecisionCreate(decision=ApprovalStatus.APPROVED)


async def _reward_rows() -> list[dict]:
    return await db_client.list_records(collection="transactions", filter_query='type = "TASK_REWARD"')


@pytest.fixture
def approved_without_settlement(family, make_task, submit_proof):
    """Approve a task while skipping the settlement that decide() would run."""

    async def _approve(**task_fields):
        task = await make_task(**task_fields)
        submission = await submit_proof(task.id)
        with patch.object(settlement, "settle", AsyncMock(return_value=None)):
            await submissions.decide(submission_id=submission.id, approver_id=family.parent.id, payload=APPROVE)
        return task, submission

    return _approve


@pytest.mark.unit
class TestSettle:
    async def test_failed_transfer_then_retry_reuses_row(self, family, make_task, submit_proof, failing_ledger, ledger):
        task = await make_task(reward_amount=100)
        submission = await submit_proof(task.id)

        decision = await submissions.decide(
            submission_id=submission.id,
            approver_id=family.parent.id,
            payload=APPROVE,
            ledger=failing_ledger,
        )

        failed = decision.settlement
        assert failed.outcome == SettlementOutcome.FAILED_RETRYABLE
        assert failed.retryable is True
        assert "connection refused" in failed.error
        assert failed.transaction.status == TransactionStatus.FAILED
        assert failed.transaction.attempts == 1
        assert decision.task.status == TaskStatus.APPROVED
        parent_types = [n.type for n in await notification_service.list_notifications(user_id=family.parent.id)]
        assert parent_types[0] == NotificationType.REWARD_FAILED

        retried = await settlement.settle(task_id=task.id, submission_id=submission.id, ledger=ledger)

        assert retried.outcome == SettlementOutcome.CONFIRMED
        assert retried.transaction.id == failed.transaction.id
        assert retried.transaction.attempts == 2
        assert retried.transaction.failure_reason is None
        assert retried.transaction.tx_hash is not None
        assert len(await _reward_rows()) == 1
        stored = await db_client.get_record(collection="tasks", record_id=task.id)
        assert stored["status"] == TaskStatus.COMPLETED

    async def test_settling_again_after_confirmation_is_a_no_op(self, family, make_task, submit_proof, ledger):
        task = await make_task()
        submission = await submit_proof(task.id)
        decision = await submissions.decide(
            submission_id=submission.id,
            approver_id=family.parent.id,
            payload=APPROVE,
            ledger=ledger,
        )

        again = await settlement.settle(task_id=task.id, submission_id=submission.id, ledger=ledger)

        assert again.outcome == SettlementOutcome.CONFIRMED
        assert again.transaction.id == decision.settlement.transaction.id
        assert len(ledger.calls) == 1
        assert len(await _reward_rows()) == 1

    async def test_concurrent_settles_pay_once(self, approved_without_settlement, make_ledger):
        task, submission = await approved_without_settlement()
        slow_ledger = make_ledger(delay=0.05)

        results = await asyncio.gather(
            settlement.settle(task_id=task.id, submission_id=submission.id, ledger=slow_ledger),
            settlement.settle(task_id=task.id, submission_id=submission.id, ledger=slow_ledger),
        )

        assert sorted(r.outcome for r in results) == sorted([SettlementOutcome.CONFIRMED, SettlementOutcome.PENDING])
        assert len(slow_ledger.calls) == 1
        rows = await _reward_rows()
        assert len(rows) == 1
        assert rows[0]["status"] == TransactionStatus.CONFIRMED

    async def test_ledger_timeout_is_recorded_as_failure(self, approved_without_settlement, make_ledger, monkeypatch):
        task, submission = await approved_without_settlement()
        monkeypatch.setattr(Constants, "LEDGER_TIMEOUT_SECONDS", 0.01)

        result = await settlement.settle(task_id=task.id, submission_id=submission.id, ledger=make_ledger(delay=1.0))

        assert result.outcome == SettlementOutcome.FAILED_RETRYABLE
        assert "did not answer" in result.error
        stored = await db_client.get_record(collection="tasks", record_id=task.id)
        assert stored["status"] == TaskStatus.APPROVED

    async def test_unexpected_ledger_error_is_recorded_as_failure(self, approved_without_settlement, make_ledger):
        task, submission = await approved_without_settlement()

        result = await settlement.settle(
            task_id=task.id,
            submission_id=submission.id,
            ledger=make_ledger(error=RuntimeError("socket closed")),
        )

        assert result.outcome == SettlementOutcome.FAILED_RETRYABLE
        assert result.transaction.failure_reason == "Unexpected ledger error: socket closed"

    async def test_missing_wallet_fails_without_calling_ledger(self, family, make_user, join_family, make_task, ledger):
        walletless = await make_user(UserRole.CHILD, wallet=False)
        await join_family(parent=family.parent, member=walletless, code=family.invite_code)
        task = await make_task(assigned_to_id=walletless.id)
        submission = await submissions.submit(
            task_id=task.id,
            submitter_id=walletless.id,
            payload=SubmissionCreate(photo_urls=["https://img.example.com/p.jpg"]),
        )

        decision = await submissions.decide(
            submission_id=submission.id,
            approver_id=family.parent.id,
            payload=APPROVE,
            ledger=ledger,
        )

        assert decision.settlement.outcome == SettlementOutcome.FAILED_RETRYABLE
        assert "no wallet" in decision.settlement.error
        assert ledger.calls == []

        await user_service.set_wallet_address(user_id=walletless.id, wallet_address="0x" + "ab" * 20)
        retried = await settlement.settle(task_id=task.id, submission_id=submission.id, ledger=ledger)
        assert retried.outcome == SettlementOutcome.CONFIRMED
        assert retried.transaction.to_address == "0x" + "ab" * 20

    async def test_rejected_submission_cannot_be_settled(self, family, make_task, submit_proof, ledger):
        task = await make_task()
        submission = await submit_proof(task.id)
        await submissions.decide(
            submission_id=submission.id,
            approver_id=family.parent.id,
            payload=DecisionCreate(decision=ApprovalStatus.REJECTED),
        )

        with pytest.raises(InvalidTransitionError):
            await settlement.settle(task_id=task.id, submission_id=submission.id, ledger=ledger)

        assert await _reward_rows() == []

    async def test_completed_without_reward_is_an_invariant_violation(self, approved_without_settlement, ledger):
        task, submission = await approved_without_settlement()
        await db_client.update_record(collection="tasks", record_id=task.id, data={"status": TaskStatus.COMPLETED})

        with pytest.raises(InvariantViolationError):
            await settlement.settle(task_id=task.id, submission_id=submission.id, ledger=ledger)

        assert ledger.calls == []


@pytest.mark.unit
class TestSettleTask:
    async def test_parent_retries_failed_reward(self, family, make_task, submit_proof, failing_ledger, ledger):
        task = await make_task()
        submission = await submit_proof(task.id)
        await submissions.decide(
            submission_id=submission.id,
            approver_id=family.parent.id,
            payload=APPROVE,
            ledger=failing_ledger,
        )

        result = await settlement.settle_task(task_id=task.id, actor_id=family.parent.id, ledger=ledger)

        assert result.outcome == SettlementOutcome.CONFIRMED

    async def test_child_cannot_trigger(self, family, approved_without_settlement, ledger):
        task, _ = await approved_without_settlement()

        with pytest.raises(ForbiddenError):
            await settlement.settle_task(task_id=task.id, actor_id=family.child.id, ledger=ledger)

    async def test_unapproved_task(self, family, make_task, ledger):
        task = await make_task()

        with pytest.raises(InvalidTransitionError):
            await settlement.settle_task(task_id=task.id, actor_id=family.parent.id, ledger=ledger)


@pytest.mark.unit
class TestRetryFailedSettlements:
    async def test_retries_only_approved_tasks(self, family, make_task, submit_proof, failing_ledger, ledger):
        task = await make_task()
        submission = await submit_proof(task.id)
        await submissions.decide(
            submission_id=submission.id,
            approver_id=family.parent.id,
            payload=APPROVE,
            ledger=failing_ledger,
        )

        summary = await settlement.retry_failed_settlements(ledger=ledger)

        assert (summary.attempted, summary.confirmed, summary.failed) == (1, 1, 0)
        second = await settlement.retry_failed_settlements(ledger=ledger)
        assert second.attempted == 0

    async def test_counts_failures(self, family, make_task, submit_proof, failing_ledger):
        task = await make_task()
        submission = await submit_proof(task.id)
        await submissions.decide(
            submission_id=submission.id,
            approver_id=family.parent.id,
            payload=APPROVE,
            ledger=failing_ledger,
        )

        summary = await settlement.retry_failed_settlements(ledger=failing_ledger)

        assert (summary.attempted, summary.confirmed, summary.failed) == (1, 0, 1)
        rows = await _reward_rows()
        assert rows[0]["attempts"] == 2

    async def test_parents_notified_once_across_retries(self, family, make_task, submit_proof, failing_ledger):
        task = await make_task()
        submission = await submit_proof(task.id)
        await submissions.decide(
            submission_id=submission.id,
            approver_id=family.parent.id,
            payload=APPROVE,
            ledger=failing_ledger,
        )

        for _ in range(5):
            await settlement.retry_failed_settlements(ledger=failing_ledger)

        notes = await notification_service.list_notifications(user_id=family.parent.id)
        assert [n.type for n in notes].count(NotificationType.REWARD_FAILED) == 1
        rows = await _reward_rows()
        assert rows[0]["attempts"] == 6

    async def test_walletless_reward_waits_for_wallet(self, family, make_user, join_family, make_task, ledger):
        walletless = await make_user(UserRole.CHILD, wallet=False)
        await join_family(parent=family.parent, member=walletless, code=family.invite_code)
        task = await make_task(assigned_to_id=walletless.id)
        submission = await submissions.submit(
            task_id=task.id,
            submitter_id=walletless.id,
            payload=SubmissionCreate(photo_urls=["https://img.example.com/p.jpg"]),
        )
        await submissions.decide(
            submission_id=submission.id,
            approver_id=family.parent.id,
            payload=APPROVE,
            ledger=ledger,
        )

        waiting = await settlement.retry_failed_settlements(ledger=ledger)

        assert (waiting.attempted, waiting.skipped) == (0, 1)
        assert (await _reward_rows())[0]["attempts"] == 1

        await user_service.set_wallet_address(user_id=walletless.id, wallet_address="0x" + "ab" * 20)
        paid = await settlement.retry_failed_settlements(ledger=ledger)

        assert (paid.attempted, paid.confirmed, paid.skipped) == (1, 1, 0)
        assert len(ledger.calls) == 1


@pytest.mark.unit
class TestRecurringSpawn:
    async def test_confirmed_recurring_task_spawns_next_occurrence(self, family, make_task, submit_proof, ledger):
        task = await make_task(
            due_date="2026-01-01T00:00:00+00:00",
            is_recurring=True,
            recurring_config=RecurringConfig(frequency="daily"),
        )
        submission = await submit_proof(task.id)

        await submissions.decide(
            submission_id=submission.id,
            approver_id=family.parent.id,
            payload=APPROVE,
            ledger=ledger,
        )

        spawned = await db_client.get_first_record(collection="tasks", filter_query=f'recurrence_of_id = "{task.id}"')
        assert spawned is not None
        assert spawned["status"] == TaskStatus.ASSIGNED
        assert spawned["assigned_to_id"] == family.child.id
        assert spawned["due_date"] > db_client.now_iso()
        assert spawned["recurring_config"] == {"frequency": "daily", "interval": 1, "days_of_week": None, "end_date": None}

    async def test_failed_settlement_does_not_spawn(self, family, make_task, submit_proof, failing_ledger):
        task = await make_task(is_recurring=True, recurring_config=RecurringConfig(frequency="daily"))
        submission = await submit_proof(task.id)

        await submissions.decide(
            submission_id=submission.id,
            approver_id=family.parent.id,
            payload=APPROVE,
            ledger=failing_ledger,
        )

        assert await db_client.count_records(collection="tasks", filter_query=f'recurrence_of_id = "{task.id}"') == 0


@pytest.mark.unit
class TestListTransactions:
    async def test_parent_sees_family_and_child_sees_own(self, family, make_task, submit_proof, ledger):
        task = await make_task()
        submission = await submit_proof(task.id)
        await submissions.decide(
            submission_id=submission.id,
            approver_id=family.parent.id,
            payload=APPROVE,
            ledger=ledger,
        )

        family_rows = await settlement.list_transactions(requester_id=family.parent.id, family_id=family.family_id)
        own_rows = await settlement.list_transactions(requester_id=family.child.id)
        parent_own = await settlement.list_transactions(requester_id=family.parent.id)

        assert len(family_rows) == 1
        assert [r.id for r in own_rows] == [family_rows[0].id]
        assert parent_own == []
