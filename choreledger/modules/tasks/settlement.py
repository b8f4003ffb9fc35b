"""Reward settlement: pays an approved submission at most once.

The idempotency key is (task_id, submission_id, TASK_REWARD), backed by a
partial unique index on ``transactions``. Settlement runs in three steps:

1. Claim: in one transaction, find or create the reward row and mark it PENDING.
2. Transfer: call the ledger with no store lock held. The PENDING row is the
   durable in-flight marker.
3. Finalize: in one transaction, record CONFIRMED (and complete the task) or FAILED.

A FAILED row is reused by the next attempt rather than a second row inserted.
"""

import asyncio
import logging
from typing import Any

from choreledger.core import db_client
from choreledger.core.config import Constants, settings
from choreledger.core.errors import (
    EngineError,
    InvalidTransitionError,
    InvariantViolationError,
    NotFoundError,
    TransferFailedError,
)
from choreledger.core.logging import log_with_context, span
from choreledger.domain.notification import NotificationType
from choreledger.domain.submission import ApprovalStatus
from choreledger.domain.task import TaskStatus
from choreledger.domain.transaction import Transaction, TransactionStatus, TransactionType
from choreledger.domain.user import UserRole
from choreledger.interface.ledger_client import LedgerClient, TransferResult, get_ledger_client
from choreledger.models.service_models import SettlementOutcome, SettlementResult, SettlementRetryResult
from choreledger.modules.tasks import service as task_service
from choreledger.modules.tasks import state_machine
from choreledger.services import family_service, notification_service


logger = logging.getLogger(__name__)


# Existing rows in these states are returned as-is
IN_FLIGHT_OR_DONE = (TransactionStatus.PENDING, TransactionStatus.CONFIRMED)
# Existing rows in these states are reused by a new attempt
REUSABLE = (TransactionStatus.FAILED, TransactionStatus.CANCELLED)

MISSING_WALLET_REASON = "Recipient has no wallet address"


def _reward_filter(task_id: str, submission_id: str) -> str:
    return (
        f'task_id = "{db_client.sanitize_param(task_id)}" && '
        f'submission_id = "{db_client.sanitize_param(submission_id)}" && '
        f'type = "{TransactionType.TASK_REWARD}"'
    )


async def find_reward(*, task_id: str, submission_id: str) -> dict[str, Any] | None:
    """The reward row for an idempotency key, if one exists."""
    return await db_client.get_first_record(
        collection="transactions",
        filter_query=_reward_filter(task_id, submission_id),
    )


def _result_for_existing(row: dict[str, Any]) -> SettlementResult:
    outcome = SettlementOutcome.CONFIRMED if row["status"] == TransactionStatus.CONFIRMED else SettlementOutcome.PENDING
    return SettlementResult(transaction=Transaction(**row), outcome=outcome)


async def _claim(*, task_id: str, submission_id: str) -> tuple[dict[str, Any], bool]:
    """Find or create the reward row and mark it PENDING.

    Returns:
        Tuple of (transaction row, whether this caller should call the ledger)
    """
    try:
        async with db_client.transaction():
            task = await task_service.load_task(task_id)
            try:
                submission = await db_client.get_record(collection="task_submissions", record_id=submission_id)
            except KeyError as e:
                raise NotFoundError(f"Submission {submission_id} not found") from e

            if submission["task_id"] != task_id:
                raise NotFoundError(f"Submission {submission_id} does not belong to task {task_id}")

            approval = await task_service.authoritative_approval(submission_id)
            if approval is None or approval["status"] != ApprovalStatus.APPROVED:
                raise InvalidTransitionError(
                    f"Submission {submission_id} is not approved",
                    task_id=task_id,
                    submission_id=submission_id,
                )
            if task["status"] not in (TaskStatus.APPROVED, TaskStatus.COMPLETED):
                raise InvalidTransitionError(f"Task {task_id} is {task['status']}, not approved", task_id=task_id)

            existing = await find_reward(task_id=task_id, submission_id=submission_id)
            if existing is not None and existing["status"] in IN_FLIGHT_OR_DONE:
                return existing, False

            if task["status"] == TaskStatus.COMPLETED:
                logger.error("Task %s is COMPLETED without a confirmed reward", task_id)
                raise InvariantViolationError(
                    "Task completed without a confirmed reward",
                    task_id=task_id,
                    submission_id=submission_id,
                )

            recipient = await db_client.get_record(collection="users", record_id=submission["submitted_by_id"])

            if existing is not None:
                reused = await db_client.update_record(
                    collection="transactions",
                    record_id=existing["id"],
                    data={
                        "status": TransactionStatus.PENDING,
                        "attempts": existing["attempts"] + 1,
                        "failure_reason": None,
                        "to_address": recipient.get("wallet_address"),
                    },
                    filter_query=f'status = "{existing["status"]}"',
                )
                return reused, True

            created = await db_client.create_record(
                collection="transactions",
                data={
                    "task_id": task_id,
                    "submission_id": submission_id,
                    "user_id": submission["submitted_by_id"],
                    "family_id": task["family_id"],
                    "type": TransactionType.TASK_REWARD,
                    "amount": str(task["reward_amount"]),
                    "status": TransactionStatus.PENDING,
                    "from_address": settings.ledger_sender_address,
                    "to_address": recipient.get("wallet_address"),
                    "attempts": 1,
                },
            )
            return created, True
    except db_client.DuplicateRecordError:
        # A concurrent settle inserted the row first
        existing = await find_reward(task_id=task_id, submission_id=submission_id)
        if existing is None:
            raise
        return existing, False


async def _transfer(ledger: LedgerClient, row: dict[str, Any]) -> TransferResult:
    if not row.get("to_address"):
        raise TransferFailedError(MISSING_WALLET_REASON, transaction_id=row["id"])
    try:
        return await asyncio.wait_for(
            ledger.transfer(to_address=row["to_address"], amount=row["amount"], reference=f"reward-{row['id']}"),
            timeout=Constants.LEDGER_TIMEOUT_SECONDS,
        )
    except TimeoutError as e:
        raise TransferFailedError(
            f"Ledger did not answer within {Constants.LEDGER_TIMEOUT_SECONDS:g}s",
            transaction_id=row["id"],
        ) from e


async def _confirm(*, row: dict[str, Any], result: TransferResult) -> tuple[dict[str, Any], dict[str, Any] | None]:
    """Record a successful transfer and complete the task.

    Returns:
        Tuple of (transaction row, completed task or None if the task was not APPROVED)
    """
    async with db_client.transaction():
        confirmed = await db_client.update_record(
            collection="transactions",
            record_id=row["id"],
            data={
                "status": TransactionStatus.CONFIRMED,
                "tx_hash": result.tx_hash,
                "block_number": result.block_number,
                "gas_used": result.gas_used,
                "gas_fee": result.gas_fee,
                "confirmed_at": db_client.now_iso(),
                "failure_reason": None,
            },
            filter_query=f'status = "{TransactionStatus.PENDING}"',
        )
        if confirmed is None:
            logger.error("Reward %s left PENDING before confirmation of tx %s", row["id"], result.tx_hash)
            return await db_client.get_record(collection="transactions", record_id=row["id"]), None

        task = await task_service.load_task(row["task_id"])
        if task["status"] != TaskStatus.APPROVED:
            # The transfer happened, so the CONFIRMED row must be kept regardless
            logger.error("Reward %s confirmed but task %s is %s", row["id"], task["id"], task["status"])
            return confirmed, None

        completed = await state_machine.transition(
            task_id=task["id"],
            from_status=TaskStatus.APPROVED,
            to_status=TaskStatus.COMPLETED,
        )
        return confirmed, completed


async def _fail(*, row: dict[str, Any], reason: str) -> dict[str, Any]:
    async with db_client.transaction():
        failed = await db_client.update_record(
            collection="transactions",
            record_id=row["id"],
            data={"status": TransactionStatus.FAILED, "failure_reason": reason},
            filter_query=f'status = "{TransactionStatus.PENDING}"',
        )
        if failed is None:
            return await db_client.get_record(collection="transactions", record_id=row["id"])
        return failed


async def settle(*, task_id: str, submission_id: str, ledger: LedgerClient | None = None) -> SettlementResult:
    """Pay the reward for an approved submission, at most once.

    Repeated calls with the same key return the existing PENDING or CONFIRMED
    row unchanged. A ledger failure (including a timeout or a missing wallet)
    is recorded on the row and returned as a retryable result, not raised.

    Args:
        task_id: Approved task
        submission_id: Its approved submission
        ledger: Ledger client (defaults to the configured HTTP client)

    Returns:
        SettlementResult with the transaction row and outcome

    Raises:
        NotFoundError: If the task or submission does not exist
        InvalidTransitionError: If the submission is not approved or the task is not APPROVED/COMPLETED
        InvariantViolationError: If the task is COMPLETED without a confirmed reward
    """
    with span("settlement.settle"):
        row, should_transfer = await _claim(task_id=task_id, submission_id=submission_id)
        if not should_transfer:
            log_with_context(
                logger,
                "info",
                "Reward already settled or in flight",
                task_id=task_id,
                transaction_id=row["id"],
                status=row["status"],
            )
            return _result_for_existing(row)

        ledger = ledger or get_ledger_client()
        try:
            transfer = await _transfer(ledger, row)
        except TransferFailedError as e:
            reason = e.message
        except Exception as e:
            logger.exception("Unexpected ledger error for reward %s", row["id"])
            reason = f"Unexpected ledger error: {e!s}"
        else:
            confirmed, completed = await _confirm(row=row, result=transfer)
            log_with_context(
                logger,
                "info",
                "Reward confirmed",
                task_id=task_id,
                transaction_id=confirmed["id"],
                tx_hash=transfer.tx_hash,
            )
            await _after_confirmed(confirmed=confirmed, completed_task=completed)
            return SettlementResult(transaction=Transaction(**confirmed), outcome=SettlementOutcome.CONFIRMED)

        failed = await _fail(row=row, reason=reason)
        log_with_context(
            logger,
            "warning",
            "Reward transfer failed",
            task_id=task_id,
            transaction_id=failed["id"],
            attempts=failed["attempts"],
            reason=reason,
        )
        # Parents hear about a reward once; later attempts report through their caller
        if failed["attempts"] == 1:
            await notification_service.notify_parents(
                family_id=failed["family_id"],
                notification_type=NotificationType.REWARD_FAILED,
                title="Reward payment failed",
                message=f"Paying reward {failed['amount']} failed: {reason}. You can retry it.",
                data={"task_id": task_id, "transaction_id": failed["id"]},
            )
        return SettlementResult(
            transaction=Transaction(**failed),
            outcome=SettlementOutcome.FAILED_RETRYABLE,
            retryable=True,
            error=reason,
        )


async def _after_confirmed(*, confirmed: dict[str, Any], completed_task: dict[str, Any] | None) -> None:
    await notification_service.notify(
        user_id=confirmed["user_id"],
        notification_type=NotificationType.REWARD_SENT,
        title="Reward sent",
        message=f"You received {confirmed['amount']} for your task.",
        data={"task_id": confirmed["task_id"], "transaction_id": confirmed["id"], "tx_hash": confirmed["tx_hash"]},
    )
    if completed_task is None:
        return
    try:
        await task_service.spawn_next_occurrence(completed_task)
    except Exception:
        logger.exception("Failed to spawn next occurrence of recurring task %s", completed_task["id"])


async def settle_task(*, task_id: str, actor_id: str, ledger: LedgerClient | None = None) -> SettlementResult:
    """Parent-triggered settlement of an APPROVED task (e.g. after a failed transfer).

    Raises:
        ForbiddenError: If the actor is not an active parent of the task's family
        InvalidTransitionError: If the task is not APPROVED
    """
    with span("settlement.settle_task"):
        task = await task_service.load_task(task_id)
        await family_service.require_active_member(user_id=actor_id, family_id=task["family_id"], role=UserRole.PARENT)

        if task["status"] != TaskStatus.APPROVED:
            raise InvalidTransitionError(f"Task {task_id} is {task['status']}, not awaiting payment", task_id=task_id)

        submission = await task_service.latest_submission(task_id)
        if submission is None:
            raise InvariantViolationError("Approved task has no submission", task_id=task_id)
        return await settle(task_id=task_id, submission_id=submission["id"], ledger=ledger)


async def retry_failed_settlements(*, ledger: LedgerClient | None = None) -> SettlementRetryResult:
    """Retry every FAILED task reward whose task is still APPROVED.

    Rewards that failed for lack of a wallet wait until the recipient sets one.
    """
    with span("settlement.retry_failed_settlements"):
        failed_rows = await db_client.list_records(
            collection="transactions",
            filter_query=f'status = "{TransactionStatus.FAILED}" && type = "{TransactionType.TASK_REWARD}"',
            per_page=Constants.SWEEP_BATCH_SIZE,
            sort="updated ASC, id ASC",
        )
        summary = SettlementRetryResult()
        ledger = ledger or get_ledger_client()

        for row in failed_rows:
            if not row.get("task_id") or not row.get("submission_id"):
                continue
            task = await db_client.get_first_record(
                collection="tasks",
                filter_query=f'id = "{row["task_id"]}" && status = "{TaskStatus.APPROVED}"',
            )
            if task is None:
                continue

            if row.get("failure_reason") == MISSING_WALLET_REASON:
                recipient = await db_client.get_record(collection="users", record_id=row["user_id"])
                if not recipient.get("wallet_address"):
                    summary.skipped += 1
                    continue

            summary.attempted += 1
            try:
                result = await settle(task_id=row["task_id"], submission_id=row["submission_id"], ledger=ledger)
            except EngineError as e:
                logger.warning("Skipping retry of reward %s: %s", row["id"], e.message)
                summary.failed += 1
                continue

            if result.outcome == SettlementOutcome.CONFIRMED:
                summary.confirmed += 1
            else:
                summary.failed += 1

        if summary.attempted:
            logger.info(
                "Settlement retry: %d attempted, %d confirmed, %d failed",
                summary.attempted,
                summary.confirmed,
                summary.failed,
            )
        return summary


async def list_transactions(
    *,
    requester_id: str,
    family_id: str | None = None,
    page: int = 1,
    per_page: int = Constants.MAX_PER_PAGE_LIMIT,
) -> list[Transaction]:
    """List transactions, newest first.

    Parents listing with ``family_id`` see the whole family's transactions;
    everyone else sees the transactions paid to them.
    """
    with span("settlement.list_transactions"):
        filter_query = f'user_id = "{db_client.sanitize_param(requester_id)}"'
        if family_id is not None:
            membership = await family_service.require_active_member(user_id=requester_id, family_id=family_id)
            if membership.role == UserRole.PARENT:
                filter_query = f'family_id = "{db_client.sanitize_param(family_id)}"'
            else:
                filter_query += f' && family_id = "{db_client.sanitize_param(family_id)}"'

        records = await db_client.list_records(
            collection="transactions",
            filter_query=filter_query,
            page=page,
            per_page=min(per_page, Constants.MAX_PER_PAGE_LIMIT),
            sort="-created,-id",
        )
        return [Transaction(**record) for record in records]
