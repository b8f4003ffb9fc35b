"""Submission and approval ledger.

Submissions and approvals are append-only. Within a task they are ordered by
timestamp then id; the newest submission is the only one that can be decided
and the newest approval of a submission is the authoritative one.
"""

import logging

from choreledger.core import db_client
from choreledger.core.errors import (
    ForbiddenError,
    InvalidTransitionError,
    InvariantViolationError,
    NotFoundError,
    StaleSubmissionError,
    TaskAlreadyCompletedError,
)
from choreledger.core.logging import log_with_context, span
from choreledger.domain.create_models import DecisionCreate, SubmissionCreate
from choreledger.domain.notification import NotificationType
from choreledger.domain.submission import ApprovalStatus, TaskApproval, TaskSubmission
from choreledger.domain.task import Task, TaskStatus
from choreledger.domain.user import UserRole
from choreledger.interface.ledger_client import LedgerClient
from choreledger.models.service_models import DecisionResult
from choreledger.modules.tasks import settlement, state_machine
from choreledger.modules.tasks.service import authoritative_approval, latest_submission, load_task
from choreledger.services import family_service, notification_service


logger = logging.getLogger(__name__)


async def submit(*, task_id: str, submitter_id: str, payload: SubmissionCreate) -> TaskSubmission:
    """Record proof of completion and move the task to SUBMITTED.

    The submission insert and the status change commit together.

    Args:
        task_id: Task being submitted
        submitter_id: Child submitting; must be the assignee
        payload: Proof photos and notes

    Returns:
        The new submission

    Raises:
        NotFoundError: If the task does not exist
        ForbiddenError: If the submitter is not the task's assignee
        TaskAlreadyCompletedError: If the task is APPROVED or COMPLETED
        InvalidTransitionError: If the task is EXPIRED or still a DRAFT
    """
    with span("submissions.submit"):
        task = await load_task(task_id)
        await family_service.require_active_member(user_id=submitter_id, family_id=task["family_id"])

        async with db_client.transaction():
            task = await load_task(task_id)

            # Guard: only the assignee submits
            if task.get("assigned_to_id") != submitter_id:
                raise ForbiddenError("This task is not assigned to you", task_id=task_id)

            if task["status"] in (TaskStatus.APPROVED, TaskStatus.COMPLETED):
                raise TaskAlreadyCompletedError(task_id=task_id, status=task["status"])

            if not state_machine.can_transition(task["status"], TaskStatus.SUBMITTED):
                raise InvalidTransitionError(
                    f"Task {task_id} is {task['status']} and cannot accept submissions",
                    task_id=task_id,
                )

            record = await db_client.create_record(
                collection="task_submissions",
                data={
                    "task_id": task_id,
                    "submitted_by_id": submitter_id,
                    "photo_urls": payload.photo_urls,
                    "notes": payload.notes,
                    "submitted_at": db_client.now_iso(),
                },
            )
            await state_machine.transition(
                task_id=task_id,
                from_status=task["status"],
                to_status=TaskStatus.SUBMITTED,
            )

        log_with_context(logger, "info", "Task submitted", task_id=task_id, submission_id=record["id"])
        await notification_service.notify_parents(
            family_id=task["family_id"],
            notification_type=NotificationType.TASK_SUBMITTED,
            title="Task ready for review",
            message=f"'{task['title']}' was submitted for review.",
            data={"task_id": task_id, "submission_id": record["id"]},
        )
        return TaskSubmission(**record)


async def decide(
    *,
    submission_id: str,
    approver_id: str,
    payload: DecisionCreate,
    ledger: LedgerClient | None = None,
) -> DecisionResult:
    """Record a parent's decision on a submission and advance the task.

    APPROVED moves the task to APPROVED and settles the reward before
    returning. REJECTED and NEEDS_REVISION both move it to REJECTED, from
    where the child may resubmit.

    Args:
        submission_id: Submission being decided; must be the task's newest
        approver_id: Active parent of the task's family
        payload: Decision, rating and comments
        ledger: Ledger client used for settlement

    Returns:
        DecisionResult with the approval, the task and the settlement outcome

    Raises:
        NotFoundError: If the submission does not exist
        ForbiddenError: If the approver is not an active parent of the family
        StaleSubmissionError: If a newer submission exists
        InvalidTransitionError: If the task is not SUBMITTED
        InvariantViolationError: If the submission was already decided while the task is still SUBMITTED
    """
    with span("submissions.decide"):
        try:
            submission = await db_client.get_record(collection="task_submissions", record_id=submission_id)
        except KeyError as e:
            raise NotFoundError(f"Submission {submission_id} not found") from e

        # The submission's task reference is authoritative, not the approval's copy
        task_id = submission["task_id"]
        task = await load_task(task_id)
        await family_service.require_active_member(
            user_id=approver_id,
            family_id=task["family_id"],
            role=UserRole.PARENT,
        )

        async with db_client.transaction():
            task = await load_task(task_id)

            latest = await latest_submission(task_id)
            if latest is None or latest["id"] != submission_id:
                raise StaleSubmissionError(submission_id=submission_id, latest_id=latest["id"] if latest else None)

            if task["status"] != TaskStatus.SUBMITTED:
                raise InvalidTransitionError(
                    f"Task {task_id} is {task['status']}, not awaiting review",
                    task_id=task_id,
                )

            previous = await authoritative_approval(submission_id)
            if previous is not None and previous["status"] != ApprovalStatus.PENDING:
                logger.error(
                    "Submission %s already decided (%s) but task %s is still SUBMITTED",
                    submission_id,
                    previous["status"],
                    task_id,
                )
                raise InvariantViolationError(
                    "This submission was already decided",
                    submission_id=submission_id,
                    task_id=task_id,
                )

            approval = await db_client.create_record(
                collection="task_approvals",
                data={
                    "submission_id": submission_id,
                    "task_id": task_id,
                    "approved_by_id": approver_id,
                    "status": payload.decision,
                    "rating": payload.rating,
                    "comments": payload.comments,
                    "approved_at": db_client.now_iso(),
                },
            )
            approved = payload.decision == ApprovalStatus.APPROVED
            task = await state_machine.transition(
                task_id=task_id,
                from_status=TaskStatus.SUBMITTED,
                to_status=TaskStatus.APPROVED if approved else TaskStatus.REJECTED,
            )

        log_with_context(
            logger,
            "info",
            "Submission decided",
            task_id=task_id,
            submission_id=submission_id,
            decision=payload.decision,
        )
        if approved:
            await notification_service.notify(
                user_id=submission["submitted_by_id"],
                notification_type=NotificationType.TASK_APPROVED,
                title="Task approved",
                message=f"'{task['title']}' was approved. Your reward is on its way.",
                data={"task_id": task_id, "submission_id": submission_id},
            )
        else:
            await notification_service.notify(
                user_id=submission["submitted_by_id"],
                notification_type=NotificationType.TASK_REJECTED,
                title="Task needs another try",
                message=payload.comments or f"'{task['title']}' was not approved. Please try again.",
                data={"task_id": task_id, "submission_id": submission_id, "decision": payload.decision},
            )

        result = None
        if approved:
            result = await settlement.settle(task_id=task_id, submission_id=submission_id, ledger=ledger)
            task = await load_task(task_id)

        return DecisionResult(approval=TaskApproval(**approval), task=Task(**task), settlement=result)
