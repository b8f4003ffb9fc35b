"""Task service for CRUD operations, assignment and recurrence."""

import logging
from datetime import UTC, datetime
from typing import Any

from dateutil.parser import isoparse

from choreledger.core import db_client
from choreledger.core.config import Constants
from choreledger.core.errors import (
    ForbiddenError,
    ForbiddenTransitionError,
    InvalidAssigneeError,
    InvalidTransitionError,
    NotFoundError,
    RewardLockedError,
    TaskHasSubmissionsError,
)
from choreledger.core.logging import span
from choreledger.domain.create_models import TaskCreate, TaskUpdate
from choreledger.domain.notification import NotificationType
from choreledger.domain.submission import TaskApproval, TaskSubmission
from choreledger.domain.task import RecurringConfig, Task, TaskStatus
from choreledger.domain.transaction import Transaction
from choreledger.domain.user import UserRole
from choreledger.models.service_models import TaskDetail
from choreledger.modules.tasks import recurrence, state_machine
from choreledger.services import family_service, notification_service


logger = logging.getLogger(__name__)


# Statuses in which the assignee may still change and the task may be deleted
UNSTARTED_STATUSES = (TaskStatus.DRAFT, TaskStatus.ASSIGNED)


async def load_task(task_id: str) -> dict[str, Any]:
    """Fetch a task record or raise NotFoundError."""
    try:
        return await db_client.get_record(collection="tasks", record_id=task_id)
    except KeyError as e:
        raise NotFoundError(f"Task {task_id} not found", task_id=task_id) from e


async def count_submissions(task_id: str) -> int:
    return await db_client.count_records(
        collection="task_submissions",
        filter_query=f'task_id = "{db_client.sanitize_param(task_id)}"',
    )


async def latest_submission(task_id: str) -> dict[str, Any] | None:
    """The task's newest submission by ``submitted_at`` then id."""
    return await db_client.get_first_record(
        collection="task_submissions",
        filter_query=f'task_id = "{db_client.sanitize_param(task_id)}"',
        sort="-submitted_at,-id",
    )


async def authoritative_approval(submission_id: str) -> dict[str, Any] | None:
    """The submission's newest approval by ``approved_at`` then id."""
    return await db_client.get_first_record(
        collection="task_approvals",
        filter_query=f'submission_id = "{db_client.sanitize_param(submission_id)}"',
        sort="-approved_at,-id",
    )


async def _require_assignable_child(*, family_id: str, assignee_id: str) -> None:
    """Raise InvalidAssigneeError unless the user is an active CHILD member of the family."""
    membership = await family_service.get_active_membership(user_id=assignee_id, family_id=family_id)
    if membership is None or membership.role != UserRole.CHILD:
        raise InvalidAssigneeError(assignee_id=assignee_id, family_id=family_id)


async def _notify_assigned(task: dict[str, Any]) -> None:
    await notification_service.notify(
        user_id=task["assigned_to_id"],
        notification_type=NotificationType.TASK_ASSIGNED,
        title="New task",
        message=f"You have a new task: {task['title']} (reward {task['reward_amount']}).",
        data={"task_id": task["id"]},
    )


async def create_task(*, creator_id: str, payload: TaskCreate) -> Task:
    """Create a task in the creator's family.

    With ``assigned_to_id`` the task starts ASSIGNED, otherwise DRAFT.

    Args:
        creator_id: Parent creating the task
        payload: Validated task fields

    Returns:
        Created task

    Raises:
        ForbiddenError: If the creator is not an active parent of a family
        InvalidAssigneeError: If the assignee is not an active child of that family
    """
    with span("task_service.create_task"):
        membership = await family_service.require_active_member(user_id=creator_id, role=UserRole.PARENT)

        if payload.assigned_to_id:
            await _require_assignable_child(family_id=membership.family_id, assignee_id=payload.assigned_to_id)

        if payload.is_recurring and payload.recurring_config is None:
            raise ValueError("Recurring tasks need a recurring_config")

        data: dict[str, Any] = payload.model_dump(exclude={"recurring_config", "assigned_to_id", "due_date"})
        data.update(
            {
                "family_id": membership.family_id,
                "created_by_id": creator_id,
                "status": TaskStatus.ASSIGNED if payload.assigned_to_id else TaskStatus.DRAFT,
            }
        )
        if payload.assigned_to_id:
            data["assigned_to_id"] = payload.assigned_to_id
        if payload.due_date:
            data["due_date"] = state_machine.normalize_timestamp(payload.due_date)
        if payload.recurring_config is not None:
            data["recurring_config"] = payload.recurring_config.model_dump()

        record = await db_client.create_record(collection="tasks", data=data)
        logger.info("Created task %s: %s (status %s)", record["id"], record["title"], record["status"])

        if record["status"] == TaskStatus.ASSIGNED:
            await _notify_assigned(record)
        return Task(**record)


async def get_task(*, task_id: str, requester_id: str) -> Task:
    """Fetch a task visible to the requester.

    Raises:
        NotFoundError: If the task does not exist
        ForbiddenError: If the requester is not an active member of the task's family
    """
    with span("task_service.get_task"):
        task = await load_task(task_id)
        await family_service.require_active_member(user_id=requester_id, family_id=task["family_id"])
        return Task(**task)


async def get_task_detail(*, task_id: str, requester_id: str) -> TaskDetail:
    """A task with its submissions (newest first, each with its approvals) and transactions."""
    with span("task_service.get_task_detail"):
        task = await load_task(task_id)
        await family_service.require_active_member(user_id=requester_id, family_id=task["family_id"])

        safe_id = db_client.sanitize_param(task_id)
        submission_records = await db_client.list_records(
            collection="task_submissions",
            filter_query=f'task_id = "{safe_id}"',
            per_page=Constants.INTERNAL_FETCH_LIMIT,
            sort="-submitted_at,-id",
        )
        approval_records = await db_client.list_records(
            collection="task_approvals",
            filter_query=f'task_id = "{safe_id}"',
            per_page=Constants.INTERNAL_FETCH_LIMIT,
            sort="-approved_at,-id",
        )
        transaction_records = await db_client.list_records(
            collection="transactions",
            filter_query=f'task_id = "{safe_id}"',
            per_page=Constants.INTERNAL_FETCH_LIMIT,
            sort="-created,-id",
        )

        approvals_by_submission: dict[str, list[TaskApproval]] = {}
        for approval in approval_records:
            approvals_by_submission.setdefault(approval["submission_id"], []).append(TaskApproval(**approval))

        submissions = [
            TaskSubmission(**record, approvals=approvals_by_submission.get(record["id"], []))
            for record in submission_records
        ]
        return TaskDetail(
            task=Task(**task),
            submissions=submissions,
            transactions=[Transaction(**record) for record in transaction_records],
        )


async def list_tasks(
    *,
    family_id: str,
    requester_id: str,
    status: TaskStatus | None = None,
    category: str | None = None,
    assigned_to_id: str | None = None,
    page: int = 1,
    per_page: int = Constants.MAX_PER_PAGE_LIMIT,
) -> list[Task]:
    """List a family's tasks, newest first (``created`` then id).

    Children only see tasks assigned to them.
    """
    with span("task_service.list_tasks"):
        membership = await family_service.require_active_member(user_id=requester_id, family_id=family_id)
        if membership.role == UserRole.CHILD:
            assigned_to_id = requester_id

        filters = [f'family_id = "{db_client.sanitize_param(family_id)}"']
        if status:
            filters.append(f'status = "{db_client.sanitize_param(status)}"')
        if category:
            filters.append(f'category = "{db_client.sanitize_param(category)}"')
        if assigned_to_id:
            filters.append(f'assigned_to_id = "{db_client.sanitize_param(assigned_to_id)}"')

        records = await db_client.list_records(
            collection="tasks",
            filter_query=" && ".join(filters),
            page=page,
            per_page=min(per_page, Constants.MAX_PER_PAGE_LIMIT),
            sort="-created,-id",
        )
        return [Task(**record) for record in records]


async def update_task(*, task_id: str, actor_id: str, update: TaskUpdate) -> Task:
    """Apply a partial update on behalf of a parent or the assigned child.

    Parents may edit descriptive fields and reassign. The assigned child may
    only move an ASSIGNED task to IN_PROGRESS. Every other status change goes
    through submission, decision, settlement or expiry.

    Raises:
        ForbiddenError: If the actor may not edit this task
        ForbiddenTransitionError: If the update carries a status the actor may not set
        RewardLockedError: If ``reward_amount`` changes after a submission exists
        InvalidAssigneeError: If a new assignee is not an active child of the family
        InvalidTransitionError: If the task is terminal, or past ASSIGNED when reassigning
    """
    with span("task_service.update_task"):
        task = await load_task(task_id)
        membership = await family_service.require_active_member(user_id=actor_id, family_id=task["family_id"])
        fields = update.model_dump(exclude_unset=True)

        if membership.role == UserRole.CHILD:
            return await _child_update(task=task, actor_id=actor_id, fields=fields)

        # Guard: parents never set status directly
        if "status" in fields:
            raise ForbiddenTransitionError(
                "Task status changes through submission and approval, not direct edits",
                task_id=task_id,
                requested=fields["status"],
            )

        assignee_id = fields.pop("assigned_to_id", None)
        reassigning = assignee_id is not None and assignee_id != task.get("assigned_to_id")
        if reassigning:
            await _require_assignable_child(family_id=task["family_id"], assignee_id=assignee_id)
        if fields.get("due_date"):
            fields["due_date"] = state_machine.normalize_timestamp(fields["due_date"])

        if not fields and not reassigning:
            return Task(**task)

        # Field edits and reassignment commit together or not at all
        async with db_client.transaction():
            current = await load_task(task_id)
            if current["status"] in state_machine.TERMINAL_STATUSES:
                raise InvalidTransitionError(f"Task {task_id} is {current['status']}", task_id=task_id)

            reward_changes = "reward_amount" in fields and fields["reward_amount"] != current["reward_amount"]
            if reward_changes and await count_submissions(task_id) > 0:
                raise RewardLockedError(task_id=task_id)

            if reassigning:
                current = await _apply_assignment(task=current, assignee_id=assignee_id)
            if fields:
                current = await db_client.update_record(collection="tasks", record_id=task_id, data=fields)

        logger.info("Updated task %s fields: %s", task_id, ", ".join(sorted(fields)) or "none")
        if reassigning:
            logger.info("Assigned task %s to %s", task_id, assignee_id)
            await _notify_assigned(current)
        return Task(**current)


async def _child_update(*, task: dict[str, Any], actor_id: str, fields: dict[str, Any]) -> Task:
    if task.get("assigned_to_id") != actor_id:
        raise ForbiddenError("This task is not assigned to you", task_id=task["id"])

    requested = fields.get("status")
    if set(fields) - {"status"}:
        raise ForbiddenError("Only parents can edit task details", task_id=task["id"])
    if requested != TaskStatus.IN_PROGRESS:
        raise ForbiddenTransitionError(
            "Children can only start a task; other statuses follow from submissions and approvals",
            task_id=task["id"],
            requested=requested,
        )

    updated = await state_machine.transition(
        task_id=task["id"],
        from_status=TaskStatus.ASSIGNED,
        to_status=TaskStatus.IN_PROGRESS,
    )
    return Task(**updated)


async def _apply_assignment(*, task: dict[str, Any], assignee_id: str) -> dict[str, Any]:
    """Point a DRAFT or ASSIGNED task at ``assignee_id``. Must run inside transaction()."""
    if task["status"] not in UNSTARTED_STATUSES:
        raise InvalidTransitionError(
            f"Task {task['id']} is {task['status']} and can no longer be reassigned",
            task_id=task["id"],
        )
    if task["status"] == TaskStatus.DRAFT:
        return await state_machine.transition(
            task_id=task["id"],
            from_status=TaskStatus.DRAFT,
            to_status=TaskStatus.ASSIGNED,
            extra={"assigned_to_id": assignee_id},
        )
    updated = await db_client.update_record(
        collection="tasks",
        record_id=task["id"],
        data={"assigned_to_id": assignee_id},
        filter_query=f'status = "{TaskStatus.ASSIGNED}"',
    )
    if updated is None:
        raise InvalidTransitionError(f"Task {task['id']} changed while being reassigned", task_id=task["id"])
    return updated


async def assign_task(*, task_id: str, parent_id: str, assignee_id: str) -> Task:
    """Assign (or reassign) a DRAFT or ASSIGNED task to a child of the family.

    Raises:
        ForbiddenError: If the caller is not an active parent of the task's family
        InvalidAssigneeError: If the assignee is not an active child of that family
        InvalidTransitionError: If the task has progressed past ASSIGNED
    """
    with span("task_service.assign_task"):
        task = await load_task(task_id)
        await family_service.require_active_member(user_id=parent_id, family_id=task["family_id"], role=UserRole.PARENT)
        await _require_assignable_child(family_id=task["family_id"], assignee_id=assignee_id)

        async with db_client.transaction():
            updated = await _apply_assignment(task=await load_task(task_id), assignee_id=assignee_id)

        logger.info("Assigned task %s to %s", task_id, assignee_id)
        await _notify_assigned(updated)
        return Task(**updated)


async def delete_task(*, task_id: str, parent_id: str) -> None:
    """Hard-delete a DRAFT or ASSIGNED task that has no submissions.

    Raises:
        ForbiddenError: If the caller is not an active parent of the task's family
        TaskHasSubmissionsError: If any submission exists
        InvalidTransitionError: If the task has progressed past ASSIGNED
    """
    with span("task_service.delete_task"):
        task = await load_task(task_id)
        await family_service.require_active_member(user_id=parent_id, family_id=task["family_id"], role=UserRole.PARENT)

        async with db_client.transaction():
            current = await load_task(task_id)
            if await count_submissions(task_id) > 0:
                raise TaskHasSubmissionsError(task_id=task_id)
            if current["status"] not in UNSTARTED_STATUSES:
                raise InvalidTransitionError(f"Task {task_id} is {current['status']} and cannot be deleted")
            await db_client.delete_record(collection="tasks", record_id=task_id)

        logger.info("Deleted task %s", task_id)


async def spawn_next_occurrence(task: dict[str, Any]) -> Task | None:
    """Create the next occurrence of a completed recurring task.

    The new occurrence is ASSIGNED to the same child while that child is still
    an active member, otherwise it starts as a DRAFT.

    Returns:
        The new task, or None if the task does not recur (or its series ended)
    """
    with span("task_service.spawn_next_occurrence"):
        if not task.get("is_recurring") or not task.get("recurring_config"):
            return None

        config = RecurringConfig(**task["recurring_config"])
        completed_at = isoparse(task["completed_at"]) if task.get("completed_at") else datetime.now(UTC)
        previous_due = isoparse(task["due_date"]) if task.get("due_date") else None
        due = recurrence.next_due_date(config, previous_due=previous_due, completed_at=completed_at)
        if due is None:
            logger.info("Recurring task %s reached its end date", task["id"])
            return None

        assignee_id = task.get("assigned_to_id")
        if assignee_id:
            membership = await family_service.get_active_membership(user_id=assignee_id, family_id=task["family_id"])
            if membership is None or membership.role != UserRole.CHILD:
                assignee_id = None

        data: dict[str, Any] = {
            key: task[key]
            for key in (
                "family_id",
                "created_by_id",
                "title",
                "description",
                "instructions",
                "category",
                "difficulty",
                "reward_amount",
                "estimated_time",
                "priority",
                "is_recurring",
                "recurring_config",
            )
        }
        data.update(
            {
                "status": TaskStatus.ASSIGNED if assignee_id else TaskStatus.DRAFT,
                "due_date": state_machine.normalize_timestamp(due),
                "recurrence_of_id": task["id"],
            }
        )
        if assignee_id:
            data["assigned_to_id"] = assignee_id

        record = await db_client.create_record(collection="tasks", data=data)
        logger.info("Spawned occurrence %s of recurring task %s due %s", record["id"], task["id"], record["due_date"])

        if assignee_id:
            await _notify_assigned(record)
        return Task(**record)
