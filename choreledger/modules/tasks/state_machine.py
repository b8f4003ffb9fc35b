"""Task lifecycle transitions.

Every status write goes through ``transition``, which is a compare-and-set on
the status the caller observed, so a concurrent change makes the write fail
instead of silently overwriting it.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from choreledger.core import db_client
from choreledger.core.config import Constants
from choreledger.core.errors import InvalidTransitionError, NotFoundError
from choreledger.core.logging import span
from choreledger.domain.task import TaskStatus
from choreledger.models.service_models import ExpirySweepResult


logger = logging.getLogger(__name__)


TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.DRAFT: {TaskStatus.ASSIGNED, TaskStatus.EXPIRED},
    TaskStatus.ASSIGNED: {TaskStatus.IN_PROGRESS, TaskStatus.SUBMITTED, TaskStatus.EXPIRED},
    TaskStatus.IN_PROGRESS: {TaskStatus.SUBMITTED, TaskStatus.EXPIRED},
    # Resubmission while awaiting review replaces the pending submission
    TaskStatus.SUBMITTED: {TaskStatus.SUBMITTED, TaskStatus.APPROVED, TaskStatus.REJECTED, TaskStatus.EXPIRED},
    TaskStatus.REJECTED: {TaskStatus.SUBMITTED, TaskStatus.EXPIRED},
    TaskStatus.APPROVED: {TaskStatus.COMPLETED},
    TaskStatus.COMPLETED: set(),
    TaskStatus.EXPIRED: set(),
}

# Statuses the expiry sweep may move to EXPIRED. APPROVED is excluded: a reward is owed.
EXPIRABLE_STATUSES = (
    TaskStatus.DRAFT,
    TaskStatus.ASSIGNED,
    TaskStatus.IN_PROGRESS,
    TaskStatus.SUBMITTED,
    TaskStatus.REJECTED,
)

TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.EXPIRED})


def can_transition(from_status: TaskStatus | str, to_status: TaskStatus | str) -> bool:
    """Return True if the lifecycle allows moving from ``from_status`` to ``to_status``."""
    return TaskStatus(to_status) in TRANSITIONS[TaskStatus(from_status)]


def normalize_timestamp(value: str | datetime) -> str:
    """Render a timestamp as a UTC ISO string so stored values compare lexically.

    Naive values are taken to be UTC.
    """
    parsed = value if isinstance(value, datetime) else datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC).isoformat()


async def transition(
    *,
    task_id: str,
    from_status: TaskStatus | str,
    to_status: TaskStatus,
    extra: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Move a task from ``from_status`` to ``to_status``.

    Args:
        task_id: Task ID
        from_status: Status the caller observed; the write only applies if it still holds
        to_status: Target status
        extra: Additional columns written in the same update

    Returns:
        Updated task record

    Raises:
        InvalidTransitionError: If the edge is not allowed or the status changed concurrently
    """
    with span("task_state_machine.transition"):
        from_status = TaskStatus(from_status)
        if not can_transition(from_status, to_status):
            msg = f"Cannot move task {task_id} from {from_status} to {to_status}"
            raise InvalidTransitionError(msg, task_id=task_id, from_status=from_status, to_status=to_status)

        data: dict[str, Any] = {"status": to_status, **(extra or {})}
        if to_status == TaskStatus.COMPLETED:
            data.setdefault("completed_at", db_client.now_iso())

        updated = await db_client.update_record(
            collection="tasks",
            record_id=task_id,
            data=data,
            filter_query=f'status = "{from_status}"',
        )
        if updated is None:
            # Either the task is gone or someone else moved it first
            try:
                current = await db_client.get_record(collection="tasks", record_id=task_id)
            except KeyError as e:
                raise NotFoundError(f"Task {task_id} not found", task_id=task_id) from e
            msg = f"Task {task_id} is {current['status']}, expected {from_status}"
            raise InvalidTransitionError(msg, task_id=task_id, status=current["status"])

        logger.info("Transitioned task %s: %s -> %s", task_id, from_status, to_status)
        return updated


def _expirable_filter(now_str: str) -> str:
    statuses = " || ".join(f'status = "{status}"' for status in EXPIRABLE_STATUSES)
    return f'({statuses}) && due_date < "{db_client.sanitize_param(now_str)}"'


async def expire_overdue_tasks(now: datetime | None = None) -> ExpirySweepResult:
    """Move every non-terminal, unapproved task whose due date has passed to EXPIRED.

    Idempotent: running it twice with the same ``now`` expires nothing new.

    Args:
        now: Reference time (defaults to the current UTC time)

    Returns:
        ExpirySweepResult listing the tasks expired by this run
    """
    with span("task_state_machine.expire_overdue_tasks"):
        now_str = normalize_timestamp(now or datetime.now(UTC))
        filter_query = _expirable_filter(now_str)
        expired: list[str] = []

        while True:
            batch = await db_client.list_records(
                collection="tasks",
                filter_query=filter_query,
                per_page=Constants.SWEEP_BATCH_SIZE,
                sort="due_date ASC, id ASC",
            )
            for task in batch:
                # Same predicate as the listing, so a task touched in between is skipped
                updated = await db_client.update_record(
                    collection="tasks",
                    record_id=task["id"],
                    data={"status": TaskStatus.EXPIRED},
                    filter_query=filter_query,
                )
                if updated is not None:
                    expired.append(task["id"])
            if len(batch) < Constants.SWEEP_BATCH_SIZE:
                break

        if expired:
            logger.info("Expired %d overdue task(s)", len(expired))
        return ExpirySweepResult(expired_task_ids=expired)
