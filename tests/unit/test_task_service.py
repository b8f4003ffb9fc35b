"""Unit tests for task CRUD, assignment and edit rules."""

import pytest
from pydantic import ValidationError

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
from choreledger.domain import NotificationType, RecurringConfig, TaskCreate, TaskStatus, TaskUpdate, UserRole
from choreledger.modules.tasks import service as task_service
from choreledger.services import family_service, notification_service


@pytest.mark.unit
class TestCreateTask:
    async def test_assigned_task(self, family, make_task):
        task = await make_task()

        assert task.status == TaskStatus.ASSIGNED
        assert task.family_id == family.family_id
        assert task.created_by_id == family.parent.id
        notes = await notification_service.list_notifications(user_id=family.child.id)
        assert NotificationType.TASK_ASSIGNED in [n.type for n in notes]

    async def test_unassigned_task_is_draft(self, make_task):
        task = await make_task(assigned_to_id=None)

        assert task.status == TaskStatus.DRAFT
        assert task.assigned_to_id is None

    async def test_due_date_is_stored_in_utc(self, make_task):
        task = await make_task(due_date="2026-05-01T09:00:00+09:00")

        assert task.due_date == "2026-05-01T00:00:00+00:00"

    async def test_child_cannot_create(self, family):
        with pytest.raises(ForbiddenError):
            await task_service.create_task(
                creator_id=family.child.id,
                payload=TaskCreate(title="Sneaky", reward_amount=1000),
            )

    async def test_parent_cannot_be_assignee(self, family, make_task):
        with pytest.raises(InvalidAssigneeError):
            await make_task(assigned_to_id=family.parent.id)

    async def test_pending_child_cannot_be_assignee(self, family, make_user, make_task):
        newcomer = await make_user(UserRole.CHILD)
        await family_service.redeem_invite(user_id=newcomer.id, code=family.invite_code)

        with pytest.raises(InvalidAssigneeError):
            await make_task(assigned_to_id=newcomer.id)

    async def test_recurring_needs_config(self, make_task):
        with pytest.raises(ValueError, match="recurring_config"):
            await make_task(is_recurring=True)

    async def test_recurring_config_is_stored(self, make_task):
        task = await make_task(is_recurring=True, recurring_config=RecurringConfig(frequency="weekly", days_of_week=[5]))

        assert task.recurring_config.days_of_week == [5]

    def test_reward_must_be_positive(self):
        with pytest.raises(ValidationError):
            TaskCreate(title="Free labour", reward_amount=0)


@pytest.mark.unit
class TestGetAndListTasks:
    async def test_detail_includes_submissions_newest_first(self, family, make_task, submit_proof):
        task = await make_task()
        first = await submit_proof(task.id, photo="https://img.example.com/1.jpg")
        second = await submit_proof(task.id, photo="https://img.example.com/2.jpg")

        detail = await task_service.get_task_detail(task_id=task.id, requester_id=family.parent.id)

        assert [s.id for s in detail.submissions] == [second.id, first.id]
        assert detail.task.status == TaskStatus.SUBMITTED
        assert detail.transactions == []

    async def test_outsider_cannot_read(self, make_task, make_user):
        task = await make_task()
        outsider = await make_user(UserRole.PARENT)

        with pytest.raises(ForbiddenError):
            await task_service.get_task(task_id=task.id, requester_id=outsider.id)

    async def test_missing_task(self, family):
        with pytest.raises(NotFoundError):
            await task_service.get_task(task_id="999", requester_id=family.parent.id)

    async def test_list_newest_first(self, family, make_task):
        older = await make_task(title="Older")
        newer = await make_task(title="Newer")

        tasks = await task_service.list_tasks(family_id=family.family_id, requester_id=family.parent.id)

        assert [t.id for t in tasks] == [newer.id, older.id]

    async def test_page_size_is_capped(self, family, make_task, monkeypatch):
        monkeypatch.setattr(Constants, "MAX_PER_PAGE_LIMIT", 1)
        await make_task(title="Older")
        newer = await make_task(title="Newer")

        tasks = await task_service.list_tasks(family_id=family.family_id, requester_id=family.parent.id, per_page=50)

        assert [t.id for t in tasks] == [newer.id]

    async def test_child_only_sees_own_tasks(self, family, make_task):
        mine = await make_task(title="Mine")
        await make_task(title="Unassigned", assigned_to_id=None)

        tasks = await task_service.list_tasks(family_id=family.family_id, requester_id=family.child.id)

        assert [t.id for t in tasks] == [mine.id]

    async def test_filter_by_status(self, family, make_task):
        await make_task(title="Assigned")
        draft = await make_task(title="Draft", assigned_to_id=None)

        tasks = await task_service.list_tasks(
            family_id=family.family_id,
            requester_id=family.parent.id,
            status=TaskStatus.DRAFT,
        )

        assert [t.id for t in tasks] == [draft.id]


@pytest.mark.unit
class TestUpdateTask:
    async def test_child_cannot_self_approve(self, family, make_task):
        task = await make_task()

        with pytest.raises(ForbiddenTransitionError):
            await task_service.update_task(
                task_id=task.id,
                actor_id=family.child.id,
                update=TaskUpdate(status=TaskStatus.APPROVED),
            )

        stored = await db_client.get_record(collection="tasks", record_id=task.id)
        assert stored["status"] == TaskStatus.ASSIGNED
        assert await db_client.count_records(collection="transactions") == 0

    async def test_child_can_start_task(self, family, make_task):
        task = await make_task()

        updated = await task_service.update_task(
            task_id=task.id,
            actor_id=family.child.id,
            update=TaskUpdate(status=TaskStatus.IN_PROGRESS),
        )

        assert updated.status == TaskStatus.IN_PROGRESS

    async def test_child_cannot_edit_details(self, family, make_task):
        task = await make_task()

        with pytest.raises(ForbiddenError):
            await task_service.update_task(
                task_id=task.id,
                actor_id=family.child.id,
                update=TaskUpdate(reward_amount=10_000),
            )

    async def test_parent_cannot_set_status(self, family, make_task):
        task = await make_task()

        with pytest.raises(ForbiddenTransitionError):
            await task_service.update_task(
                task_id=task.id,
                actor_id=family.parent.id,
                update=TaskUpdate(status=TaskStatus.COMPLETED),
            )

    async def test_parent_edits_fields(self, family, make_task):
        task = await make_task()

        updated = await task_service.update_task(
            task_id=task.id,
            actor_id=family.parent.id,
            update=TaskUpdate(title="Dry the dishes", reward_amount=150),
        )

        assert updated.title == "Dry the dishes"
        assert updated.reward_amount == 150

    async def test_reward_locked_after_submission(self, family, make_task, submit_proof):
        task = await make_task()
        await submit_proof(task.id)

        with pytest.raises(RewardLockedError):
            await task_service.update_task(
                task_id=task.id,
                actor_id=family.parent.id,
                update=TaskUpdate(reward_amount=500),
            )

        stored = await db_client.get_record(collection="tasks", record_id=task.id)
        assert stored["reward_amount"] == 100

    async def test_other_fields_editable_after_submission(self, family, make_task, submit_proof):
        task = await make_task()
        await submit_proof(task.id)

        updated = await task_service.update_task(
            task_id=task.id,
            actor_id=family.parent.id,
            update=TaskUpdate(description="Use the blue sponge", reward_amount=100),
        )

        assert updated.description == "Use the blue sponge"

    async def test_terminal_task_cannot_be_edited(self, family, make_task):
        task = await make_task()
        await db_client.update_record(collection="tasks", record_id=task.id, data={"status": TaskStatus.EXPIRED})

        with pytest.raises(InvalidTransitionError):
            await task_service.update_task(task_id=task.id, actor_id=family.parent.id, update=TaskUpdate(title="Late"))

    async def test_update_with_assignee_assigns_draft(self, family, make_task):
        task = await make_task(assigned_to_id=None)

        updated = await task_service.update_task(
            task_id=task.id,
            actor_id=family.parent.id,
            update=TaskUpdate(assigned_to_id=family.child.id),
        )

        assert updated.status == TaskStatus.ASSIGNED
        assert updated.assigned_to_id == family.child.id

    async def test_failed_reassignment_leaves_fields_unchanged(self, family, make_user, make_task):
        outsider = await make_user(UserRole.CHILD)
        task = await make_task()

        with pytest.raises(InvalidAssigneeError):
            await task_service.update_task(
                task_id=task.id,
                actor_id=family.parent.id,
                update=TaskUpdate(title="Changed", reward_amount=999, assigned_to_id=outsider.id),
            )

        stored = await db_client.get_record(collection="tasks", record_id=task.id)
        assert (stored["title"], stored["reward_amount"]) == ("Wash the dishes", 100)
        assert stored["assigned_to_id"] == family.child.id

    async def test_reassigning_started_task_rolls_back_edits(self, family, make_user, join_family, make_task):
        sibling = await make_user(UserRole.CHILD)
        await join_family(parent=family.parent, member=sibling, code=family.invite_code)
        task = await make_task()
        await task_service.update_task(
            task_id=task.id,
            actor_id=family.child.id,
            update=TaskUpdate(status=TaskStatus.IN_PROGRESS),
        )

        with pytest.raises(InvalidTransitionError):
            await task_service.update_task(
                task_id=task.id,
                actor_id=family.parent.id,
                update=TaskUpdate(title="Changed", assigned_to_id=sibling.id),
            )

        stored = await db_client.get_record(collection="tasks", record_id=task.id)
        assert stored["title"] == "Wash the dishes"
        assert stored["status"] == TaskStatus.IN_PROGRESS
        assert stored["assigned_to_id"] == family.child.id

    async def test_edit_and_reassign_together(self, family, make_user, join_family, make_task):
        sibling = await make_user(UserRole.CHILD)
        await join_family(parent=family.parent, member=sibling, code=family.invite_code)
        task = await make_task()

        updated = await task_service.update_task(
            task_id=task.id,
            actor_id=family.parent.id,
            update=TaskUpdate(title="Dry the dishes", assigned_to_id=sibling.id),
        )

        assert updated.title == "Dry the dishes"
        assert updated.assigned_to_id == sibling.id
        notes = await notification_service.list_notifications(user_id=sibling.id)
        assert NotificationType.TASK_ASSIGNED in [n.type for n in notes]

    @pytest.mark.parametrize("field", ["title", "description", "category", "difficulty", "reward_amount", "priority"])
    def test_required_fields_cannot_be_cleared(self, field):
        with pytest.raises(ValidationError, match="Cannot clear required fields"):
            TaskUpdate(**{field: None})

    def test_optional_fields_can_be_cleared(self):
        update = TaskUpdate(due_date=None, instructions=None, estimated_time=None)

        assert update.model_dump(exclude_unset=True) == {"due_date": None, "instructions": None, "estimated_time": None}


@pytest.mark.unit
class TestAssignTask:
    async def test_assign_draft(self, family, make_task):
        task = await make_task(assigned_to_id=None)

        assigned = await task_service.assign_task(task_id=task.id, parent_id=family.parent.id, assignee_id=family.child.id)

        assert assigned.status == TaskStatus.ASSIGNED

    async def test_reassign_assigned_task(self, family, make_user, join_family, make_task):
        sibling = await make_user(UserRole.CHILD)
        await join_family(parent=family.parent, member=sibling, code=family.invite_code)
        task = await make_task()

        reassigned = await task_service.assign_task(task_id=task.id, parent_id=family.parent.id, assignee_id=sibling.id)

        assert reassigned.assigned_to_id == sibling.id
        assert reassigned.status == TaskStatus.ASSIGNED

    async def test_started_task_cannot_be_reassigned(self, family, make_user, join_family, make_task):
        sibling = await make_user(UserRole.CHILD)
        await join_family(parent=family.parent, member=sibling, code=family.invite_code)
        task = await make_task()
        await task_service.update_task(
            task_id=task.id,
            actor_id=family.child.id,
            update=TaskUpdate(status=TaskStatus.IN_PROGRESS),
        )

        with pytest.raises(InvalidTransitionError):
            await task_service.assign_task(task_id=task.id, parent_id=family.parent.id, assignee_id=sibling.id)

    async def test_child_cannot_assign(self, family, make_task):
        task = await make_task(assigned_to_id=None)

        with pytest.raises(ForbiddenError):
            await task_service.assign_task(task_id=task.id, parent_id=family.child.id, assignee_id=family.child.id)


@pytest.mark.unit
class TestDeleteTask:
    async def test_delete_draft(self, family, make_task):
        task = await make_task(assigned_to_id=None)

        await task_service.delete_task(task_id=task.id, parent_id=family.parent.id)

        with pytest.raises(NotFoundError):
            await task_service.get_task(task_id=task.id, requester_id=family.parent.id)

    async def test_task_with_submissions_cannot_be_deleted(self, family, make_task, submit_proof):
        task = await make_task()
        await submit_proof(task.id)

        with pytest.raises(TaskHasSubmissionsError):
            await task_service.delete_task(task_id=task.id, parent_id=family.parent.id)

    async def test_started_task_cannot_be_deleted(self, family, make_task):
        task = await make_task()
        await task_service.update_task(
            task_id=task.id,
            actor_id=family.child.id,
            update=TaskUpdate(status=TaskStatus.IN_PROGRESS),
        )

        with pytest.raises(InvalidTransitionError):
            await task_service.delete_task(task_id=task.id, parent_id=family.parent.id)
