"""Unit tests for the notification outbox."""

from unittest.mock import AsyncMock

import pytest

from choreledger.core import db_client
from choreledger.core.errors import ForbiddenError, NotFoundError
from choreledger.domain import NotificationType, UserRole
from choreledger.services import notification_service


@pytest.mark.unit
class TestNotify:
    async def test_notify_records_notification(self, make_user):
        user = await make_user()

        sent = await notification_service.notify(
            user_id=user.id,
            notification_type=NotificationType.TASK_ASSIGNED,
            title="New task",
            message="Feed the cat",
            data={"task_id": "1"},
        )

        assert sent is True
        notes = await notification_service.list_notifications(user_id=user.id)
        assert notes[0].data == {"task_id": "1"}
        assert notes[0].is_read is False

    async def test_notify_never_raises(self, make_user, monkeypatch):
        user = await make_user()
        monkeypatch.setattr(
            notification_service,
            "enqueue",
            AsyncMock(side_effect=db_client.DatabaseError("disk full")),
        )

        sent = await notification_service.notify(
            user_id=user.id,
            notification_type=NotificationType.REWARD_SENT,
            title="Reward sent",
            message="100",
        )

        assert sent is False

    async def test_notify_many_counts_successes(self, make_user):
        users = [await make_user() for _ in range(2)]

        sent = await notification_service.notify_many(
            user_ids=[user.id for user in users] + ["999"],
            notification_type=NotificationType.TASK_ASSIGNED,
            title="t",
            message="m",
        )

        # The unknown user fails its foreign key
        assert sent == 2

    async def test_notify_parents_targets_active_parents(self, family):
        sent = await notification_service.notify_parents(
            family_id=family.family_id,
            notification_type=NotificationType.TASK_SUBMITTED,
            title="Ready for review",
            message="m",
        )

        assert sent == 1
        assert await notification_service.active_parent_ids(family_id=family.family_id) == [family.parent.id]


@pytest.mark.unit
class TestReadState:
    async def test_unread_filter_and_mark_read(self, make_user):
        user = await make_user(UserRole.PARENT)
        note = await notification_service.enqueue(
            user_id=user.id,
            notification_type=NotificationType.JOIN_REQUESTED,
            title="t",
            message="m",
        )

        read = await notification_service.mark_read(user_id=user.id, notification_id=note.id)

        assert read.is_read is True
        assert await notification_service.list_notifications(user_id=user.id, unread_only=True) == []

    async def test_cannot_mark_other_users_notification(self, make_user):
        owner = await make_user()
        other = await make_user()
        note = await notification_service.enqueue(
            user_id=owner.id,
            notification_type=NotificationType.TASK_ASSIGNED,
            title="t",
            message="m",
        )

        with pytest.raises(ForbiddenError):
            await notification_service.mark_read(user_id=other.id, notification_id=note.id)

    async def test_missing_notification(self, make_user):
        user = await make_user()

        with pytest.raises(NotFoundError):
            await notification_service.mark_read(user_id=user.id, notification_id="999")
