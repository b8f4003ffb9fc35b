"""Notification outbox: persists notification events for a delivery worker.

Delivery itself happens elsewhere; this module only records what should be
delivered. ``notify`` and ``notify_many`` are fire-and-forget and never raise.
"""

import logging
from typing import Any

from choreledger.core import db_client
from choreledger.core.config import Constants
from choreledger.core.errors import ForbiddenError, NotFoundError
from choreledger.core.logging import span
from choreledger.domain.family import MembershipStatus
from choreledger.domain.notification import Notification, NotificationType
from choreledger.domain.user import UserRole


logger = logging.getLogger(__name__)


async def enqueue(
    *,
    user_id: str,
    notification_type: NotificationType,
    title: str,
    message: str,
    data: dict[str, Any] | None = None,
) -> Notification:
    """Persist one notification for a user.

    Raises:
        db_client.DatabaseError: If the outbox row cannot be written
    """
    record = await db_client.create_record(
        collection="notifications",
        data={
            "user_id": user_id,
            "type": notification_type,
            "title": title,
            "message": message,
            "data": data or {},
            "is_read": False,
        },
    )
    return Notification(**record)


async def notify(
    *,
    user_id: str,
    notification_type: NotificationType,
    title: str,
    message: str,
    data: dict[str, Any] | None = None,
) -> bool:
    """Enqueue a notification, logging instead of raising on failure.

    Returns:
        True if the notification was recorded
    """
    with span("notification_service.notify"):
        try:
            await enqueue(
                user_id=user_id,
                notification_type=notification_type,
                title=title,
                message=message,
                data=data,
            )
        except Exception:
            logger.exception("Failed to enqueue %s notification for user %s", notification_type, user_id)
            return False
        return True


async def notify_many(
    *,
    user_ids: list[str],
    notification_type: NotificationType,
    title: str,
    message: str,
    data: dict[str, Any] | None = None,
) -> int:
    """Notify several users; returns how many notifications were recorded."""
    sent = 0
    for user_id in user_ids:
        if await notify(
            user_id=user_id,
            notification_type=notification_type,
            title=title,
            message=message,
            data=data,
        ):
            sent += 1
    return sent


async def active_parent_ids(*, family_id: str) -> list[str]:
    """User IDs of the active parents of a family."""
    memberships = await db_client.list_records(
        collection="family_memberships",
        filter_query=(
            f'family_id = "{db_client.sanitize_param(family_id)}" && '
            f'status = "{MembershipStatus.ACTIVE}" && role = "{UserRole.PARENT}"'
        ),
        per_page=Constants.INTERNAL_FETCH_LIMIT,
    )
    return [membership["user_id"] for membership in memberships]


async def notify_parents(
    *,
    family_id: str,
    notification_type: NotificationType,
    title: str,
    message: str,
    data: dict[str, Any] | None = None,
) -> int:
    """Notify every active parent of a family. Never raises."""
    try:
        parent_ids = await active_parent_ids(family_id=family_id)
    except Exception:
        logger.exception("Failed to look up parents of family %s for notification", family_id)
        return 0
    return await notify_many(
        user_ids=parent_ids,
        notification_type=notification_type,
        title=title,
        message=message,
        data=data,
    )


async def list_notifications(
    *,
    user_id: str,
    unread_only: bool = False,
    page: int = 1,
    per_page: int = Constants.MAX_PER_PAGE_LIMIT,
) -> list[Notification]:
    """List a user's notifications, newest first."""
    with span("notification_service.list_notifications"):
        filter_query = f'user_id = "{db_client.sanitize_param(user_id)}"'
        if unread_only:
            filter_query += ' && is_read = "false"'
        records = await db_client.list_records(
            collection="notifications",
            filter_query=filter_query,
            page=page,
            per_page=min(per_page, Constants.MAX_PER_PAGE_LIMIT),
            sort="-created,-id",
        )
        return [Notification(**record) for record in records]


async def mark_read(*, user_id: str, notification_id: str) -> Notification:
    """Mark one of the user's notifications as read.

    Raises:
        NotFoundError: If the notification does not exist
        ForbiddenError: If it belongs to another user
    """
    with span("notification_service.mark_read"):
        try:
            record = await db_client.get_record(collection="notifications", record_id=notification_id)
        except KeyError as e:
            raise NotFoundError(f"Notification {notification_id} not found") from e

        if record["user_id"] != user_id:
            raise ForbiddenError("This notification belongs to another user")

        updated = await db_client.update_record(
            collection="notifications",
            record_id=notification_id,
            data={"is_read": True},
        )
        return Notification(**updated)
