"""User service for login, profile and wallet management."""

import logging

from choreledger.core import db_client
from choreledger.core.errors import DeactivatedError, NotFoundError
from choreledger.core.logging import span
from choreledger.domain.user import User, UserRole


logger = logging.getLogger(__name__)


async def get_user_by_id(*, user_id: str) -> User:
    """Fetch a user.

    Raises:
        NotFoundError: If the user does not exist
    """
    try:
        record = await db_client.get_record(collection="users", record_id=user_id)
    except KeyError as e:
        raise NotFoundError(f"User {user_id} not found", user_id=user_id) from e
    return User(**record)


async def get_user_by_line_id(*, line_user_id: str) -> User | None:
    record = await db_client.get_first_record(
        collection="users",
        filter_query=f'line_user_id = "{db_client.sanitize_param(line_user_id)}"',
    )
    return User(**record) if record else None


async def get_or_create_user(
    *,
    line_user_id: str,
    display_name: str,
    role: UserRole,
    picture_url: str | None = None,
) -> tuple[User, bool]:
    """Resolve a user on login, creating the account on first login.

    Existing users get their profile refreshed and ``last_login_at`` stamped.
    Their role is never changed by a login.

    Args:
        line_user_id: External identity provider user ID
        display_name: Name reported by the identity provider
        role: Role chosen at first login
        picture_url: Optional profile picture

    Returns:
        Tuple of (user, created)

    Raises:
        DeactivatedError: If the account exists but was deactivated
    """
    with span("user_service.get_or_create_user"):
        existing = await get_user_by_line_id(line_user_id=line_user_id)
        now = db_client.now_iso()

        if existing is not None:
            # Guard: deactivated accounts cannot log back in
            if not existing.is_active:
                raise DeactivatedError(user_id=existing.id)

            updated = await db_client.update_record(
                collection="users",
                record_id=existing.id,
                data={"display_name": display_name, "picture_url": picture_url, "last_login_at": now},
            )
            return User(**updated), False

        try:
            record = await db_client.create_record(
                collection="users",
                data={
                    "line_user_id": line_user_id,
                    "display_name": display_name,
                    "picture_url": picture_url,
                    "role": role,
                    "is_active": True,
                    "last_login_at": now,
                },
            )
        except db_client.DuplicateRecordError:
            # Concurrent first login created the row first
            existing = await get_user_by_line_id(line_user_id=line_user_id)
            if existing is None:
                raise
            return existing, False

        logger.info("Created %s user %s (%s)", role, record["id"], display_name)
        return User(**record), True


async def update_profile(
    *,
    user_id: str,
    display_name: str | None = None,
    picture_url: str | None = None,
) -> User:
    """Refresh profile fields. Fields left as None are unchanged."""
    with span("user_service.update_profile"):
        data = {
            key: value
            for key, value in {"display_name": display_name, "picture_url": picture_url}.items()
            if value is not None
        }
        if not data:
            return await get_user_by_id(user_id=user_id)

        try:
            updated = await db_client.update_record(collection="users", record_id=user_id, data=data)
        except KeyError as e:
            raise NotFoundError(f"User {user_id} not found", user_id=user_id) from e
        return User(**updated)


async def set_wallet_address(*, user_id: str, wallet_address: str) -> User:
    """Set the wallet rewards are paid to."""
    with span("user_service.set_wallet_address"):
        try:
            updated = await db_client.update_record(
                collection="users",
                record_id=user_id,
                data={"wallet_address": wallet_address},
            )
        except KeyError as e:
            raise NotFoundError(f"User {user_id} not found", user_id=user_id) from e

        logger.info("Updated wallet address for user %s", user_id)
        return User(**updated)


async def deactivate_user(*, user_id: str) -> User:
    """Soft-deactivate a user. Users are never hard-deleted."""
    with span("user_service.deactivate_user"):
        try:
            updated = await db_client.update_record(
                collection="users",
                record_id=user_id,
                data={"is_active": False},
            )
        except KeyError as e:
            raise NotFoundError(f"User {user_id} not found", user_id=user_id) from e

        logger.info("Deactivated user %s", user_id)
        return User(**updated)
