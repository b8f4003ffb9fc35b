"""Family, invite and membership coordination.

A user holds at most one live (PENDING or ACTIVE) membership. The partial
unique index on ``family_memberships`` enforces this; the checks here only
produce a friendlier error before the index would.
"""

import logging
import re
import secrets
from datetime import UTC, datetime, timedelta
from typing import Any

from choreledger.core import db_client
from choreledger.core.config import Constants, settings
from choreledger.core.errors import (
    AlreadyInFamilyError,
    ForbiddenError,
    InvalidOrExpiredInviteError,
    InvalidTransitionError,
    NotFoundError,
)
from choreledger.core.logging import log_with_context, span
from choreledger.domain.family import Family, FamilyMembership, InviteCode, MembershipStatus
from choreledger.domain.notification import NotificationType
from choreledger.domain.user import User, UserRole
from choreledger.models.service_models import FamilyCreated, InviteDetails
from choreledger.services import notification_service, user_service


logger = logging.getLogger(__name__)

INVITE_CODE_PATTERN = re.compile(rf"{re.escape(Constants.INVITE_CODE_PREFIX)}[{Constants.INVITE_CODE_ALPHABET}]+")


def generate_invite_code() -> str:
    """Random human-shareable invite code, e.g. ``FAM-7K2Q9D``."""
    suffix = "".join(secrets.choice(Constants.INVITE_CODE_ALPHABET) for _ in range(Constants.INVITE_CODE_LENGTH))
    return f"{Constants.INVITE_CODE_PREFIX}{suffix}"


async def _code_in_use(code: str) -> bool:
    safe_code = db_client.sanitize_param(code)
    if await db_client.count_records(collection="invite_codes", filter_query=f'code = "{safe_code}"'):
        return True
    return bool(await db_client.count_records(collection="families", filter_query=f'invite_code = "{safe_code}"'))


async def _unused_invite_code() -> str:
    """Pick a code not used by any invite or family. Must run inside transaction()."""
    for _ in range(Constants.INVITE_CODE_MAX_ATTEMPTS):
        code = generate_invite_code()
        if not await _code_in_use(code):
            return code
        logger.warning("Invite code collision, retrying")
    msg = f"Could not generate a unique invite code after {Constants.INVITE_CODE_MAX_ATTEMPTS} attempts"
    raise db_client.DatabaseError(msg)


def _expiry_from(days: int | None, now: datetime | None = None) -> str:
    base = now or datetime.now(UTC)
    return (base + timedelta(days=days or settings.invite_default_expiry_days)).isoformat()


async def get_live_membership(*, user_id: str) -> FamilyMembership | None:
    """The user's PENDING or ACTIVE membership, if any."""
    record = await db_client.get_first_record(
        collection="family_memberships",
        filter_query=(
            f'user_id = "{db_client.sanitize_param(user_id)}" && '
            f'(status = "{MembershipStatus.PENDING}" || status = "{MembershipStatus.ACTIVE}")'
        ),
    )
    return FamilyMembership(**record) if record else None


async def get_active_membership(*, user_id: str, family_id: str | None = None) -> FamilyMembership | None:
    """The user's ACTIVE membership, optionally restricted to one family."""
    filter_query = f'user_id = "{db_client.sanitize_param(user_id)}" && status = "{MembershipStatus.ACTIVE}"'
    if family_id is not None:
        filter_query += f' && family_id = "{db_client.sanitize_param(family_id)}"'
    record = await db_client.get_first_record(collection="family_memberships", filter_query=filter_query)
    return FamilyMembership(**record) if record else None


async def require_active_member(
    *,
    user_id: str,
    family_id: str | None = None,
    role: UserRole | None = None,
) -> FamilyMembership:
    """Return the user's ACTIVE membership or raise ForbiddenError.

    Args:
        user_id: User to check
        family_id: Require membership of this family
        role: Require this role
    """
    membership = await get_active_membership(user_id=user_id, family_id=family_id)
    if membership is None:
        raise ForbiddenError("You are not an active member of this family", user_id=user_id, family_id=family_id)
    if role is not None and membership.role != role:
        raise ForbiddenError(f"Only a {role.lower()} can do this", user_id=user_id, role=membership.role)
    return membership


async def _insert_invite(
    *,
    family_id: str,
    created_by_id: str,
    expires_in_days: int | None,
    max_uses: int | None,
    code: str | None = None,
) -> dict[str, Any]:
    return await db_client.create_record(
        collection="invite_codes",
        data={
            "family_id": family_id,
            "code": code or await _unused_invite_code(),
            "created_by_id": created_by_id,
            "expires_at": _expiry_from(expires_in_days),
            "max_uses": max_uses or settings.invite_default_max_uses,
            "used_count": 0,
            "is_active": True,
        },
    )


async def create_family(*, founder_id: str, name: str) -> FamilyCreated:
    """Found a family with the founder as its active admin parent.

    Args:
        founder_id: Parent founding the family
        name: Family name

    Returns:
        FamilyCreated with the family, the founder's membership and the first invite

    Raises:
        NotFoundError: If the founder does not exist
        ForbiddenError: If the founder is not an active parent
        AlreadyInFamilyError: If the founder already has a live membership
    """
    with span("family_service.create_family"):
        founder = await user_service.get_user_by_id(user_id=founder_id)

        # Guard: only active parents found families
        if not founder.is_active or founder.role != UserRole.PARENT:
            raise ForbiddenError("Only parents can create a family", user_id=founder_id)

        try:
            async with db_client.transaction():
                if await get_live_membership(user_id=founder_id) is not None:
                    raise AlreadyInFamilyError(user_id=founder_id)

                code = await _unused_invite_code()
                family = await db_client.create_record(
                    collection="families",
                    data={"name": name, "invite_code": code, "created_by_id": founder_id},
                )
                membership = await db_client.create_record(
                    collection="family_memberships",
                    data={
                        "family_id": family["id"],
                        "user_id": founder_id,
                        "role": UserRole.PARENT,
                        "status": MembershipStatus.ACTIVE,
                        "is_admin": True,
                    },
                )
                invite = await _insert_invite(
                    family_id=family["id"],
                    created_by_id=founder_id,
                    expires_in_days=None,
                    max_uses=None,
                    code=code,
                )
                await db_client.update_record(
                    collection="users",
                    record_id=founder_id,
                    data={"family_id": family["id"]},
                )
        except db_client.DuplicateRecordError as e:
            # The live-membership index caught a concurrent create or join
            raise AlreadyInFamilyError(user_id=founder_id) from e

        log_with_context(logger, "info", "Family created", family_id=family["id"], founder_id=founder_id)
        return FamilyCreated(
            family=Family(**family),
            membership=FamilyMembership(**membership),
            invite=InviteCode(**invite),
        )


async def generate_invite(
    *,
    family_id: str,
    parent_id: str,
    expires_in_days: int | None = None,
    max_uses: int | None = None,
) -> InviteCode:
    """Replace the family's active invite with a new one.

    Prior active invites are deactivated and the new code becomes the family's
    ``invite_code`` in the same transaction.

    Raises:
        ForbiddenError: If the caller is not an active parent of the family
    """
    with span("family_service.generate_invite"):
        await require_active_member(user_id=parent_id, family_id=family_id, role=UserRole.PARENT)

        async with db_client.transaction():
            await db_client.update_records(
                collection="invite_codes",
                data={"is_active": False},
                filter_query=f'family_id = "{db_client.sanitize_param(family_id)}" && is_active = "true"',
            )
            invite = await _insert_invite(
                family_id=family_id,
                created_by_id=parent_id,
                expires_in_days=expires_in_days,
                max_uses=max_uses,
            )
            await db_client.update_record(
                collection="families",
                record_id=family_id,
                data={"invite_code": invite["code"]},
            )

        logger.info("Rotated invite code for family %s", family_id)
        return InviteCode(**invite)


def _invite_problem(invite: dict[str, Any] | None, now: datetime) -> str | None:
    """Why an invite cannot be redeemed, or None if it can."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    if invite is None:
        return "invalid"
    if not invite["is_active"]:
        return "inactive"
    expires_at = invite.get("expires_at")
    if expires_at and datetime.fromisoformat(expires_at) <= now:
        return "expired"
    if invite["used_count"] >= invite["max_uses"]:
        return "exhausted"
    return None


async def _find_invite(code: str) -> dict[str, Any] | None:
    code = code.strip().upper()
    # Anything outside the invite alphabet cannot name an invite
    if not INVITE_CODE_PATTERN.fullmatch(code):
        return None
    return await db_client.get_first_record(
        collection="invite_codes",
        filter_query=f'code = "{db_client.sanitize_param(code)}"',
    )


async def get_invite_details(*, code: str, now: datetime | None = None) -> InviteDetails | None:
    """Public details of a redeemable invite; None if it is unknown or no longer valid."""
    with span("family_service.get_invite_details"):
        invite = await _find_invite(code)
        if _invite_problem(invite, now or datetime.now(UTC)) is not None:
            return None

        family = await db_client.get_record(collection="families", record_id=invite["family_id"])
        member_count = await db_client.count_records(
            collection="family_memberships",
            filter_query=f'family_id = "{invite["family_id"]}" && status = "{MembershipStatus.ACTIVE}"',
        )
        creator = await user_service.get_user_by_id(user_id=invite["created_by_id"])

        return InviteDetails(
            code=invite["code"],
            family_id=family["id"],
            family_name=family["name"],
            member_count=member_count,
            created_by_name=creator.display_name,
            expires_at=invite["expires_at"],
            uses_remaining=invite["max_uses"] - invite["used_count"],
        )


async def redeem_invite(*, user_id: str, code: str, now: datetime | None = None) -> FamilyMembership:
    """Request membership of a family with an invite code.

    The guarded ``used_count`` increment and the PENDING membership insert
    commit together, so concurrent redeemers can never exceed ``max_uses``.

    Args:
        user_id: Redeeming user
        code: Invite code
        now: Reference time for expiry (defaults to the current UTC time)

    Returns:
        The new PENDING membership

    Raises:
        InvalidOrExpiredInviteError: If the code is unknown, inactive, expired or exhausted
        AlreadyInFamilyError: If the user already has a live membership
    """
    with span("family_service.redeem_invite"):
        user = await user_service.get_user_by_id(user_id=user_id)
        if not user.is_active:
            raise ForbiddenError("Deactivated users cannot join a family", user_id=user_id)
        now = now or datetime.now(UTC)

        try:
            async with db_client.transaction():
                invite = await _find_invite(code)
                problem = _invite_problem(invite, now)
                if problem is not None:
                    raise InvalidOrExpiredInviteError(reason=problem, code=code)

                if await get_live_membership(user_id=user_id) is not None:
                    raise AlreadyInFamilyError(user_id=user_id)

                claimed = await db_client.increment_field(
                    collection="invite_codes",
                    record_id=invite["id"],
                    field="used_count",
                    max_field="max_uses",
                    filter_query='is_active = "true"',
                )
                if not claimed:
                    raise InvalidOrExpiredInviteError(reason="exhausted", code=code)

                membership = await db_client.create_record(
                    collection="family_memberships",
                    data={
                        "family_id": invite["family_id"],
                        "user_id": user_id,
                        "role": user.role,
                        "status": MembershipStatus.PENDING,
                        "is_admin": False,
                        "invited_by_id": invite["created_by_id"],
                    },
                )
        except db_client.DuplicateRecordError as e:
            raise AlreadyInFamilyError(user_id=user_id) from e

        log_with_context(
            logger,
            "info",
            "Invite redeemed",
            user_id=user_id,
            family_id=membership["family_id"],
            membership_id=membership["id"],
        )
        await notification_service.notify_parents(
            family_id=membership["family_id"],
            notification_type=NotificationType.JOIN_REQUESTED,
            title="New join request",
            message=f"{user.display_name} wants to join your family.",
            data={"membership_id": membership["id"], "user_id": user_id},
        )
        return FamilyMembership(**membership)


async def approve_membership(*, approver_id: str, membership_id: str, approved: bool) -> FamilyMembership:
    """Accept or decline a PENDING membership.

    Args:
        approver_id: Parent deciding
        membership_id: PENDING membership
        approved: True for ACTIVE, False for REMOVED

    Returns:
        Updated membership

    Raises:
        NotFoundError: If the membership does not exist
        ForbiddenError: If the approver is not an active parent of the same family
        InvalidTransitionError: If the membership is no longer PENDING
    """
    with span("family_service.approve_membership"):
        try:
            record = await db_client.get_record(collection="family_memberships", record_id=membership_id)
        except KeyError as e:
            raise NotFoundError(f"Membership {membership_id} not found") from e

        await require_active_member(user_id=approver_id, family_id=record["family_id"], role=UserRole.PARENT)

        new_status = MembershipStatus.ACTIVE if approved else MembershipStatus.REMOVED
        async with db_client.transaction():
            updated = await db_client.update_record(
                collection="family_memberships",
                record_id=membership_id,
                data={"status": new_status},
                filter_query=f'status = "{MembershipStatus.PENDING}"',
            )
            if updated is None:
                raise InvalidTransitionError(
                    f"Membership {membership_id} is no longer pending",
                    membership_id=membership_id,
                )
            if approved:
                await db_client.update_record(
                    collection="users",
                    record_id=updated["user_id"],
                    data={"family_id": updated["family_id"]},
                )

        logger.info("Membership %s -> %s by %s", membership_id, new_status, approver_id)
        family = await db_client.get_record(collection="families", record_id=updated["family_id"])
        if approved:
            await notification_service.notify(
                user_id=updated["user_id"],
                notification_type=NotificationType.JOIN_APPROVED,
                title="Welcome to the family",
                message=f"You are now a member of {family['name']}.",
                data={"family_id": family["id"]},
            )
        else:
            await notification_service.notify(
                user_id=updated["user_id"],
                notification_type=NotificationType.JOIN_REJECTED,
                title="Join request declined",
                message=f"Your request to join {family['name']} was declined.",
                data={"family_id": family["id"]},
            )
        return FamilyMembership(**updated)


async def list_members(*, family_id: str, requester_id: str) -> list[tuple[FamilyMembership, User]]:
    """Live memberships of a family with their users, oldest first."""
    with span("family_service.list_members"):
        await require_active_member(user_id=requester_id, family_id=family_id)
        memberships = await db_client.list_records(
            collection="family_memberships",
            filter_query=(
                f'family_id = "{db_client.sanitize_param(family_id)}" && '
                f'(status = "{MembershipStatus.PENDING}" || status = "{MembershipStatus.ACTIVE}")'
            ),
            per_page=Constants.INTERNAL_FETCH_LIMIT,
            sort="created ASC, id ASC",
        )
        result = []
        for membership in memberships:
            user = await user_service.get_user_by_id(user_id=membership["user_id"])
            result.append((FamilyMembership(**membership), user))
        return result
