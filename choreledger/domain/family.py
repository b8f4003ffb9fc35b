"""Family, membership and invite domain models."""

from enum import StrEnum

from pydantic import BaseModel, Field

from choreledger.domain.user import UserRole


class MembershipStatus(StrEnum):
    """Membership lifecycle state."""

    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    REMOVED = "REMOVED"


# Statuses that count as "belonging to" a family for the one-family rule
LIVE_MEMBERSHIP_STATUSES = (MembershipStatus.PENDING, MembershipStatus.ACTIVE)


class Family(BaseModel):
    """Family data transfer object."""

    id: str = Field(..., description="Unique family ID from database")
    name: str = Field(..., description="Family name")
    invite_code: str = Field(..., description="Currently active invite code")
    created_by_id: str = Field(..., description="Founding parent user ID")
    created: str = Field(..., description="Creation timestamp (ISO format)")
    updated: str = Field(..., description="Last update timestamp (ISO format)")


class FamilyMembership(BaseModel):
    """A user's membership in a family."""

    id: str
    family_id: str
    user_id: str
    role: UserRole
    status: MembershipStatus
    is_admin: bool = False
    invited_by_id: str | None = None
    created: str
    updated: str


class InviteCode(BaseModel):
    """Invite code data transfer object."""

    id: str
    family_id: str
    code: str
    created_by_id: str
    expires_at: str | None = Field(default=None, description="Expiry timestamp (ISO format), None for no expiry")
    max_uses: int = Field(..., ge=1)
    used_count: int = Field(default=0, ge=0)
    is_active: bool = True
    created: str
    updated: str

    @property
    def uses_remaining(self) -> int:
        return max(self.max_uses - self.used_count, 0)
