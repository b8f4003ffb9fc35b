"""User domain models and enums."""

from enum import StrEnum

from pydantic import BaseModel, Field


class UserRole(StrEnum):
    """User role within a family."""

    PARENT = "PARENT"
    CHILD = "CHILD"


class User(BaseModel):
    """User data transfer object."""

    id: str = Field(..., description="Unique user ID from database")
    line_user_id: str = Field(..., description="External identity provider user ID")
    display_name: str = Field(..., description="Display name of the user")
    picture_url: str | None = Field(default=None, description="Profile picture URL")
    role: UserRole = Field(..., description="PARENT or CHILD")
    family_id: str | None = Field(default=None, description="Family the user currently belongs to")
    wallet_address: str | None = Field(default=None, description="Reward wallet address")
    is_active: bool = Field(default=True, description="False once the account is deactivated")
    last_login_at: str | None = Field(default=None, description="Last login timestamp (ISO format)")
    created: str = Field(..., description="Creation timestamp (ISO format)")
    updated: str = Field(..., description="Last update timestamp (ISO format)")
