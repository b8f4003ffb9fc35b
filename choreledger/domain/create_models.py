"""Pydantic models for creating and updating records."""

from datetime import datetime

from pydantic import BaseModel, Field, field_validator, model_validator

from choreledger.core.config import Constants
from choreledger.domain.submission import ApprovalStatus
from choreledger.domain.task import RecurringConfig, TaskCategory, TaskDifficulty


MAX_TITLE_LENGTH = 200
MAX_NAME_LENGTH = 100

# Task columns that may be edited but never set to null
NON_NULLABLE_TASK_FIELDS = ("title", "description", "category", "difficulty", "reward_amount", "priority")


def _validate_iso_timestamp(v: str | None) -> str | None:
    if v is None:
        return v
    try:
        datetime.fromisoformat(v.replace("Z", "+00:00"))
    except ValueError as e:
        raise ValueError(f"Invalid ISO timestamp: {v}") from e
    return v


class TaskCreate(BaseModel):
    """Pydantic model for creating a task record."""

    title: str = Field(..., min_length=1, max_length=MAX_TITLE_LENGTH)
    description: str = Field(default="")
    instructions: str | None = None
    category: TaskCategory = TaskCategory.OTHER
    difficulty: TaskDifficulty = TaskDifficulty.MEDIUM
    reward_amount: int = Field(..., gt=0, description="Reward in the smallest reward unit")
    estimated_time: int | None = Field(default=None, ge=1, le=480)
    priority: int = Field(default=Constants.DEFAULT_TASK_PRIORITY, ge=1, le=5)
    due_date: str | None = None
    assigned_to_id: str | None = Field(default=None, description="Child to assign; omitted creates a DRAFT")
    is_recurring: bool = False
    recurring_config: RecurringConfig | None = None

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Title cannot be empty")
        return v

    @field_validator("due_date")
    @classmethod
    def validate_due_date(cls, v: str | None) -> str | None:
        return _validate_iso_timestamp(v)


class TaskUpdate(BaseModel):
    """Partial task update. Only fields explicitly set are applied."""

    title: str | None = Field(default=None, min_length=1, max_length=MAX_TITLE_LENGTH)
    description: str | None = None
    instructions: str | None = None
    category: TaskCategory | None = None
    difficulty: TaskDifficulty | None = None
    reward_amount: int | None = Field(default=None, gt=0)
    estimated_time: int | None = Field(default=None, ge=1, le=480)
    priority: int | None = Field(default=None, ge=1, le=5)
    due_date: str | None = None
    assigned_to_id: str | None = None
    status: str | None = Field(default=None, description="Only the assigned child may set IN_PROGRESS")

    @field_validator("due_date")
    @classmethod
    def validate_due_date(cls, v: str | None) -> str | None:
        return _validate_iso_timestamp(v)

    @model_validator(mode="after")
    def reject_null_required_fields(self) -> "TaskUpdate":
        """Fields stored NOT NULL may be omitted but never cleared."""
        cleared = [
            name for name in NON_NULLABLE_TASK_FIELDS if name in self.model_fields_set and getattr(self, name) is None
        ]
        if cleared:
            raise ValueError(f"Cannot clear required fields: {', '.join(cleared)}")
        return self


class SubmissionCreate(BaseModel):
    """Proof of completion for a task."""

    photo_urls: list[str] = Field(..., min_length=1, description="At least one proof reference")
    notes: str | None = Field(default=None, max_length=2000)

    @field_validator("photo_urls")
    @classmethod
    def validate_photo_urls(cls, v: list[str]) -> list[str]:
        """Drop blank entries and require at least one proof."""
        cleaned = [url.strip() for url in v if url and url.strip()]
        if not cleaned:
            raise ValueError("At least one proof photo is required")
        return cleaned


class DecisionCreate(BaseModel):
    """A parent's decision on a submission."""

    decision: ApprovalStatus
    rating: int | None = Field(default=None, ge=1, le=5)
    comments: str | None = Field(default=None, max_length=2000)

    @field_validator("decision")
    @classmethod
    def validate_decision(cls, v: ApprovalStatus) -> ApprovalStatus:
        if v == ApprovalStatus.PENDING:
            raise ValueError("Decision must be APPROVED, REJECTED or NEEDS_REVISION")
        return v


class FamilyCreate(BaseModel):
    """Pydantic model for founding a family."""

    name: str = Field(..., min_length=1, max_length=MAX_NAME_LENGTH)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Family name cannot be empty")
        return v


class InviteCreate(BaseModel):
    """Options for generating a new invite code."""

    expires_in_days: int | None = Field(default=None, ge=1, le=365, description="Defaults to configuration")
    max_uses: int | None = Field(default=None, ge=1, le=100, description="Defaults to configuration")


class InviteRedeem(BaseModel):
    code: str = Field(..., min_length=1)

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        return v.strip().upper()


class MembershipDecision(BaseModel):
    approved: bool


class ProfileUpdate(BaseModel):
    """Profile fields refreshed from the identity provider."""

    display_name: str | None = Field(default=None, min_length=1, max_length=MAX_NAME_LENGTH)
    picture_url: str | None = None


class WalletUpdate(BaseModel):
    wallet_address: str = Field(..., pattern=r"^0x[0-9a-fA-F]{40}$", description="EVM wallet address")


class TaskAssign(BaseModel):
    assigned_to_id: str = Field(..., min_length=1)
