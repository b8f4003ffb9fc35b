"""Task domain models and enums."""

from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, Field, field_validator


class TaskStatus(StrEnum):
    """Task lifecycle state."""

    DRAFT = "DRAFT"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    COMPLETED = "COMPLETED"
    EXPIRED = "EXPIRED"


class TaskCategory(StrEnum):
    CLEANING = "CLEANING"
    STUDYING = "STUDYING"
    OUTDOOR = "OUTDOOR"
    PERSONAL_CARE = "PERSONAL_CARE"
    COOKING = "COOKING"
    ORGANIZING = "ORGANIZING"
    PET_CARE = "PET_CARE"
    OTHER = "OTHER"


class TaskDifficulty(StrEnum):
    EASY = "EASY"
    MEDIUM = "MEDIUM"
    HARD = "HARD"


class RecurringConfig(BaseModel):
    """How a recurring task repeats."""

    frequency: Literal["daily", "weekly", "monthly"] = Field(..., description="Base repetition unit")
    interval: int = Field(default=1, ge=1, le=12, description="Repeat every N units")
    days_of_week: list[int] | None = Field(
        default=None,
        description="Weekdays for weekly tasks (0=Monday ... 6=Sunday)",
    )
    end_date: str | None = Field(default=None, description="No occurrences are due after this date (ISO format)")

    @field_validator("days_of_week")
    @classmethod
    def validate_days_of_week(cls, v: list[int] | None) -> list[int] | None:
        """Validate weekday numbers and normalize their order."""
        if v is None:
            return v
        if not v:
            raise ValueError("days_of_week cannot be empty")
        if any(day < 0 or day > 6 for day in v):  # noqa: PLR2004
            raise ValueError("days_of_week values must be between 0 (Monday) and 6 (Sunday)")
        return sorted(set(v))


class Task(BaseModel):
    """Task data transfer object."""

    id: str = Field(..., description="Unique task ID from database")
    family_id: str = Field(..., description="Owning family ID")
    created_by_id: str = Field(..., description="Parent who created the task")
    assigned_to_id: str | None = Field(default=None, description="Assigned child user ID")
    title: str = Field(..., description="Task title")
    description: str = Field(default="", description="Detailed task description")
    instructions: str | None = Field(default=None, description="Step-by-step instructions")
    category: TaskCategory
    difficulty: TaskDifficulty
    reward_amount: int = Field(..., gt=0, description="Reward in the smallest reward unit")
    estimated_time: int | None = Field(default=None, ge=1, le=480, description="Estimated minutes")
    status: TaskStatus = Field(default=TaskStatus.DRAFT, description="Current lifecycle state")
    priority: int = Field(default=3, ge=1, le=5)
    due_date: str | None = Field(default=None, description="Due timestamp (ISO format)")
    completed_at: str | None = Field(default=None, description="Completion timestamp (ISO format)")
    is_recurring: bool = False
    recurring_config: RecurringConfig | None = None
    recurrence_of_id: str | None = Field(default=None, description="Task this occurrence was spawned from")
    created: str = Field(..., description="Creation timestamp (ISO format)")
    updated: str = Field(..., description="Last update timestamp (ISO format)")
