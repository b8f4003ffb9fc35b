"""Submission and approval ledger models."""

from enum import StrEnum

from pydantic import BaseModel, Field


class ApprovalStatus(StrEnum):
    """Outcome of a parent's review of a submission."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    NEEDS_REVISION = "NEEDS_REVISION"


class TaskApproval(BaseModel):
    """A parent's decision on one submission."""

    id: str
    submission_id: str
    task_id: str = Field(..., description="Denormalized copy of the submission's task ID")
    approved_by_id: str
    status: ApprovalStatus
    rating: int | None = Field(default=None, ge=1, le=5)
    comments: str | None = None
    approved_at: str = Field(..., description="Decision timestamp (ISO format)")
    created: str
    updated: str


class TaskSubmission(BaseModel):
    """Proof of completion submitted by the assigned child. Append-only."""

    id: str
    task_id: str
    submitted_by_id: str
    photo_urls: list[str] = Field(..., min_length=1, description="References to proof photos")
    notes: str | None = None
    submitted_at: str = Field(..., description="Submission timestamp (ISO format)")
    created: str
    updated: str
    approvals: list[TaskApproval] = Field(default_factory=list, description="Decisions, newest first")
