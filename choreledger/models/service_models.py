"""Pydantic models for service layer return types.

These models provide type safety at service boundaries, converting database
dictionaries into typed objects with validation.
"""

from enum import StrEnum

from pydantic import BaseModel, Field

from choreledger.domain.family import Family, FamilyMembership, InviteCode
from choreledger.domain.submission import TaskApproval, TaskSubmission
from choreledger.domain.task import Task
from choreledger.domain.transaction import Transaction


class SettlementOutcome(StrEnum):
    """What a settlement attempt achieved."""

    CONFIRMED = "confirmed"
    PENDING = "pending"
    FAILED_RETRYABLE = "failed_retryable"


class SettlementResult(BaseModel):
    """Result of settling a reward for an approved submission."""

    transaction: Transaction
    outcome: SettlementOutcome
    retryable: bool = False
    error: str | None = None


class DecisionResult(BaseModel):
    """Result of a parent's decision on a submission."""

    approval: TaskApproval
    task: Task
    settlement: SettlementResult | None = Field(default=None, description="Present for APPROVED decisions")


class TaskDetail(BaseModel):
    """A task with its submission history and reward transactions."""

    task: Task
    submissions: list[TaskSubmission] = Field(default_factory=list, description="Newest first")
    transactions: list[Transaction] = Field(default_factory=list)


class FamilyCreated(BaseModel):
    """Records produced when a family is founded."""

    family: Family
    membership: FamilyMembership
    invite: InviteCode


class InviteDetails(BaseModel):
    """Public view of a valid invite code."""

    code: str
    family_id: str
    family_name: str
    member_count: int
    created_by_name: str
    expires_at: str | None = None
    uses_remaining: int


class ExpirySweepResult(BaseModel):
    """Outcome of one expiry sweep."""

    expired_task_ids: list[str] = Field(default_factory=list)

    @property
    def expired_count(self) -> int:
        return len(self.expired_task_ids)


class SettlementRetryResult(BaseModel):
    """Outcome of one pass over failed settlements."""

    attempted: int = 0
    confirmed: int = 0
    failed: int = 0
    skipped: int = 0
