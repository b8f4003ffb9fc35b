"""Reward transaction models."""

from enum import StrEnum

from pydantic import BaseModel, Field


class TransactionType(StrEnum):
    TASK_REWARD = "TASK_REWARD"
    BONUS_PAYMENT = "BONUS_PAYMENT"
    ALLOWANCE = "ALLOWANCE"
    FAMILY_CONTRIBUTION = "FAMILY_CONTRIBUTION"


class TransactionStatus(StrEnum):
    """Settlement state of a transfer."""

    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class Transaction(BaseModel):
    """Transaction data transfer object."""

    id: str
    task_id: str | None = None
    submission_id: str | None = None
    user_id: str = Field(..., description="Recipient user ID")
    family_id: str | None = Field(default=None, description="Denormalized family of the task")
    type: TransactionType
    amount: str = Field(..., description="Decimal amount as a string")
    status: TransactionStatus
    tx_hash: str | None = None
    block_number: int | None = None
    gas_used: str | None = None
    gas_fee: str | None = None
    from_address: str | None = None
    to_address: str | None = None
    failure_reason: str | None = None
    attempts: int = 0
    confirmed_at: str | None = None
    created: str
    updated: str
