"""Notification outbox models."""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class NotificationType(StrEnum):
    TASK_ASSIGNED = "TASK_ASSIGNED"
    TASK_SUBMITTED = "TASK_SUBMITTED"
    TASK_APPROVED = "TASK_APPROVED"
    TASK_REJECTED = "TASK_REJECTED"
    REWARD_SENT = "REWARD_SENT"
    REWARD_FAILED = "REWARD_FAILED"
    JOIN_REQUESTED = "JOIN_REQUESTED"
    JOIN_APPROVED = "JOIN_APPROVED"
    JOIN_REJECTED = "JOIN_REJECTED"


class Notification(BaseModel):
    """Notification outbox row."""

    id: str
    user_id: str
    type: NotificationType
    title: str
    message: str
    data: dict[str, Any] = Field(default_factory=dict)
    is_read: bool = False
    created: str
    updated: str
