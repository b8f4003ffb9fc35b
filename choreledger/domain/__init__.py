"""Domain models and DTOs."""

from choreledger.domain.create_models import (
    DecisionCreate,
    FamilyCreate,
    InviteCreate,
    InviteRedeem,
    MembershipDecision,
    ProfileUpdate,
    SubmissionCreate,
    TaskAssign,
    TaskCreate,
    TaskUpdate,
    WalletUpdate,
)
from choreledger.domain.family import Family, FamilyMembership, InviteCode, MembershipStatus
from choreledger.domain.notification import Notification, NotificationType
from choreledger.domain.submission import ApprovalStatus, TaskApproval, TaskSubmission
from choreledger.domain.task import RecurringConfig, Task, TaskCategory, TaskDifficulty, TaskStatus
from choreledger.domain.transaction import Transaction, TransactionStatus, TransactionType
from choreledger.domain.user import User, UserRole


__all__ = [
    "ApprovalStatus",
    "DecisionCreate",
    "Family",
    "FamilyCreate",
    "FamilyMembership",
    "InviteCode",
    "InviteCreate",
    "InviteRedeem",
    "MembershipDecision",
    "MembershipStatus",
    "Notification",
    "NotificationType",
    "ProfileUpdate",
    "RecurringConfig",
    "SubmissionCreate",
    "Task",
    "TaskApproval",
    "TaskAssign",
    "TaskCategory",
    "TaskCreate",
    "TaskDifficulty",
    "TaskStatus",
    "TaskSubmission",
    "TaskUpdate",
    "Transaction",
    "TransactionStatus",
    "TransactionType",
    "User",
    "UserRole",
    "WalletUpdate",
]
