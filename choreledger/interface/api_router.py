"""HTTP API for families, tasks, submissions and rewards."""

import logging

from fastapi import APIRouter, Depends, Query, Response, status

from choreledger.core.errors import NotFoundError
from choreledger.domain import (
    DecisionCreate,
    FamilyCreate,
    FamilyMembership,
    InviteCode,
    InviteCreate,
    InviteRedeem,
    MembershipDecision,
    Notification,
    ProfileUpdate,
    SubmissionCreate,
    Task,
    TaskAssign,
    TaskCategory,
    TaskCreate,
    TaskStatus,
    TaskSubmission,
    TaskUpdate,
    Transaction,
    User,
    WalletUpdate,
)
from choreledger.interface.auth import Identity, get_identity, require_child, require_family, require_parent
from choreledger.interface.ledger_client import LedgerClient, get_ledger_client
from choreledger.models.service_models import (
    DecisionResult,
    FamilyCreated,
    InviteDetails,
    SettlementResult,
    TaskDetail,
)
from choreledger.modules.tasks import service as task_service
from choreledger.modules.tasks import settlement, submissions
from choreledger.services import family_service, notification_service, user_service


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["api"])


# Users


@router.get("/users/me", response_model=User)
async def get_me(identity: Identity = Depends(get_identity)) -> User:
    return await user_service.get_user_by_id(user_id=identity.user_id)


@router.patch("/users/me", response_model=User)
async def update_me(payload: ProfileUpdate, identity: Identity = Depends(get_identity)) -> User:
    return await user_service.update_profile(
        user_id=identity.user_id,
        display_name=payload.display_name,
        picture_url=payload.picture_url,
    )


@router.put("/users/me/wallet", response_model=User)
async def set_wallet(payload: WalletUpdate, identity: Identity = Depends(get_identity)) -> User:
    return await user_service.set_wallet_address(user_id=identity.user_id, wallet_address=payload.wallet_address)


@router.delete("/users/me", status_code=status.HTTP_204_NO_CONTENT)
async def deactivate_me(identity: Identity = Depends(get_identity)) -> Response:
    await user_service.deactivate_user(user_id=identity.user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Families and invites


@router.post("/families", response_model=FamilyCreated, status_code=status.HTTP_201_CREATED)
async def create_family(payload: FamilyCreate, identity: Identity = Depends(require_parent)) -> FamilyCreated:
    return await family_service.create_family(founder_id=identity.user_id, name=payload.name)


@router.get("/families/{family_id}/members")
async def list_members(family_id: str, identity: Identity = Depends(get_identity)) -> list[dict]:
    members = await family_service.list_members(family_id=family_id, requester_id=identity.user_id)
    return [
        {"membership": membership.model_dump(mode="json"), "user": user.model_dump(mode="json")}
        for membership, user in members
    ]


@router.post("/families/{family_id}/invites", response_model=InviteCode, status_code=status.HTTP_201_CREATED)
async def generate_invite(
    family_id: str,
    payload: InviteCreate,
    identity: Identity = Depends(require_parent),
) -> InviteCode:
    return await family_service.generate_invite(
        family_id=family_id,
        parent_id=identity.user_id,
        expires_in_days=payload.expires_in_days,
        max_uses=payload.max_uses,
    )


@router.get("/invites/{code}", response_model=InviteDetails)
async def get_invite(code: str) -> InviteDetails:
    details = await family_service.get_invite_details(code=code)
    if details is None:
        raise NotFoundError("Invite code not found or no longer valid")
    return details


@router.post("/invites/redeem", response_model=FamilyMembership, status_code=status.HTTP_201_CREATED)
async def redeem_invite(payload: InviteRedeem, identity: Identity = Depends(get_identity)) -> FamilyMembership:
    return await family_service.redeem_invite(user_id=identity.user_id, code=payload.code)


@router.post("/memberships/{membership_id}/decision", response_model=FamilyMembership)
async def decide_membership(
    membership_id: str,
    payload: MembershipDecision,
    identity: Identity = Depends(require_parent),
) -> FamilyMembership:
    return await family_service.approve_membership(
        approver_id=identity.user_id,
        membership_id=membership_id,
        approved=payload.approved,
    )


# Tasks


@router.post("/tasks", response_model=Task, status_code=status.HTTP_201_CREATED)
async def create_task(payload: TaskCreate, identity: Identity = Depends(require_parent)) -> Task:
    return await task_service.create_task(creator_id=identity.user_id, payload=payload)


@router.get("/tasks", response_model=list[Task])
async def list_tasks(
    identity: Identity = Depends(get_identity),
    task_status: TaskStatus | None = Query(default=None, alias="status"),
    category: TaskCategory | None = None,
    assigned_to_id: str | None = None,
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=50, ge=1, le=50),
) -> list[Task]:
    return await task_service.list_tasks(
        family_id=require_family(identity),
        requester_id=identity.user_id,
        status=task_status,
        category=category,
        assigned_to_id=assigned_to_id,
        page=page,
        per_page=per_page,
    )


@router.get("/tasks/{task_id}", response_model=TaskDetail)
async def get_task(task_id: str, identity: Identity = Depends(get_identity)) -> TaskDetail:
    return await task_service.get_task_detail(task_id=task_id, requester_id=identity.user_id)


@router.patch("/tasks/{task_id}", response_model=Task)
async def update_task(task_id: str, payload: TaskUpdate, identity: Identity = Depends(get_identity)) -> Task:
    return await task_service.update_task(task_id=task_id, actor_id=identity.user_id, update=payload)


@router.post("/tasks/{task_id}/assign", response_model=Task)
async def assign_task(task_id: str, payload: TaskAssign, identity: Identity = Depends(require_parent)) -> Task:
    return await task_service.assign_task(
        task_id=task_id,
        parent_id=identity.user_id,
        assignee_id=payload.assigned_to_id,
    )


@router.delete("/tasks/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_task(task_id: str, identity: Identity = Depends(require_parent)) -> Response:
    await task_service.delete_task(task_id=task_id, parent_id=identity.user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/tasks/{task_id}/submissions", response_model=TaskSubmission, status_code=status.HTTP_201_CREATED)
async def submit_task(
    task_id: str,
    payload: SubmissionCreate,
    identity: Identity = Depends(require_child),
) -> TaskSubmission:
    return await submissions.submit(task_id=task_id, submitter_id=identity.user_id, payload=payload)


@router.post("/submissions/{submission_id}/decision", response_model=DecisionResult)
async def decide_submission(
    submission_id: str,
    payload: DecisionCreate,
    identity: Identity = Depends(require_parent),
    ledger: LedgerClient = Depends(get_ledger_client),
) -> DecisionResult:
    return await submissions.decide(
        submission_id=submission_id,
        approver_id=identity.user_id,
        payload=payload,
        ledger=ledger,
    )


@router.post("/tasks/{task_id}/settle", response_model=SettlementResult)
async def settle_task(
    task_id: str,
    identity: Identity = Depends(require_parent),
    ledger: LedgerClient = Depends(get_ledger_client),
) -> SettlementResult:
    return await settlement.settle_task(task_id=task_id, actor_id=identity.user_id, ledger=ledger)


# Rewards and notifications


@router.get("/transactions", response_model=list[Transaction])
async def list_transactions(
    identity: Identity = Depends(get_identity),
    family: bool = Query(default=False, description="Parents: list the whole family's transactions"),
    page: int = Query(default=1, ge=1),
) -> list[Transaction]:
    return await settlement.list_transactions(
        requester_id=identity.user_id,
        family_id=require_family(identity) if family else None,
        page=page,
    )


@router.get("/notifications", response_model=list[Notification])
async def list_notifications(
    identity: Identity = Depends(get_identity),
    unread_only: bool = False,
    page: int = Query(default=1, ge=1),
) -> list[Notification]:
    return await notification_service.list_notifications(
        user_id=identity.user_id,
        unread_only=unread_only,
        page=page,
    )


@router.post("/notifications/{notification_id}/read", response_model=Notification)
async def mark_notification_read(notification_id: str, identity: Identity = Depends(get_identity)) -> Notification:
    return await notification_service.mark_read(user_id=identity.user_id, notification_id=notification_id)
