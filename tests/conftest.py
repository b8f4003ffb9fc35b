"""Pytest configuration and shared fixtures."""

import asyncio
import itertools
from dataclasses import dataclass

import logfire
import pytest

from choreledger.core import db_client
from choreledger.core.config import settings
from choreledger.core.errors import TransferFailedError
from choreledger.domain import SubmissionCreate, Task, TaskCategory, TaskCreate, TaskSubmission, User, UserRole
from choreledger.domain.family import FamilyMembership
from choreledger.interface.ledger_client import TransferResult
from choreledger.modules.tasks import service as task_service
from choreledger.modules.tasks import submissions
from choreledger.services import family_service, user_service


# Keep spans local during tests
logfire.configure(send_to_logfire=False, console=False)


class FakeLedger:
    """In-process ledger recording every transfer it is asked to make."""

    def __init__(self, *, fail: bool = False, delay: float = 0.0, error: Exception | None = None) -> None:
        self.fail = fail
        self.delay = delay
        self.error = error
        self.calls: list[dict[str, str]] = []

    async def transfer(self, *, to_address: str, amount: str, reference: str) -> TransferResult:
        self.calls.append({"to_address": to_address, "amount": amount, "reference": reference})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.fail:
            raise TransferFailedError("Ledger unreachable: connection refused", reference=reference)
        return TransferResult(
            tx_hash=f"0x{len(self.calls):064x}",
            status="CONFIRMED",
            block_number=1000 + len(self.calls),
            gas_used="21000",
            gas_fee="0.00042",
        )


@dataclass
class FamilyContext:
    parent: User
    child: User
    family_id: str
    invite_code: str


@pytest.fixture
async def db(tmp_path, monkeypatch):
    """Fresh SQLite database per test."""
    monkeypatch.setattr(settings, "sqlite_db_path", str(tmp_path / "choreledger.sqlite3"))
    await db_client.init_db()
    yield
    await db_client.close_connection()


@pytest.fixture
def make_ledger():
    return FakeLedger


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def failing_ledger():
    return FakeLedger(fail=True)


@pytest.fixture
def make_user(db):
    """Factory creating users through the login path, with a wallet by default."""
    counter = itertools.count(1)

    async def _make_user(role: UserRole = UserRole.CHILD, *, name: str | None = None, wallet: bool = True) -> User:
        n = next(counter)
        user, _ = await user_service.get_or_create_user(
            line_user_id=f"line-{role.lower()}-{n}",
            display_name=name or f"{role.title()} {n}",
            role=role,
        )
        if wallet:
            user = await user_service.set_wallet_address(user_id=user.id, wallet_address=f"0x{n:040x}")
        return user

    return _make_user


@pytest.fixture
def join_family():
    """Redeem an invite and have a parent approve it."""

    async def _join(*, parent: User, member: User, code: str) -> FamilyMembership:
        pending = await family_service.redeem_invite(user_id=member.id, code=code)
        return await family_service.approve_membership(
            approver_id=parent.id,
            membership_id=pending.id,
            approved=True,
        )

    return _join


@pytest.fixture
async def family(make_user, join_family) -> FamilyContext:
    """A family with one parent and one active child, both with wallets."""
    parent = await make_user(UserRole.PARENT, name="Pat")
    child = await make_user(UserRole.CHILD, name="Kim")
    created = await family_service.create_family(founder_id=parent.id, name="The Parks")
    await join_family(parent=parent, member=child, code=created.invite.code)
    return FamilyContext(
        parent=parent,
        child=await user_service.get_user_by_id(user_id=child.id),
        family_id=created.family.id,
        invite_code=created.invite.code,
    )


@pytest.fixture
def make_task(family):
    """Factory creating tasks as the family's parent, assigned to the child by default."""

    async def _make_task(**overrides) -> Task:
        fields = {
            "title": "Wash the dishes",
            "reward_amount": 100,
            "category": TaskCategory.CLEANING,
            "assigned_to_id": family.child.id,
        }
        fields.update(overrides)
        return await task_service.create_task(creator_id=family.parent.id, payload=TaskCreate(**fields))

    return _make_task


@pytest.fixture
def submit_proof(family):
    """Submit proof for a task as the family's child."""

    async def _submit(task_id: str, *, photo: str = "https://img.example.com/proof.jpg") -> TaskSubmission:
        return await submissions.submit(
            task_id=task_id,
            submitter_id=family.child.id,
            payload=SubmissionCreate(photo_urls=[photo]),
        )

    return _submit
