"""Unit tests for request identity resolution."""

import pytest
from fastapi.security import HTTPAuthorizationCredentials

from choreledger.core.config import Constants
from choreledger.core.errors import DeactivatedError, ForbiddenError, UnauthenticatedError
from choreledger.domain import UserRole
from choreledger.interface import auth
from choreledger.services import family_service, user_service


def _bearer(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


@pytest.mark.unit
class TestIdentityTokens:
    def test_round_trip(self):
        token = auth.sign_identity_token("42")

        assert auth.verify_identity_token(token) == "42"

    def test_tampered_token_rejected(self):
        token = auth.sign_identity_token("42")

        with pytest.raises(UnauthenticatedError, match="Invalid credentials"):
            auth.verify_identity_token(token + "tampered")

    def test_expired_token_rejected(self, monkeypatch):
        token = auth.sign_identity_token("42")
        monkeypatch.setattr(Constants, "IDENTITY_TOKEN_MAX_AGE_SECONDS", -1)

        with pytest.raises(UnauthenticatedError, match="expired"):
            auth.verify_identity_token(token)

    def test_token_from_other_key_rejected(self, monkeypatch):
        token = auth.sign_identity_token("42")
        monkeypatch.setattr(auth.settings, "secret_key", "rotated")

        with pytest.raises(UnauthenticatedError):
            auth.verify_identity_token(token)


@pytest.mark.unit
class TestGetIdentity:
    async def test_missing_credentials(self, db):
        with pytest.raises(UnauthenticatedError):
            await auth.get_identity(None)

    async def test_resolves_role_and_family(self, family):
        identity = await auth.get_identity(_bearer(auth.sign_identity_token(family.child.id)))

        assert identity.user_id == family.child.id
        assert identity.role == UserRole.CHILD
        assert identity.family_id == family.family_id

    async def test_pending_member_has_no_family(self, family, make_user):
        newcomer = await make_user()
        await family_service.redeem_invite(user_id=newcomer.id, code=family.invite_code)

        identity = await auth.get_identity(_bearer(auth.sign_identity_token(newcomer.id)))

        assert identity.family_id is None
        with pytest.raises(ForbiddenError):
            auth.require_family(identity)

    async def test_unknown_user(self, db):
        with pytest.raises(UnauthenticatedError):
            await auth.get_identity(_bearer(auth.sign_identity_token("999")))

    async def test_deactivated_user(self, make_user):
        user = await make_user()
        await user_service.deactivate_user(user_id=user.id)

        with pytest.raises(DeactivatedError):
            await auth.get_identity(_bearer(auth.sign_identity_token(user.id)))

    async def test_role_guards(self, family):
        child = await auth.get_identity(_bearer(auth.sign_identity_token(family.child.id)))
        parent = await auth.get_identity(_bearer(auth.sign_identity_token(family.parent.id)))

        assert await auth.require_child(child) is child
        assert await auth.require_parent(parent) is parent
        with pytest.raises(ForbiddenError):
            await auth.require_parent(child)
        with pytest.raises(ForbiddenError):
            await auth.require_child(parent)
