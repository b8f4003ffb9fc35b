"""Request identity resolution.

Bearer tokens are signed with ``itsdangerous`` by the login collaborator and
carry a user id. Resolving a request yields the user's id, role and current
family, or fails with UnauthenticatedError / DeactivatedError.
"""

import logging

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from pydantic import BaseModel

from choreledger.core.config import Constants, settings
from choreledger.core.errors import DeactivatedError, ForbiddenError, NotFoundError, UnauthenticatedError
from choreledger.domain.user import UserRole
from choreledger.services import family_service, user_service


logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


class Identity(BaseModel):
    """The authenticated caller."""

    user_id: str
    role: UserRole
    family_id: str | None = None


def _serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(str(settings.secret_key), salt=Constants.IDENTITY_TOKEN_SALT)


def sign_identity_token(user_id: str) -> str:
    """Sign a token for a user. Used by the login collaborator and in tests."""
    return _serializer().dumps({"user_id": user_id})


def verify_identity_token(token: str) -> str:
    """Return the user id carried by a valid token.

    Raises:
        UnauthenticatedError: If the token is malformed, tampered with or expired
    """
    try:
        payload = _serializer().loads(token, max_age=Constants.IDENTITY_TOKEN_MAX_AGE_SECONDS)
    except SignatureExpired as e:
        raise UnauthenticatedError("Session expired, please log in again") from e
    except BadSignature as e:
        logger.warning("Rejected identity token with bad signature")
        raise UnauthenticatedError("Invalid credentials") from e

    user_id = payload.get("user_id") if isinstance(payload, dict) else None
    if not user_id:
        raise UnauthenticatedError("Invalid credentials")
    return str(user_id)


async def get_identity(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Identity:
    """FastAPI dependency resolving the caller's identity."""
    if credentials is None:
        raise UnauthenticatedError()

    user_id = verify_identity_token(credentials.credentials)
    try:
        user = await user_service.get_user_by_id(user_id=user_id)
    except NotFoundError as e:
        raise UnauthenticatedError("Unknown user") from e

    if not user.is_active:
        raise DeactivatedError(user_id=user_id)

    membership = await family_service.get_active_membership(user_id=user_id)
    return Identity(
        user_id=user.id,
        role=user.role,
        family_id=membership.family_id if membership else None,
    )


async def require_parent(identity: Identity = Depends(get_identity)) -> Identity:
    if identity.role != UserRole.PARENT:
        raise ForbiddenError("Only parents can do this")
    return identity


async def require_child(identity: Identity = Depends(get_identity)) -> Identity:
    if identity.role != UserRole.CHILD:
        raise ForbiddenError("Only children can do this")
    return identity


def require_family(identity: Identity) -> str:
    """The caller's active family id, or ForbiddenError if they have none."""
    if identity.family_id is None:
        raise ForbiddenError("You are not an active member of a family")
    return identity.family_id
