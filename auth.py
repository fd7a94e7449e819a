import time
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, Request
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from database import get_db
from errors import ForbiddenError, InvalidRequestError, UnauthorizedError
from models import HouseholdMember, MemberRole


@dataclass(frozen=True)
class HouseholdContext:
    user_id: int
    household_id: int
    role: MemberRole

    @property
    def can_write(self) -> bool:
        return self.role != MemberRole.viewer


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.session_secret, salt="session-token")


def issue_session_token(user_id: int) -> str:
    return _serializer().dumps({"u": user_id, "ts": int(time.time())})


def read_session_token(token: str) -> int:
    settings = get_settings()
    try:
        data = _serializer().loads(
            token, max_age=settings.session_max_age_hours * 3600
        )
    except SignatureExpired as exc:
        raise UnauthorizedError("Unauthorized: session expired") from exc
    except BadSignature as exc:
        raise UnauthorizedError("Unauthorized: invalid session") from exc
    user_id = data.get("u") if isinstance(data, dict) else None
    if not isinstance(user_id, int):
        raise UnauthorizedError("Unauthorized: invalid session")
    return user_id


def require_auth(
    authorization: Optional[str] = Header(default=None),
    x_session_token: Optional[str] = Header(default=None),
) -> int:
    token = None
    if authorization:
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            token = value.strip()
    if token is None and x_session_token:
        token = x_session_token.strip()
    if not token:
        raise UnauthorizedError("Unauthorized")
    return read_session_token(token)


def resolve_membership(
    session: Session, user_id: int, household_id: int
) -> HouseholdContext:
    member = session.scalar(
        select(HouseholdMember).where(
            HouseholdMember.household_id == household_id,
            HouseholdMember.user_id == user_id,
        )
    )
    if not member:
        raise ForbiddenError("Forbidden: not a member of this household")
    return HouseholdContext(
        user_id=user_id, household_id=household_id, role=member.role
    )


def get_and_verify_household(
    request: Request,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db),
) -> HouseholdContext:
    raw = request.headers.get("x-household-id") or request.query_params.get(
        "household_id"
    )
    if not raw:
        raise InvalidRequestError("Household id is required")
    try:
        household_id = int(raw)
    except ValueError as exc:
        raise InvalidRequestError("Household id must be an integer") from exc
    return resolve_membership(db, user_id, household_id)


def require_writer(
    ctx: HouseholdContext = Depends(get_and_verify_household),
) -> HouseholdContext:
    if not ctx.can_write:
        raise ForbiddenError("Forbidden: viewers cannot modify bills")
    return ctx
