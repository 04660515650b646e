"""Manager session tokens at the identity boundary.

Sessions are HS256 JWTs carrying ``sub`` (the manager user id) and
``exp``. The API only decodes them; the operator script issues them.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt

MANAGER_SESSION_TTL = timedelta(days=7)
_ALGORITHM = "HS256"


class ManagerSessionTokenError(ValueError):
    """Raised when manager session tokens are invalid or expired."""


@dataclass(frozen=True)
class ManagerSession:
    user_id: str
    expires_at: datetime


def create_session_token(
    user_id: str,
    *,
    secret: str,
    expires_delta: timedelta = MANAGER_SESSION_TTL,
    now: datetime | None = None,
) -> str:
    if not user_id.strip():
        raise ManagerSessionTokenError("session user_id is empty")
    if not secret:
        raise ManagerSessionTokenError("manager session secret is empty")
    expire = (now or datetime.now(timezone.utc)) + expires_delta
    return jwt.encode({"sub": user_id, "exp": expire}, secret, algorithm=_ALGORITHM)


def decode_session_token(token: str, *, secret: str) -> ManagerSession:
    if not secret:
        raise ManagerSessionTokenError("manager session secret is empty")
    try:
        claims = jwt.decode(token, secret, algorithms=[_ALGORITHM], options={"require": ["sub", "exp"]})
    except jwt.ExpiredSignatureError as exc:
        raise ManagerSessionTokenError("session expired") from exc
    except jwt.PyJWTError as exc:
        raise ManagerSessionTokenError("invalid session token") from exc

    user_id = str(claims["sub"]).strip()
    if not user_id:
        raise ManagerSessionTokenError("invalid session token")
    return ManagerSession(user_id=user_id, expires_at=datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc))
