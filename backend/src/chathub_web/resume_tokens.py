from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt

RESUME_TOKEN_TTL = timedelta(days=180)
_ALGORITHM = "HS256"


class ResumeTokenError(ValueError):
    """Raised when a resume token is invalid, expired, or bound to another conversation."""


@dataclass(frozen=True)
class ResumeTokenPayload:
    slug: str
    convo_id: str
    expires_at: datetime


def sign_resume_token(
    *,
    slug: str,
    convo_id: str,
    secret: str,
    ttl: timedelta = RESUME_TOKEN_TTL,
    now: datetime | None = None,
) -> str:
    if not secret:
        raise ResumeTokenError("resume token secret is empty")
    issued_at = now or datetime.now(timezone.utc)
    claims = {
        "slug": slug,
        "convoId": convo_id,
        "iat": int(issued_at.timestamp()),
        "exp": int((issued_at + ttl).timestamp()),
    }
    return jwt.encode(claims, secret, algorithm=_ALGORITHM)


def verify_resume_token(
    token: str,
    *,
    secret: str,
    expected_slug: str,
    expected_convo_id: str,
) -> ResumeTokenPayload:
    # Every failure collapses into the same message so callers cannot
    # tell a bad signature from an expired or mismatched token.
    if not token or not secret:
        raise ResumeTokenError("invalid resume token")
    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=[_ALGORITHM],
            options={"require": ["exp", "slug", "convoId"]},
        )
    except jwt.PyJWTError as exc:
        raise ResumeTokenError("invalid resume token") from exc

    slug = claims.get("slug")
    convo_id = claims.get("convoId")
    if slug != expected_slug or convo_id != expected_convo_id:
        raise ResumeTokenError("invalid resume token")

    return ResumeTokenPayload(
        slug=slug,
        convo_id=convo_id,
        expires_at=datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc),
    )
