"""CSRF tokens for state-changing manager requests.

A token is ``base64url(json{"exp", "nonce", "sub"}) + "." + hex(hmac_sha256)``.
The signature covers the encoded payload segment, so every claim is
bound to it. Verification is a plain yes/no answer: callers never learn
which check failed.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

CSRF_TOKEN_TTL = timedelta(hours=24)


@dataclass(frozen=True)
class CsrfTokenPayload:
    user_id: str
    nonce: str
    expires_at: datetime


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(f"{data}{padding}".encode("ascii"))


def _sign(secret: str, payload_b64: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload_b64.encode("ascii"), hashlib.sha256).hexdigest()


def issue_csrf_token(
    secret: str,
    user_id: str,
    *,
    ttl: timedelta = CSRF_TOKEN_TTL,
    now: datetime | None = None,
) -> str:
    if not secret:
        raise ValueError("csrf secret is empty")
    if not user_id:
        raise ValueError("csrf user_id is empty")

    issued_at = now or datetime.now(timezone.utc)
    payload = CsrfTokenPayload(
        user_id=user_id,
        nonce=secrets.token_hex(16),
        expires_at=issued_at + ttl,
    )
    payload_json = json.dumps(
        {
            "exp": int(payload.expires_at.timestamp()),
            "nonce": payload.nonce,
            "sub": payload.user_id,
        },
        separators=(",", ":"),
        sort_keys=True,
    ).encode("utf-8")
    payload_b64 = _b64url_encode(payload_json)
    return f"{payload_b64}.{_sign(secret, payload_b64)}"


def read_csrf_token(token: str) -> CsrfTokenPayload | None:
    """Parse the claims of a token without checking the signature."""
    if not token or token.count(".") != 1:
        return None
    payload_b64, signature = token.split(".", 1)
    if not payload_b64 or not signature:
        return None
    try:
        payload_obj = json.loads(_b64url_decode(payload_b64).decode("utf-8"))
    except ValueError:
        return None
    if not isinstance(payload_obj, dict):
        return None

    user_id = payload_obj.get("sub")
    nonce = payload_obj.get("nonce")
    exp = payload_obj.get("exp")
    if not isinstance(user_id, str) or not user_id:
        return None
    if not isinstance(nonce, str) or not nonce:
        return None
    if isinstance(exp, bool) or not isinstance(exp, int):
        return None
    try:
        expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None
    return CsrfTokenPayload(user_id=user_id, nonce=nonce, expires_at=expires_at)


def verify_csrf_token(
    secret: str,
    token: str,
    expected_user_id: str,
    *,
    now: datetime | None = None,
) -> bool:
    if not secret or not token or not expected_user_id:
        return False

    payload = read_csrf_token(token)
    if payload is None:
        return False
    if payload.user_id != expected_user_id:
        return False
    reference_now = now or datetime.now(timezone.utc)
    if payload.expires_at <= reference_now:
        return False

    payload_b64, signature = token.split(".", 1)
    return hmac.compare_digest(signature.encode("utf-8"), _sign(secret, payload_b64).encode("ascii"))
