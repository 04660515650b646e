from __future__ import annotations

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from chathub_web.session_tokens import ManagerSessionTokenError, create_session_token, decode_session_token

SECRET = "session-secret"


def test_session_token_round_trip() -> None:
    now = datetime.now(timezone.utc).replace(microsecond=0)
    token = create_session_token("manager-001", secret=SECRET, expires_delta=timedelta(hours=1), now=now)

    session = decode_session_token(token, secret=SECRET)

    assert session.user_id == "manager-001"
    assert session.expires_at == now + timedelta(hours=1)


def test_session_token_carries_standard_claims() -> None:
    token = create_session_token("manager-001", secret=SECRET)

    claims = jwt.decode(token, SECRET, algorithms=["HS256"])

    assert claims["sub"] == "manager-001"
    assert isinstance(claims["exp"], int)


def test_expired_session_token() -> None:
    issued = datetime.now(timezone.utc) - timedelta(hours=2)
    token = create_session_token("manager-001", secret=SECRET, expires_delta=timedelta(hours=1), now=issued)

    with pytest.raises(ManagerSessionTokenError, match="session expired"):
        decode_session_token(token, secret=SECRET)


def test_session_token_signed_with_other_secret() -> None:
    token = create_session_token("manager-001", secret=SECRET)

    with pytest.raises(ManagerSessionTokenError, match="invalid session token"):
        decode_session_token(token, secret="wrong-secret")


def test_session_token_without_subject_is_rejected() -> None:
    exp = datetime.now(timezone.utc) + timedelta(hours=1)
    token = jwt.encode({"exp": exp}, SECRET, algorithm="HS256")

    with pytest.raises(ManagerSessionTokenError, match="invalid session token"):
        decode_session_token(token, secret=SECRET)


def test_malformed_session_token() -> None:
    with pytest.raises(ManagerSessionTokenError, match="invalid session token"):
        decode_session_token("bad-token", secret=SECRET)


def test_session_token_requires_user_id() -> None:
    with pytest.raises(ManagerSessionTokenError, match="session user_id is empty"):
        create_session_token("  ", secret=SECRET)
