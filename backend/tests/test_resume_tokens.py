from __future__ import annotations

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from chathub_web.resume_tokens import ResumeTokenError, sign_resume_token, verify_resume_token


def test_resume_token_round_trip() -> None:
    token = sign_resume_token(slug="john", convo_id="convo-001", secret="resume-secret")

    payload = verify_resume_token(
        token,
        secret="resume-secret",
        expected_slug="john",
        expected_convo_id="convo-001",
    )

    assert payload.slug == "john"
    assert payload.convo_id == "convo-001"
    remaining = payload.expires_at - datetime.now(timezone.utc)
    assert timedelta(days=179) < remaining <= timedelta(days=180)


def test_resume_token_carries_slug_and_convo_claims() -> None:
    token = sign_resume_token(slug="john", convo_id="convo-001", secret="resume-secret")

    claims = jwt.decode(token, "resume-secret", algorithms=["HS256"])

    assert claims["slug"] == "john"
    assert claims["convoId"] == "convo-001"
    assert claims["exp"] > claims["iat"]


def test_resume_token_rejects_other_slug() -> None:
    token = sign_resume_token(slug="john", convo_id="convo-001", secret="resume-secret")

    with pytest.raises(ResumeTokenError, match="invalid resume token"):
        verify_resume_token(token, secret="resume-secret", expected_slug="jane", expected_convo_id="convo-001")


def test_resume_token_rejects_other_conversation() -> None:
    token = sign_resume_token(slug="john", convo_id="convo-001", secret="resume-secret")

    with pytest.raises(ResumeTokenError, match="invalid resume token"):
        verify_resume_token(token, secret="resume-secret", expected_slug="john", expected_convo_id="convo-002")


def test_resume_token_rejects_expired_token() -> None:
    issued = datetime.now(timezone.utc) - timedelta(days=181)
    token = sign_resume_token(slug="john", convo_id="convo-001", secret="resume-secret", now=issued)

    with pytest.raises(ResumeTokenError, match="invalid resume token"):
        verify_resume_token(token, secret="resume-secret", expected_slug="john", expected_convo_id="convo-001")


def test_resume_token_rejects_wrong_secret() -> None:
    token = sign_resume_token(slug="john", convo_id="convo-001", secret="resume-secret")

    with pytest.raises(ResumeTokenError, match="invalid resume token"):
        verify_resume_token(token, secret="other-secret", expected_slug="john", expected_convo_id="convo-001")


def test_resume_token_rejects_missing_claims() -> None:
    token = jwt.encode(
        {"slug": "john", "exp": int((datetime.now(timezone.utc) + timedelta(days=1)).timestamp())},
        "resume-secret",
        algorithm="HS256",
    )

    with pytest.raises(ResumeTokenError, match="invalid resume token"):
        verify_resume_token(token, secret="resume-secret", expected_slug="john", expected_convo_id="convo-001")


@pytest.mark.parametrize("token", ["", "garbage", "a.b.c"])
def test_resume_token_rejects_malformed_input(token: str) -> None:
    with pytest.raises(ResumeTokenError, match="invalid resume token"):
        verify_resume_token(token, secret="resume-secret", expected_slug="john", expected_convo_id="convo-001")


def test_sign_resume_token_requires_secret() -> None:
    with pytest.raises(ResumeTokenError):
        sign_resume_token(slug="john", convo_id="convo-001", secret="")
