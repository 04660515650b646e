#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import sys
from datetime import timedelta
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
BACKEND_SRC = ROOT_DIR / "backend" / "src"
if str(BACKEND_SRC) not in sys.path:
    sys.path.insert(0, str(BACKEND_SRC))

from chathub_web.config import get_settings  # noqa: E402
from chathub_web.conversations import (  # noqa: E402
    DuplicateManagerError,
    create_conversation_repository,
    slug_from_email,
)
from chathub_web.session_tokens import create_session_token, decode_session_token  # noqa: E402


def _load_dotenv(path: Path) -> None:
    if not path.is_file():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key or key in os.environ:
            continue
        parsed = value.strip()
        if parsed and (parsed[0] == parsed[-1]) and parsed[0] in {'"', "'"}:
            parsed = parsed[1:-1]
        os.environ[key] = parsed


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Register a manager in the conversation store and print a manager "
            "session token for the dashboard API."
        )
    )
    parser.add_argument("--email", default=None, help="Derive the public slug from this email's local part.")
    parser.add_argument("--slug", default=None, help="Explicit public slug (overrides --email).")
    parser.add_argument("--user-id", default=None, help="Manager user id. Generated when omitted.")
    parser.add_argument(
        "--ttl-minutes",
        type=int,
        default=7 * 24 * 60,
        help="Session token lifetime in minutes (default: 7 days).",
    )
    return parser.parse_args()


def main() -> int:
    _load_dotenv(ROOT_DIR / ".env")
    args = parse_args()

    slug = (args.slug or "").strip()
    if not slug and args.email:
        slug = slug_from_email(args.email)
    if not slug:
        raise SystemExit("--slug or --email is required")
    if args.ttl_minutes < 1:
        raise SystemExit("--ttl-minutes must be positive")

    settings = get_settings()
    if settings.conversation_store_backend.strip().lower() != "postgres":
        raise SystemExit("CONVERSATION_STORE_BACKEND=postgres is required; an in-memory manager would not outlive this script")

    repository = create_conversation_repository(
        backend=settings.conversation_store_backend,
        database_url=settings.database_url,
    )
    try:
        manager = repository.create_manager(slug=slug, user_id=args.user_id)
    except DuplicateManagerError as exc:
        raise SystemExit(str(exc)) from exc

    token = create_session_token(
        manager.user_id,
        secret=settings.manager_session_secret,
        expires_delta=timedelta(minutes=args.ttl_minutes),
    )
    session = decode_session_token(token, secret=settings.manager_session_secret)
    print(
        json.dumps(
            {
                "user_id": manager.user_id,
                "slug": manager.slug,
                "session_token": token,
                "expires_at": session.expires_at.isoformat().replace("+00:00", "Z"),
            },
            indent=2,
        )
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
