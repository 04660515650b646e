from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Sequence

from .conversations import ConversationRecord, MessageRecord

VISITOR_THREAD_DEFAULT_LIMIT = 50
MANAGER_LIST_DEFAULT_LIMIT = 20
MANAGER_CONVERSATION_DEFAULT_LIMIT = 100


class PaginationError(ValueError):
    """Raised for negative offsets or cursors and non-positive limits."""


@dataclass(frozen=True)
class VisitorThreadPage:
    messages: tuple[MessageRecord, ...]
    next_cursor: int | None
    next_before: datetime | None


@dataclass(frozen=True)
class ConversationPage:
    items: tuple[ConversationRecord, ...]
    next_cursor: str | None


def _require_limit(limit: int) -> None:
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
        raise PaginationError(f"limit must be a positive integer: {limit!r}")


def _require_non_negative(name: str, value: int | None) -> None:
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise PaginationError(f"{name} must be a non-negative integer: {value!r}")


def _clamp(value: int, upper: int) -> int:
    return min(max(value, 0), upper)


def paginate_visitor_thread(
    messages: Sequence[MessageRecord],
    *,
    limit: int = VISITOR_THREAD_DEFAULT_LIMIT,
    cursor: int | None = None,
    before: datetime | None = None,
) -> VisitorThreadPage:
    """Slice a visitor's view of a thread, newest page first.

    ``before`` narrows the candidates first (strictly older messages
    only). ``cursor`` is the index of the first message of the page within
    the narrowed list; without it the last ``limit`` messages are
    returned. ``next_cursor`` points one page further back and is
    ``None`` once the page starts at the beginning of the list.
    """
    _require_limit(limit)
    _require_non_negative("cursor", cursor)

    candidates = list(messages)
    if before is not None:
        if before.tzinfo is None:
            before = before.replace(tzinfo=timezone.utc)
        candidates = [message for message in candidates if message.timestamp < before]

    total = len(candidates)
    start = cursor if cursor is not None else total - limit
    start = _clamp(start, total)
    end = _clamp(start + limit, total)
    page = tuple(candidates[start:end])

    return VisitorThreadPage(
        messages=page,
        next_cursor=max(start - limit, 0) if start > 0 else None,
        next_before=page[0].timestamp if page else None,
    )


def paginate_manager_messages(
    messages: Sequence[MessageRecord],
    *,
    offset: int = 0,
    limit: int = MANAGER_CONVERSATION_DEFAULT_LIMIT,
) -> tuple[MessageRecord, ...]:
    # offset counts back from the newest message.
    _require_limit(limit)
    _require_non_negative("offset", offset)
    total = len(messages)
    end = _clamp(total - offset, total)
    start = _clamp(end - limit, total)
    return tuple(messages[start:end])


def paginate_conversation_list(
    conversations: Sequence[ConversationRecord],
    *,
    limit: int = MANAGER_LIST_DEFAULT_LIMIT,
    cursor: str | None = None,
) -> ConversationPage:
    _require_limit(limit)
    ordered = sorted(conversations, key=lambda value: value.last_message_at, reverse=True)

    start = 0
    if cursor:
        for index, conversation in enumerate(ordered):
            if conversation.convo_id == cursor:
                start = index + 1
                break

    page = tuple(ordered[start : start + limit])
    has_more = start + limit < len(ordered)
    return ConversationPage(
        items=page,
        next_cursor=page[-1].convo_id if page and has_more else None,
    )
