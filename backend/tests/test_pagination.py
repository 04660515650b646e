from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from chathub_web.conversations import ConversationRecord, MessageRecord, VisitorIdentity
from chathub_web.pagination import (
    PaginationError,
    paginate_conversation_list,
    paginate_manager_messages,
    paginate_visitor_thread,
)

BASE = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def _messages(count: int) -> list[MessageRecord]:
    return [
        MessageRecord(sender="visitor", content=f"m{index}", timestamp=BASE + timedelta(minutes=index))
        for index in range(count)
    ]


def _conversation(convo_id: str, minutes: int) -> ConversationRecord:
    at = BASE + timedelta(minutes=minutes)
    return ConversationRecord(
        convo_id=convo_id,
        user_id="manager-001",
        visitor=VisitorIdentity(visitor_id=f"visitor-{convo_id}"),
        last_message_at=at,
        unread_count=0,
        archived_at=None,
        last_message_preview="",
        created_at=at,
    )


def _contents(messages) -> list[str]:
    return [value.content for value in messages]


def test_visitor_thread_cursor_zero_with_exact_page_returns_everything() -> None:
    page = paginate_visitor_thread(_messages(10), cursor=0, limit=10)

    assert _contents(page.messages) == [f"m{index}" for index in range(10)]
    assert page.next_cursor is None
    assert page.next_before == BASE


def test_visitor_thread_default_returns_most_recent_page() -> None:
    page = paginate_visitor_thread(_messages(15), limit=10)

    assert _contents(page.messages) == [f"m{index}" for index in range(5, 15)]
    assert page.next_cursor == 0
    assert page.next_before == BASE + timedelta(minutes=5)


def test_visitor_thread_walks_back_with_cursor() -> None:
    messages = _messages(25)

    first = paginate_visitor_thread(messages, limit=10)
    second = paginate_visitor_thread(messages, limit=10, cursor=first.next_cursor)
    third = paginate_visitor_thread(messages, limit=10, cursor=second.next_cursor)

    assert _contents(first.messages) == [f"m{index}" for index in range(15, 25)]
    assert first.next_cursor == 5
    assert _contents(second.messages) == [f"m{index}" for index in range(5, 15)]
    assert second.next_cursor == 0
    assert _contents(third.messages) == [f"m{index}" for index in range(0, 10)]
    assert third.next_cursor is None


def test_visitor_thread_before_filters_strictly_older_messages() -> None:
    page = paginate_visitor_thread(_messages(10), limit=3, before=BASE + timedelta(minutes=6))

    assert _contents(page.messages) == ["m3", "m4", "m5"]
    assert page.next_cursor == 0
    assert page.next_before == BASE + timedelta(minutes=3)


def test_visitor_thread_naive_before_is_treated_as_utc() -> None:
    page = paginate_visitor_thread(_messages(4), limit=10, before=datetime(2026, 10, 1, 12, 2))

    assert _contents(page.messages) == ["m0", "m1"]


def test_visitor_thread_cursor_past_end_is_clamped() -> None:
    page = paginate_visitor_thread(_messages(3), limit=10, cursor=99)

    assert page.messages == ()
    assert page.next_before is None
    assert page.next_cursor == 0


def test_visitor_thread_empty_conversation() -> None:
    page = paginate_visitor_thread([], limit=10)

    assert page.messages == ()
    assert page.next_cursor is None
    assert page.next_before is None


@pytest.mark.parametrize(("limit", "cursor"), [(0, None), (-1, None), (10, -1), (True, None)])
def test_visitor_thread_rejects_bad_numbers(limit: int, cursor: int | None) -> None:
    with pytest.raises(PaginationError):
        paginate_visitor_thread(_messages(3), limit=limit, cursor=cursor)


def test_manager_messages_offset_counts_from_newest() -> None:
    messages = _messages(10)

    assert _contents(paginate_manager_messages(messages, offset=0, limit=3)) == ["m7", "m8", "m9"]
    assert _contents(paginate_manager_messages(messages, offset=3, limit=3)) == ["m4", "m5", "m6"]
    assert _contents(paginate_manager_messages(messages, offset=8, limit=5)) == ["m0", "m1"]
    assert paginate_manager_messages(messages, offset=20, limit=5) == ()


def test_manager_messages_rejects_negative_offset() -> None:
    with pytest.raises(PaginationError):
        paginate_manager_messages(_messages(3), offset=-1, limit=3)


def test_conversation_list_sorts_newest_first_and_pages_by_id() -> None:
    conversations = [
        _conversation("a", 1),
        _conversation("b", 5),
        _conversation("c", 3),
        _conversation("d", 4),
        _conversation("e", 2),
    ]

    first = paginate_conversation_list(conversations, limit=2)
    second = paginate_conversation_list(conversations, limit=2, cursor=first.next_cursor)
    third = paginate_conversation_list(conversations, limit=2, cursor=second.next_cursor)

    assert [value.convo_id for value in first.items] == ["b", "d"]
    assert first.next_cursor == "d"
    assert [value.convo_id for value in second.items] == ["c", "e"]
    assert second.next_cursor == "e"
    assert [value.convo_id for value in third.items] == ["a"]
    assert third.next_cursor is None


def test_conversation_list_exact_fit_has_no_next_cursor() -> None:
    page = paginate_conversation_list([_conversation("a", 1), _conversation("b", 2)], limit=2)

    assert [value.convo_id for value in page.items] == ["b", "a"]
    assert page.next_cursor is None


def test_conversation_list_unknown_cursor_restarts_from_top() -> None:
    page = paginate_conversation_list([_conversation("a", 1), _conversation("b", 2)], limit=1, cursor="missing")

    assert [value.convo_id for value in page.items] == ["b"]
    assert page.next_cursor == "b"
