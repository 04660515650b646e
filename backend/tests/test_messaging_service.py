from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from chathub_web.conversations import ConversationNotFoundError, InMemoryConversationRepository, ManagerNotFoundError
from chathub_web.messaging import ConversationAccessError, MessageContentError, MessagingService
from chathub_web.notifications import InMemoryPushSubscriptionRepository, NotificationDispatcher, StubPushSender


def _service() -> tuple[MessagingService, InMemoryConversationRepository, NotificationDispatcher, StubPushSender]:
    repository = InMemoryConversationRepository()
    subscriptions = InMemoryPushSubscriptionRepository()
    sender = StubPushSender(enabled=True)
    dispatcher = NotificationDispatcher(subscriptions=subscriptions, sender=sender, max_workers=1)
    service = MessagingService(
        repository=repository,
        dispatcher=dispatcher,
        resume_token_secret="resume-secret",
    )
    repository.create_manager(slug="john", user_id="manager-john")
    subscriptions.save_subscription(
        user_id="manager-john",
        endpoint="https://push.example.test/john",
        p256dh="key",
        auth="auth",
    )
    return service, repository, dispatcher, sender


def _thread(repository: InMemoryConversationRepository, convo_id: str):
    thread = repository.get_thread(user_id="manager-john", convo_id=convo_id)
    assert thread is not None
    return thread


def test_first_contact_follow_up_and_manager_reply() -> None:
    service, repository, _, _ = _service()

    first = service.add_message("john", content="hi")
    assert first.created is True
    assert first.visitor_id

    follow_up = service.add_message("john", content="follow up", visitor_id=first.visitor_id)
    assert follow_up.convo_id == first.convo_id
    assert follow_up.created is False

    thread = _thread(repository, first.convo_id)
    assert [value.content for value in thread.messages] == ["hi", "follow up"]
    assert thread.conversation.unread_count == 2

    service.reply_as_manager("manager-john", first.convo_id, content="hello!")

    thread = _thread(repository, first.convo_id)
    assert len(thread.messages) == 3
    assert thread.messages[-1].sender == "manager"
    assert thread.conversation.unread_count == 0
    assert thread.conversation.last_message_at == thread.messages[-1].timestamp


def test_new_conversation_defaults_visitor_identity() -> None:
    service, repository, _, _ = _service()

    result = service.add_message("john", content="hello")

    thread = _thread(repository, result.convo_id)
    assert thread.conversation.visitor.visitor_id == result.visitor_id
    assert thread.conversation.visitor.name == "Anonymous"
    assert thread.conversation.visitor.email == ""
    assert thread.conversation.unread_count == 1
    assert thread.conversation.archived_at is None


def test_new_conversation_keeps_supplied_name_and_email() -> None:
    service, repository, _, _ = _service()

    result = service.add_message("john", content="hello", visitor_id="visitor-1", name="Ann", email="ann@example.com")

    thread = _thread(repository, result.convo_id)
    assert result.visitor_id == "visitor-1"
    assert thread.conversation.visitor.name == "Ann"
    assert thread.conversation.visitor.email == "ann@example.com"


def test_explicit_convo_id_always_appends_to_same_conversation() -> None:
    service, repository, _, _ = _service()
    first = service.add_message("john", content="start", visitor_id="visitor-1")

    for index in range(3):
        result = service.add_message("john", content=f"again {index}", convo_id=first.convo_id, visitor_id=f"other-{index}")
        assert result.convo_id == first.convo_id
        assert result.created is False

    assert len(repository.list_conversations(user_id="manager-john")) == 1
    assert len(_thread(repository, first.convo_id).messages) == 4


def test_unknown_convo_id_falls_back_to_visitor_identity() -> None:
    service, repository, _, _ = _service()
    first = service.add_message("john", content="start", visitor_id="visitor-1")

    result = service.add_message("john", content="stale link", convo_id="does-not-exist", visitor_id="visitor-1")

    assert result.convo_id == first.convo_id
    assert len(repository.list_conversations(user_id="manager-john")) == 1


def test_each_unknown_visitor_gets_exactly_one_new_conversation() -> None:
    service, repository, _, _ = _service()

    first = service.add_message("john", content="one")
    second = service.add_message("john", content="two")

    assert first.convo_id != second.convo_id
    assert first.visitor_id != second.visitor_id
    assert len(repository.list_conversations(user_id="manager-john")) == 2


def test_add_message_unknown_slug() -> None:
    service, _, _, _ = _service()

    with pytest.raises(ManagerNotFoundError):
        service.add_message("nobody", content="hi")


def test_add_message_strips_markup_and_rejects_empty_result() -> None:
    service, repository, _, _ = _service()

    result = service.add_message("john", content="<b>hi</b> <script>x()</script>there")
    assert _thread(repository, result.convo_id).messages[0].content == "hi there"

    with pytest.raises(MessageContentError):
        service.add_message("john", content="<img src=x onerror=alert(1)>")


def test_unread_counter_tracks_visitor_backlog_across_conversations() -> None:
    service, repository, _, _ = _service()
    tracked = service.add_message("john", content="v1", visitor_id="tracked")
    other = service.add_message("john", content="o1", visitor_id="other")

    for index in range(4):
        service.add_message("john", content=f"v{index + 2}", visitor_id="tracked")
        service.add_message("john", content=f"o{index + 2}", visitor_id="other")
        service.reply_as_manager("manager-john", other.convo_id, content="ack")

    assert _thread(repository, tracked.convo_id).conversation.unread_count == 5

    service.reply_as_manager("manager-john", tracked.convo_id, content="answer")
    assert _thread(repository, tracked.convo_id).conversation.unread_count == 0


def test_concurrent_appends_to_same_conversation_are_all_retained() -> None:
    service, repository, _, _ = _service()
    first = service.add_message("john", content="start", visitor_id="visitor-1")

    def _append(index: int) -> str:
        return service.add_message("john", content=f"m{index}", convo_id=first.convo_id).convo_id

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(_append, range(40)))

    assert set(results) == {first.convo_id}
    thread = _thread(repository, first.convo_id)
    assert len(thread.messages) == 41
    assert thread.conversation.unread_count == 41
    assert {value.content for value in thread.messages} == {"start", *(f"m{index}" for index in range(40))}


def test_visitor_message_notifies_manager() -> None:
    service, _, dispatcher, sender = _service()

    result = service.add_message("john", content="<i>ping</i>")
    dispatcher.shutdown(wait=True)

    assert len(sender.deliveries) == 1
    endpoint, payload = sender.deliveries[0]
    assert endpoint == "https://push.example.test/john"
    assert payload.title == "New message"
    assert payload.body == "ping"
    assert payload.url == f"/dashboard/thread/{result.convo_id}"


def test_visitor_reply_with_valid_token() -> None:
    service, repository, _, _ = _service()
    first = service.add_message("john", content="start", visitor_id="visitor-1")
    token = service.sign_resume_token(slug="john", convo_id=first.convo_id)

    service.add_visitor_reply("john", first.convo_id, content="back again", token=token, visitor_cookie="someone-else")

    assert _thread(repository, first.convo_id).messages[-1].content == "back again"


def test_visitor_reply_with_mismatched_token_is_denied() -> None:
    service, repository, _, _ = _service()
    first = service.add_message("john", content="start", visitor_id="visitor-1")
    second = service.add_message("john", content="start", visitor_id="visitor-2")
    token = service.sign_resume_token(slug="john", convo_id=second.convo_id)

    with pytest.raises(ConversationAccessError):
        service.add_visitor_reply("john", first.convo_id, content="sneaky", token=token)

    assert len(_thread(repository, first.convo_id).messages) == 1


def test_visitor_reply_cookie_must_match_owner() -> None:
    service, repository, _, _ = _service()
    first = service.add_message("john", content="start", visitor_id="visitor-1")

    with pytest.raises(ConversationAccessError):
        service.add_visitor_reply("john", first.convo_id, content="sneaky", visitor_cookie="visitor-2")
    assert len(_thread(repository, first.convo_id).messages) == 1

    service.add_visitor_reply("john", first.convo_id, content="mine", visitor_cookie="visitor-1")
    assert len(_thread(repository, first.convo_id).messages) == 2


def test_visitor_reply_without_credentials_is_allowed() -> None:
    service, repository, _, _ = _service()
    first = service.add_message("john", content="start", visitor_id="visitor-1")

    service.add_visitor_reply("john", first.convo_id, content="fresh browser")

    thread = _thread(repository, first.convo_id)
    assert len(thread.messages) == 2
    assert thread.conversation.unread_count == 2


def test_visitor_reply_to_unknown_conversation() -> None:
    service, _, _, _ = _service()

    with pytest.raises(ConversationNotFoundError):
        service.add_visitor_reply("john", "missing", content="hello", visitor_cookie="visitor-1")


def test_visitor_thread_access_rules() -> None:
    service, _, _, _ = _service()
    first = service.add_message("john", content="start", visitor_id="visitor-1")
    token = service.sign_resume_token(slug="john", convo_id=first.convo_id)

    by_token = service.get_visitor_thread("john", first.convo_id, token=token, visitor_cookie="visitor-2")
    by_cookie = service.get_visitor_thread("john", first.convo_id, visitor_cookie="visitor-1")
    anonymous = service.get_visitor_thread("john", first.convo_id)

    assert [value.content for value in by_token.messages] == ["start"]
    assert by_cookie.messages == by_token.messages == anonymous.messages

    with pytest.raises(ConversationAccessError):
        service.get_visitor_thread("john", first.convo_id, visitor_cookie="visitor-2")
    with pytest.raises(ConversationAccessError):
        service.get_visitor_thread("john", first.convo_id, token="not-a-token")
    with pytest.raises(ConversationNotFoundError):
        service.get_visitor_thread("john", "missing")


def test_manager_reply_is_scoped_to_owner() -> None:
    service, repository, _, _ = _service()
    repository.create_manager(slug="jane", user_id="manager-jane")
    first = service.add_message("john", content="start")

    with pytest.raises(ConversationNotFoundError):
        service.reply_as_manager("manager-jane", first.convo_id, content="not mine")
    with pytest.raises(ConversationNotFoundError):
        service.get_manager_conversation("manager-jane", first.convo_id)
    with pytest.raises(ManagerNotFoundError):
        service.reply_as_manager("manager-ghost", first.convo_id, content="who")


def test_manager_views_list_and_conversation() -> None:
    service, _, _, _ = _service()
    older = service.add_message("john", content="older", visitor_id="visitor-1")
    newer = service.add_message("john", content="newer " * 40, visitor_id="visitor-2")
    for index in range(5):
        service.add_message("john", content=f"more {index}", convo_id=older.convo_id)

    listing = service.list_manager_conversations("manager-john", limit=1)
    assert [value.convo_id for value in listing.items] == [older.convo_id]
    assert listing.items[0].last_snippet == "more 4"
    assert listing.items[0].unread_count == 6
    assert listing.next_cursor == older.convo_id

    rest = service.list_manager_conversations("manager-john", cursor=listing.next_cursor, limit=1)
    assert [value.convo_id for value in rest.items] == [newer.convo_id]
    assert rest.items[0].last_snippet.endswith("...")
    assert len(rest.items[0].last_snippet) == 120
    assert rest.next_cursor is None

    detail = service.get_manager_conversation("manager-john", older.convo_id, offset=1, limit=2)
    assert [value.content for value in detail.messages] == ["more 2", "more 3"]
    assert detail.visitor_info.visitor_id == "visitor-1"
    assert detail.archived_at is None
