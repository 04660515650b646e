from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from .conversations import (
    ConversationNotFoundError,
    ConversationRecord,
    ConversationRepository,
    ManagerNotFoundError,
    ManagerRecord,
    MessageRecord,
    VisitorIdentity,
)
from .models import (
    MESSAGE_MAX_LENGTH,
    ConversationListItem,
    ConversationListResponse,
    ManagerConversationResponse,
    MessageItem,
    VisitorInfo,
    VisitorThreadResponse,
)
from .notifications import NotificationDispatcher, NotificationPayload
from .pagination import (
    MANAGER_CONVERSATION_DEFAULT_LIMIT,
    MANAGER_LIST_DEFAULT_LIMIT,
    VISITOR_THREAD_DEFAULT_LIMIT,
    paginate_conversation_list,
    paginate_manager_messages,
    paginate_visitor_thread,
)
from .resume_tokens import RESUME_TOKEN_TTL, ResumeTokenError, ResumeTokenPayload, sign_resume_token, verify_resume_token
from .sanitizer import sanitize

logger = logging.getLogger(__name__)

NOTIFICATION_TITLE = "New message"


class MessageContentError(ValueError):
    """Raised when message content is empty after sanitization or too long."""


class ConversationAccessError(PermissionError):
    """Raised when a visitor credential does not grant access to a conversation."""


@dataclass(frozen=True)
class AddMessageResult:
    convo_id: str
    visitor_id: str
    created: bool


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def to_message_item(record: MessageRecord) -> MessageItem:
    return MessageItem(sender=record.sender, content=record.content, timestamp=record.timestamp)


def to_visitor_info(visitor: VisitorIdentity) -> VisitorInfo:
    return VisitorInfo(visitor_id=visitor.visitor_id, name=visitor.name, email=visitor.email)


def resume_url(slug: str, convo_id: str, token: str) -> str:
    return f"/{slug}/thread/{convo_id}?token={token}"


class MessagingService:
    """Visitor and manager message flows over one conversation repository.

    Every write goes through ``ConversationRepository.append_message`` or
    ``create_conversation``; the service itself holds no conversation
    state and never mutates a record it has read.
    """

    def __init__(
        self,
        *,
        repository: ConversationRepository,
        dispatcher: NotificationDispatcher,
        resume_token_secret: str,
        resume_token_ttl: timedelta = RESUME_TOKEN_TTL,
    ) -> None:
        self._repository = repository
        self._dispatcher = dispatcher
        self._resume_token_secret = resume_token_secret
        self._resume_token_ttl = resume_token_ttl

    def reset(self) -> None:
        self._repository.reset()

    def add_message(
        self,
        slug: str,
        *,
        content: str,
        visitor_id: str | None = None,
        convo_id: str | None = None,
        name: str | None = None,
        email: str | None = None,
    ) -> AddMessageResult:
        """Attach a visitor message to a conversation of the manager at ``slug``.

        Resolution order: the explicit ``convo_id``, then the first
        conversation owned by ``visitor_id``, then a new conversation.
        A missing ``visitor_id`` is generated here and returned so the
        caller can hand it back to the visitor.
        """
        manager = self._manager_by_slug(slug)
        clean = self._clean(content)
        resolved_visitor_id = visitor_id or str(uuid.uuid4())
        message = MessageRecord(sender="visitor", content=clean, timestamp=_now_utc())

        conversation: ConversationRecord | None = None
        if convo_id:
            conversation = self._repository.append_message(
                user_id=manager.user_id,
                message=message,
                convo_id=convo_id,
            )
        if conversation is None:
            conversation = self._repository.append_message(
                user_id=manager.user_id,
                message=message,
                visitor_id=resolved_visitor_id,
            )

        created = False
        if conversation is None:
            conversation = self._repository.create_conversation(
                user_id=manager.user_id,
                visitor=VisitorIdentity(
                    visitor_id=resolved_visitor_id,
                    name=name or "Anonymous",
                    email=email or "",
                ),
                message=message,
            )
            created = True
            logger.info("created conversation %s for manager %s", conversation.convo_id, manager.user_id)

        self._notify(manager.user_id, conversation.convo_id, clean)
        return AddMessageResult(convo_id=conversation.convo_id, visitor_id=resolved_visitor_id, created=created)

    def add_visitor_reply(
        self,
        slug: str,
        convo_id: str,
        *,
        content: str,
        token: str | None = None,
        visitor_cookie: str | None = None,
    ) -> ConversationRecord:
        manager = self._manager_by_slug(slug)
        clean = self._clean(content)

        # Without a token, a cookie-held visitor id becomes part of the
        # match so a mismatched cookie never reaches the write.
        owner_filter: str | None = None
        if token:
            self.verify_resume_token(token, slug=slug, convo_id=convo_id)
        elif visitor_cookie:
            owner_filter = visitor_cookie

        message = MessageRecord(sender="visitor", content=clean, timestamp=_now_utc())
        conversation = self._repository.append_message(
            user_id=manager.user_id,
            message=message,
            convo_id=convo_id,
            visitor_id=owner_filter,
        )
        if conversation is None:
            if owner_filter is not None and self._repository.get_conversation(
                user_id=manager.user_id, convo_id=convo_id
            ) is not None:
                raise ConversationAccessError("conversation access denied")
            raise ConversationNotFoundError(convo_id)

        self._notify(manager.user_id, conversation.convo_id, clean)
        return conversation

    def get_visitor_thread(
        self,
        slug: str,
        convo_id: str,
        *,
        token: str | None = None,
        visitor_cookie: str | None = None,
        cursor: int | None = None,
        limit: int = VISITOR_THREAD_DEFAULT_LIMIT,
        before: datetime | None = None,
    ) -> VisitorThreadResponse:
        manager = self._manager_by_slug(slug)
        if token:
            self.verify_resume_token(token, slug=slug, convo_id=convo_id)

        thread = self._repository.get_thread(user_id=manager.user_id, convo_id=convo_id)
        if thread is None:
            raise ConversationNotFoundError(convo_id)
        if not token and visitor_cookie and visitor_cookie != thread.conversation.visitor.visitor_id:
            raise ConversationAccessError("conversation access denied")

        page = paginate_visitor_thread(thread.messages, limit=limit, cursor=cursor, before=before)
        return VisitorThreadResponse(
            convo_id=convo_id,
            messages=[to_message_item(value) for value in page.messages],
            next_cursor=page.next_cursor,
            next_before=page.next_before,
        )

    def reply_as_manager(self, user_id: str, convo_id: str, *, content: str) -> ConversationRecord:
        self._manager_by_id(user_id)
        clean = self._clean(content)
        message = MessageRecord(sender="manager", content=clean, timestamp=_now_utc())
        conversation = self._repository.append_message(user_id=user_id, message=message, convo_id=convo_id)
        if conversation is None:
            raise ConversationNotFoundError(convo_id)
        return conversation

    def list_manager_conversations(
        self,
        user_id: str,
        *,
        cursor: str | None = None,
        limit: int = MANAGER_LIST_DEFAULT_LIMIT,
    ) -> ConversationListResponse:
        self._manager_by_id(user_id)
        page = paginate_conversation_list(
            self._repository.list_conversations(user_id=user_id),
            limit=limit,
            cursor=cursor,
        )
        return ConversationListResponse(
            items=[self._to_list_item(value) for value in page.items],
            next_cursor=page.next_cursor,
        )

    def get_manager_conversation(
        self,
        user_id: str,
        convo_id: str,
        *,
        offset: int = 0,
        limit: int = MANAGER_CONVERSATION_DEFAULT_LIMIT,
    ) -> ManagerConversationResponse:
        self._manager_by_id(user_id)
        thread = self._repository.get_thread(user_id=user_id, convo_id=convo_id)
        if thread is None:
            raise ConversationNotFoundError(convo_id)
        messages = paginate_manager_messages(thread.messages, offset=offset, limit=limit)
        return ManagerConversationResponse(
            convo_id=convo_id,
            messages=[to_message_item(value) for value in messages],
            visitor_info=to_visitor_info(thread.conversation.visitor),
            archived_at=thread.conversation.archived_at,
        )

    def sign_resume_token(self, *, slug: str, convo_id: str) -> str:
        return sign_resume_token(
            slug=slug,
            convo_id=convo_id,
            secret=self._resume_token_secret,
            ttl=self._resume_token_ttl,
        )

    def verify_resume_token(self, token: str, *, slug: str, convo_id: str) -> ResumeTokenPayload:
        try:
            return verify_resume_token(
                token,
                secret=self._resume_token_secret,
                expected_slug=slug,
                expected_convo_id=convo_id,
            )
        except ResumeTokenError as exc:
            raise ConversationAccessError("conversation access denied") from exc

    def _manager_by_slug(self, slug: str) -> ManagerRecord:
        manager = self._repository.find_manager_by_slug(slug)
        if manager is None:
            raise ManagerNotFoundError(slug)
        return manager

    def _manager_by_id(self, user_id: str) -> ManagerRecord:
        manager = self._repository.get_manager(user_id)
        if manager is None:
            raise ManagerNotFoundError(user_id)
        return manager

    @staticmethod
    def _clean(content: str) -> str:
        clean = sanitize(content).strip()
        if not clean:
            raise MessageContentError("message content is empty after sanitization")
        if len(clean) > MESSAGE_MAX_LENGTH:
            raise MessageContentError(f"message content exceeds {MESSAGE_MAX_LENGTH} characters")
        return clean

    def _notify(self, owner_id: str, convo_id: str, body: str) -> None:
        self._dispatcher.dispatch(
            owner_id,
            NotificationPayload(title=NOTIFICATION_TITLE, body=body, url=f"/dashboard/thread/{convo_id}"),
        )

    @staticmethod
    def _to_list_item(record: ConversationRecord) -> ConversationListItem:
        return ConversationListItem(
            convo_id=record.convo_id,
            last_message_at=record.last_message_at,
            unread_count=record.unread_count,
            visitor_info=to_visitor_info(record.visitor),
            last_snippet=record.last_message_preview,
            archived_at=record.archived_at,
        )
