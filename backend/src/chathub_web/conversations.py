from __future__ import annotations

import re
import secrets
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from threading import Lock
from typing import Protocol

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    case,
    create_engine,
    delete,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import MessageSender


class ManagerNotFoundError(KeyError):
    """Raised when a slug or user id does not resolve to a manager."""


class ConversationNotFoundError(KeyError):
    """Raised when a conversation id does not match any conversation of the manager."""


class DuplicateManagerError(ValueError):
    """Raised when a manager slug or user id is already registered."""


@dataclass(frozen=True)
class ManagerRecord:
    user_id: str
    slug: str
    created_at: datetime


@dataclass(frozen=True)
class VisitorIdentity:
    visitor_id: str
    name: str = "Anonymous"
    email: str = ""


@dataclass(frozen=True)
class MessageRecord:
    sender: MessageSender
    content: str
    timestamp: datetime


@dataclass(frozen=True)
class ConversationRecord:
    convo_id: str
    user_id: str
    visitor: VisitorIdentity
    last_message_at: datetime
    unread_count: int
    archived_at: datetime | None
    last_message_preview: str
    created_at: datetime


@dataclass(frozen=True)
class ConversationThread:
    conversation: ConversationRecord
    messages: tuple[MessageRecord, ...]


class ConversationRepository(Protocol):
    def reset(self) -> None: ...

    def create_manager(self, *, slug: str, user_id: str | None = None) -> ManagerRecord: ...

    def find_manager_by_slug(self, slug: str) -> ManagerRecord | None: ...

    def get_manager(self, user_id: str) -> ManagerRecord | None: ...

    def append_message(
        self,
        *,
        user_id: str,
        message: MessageRecord,
        convo_id: str | None = None,
        visitor_id: str | None = None,
    ) -> ConversationRecord | None: ...

    def create_conversation(
        self,
        *,
        user_id: str,
        visitor: VisitorIdentity,
        message: MessageRecord,
    ) -> ConversationRecord: ...

    def get_conversation(self, *, user_id: str, convo_id: str) -> ConversationRecord | None: ...

    def get_thread(self, *, user_id: str, convo_id: str) -> ConversationThread | None: ...

    def list_conversations(self, *, user_id: str) -> list[ConversationRecord]: ...

    def set_archived(self, *, user_id: str, convo_id: str, archived_at: datetime) -> bool: ...


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_object_id() -> str:
    return secrets.token_hex(12)


def slug_from_email(email: str) -> str:
    local = email.strip().split("@", 1)[0].lower()
    return re.sub(r"[^a-z0-9]", "-", local)


def _preview(body_text: str, *, limit: int = 120) -> str:
    clean = " ".join(body_text.split())
    if len(clean) <= limit:
        return clean
    return clean[: limit - 3] + "..."


def _unread_after(message: MessageRecord, current: int) -> int:
    # Only visitor-authored messages count towards the backlog; a manager
    # reply clears it.
    if message.sender == "manager":
        return 0
    return current + 1


@dataclass
class _ConversationState:
    convo_id: str
    visitor: VisitorIdentity
    messages: list[MessageRecord]
    last_message_at: datetime
    unread_count: int
    archived_at: datetime | None
    last_message_preview: str
    created_at: datetime


@dataclass
class _ManagerDocument:
    manager: ManagerRecord
    conversations: list[_ConversationState] = field(default_factory=list)
    lock: Lock = field(default_factory=Lock)


class InMemoryConversationRepository:
    """Conversations embedded in one document per manager.

    Each manager document carries its own lock, so every mutation is a
    match-then-update on one array element that cannot interleave with
    another mutation of the same document.
    """

    def __init__(self) -> None:
        self._registry_lock = Lock()
        self._documents: dict[str, _ManagerDocument] = {}
        self._slug_index: dict[str, str] = {}

    def reset(self) -> None:
        with self._registry_lock:
            self._documents.clear()
            self._slug_index.clear()

    def create_manager(self, *, slug: str, user_id: str | None = None) -> ManagerRecord:
        record = ManagerRecord(user_id=user_id or new_object_id(), slug=slug, created_at=_now_utc())
        with self._registry_lock:
            if slug in self._slug_index:
                raise DuplicateManagerError(f"slug already registered: {slug}")
            if record.user_id in self._documents:
                raise DuplicateManagerError(f"user already registered: {record.user_id}")
            self._documents[record.user_id] = _ManagerDocument(manager=record)
            self._slug_index[slug] = record.user_id
        return record

    def find_manager_by_slug(self, slug: str) -> ManagerRecord | None:
        with self._registry_lock:
            user_id = self._slug_index.get(slug)
            document = self._documents.get(user_id) if user_id is not None else None
        return document.manager if document is not None else None

    def get_manager(self, user_id: str) -> ManagerRecord | None:
        document = self._document(user_id)
        return document.manager if document is not None else None

    def append_message(
        self,
        *,
        user_id: str,
        message: MessageRecord,
        convo_id: str | None = None,
        visitor_id: str | None = None,
    ) -> ConversationRecord | None:
        if convo_id is None and visitor_id is None:
            raise ValueError("append_message requires convo_id or visitor_id")
        document = self._document(user_id)
        if document is None:
            return None
        with document.lock:
            state = self._match(document, convo_id=convo_id, visitor_id=visitor_id)
            if state is None:
                return None
            state.messages.append(message)
            if message.timestamp >= state.last_message_at:
                state.last_message_at = message.timestamp
                state.last_message_preview = _preview(message.content)
            state.unread_count = _unread_after(message, state.unread_count)
            return self._record(user_id, state)

    def create_conversation(
        self,
        *,
        user_id: str,
        visitor: VisitorIdentity,
        message: MessageRecord,
    ) -> ConversationRecord:
        document = self._document(user_id)
        if document is None:
            raise ManagerNotFoundError(user_id)
        state = _ConversationState(
            convo_id=new_object_id(),
            visitor=visitor,
            messages=[message],
            last_message_at=message.timestamp,
            unread_count=_unread_after(message, 0),
            archived_at=None,
            last_message_preview=_preview(message.content),
            created_at=message.timestamp,
        )
        with document.lock:
            document.conversations.append(state)
            return self._record(user_id, state)

    def get_conversation(self, *, user_id: str, convo_id: str) -> ConversationRecord | None:
        document = self._document(user_id)
        if document is None:
            return None
        with document.lock:
            state = self._match(document, convo_id=convo_id, visitor_id=None)
            return self._record(user_id, state) if state is not None else None

    def get_thread(self, *, user_id: str, convo_id: str) -> ConversationThread | None:
        document = self._document(user_id)
        if document is None:
            return None
        with document.lock:
            state = self._match(document, convo_id=convo_id, visitor_id=None)
            if state is None:
                return None
            return ConversationThread(conversation=self._record(user_id, state), messages=tuple(state.messages))

    def list_conversations(self, *, user_id: str) -> list[ConversationRecord]:
        document = self._document(user_id)
        if document is None:
            return []
        with document.lock:
            return [self._record(user_id, state) for state in document.conversations]

    def set_archived(self, *, user_id: str, convo_id: str, archived_at: datetime) -> bool:
        document = self._document(user_id)
        if document is None:
            return False
        with document.lock:
            state = self._match(document, convo_id=convo_id, visitor_id=None)
            if state is None:
                return False
            state.archived_at = archived_at
            return True

    def _document(self, user_id: str) -> _ManagerDocument | None:
        with self._registry_lock:
            return self._documents.get(user_id)

    @staticmethod
    def _match(
        document: _ManagerDocument,
        *,
        convo_id: str | None,
        visitor_id: str | None,
    ) -> _ConversationState | None:
        for state in document.conversations:
            if convo_id is not None and state.convo_id != convo_id:
                continue
            if visitor_id is not None and state.visitor.visitor_id != visitor_id:
                continue
            return state
        return None

    @staticmethod
    def _record(user_id: str, state: _ConversationState) -> ConversationRecord:
        return ConversationRecord(
            convo_id=state.convo_id,
            user_id=user_id,
            visitor=replace(state.visitor),
            last_message_at=state.last_message_at,
            unread_count=state.unread_count,
            archived_at=state.archived_at,
            last_message_preview=state.last_message_preview,
            created_at=state.created_at,
        )


class ConversationsBase(DeclarativeBase):
    pass


class _ManagerRow(ConversationsBase):
    __tablename__ = "managers"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    slug: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _ConversationRow(ConversationsBase):
    __tablename__ = "conversations"
    __table_args__ = (
        Index("ix_conversations_user_visitor", "user_id", "visitor_id"),
        CheckConstraint("unread_count >= 0", name="ck_conversations_unread_non_negative"),
    )

    convo_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("managers.user_id"), nullable=False, index=True)
    visitor_id: Mapped[str] = mapped_column(String(128), nullable=False)
    visitor_name: Mapped[str] = mapped_column(String(256), nullable=False, default="Anonymous")
    visitor_email: Mapped[str] = mapped_column(String(320), nullable=False, default="")
    last_message_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    unread_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_message_preview: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _MessageRow(ConversationsBase):
    __tablename__ = "conversation_messages"

    message_id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer(), "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    convo_id: Mapped[str] = mapped_column(String(64), ForeignKey("conversations.convo_id"), nullable=False, index=True)
    sender: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SqlAlchemyConversationRepository:
    """Relational layout of the manager document.

    Each append runs in one transaction: pick the first matching
    conversation row, bump its counters with a single UPDATE whose new
    values are SQL expressions, then insert the message row.
    """

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for CONVERSATION_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        # SQLite is used in tests. Production Postgres should rely on migrations.
        if database_url.startswith("sqlite"):
            ConversationsBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_MessageRow))
                session.execute(delete(_ConversationRow))
                session.execute(delete(_ManagerRow))

    def create_manager(self, *, slug: str, user_id: str | None = None) -> ManagerRecord:
        row = _ManagerRow(user_id=user_id or new_object_id(), slug=slug, created_at=_now_utc())
        try:
            with self._session() as session:
                with session.begin():
                    existing = session.scalar(select(_ManagerRow).where(_ManagerRow.slug == slug))
                    if existing is not None:
                        raise DuplicateManagerError(f"slug already registered: {slug}")
                    if session.get(_ManagerRow, row.user_id) is not None:
                        raise DuplicateManagerError(f"user already registered: {row.user_id}")
                    session.add(row)
        except IntegrityError as exc:
            raise DuplicateManagerError(f"slug already registered: {slug}") from exc
        return self._manager_record(row)

    def find_manager_by_slug(self, slug: str) -> ManagerRecord | None:
        with self._session() as session:
            row = session.scalar(select(_ManagerRow).where(_ManagerRow.slug == slug))
            return self._manager_record(row) if row is not None else None

    def get_manager(self, user_id: str) -> ManagerRecord | None:
        with self._session() as session:
            row = session.get(_ManagerRow, user_id)
            return self._manager_record(row) if row is not None else None

    def append_message(
        self,
        *,
        user_id: str,
        message: MessageRecord,
        convo_id: str | None = None,
        visitor_id: str | None = None,
    ) -> ConversationRecord | None:
        if convo_id is None and visitor_id is None:
            raise ValueError("append_message requires convo_id or visitor_id")
        with self._session() as session:
            with session.begin():
                query = select(_ConversationRow.convo_id).where(_ConversationRow.user_id == user_id)
                if convo_id is not None:
                    query = query.where(_ConversationRow.convo_id == convo_id)
                if visitor_id is not None:
                    query = query.where(_ConversationRow.visitor_id == visitor_id)
                matched = session.scalar(
                    query.order_by(_ConversationRow.created_at.asc(), _ConversationRow.convo_id.asc()).limit(1)
                )
                if matched is None:
                    return None

                if message.sender == "manager":
                    unread_value = 0
                else:
                    unread_value = _ConversationRow.unread_count + 1
                # last_message_at only moves forward under concurrent appends.
                is_newest = _ConversationRow.last_message_at <= message.timestamp
                session.execute(
                    update(_ConversationRow)
                    .where(_ConversationRow.convo_id == matched)
                    .values(
                        unread_count=unread_value,
                        last_message_at=case(
                            (is_newest, message.timestamp),
                            else_=_ConversationRow.last_message_at,
                        ),
                        last_message_preview=case(
                            (is_newest, _preview(message.content)),
                            else_=_ConversationRow.last_message_preview,
                        ),
                    )
                )
                session.add(
                    _MessageRow(
                        convo_id=matched,
                        sender=message.sender,
                        content=message.content,
                        created_at=message.timestamp,
                    )
                )
                session.flush()
                row = session.get(_ConversationRow, matched, populate_existing=True)
                return self._conversation_record(row)

    def create_conversation(
        self,
        *,
        user_id: str,
        visitor: VisitorIdentity,
        message: MessageRecord,
    ) -> ConversationRecord:
        with self._session() as session:
            with session.begin():
                if session.get(_ManagerRow, user_id) is None:
                    raise ManagerNotFoundError(user_id)
                row = _ConversationRow(
                    convo_id=new_object_id(),
                    user_id=user_id,
                    visitor_id=visitor.visitor_id,
                    visitor_name=visitor.name,
                    visitor_email=visitor.email,
                    last_message_at=message.timestamp,
                    unread_count=_unread_after(message, 0),
                    archived_at=None,
                    last_message_preview=_preview(message.content),
                    created_at=message.timestamp,
                )
                session.add(row)
                session.flush()
                session.add(
                    _MessageRow(
                        convo_id=row.convo_id,
                        sender=message.sender,
                        content=message.content,
                        created_at=message.timestamp,
                    )
                )
                session.flush()
                return self._conversation_record(row)

    def get_conversation(self, *, user_id: str, convo_id: str) -> ConversationRecord | None:
        with self._session() as session:
            row = self._conversation_row(session, user_id=user_id, convo_id=convo_id)
            return self._conversation_record(row) if row is not None else None

    def get_thread(self, *, user_id: str, convo_id: str) -> ConversationThread | None:
        with self._session() as session:
            with session.begin():
                row = self._conversation_row(session, user_id=user_id, convo_id=convo_id)
                if row is None:
                    return None
                messages = session.scalars(
                    select(_MessageRow)
                    .where(_MessageRow.convo_id == convo_id)
                    .order_by(_MessageRow.message_id.asc())
                ).all()
                return ConversationThread(
                    conversation=self._conversation_record(row),
                    messages=tuple(self._message_record(value) for value in messages),
                )

    def list_conversations(self, *, user_id: str) -> list[ConversationRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_ConversationRow)
                .where(_ConversationRow.user_id == user_id)
                .order_by(_ConversationRow.created_at.asc(), _ConversationRow.convo_id.asc())
            ).all()
            return [self._conversation_record(row) for row in rows]

    def set_archived(self, *, user_id: str, convo_id: str, archived_at: datetime) -> bool:
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_ConversationRow)
                    .where(_ConversationRow.user_id == user_id)
                    .where(_ConversationRow.convo_id == convo_id)
                    .values(archived_at=archived_at)
                )
                return bool(result.rowcount)

    @staticmethod
    def _conversation_row(session, *, user_id: str, convo_id: str) -> _ConversationRow | None:
        return session.scalar(
            select(_ConversationRow)
            .where(_ConversationRow.user_id == user_id)
            .where(_ConversationRow.convo_id == convo_id)
        )

    @staticmethod
    def _manager_record(row: _ManagerRow) -> ManagerRecord:
        return ManagerRecord(user_id=row.user_id, slug=row.slug, created_at=_coerce_utc(row.created_at))

    @staticmethod
    def _conversation_record(row: _ConversationRow) -> ConversationRecord:
        return ConversationRecord(
            convo_id=row.convo_id,
            user_id=row.user_id,
            visitor=VisitorIdentity(
                visitor_id=row.visitor_id,
                name=row.visitor_name,
                email=row.visitor_email,
            ),
            last_message_at=_coerce_utc(row.last_message_at),
            unread_count=row.unread_count,
            archived_at=_coerce_utc(row.archived_at) if row.archived_at is not None else None,
            last_message_preview=row.last_message_preview,
            created_at=_coerce_utc(row.created_at),
        )

    @staticmethod
    def _message_record(row: _MessageRow) -> MessageRecord:
        return MessageRecord(
            sender=row.sender,  # type: ignore[arg-type]
            content=row.content,
            timestamp=_coerce_utc(row.created_at),
        )


def create_conversation_repository(*, backend: str, database_url: str) -> ConversationRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyConversationRepository(database_url)
    if normalized == "inmemory":
        return InMemoryConversationRepository()
    raise RuntimeError(f"unsupported CONVERSATION_STORE_BACKEND: {backend}")
