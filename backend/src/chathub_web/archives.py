from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Protocol

from sqlalchemy import JSON, DateTime, Integer, String, UniqueConstraint, create_engine, delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .conversations import ConversationNotFoundError, ConversationRepository, MessageRecord, VisitorIdentity
from .messaging import to_message_item, to_visitor_info
from .models import ArchivedConversationResponse

logger = logging.getLogger(__name__)


class ArchiveNotFoundError(KeyError):
    """Raised when no archived snapshot exists for a conversation."""


@dataclass(frozen=True)
class ArchiveRecord:
    user_id: str
    convo_id: str
    visitor: VisitorIdentity
    messages: tuple[MessageRecord, ...]
    last_message_at: datetime
    conversation_created_at: datetime
    archived_at: datetime


class ArchiveRepository(Protocol):
    def reset(self) -> None: ...

    def upsert_archive(self, record: ArchiveRecord) -> ArchiveRecord: ...

    def get_archive(self, *, user_id: str, convo_id: str) -> ArchiveRecord | None: ...


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class InMemoryArchiveRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._archives: dict[tuple[str, str], ArchiveRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._archives.clear()

    def upsert_archive(self, record: ArchiveRecord) -> ArchiveRecord:
        with self._lock:
            self._archives[(record.user_id, record.convo_id)] = record
            return record

    def get_archive(self, *, user_id: str, convo_id: str) -> ArchiveRecord | None:
        with self._lock:
            return self._archives.get((user_id, convo_id))


class ArchivesBase(DeclarativeBase):
    pass


class _ArchiveRow(ArchivesBase):
    __tablename__ = "conversation_archives"
    __table_args__ = (UniqueConstraint("user_id", "convo_id", name="uq_conversation_archives_user_convo"),)

    archive_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    convo_id: Mapped[str] = mapped_column(String(64), nullable=False)
    visitor_id: Mapped[str] = mapped_column(String(128), nullable=False)
    visitor_name: Mapped[str] = mapped_column(String(256), nullable=False)
    visitor_email: Mapped[str] = mapped_column(String(320), nullable=False)
    messages_json: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    last_message_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    conversation_created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    archived_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _dump_messages(messages: tuple[MessageRecord, ...]) -> list[dict[str, Any]]:
    return [
        {"sender": value.sender, "content": value.content, "timestamp": value.timestamp.isoformat()}
        for value in messages
    ]


def _load_messages(raw: list[dict[str, Any]]) -> tuple[MessageRecord, ...]:
    return tuple(
        MessageRecord(
            sender=item["sender"],
            content=item["content"],
            timestamp=_coerce_utc(datetime.fromisoformat(item["timestamp"])),
        )
        for item in raw
    )


class SqlAlchemyArchiveRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for CONVERSATION_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            ArchivesBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_ArchiveRow))

    def upsert_archive(self, record: ArchiveRecord) -> ArchiveRecord:
        try:
            self._write(record)
        except IntegrityError:
            # Lost an insert race on (user_id, convo_id); the retry updates.
            self._write(record)
        return record

    def _write(self, record: ArchiveRecord) -> None:
        with self._session() as session:
            with session.begin():
                row = session.scalar(
                    select(_ArchiveRow)
                    .where(_ArchiveRow.user_id == record.user_id)
                    .where(_ArchiveRow.convo_id == record.convo_id)
                )
                if row is None:
                    row = _ArchiveRow(user_id=record.user_id, convo_id=record.convo_id)
                    session.add(row)
                row.visitor_id = record.visitor.visitor_id
                row.visitor_name = record.visitor.name
                row.visitor_email = record.visitor.email
                row.messages_json = _dump_messages(record.messages)
                row.last_message_at = record.last_message_at
                row.conversation_created_at = record.conversation_created_at
                row.archived_at = record.archived_at

    def get_archive(self, *, user_id: str, convo_id: str) -> ArchiveRecord | None:
        with self._session() as session:
            row = session.scalar(
                select(_ArchiveRow).where(_ArchiveRow.user_id == user_id).where(_ArchiveRow.convo_id == convo_id)
            )
            if row is None:
                return None
            return ArchiveRecord(
                user_id=row.user_id,
                convo_id=row.convo_id,
                visitor=VisitorIdentity(
                    visitor_id=row.visitor_id,
                    name=row.visitor_name,
                    email=row.visitor_email,
                ),
                messages=_load_messages(row.messages_json),
                last_message_at=_coerce_utc(row.last_message_at),
                conversation_created_at=_coerce_utc(row.conversation_created_at),
                archived_at=_coerce_utc(row.archived_at),
            )


def create_archive_repository(*, backend: str, database_url: str) -> ArchiveRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyArchiveRepository(database_url)
    if normalized == "inmemory":
        return InMemoryArchiveRepository()
    raise RuntimeError(f"unsupported CONVERSATION_STORE_BACKEND: {backend}")


class ArchiveService:
    def __init__(self, *, conversations: ConversationRepository, archives: ArchiveRepository) -> None:
        self._conversations = conversations
        self._archives = archives

    def reset(self) -> None:
        self._archives.reset()

    def archive_conversation(self, user_id: str, convo_id: str) -> ArchiveRecord:
        """Snapshot a conversation, then flag the live copy as archived.

        The snapshot is written first. If flagging fails afterwards the
        snapshot stays in place and the call can simply be repeated.
        """
        thread = self._conversations.get_thread(user_id=user_id, convo_id=convo_id)
        if thread is None:
            raise ConversationNotFoundError(convo_id)

        conversation = thread.conversation
        archived_at = _now_utc()
        record = self._archives.upsert_archive(
            ArchiveRecord(
                user_id=user_id,
                convo_id=convo_id,
                visitor=conversation.visitor,
                messages=thread.messages,
                last_message_at=conversation.last_message_at,
                conversation_created_at=conversation.created_at,
                archived_at=archived_at,
            )
        )

        try:
            flagged = self._conversations.set_archived(user_id=user_id, convo_id=convo_id, archived_at=archived_at)
        except Exception:
            logger.warning("archive snapshot stored but flag update failed for conversation %s", convo_id)
            raise
        if not flagged:
            logger.warning("archive snapshot stored but conversation %s no longer matches", convo_id)
            raise ConversationNotFoundError(convo_id)
        return record

    def get_archived_conversation(self, user_id: str, convo_id: str) -> ArchivedConversationResponse:
        record = self._archives.get_archive(user_id=user_id, convo_id=convo_id)
        if record is None:
            raise ArchiveNotFoundError(convo_id)
        return ArchivedConversationResponse(
            user_id=record.user_id,
            convo_id=record.convo_id,
            visitor_info=to_visitor_info(record.visitor),
            messages=[to_message_item(value) for value in record.messages],
            last_message_at=record.last_message_at,
            archived_at=record.archived_at,
        )
