from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

MessageSender = Literal["visitor", "manager"]

MESSAGE_MAX_LENGTH = 5000


def _to_camel(value: str) -> str:
    head, *tail = value.split("_")
    return head + "".join(part.title() for part in tail)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=_to_camel, populate_by_name=True)


class VisitorInfo(_CamelModel):
    visitor_id: str
    name: str = ""
    email: str = ""


class MessageItem(_CamelModel):
    sender: MessageSender
    content: str
    timestamp: datetime


class SendMessageRequest(_CamelModel):
    content: str = Field(min_length=1, max_length=MESSAGE_MAX_LENGTH)
    visitor_id: str | None = Field(default=None, max_length=128)
    convo_id: str | None = Field(default=None, max_length=64)
    name: str | None = Field(default=None, max_length=256)
    email: EmailStr | None = None

    @field_validator("content")
    @classmethod
    def _normalize_content(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("content cannot be blank")
        return normalized

    @field_validator("visitor_id", "convo_id", "name")
    @classmethod
    def _normalize_optional(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None


class SendMessageResponse(_CamelModel):
    message: str = "Message sent"
    convo_id: str
    visitor_id: str
    resume_token: str
    resume_url: str


class VisitorReplyRequest(_CamelModel):
    content: str = Field(min_length=1, max_length=MESSAGE_MAX_LENGTH)
    token: str | None = Field(default=None, max_length=4096)

    @field_validator("content")
    @classmethod
    def _normalize_content(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("content cannot be blank")
        return normalized

    @field_validator("token")
    @classmethod
    def _normalize_token(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None


class ManagerReplyRequest(_CamelModel):
    content: str = Field(min_length=1, max_length=MESSAGE_MAX_LENGTH)

    @field_validator("content")
    @classmethod
    def _normalize_content(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("content cannot be blank")
        return normalized


class OkResponse(_CamelModel):
    ok: bool = True


class VisitorThreadResponse(_CamelModel):
    convo_id: str
    messages: list[MessageItem]
    next_cursor: int | None = None
    next_before: datetime | None = None


class ConversationListItem(_CamelModel):
    convo_id: str
    last_message_at: datetime
    unread_count: int
    visitor_info: VisitorInfo
    last_snippet: str
    archived_at: datetime | None = None


class ConversationListResponse(_CamelModel):
    items: list[ConversationListItem]
    next_cursor: str | None = None


class ManagerConversationResponse(_CamelModel):
    convo_id: str
    messages: list[MessageItem]
    visitor_info: VisitorInfo
    archived_at: datetime | None = None


class ArchivedConversationResponse(_CamelModel):
    user_id: str
    convo_id: str
    visitor_info: VisitorInfo
    messages: list[MessageItem]
    last_message_at: datetime
    archived_at: datetime


class CsrfTokenResponse(_CamelModel):
    csrf: str


class PushSubscriptionKeys(_CamelModel):
    p256dh: str = Field(min_length=1, max_length=256)
    auth: str = Field(min_length=1, max_length=256)


class PushSubscribeRequest(_CamelModel):
    endpoint: str = Field(min_length=1, max_length=2048)
    keys: PushSubscriptionKeys

    @field_validator("endpoint")
    @classmethod
    def _normalize_endpoint(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized.startswith(("https://", "http://")):
            raise ValueError("endpoint must be an http(s) URL")
        return normalized


class NotificationTestRequest(_CamelModel):
    title: str = Field(min_length=1, max_length=256)
    body: str = Field(min_length=1, max_length=MESSAGE_MAX_LENGTH)
    url: str | None = Field(default=None, max_length=2048)


class NotificationDeliveryItem(_CamelModel):
    endpoint: str
    status: Literal["sent", "failed", "skipped"]
    error_code: str | None = None


class NotificationTestResponse(_CamelModel):
    ok: bool = True
    deliveries: list[NotificationDeliveryItem]
