from __future__ import annotations

import logging
from datetime import datetime, timedelta

from fastapi import APIRouter, HTTPException, Query, Request, Response

from .archives import ArchiveNotFoundError, ArchiveRepository, ArchiveService, create_archive_repository
from .config import Settings, get_settings
from .conversations import (
    ConversationNotFoundError,
    ConversationRepository,
    ManagerNotFoundError,
    create_conversation_repository,
)
from .csrf_tokens import issue_csrf_token, verify_csrf_token
from .messaging import ConversationAccessError, MessageContentError, MessagingService, resume_url
from .models import (
    ArchivedConversationResponse,
    ConversationListResponse,
    CsrfTokenResponse,
    ManagerConversationResponse,
    ManagerReplyRequest,
    NotificationDeliveryItem,
    NotificationTestRequest,
    NotificationTestResponse,
    OkResponse,
    PushSubscribeRequest,
    SendMessageRequest,
    SendMessageResponse,
    VisitorReplyRequest,
    VisitorThreadResponse,
)
from .notifications import (
    NotificationDispatcher,
    NotificationPayload,
    PushSender,
    PushSubscriptionRepository,
    create_push_sender,
    create_push_subscription_repository,
)
from .pagination import (
    MANAGER_CONVERSATION_DEFAULT_LIMIT,
    MANAGER_LIST_DEFAULT_LIMIT,
    VISITOR_THREAD_DEFAULT_LIMIT,
    PaginationError,
)
from .session_tokens import ManagerSessionTokenError, decode_session_token
from .throttle import SlidingWindowThrottle

logger = logging.getLogger(__name__)

VISITOR_COOKIE = "visitorId"
VISITOR_COOKIE_MAX_AGE = 365 * 24 * 60 * 60
CSRF_COOKIE = "csrf"
CSRF_HEADER = "X-CSRF-Token"
ACCESS_DENIED = "conversation access denied"

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/messages", tags=["messages"])


def _create_dispatcher(settings: Settings, subscriptions: PushSubscriptionRepository) -> NotificationDispatcher:
    sender: PushSender | None = create_push_sender(settings)
    return NotificationDispatcher(
        subscriptions=subscriptions,
        sender=sender,
        max_workers=settings.notification_workers,
    )


def _create_throttle(settings: Settings) -> SlidingWindowThrottle:
    return SlidingWindowThrottle(
        max_requests=settings.rate_limit_max_requests,
        window=timedelta(seconds=settings.rate_limit_ttl_seconds),
    )


conversation_repo: ConversationRepository = create_conversation_repository(
    backend=_settings.conversation_store_backend,
    database_url=_settings.database_url,
)
archive_repo: ArchiveRepository = create_archive_repository(
    backend=_settings.conversation_store_backend,
    database_url=_settings.database_url,
)
subscription_repo: PushSubscriptionRepository = create_push_subscription_repository(
    backend=_settings.conversation_store_backend,
    database_url=_settings.database_url,
)
notification_dispatcher = _create_dispatcher(_settings, subscription_repo)
messaging_service = MessagingService(
    repository=conversation_repo,
    dispatcher=notification_dispatcher,
    resume_token_secret=_settings.resume_token_secret,
    resume_token_ttl=timedelta(days=_settings.resume_token_ttl_days),
)
archive_service = ArchiveService(conversations=conversation_repo, archives=archive_repo)
visitor_throttle = _create_throttle(_settings)


def reset_runtime_state_for_tests() -> None:
    conversation_repo.reset()
    archive_repo.reset()
    subscription_repo.reset()
    visitor_throttle.reset()


def _require_manager(request: Request) -> str:
    token = request.headers.get("Authorization", "").removeprefix("Bearer ")
    if not token:
        raise HTTPException(401, "manager session required")
    try:
        session = decode_session_token(token, secret=_settings.manager_session_secret)
    except ManagerSessionTokenError as exc:
        raise HTTPException(401, str(exc)) from exc
    return session.user_id


def _require_csrf(request: Request, user_id: str) -> None:
    header_token = request.headers.get(CSRF_HEADER, "")
    cookie_token = request.cookies.get(CSRF_COOKIE, "")
    if not header_token or not cookie_token:
        raise HTTPException(403, "csrf token missing")
    if not verify_csrf_token(_settings.csrf_secret, header_token, user_id):
        raise HTTPException(403, "csrf token invalid")


def _client_ip(request: Request) -> str:
    direct_ip = request.client.host if request.client else "unknown"
    if not _settings.trust_proxy_headers:
        return direct_ip
    if not _settings.trusted_proxy_ips or direct_ip not in _settings.trusted_proxy_ips:
        return direct_ip
    forwarded = request.headers.get("X-Forwarded-For")
    if not forwarded:
        return direct_ip
    trusted_ip = forwarded.split(",")[0].strip()
    return trusted_ip or direct_ip


def _throttle_visitor(request: Request) -> None:
    ip = _client_ip(request)
    if not visitor_throttle.allow(ip):
        logger.info("throttled visitor request from %s", ip)
        raise HTTPException(429, "too many requests, try again later")


def _set_visitor_cookie(response: Response, visitor_id: str) -> None:
    response.set_cookie(
        VISITOR_COOKIE,
        visitor_id,
        max_age=VISITOR_COOKIE_MAX_AGE,
        httponly=True,
        samesite="strict",
        secure=_settings.cookie_secure,
    )


# ---------------------------------------------------------------------------
# Manager dashboard
# ---------------------------------------------------------------------------


@router.get("/csrf", response_model=CsrfTokenResponse)
def issue_csrf(request: Request, response: Response) -> CsrfTokenResponse:
    user_id = _require_manager(request)
    ttl = timedelta(hours=_settings.csrf_token_ttl_hours)
    token = issue_csrf_token(_settings.csrf_secret, user_id, ttl=ttl)
    response.set_cookie(
        CSRF_COOKIE,
        token,
        max_age=int(ttl.total_seconds()),
        httponly=False,
        samesite="strict",
        secure=_settings.cookie_secure,
    )
    return CsrfTokenResponse(csrf=token)


@router.get("/conversations", response_model=ConversationListResponse)
def list_conversations(
    request: Request,
    cursor: str | None = Query(default=None, max_length=64),
    limit: int = Query(default=MANAGER_LIST_DEFAULT_LIMIT, ge=1, le=100),
) -> ConversationListResponse:
    user_id = _require_manager(request)
    try:
        return messaging_service.list_manager_conversations(user_id, cursor=cursor, limit=limit)
    except ManagerNotFoundError as exc:
        raise HTTPException(status_code=404, detail="manager not found") from exc
    except PaginationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@router.get("/conversations/{convo_id}", response_model=ManagerConversationResponse)
def get_conversation(
    convo_id: str,
    request: Request,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=MANAGER_CONVERSATION_DEFAULT_LIMIT, ge=1, le=500),
) -> ManagerConversationResponse:
    user_id = _require_manager(request)
    try:
        return messaging_service.get_manager_conversation(user_id, convo_id, offset=offset, limit=limit)
    except ManagerNotFoundError as exc:
        raise HTTPException(status_code=404, detail="manager not found") from exc
    except ConversationNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"conversation not found: {convo_id}") from exc
    except PaginationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@router.post("/reply/{convo_id}", response_model=OkResponse)
def reply_as_manager(convo_id: str, payload: ManagerReplyRequest, request: Request) -> OkResponse:
    user_id = _require_manager(request)
    _require_csrf(request, user_id)
    try:
        messaging_service.reply_as_manager(user_id, convo_id, content=payload.content)
    except ManagerNotFoundError as exc:
        raise HTTPException(status_code=404, detail="manager not found") from exc
    except ConversationNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"conversation not found: {convo_id}") from exc
    except MessageContentError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return OkResponse()


@router.post("/archive/{convo_id}", response_model=OkResponse)
def archive_conversation(convo_id: str, request: Request) -> OkResponse:
    user_id = _require_manager(request)
    _require_csrf(request, user_id)
    try:
        archive_service.archive_conversation(user_id, convo_id)
    except ConversationNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"conversation not found: {convo_id}") from exc
    return OkResponse()


@router.get("/archive/{convo_id}", response_model=ArchivedConversationResponse)
def get_archived_conversation(convo_id: str, request: Request) -> ArchivedConversationResponse:
    user_id = _require_manager(request)
    try:
        return archive_service.get_archived_conversation(user_id, convo_id)
    except ArchiveNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"archived conversation not found: {convo_id}") from exc


@router.post("/notifications/subscribe", response_model=OkResponse)
def subscribe_notifications(payload: PushSubscribeRequest, request: Request) -> OkResponse:
    user_id = _require_manager(request)
    _require_csrf(request, user_id)
    subscription_repo.save_subscription(
        user_id=user_id,
        endpoint=payload.endpoint,
        p256dh=payload.keys.p256dh,
        auth=payload.keys.auth,
    )
    return OkResponse()


@router.post("/notifications/test", response_model=NotificationTestResponse)
def send_test_notification(payload: NotificationTestRequest, request: Request) -> NotificationTestResponse:
    user_id = _require_manager(request)
    _require_csrf(request, user_id)
    results = notification_dispatcher.deliver(
        user_id,
        NotificationPayload(title=payload.title, body=payload.body, url=payload.url),
    )
    return NotificationTestResponse(
        ok=all(result.status == "sent" for result in results),
        deliveries=[
            NotificationDeliveryItem(endpoint=result.endpoint, status=result.status, error_code=result.error_code)
            for result in results
        ],
    )


# ---------------------------------------------------------------------------
# Visitor pages
# ---------------------------------------------------------------------------


@router.post("/{slug}", response_model=SendMessageResponse)
def send_message(slug: str, payload: SendMessageRequest, request: Request, response: Response) -> SendMessageResponse:
    _throttle_visitor(request)
    try:
        result = messaging_service.add_message(
            slug,
            content=payload.content,
            visitor_id=payload.visitor_id,
            convo_id=payload.convo_id,
            name=payload.name,
            email=payload.email,
        )
    except ManagerNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"manager not found: {slug}") from exc
    except MessageContentError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    _set_visitor_cookie(response, result.visitor_id)
    token = messaging_service.sign_resume_token(slug=slug, convo_id=result.convo_id)
    return SendMessageResponse(
        convo_id=result.convo_id,
        visitor_id=result.visitor_id,
        resume_token=token,
        resume_url=resume_url(slug, result.convo_id, token),
    )


@router.get("/{slug}/thread/{convo_id}", response_model=VisitorThreadResponse)
def get_visitor_thread(
    slug: str,
    convo_id: str,
    request: Request,
    token: str | None = Query(default=None, max_length=4096),
    cursor: int | None = Query(default=None, ge=0),
    limit: int = Query(default=VISITOR_THREAD_DEFAULT_LIMIT, ge=1, le=200),
    before: datetime | None = Query(default=None),
) -> VisitorThreadResponse:
    try:
        return messaging_service.get_visitor_thread(
            slug,
            convo_id,
            token=token or None,
            visitor_cookie=request.cookies.get(VISITOR_COOKIE) or None,
            cursor=cursor,
            limit=limit,
            before=before,
        )
    except ManagerNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"manager not found: {slug}") from exc
    except ConversationAccessError as exc:
        raise HTTPException(status_code=401, detail=ACCESS_DENIED) from exc
    except ConversationNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"conversation not found: {convo_id}") from exc
    except PaginationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@router.post("/{slug}/thread/{convo_id}/reply", response_model=OkResponse)
def visitor_reply(slug: str, convo_id: str, payload: VisitorReplyRequest, request: Request) -> OkResponse:
    _throttle_visitor(request)
    try:
        messaging_service.add_visitor_reply(
            slug,
            convo_id,
            content=payload.content,
            token=payload.token,
            visitor_cookie=request.cookies.get(VISITOR_COOKIE) or None,
        )
    except ManagerNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"manager not found: {slug}") from exc
    except ConversationAccessError as exc:
        raise HTTPException(status_code=401, detail=ACCESS_DENIED) from exc
    except ConversationNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"conversation not found: {convo_id}") from exc
    except MessageContentError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return OkResponse()
