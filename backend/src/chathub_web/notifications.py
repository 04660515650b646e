from __future__ import annotations

import json
import logging
import socket
import urllib.error
import urllib.request
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Literal, Protocol

from sqlalchemy import DateTime, Integer, String, Text, UniqueConstraint, create_engine, delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .config import Settings

logger = logging.getLogger(__name__)

PushResultStatus = Literal["sent", "failed", "skipped"]


@dataclass(frozen=True)
class NotificationPayload:
    title: str
    body: str
    url: str | None = None


@dataclass(frozen=True)
class PushSubscriptionRecord:
    user_id: str
    endpoint: str
    p256dh: str
    auth: str
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class PushSendResult:
    endpoint: str
    status: PushResultStatus
    attempted_at: datetime
    error_code: str | None = None
    error_message: str | None = None


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class PushSubscriptionRepository(Protocol):
    def reset(self) -> None: ...

    def save_subscription(self, *, user_id: str, endpoint: str, p256dh: str, auth: str) -> PushSubscriptionRecord: ...

    def list_subscriptions(self, user_id: str) -> list[PushSubscriptionRecord]: ...


class InMemoryPushSubscriptionRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._subscriptions: dict[tuple[str, str], PushSubscriptionRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._subscriptions.clear()

    def save_subscription(self, *, user_id: str, endpoint: str, p256dh: str, auth: str) -> PushSubscriptionRecord:
        now = _now_utc()
        key = (user_id, endpoint)
        with self._lock:
            existing = self._subscriptions.get(key)
            record = PushSubscriptionRecord(
                user_id=user_id,
                endpoint=endpoint,
                p256dh=p256dh,
                auth=auth,
                created_at=existing.created_at if existing is not None else now,
                updated_at=now,
            )
            self._subscriptions[key] = record
            return record

    def list_subscriptions(self, user_id: str) -> list[PushSubscriptionRecord]:
        with self._lock:
            return [value for (owner, _), value in self._subscriptions.items() if owner == user_id]


class NotificationsBase(DeclarativeBase):
    pass


class _PushSubscriptionRow(NotificationsBase):
    __tablename__ = "push_subscriptions"
    __table_args__ = (UniqueConstraint("user_id", "endpoint", name="uq_push_subscriptions_user_endpoint"),)

    subscription_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    endpoint: Mapped[str] = mapped_column(Text, nullable=False)
    p256dh: Mapped[str] = mapped_column(String(256), nullable=False)
    auth: Mapped[str] = mapped_column(String(256), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SqlAlchemyPushSubscriptionRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for CONVERSATION_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            NotificationsBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_PushSubscriptionRow))

    def save_subscription(self, *, user_id: str, endpoint: str, p256dh: str, auth: str) -> PushSubscriptionRecord:
        try:
            return self._upsert(user_id=user_id, endpoint=endpoint, p256dh=p256dh, auth=auth)
        except IntegrityError:
            # A concurrent insert of the same pair won; update that row instead.
            return self._upsert(user_id=user_id, endpoint=endpoint, p256dh=p256dh, auth=auth)

    def _upsert(self, *, user_id: str, endpoint: str, p256dh: str, auth: str) -> PushSubscriptionRecord:
        now = _now_utc()
        with self._session() as session:
            with session.begin():
                row = session.scalar(
                    select(_PushSubscriptionRow)
                    .where(_PushSubscriptionRow.user_id == user_id)
                    .where(_PushSubscriptionRow.endpoint == endpoint)
                )
                if row is None:
                    row = _PushSubscriptionRow(
                        user_id=user_id,
                        endpoint=endpoint,
                        p256dh=p256dh,
                        auth=auth,
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(row)
                else:
                    row.p256dh = p256dh
                    row.auth = auth
                    row.updated_at = now
                session.flush()
                return self._record(row)

    def list_subscriptions(self, user_id: str) -> list[PushSubscriptionRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_PushSubscriptionRow)
                .where(_PushSubscriptionRow.user_id == user_id)
                .order_by(_PushSubscriptionRow.subscription_id.asc())
            ).all()
            return [self._record(row) for row in rows]

    @staticmethod
    def _record(row: _PushSubscriptionRow) -> PushSubscriptionRecord:
        return PushSubscriptionRecord(
            user_id=row.user_id,
            endpoint=row.endpoint,
            p256dh=row.p256dh,
            auth=row.auth,
            created_at=_coerce_utc(row.created_at),
            updated_at=_coerce_utc(row.updated_at),
        )


def create_push_subscription_repository(*, backend: str, database_url: str) -> PushSubscriptionRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyPushSubscriptionRepository(database_url)
    if normalized == "inmemory":
        return InMemoryPushSubscriptionRepository()
    raise RuntimeError(f"unsupported CONVERSATION_STORE_BACKEND: {backend}")


class PushSender(Protocol):
    def send(self, subscription: PushSubscriptionRecord, payload: NotificationPayload) -> PushSendResult: ...


class StubPushSender:
    """In-process sender for tests and local runs.

    Only the most recent ``history`` deliveries are kept. Endpoints
    containing "fail" are rejected.
    """

    def __init__(self, *, enabled: bool = True, history: int = 100) -> None:
        self._enabled = enabled
        self._lock = Lock()
        self.deliveries: deque[tuple[str, NotificationPayload]] = deque(maxlen=history)

    def send(self, subscription: PushSubscriptionRecord, payload: NotificationPayload) -> PushSendResult:
        attempted_at = _now_utc()

        if not self._enabled:
            return PushSendResult(
                endpoint=subscription.endpoint,
                status="failed",
                attempted_at=attempted_at,
                error_code="push_disabled",
                error_message="Push delivery is disabled",
            )

        if "fail" in subscription.endpoint.lower():
            return PushSendResult(
                endpoint=subscription.endpoint,
                status="failed",
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub sender forced failure for endpoint",
            )

        with self._lock:
            self.deliveries.append((subscription.endpoint, payload))
        return PushSendResult(endpoint=subscription.endpoint, status="sent", attempted_at=attempted_at)


class _PushSendError(Exception):
    """Internal error raised when a push gateway request fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class HttpPushSender:
    """Delivers web-push notifications through an HTTP push gateway."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        timeout_seconds: int = 10,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._timeout_seconds = timeout_seconds

    def send(self, subscription: PushSubscriptionRecord, payload: NotificationPayload) -> PushSendResult:
        attempted_at = _now_utc()
        request_payload = {
            "subscription": {
                "endpoint": subscription.endpoint,
                "keys": {"p256dh": subscription.p256dh, "auth": subscription.auth},
            },
            "notification": {
                "title": payload.title,
                "body": payload.body,
                "url": payload.url,
            },
        }
        try:
            self._post(request_payload)
        except _PushSendError as exc:
            return PushSendResult(
                endpoint=subscription.endpoint,
                status="failed",
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=exc.message,
            )
        return PushSendResult(endpoint=subscription.endpoint, status="sent", attempted_at=attempted_at)

    def _post(self, body: dict[str, object]) -> dict[str, object]:
        """Send a POST request to the push gateway."""
        url = f"{self._base_url}/v1/push/send"
        data = json.dumps(body).encode("utf-8")
        request = urllib.request.Request(
            url,
            data=data,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            raise _PushSendError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            raise _PushSendError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _PushSendError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc
        if not raw.strip():
            return {}
        try:
            decoded = json.loads(raw)
        except ValueError as exc:
            raise _PushSendError(error_code="invalid_response", message="Push gateway returned invalid JSON") from exc
        return decoded if isinstance(decoded, dict) else {}


def create_push_sender(settings: Settings) -> PushSender | None:
    """Build the push gateway sender, or ``None`` when no gateway is configured.

    ``None`` disables the dispatcher: ``dispatch`` does nothing and
    ``deliver`` reports every subscription as skipped.
    """
    if settings.push_sender_type != "http" or not settings.push_delivery_configured():
        return None
    return HttpPushSender(
        base_url=settings.push_api_base_url,
        api_key=settings.push_api_key,
        timeout_seconds=settings.push_timeout_seconds,
    )


class NotificationDispatcher:
    """Fans a notification out to every push subscription of a manager.

    ``dispatch`` hands the work to a thread pool and returns at once; it
    never raises and nothing is retried. ``deliver`` does the same work on
    the calling thread and reports one result per subscription.
    """

    def __init__(
        self,
        *,
        subscriptions: PushSubscriptionRepository,
        sender: PushSender | None,
        max_workers: int = 2,
    ) -> None:
        self._subscriptions = subscriptions
        self._sender = sender
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify")

    @property
    def enabled(self) -> bool:
        return self._sender is not None

    def dispatch(self, owner_id: str, payload: NotificationPayload) -> Future[None] | None:
        if self._sender is None:
            return None
        try:
            return self._executor.submit(self._deliver_logged, owner_id, payload)
        except RuntimeError:
            logger.warning("notification executor unavailable; dropping notification for %s", owner_id)
            return None

    def deliver(self, owner_id: str, payload: NotificationPayload) -> list[PushSendResult]:
        subscriptions = self._subscriptions.list_subscriptions(owner_id)
        sender = self._sender
        if sender is None:
            attempted_at = _now_utc()
            return [
                PushSendResult(
                    endpoint=value.endpoint,
                    status="skipped",
                    attempted_at=attempted_at,
                    error_code="push_not_configured",
                )
                for value in subscriptions
            ]

        results: list[PushSendResult] = []
        for subscription in subscriptions:
            result = sender.send(subscription, payload)
            if result.status == "failed":
                logger.warning(
                    "push delivery failed for %s: %s (%s)",
                    owner_id,
                    result.error_code,
                    result.error_message,
                )
            results.append(result)
        return results

    def shutdown(self, *, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _deliver_logged(self, owner_id: str, payload: NotificationPayload) -> None:
        try:
            self.deliver(owner_id, payload)
        except Exception:
            logger.warning("notification dispatch for %s failed", owner_id, exc_info=True)
