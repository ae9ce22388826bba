from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

import requests
from pywebpush import WebPushException, webpush
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.errors import NotFoundError, TransportError, TransportErrorKind
from app.models import Employee, Notification, PushPlatform, PushToken
from app.settings import get_settings, is_native_push_enabled, is_push_enabled

logger = logging.getLogger("app.push")

NOTIFICATION_TYPE_CLOCK_IN_REMINDER = "clock_in_reminder"
NOTIFICATION_TYPE_CLOCK_OUT_REMINDER = "clock_out_reminder"
NOTIFICATION_TYPE_MANAGER_ALERT = "manager_alert"
NOTIFICATION_TYPE_WEEKLY_SUMMARY = "weekly_summary"
NOTIFICATION_TYPE_REQUEST_SUBMITTED = "request_submitted"
NOTIFICATION_TYPE_REQUEST_APPROVED = "request_approved"
NOTIFICATION_TYPE_REQUEST_DENIED = "request_denied"
NOTIFICATION_TYPE_REQUEST_EXPIRED = "request_expired"

CHANNEL_SCHEDULE_REMINDERS = "schedule-reminders"
CHANNEL_WEEKLY_SUMMARIES = "weekly-summaries"
CHANNEL_REQUEST_UPDATES = "request-updates"
CHANNEL_GENERAL = "general"

_CHANNEL_BY_TYPE: dict[str, str] = {
    NOTIFICATION_TYPE_CLOCK_IN_REMINDER: CHANNEL_SCHEDULE_REMINDERS,
    NOTIFICATION_TYPE_CLOCK_OUT_REMINDER: CHANNEL_SCHEDULE_REMINDERS,
    NOTIFICATION_TYPE_MANAGER_ALERT: CHANNEL_SCHEDULE_REMINDERS,
    NOTIFICATION_TYPE_WEEKLY_SUMMARY: CHANNEL_WEEKLY_SUMMARIES,
    NOTIFICATION_TYPE_REQUEST_SUBMITTED: CHANNEL_REQUEST_UPDATES,
    NOTIFICATION_TYPE_REQUEST_APPROVED: CHANNEL_REQUEST_UPDATES,
    NOTIFICATION_TYPE_REQUEST_DENIED: CHANNEL_REQUEST_UPDATES,
    NOTIFICATION_TYPE_REQUEST_EXPIRED: CHANNEL_REQUEST_UPDATES,
}

ERROR_DEVICE_NOT_REGISTERED = "DeviceNotRegistered"
ERROR_TRANSPORT = "TransportError"
ERROR_CHANNEL_DISABLED = "ChannelDisabled"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def channel_for_type(notification_type: str) -> str:
    return _CHANNEL_BY_TYPE.get(notification_type, CHANNEL_GENERAL)


def priority_for_type(notification_type: str) -> str:
    return "high" if notification_type == NOTIFICATION_TYPE_MANAGER_ALERT else "default"


@dataclass(frozen=True, slots=True)
class PushMessage:
    token: str
    title: str
    body: str
    data: dict[str, Any]
    channel_id: str
    priority: str
    ttl_seconds: int
    p256dh: str | None = None
    auth: str | None = None
    platform: PushPlatform = PushPlatform.WEB


@dataclass(frozen=True, slots=True)
class PushTicket:
    ok: bool
    error_code: str | None = None
    message: str | None = None

    @property
    def device_not_registered(self) -> bool:
        return self.error_code == ERROR_DEVICE_NOT_REGISTERED


class PushTransport(Protocol):
    def send_batch(self, messages: Sequence[PushMessage]) -> list[PushTicket]: ...


class WebPushTransport:
    """VAPID web push; one ticket per message, in order."""

    def send_batch(self, messages: Sequence[PushMessage]) -> list[PushTicket]:
        if not is_push_enabled():
            raise TransportError(TransportErrorKind.TRANSIENT, "Push notification service is not configured.")
        return [self._send_one(message) for message in messages]

    def _send_one(self, message: PushMessage) -> PushTicket:
        if not message.p256dh or not message.auth:
            return PushTicket(ok=False, error_code="UnsupportedToken", message="token has no web push keys")

        settings = get_settings()
        payload = {
            "title": message.title,
            "body": message.body,
            "data": message.data,
            "channel_id": message.channel_id,
            "priority": message.priority,
            "ts_utc": _utcnow().isoformat(),
        }
        try:
            webpush(
                subscription_info={
                    "endpoint": message.token,
                    "keys": {
                        "p256dh": message.p256dh,
                        "auth": message.auth,
                    },
                },
                data=json.dumps(payload),
                vapid_private_key=settings.push_vapid_private_key,
                vapid_claims={"sub": settings.push_vapid_subject},
                ttl=message.ttl_seconds,
            )
            return PushTicket(ok=True)
        except WebPushException as exc:
            status_code: int | None = None
            if exc.response is not None:
                status_code = exc.response.status_code
            if status_code in {404, 410}:
                return PushTicket(ok=False, error_code=ERROR_DEVICE_NOT_REGISTERED, message=str(exc))
            return PushTicket(ok=False, error_code=f"HTTP_{status_code or 'ERROR'}", message=str(exc))
        except requests.RequestException as exc:
            return PushTicket(ok=False, error_code=ERROR_TRANSPORT, message=str(exc))


class ExpoPushTransport:
    """Expo push service for native tokens; one ticket per message, in order."""

    max_batch_size = 100

    def send_batch(self, messages: Sequence[PushMessage]) -> list[PushTicket]:
        if not is_native_push_enabled():
            raise TransportError(TransportErrorKind.TRANSIENT, "Native push channel is disabled.")
        tickets: list[PushTicket] = []
        for start in range(0, len(messages), self.max_batch_size):
            tickets.extend(self._post(messages[start : start + self.max_batch_size]))
        return tickets

    def _post(self, batch: Sequence[PushMessage]) -> list[PushTicket]:
        settings = get_settings()
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if settings.expo_access_token:
            headers["Authorization"] = f"Bearer {settings.expo_access_token}"
        body = [
            {
                "to": message.token,
                "sound": "default",
                "title": message.title,
                "body": message.body,
                "data": message.data,
                "channelId": message.channel_id,
                "priority": message.priority,
                "ttl": message.ttl_seconds,
            }
            for message in batch
        ]
        try:
            response = requests.post(
                settings.expo_push_url,
                json=body,
                headers=headers,
                timeout=settings.expo_timeout_seconds,
            )
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise TransportError(TransportErrorKind.TRANSIENT, str(exc)) from exc

        entries = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(entries, list):
            raise TransportError(TransportErrorKind.TRANSIENT, "Expo response carried no tickets.")
        return [self._ticket(entry) for entry in entries]

    @staticmethod
    def _ticket(entry: Any) -> PushTicket:
        if not isinstance(entry, dict):
            return PushTicket(ok=False, error_code=ERROR_TRANSPORT, message="malformed ticket")
        if entry.get("status") == "ok":
            return PushTicket(ok=True)
        details = entry.get("details") or {}
        error_code = details.get("error") or "ExpoError"
        return PushTicket(ok=False, error_code=error_code, message=entry.get("message") or error_code)


class PlatformPushTransport:
    """Routes web subscriptions to web push and iOS/Android tokens to Expo.

    A channel left as None is not configured; its messages get a
    ``ChannelDisabled`` ticket, which does not count against the token.
    """

    def __init__(self, *, web: PushTransport | None, native: PushTransport | None):
        self.web = web
        self.native = native

    def send_batch(self, messages: Sequence[PushMessage]) -> list[PushTicket]:
        tickets: list[PushTicket] = [PushTicket(ok=False, error_code=ERROR_TRANSPORT) for _ in messages]
        groups: dict[bool, list[int]] = {}
        for index, message in enumerate(messages):
            groups.setdefault(message.platform == PushPlatform.WEB, []).append(index)

        for is_web, indexes in groups.items():
            transport = self.web if is_web else self.native
            subset = [messages[index] for index in indexes]
            if transport is None:
                channel = "web" if is_web else "native"
                disabled = PushTicket(
                    ok=False,
                    error_code=ERROR_CHANNEL_DISABLED,
                    message=f"{channel} push is not configured",
                )
                routed = [disabled for _ in subset]
            else:
                routed = _send_chunk(transport, subset)
            for index, ticket in zip(indexes, routed):
                tickets[index] = ticket
        return tickets


def get_default_transport() -> PushTransport | None:
    web = WebPushTransport() if is_push_enabled() else None
    native = ExpoPushTransport() if is_native_push_enabled() else None
    if web is None and native is None:
        return None
    return PlatformPushTransport(web=web, native=native)


@dataclass(slots=True)
class DeliveryResult:
    notification_id: int
    push_sent: bool
    error: str | None = None
    sent: int = 0
    failed: int = 0
    deactivated: int = 0


@dataclass(frozen=True, slots=True)
class NotificationRequest:
    employee_id: int
    organization_id: int
    notification_type: str
    title: str
    body: str
    data: dict[str, Any] = field(default_factory=dict)


def list_active_tokens(db: Session, *, employee_id: int) -> list[PushToken]:
    return list(
        db.scalars(
            select(PushToken)
            .where(PushToken.employee_id == employee_id, PushToken.is_active.is_(True))
            .order_by(PushToken.id.asc())
        ).all()
    )


def _deactivate(token: PushToken, *, reason: str) -> None:
    token.is_active = False
    token.deactivated_reason = reason
    logger.info(
        "push_token_deactivated",
        extra={"token_id": token.id, "employee_id": token.employee_id, "reason": reason},
    )


def _record_ticket(token: PushToken, ticket: PushTicket, *, now_utc: datetime, max_failures: int) -> bool:
    """Apply one ticket to its token. Returns True when the token was deactivated."""
    if ticket.ok:
        token.last_used_at = now_utc
        return False
    if ticket.error_code == ERROR_CHANNEL_DISABLED:
        return False

    token.last_failure_at = now_utc
    if ticket.device_not_registered:
        _deactivate(token, reason=ERROR_DEVICE_NOT_REGISTERED)
        return True

    token.failure_count = (token.failure_count or 0) + 1
    if token.failure_count >= max_failures:
        _deactivate(token, reason="too_many_failures")
        return True
    return False


def _send_chunk(transport: PushTransport, chunk: Sequence[PushMessage]) -> list[PushTicket]:
    try:
        tickets = list(transport.send_batch(chunk))
    except TransportError as exc:
        error_code = (
            ERROR_DEVICE_NOT_REGISTERED if exc.kind == TransportErrorKind.UNREGISTERED else ERROR_TRANSPORT
        )
        logger.warning("push_chunk_failed", extra={"size": len(chunk), "kind": exc.kind.value, "error": exc.message})
        return [PushTicket(ok=False, error_code=error_code, message=exc.message) for _ in chunk]

    if len(tickets) < len(chunk):
        missing = len(chunk) - len(tickets)
        tickets.extend(PushTicket(ok=False, error_code=ERROR_TRANSPORT, message="missing ticket") for _ in range(missing))
    return tickets[: len(chunk)]


def dispatch_to_tokens(
    tokens: Sequence[PushToken],
    *,
    title: str,
    body: str,
    data: dict[str, Any],
    channel_id: str,
    priority: str,
    transport: PushTransport,
) -> DeliveryResult:
    """Send one message per token in provider-sized chunks and account every ticket."""
    settings = get_settings()
    batch_size = max(1, settings.push_batch_size)
    now_utc = _utcnow()
    messages = [
        PushMessage(
            token=token.token,
            title=title,
            body=body,
            data=data,
            channel_id=channel_id,
            priority=priority,
            ttl_seconds=settings.push_ttl_seconds,
            p256dh=token.p256dh,
            auth=token.auth,
            platform=token.platform,
        )
        for token in tokens
    ]

    result = DeliveryResult(notification_id=0, push_sent=False)
    for start in range(0, len(messages), batch_size):
        chunk = messages[start : start + batch_size]
        tickets = _send_chunk(transport, chunk)
        for token, ticket in zip(tokens[start : start + batch_size], tickets):
            if ticket.ok:
                result.sent += 1
            else:
                result.failed += 1
                result.error = ticket.message or ticket.error_code
            if _record_ticket(token, ticket, now_utc=now_utc, max_failures=settings.push_max_failures):
                result.deactivated += 1

    result.push_sent = result.sent > 0
    return result


def send_notification(
    db: Session,
    *,
    employee_id: int,
    organization_id: int,
    notification_type: str,
    title: str,
    body: str,
    data: dict[str, Any] | None = None,
    transport: PushTransport | None = None,
    commit: bool = True,
) -> DeliveryResult:
    """Record an inbox notification and push it to every active device of the employee."""
    channel_id = channel_for_type(notification_type)
    priority = priority_for_type(notification_type)
    notification = Notification(
        employee_id=employee_id,
        organization_id=organization_id,
        type=notification_type,
        title=title,
        body=body,
        data=data or {},
        channel_id=channel_id,
        priority=priority,
        push_sent=False,
    )
    db.add(notification)
    db.flush()

    tokens = list_active_tokens(db, employee_id=employee_id)
    resolved_transport = transport or get_default_transport()
    if not tokens:
        result = DeliveryResult(notification_id=notification.id, push_sent=False, error="no_active_tokens")
    elif resolved_transport is None:
        result = DeliveryResult(notification_id=notification.id, push_sent=False, error="push_disabled")
    else:
        result = dispatch_to_tokens(
            tokens,
            title=title,
            body=body,
            data={**(data or {}), "notification_id": notification.id, "type": notification_type},
            channel_id=channel_id,
            priority=priority,
            transport=resolved_transport,
        )
        result.notification_id = notification.id

    notification.push_sent = result.push_sent
    notification.push_sent_at = _utcnow() if result.push_sent else None
    notification.push_error = result.error
    if commit:
        db.commit()

    logger.info(
        "notification_recorded",
        extra={
            "notification_id": notification.id,
            "employee_id": employee_id,
            "type": notification_type,
            "push_sent": result.push_sent,
            "targets": len(tokens),
            "deactivated": result.deactivated,
        },
    )
    return result


def send_batch_notifications(
    db: Session,
    items: Sequence[NotificationRequest],
    *,
    transport: PushTransport | None = None,
) -> dict[str, int]:
    sent = 0
    failed = 0
    for item in items:
        try:
            result = send_notification(
                db,
                employee_id=item.employee_id,
                organization_id=item.organization_id,
                notification_type=item.notification_type,
                title=item.title,
                body=item.body,
                data=item.data,
                transport=transport,
            )
        except Exception:
            db.rollback()
            failed += 1
            logger.exception(
                "notification_send_failed",
                extra={"employee_id": item.employee_id, "type": item.notification_type},
            )
            continue
        if result.push_sent:
            sent += 1
        else:
            failed += 1
    return {"sent": sent, "failed": failed}


def register_push_token(
    db: Session,
    *,
    employee_id: int,
    token: str,
    platform: PushPlatform,
    p256dh: str | None = None,
    auth: str | None = None,
) -> PushToken:
    employee = db.get(Employee, employee_id)
    if employee is None or not employee.is_active:
        raise NotFoundError("EMPLOYEE_NOT_FOUND", "Employee not found.")

    normalized_token = token.strip()
    row = db.scalar(select(PushToken).where(PushToken.token == normalized_token))
    if row is None:
        row = PushToken(
            employee_id=employee_id,
            token=normalized_token,
            platform=platform,
            p256dh=p256dh,
            auth=auth,
            is_active=True,
            failure_count=0,
        )
        db.add(row)
    else:
        row.employee_id = employee_id
        row.platform = platform
        row.p256dh = p256dh
        row.auth = auth
        row.is_active = True
        row.failure_count = 0
        row.last_failure_at = None
        row.deactivated_reason = None

    db.commit()
    db.refresh(row)
    return row


def deactivate_push_token(db: Session, *, employee_id: int, token: str) -> bool:
    row = db.scalar(
        select(PushToken).where(
            PushToken.employee_id == employee_id,
            PushToken.token == token.strip(),
        )
    )
    if row is None:
        return False

    if row.is_active:
        _deactivate(row, reason="unregistered_by_user")
        db.commit()
    return True
