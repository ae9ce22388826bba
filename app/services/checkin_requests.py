from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.audit import log_audit
from app.db import SessionLocal
from app.errors import ApiError, ConflictError, NotFoundError, ValidationError
from app.models import (
    AuditActorType,
    CheckInRequest,
    CheckInRequestStatus,
    CheckInRequestType,
    Employee,
    ShiftStatus,
)
from app.payloads import CapturedLocation
from app.services.directory import MANAGER_ROLES, list_org_managers
from app.services.notification_windows import normalize_utc
from app.services.push_notifications import (
    NOTIFICATION_TYPE_REQUEST_APPROVED,
    NOTIFICATION_TYPE_REQUEST_DENIED,
    NOTIFICATION_TYPE_REQUEST_EXPIRED,
    NOTIFICATION_TYPE_REQUEST_SUBMITTED,
    PushTransport,
    send_notification,
)
from app.services.shifts import (
    close_shift,
    get_open_shift,
    lock_active_employee,
    open_shift_for_employee,
    require_reason,
    verify_clock_location,
)
from app.settings import get_settings

logger = logging.getLogger("app.requests")

_REQUEST_TYPE_LABELS = {
    CheckInRequestType.CLOCK_IN: "clock-in",
    CheckInRequestType.CLOCK_OUT: "clock-out",
}


def _notify_quietly(
    db: Session,
    *,
    employee_id: int,
    organization_id: int,
    notification_type: str,
    title: str,
    body: str,
    data: dict,
    transport: PushTransport | None,
) -> None:
    try:
        send_notification(
            db,
            employee_id=employee_id,
            organization_id=organization_id,
            notification_type=notification_type,
            title=title,
            body=body,
            data=data,
            transport=transport,
        )
    except Exception:
        db.rollback()
        logger.exception(
            "request_notification_failed",
            extra={"employee_id": employee_id, "type": notification_type},
        )


def _validate_requested_timestamp(requested: datetime, *, now_utc: datetime) -> None:
    max_days = get_settings().historical_request_max_days
    if requested > now_utc:
        raise ValidationError("REQUESTED_TIMESTAMP_IN_FUTURE", "Requested time cannot be in the future.")
    if now_utc - requested > timedelta(days=max_days):
        raise ValidationError(
            "REQUESTED_TIMESTAMP_TOO_OLD",
            f"Requested time must be within the last {max_days} days.",
        )


def create_checkin_request(
    db: Session,
    *,
    employee_id: int,
    reason: str,
    location: CapturedLocation | None = None,
    request_type: CheckInRequestType | None = None,
    requested_timestamp: datetime | None = None,
    now_utc: datetime | None = None,
    transport: PushTransport | None = None,
) -> CheckInRequest:
    settings = get_settings()
    reference_utc = normalize_utc(now_utc)
    employee = lock_active_employee(db, employee_id=employee_id)
    normalized_reason = require_reason(reason)

    is_historical = requested_timestamp is not None
    requested_at = normalize_utc(requested_timestamp) if is_historical else reference_utc
    if is_historical:
        _validate_requested_timestamp(requested_at, now_utc=reference_utc)

    open_shift = get_open_shift(db, employee_id=employee.id)
    if request_type is None:
        request_type = CheckInRequestType.CLOCK_OUT if open_shift else CheckInRequestType.CLOCK_IN
    if request_type == CheckInRequestType.CLOCK_IN and open_shift is not None:
        raise ConflictError("ALREADY_CLOCKED_IN", "Employee already has an open shift.")
    if request_type == CheckInRequestType.CLOCK_OUT:
        if open_shift is None:
            raise NotFoundError("NO_OPEN_SHIFT", "No open shift found for employee.")
        if requested_at <= open_shift.clock_in_at:
            raise ValidationError("CLOCK_OUT_BEFORE_CLOCK_IN", "Clock-out must be after clock-in.")

    existing = db.scalar(
        select(CheckInRequest.id).where(
            CheckInRequest.employee_id == employee.id,
            CheckInRequest.request_type == request_type,
            CheckInRequest.status == CheckInRequestStatus.PENDING,
        )
    )
    if existing is not None:
        raise ConflictError("REQUEST_ALREADY_PENDING", "A pending request of this type already exists.")

    distance_from_geofence: float | None = None
    nearest_location_id: int | None = None
    if location is not None:
        verification = verify_clock_location(
            db,
            organization_id=employee.organization_id,
            location=location,
            evaluated_at=reference_utc,
        )
        nearest_location_id = verification.nearest_location_id
        if verification.distance_m is not None and verification.radius_m is not None:
            distance_from_geofence = round(max(0.0, verification.distance_m - verification.radius_m), 2)

    request = CheckInRequest(
        employee_id=employee.id,
        organization_id=employee.organization_id,
        request_type=request_type,
        status=CheckInRequestStatus.PENDING,
        requested_location=location,
        distance_from_geofence_m=distance_from_geofence,
        nearest_location_id=nearest_location_id,
        reason=normalized_reason,
        requested_timestamp=requested_at,
        is_historical=is_historical,
        shift_id=open_shift.id if request_type == CheckInRequestType.CLOCK_OUT else None,
        expires_at=reference_utc + timedelta(hours=settings.checkin_request_expiry_hours),
    )
    db.add(request)
    db.commit()
    db.refresh(request)

    log_audit(
        db,
        actor_type=AuditActorType.EMPLOYEE,
        actor_id=employee.id,
        action="CHECKIN_REQUEST_CREATED",
        organization_id=employee.organization_id,
        entity_type="checkin_request",
        entity_id=request.id,
        details={"request_type": request_type.value, "is_historical": is_historical},
    )
    for manager in list_org_managers(db, organization_id=employee.organization_id):
        _notify_quietly(
            db,
            employee_id=manager.id,
            organization_id=employee.organization_id,
            notification_type=NOTIFICATION_TYPE_REQUEST_SUBMITTED,
            title="New Time Request",
            body=f"{employee.full_name} submitted a {_REQUEST_TYPE_LABELS[request_type]} request.",
            data={"screen": "requests", "request_id": request.id},
            transport=transport,
        )
    return request


def _lock_request(db: Session, *, request_id: int) -> CheckInRequest:
    request = db.scalar(select(CheckInRequest).where(CheckInRequest.id == request_id).with_for_update())
    if request is None:
        raise NotFoundError("REQUEST_NOT_FOUND", "Request not found.")
    return request


def review_checkin_request(
    db: Session,
    *,
    request_id: int,
    reviewer_id: int,
    approve: bool,
    note: str | None = None,
    denial_reason: str | None = None,
    now_utc: datetime | None = None,
    transport: PushTransport | None = None,
) -> CheckInRequest:
    reference_utc = normalize_utc(now_utc)
    request = _lock_request(db, request_id=request_id)

    reviewer = db.get(Employee, reviewer_id)
    if (
        reviewer is None
        or not reviewer.is_active
        or reviewer.organization_id != request.organization_id
        or reviewer.role not in MANAGER_ROLES
    ):
        raise ApiError(status_code=403, code="FORBIDDEN", message="Reviewer cannot act on this request.")

    if request.status != CheckInRequestStatus.PENDING:
        raise ConflictError("REQUEST_ALREADY_REVIEWED", "Request has already been resolved.")
    if request.expires_at <= reference_utc:
        request.status = CheckInRequestStatus.AUTO_EXPIRED
        db.commit()
        raise ConflictError("REQUEST_EXPIRED", "Request expired before review.")
    if not approve and not (denial_reason or "").strip():
        raise ValidationError("DENIAL_REASON_REQUIRED", "A denial reason is required.")

    if approve:
        employee = lock_active_employee(db, employee_id=request.employee_id)
        if request.request_type == CheckInRequestType.CLOCK_IN:
            shift = open_shift_for_employee(
                db,
                employee=employee,
                clock_in_at=request.requested_timestamp,
                location=request.requested_location,
                notes=f"Approved time request #{request.id}",
            )
            request.shift_id = shift.id
        else:
            shift = request.shift or get_open_shift(db, employee_id=employee.id, for_update=True)
            if shift is None or shift.status != ShiftStatus.OPEN:
                raise ConflictError("SHIFT_NOT_OPEN", "The shift for this request is no longer open.")
            close_shift(
                db,
                shift=shift,
                clock_out_at=request.requested_timestamp,
                location=request.requested_location,
                notes=f"Approved time request #{request.id}",
            )
            request.shift_id = shift.id
        request.status = CheckInRequestStatus.APPROVED
    else:
        request.status = CheckInRequestStatus.DENIED
        request.denial_reason = (denial_reason or "").strip()

    request.reviewed_by_id = reviewer_id
    request.reviewed_at = reference_utc
    request.review_note = (note or "").strip() or None
    db.commit()
    db.refresh(request)

    log_audit(
        db,
        actor_type=AuditActorType.MANAGER,
        actor_id=reviewer_id,
        action="CHECKIN_REQUEST_APPROVED" if approve else "CHECKIN_REQUEST_DENIED",
        organization_id=request.organization_id,
        entity_type="checkin_request",
        entity_id=request.id,
        details={"shift_id": request.shift_id},
    )
    label = _REQUEST_TYPE_LABELS[request.request_type]
    if approve:
        title, body, notification_type = (
            "Request Approved",
            f"Your {label} request was approved.",
            NOTIFICATION_TYPE_REQUEST_APPROVED,
        )
    else:
        title, body, notification_type = (
            "Request Denied",
            f"Your {label} request was denied: {request.denial_reason}",
            NOTIFICATION_TYPE_REQUEST_DENIED,
        )
    _notify_quietly(
        db,
        employee_id=request.employee_id,
        organization_id=request.organization_id,
        notification_type=notification_type,
        title=title,
        body=body,
        data={"screen": "requests", "request_id": request.id},
        transport=transport,
    )
    return request


def expire_checkin_requests(
    now_utc: datetime | None = None,
    *,
    db: Session | None = None,
    transport: PushTransport | None = None,
) -> list[CheckInRequest]:
    if db is None:
        with SessionLocal() as managed_db:
            return expire_checkin_requests(now_utc, db=managed_db, transport=transport)

    reference_utc = normalize_utc(now_utc)
    expired = list(
        db.scalars(
            select(CheckInRequest)
            .where(
                CheckInRequest.status == CheckInRequestStatus.PENDING,
                CheckInRequest.expires_at <= reference_utc,
            )
            .order_by(CheckInRequest.id.asc())
            .with_for_update(skip_locked=True)
        ).all()
    )
    for request in expired:
        request.status = CheckInRequestStatus.AUTO_EXPIRED
    db.commit()

    if expired:
        logger.info("checkin_requests_expired", extra={"count": len(expired)})
    for request in expired:
        _notify_quietly(
            db,
            employee_id=request.employee_id,
            organization_id=request.organization_id,
            notification_type=NOTIFICATION_TYPE_REQUEST_EXPIRED,
            title="Request Expired",
            body=f"Your {_REQUEST_TYPE_LABELS[request.request_type]} request expired without review.",
            data={"screen": "requests", "request_id": request.id},
            transport=transport,
        )
    return expired
