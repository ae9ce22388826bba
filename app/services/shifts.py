from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from app.audit import log_audit
from app.db import SessionLocal
from app.errors import ConflictError, NotFoundError, ValidationError
from app.models import (
    AuditActorType,
    Employee,
    Organization,
    Shift,
    ShiftStatus,
    StaleResolution,
)
from app.payloads import CapturedLocation, DeviceInfo, GeofenceVerification
from app.services.location import evaluate_geofence, load_organization_zones
from app.services.notification_windows import local_date_for, normalize_utc
from app.settings import get_settings

logger = logging.getLogger("app.shifts")


@dataclass(frozen=True, slots=True)
class BreakPolicy:
    threshold_hours: int
    deduction_minutes: int

    @classmethod
    def for_organization(cls, organization: Organization | None) -> BreakPolicy:
        settings = get_settings()
        threshold = settings.auto_break_threshold_hours
        deduction = settings.auto_break_minutes
        if organization is not None:
            if organization.auto_break_threshold_hours is not None:
                threshold = organization.auto_break_threshold_hours
            if organization.auto_break_minutes is not None:
                deduction = organization.auto_break_minutes
        return cls(threshold_hours=threshold, deduction_minutes=deduction)

    def break_minutes_for(self, duration_minutes: int) -> int:
        if self.deduction_minutes <= 0:
            return 0
        if duration_minutes >= self.threshold_hours * 60:
            return self.deduction_minutes
        return 0


def compute_duration_minutes(clock_in_at: datetime, clock_out_at: datetime) -> int:
    elapsed = normalize_utc(clock_out_at) - normalize_utc(clock_in_at)
    return int(elapsed.total_seconds() // 60)


def _apply_clock_out(
    shift: Shift,
    *,
    clock_out_at: datetime,
    policy: BreakPolicy,
) -> None:
    duration = compute_duration_minutes(shift.clock_in_at, clock_out_at)
    break_minutes = policy.break_minutes_for(duration)
    shift.clock_out_at = clock_out_at
    shift.duration_minutes = duration
    shift.break_minutes = break_minutes
    shift.net_duration_minutes = max(0, duration - break_minutes)


def get_open_shift(db: Session, *, employee_id: int, for_update: bool = False) -> Shift | None:
    stmt = (
        select(Shift)
        .where(Shift.employee_id == employee_id, Shift.status == ShiftStatus.OPEN)
        .order_by(Shift.clock_in_at.desc(), Shift.id.desc())
        .limit(1)
    )
    if for_update:
        stmt = stmt.with_for_update()
    return db.scalar(stmt)


def lock_active_employee(db: Session, *, employee_id: int) -> Employee:
    employee = db.scalar(
        select(Employee)
        .options(selectinload(Employee.organization))
        .where(Employee.id == employee_id)
        .with_for_update()
    )
    if employee is None or not employee.is_active:
        raise NotFoundError("EMPLOYEE_NOT_FOUND", "Employee not found.")
    if employee.organization is None or not employee.organization.is_active:
        raise NotFoundError("ORGANIZATION_NOT_FOUND", "Organization not found.")
    return employee


def verify_clock_location(
    db: Session,
    *,
    organization_id: int,
    location: CapturedLocation,
    evaluated_at: datetime | None = None,
) -> GeofenceVerification:
    zones = load_organization_zones(db, organization_id=organization_id)
    evaluation = evaluate_geofence(
        location.latitude,
        location.longitude,
        zones,
        accuracy_m=location.accuracy_m,
    )
    return evaluation.to_verification(evaluated_at=evaluated_at)


def open_shift_for_employee(
    db: Session,
    *,
    employee: Employee,
    clock_in_at: datetime,
    location: CapturedLocation | None = None,
    location_id: int | None = None,
    notes: str | None = None,
    device_info: DeviceInfo | None = None,
    verification: GeofenceVerification | None = None,
) -> Shift:
    """Stage a new open shift; the caller owns the commit."""
    if get_open_shift(db, employee_id=employee.id, for_update=True) is not None:
        raise ConflictError("ALREADY_CLOCKED_IN", "Employee already has an open shift.")

    if verification is None and location is not None:
        verification = verify_clock_location(
            db,
            organization_id=employee.organization_id,
            location=location,
            evaluated_at=clock_in_at,
        )
    if location_id is None and verification is not None and verification.in_range:
        location_id = verification.nearest_location_id

    shift = Shift(
        employee_id=employee.id,
        organization_id=employee.organization_id,
        location_id=location_id,
        status=ShiftStatus.OPEN,
        clock_in_at=clock_in_at,
        clock_in_location=location,
        clock_in_verification=verification,
        device_info=device_info,
        shift_date=local_date_for(employee.organization.timezone, clock_in_at),
        break_minutes=0,
        notes=notes,
    )
    db.add(shift)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        raise ConflictError("ALREADY_CLOCKED_IN", "Employee already has an open shift.")
    return shift


def close_shift(
    db: Session,
    *,
    shift: Shift,
    clock_out_at: datetime,
    location: CapturedLocation | None = None,
    notes: str | None = None,
) -> Shift:
    """Stage the clock-out of an open shift; the caller owns the commit."""
    if shift.status != ShiftStatus.OPEN:
        raise ConflictError("SHIFT_NOT_OPEN", "Only open shifts can be clocked out.")
    if clock_out_at <= shift.clock_in_at:
        raise ValidationError("CLOCK_OUT_BEFORE_CLOCK_IN", "Clock-out must be after clock-in.")

    _apply_clock_out(shift, clock_out_at=clock_out_at, policy=BreakPolicy.for_organization(shift.organization))
    shift.clock_out_location = location
    if notes:
        shift.notes = f"{shift.notes}\n{notes}" if shift.notes else notes
    shift.status = ShiftStatus.CLOSED
    db.flush()
    return shift


def clock_in(
    db: Session,
    *,
    employee_id: int,
    location: CapturedLocation | None = None,
    timestamp_utc: datetime | None = None,
    location_id: int | None = None,
    notes: str | None = None,
    device_info: DeviceInfo | None = None,
    verification: GeofenceVerification | None = None,
) -> Shift:
    clock_in_at = normalize_utc(timestamp_utc)
    employee = lock_active_employee(db, employee_id=employee_id)
    shift = open_shift_for_employee(
        db,
        employee=employee,
        clock_in_at=clock_in_at,
        location=location,
        location_id=location_id,
        notes=notes,
        device_info=device_info,
        verification=verification,
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError("ALREADY_CLOCKED_IN", "Employee already has an open shift.")
    db.refresh(shift)

    logger.info(
        "shift_clock_in",
        extra={
            "employee_id": employee_id,
            "shift_id": shift.id,
            "shift_date": shift.shift_date.isoformat(),
            "in_range": shift.clock_in_verification.in_range if shift.clock_in_verification else None,
        },
    )
    log_audit(
        db,
        actor_type=AuditActorType.EMPLOYEE,
        actor_id=employee_id,
        action="SHIFT_CLOCK_IN",
        organization_id=shift.organization_id,
        entity_type="shift",
        entity_id=shift.id,
        details={"location_id": shift.location_id},
    )
    return shift


def clock_out(
    db: Session,
    *,
    employee_id: int,
    location: CapturedLocation | None = None,
    timestamp_utc: datetime | None = None,
    notes: str | None = None,
) -> Shift:
    clock_out_at = normalize_utc(timestamp_utc)
    shift = get_open_shift(db, employee_id=employee_id, for_update=True)
    if shift is None:
        raise NotFoundError("NO_OPEN_SHIFT", "No open shift found for employee.")

    close_shift(db, shift=shift, clock_out_at=clock_out_at, location=location, notes=notes)
    db.commit()
    db.refresh(shift)

    logger.info(
        "shift_clock_out",
        extra={
            "employee_id": employee_id,
            "shift_id": shift.id,
            "duration_minutes": shift.duration_minutes,
            "break_minutes": shift.break_minutes,
        },
    )
    log_audit(
        db,
        actor_type=AuditActorType.EMPLOYEE,
        actor_id=employee_id,
        action="SHIFT_CLOCK_OUT",
        organization_id=shift.organization_id,
        entity_type="shift",
        entity_id=shift.id,
        details={"duration_minutes": shift.duration_minutes},
    )
    return shift


def mark_stale(
    now_utc: datetime | None = None,
    *,
    threshold_hours: int | None = None,
    db: Session | None = None,
) -> list[Shift]:
    """Move open shifts older than the threshold to STALE.

    Without an explicit threshold each organization's max_shift_hours applies.
    """
    if db is None:
        with SessionLocal() as managed_db:
            return mark_stale(now_utc, threshold_hours=threshold_hours, db=managed_db)

    reference_utc = normalize_utc(now_utc)
    default_threshold = get_settings().stale_threshold_hours
    rows = db.scalars(
        select(Shift)
        .options(selectinload(Shift.organization))
        .where(Shift.status == ShiftStatus.OPEN)
        .order_by(Shift.clock_in_at.asc())
        .with_for_update(skip_locked=True)
    ).all()

    marked: list[Shift] = []
    for shift in rows:
        hours = threshold_hours
        if hours is None:
            hours = shift.organization.max_shift_hours if shift.organization else default_threshold
        if reference_utc - shift.clock_in_at > timedelta(hours=hours):
            shift.status = ShiftStatus.STALE
            shift.marked_stale_at = reference_utc
            marked.append(shift)

    db.commit()
    if marked:
        logger.info(
            "shifts_marked_stale",
            extra={"count": len(marked), "shift_ids": [shift.id for shift in marked]},
        )
        log_audit(
            db,
            actor_type=AuditActorType.SYSTEM,
            actor_id="stale_sweep",
            action="SHIFTS_MARKED_STALE",
            details={"shift_ids": [shift.id for shift in marked]},
        )
    return marked


def _lock_shift(db: Session, *, shift_id: int) -> Shift:
    shift = db.scalar(
        select(Shift)
        .options(selectinload(Shift.organization))
        .where(Shift.id == shift_id)
        .with_for_update()
    )
    if shift is None:
        raise NotFoundError("SHIFT_NOT_FOUND", "Shift not found.")
    return shift


def require_reason(reason: str | None) -> str:
    normalized = (reason or "").strip()
    min_length = get_settings().reason_min_length
    if len(normalized) < min_length:
        raise ValidationError("REASON_TOO_SHORT", f"Reason must be at least {min_length} characters.")
    return normalized


def resolve_stale(
    db: Session,
    *,
    shift_id: int,
    resolution: StaleResolution,
    reason: str,
    actual_clock_out_at: datetime | None = None,
    resolved_by_id: int | None = None,
    now_utc: datetime | None = None,
) -> Shift:
    settings = get_settings()
    reference_utc = normalize_utc(now_utc)
    shift = _lock_shift(db, shift_id=shift_id)
    if shift.status != ShiftStatus.STALE:
        raise ConflictError("SHIFT_NOT_STALE", "Only stale shifts can be resolved.")
    normalized_reason = require_reason(reason)

    if resolution == StaleResolution.FORGOT:
        clock_out_at = shift.clock_in_at + timedelta(minutes=settings.stale_forgot_nominal_minutes)
    else:
        if actual_clock_out_at is None:
            raise ValidationError("ACTUAL_CLOCK_OUT_REQUIRED", "Actual clock-out time is required.")
        clock_out_at = normalize_utc(actual_clock_out_at)
        if clock_out_at <= shift.clock_in_at:
            raise ValidationError("REVISION_BEFORE_CLOCK_IN", "Clock-out must be after clock-in.")
        if clock_out_at > reference_utc:
            raise ValidationError("REVISION_IN_FUTURE", "Clock-out cannot be in the future.")
        if clock_out_at - shift.clock_in_at > timedelta(hours=settings.max_shift_hours):
            raise ValidationError(
                "REVISION_OUT_OF_POLICY",
                f"Shift cannot be longer than {settings.max_shift_hours} hours.",
            )

    shift.original_clock_out_at = shift.clock_out_at
    _apply_clock_out(shift, clock_out_at=clock_out_at, policy=BreakPolicy.for_organization(shift.organization))
    shift.stale_resolution = resolution
    shift.revision_reason = normalized_reason
    shift.revision_requested_by_id = resolved_by_id
    shift.status = ShiftStatus.PENDING_REVISION
    db.commit()
    db.refresh(shift)

    log_audit(
        db,
        actor_type=AuditActorType.EMPLOYEE,
        actor_id=resolved_by_id or shift.employee_id,
        action="SHIFT_STALE_RESOLVED",
        organization_id=shift.organization_id,
        entity_type="shift",
        entity_id=shift.id,
        details={"resolution": resolution.value},
    )
    return shift


def approve_revision(
    db: Session,
    *,
    shift_id: int,
    reviewer_id: int,
    now_utc: datetime | None = None,
) -> Shift:
    shift = _lock_shift(db, shift_id=shift_id)
    if shift.status != ShiftStatus.PENDING_REVISION:
        raise ConflictError("SHIFT_NOT_PENDING_REVISION", "Shift has no pending revision.")

    shift.status = ShiftStatus.REVISED
    shift.is_revised = True
    shift.revised_by_id = reviewer_id
    shift.revised_at = normalize_utc(now_utc)
    db.commit()
    db.refresh(shift)
    log_audit(
        db,
        actor_type=AuditActorType.MANAGER,
        actor_id=reviewer_id,
        action="SHIFT_REVISION_APPROVED",
        organization_id=shift.organization_id,
        entity_type="shift",
        entity_id=shift.id,
    )
    return shift


def reject_revision(
    db: Session,
    *,
    shift_id: int,
    reviewer_id: int,
    reason: str | None = None,
) -> Shift:
    shift = _lock_shift(db, shift_id=shift_id)
    if shift.status != ShiftStatus.PENDING_REVISION:
        raise ConflictError("SHIFT_NOT_PENDING_REVISION", "Shift has no pending revision.")

    shift.clock_out_at = shift.original_clock_out_at
    shift.duration_minutes = None
    shift.net_duration_minutes = None
    shift.break_minutes = 0
    shift.stale_resolution = None
    shift.revision_reason = (reason or "").strip() or None
    shift.status = ShiftStatus.STALE
    db.commit()
    db.refresh(shift)
    log_audit(
        db,
        actor_type=AuditActorType.MANAGER,
        actor_id=reviewer_id,
        action="SHIFT_REVISION_REJECTED",
        organization_id=shift.organization_id,
        entity_type="shift",
        entity_id=shift.id,
    )
    return shift


def list_stale_shifts(db: Session, *, organization_id: int) -> list[Shift]:
    return list(
        db.scalars(
            select(Shift)
            .where(
                Shift.organization_id == organization_id,
                Shift.status.in_((ShiftStatus.STALE, ShiftStatus.PENDING_REVISION)),
            )
            .order_by(Shift.clock_in_at.asc(), Shift.id.asc())
        ).all()
    )
