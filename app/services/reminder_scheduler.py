"""Minute-level reminder tick and weekly summaries.

Every logical notification owns one row in ``scheduled_notifications`` keyed by
``subtype:employee:slot:date``. The row is claimed with an insert that does
nothing on conflict, so repeated or concurrent ticks deliver at most once.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session, selectinload

from app.db import SessionLocal
from app.models import (
    Employee,
    LedgerStatus,
    Organization,
    ScheduledNotification,
    Shift,
    ShiftStatus,
)
from app.services.directory import list_active_employees, list_active_organization_ids, list_org_managers
from app.services.notification_windows import (
    NotificationWindow,
    classify_window,
    format_duration,
    local_midnight_utc,
    minutes_since_midnight,
    normalize_utc,
    occurrence_date,
    org_local_now,
    resolve_timezone,
    should_remind_clock_out,
    week_start_for,
)
from app.services.push_notifications import (
    NOTIFICATION_TYPE_CLOCK_IN_REMINDER,
    NOTIFICATION_TYPE_CLOCK_OUT_REMINDER,
    NOTIFICATION_TYPE_MANAGER_ALERT,
    NOTIFICATION_TYPE_WEEKLY_SUMMARY,
    PushTransport,
    send_notification,
)
from app.services.schedules import ResolvedSlot, SlotCheck, list_employee_assignments, resolve_candidates
from app.services.shifts import get_open_shift
from app.settings import get_settings

logger = logging.getLogger("app.scheduler")

SUBTYPE_CLOCK_OUT_REMINDER = "clock_out_reminder"
SUBTYPE_WEEKLY_SUMMARY = "weekly_summary"
SKIP_REASON_ALREADY_CLOCKED_IN = "already_clocked_in"

_CLOCK_IN_SUBTYPES: dict[NotificationWindow, str] = {
    NotificationWindow.BEFORE_15: "clock_in_before_15",
    NotificationWindow.BEFORE_5: "clock_in_before_5",
    NotificationWindow.AT_TIME: "clock_in_at_time",
    NotificationWindow.AFTER_15: "clock_in_after_15",
}
_WINDOW_OFFSET_MINUTES: dict[NotificationWindow, int] = {
    NotificationWindow.BEFORE_15: -15,
    NotificationWindow.BEFORE_5: -5,
    NotificationWindow.AT_TIME: 0,
    NotificationWindow.AFTER_15: 15,
}


@dataclass(slots=True)
class TickStats:
    processed: int = 0
    sent: int = 0
    skipped: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "sent": self.sent,
            "skipped": self.skipped,
            "errors": self.errors,
        }


@dataclass(frozen=True, slots=True)
class LedgerKey:
    subtype: str
    notification_type: str
    employee_id: int
    organization_id: int
    slot_id: int | None
    local_date: date

    @property
    def idempotency_key(self) -> str:
        slot_part = str(self.slot_id) if self.slot_id is not None else "none"
        return f"{self.subtype}:{self.employee_id}:{slot_part}:{self.local_date.isoformat()}"


def _insert_ledger_row_if_absent(db: Session, values: dict[str, Any]) -> int | None:
    dialect_name = db.get_bind().dialect.name
    if dialect_name == "postgresql":
        stmt = postgresql_insert(ScheduledNotification)
    elif dialect_name == "sqlite":
        stmt = sqlite_insert(ScheduledNotification)
    else:
        raise RuntimeError(f"Unsupported database dialect for ledger writes: {dialect_name}")

    stmt = (
        stmt.values(**values)
        .on_conflict_do_nothing(index_elements=[ScheduledNotification.idempotency_key])
        .returning(ScheduledNotification.id)
    )
    return db.execute(stmt).scalar_one_or_none()


def claim_ledger_entry(
    db: Session,
    *,
    key: LedgerKey,
    scheduled_for: datetime,
    now_utc: datetime,
    status: LedgerStatus = LedgerStatus.PENDING,
    skip_reason: str | None = None,
) -> int | None:
    """Insert the ledger row for ``key``; returns its id only when this caller owns it.

    A FAILED row is taken over again by a PENDING claim, atomically.
    """
    entry_id = _insert_ledger_row_if_absent(
        db,
        {
            "idempotency_key": key.idempotency_key,
            "employee_id": key.employee_id,
            "organization_id": key.organization_id,
            "schedule_slot_id": key.slot_id,
            "notification_type": key.notification_type,
            "notification_subtype": key.subtype,
            "local_date": key.local_date,
            "status": status,
            "scheduled_for": scheduled_for,
            "processed_at": now_utc if status == LedgerStatus.SKIPPED else None,
            "skip_reason": skip_reason,
            "attempts": 1,
            "created_at": now_utc,
        },
    )
    if entry_id is None and status == LedgerStatus.PENDING:
        result = db.execute(
            update(ScheduledNotification)
            .where(
                ScheduledNotification.idempotency_key == key.idempotency_key,
                ScheduledNotification.status == LedgerStatus.FAILED,
            )
            .values(
                status=LedgerStatus.PENDING,
                attempts=ScheduledNotification.attempts + 1,
                last_error=None,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            entry_id = db.scalar(
                select(ScheduledNotification.id).where(
                    ScheduledNotification.idempotency_key == key.idempotency_key
                )
            )
    db.commit()
    return entry_id


def _mark_entry_failed(db: Session, *, entry_id: int, error: Exception, now_utc: datetime) -> None:
    try:
        entry = db.get(ScheduledNotification, entry_id)
        if entry is None:
            return
        entry.status = LedgerStatus.FAILED
        entry.last_error = str(error)[:4000]
        entry.processed_at = now_utc
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("ledger_mark_failed_error", extra={"entry_id": entry_id})


def _deliver_for_entry(
    db: Session,
    *,
    entry_id: int,
    key: LedgerKey,
    title: str,
    body: str,
    data: dict[str, Any],
    transport: PushTransport | None,
    now_utc: datetime,
) -> None:
    try:
        result = send_notification(
            db,
            employee_id=key.employee_id,
            organization_id=key.organization_id,
            notification_type=key.notification_type,
            title=title,
            body=body,
            data=data,
            transport=transport,
            commit=False,
        )
        entry = db.get(ScheduledNotification, entry_id)
        entry.status = LedgerStatus.SENT
        entry.processed_at = now_utc
        entry.notification_id = result.notification_id
        db.commit()
    except Exception as exc:
        db.rollback()
        _mark_entry_failed(db, entry_id=entry_id, error=exc, now_utc=now_utc)
        raise


def _process_ledgered(
    db: Session,
    stats: TickStats,
    *,
    key: LedgerKey,
    scheduled_for: datetime,
    now_utc: datetime,
    build_message: Callable[[], tuple[str, str, dict[str, Any]]],
    transport: PushTransport | None,
) -> bool:
    entry_id = claim_ledger_entry(db, key=key, scheduled_for=scheduled_for, now_utc=now_utc)
    if entry_id is None:
        stats.skipped += 1
        return False

    title, body, data = build_message()
    _deliver_for_entry(
        db,
        entry_id=entry_id,
        key=key,
        title=title,
        body=body,
        data=data,
        transport=transport,
        now_utc=now_utc,
    )
    stats.sent += 1
    logger.info(
        "reminder_sent",
        extra={
            "idempotency_key": key.idempotency_key,
            "employee_id": key.employee_id,
            "organization_id": key.organization_id,
        },
    )
    return True


def _hhmm(value: Any) -> str:
    return value.strftime("%H:%M")


def build_clock_in_message(window: NotificationWindow, *, template_name: str, start_time: str) -> tuple[str, str]:
    if window == NotificationWindow.BEFORE_15:
        return "Shift Starting Soon", f"Your {template_name} shift starts at {start_time}. Get ready!"
    if window == NotificationWindow.BEFORE_5:
        return "Shift Starts in 5 Minutes", f"Your {template_name} shift starts at {start_time}. Time to clock in!"
    if window == NotificationWindow.AT_TIME:
        return (
            "Your Shift Has Started",
            f"Your {template_name} shift started at {start_time}. Please clock in now.",
        )
    return (
        "You're Late!",
        f"Your {template_name} shift started at {start_time}. "
        "You're 15 minutes late. Please clock in immediately.",
    )


def _alert_managers(
    db: Session,
    stats: TickStats,
    *,
    employee: Employee,
    candidate: ResolvedSlot,
    transport: PushTransport | None,
) -> None:
    for manager in list_org_managers(db, organization_id=employee.organization_id):
        if manager.id == employee.id:
            continue
        try:
            send_notification(
                db,
                employee_id=manager.id,
                organization_id=employee.organization_id,
                notification_type=NOTIFICATION_TYPE_MANAGER_ALERT,
                title="Employee Late Alert",
                body=(
                    f"{employee.full_name} is 15+ minutes late for their "
                    f"{candidate.template.name} shift ({_hhmm(candidate.slot.start_time)})."
                ),
                data={"screen": "time-entries", "employee_id": employee.id},
                transport=transport,
            )
        except Exception:
            db.rollback()
            stats.errors += 1
            logger.exception(
                "manager_alert_failed",
                extra={"manager_id": manager.id, "employee_id": employee.id},
            )


def _process_clock_in_candidate(
    db: Session,
    stats: TickStats,
    *,
    employee: Employee,
    candidate: ResolvedSlot,
    window: NotificationWindow,
    has_open_shift: bool,
    tz_name: str,
    now_utc: datetime,
    transport: PushTransport | None,
) -> None:
    tz = resolve_timezone(tz_name)
    key = LedgerKey(
        subtype=_CLOCK_IN_SUBTYPES[window],
        notification_type=NOTIFICATION_TYPE_CLOCK_IN_REMINDER,
        employee_id=employee.id,
        organization_id=employee.organization_id,
        slot_id=candidate.slot.id,
        local_date=candidate.start_date,
    )
    start_utc = candidate.start_local(tz).astimezone(timezone.utc)
    scheduled_for = start_utc + timedelta(minutes=_WINDOW_OFFSET_MINUTES[window])

    if has_open_shift:
        claim_ledger_entry(
            db,
            key=key,
            scheduled_for=scheduled_for,
            now_utc=now_utc,
            status=LedgerStatus.SKIPPED,
            skip_reason=SKIP_REASON_ALREADY_CLOCKED_IN,
        )
        stats.skipped += 1
        return

    template_name = candidate.template.name
    start_time = _hhmm(candidate.slot.start_time)

    def build_message() -> tuple[str, str, dict[str, Any]]:
        title, body = build_clock_in_message(window, template_name=template_name, start_time=start_time)
        data = {
            "screen": "clock",
            "slot_id": candidate.slot.id,
            "window": window.value,
            "shift_date": candidate.start_date.isoformat(),
        }
        return title, body, data

    delivered = _process_ledgered(
        db,
        stats,
        key=key,
        scheduled_for=scheduled_for,
        now_utc=now_utc,
        build_message=build_message,
        transport=transport,
    )
    if delivered and window == NotificationWindow.AFTER_15:
        _alert_managers(db, stats, employee=employee, candidate=candidate, transport=transport)


def _run_clock_in_reminders(
    db: Session,
    stats: TickStats,
    *,
    organization: Organization,
    now_utc: datetime,
    transport: PushTransport | None,
) -> None:
    local_now = org_local_now(organization.timezone, now_utc)
    now_minutes = minutes_since_midnight(local_now)
    today = local_now.date()
    candidate_days = (today - timedelta(days=1), today, today + timedelta(days=1))

    for employee in list_active_employees(db, organization_id=organization.id):
        employee_id = employee.id
        try:
            assignments = list_employee_assignments(db, employee=employee)
            if not assignments:
                continue
            due: list[tuple[ResolvedSlot, NotificationWindow]] = []
            for day in candidate_days:
                for candidate in resolve_candidates(
                    db,
                    employee=employee,
                    day=day,
                    check=SlotCheck.CLOCK_IN,
                    assignments=assignments,
                ):
                    start_minutes = minutes_since_midnight(candidate.slot.start_time)
                    window = classify_window(now_minutes, start_minutes)
                    if window is None:
                        continue
                    if occurrence_date(local_now, start_minutes) != candidate.start_date:
                        continue
                    due.append((candidate, window))
            if not due:
                continue
            has_open_shift = get_open_shift(db, employee_id=employee_id) is not None
        except Exception:
            db.rollback()
            stats.errors += 1
            logger.exception("clock_in_resolution_failed", extra={"employee_id": employee_id})
            continue

        for candidate, window in due:
            stats.processed += 1
            try:
                _process_clock_in_candidate(
                    db,
                    stats,
                    employee=employee,
                    candidate=candidate,
                    window=window,
                    has_open_shift=has_open_shift,
                    tz_name=organization.timezone,
                    now_utc=now_utc,
                    transport=transport,
                )
            except Exception:
                db.rollback()
                stats.errors += 1
                logger.exception(
                    "clock_in_reminder_failed",
                    extra={"employee_id": employee_id, "slot_id": candidate.slot.id, "window": window.value},
                )


def _explaining_slot(
    db: Session,
    *,
    employee: Employee,
    shift: Shift,
    local_today: date,
    tz: ZoneInfo,
) -> ResolvedSlot | None:
    """The slot whose local start lies nearest to the shift's clock-in.

    A clock-in shortly before midnight belongs to a slot starting the next
    day, so the pool also covers the day after the shift date.
    """
    assignments = list_employee_assignments(db, employee=employee)
    pool = resolve_candidates(
        db,
        employee=employee,
        day=local_today,
        check=SlotCheck.CLOCK_OUT,
        assignments=assignments,
    )
    for day in (shift.shift_date, shift.shift_date + timedelta(days=1)):
        pool.extend(
            resolve_candidates(
                db,
                employee=employee,
                day=day,
                check=SlotCheck.CLOCK_IN,
                assignments=assignments,
            )
        )
    if not pool:
        return None
    clock_in_at = normalize_utc(shift.clock_in_at)
    return min(pool, key=lambda candidate: abs(candidate.start_local(tz) - clock_in_at))


def _run_clock_out_reminders(
    db: Session,
    stats: TickStats,
    *,
    organization: Organization,
    now_utc: datetime,
    transport: PushTransport | None,
) -> None:
    local_now = org_local_now(organization.timezone, now_utc)
    now_minutes = minutes_since_midnight(local_now)
    tz = resolve_timezone(organization.timezone)

    open_shifts = db.scalars(
        select(Shift)
        .options(selectinload(Shift.employee))
        .where(Shift.organization_id == organization.id, Shift.status == ShiftStatus.OPEN)
        .order_by(Shift.id.asc())
    ).all()

    for shift in open_shifts:
        shift_id = shift.id
        try:
            employee = shift.employee
            if employee is None or not employee.is_active:
                continue
            candidate = _explaining_slot(
                db,
                employee=employee,
                shift=shift,
                local_today=local_now.date(),
                tz=tz,
            )
            if candidate is None:
                continue
            end_minutes = minutes_since_midnight(candidate.slot.end_time)
            if not should_remind_clock_out(now_minutes, end_minutes):
                continue
            if occurrence_date(local_now, end_minutes) != candidate.end_date:
                continue

            stats.processed += 1
            key = LedgerKey(
                subtype=SUBTYPE_CLOCK_OUT_REMINDER,
                notification_type=NOTIFICATION_TYPE_CLOCK_OUT_REMINDER,
                employee_id=employee.id,
                organization_id=organization.id,
                slot_id=candidate.slot.id,
                local_date=candidate.end_date,
            )
            template_name = candidate.template.name
            end_time = _hhmm(candidate.slot.end_time)

            def build_message() -> tuple[str, str, dict[str, Any]]:
                return (
                    "Did You Forget to Clock Out?",
                    f"Your {template_name} shift ended at {end_time}. Don't forget to clock out!",
                    {"screen": "clock", "shift_id": shift_id},
                )

            _process_ledgered(
                db,
                stats,
                key=key,
                scheduled_for=candidate.end_local(tz).astimezone(timezone.utc) + timedelta(minutes=15),
                now_utc=now_utc,
                build_message=build_message,
                transport=transport,
            )
        except Exception:
            db.rollback()
            stats.errors += 1
            logger.exception("clock_out_reminder_failed", extra={"shift_id": shift_id})


def run_reminder_tick(
    now_utc: datetime | None = None,
    *,
    db: Session | None = None,
    transport: PushTransport | None = None,
) -> TickStats:
    if db is None:
        with SessionLocal() as managed_db:
            return run_reminder_tick(now_utc, db=managed_db, transport=transport)

    reference_utc = normalize_utc(now_utc).replace(second=0, microsecond=0)
    stats = TickStats()
    for organization_id in list_active_organization_ids(db):
        try:
            organization = db.get(Organization, organization_id)
            _run_clock_in_reminders(db, stats, organization=organization, now_utc=reference_utc, transport=transport)
            _run_clock_out_reminders(db, stats, organization=organization, now_utc=reference_utc, transport=transport)
        except Exception:
            db.rollback()
            stats.errors += 1
            logger.exception("reminder_tick_organization_failed", extra={"organization_id": organization_id})

    logger.info("reminder_tick_complete", extra={"now_utc": reference_utc.isoformat(), **stats.to_dict()})
    return stats


@dataclass(frozen=True, slots=True)
class WeeklyTotals:
    total_minutes: int
    shift_count: int

    @property
    def average_minutes(self) -> int:
        if self.shift_count == 0:
            return 0
        return round(self.total_minutes / self.shift_count)


def _net_minutes(shift: Shift) -> int:
    if shift.net_duration_minutes is not None:
        return max(0, shift.net_duration_minutes)
    return max(0, (shift.duration_minutes or 0) - (shift.break_minutes or 0))


def aggregate_weekly_totals(
    db: Session,
    *,
    organization_id: int,
    period_start_utc: datetime,
    period_end_utc: datetime,
) -> dict[int, WeeklyTotals]:
    rows = db.scalars(
        select(Shift).where(
            Shift.organization_id == organization_id,
            Shift.status.in_((ShiftStatus.CLOSED, ShiftStatus.REVISED)),
            Shift.clock_out_at.is_not(None),
            Shift.clock_in_at >= period_start_utc,
            Shift.clock_in_at < period_end_utc,
        )
    ).all()

    minutes: dict[int, int] = {}
    counts: dict[int, int] = {}
    for shift in rows:
        minutes[shift.employee_id] = minutes.get(shift.employee_id, 0) + _net_minutes(shift)
        counts[shift.employee_id] = counts.get(shift.employee_id, 0) + 1
    return {
        employee_id: WeeklyTotals(total_minutes=minutes[employee_id], shift_count=counts[employee_id])
        for employee_id in counts
    }


def _week_range_label(week_start: date, week_end: date) -> str:
    return f"{week_start:%b} {week_start.day} - {week_end:%b} {week_end.day}"


def build_weekly_summary_message(
    *,
    employee_name: str,
    totals: WeeklyTotals,
    week_start: date,
    week_end: date,
    overtime_threshold_hours: int,
) -> str:
    name = employee_name.strip() or "there"
    lines = [
        f"Hi {name}! Here's your week in review ({_week_range_label(week_start, week_end)}):",
        "",
        f"Total hours: {format_duration(totals.total_minutes)}",
        f"Shifts completed: {totals.shift_count}",
        f"Average shift: {format_duration(totals.average_minutes)}",
    ]
    overtime_minutes = totals.total_minutes - overtime_threshold_hours * 60
    if overtime_minutes > 0:
        lines.append(f"Overtime: {format_duration(overtime_minutes)}")
    return "\n".join(lines)


def _run_weekly_summaries(
    db: Session,
    stats: TickStats,
    *,
    organization: Organization,
    now_utc: datetime,
    transport: PushTransport | None,
) -> None:
    local_now = org_local_now(organization.timezone, now_utc)
    boundary_day = week_start_for(local_now.date(), organization.week_start_day)
    boundary_utc = local_midnight_utc(organization.timezone, boundary_day)
    if now_utc - boundary_utc >= timedelta(hours=get_settings().weekly_summary_window_hours):
        return

    period_start_day = boundary_day - timedelta(days=7)
    totals_by_employee = aggregate_weekly_totals(
        db,
        organization_id=organization.id,
        period_start_utc=local_midnight_utc(organization.timezone, period_start_day),
        period_end_utc=boundary_utc,
    )
    week_end_day = boundary_day - timedelta(days=1)

    for employee in list_active_employees(db, organization_id=organization.id):
        totals = totals_by_employee.get(employee.id)
        if totals is None or totals.shift_count == 0:
            continue

        employee_id = employee.id
        employee_name = employee.full_name
        stats.processed += 1
        key = LedgerKey(
            subtype=SUBTYPE_WEEKLY_SUMMARY,
            notification_type=NOTIFICATION_TYPE_WEEKLY_SUMMARY,
            employee_id=employee_id,
            organization_id=organization.id,
            slot_id=None,
            local_date=boundary_day,
        )

        def build_message() -> tuple[str, str, dict[str, Any]]:
            body = build_weekly_summary_message(
                employee_name=employee_name,
                totals=totals,
                week_start=period_start_day,
                week_end=week_end_day,
                overtime_threshold_hours=organization.overtime_threshold_hours,
            )
            data = {
                "screen": "history",
                "week_start": period_start_day.isoformat(),
                "week_end": week_end_day.isoformat(),
                "total_minutes": totals.total_minutes,
                "shift_count": totals.shift_count,
            }
            return "Your Weekly Summary", body, data

        try:
            _process_ledgered(
                db,
                stats,
                key=key,
                scheduled_for=boundary_utc,
                now_utc=now_utc,
                build_message=build_message,
                transport=transport,
            )
        except Exception:
            db.rollback()
            stats.errors += 1
            logger.exception("weekly_summary_failed", extra={"employee_id": employee_id})


def run_weekly_summary_tick(
    now_utc: datetime | None = None,
    *,
    db: Session | None = None,
    transport: PushTransport | None = None,
) -> TickStats:
    if db is None:
        with SessionLocal() as managed_db:
            return run_weekly_summary_tick(now_utc, db=managed_db, transport=transport)

    reference_utc = normalize_utc(now_utc)
    stats = TickStats()
    for organization_id in list_active_organization_ids(db):
        try:
            organization = db.get(Organization, organization_id)
            _run_weekly_summaries(db, stats, organization=organization, now_utc=reference_utc, transport=transport)
        except Exception:
            db.rollback()
            stats.errors += 1
            logger.exception("weekly_summary_organization_failed", extra={"organization_id": organization_id})

    logger.info("weekly_summary_tick_complete", extra={"now_utc": reference_utc.isoformat(), **stats.to_dict()})
    return stats
