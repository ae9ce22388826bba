from __future__ import annotations

import enum
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session, selectinload

from app.audit import log_audit
from app.errors import ConflictError, NotFoundError, ValidationError
from app.models import (
    AuditActorType,
    Employee,
    ScheduleAssignment,
    ScheduleSlot,
    ScheduleTemplate,
    Team,
    TeamMember,
)
from app.payloads import AssignmentTarget, EmployeeTarget, TeamTarget
from app.schemas import ScheduleSlotCreate


class SlotCheck(str, enum.Enum):
    CLOCK_IN = "CLOCK_IN"
    CLOCK_OUT = "CLOCK_OUT"


class DayRole(str, enum.Enum):
    SAME_DAY = "SAME_DAY"
    OVERNIGHT_FROM_PREVIOUS_DAY = "OVERNIGHT_FROM_PREVIOUS_DAY"
    OVERNIGHT_STARTING_TODAY = "OVERNIGHT_STARTING_TODAY"


# Individual assignments govern over team assignments.
_TARGET_PRIORITY: dict[str, int] = {
    "employee": 200,
    "team": 100,
}


@dataclass(frozen=True, slots=True)
class ResolvedSlot:
    slot: ScheduleSlot
    assignment: ScheduleAssignment
    day_role: DayRole
    start_date: date

    @property
    def template(self) -> ScheduleTemplate:
        return self.assignment.template

    @property
    def end_date(self) -> date:
        if self.slot.crosses_midnight:
            return self.start_date + timedelta(days=1)
        return self.start_date

    @property
    def via_team(self) -> bool:
        return self.assignment.team_id is not None

    def start_local(self, tz: ZoneInfo) -> datetime:
        return datetime.combine(self.start_date, self.slot.start_time, tzinfo=tz)

    def end_local(self, tz: ZoneInfo) -> datetime:
        return datetime.combine(self.end_date, self.slot.end_time, tzinfo=tz)


def resolve_best_assignment_for_day(
    assignments: Sequence[ScheduleAssignment],
    *,
    day: date,
) -> ScheduleAssignment | None:
    applicable = [item for item in assignments if item.is_active and item.covers(day)]
    if not applicable:
        return None

    applicable.sort(
        key=lambda item: (
            -_TARGET_PRIORITY[item.target.kind],
            item.team_id or 0,
            item.id,
        ),
    )
    return applicable[0]


def list_employee_assignments(db: Session, *, employee: Employee) -> list[ScheduleAssignment]:
    team_ids = select(TeamMember.team_id).where(TeamMember.employee_id == employee.id)
    stmt = (
        select(ScheduleAssignment)
        .join(ScheduleTemplate, ScheduleTemplate.id == ScheduleAssignment.template_id)
        .options(selectinload(ScheduleAssignment.template).selectinload(ScheduleTemplate.slots))
        .where(
            ScheduleAssignment.is_active.is_(True),
            ScheduleTemplate.is_active.is_(True),
            ScheduleTemplate.organization_id == employee.organization_id,
            or_(
                ScheduleAssignment.employee_id == employee.id,
                ScheduleAssignment.team_id.in_(team_ids),
            ),
        )
        .order_by(ScheduleAssignment.id.asc())
    )
    return list(db.scalars(stmt).all())


def resolve_assignment(
    db: Session,
    *,
    employee: Employee,
    day: date,
    assignments: Sequence[ScheduleAssignment] | None = None,
) -> ScheduleAssignment | None:
    if assignments is None:
        assignments = list_employee_assignments(db, employee=employee)
    return resolve_best_assignment_for_day(assignments, day=day)


def _slots_on_weekday(assignment: ScheduleAssignment | None, day: date) -> list[ScheduleSlot]:
    if assignment is None:
        return []
    slots = [slot for slot in assignment.template.slots if slot.weekday == day.weekday()]
    slots.sort(key=lambda slot: (slot.sort_order, slot.start_time, slot.id))
    return slots


def resolve_slots_for_day(db: Session, *, employee: Employee, day: date) -> list[ScheduleSlot]:
    return _slots_on_weekday(resolve_assignment(db, employee=employee, day=day), day)


def resolve_candidates(
    db: Session,
    *,
    employee: Employee,
    day: date,
    check: SlotCheck,
    assignments: Sequence[ScheduleAssignment] | None = None,
) -> list[ResolvedSlot]:
    """Slots relevant to ``day`` for the check, ordered by day role.

    CLOCK_OUT: same-day, overnight from the previous day, overnight starting today.
    CLOCK_IN: same-day, overnight starting today.
    """
    if assignments is None:
        assignments = list_employee_assignments(db, employee=employee)

    today_assignment = resolve_best_assignment_for_day(assignments, day=day)
    today_slots = _slots_on_weekday(today_assignment, day)

    candidates = [
        ResolvedSlot(slot=slot, assignment=today_assignment, day_role=DayRole.SAME_DAY, start_date=day)
        for slot in today_slots
        if not slot.crosses_midnight
    ]

    if check == SlotCheck.CLOCK_OUT:
        previous_day = day - timedelta(days=1)
        previous_assignment = resolve_best_assignment_for_day(assignments, day=previous_day)
        candidates.extend(
            ResolvedSlot(
                slot=slot,
                assignment=previous_assignment,
                day_role=DayRole.OVERNIGHT_FROM_PREVIOUS_DAY,
                start_date=previous_day,
            )
            for slot in _slots_on_weekday(previous_assignment, previous_day)
            if slot.crosses_midnight
        )

    candidates.extend(
        ResolvedSlot(
            slot=slot,
            assignment=today_assignment,
            day_role=DayRole.OVERNIGHT_STARTING_TODAY,
            start_date=day,
        )
        for slot in today_slots
        if slot.crosses_midnight
    )
    return candidates


def resolve(
    db: Session,
    *,
    employee_id: int,
    organization_id: int,
    day: date,
    check: SlotCheck = SlotCheck.CLOCK_OUT,
) -> ResolvedSlot | None:
    employee = db.get(Employee, employee_id)
    if employee is None or not employee.is_active or employee.organization_id != organization_id:
        return None
    candidates = resolve_candidates(db, employee=employee, day=day, check=check)
    return candidates[0] if candidates else None


def _crosses_midnight(start: time, end: time) -> bool:
    return end <= start


def create_template(
    db: Session,
    *,
    organization_id: int,
    name: str,
    slots: Sequence[ScheduleSlotCreate],
    actor_id: int | None = None,
) -> ScheduleTemplate:
    template = ScheduleTemplate(organization_id=organization_id, name=name.strip(), is_active=True)
    for index, slot_in in enumerate(slots):
        if slot_in.start_time == slot_in.end_time:
            raise ValidationError("INVALID_SLOT", "Slot start and end times must differ.")
        crosses = _crosses_midnight(slot_in.start_time, slot_in.end_time)
        if slot_in.crosses_midnight is not None and slot_in.crosses_midnight != crosses:
            raise ValidationError(
                "INVALID_SLOT",
                "crosses_midnight must be set exactly when the slot ends at or before its start time.",
            )
        template.slots.append(
            ScheduleSlot(
                weekday=slot_in.weekday,
                start_time=slot_in.start_time,
                end_time=slot_in.end_time,
                crosses_midnight=crosses,
                break_minutes=slot_in.break_minutes,
                sort_order=index,
            )
        )

    db.add(template)
    db.commit()
    db.refresh(template)
    log_audit(
        db,
        actor_type=AuditActorType.MANAGER if actor_id else AuditActorType.SYSTEM,
        actor_id=actor_id or "system",
        action="SCHEDULE_TEMPLATE_CREATED",
        organization_id=organization_id,
        entity_type="schedule_template",
        entity_id=template.id,
        details={"slots": len(template.slots)},
    )
    return template


def _ranges_overlap(
    first_from: date | None,
    first_until: date | None,
    second_from: date | None,
    second_until: date | None,
) -> bool:
    if first_from is not None and second_until is not None and first_from > second_until:
        return False
    if second_from is not None and first_until is not None and second_from > first_until:
        return False
    return True


def _overlapping(
    assignments: Sequence[ScheduleAssignment],
    *,
    effective_from: date | None,
    effective_until: date | None,
) -> list[ScheduleAssignment]:
    return [
        item
        for item in assignments
        if _ranges_overlap(item.effective_from, item.effective_until, effective_from, effective_until)
    ]


def _active_assignments(db: Session, *clauses) -> list[ScheduleAssignment]:  # type: ignore[no-untyped-def]
    return list(
        db.scalars(
            select(ScheduleAssignment)
            .join(ScheduleTemplate, ScheduleTemplate.id == ScheduleAssignment.template_id)
            .where(
                ScheduleAssignment.is_active.is_(True),
                ScheduleTemplate.is_active.is_(True),
                and_(*clauses),
            )
        ).all()
    )


def _ensure_no_scope_conflict(
    db: Session,
    *,
    target: AssignmentTarget,
    effective_from: date | None,
    effective_until: date | None,
) -> None:
    if isinstance(target, EmployeeTarget):
        same_target = _active_assignments(db, ScheduleAssignment.employee_id == target.employee_id)
        team_ids = select(TeamMember.team_id).where(TeamMember.employee_id == target.employee_id)
        other_scope = _active_assignments(db, ScheduleAssignment.team_id.in_(team_ids))
    else:
        same_target = _active_assignments(db, ScheduleAssignment.team_id == target.team_id)
        member_ids = select(TeamMember.employee_id).where(TeamMember.team_id == target.team_id)
        other_scope = _active_assignments(db, ScheduleAssignment.employee_id.in_(member_ids))

    if _overlapping(same_target, effective_from=effective_from, effective_until=effective_until):
        raise ConflictError(
            "ASSIGNMENT_OVERLAP",
            "An active assignment already covers this target for the requested dates.",
        )
    if _overlapping(other_scope, effective_from=effective_from, effective_until=effective_until):
        raise ConflictError(
            "ASSIGNMENT_SCOPE_CONFLICT",
            "Employee would be scheduled by both an individual and a team assignment.",
        )


def create_assignment(
    db: Session,
    *,
    template_id: int,
    target: AssignmentTarget,
    effective_from: date | None = None,
    effective_until: date | None = None,
    actor_id: int | None = None,
) -> ScheduleAssignment:
    template = db.get(ScheduleTemplate, template_id)
    if template is None or not template.is_active:
        raise NotFoundError("TEMPLATE_NOT_FOUND", "Schedule template not found.")
    if effective_from is not None and effective_until is not None and effective_until < effective_from:
        raise ValidationError("INVALID_EFFECTIVE_RANGE", "effective_until must be on or after effective_from.")

    if isinstance(target, TeamTarget):
        team = db.get(Team, target.team_id)
        if team is None or team.organization_id != template.organization_id:
            raise NotFoundError("TEAM_NOT_FOUND", "Team not found.")
    else:
        employee = db.get(Employee, target.employee_id)
        if employee is None or employee.organization_id != template.organization_id:
            raise NotFoundError("EMPLOYEE_NOT_FOUND", "Employee not found.")

    _ensure_no_scope_conflict(
        db,
        target=target,
        effective_from=effective_from,
        effective_until=effective_until,
    )

    assignment = ScheduleAssignment(
        template_id=template.id,
        effective_from=effective_from,
        effective_until=effective_until,
        is_active=True,
    )
    assignment.target = target
    db.add(assignment)
    db.commit()
    db.refresh(assignment)
    log_audit(
        db,
        actor_type=AuditActorType.MANAGER if actor_id else AuditActorType.SYSTEM,
        actor_id=actor_id or "system",
        action="SCHEDULE_ASSIGNMENT_CREATED",
        organization_id=template.organization_id,
        entity_type="schedule_assignment",
        entity_id=assignment.id,
        details={"target": target.model_dump(), "template_id": template.id},
    )
    return assignment
