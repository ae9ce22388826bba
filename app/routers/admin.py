import logging

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from app.db import get_db
from app.schemas import (
    CheckInRequestRead,
    CheckInRequestReview,
    RevisionReviewRequest,
    ScheduleAssignmentCreate,
    ScheduleAssignmentRead,
    ScheduleTemplateCreate,
    ScheduleTemplateRead,
    ShiftRead,
    StaleSweepResponse,
    TickStatsResponse,
)
from app.security import require_cron_secret
from app.services.checkin_requests import expire_checkin_requests, review_checkin_request
from app.services.reminder_scheduler import run_reminder_tick, run_weekly_summary_tick
from app.services.schedules import create_assignment, create_template
from app.services.shifts import approve_revision, list_stale_shifts, mark_stale, reject_revision

router = APIRouter(tags=["admin"])
cron_logger = logging.getLogger("app.cron")


def _tag_manager(request: Request, *, manager_id: int) -> None:
    request.state.actor = "manager"
    request.state.actor_id = str(manager_id)


@router.get("/api/admin/shifts/stale", response_model=list[ShiftRead])
def list_stale_shifts_endpoint(
    organization_id: int = Query(ge=1),
    db: Session = Depends(get_db),
) -> list[ShiftRead]:
    return [ShiftRead.model_validate(shift) for shift in list_stale_shifts(db, organization_id=organization_id)]


@router.post("/api/admin/shifts/{shift_id}/approve-revision", response_model=ShiftRead)
def approve_revision_endpoint(
    shift_id: int,
    payload: RevisionReviewRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> ShiftRead:
    _tag_manager(request, manager_id=payload.reviewer_id)
    shift = approve_revision(db, shift_id=shift_id, reviewer_id=payload.reviewer_id)
    return ShiftRead.model_validate(shift)


@router.post("/api/admin/shifts/{shift_id}/reject-revision", response_model=ShiftRead)
def reject_revision_endpoint(
    shift_id: int,
    payload: RevisionReviewRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> ShiftRead:
    _tag_manager(request, manager_id=payload.reviewer_id)
    shift = reject_revision(db, shift_id=shift_id, reviewer_id=payload.reviewer_id, reason=payload.reason)
    return ShiftRead.model_validate(shift)


@router.post("/api/admin/requests/{request_id}/review", response_model=CheckInRequestRead)
def review_request_endpoint(
    request_id: int,
    payload: CheckInRequestReview,
    request: Request,
    db: Session = Depends(get_db),
) -> CheckInRequestRead:
    _tag_manager(request, manager_id=payload.reviewer_id)
    checkin_request = review_checkin_request(
        db,
        request_id=request_id,
        reviewer_id=payload.reviewer_id,
        approve=payload.approve,
        note=payload.note,
        denial_reason=payload.denial_reason,
    )
    return CheckInRequestRead.model_validate(checkin_request)


@router.post(
    "/api/admin/schedule-templates",
    response_model=ScheduleTemplateRead,
    status_code=status.HTTP_201_CREATED,
)
def create_schedule_template(
    payload: ScheduleTemplateCreate,
    db: Session = Depends(get_db),
) -> ScheduleTemplateRead:
    template = create_template(
        db,
        organization_id=payload.organization_id,
        name=payload.name,
        slots=payload.slots,
    )
    return ScheduleTemplateRead.model_validate(template)


@router.post(
    "/api/admin/schedule-assignments",
    response_model=ScheduleAssignmentRead,
    status_code=status.HTTP_201_CREATED,
)
def create_schedule_assignment(
    payload: ScheduleAssignmentCreate,
    db: Session = Depends(get_db),
) -> ScheduleAssignmentRead:
    assignment = create_assignment(
        db,
        template_id=payload.template_id,
        target=payload.target,
        effective_from=payload.effective_from,
        effective_until=payload.effective_until,
        actor_id=payload.actor_id,
    )
    return ScheduleAssignmentRead.model_validate(assignment)


@router.post(
    "/api/cron/check-notifications",
    response_model=TickStatsResponse,
    dependencies=[Depends(require_cron_secret)],
)
def cron_check_notifications(db: Session = Depends(get_db)) -> TickStatsResponse:
    stats = run_reminder_tick(db=db)
    return TickStatsResponse(**stats.to_dict())


@router.post(
    "/api/cron/weekly-summary",
    response_model=TickStatsResponse,
    dependencies=[Depends(require_cron_secret)],
)
def cron_weekly_summary(db: Session = Depends(get_db)) -> TickStatsResponse:
    stats = run_weekly_summary_tick(db=db)
    return TickStatsResponse(**stats.to_dict())


@router.post(
    "/api/cron/stale-sweep",
    response_model=StaleSweepResponse,
    dependencies=[Depends(require_cron_secret)],
)
def cron_stale_sweep(db: Session = Depends(get_db)) -> StaleSweepResponse:
    marked = mark_stale(db=db)
    expired = expire_checkin_requests(db=db)
    cron_logger.info(
        "stale_sweep_complete",
        extra={"marked_stale": len(marked), "expired_requests": len(expired)},
    )
    return StaleSweepResponse(marked_stale=len(marked), expired_requests=len(expired))
