from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from app.db import get_db
from app.errors import ApiError, NotFoundError
from app.models import Employee
from app.schemas import (
    CheckInRequestCreate,
    CheckInRequestRead,
    ClockInRequest,
    ClockOutRequest,
    PushTokenRegisterRequest,
    PushTokenResponse,
    PushTokenUnregisterRequest,
    ShiftRead,
    StaleResolutionRequest,
)
from app.services.checkin_requests import create_checkin_request
from app.services.notification_windows import normalize_utc
from app.services.push_notifications import deactivate_push_token, register_push_token
from app.services.shifts import clock_in, clock_out, get_open_shift, resolve_stale, verify_clock_location

router = APIRouter(tags=["attendance"])


def _tag_request(request: Request, *, employee_id: int) -> None:
    request.state.actor = "employee"
    request.state.actor_id = str(employee_id)
    request.state.employee_id = employee_id


@router.post("/api/shifts/clock-in", response_model=ShiftRead, status_code=status.HTTP_201_CREATED)
def clock_in_endpoint(
    payload: ClockInRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> ShiftRead:
    _tag_request(request, employee_id=payload.employee_id)
    employee = db.get(Employee, payload.employee_id)
    if employee is None or not employee.is_active:
        raise NotFoundError("EMPLOYEE_NOT_FOUND", "Employee not found.")

    clock_in_at = normalize_utc(payload.timestamp_utc)
    verification = None
    if payload.location is not None:
        verification = verify_clock_location(
            db,
            organization_id=employee.organization_id,
            location=payload.location,
            evaluated_at=clock_in_at,
        )
        request.state.location_status = "in_range" if verification.in_range else "out_of_range"

    if employee.organization.require_geofence:
        if payload.location is None:
            raise ApiError(
                status_code=422,
                code="LOCATION_REQUIRED",
                message="A location is required to clock in.",
            )
        if verification.zones_checked and not verification.in_range:
            raise ApiError(
                status_code=422,
                code="OUT_OF_GEOFENCE",
                message="You are outside every work location. Submit a time request instead.",
            )

    shift = clock_in(
        db,
        employee_id=payload.employee_id,
        location=payload.location,
        timestamp_utc=clock_in_at,
        location_id=payload.location_id,
        notes=payload.notes,
        device_info=payload.device_info,
        verification=verification,
    )
    return ShiftRead.model_validate(shift)


@router.post("/api/shifts/clock-out", response_model=ShiftRead)
def clock_out_endpoint(
    payload: ClockOutRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> ShiftRead:
    _tag_request(request, employee_id=payload.employee_id)
    shift = clock_out(
        db,
        employee_id=payload.employee_id,
        location=payload.location,
        timestamp_utc=payload.timestamp_utc,
        notes=payload.notes,
    )
    return ShiftRead.model_validate(shift)


@router.get("/api/shifts/current", response_model=ShiftRead | None)
def current_shift(
    request: Request,
    employee_id: int = Query(ge=1),
    db: Session = Depends(get_db),
) -> ShiftRead | None:
    _tag_request(request, employee_id=employee_id)
    shift = get_open_shift(db, employee_id=employee_id)
    if shift is None:
        return None
    return ShiftRead.model_validate(shift)


@router.post("/api/shifts/{shift_id}/resolve-stale", response_model=ShiftRead)
def resolve_stale_endpoint(
    shift_id: int,
    payload: StaleResolutionRequest,
    db: Session = Depends(get_db),
) -> ShiftRead:
    shift = resolve_stale(
        db,
        shift_id=shift_id,
        resolution=payload.resolution,
        reason=payload.reason,
        actual_clock_out_at=payload.actual_clock_out_at,
        resolved_by_id=payload.resolved_by_id,
    )
    return ShiftRead.model_validate(shift)


@router.post("/api/requests", response_model=CheckInRequestRead, status_code=status.HTTP_201_CREATED)
def create_request_endpoint(
    payload: CheckInRequestCreate,
    request: Request,
    db: Session = Depends(get_db),
) -> CheckInRequestRead:
    _tag_request(request, employee_id=payload.employee_id)
    checkin_request = create_checkin_request(
        db,
        employee_id=payload.employee_id,
        reason=payload.reason,
        location=payload.location,
        request_type=payload.request_type,
        requested_timestamp=payload.requested_timestamp,
    )
    return CheckInRequestRead.model_validate(checkin_request)


@router.post("/api/push-token", response_model=PushTokenResponse)
def register_push_token_endpoint(
    payload: PushTokenRegisterRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> PushTokenResponse:
    _tag_request(request, employee_id=payload.employee_id)
    row = register_push_token(
        db,
        employee_id=payload.employee_id,
        token=payload.token,
        platform=payload.platform,
        p256dh=payload.p256dh,
        auth=payload.auth,
    )
    return PushTokenResponse(ok=True, token_id=row.id, is_active=row.is_active)


@router.delete("/api/push-token", response_model=PushTokenResponse)
def unregister_push_token_endpoint(
    payload: PushTokenUnregisterRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> PushTokenResponse:
    _tag_request(request, employee_id=payload.employee_id)
    found = deactivate_push_token(db, employee_id=payload.employee_id, token=payload.token)
    return PushTokenResponse(ok=found, is_active=False)
