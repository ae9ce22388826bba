from datetime import date, datetime, time

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.models import (
    CheckInRequestStatus,
    CheckInRequestType,
    PushPlatform,
    ShiftStatus,
    StaleResolution,
)
from app.payloads import AssignmentTarget, CapturedLocation, DeviceInfo, GeofenceVerification


class ClockInRequest(BaseModel):
    employee_id: int = Field(ge=1)
    location: CapturedLocation | None = None
    location_id: int | None = Field(default=None, ge=1)
    timestamp_utc: datetime | None = None
    notes: str | None = Field(default=None, max_length=1000)
    device_info: DeviceInfo | None = None


class ClockOutRequest(BaseModel):
    employee_id: int = Field(ge=1)
    location: CapturedLocation | None = None
    timestamp_utc: datetime | None = None
    notes: str | None = Field(default=None, max_length=1000)


class ShiftRead(BaseModel):
    id: int
    employee_id: int
    organization_id: int
    location_id: int | None
    status: ShiftStatus
    clock_in_at: datetime
    clock_in_location: CapturedLocation | None = None
    clock_in_verification: GeofenceVerification | None = None
    clock_out_at: datetime | None = None
    clock_out_location: CapturedLocation | None = None
    duration_minutes: int | None = None
    break_minutes: int
    net_duration_minutes: int | None = None
    shift_date: date
    notes: str | None = None
    marked_stale_at: datetime | None = None
    stale_resolution: StaleResolution | None = None
    is_revised: bool
    revision_reason: str | None = None
    revised_by_id: int | None = None
    revised_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class StaleResolutionRequest(BaseModel):
    resolution: StaleResolution
    reason: str = Field(max_length=2000)
    actual_clock_out_at: datetime | None = None
    resolved_by_id: int | None = Field(default=None, ge=1)

    @model_validator(mode="after")
    def validate_actual_hours(self) -> "StaleResolutionRequest":
        if self.resolution == StaleResolution.ACTUAL_HOURS and self.actual_clock_out_at is None:
            raise ValueError("actual_clock_out_at is required for ACTUAL_HOURS resolution")
        return self


class RevisionReviewRequest(BaseModel):
    reviewer_id: int = Field(ge=1)
    reason: str | None = Field(default=None, max_length=2000)


class CheckInRequestCreate(BaseModel):
    employee_id: int = Field(ge=1)
    request_type: CheckInRequestType | None = None
    location: CapturedLocation | None = None
    reason: str = Field(max_length=2000)
    requested_timestamp: datetime | None = None


class CheckInRequestReview(BaseModel):
    reviewer_id: int = Field(ge=1)
    approve: bool
    note: str | None = Field(default=None, max_length=2000)
    denial_reason: str | None = Field(default=None, max_length=2000)

    @model_validator(mode="after")
    def validate_denial_reason(self) -> "CheckInRequestReview":
        if not self.approve and not (self.denial_reason or "").strip():
            raise ValueError("denial_reason is required when denying a request")
        return self


class CheckInRequestRead(BaseModel):
    id: int
    employee_id: int
    organization_id: int
    request_type: CheckInRequestType
    status: CheckInRequestStatus
    requested_location: CapturedLocation | None = None
    distance_from_geofence_m: float | None = None
    nearest_location_id: int | None = None
    reason: str
    requested_timestamp: datetime
    is_historical: bool
    shift_id: int | None = None
    expires_at: datetime
    reviewed_by_id: int | None = None
    reviewed_at: datetime | None = None
    review_note: str | None = None
    denial_reason: str | None = None

    model_config = ConfigDict(from_attributes=True)


class PushTokenRegisterRequest(BaseModel):
    employee_id: int = Field(ge=1)
    token: str = Field(min_length=1, max_length=1024)
    platform: PushPlatform
    p256dh: str | None = Field(default=None, max_length=255)
    auth: str | None = Field(default=None, max_length=255)

    @model_validator(mode="after")
    def validate_web_keys(self) -> "PushTokenRegisterRequest":
        if self.platform == PushPlatform.WEB and not (self.p256dh and self.auth):
            raise ValueError("web push tokens require p256dh and auth keys")
        return self


class PushTokenUnregisterRequest(BaseModel):
    employee_id: int = Field(ge=1)
    token: str = Field(min_length=1, max_length=1024)


class PushTokenResponse(BaseModel):
    ok: bool
    token_id: int | None = None
    is_active: bool


class ScheduleSlotCreate(BaseModel):
    weekday: int = Field(ge=0, le=6)
    start_time: time
    end_time: time
    crosses_midnight: bool | None = None
    break_minutes: int = Field(default=0, ge=0, le=480)


class ScheduleTemplateCreate(BaseModel):
    organization_id: int = Field(ge=1)
    name: str = Field(min_length=1, max_length=255)
    slots: list[ScheduleSlotCreate] = Field(default_factory=list)


class ScheduleSlotRead(BaseModel):
    id: int
    weekday: int
    start_time: time
    end_time: time
    crosses_midnight: bool
    break_minutes: int
    sort_order: int

    model_config = ConfigDict(from_attributes=True)


class ScheduleTemplateRead(BaseModel):
    id: int
    organization_id: int
    name: str
    is_active: bool
    slots: list[ScheduleSlotRead]

    model_config = ConfigDict(from_attributes=True)


class ScheduleAssignmentCreate(BaseModel):
    template_id: int = Field(ge=1)
    target: AssignmentTarget
    effective_from: date | None = None
    effective_until: date | None = None
    actor_id: int | None = Field(default=None, ge=1)

    @model_validator(mode="after")
    def validate_range(self) -> "ScheduleAssignmentCreate":
        if (
            self.effective_from is not None
            and self.effective_until is not None
            and self.effective_until < self.effective_from
        ):
            raise ValueError("effective_until must be on or after effective_from")
        return self


class ScheduleAssignmentRead(BaseModel):
    id: int
    template_id: int
    target: AssignmentTarget
    effective_from: date | None = None
    effective_until: date | None = None
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class TickStatsResponse(BaseModel):
    processed: int
    sent: int
    skipped: int
    errors: int


class StaleSweepResponse(BaseModel):
    marked_stale: int
    expired_requests: int
