"""Structured values stored in JSON columns or passed across service seams."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class CapturedLocation(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    accuracy_m: float | None = Field(default=None, ge=0)
    captured_at: datetime | None = None
    provider: str | None = Field(default=None, max_length=32)

    model_config = ConfigDict(extra="forbid", frozen=True)


class GeofenceVerification(BaseModel):
    in_range: bool
    nearest_location_id: int | None = None
    distance_m: float | None = None
    radius_m: float | None = None
    accuracy_m: float | None = None
    zones_checked: int = 0
    evaluated_at: datetime

    model_config = ConfigDict(extra="forbid", frozen=True)


class DeviceInfo(BaseModel):
    platform: Literal["ios", "android", "web"]
    os_version: str | None = Field(default=None, max_length=64)
    app_version: str | None = Field(default=None, max_length=64)
    device_model: str | None = Field(default=None, max_length=128)

    model_config = ConfigDict(extra="forbid", frozen=True)


class TeamTarget(BaseModel):
    kind: Literal["team"] = "team"
    team_id: int = Field(ge=1)

    model_config = ConfigDict(frozen=True)


class EmployeeTarget(BaseModel):
    kind: Literal["employee"] = "employee"
    employee_id: int = Field(ge=1)

    model_config = ConfigDict(frozen=True)


AssignmentTarget = Annotated[Union[TeamTarget, EmployeeTarget], Field(discriminator="kind")]
