from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from math import asin, cos, radians, sin, sqrt

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models import WorkLocation
from app.payloads import GeofenceVerification

EARTH_RADIUS_M = 6371000.0


@dataclass(frozen=True, slots=True)
class GeofenceZone:
    zone_id: int | None
    latitude: float
    longitude: float
    radius_m: float


@dataclass(frozen=True, slots=True)
class ZoneDistance:
    zone: GeofenceZone
    distance_m: float
    within_range: bool


@dataclass(frozen=True, slots=True)
class GeofenceEvaluation:
    in_range: bool
    nearest: ZoneDistance | None
    zones: tuple[ZoneDistance, ...]
    accuracy_m: float | None = None

    def to_verification(self, *, evaluated_at: datetime | None = None) -> GeofenceVerification:
        nearest = self.nearest
        return GeofenceVerification(
            in_range=self.in_range,
            nearest_location_id=nearest.zone.zone_id if nearest else None,
            distance_m=round(nearest.distance_m, 2) if nearest else None,
            radius_m=nearest.zone.radius_m if nearest else None,
            accuracy_m=self.accuracy_m,
            zones_checked=len(self.zones),
            evaluated_at=evaluated_at or datetime.now(timezone.utc),
        )


def distance_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    lat1_rad = radians(lat1)
    lon1_rad = radians(lon1)
    lat2_rad = radians(lat2)
    lon2_rad = radians(lon2)

    delta_lat = lat2_rad - lat1_rad
    delta_lon = lon2_rad - lon1_rad

    a = sin(delta_lat / 2) ** 2 + cos(lat1_rad) * cos(lat2_rad) * sin(delta_lon / 2) ** 2
    c = 2 * asin(min(1.0, sqrt(a)))
    return EARTH_RADIUS_M * c


def evaluate_zone(lat: float, lon: float, zone: GeofenceZone) -> ZoneDistance:
    distance_value = distance_m(zone.latitude, zone.longitude, lat, lon)
    return ZoneDistance(
        zone=zone,
        distance_m=distance_value,
        within_range=distance_value <= zone.radius_m,
    )


def evaluate_geofence(
    lat: float,
    lon: float,
    zones: Iterable[GeofenceZone],
    *,
    accuracy_m: float | None = None,
) -> GeofenceEvaluation:
    """Distance to every zone; in range when any zone contains the point (boundary inclusive)."""
    results = tuple(evaluate_zone(lat, lon, zone) for zone in zones)
    if not results:
        return GeofenceEvaluation(in_range=False, nearest=None, zones=(), accuracy_m=accuracy_m)

    nearest = min(results, key=lambda item: item.distance_m)
    return GeofenceEvaluation(
        in_range=any(item.within_range for item in results),
        nearest=nearest,
        zones=results,
        accuracy_m=accuracy_m,
    )


def load_organization_zones(db: Session, *, organization_id: int) -> list[GeofenceZone]:
    rows = db.scalars(
        select(WorkLocation)
        .where(
            WorkLocation.organization_id == organization_id,
            WorkLocation.is_active.is_(True),
        )
        .order_by(WorkLocation.id.asc())
    ).all()
    return [
        GeofenceZone(
            zone_id=row.id,
            latitude=row.latitude,
            longitude=row.longitude,
            radius_m=row.radius_m,
        )
        for row in rows
    ]
