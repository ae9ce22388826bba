from __future__ import annotations

import enum
import logging
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.settings import get_settings

logger = logging.getLogger("app.scheduler")

MINUTES_PER_DAY = 1440
HALF_DAY_MINUTES = 720


class NotificationWindow(str, enum.Enum):
    BEFORE_15 = "before_15"
    BEFORE_5 = "before_5"
    AT_TIME = "at_time"
    AFTER_15 = "after_15"


# Inclusive (low, high) bands of target - current, in minutes.
_WINDOW_BANDS: tuple[tuple[NotificationWindow, int, int], ...] = (
    (NotificationWindow.BEFORE_15, 14, 16),
    (NotificationWindow.BEFORE_5, 4, 6),
    (NotificationWindow.AT_TIME, -1, 1),
    (NotificationWindow.AFTER_15, -16, -14),
)
_CLOCK_OUT_BAND = (14, 16)


def minutes_since_midnight(value: time | datetime) -> int:
    return value.hour * 60 + value.minute


def normalized_minute_diff(current_minutes: int, target_minutes: int) -> int:
    """target - current folded into [-720, 720)."""
    diff = (target_minutes - current_minutes) % MINUTES_PER_DAY
    if diff >= HALF_DAY_MINUTES:
        diff -= MINUTES_PER_DAY
    return diff


def classify_window(current_minutes: int, target_minutes: int) -> NotificationWindow | None:
    diff = normalized_minute_diff(current_minutes, target_minutes)
    for window, low, high in _WINDOW_BANDS:
        if low <= diff <= high:
            return window
    return None


def should_remind_clock_out(current_minutes: int, scheduled_end_minutes: int) -> bool:
    minutes_past_end = -normalized_minute_diff(current_minutes, scheduled_end_minutes)
    low, high = _CLOCK_OUT_BAND
    return low <= minutes_past_end <= high


def occurrence_date(local_now: datetime, target_minutes: int) -> date:
    """Calendar date of the target occurrence closest to local_now."""
    offset = normalized_minute_diff(minutes_since_midnight(local_now), target_minutes)
    return (local_now + timedelta(minutes=offset)).date()


@lru_cache(maxsize=256)
def resolve_timezone(name: str | None) -> ZoneInfo:
    raw_name = (name or "").strip()
    if raw_name:
        try:
            return ZoneInfo(raw_name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("unknown_timezone", extra={"timezone": raw_name})
    fallback = (get_settings().default_timezone or "").strip() or "UTC"
    try:
        return ZoneInfo(fallback)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def normalize_utc(ts: datetime | None) -> datetime:
    if ts is None:
        return datetime.now(timezone.utc)
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def org_local_now(timezone_name: str | None, now_utc: datetime | None = None) -> datetime:
    return normalize_utc(now_utc).astimezone(resolve_timezone(timezone_name))


def local_date_for(timezone_name: str | None, ts_utc: datetime) -> date:
    return normalize_utc(ts_utc).astimezone(resolve_timezone(timezone_name)).date()


def week_start_for(local_day: date, week_start_day: int) -> date:
    """Most recent day on or before local_day whose weekday() equals week_start_day."""
    diff = (local_day.weekday() - week_start_day) % 7
    return local_day - timedelta(days=diff)


def local_midnight_utc(timezone_name: str | None, local_day: date) -> datetime:
    tz = resolve_timezone(timezone_name)
    return datetime.combine(local_day, time.min, tzinfo=tz).astimezone(timezone.utc)


def format_duration(minutes: int) -> str:
    hours, mins = divmod(max(0, int(minutes)), 60)
    if hours == 0:
        return f"{mins}m"
    if mins == 0:
        return f"{hours}h"
    return f"{hours}h {mins}m"
