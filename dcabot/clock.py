from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def get_zone(timezone_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(timezone_name)
    except ZoneInfoNotFoundError as exc:
        raise RuntimeError(
            f"Timezone '{timezone_name}' is not available. "
            "Install tzdata in your environment: pip install tzdata"
        ) from exc


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_timezone(dt: datetime, timezone_name: str) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(get_zone(timezone_name))


def from_timestamp(seconds: int, timezone_name: str = "UTC") -> datetime:
    return to_timezone(datetime.fromtimestamp(seconds, tz=timezone.utc), timezone_name)


def iso_week_number(dt: datetime) -> int:
    return dt.isocalendar()[1]
