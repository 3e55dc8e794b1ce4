"""
Timestamp helpers.

Maccy stores Core Data timestamps: seconds since 2001-01-01T00:00:00Z
("source epoch"). Everything user-facing uses the Unix epoch.
"""

from datetime import datetime, timezone, tzinfo
from typing import Optional, Union

from errors import ValidationError

SOURCE_EPOCH_OFFSET = 978307200

Number = Union[int, float]


def to_standard_epoch(source_ts: Number) -> Number:
    """Core Data seconds -> Unix seconds."""
    return source_ts + SOURCE_EPOCH_OFFSET


def to_source_epoch(standard_ts: Number) -> Number:
    """Unix seconds -> Core Data seconds."""
    return standard_ts - SOURCE_EPOCH_OFFSET


def datetime_to_source_epoch(value: datetime) -> float:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return to_source_epoch(value.timestamp())


def source_epoch_to_datetime(source_ts: Number, tz: Optional[tzinfo] = None) -> datetime:
    moment = datetime.fromtimestamp(to_standard_epoch(source_ts), tz=timezone.utc)
    return moment.astimezone(tz) if tz is not None else moment.astimezone()


def format_timestamp(source_ts: Optional[Number], tz: Optional[tzinfo] = None) -> Optional[str]:
    """
    Render a source-epoch timestamp for display, e.g.
    "Mon, Jan 1, 2001, 12:00:00 AM UTC". Local time unless `tz` is given.
    """
    if source_ts is None:
        return None
    moment = source_epoch_to_datetime(source_ts, tz)
    hour = moment.strftime("%I:%M:%S %p")
    zone = moment.strftime("%Z") or moment.strftime("%z")
    return (
        f"{moment.strftime('%a')}, {moment.strftime('%b')} {moment.day}, "
        f"{moment.year}, {hour} {zone}"
    ).strip()


def parse_iso_datetime(value: Optional[str], field: str = "date") -> Optional[datetime]:
    """Parse ISO8601 datetime string (supports trailing Z). Naive values are UTC."""
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be an ISO-8601 string.")
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValidationError(
            f"Invalid {field} '{value}'. Use ISO-8601 like '2026-01-31T12:00:00Z'."
        ) from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
