from __future__ import annotations

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from croniter import croniter

from clawhost.core.errors import ValidationFailure


def validate_cron(expr: str) -> None:
    if not croniter.is_valid(expr):
        raise ValidationFailure(code="INVALID_CRON", message=f"invalid cron expression: {expr!r}")


def parse_interval_ms(value: str) -> int:
    try:
        ms = int(str(value).strip())
    except ValueError:
        raise ValidationFailure(code="INVALID_INTERVAL", message=f"interval is not an integer: {value!r}") from None
    if ms <= 0:
        raise ValidationFailure(code="INVALID_INTERVAL", message=f"interval must be positive: {value!r}")
    return ms


def parse_once(value: str, tz: ZoneInfo) -> datetime:
    """Absolute timestamp; naive values are read in the configured timezone."""
    raw = str(value).strip()
    try:
        if raw.lstrip("-").isdigit():
            return datetime.fromtimestamp(int(raw) / 1000, tz=timezone.utc)
        dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except (ValueError, OverflowError, OSError):
        raise ValidationFailure(code="INVALID_TIMESTAMP", message=f"invalid timestamp: {value!r}") from None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=tz)
    return dt.astimezone(timezone.utc)


def next_cron_fire(expr: str, after: datetime, tz: ZoneInfo) -> datetime:
    """First cron instant strictly after ``after``, evaluated in ``tz``."""
    validate_cron(expr)
    it = croniter(expr, after.astimezone(tz))
    nxt = it.get_next(datetime)
    return nxt.astimezone(timezone.utc)


def initial_fire(schedule_type: str, schedule_value: str, *, now: datetime, tz: ZoneInfo) -> datetime:
    if schedule_type == "cron":
        return next_cron_fire(schedule_value, now, tz)
    if schedule_type == "interval":
        return now + timedelta(milliseconds=parse_interval_ms(schedule_value))
    if schedule_type == "once":
        # Past timestamps are caught up on the next tick.
        return max(parse_once(schedule_value, tz), now)
    raise ValidationFailure(code="INVALID_SCHEDULE_TYPE", message=f"unknown schedule type: {schedule_type!r}")


def following_fire(schedule_type: str, schedule_value: str, *, now: datetime, tz: ZoneInfo) -> datetime | None:
    """Next fire after a firing at ``now``; None means the task is finished."""
    if schedule_type == "cron":
        return next_cron_fire(schedule_value, now, tz)
    if schedule_type == "interval":
        return now + timedelta(milliseconds=parse_interval_ms(schedule_value))
    if schedule_type == "once":
        return None
    raise ValidationFailure(code="INVALID_SCHEDULE_TYPE", message=f"unknown schedule type: {schedule_type!r}")
