from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterator

from croniter import CroniterBadDateError, croniter


class InvalidCronError(ValueError):
    pass


def validate_cron(expr: str) -> str:
    """Return the normalized expression or raise `InvalidCronError`.

    Five fields (minute precision) or six (trailing seconds field).
    """
    normalized = " ".join(str(expr or "").split())
    parts = normalized.split(" ")
    if len(parts) not in (5, 6):
        raise InvalidCronError(f"Cron expression must have 5 or 6 fields, got {len(parts)}: {expr!r}")
    if not croniter.is_valid(normalized):
        raise InvalidCronError(f"Invalid cron expression: {expr!r}")
    return normalized


def _as_datetime(ts: float, tz: timezone | None) -> datetime:
    # Local wall-clock time unless a zone is given.
    if tz is None:
        return datetime.fromtimestamp(float(ts)).astimezone()
    return datetime.fromtimestamp(float(ts), tz=tz)


def next_due_times(expr: str, since: float, *, tz: timezone | None = None) -> Iterator[float]:
    """Lazily yield due timestamps strictly after `since`, ascending."""
    it = croniter(validate_cron(expr), _as_datetime(since, tz))
    while True:
        try:
            yield float(it.get_next(float))
        except CroniterBadDateError:
            return


def next_due_after(expr: str, since: float, *, tz: timezone | None = None) -> float | None:
    return next(next_due_times(expr, since, tz=tz), None)
